"""
Live web dashboard for Movesense sessions.
"""

from .app import DashboardApp, create_app
from .history import ReadingHistory

__all__ = ["DashboardApp", "ReadingHistory", "create_app"]
