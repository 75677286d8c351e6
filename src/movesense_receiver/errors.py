"""Exception types raised by the session layer."""

from __future__ import annotations

from typing import Optional

from .models import SensorKind


class MovesenseError(Exception):
    """Base class for errors raised by this package."""


class TransportError(MovesenseError):
    """Discovery, GATT connect, characteristic write or subscribe failed.

    This is the only error class that moves the connection state machine.
    """


class FrameDecodeError(MovesenseError):
    """A frame matched a decoding rule but its values could not be extracted.

    Carries the sensor kind the frame was routed to so the failure only marks
    that sensor as errored.
    """

    def __init__(self, kind: Optional[SensorKind], message: str) -> None:
        super().__init__(message)
        self.kind = kind
