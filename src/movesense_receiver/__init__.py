from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

from .config import SessionConfig
from .ecg_store import EcgStore
from .errors import TransportError
from .link import BleakLinkFactory, LinkFactory, MockLinkFactory
from .models import SensorReading
from .recorder import CSV_HEADER, ReadingRecorder, format_csv_row, recording_path
from .session import MovesenseSession

logger = logging.getLogger(__name__)

__all__ = ["MovesenseSession", "SessionConfig", "main"]


async def _run_headless(
    session: MovesenseSession, *, csv_out: bool, show_header: bool
) -> int:
    """Connect, optionally stream CSV to stdout, and run until disconnected."""
    if csv_out:
        if show_header:
            sys.stdout.write(CSV_HEADER)
            sys.stdout.flush()

        def emit(reading: SensorReading) -> None:
            sys.stdout.write(format_csv_row(reading))
            sys.stdout.flush()

        session.add_listener(emit)

    try:
        await session.connect()
    except TransportError as e:
        logger.error(f"❌ Failed to connect: {e}")
        return 2

    try:
        await session.wait_disconnected()
    finally:
        await session.disconnect()

    if session.last_error:
        logger.error(f"Session ended: {session.last_error}")
        return 1
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="movesense-receiver",
        description=(
            "Receive Movesense sensor data over BLE and show it on a live "
            "dashboard, or stream it as CSV to stdout."
        ),
    )
    parser.add_argument("--address", help="BLE address of the device (scan if omitted)")
    parser.add_argument(
        "--device-name",
        default="Movesense",
        help="Device name prefix to look for while scanning",
    )
    parser.add_argument(
        "--scan-timeout",
        type=float,
        default=10.0,
        help="Scan timeout in seconds",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG", "NOTSET"],
        help="Log level (default: WARNING)",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        help="Also write logs to this file (default: stderr only)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=8050,
        help="Dashboard server port (default: 8050)",
    )
    parser.add_argument(
        "--mock",
        action="store_true",
        help="Use synthetic data (no BLE device required)",
    )
    parser.add_argument(
        "--csv",
        action="store_true",
        help="Stream readings as CSV to stdout instead of serving the dashboard",
    )
    parser.add_argument(
        "--no-header",
        action="store_true",
        help="Do not print the CSV header line (CSV mode only)",
    )
    parser.add_argument(
        "--record-dir",
        type=Path,
        default=None,
        help="Also record every reading to a CSV file under this directory",
    )
    parser.add_argument(
        "--ecg-store",
        type=Path,
        default=None,
        help="JSON file where finished ECG recordings are stored",
    )

    args = parser.parse_args()

    # CSV goes to stdout, logs to stderr and the optional file.
    level = getattr(logging, str(args.log_level).upper(), logging.WARNING)
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if args.log_file:
        try:
            handlers.append(logging.FileHandler(args.log_file, encoding="utf-8"))
        except OSError as e:
            sys.stderr.write(f"Cannot open log file {args.log_file}: {e}\n")
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=handlers,
        force=True,
    )

    config = SessionConfig()
    link_factory: LinkFactory
    if args.mock:
        link_factory = MockLinkFactory()
    else:
        link_factory = BleakLinkFactory(
            args.address, name_prefix=args.device_name, scan_timeout=args.scan_timeout
        )

    ecg_store = (
        EcgStore(args.ecg_store, sample_rate_hz=config.ecg_sample_rate_hz)
        if args.ecg_store
        else None
    )
    session = MovesenseSession(link_factory, config, ecg_store=ecg_store)

    recorder: Optional[ReadingRecorder] = None
    if args.record_dir:
        recorder = ReadingRecorder(recording_path(args.record_dir))
        recorder.open()
        session.add_listener(recorder)

    try:
        if args.csv:
            try:
                code = asyncio.run(
                    _run_headless(session, csv_out=True, show_header=not args.no_header)
                )
            except KeyboardInterrupt:
                code = 130
            raise SystemExit(code)

        from .dashboard import create_app

        logger.info("🔧 Movesense Receiver - Dashboard")
        logger.info("=" * 50)
        logger.info(f"🔍 Open http://localhost:{args.port} in your browser")
        logger.info("=" * 50)

        app = create_app(session, ecg_sample_rate_hz=config.ecg_sample_rate_hz)
        try:
            app.run(host="0.0.0.0", port=args.port)
        except KeyboardInterrupt:
            logger.info("🛑 Shutting down dashboard...")
    finally:
        if recorder is not None:
            summary = recorder.close()
            logger.info(f"Recording saved to {summary.file_path}")
