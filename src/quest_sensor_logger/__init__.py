from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from .config import AppConfig
from .controller import SensorLogger
from .errors import SensorLoggerError

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="quest-sensor-logger",
        description="Pair with a quest BLE temperature sensor, record temperature joined with GPS fixes, and export or upload the data as CSV.",
    )
    parser.add_argument(
        "--mock",
        action="store_true",
        help="Use the simulated sensor and GPS track (no hardware required)",
    )
    parser.add_argument(
        "--data-dir",
        default=None,
        help="Directory for the database and settings (default: ~/.quest-sensor-logger)",
    )
    parser.add_argument(
        "--scan-timeout",
        type=float,
        default=None,
        help="Scan timeout in seconds (default: 10)",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Random seed for simulation mode",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=[
            "CRITICAL",
            "ERROR",
            "WARNING",
            "INFO",
            "DEBUG",
            "NOTSET",
        ],
        help="Log level (default: WARNING)",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        help="Also write logs to this file (default: stderr only)",
    )

    subparsers = parser.add_subparsers(dest="command")

    dashboard = subparsers.add_parser("dashboard", help="Run the web dashboard (default)")
    dashboard.add_argument("--host", default="127.0.0.1", help="Dashboard host")
    dashboard.add_argument(
        "--port", type=int, default=8050, help="Dashboard port (default: 8050)"
    )

    subparsers.add_parser("pair", help="Pair with a nearby quest sensor")

    log = subparsers.add_parser("log", help="Record samples until Ctrl+C")
    log.add_argument(
        "--device-name", default=None, help="Sensor name (default: paired sensor)"
    )

    export = subparsers.add_parser("export", help="Export stored samples as CSV")
    export.add_argument("path", help="Output CSV file")

    upload = subparsers.add_parser("upload", help="Upload stored samples")
    upload.add_argument("--bucket", default=None, help="Destination bucket name")

    subparsers.add_parser("clear", help="Delete all stored samples")
    return parser


def _configure_logging(args: argparse.Namespace) -> None:
    level = getattr(logging, str(args.log_level).upper(), logging.WARNING)
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if args.log_file:
        try:
            handlers.append(logging.FileHandler(args.log_file, encoding="utf-8"))
        except OSError as e:
            # Keep running with stderr only
            print(f"Cannot open log file {args.log_file}: {e}", file=sys.stderr)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=handlers,
        force=True,
    )


async def _run_pair(session: SensorLogger) -> int:
    try:
        await session.pair()
    finally:
        await session.close()
    print(f"Paired with {session.paired_sensor}")
    return 0


async def _run_log(session: SensorLogger, device_name: str | None) -> int:
    try:
        if not await session.start(device_name):
            print("Sensor not found or failed to connect", file=sys.stderr)
            return 1
        print("Sampling... press Ctrl+C to stop")
        last_count = -1
        while session.snapshot().sampling:
            await asyncio.sleep(1.0)
            snap = session.snapshot()
            if snap.sample_count != last_count and snap.last_temperature is not None:
                last_count = snap.sample_count
                print(
                    f"{snap.sample_count} samples, {snap.last_temperature:.2f} °C",
                    flush=True,
                )
        last_error = session.snapshot().last_error
        if last_error:
            print(f"Sampling stopped: {last_error}", file=sys.stderr)
            return 1
        return 0
    finally:
        await session.close()


async def _run_export(session: SensorLogger, path: Path) -> int:
    try:
        count = await session.export_csv(path)
    finally:
        await session.close()
    if count is None:
        return 1
    print(f"Exported {count} samples to {path}")
    return 0


async def _run_upload(session: SensorLogger) -> int:
    try:
        url = await session.upload()
    finally:
        await session.close()
    if url is None:
        return 1
    print(f"Uploaded: {url}")
    return 0


async def _run_clear(session: SensorLogger) -> int:
    try:
        ok = await session.clear_all()
    finally:
        await session.close()
    return 0 if ok else 1


def main() -> None:
    parser = _build_parser()
    args = parser.parse_args()
    _configure_logging(args)

    config = AppConfig.from_args(args)
    command = args.command or "dashboard"

    if command == "dashboard":
        from .dashboard import create_app

        host = getattr(args, "host", "127.0.0.1")
        port = getattr(args, "port", 8050)
        logger.info("🌡️ Quest Sensor Logger")
        logger.info("=" * 50)
        if config.simulation:
            logger.info("🧪 Using simulated sensor and GPS (no hardware required)")
        logger.info(f"🔍 Open http://{host}:{port} in your browser")
        logger.info("=" * 50)
        try:
            app = create_app(session=SensorLogger.create(config))
            app.run(host=host, port=port)
        except KeyboardInterrupt:
            logger.info("🛑 Dashboard stopped")
            raise SystemExit(130)
        except Exception as e:
            logger.error(f"❌ Failed to start dashboard: {e}")
            raise SystemExit(1)
        raise SystemExit(0)

    session = SensorLogger.create(config)
    session.notifier.add_listener(lambda n: print(n.message, file=sys.stderr))
    if command == "pair":
        runner = _run_pair(session)
    elif command == "log":
        runner = _run_log(session, args.device_name)
    elif command == "export":
        runner = _run_export(session, Path(args.path).expanduser())
    elif command == "upload":
        runner = _run_upload(session)
    else:
        runner = _run_clear(session)

    try:
        code = asyncio.run(runner)
    except KeyboardInterrupt:
        raise SystemExit(130)
    except SensorLoggerError as e:
        print(f"Error: {e}", file=sys.stderr)
        raise SystemExit(1)
    raise SystemExit(code)
