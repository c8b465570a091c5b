"""Command line entry point: monitor the given recorders until interrupted."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from contextlib import suppress
from dataclasses import replace
from pathlib import Path

from .config import Settings, find_config_path, load_settings
from .devices import parse_device_spec
from .errors import StartupError
from .log import configure_logging, log_event
from .service import build_monitor

EXIT_OK = 0
EXIT_BAD_COMMANDLINE = 1
EXIT_START_FAILED = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="alarmsnap",
        description="Save a snapshot every second from each recorder channel while it is alarming.",
        exit_on_error=False,
    )
    parser.add_argument(
        "devices",
        nargs="*",
        metavar="DEVICE",
        help="Device to monitor, as <username>:<password>@<hostname>[:<port>].",
    )
    parser.add_argument("--config", help="YAML configuration file.")
    parser.add_argument("--db", type=Path, help="Store snapshots in this SQLite database file.")
    parser.add_argument("--snapshot-dir", type=Path, help="Store snapshots as files below this folder.")
    parser.add_argument("--interval", type=float, help="Seconds between two snapshots of an alarm.")
    parser.add_argument("--log-level", help="Logging level (default from ALARMSNAP_LOG_LEVEL or INFO).")
    parser.add_argument("--http-serve", action="store_true", help="Serve the status API while monitoring.")
    parser.add_argument("--http-host", default="127.0.0.1")
    parser.add_argument("--http-port", type=int, default=8080)
    return parser


def resolve_settings(args: argparse.Namespace) -> Settings:
    path = find_config_path(args.config)
    settings = load_settings(path) if path is not None else Settings()
    if args.db is not None:
        settings = replace(settings, db_path=args.db)
    if args.snapshot_dir is not None:
        settings = replace(settings, snapshot_dir=args.snapshot_dir)
    if args.interval is not None:
        if args.interval <= 0:
            raise ValueError("--interval must be > 0")
        settings = replace(settings, tick_interval=args.interval)
    settings = settings.with_devices(parse_device_spec(spec) for spec in args.devices)
    if not settings.devices:
        raise ValueError(
            "No device to be monitored was specified. "
            "Use <username>:<password>@<hostname>[:<port>] to specify a device."
        )
    return settings


async def monitor(settings: Settings) -> None:
    active = build_monitor(settings)
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        with suppress(NotImplementedError):
            loop.add_signal_handler(signum, active.request_stop)
    await active.run_forever()


def run(argv: list[str] | None = None) -> int:
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except argparse.ArgumentError as exc:
        parser.print_usage()
        configure_logging()
        log_event("commandline.invalid", level=logging.ERROR, reason=str(exc))
        return EXIT_BAD_COMMANDLINE

    configure_logging(args.log_level)
    try:
        settings = resolve_settings(args)
    except (ValueError, FileNotFoundError) as exc:
        log_event("commandline.invalid", level=logging.ERROR, reason=str(exc))
        return EXIT_BAD_COMMANDLINE

    log_event(
        "monitor.configured",
        devices=[str(device) for device in settings.devices],
        interval=settings.tick_interval,
        store=str(settings.db_path or settings.snapshot_dir),
    )

    if args.http_serve:
        import uvicorn

        from .service import create_app

        app = create_app(settings=settings)
        try:
            uvicorn.run(
                app,
                host=args.http_host,
                port=args.http_port,
                log_level=(args.log_level or "info").lower(),
            )
        except SystemExit:
            # uvicorn exits on its own when the lifespan fails to start
            if getattr(app.state, "startup_error", None) is None:
                raise
        startup_error = getattr(app.state, "startup_error", None)
        if startup_error is not None:
            _report_start_failure(startup_error)
            return EXIT_START_FAILED
        return EXIT_OK

    try:
        asyncio.run(monitor(settings))
    except StartupError as exc:
        _report_start_failure(exc)
        return EXIT_START_FAILED
    except KeyboardInterrupt:
        log_event("monitor.interrupted")
    return EXIT_OK


def _report_start_failure(exc: StartupError) -> None:
    log_event(
        "monitor.start_failed",
        level=logging.ERROR,
        failures=[{"device": str(failure.device), "reason": failure.reason} for failure in exc.failures],
    )


def main() -> None:
    raise SystemExit(run())
