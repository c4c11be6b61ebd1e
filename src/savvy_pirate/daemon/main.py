"""Process entrypoint for the scrape scheduler.

Either serves the command API with uvicorn (the default) or keeps the tick loop
alive headless until SIGINT/SIGTERM.
"""

from __future__ import annotations

import argparse
import logging
import signal
from threading import Event

import uvicorn

from src.savvy_pirate.runtime.service import get_runtime_service

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
APP_TARGET = "app.main:app"
MIN_IDLE_SEC = 0.05


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


def _stop_on_signals(stop_event: Event) -> None:
    for signum in (signal.SIGINT, signal.SIGTERM):
        signal.signal(signum, lambda *_: stop_event.set())


def _wait_headless(stop_event: Event, idle_sec: float) -> None:
    _stop_on_signals(stop_event)
    logger.info("Scheduler running without command API")
    while not stop_event.wait(timeout=max(MIN_IDLE_SEC, idle_sec)):
        pass


def run_daemon(
    *,
    with_app: bool = True,
    host: str = "127.0.0.1",
    port: int = 8000,
    idle_sec: float = 0.5,
    stop_event: Event | None = None,
) -> int:
    runtime = get_runtime_service()
    runtime.start(source="daemon")
    try:
        if with_app:
            logger.info("Serving command API on %s:%s", host, port)
            uvicorn.run(APP_TARGET, host=host, port=port, reload=False)
        else:
            _wait_headless(stop_event or Event(), idle_sec)
    finally:
        runtime.stop(source="daemon")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="savvy-pirate-daemon", description="Run the Savvy Pirate scrape scheduler.")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--no-app", dest="with_app", action="store_false", help="Skip the local command API.")
    parser.add_argument("--idle-sec", type=float, default=0.5, help="Signal poll interval in headless mode.")
    parser.add_argument("--log-level", default="INFO")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)
    return run_daemon(
        with_app=args.with_app,
        host=args.host,
        port=args.port,
        idle_sec=max(MIN_IDLE_SEC, args.idle_sec),
    )


if __name__ == "__main__":
    raise SystemExit(main())
