"""Process entrypoint: ``python -m status_page.server --config /opt/pi-glass/config.yaml``."""

from __future__ import annotations

import argparse
import logging
import os
import signal
import sys

import structlog
import uvicorn

from host_checks.config import load_config
from host_checks.errors import ConfigError
from status_page.app import create_app


logger = structlog.get_logger(__name__)


def configure_logging(level: str = "INFO") -> None:
    level_no = logging.getLevelName(str(level or "INFO").upper())
    if not isinstance(level_no, int):
        level_no = logging.INFO

    logging.basicConfig(level=level_no, format="%(message)s", stream=sys.stdout)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level_no),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _terminate(exc: BaseException) -> None:
    # The poller cannot recover from a broken store; let uvicorn shut down cleanly and exit non-zero.
    logger.critical("Fatal poller error, shutting down", error=f"{type(exc).__name__}: {exc}")
    os.kill(os.getpid(), signal.SIGTERM)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="pi-glass status board")
    parser.add_argument("--config", default=None, help="Path to config.yaml")
    parser.add_argument("--log-level", default=None, help="Override the configured log level")
    args = parser.parse_args(argv)

    loaded = load_config(args.config)
    config = loaded.config
    configure_logging(args.log_level or config.log_level)

    try:
        host, port = config.listen_host_port()
    except ConfigError as exc:
        logger.error("Invalid listen address", error=str(exc))
        return 2

    app = create_app(loaded, on_fatal=_terminate)
    logger.info("Starting status board", host=host, port=port, config=loaded.path)

    server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level="warning", access_log=False))
    server.run()

    poller = getattr(app.state, "poller", None)
    if poller is not None and poller.failure is not None:
        return 1
    if not server.started:
        # Startup (store, ICMP socket or bind) failed; the reason is already logged.
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
