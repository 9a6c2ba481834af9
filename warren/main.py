"""
Main — entry point for the Warren host process.

Loads configuration from the environment, builds a WarrenHost and runs it
until SIGINT/SIGTERM. Channel adapters are attached by deployments that
embed the host; the bare entry point still serves delegation traffic
between registered groups.
"""

from __future__ import annotations

import asyncio
import logging
import sys

import structlog

from warren.config import WarrenConfig

_logging_configured = False


def configure_logging(level: int = logging.WARNING) -> None:
    """Configure structlog and standard-library logging for Warren entry points.

    Safe to call more than once; subsequent calls are no-ops.
    """
    global _logging_configured  # noqa: PLW0603
    if _logging_configured:
        return
    _logging_configured = True

    logging.basicConfig(format="%(message)s", level=level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(colors=True),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )


def run_host(verbose: bool = False) -> None:
    """
    Entry point for ``warren run``.

    Loads config, creates WarrenHost, runs the event loop.
    """
    configure_logging(logging.INFO if verbose else logging.WARNING)
    try:
        config = WarrenConfig()
    except Exception as e:
        print(f"[warren] Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    from warren.host import WarrenHost

    host = WarrenHost(config)
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        loop.run_until_complete(host.run())
    except KeyboardInterrupt:
        pass
    finally:
        loop.close()


if __name__ == "__main__":
    run_host()
