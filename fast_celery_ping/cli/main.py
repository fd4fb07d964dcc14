"""Command-line entry point: ``fast-celery-ping``.

Usage:
    fast-celery-ping                                   # redis://localhost:6379/0
    fast-celery-ping --broker-url amqp://guest@rabbit//
    fast-celery-ping --timeout 5s --format json
    fast-celery-ping -d celery@worker1,celery@worker2
"""

import argparse
import asyncio
import logging
import platform
import sys
from typing import Optional, Sequence

import structlog
from pydantic import ValidationError
from rich.console import Console

from fast_celery_ping import __version__
from fast_celery_ping.brokers import Broker, create_broker
from fast_celery_ping.cli.formatter import PingFormatter
from fast_celery_ping.config import Settings, parse_duration
from fast_celery_ping.errors import BrokerConnectError, PingError
from fast_celery_ping.protocol.messages import WorkerResponse

logger = structlog.get_logger(__name__)

EXIT_OK = 0
EXIT_NO_REPLIES = 1
EXIT_FAILURE = 2

# Extra time past the collection timeout before the run is cancelled.
GUARD_SECONDS = 1.0


def configure_logging(verbose: bool = False) -> None:
    """Send structured logs to stderr; debug detail only with ``--verbose``."""
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.DEBUG if verbose else logging.WARNING
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


def version_info() -> str:
    return (
        f"fast-celery-ping version {__version__}\n"
        f"Python version: {platform.python_version()}\n"
        f"Platform: {sys.platform}/{platform.machine()}"
    )


def _duration(value: str) -> float:
    try:
        return parse_duration(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def split_destinations(value: Optional[str]) -> tuple[str, ...]:
    """Split a comma separated node list, dropping blanks."""
    if not value:
        return ()
    return tuple(part.strip() for part in value.split(",") if part.strip())


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fast-celery-ping",
        description="Fast alternative to `celery inspect ping`",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  %(prog)s --broker-url redis://localhost:6379/0\n"
            "  %(prog)s --timeout 5s --format text\n"
            "  %(prog)s --verbose\n"
        ),
    )
    parser.add_argument(
        "--broker-url",
        help="Broker URL (default: $BROKER_URL, $CELERY_BROKER_URL or redis://localhost:6379/0)",
    )
    parser.add_argument(
        "--timeout",
        type=_duration,
        help="Timeout for ping responses, e.g. 1.5s or 500ms (default: 1.5s)",
    )
    parser.add_argument("--format", dest="output_format", choices=("text", "json"),
                        help="Output format (default: text)")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose output")
    parser.add_argument("--database", type=int, help="Redis database number")
    parser.add_argument("--username", help="Broker username")
    parser.add_argument("--password", help="Broker password")
    parser.add_argument(
        "-d",
        "--destination",
        help="Comma separated list of destination node names",
    )
    parser.add_argument("--version", action="store_true", help="Print version information and exit")
    return parser


def load_settings(args: argparse.Namespace, environ: Optional[dict] = None) -> Settings:
    """Defaults, then environment, then command-line flags."""
    return Settings.from_env(environ).with_overrides(
        broker_url=args.broker_url,
        timeout=args.timeout,
        output_format=args.output_format,
        verbose=args.verbose,
        database=args.database,
        username=args.username,
        password=args.password,
        destinations=split_destinations(args.destination),
    )


async def connect_with_retry(broker: Broker, attempts: int) -> None:
    """Connect, retrying unreachable brokers with linear backoff."""
    for attempt in range(1, attempts + 1):
        try:
            await broker.connect()
            return
        except BrokerConnectError as exc:
            if attempt >= attempts:
                raise
            await logger.awarning("broker_connect_retry", attempt=attempt, error=str(exc))
            await asyncio.sleep(0.5 * attempt)


async def run_ping(settings: Settings, broker: Optional[Broker] = None) -> dict[str, WorkerResponse]:
    """Connect, ping once and disconnect.

    Raises:
        PingError: If the transport failed before replies could be collected.
    """
    broker = broker or create_broker(settings.broker_config())

    await logger.ainfo("broker_connecting", broker_type=settings.broker_type)

    guard: Optional[asyncio.TimerHandle] = None
    try:
        await connect_with_retry(broker, settings.retry_attempts)

        cancel = asyncio.Event()
        guard = asyncio.get_running_loop().call_later(settings.timeout + GUARD_SECONDS, cancel.set)
        await logger.ainfo(
            "ping_sending",
            destinations=list(settings.destinations),
            timeout=settings.timeout,
        )
        return await broker.ping(settings.timeout, settings.destinations or None, cancel)
    finally:
        if guard is not None:
            guard.cancel()
        await broker.close()


def main(argv: Optional[Sequence[str]] = None, environ: Optional[dict] = None) -> int:
    args = build_parser().parse_args(argv)
    stderr = Console(stderr=True, highlight=False)

    if args.version:
        Console(highlight=False).print(version_info(), markup=False)
        return EXIT_OK

    try:
        settings = load_settings(args, environ)
    except ValidationError as exc:
        stderr.print(f"Configuration error: {exc}", markup=False)
        return EXIT_FAILURE

    configure_logging(settings.verbose)
    formatter = PingFormatter(settings.output_format)

    try:
        responses = asyncio.run(run_ping(settings))
    except PingError as exc:
        stderr.print(f"Error: ping failed: {exc}", markup=False)
        return EXIT_FAILURE

    formatter.render(responses)
    return EXIT_OK if responses else EXIT_NO_REPLIES


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
