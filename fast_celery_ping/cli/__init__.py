"""Command-line front end: settings layering, output formatting, exit codes."""

from fast_celery_ping.cli.formatter import PingFormatter
from fast_celery_ping.cli.main import run_ping

__all__ = ["PingFormatter", "run_ping"]
