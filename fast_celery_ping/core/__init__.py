"""Transport-agnostic collection policy."""

from fast_celery_ping.core.collector import (
    DEFAULT_QUIET_PERIOD,
    ResponseCollector,
    should_keep_waiting,
    wait_first,
)

__all__ = ["DEFAULT_QUIET_PERIOD", "ResponseCollector", "should_keep_waiting", "wait_first"]
