"""Time-bounded reply collection shared by every transport.

Holds the only transport-agnostic policy of a ping: when to stop waiting,
and how replies from the same worker are deduplicated (last write wins).
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar

import structlog

from fast_celery_ping.errors import DecodeError
from fast_celery_ping.protocol.codec import ProtocolCodec
from fast_celery_ping.protocol.messages import WorkerResponse

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Quiet period after the last reply before the AMQP loop gives up on stragglers.
DEFAULT_QUIET_PERIOD = 0.1


def should_keep_waiting(
    elapsed: float,
    deadline: float,
    response_count: int,
    *,
    quiet_period: Optional[float] = None,
    idle: float = 0.0,
    min_wait: float = 0.0,
    cancelled: bool = False,
) -> bool:
    """Decide whether a collection loop should run another iteration.

    Args:
        elapsed: Seconds since collection started.
        deadline: Overall collection timeout in seconds.
        response_count: Number of distinct workers seen so far.
        quiet_period: Stop this long after the last inbound message once at
            least one reply was collected. ``None`` disables early stop.
        idle: Seconds since the last inbound message.
        min_wait: Smallest wait the transport can block for; stop when less
            than this remains.
        cancelled: External cancellation flag.

    Returns:
        True to keep waiting, False to stop.
    """
    if cancelled:
        return False

    remaining = deadline - elapsed
    if remaining <= 0 or remaining < min_wait:
        return False

    if quiet_period is not None and response_count > 0 and idle >= quiet_period:
        return False

    return True


async def wait_first(
    receive: Awaitable[T],
    timeout: Optional[float] = None,
    cancel: Optional[asyncio.Event] = None,
) -> Optional[T]:
    """Await ``receive`` racing a timeout and a cancellation event.

    Returns:
        The received value, or None if the timeout or cancellation won.

    Raises:
        Whatever ``receive`` raised.
    """
    receive_task = asyncio.ensure_future(receive)
    waiters: set[asyncio.Future[Any]] = {receive_task}
    if cancel is not None:
        waiters.add(asyncio.ensure_future(cancel.wait()))

    try:
        done, _ = await asyncio.wait(
            waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        for waiter in waiters:
            if not waiter.done():
                waiter.cancel()

    if receive_task in done:
        return receive_task.result()
    return None


class ResponseCollector:
    """Deduplicating reply map with a stop policy.

    Args:
        timeout: Overall collection deadline in seconds.
        codec: Codec used to decode and identify reply payloads.
        quiet_period: Early-stop quiet period (see :func:`should_keep_waiting`).
        min_wait: Transport wait granularity in seconds.
        cancel: Optional external cancellation event.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        timeout: float,
        codec: Optional[ProtocolCodec] = None,
        *,
        quiet_period: Optional[float] = None,
        min_wait: float = 0.0,
        cancel: Optional[asyncio.Event] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.timeout = timeout
        self.codec = codec or ProtocolCodec()
        self.quiet_period = quiet_period
        self.min_wait = min_wait
        self.cancel = cancel
        self._clock = clock
        self._responses: dict[str, WorkerResponse] = {}
        self._started = clock()
        self._last_activity = self._started

    def start(self) -> None:
        """Reset the deadline and inactivity clocks."""
        self._started = self._clock()
        self._last_activity = self._started

    @property
    def elapsed(self) -> float:
        return self._clock() - self._started

    @property
    def remaining(self) -> float:
        return max(self.timeout - self.elapsed, 0.0)

    @property
    def idle(self) -> float:
        return self._clock() - self._last_activity

    @property
    def cancelled(self) -> bool:
        return self.cancel is not None and self.cancel.is_set()

    @property
    def count(self) -> int:
        return len(self._responses)

    @property
    def responses(self) -> dict[str, WorkerResponse]:
        """Snapshot of collected replies keyed by worker identity."""
        return dict(self._responses)

    def keep_waiting(self) -> bool:
        return should_keep_waiting(
            self.elapsed,
            self.timeout,
            self.count,
            quiet_period=self.quiet_period,
            idle=self.idle,
            min_wait=self.min_wait,
            cancelled=self.cancelled,
        )

    def next_wait(self) -> float:
        """How long the next receive may block before the policy must be re-checked."""
        wait = self.remaining
        if self.quiet_period is not None and self.count > 0:
            wait = min(wait, max(self.quiet_period - self.idle, 0.0))
        return wait

    def add(self, worker: str, status: str = "pong") -> WorkerResponse:
        """Record a reply, replacing any earlier one from the same worker."""
        response = WorkerResponse(worker=worker, status=status)
        self._responses[worker] = response
        return response

    def add_payload(self, payload: bytes | str) -> Optional[WorkerResponse]:
        """Decode, validate and record one raw reply.

        Malformed or unidentifiable payloads are logged and skipped.
        """
        self._last_activity = self._clock()

        try:
            document = self.codec.decode_response(payload)
        except DecodeError as exc:
            logger.warning("response_decode_failed", error=str(exc))
            return None

        if not self.codec.validate_response(document):
            logger.debug("response_invalid", keys=sorted(document))
            return None

        worker = self.codec.extract_identity(document)
        if not worker:
            logger.debug("response_without_identity", keys=sorted(document))
            return None

        logger.debug("response_collected", worker=worker)
        return self.add(worker)
