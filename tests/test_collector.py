"""Unit tests for the reply collector and its stop policy."""

import asyncio
from datetime import datetime

import pytest

from fast_celery_ping.core import ResponseCollector, should_keep_waiting, wait_first


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestShouldKeepWaiting:
    """Test the stop decision function."""

    def test_before_deadline(self) -> None:
        """Test waiting continues while time remains."""
        assert should_keep_waiting(0.5, 1.5, 0) is True

    def test_deadline_reached(self) -> None:
        """Test waiting stops at the deadline."""
        assert should_keep_waiting(1.5, 1.5, 0) is False
        assert should_keep_waiting(2.0, 1.5, 3) is False

    def test_min_wait_granularity(self) -> None:
        """Test waiting stops when less than one wait granule remains."""
        assert should_keep_waiting(0.4, 1.5, 0, min_wait=1.0) is True
        assert should_keep_waiting(0.6, 1.5, 0, min_wait=1.0) is False

    def test_quiet_period_after_reply(self) -> None:
        """Test the quiet period ends collection once a reply exists."""
        assert should_keep_waiting(0.3, 5.0, 1, quiet_period=0.1, idle=0.2) is False
        assert should_keep_waiting(0.3, 5.0, 1, quiet_period=0.1, idle=0.05) is True

    def test_quiet_period_without_replies(self) -> None:
        """Test the quiet period is ignored while nobody has answered."""
        assert should_keep_waiting(3.0, 5.0, 0, quiet_period=0.1, idle=3.0) is True

    def test_quiet_period_disabled(self) -> None:
        """Test no early stop without a quiet period."""
        assert should_keep_waiting(3.0, 5.0, 4, quiet_period=None, idle=3.0) is True

    def test_cancelled(self) -> None:
        """Test cancellation always stops."""
        assert should_keep_waiting(0.0, 5.0, 0, cancelled=True) is False


class TestResponseCollector:
    """Test reply deduplication and bookkeeping."""

    @pytest.fixture
    def clock(self) -> FakeClock:
        return FakeClock()

    @pytest.fixture
    def collector(self, clock: FakeClock) -> ResponseCollector:
        return ResponseCollector(2.0, clock=clock)

    def test_add_payload(self, collector: ResponseCollector) -> None:
        """Test a valid pong is recorded under the worker identity."""
        response = collector.add_payload(b'{"celery@nero": {"ok": "pong"}}')

        assert response is not None
        assert response.worker == "celery@nero"
        assert response.status == "pong"
        assert set(collector.responses) == {"celery@nero"}

    def test_last_write_wins(self, collector: ResponseCollector, clock: FakeClock) -> None:
        """Test repeated replies from one worker keep a single, latest entry."""
        first = collector.add_payload(b'{"celery@a": {"ok": "pong"}}')
        clock.advance(0.01)
        second = collector.add_payload(b'{"hostname": "celery@a"}')

        assert collector.count == 1
        assert collector.responses["celery@a"] is second
        assert second.received_at >= first.received_at

    def test_as_result(self, collector: ResponseCollector) -> None:
        """Test the caller-facing record carries status and an ISO timestamp."""
        response = collector.add("celery@a")
        result = response.as_result()

        assert result["status"] == "pong"
        assert datetime.fromisoformat(result["observed_at"]) == response.received_at

    def test_many_duplicates(self, collector: ResponseCollector) -> None:
        """Test N replies from the same worker collapse to one entry."""
        for _ in range(10):
            collector.add_payload(b'{"celery@dup": {"ok": "pong"}}')
        collector.add_payload(b'{"celery@other": {"ok": "pong"}}')
        assert sorted(collector.responses) == ["celery@dup", "celery@other"]

    def test_malformed_skipped(self, collector: ResponseCollector) -> None:
        """Test truncated JSON is skipped without a spurious empty key."""
        assert collector.add_payload(b'{"celery@nero": {"ok": ') is None
        collector.add_payload(b'{"celery@nero": {"ok": "pong"}}')

        assert "" not in collector.responses
        assert list(collector.responses) == ["celery@nero"]

    def test_invalid_skipped(self, collector: ResponseCollector) -> None:
        """Test documents without worker evidence are not recorded."""
        assert collector.add_payload(b'{"status": "ok"}') is None
        assert collector.add_payload(b'{"reporter": "x@y"}') is None
        assert collector.count == 0

    def test_responses_is_snapshot(self, collector: ResponseCollector) -> None:
        """Test callers cannot mutate the collector through the snapshot."""
        collector.add("celery@a")
        snapshot = collector.responses
        snapshot.clear()
        assert collector.count == 1

    def test_deadline(self, collector: ResponseCollector, clock: FakeClock) -> None:
        """Test keep_waiting follows the deadline."""
        collector.start()
        assert collector.keep_waiting()
        clock.advance(2.0)
        assert not collector.keep_waiting()
        assert collector.remaining == 0.0

    def test_quiet_period(self, clock: FakeClock) -> None:
        """Test early stop after a quiet period following a reply."""
        collector = ResponseCollector(5.0, quiet_period=0.1, clock=clock)
        collector.start()
        clock.advance(1.0)
        assert collector.keep_waiting()

        collector.add_payload(b'{"celery@a": {"ok": "pong"}}')
        assert collector.next_wait() == pytest.approx(0.1)
        clock.advance(0.05)
        assert collector.keep_waiting()
        clock.advance(0.1)
        assert not collector.keep_waiting()

    def test_activity_resets_quiet_period(self, clock: FakeClock) -> None:
        """Test any inbound payload, even malformed, resets the idle timer."""
        collector = ResponseCollector(5.0, quiet_period=0.1, clock=clock)
        collector.start()
        collector.add_payload(b'{"celery@a": {"ok": "pong"}}')
        clock.advance(0.08)
        collector.add_payload(b"garbage")
        clock.advance(0.08)
        assert collector.keep_waiting()

    def test_next_wait_without_replies(self, clock: FakeClock) -> None:
        """Test the next wait is the remaining time while nobody answered."""
        collector = ResponseCollector(5.0, quiet_period=0.1, clock=clock)
        collector.start()
        clock.advance(1.0)
        assert collector.next_wait() == pytest.approx(4.0)

    def test_cancel_event(self, clock: FakeClock) -> None:
        """Test a set cancel event stops collection."""
        cancel = asyncio.Event()
        collector = ResponseCollector(5.0, cancel=cancel, clock=clock)
        assert collector.keep_waiting()
        cancel.set()
        assert collector.cancelled
        assert not collector.keep_waiting()


class TestWaitFirst:
    """Test racing a receive against timeout and cancellation."""

    @pytest.mark.asyncio
    async def test_receive_wins(self) -> None:
        """Test the received value is returned."""
        queue: asyncio.Queue = asyncio.Queue()
        queue.put_nowait(b"payload")
        assert await wait_first(queue.get(), timeout=1.0) == b"payload"

    @pytest.mark.asyncio
    async def test_timeout(self) -> None:
        """Test None is returned when nothing arrives in time."""
        queue: asyncio.Queue = asyncio.Queue()
        assert await wait_first(queue.get(), timeout=0.01) is None

    @pytest.mark.asyncio
    async def test_cancel(self) -> None:
        """Test a set cancel event wins over a pending receive."""
        queue: asyncio.Queue = asyncio.Queue()
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.01, cancel.set)
        assert await wait_first(queue.get(), timeout=5.0, cancel=cancel) is None

    @pytest.mark.asyncio
    async def test_receive_error_propagates(self) -> None:
        """Test errors raised by the receive are re-raised."""

        async def broken() -> bytes:
            raise ConnectionError("gone")

        with pytest.raises(ConnectionError):
            await wait_first(broken(), timeout=1.0)
