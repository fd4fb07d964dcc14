"""Redis transport for the pidbox ping.

Mirrors kombu's Redis virtual transport: the control message is PUBLISHed on
the fanout channel, workers resolve the reply routing key through the
binding set and LPUSH their reply onto the reply queue (or one of its
priority variants), which is drained here with BRPOP.
"""

import asyncio
import math
from typing import Optional, Sequence

import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError

from fast_celery_ping.config import BrokerConfig
from fast_celery_ping.core.collector import ResponseCollector, wait_first
from fast_celery_ping.errors import BrokerConnectError, ConfigurationError, PublishError
from fast_celery_ping.protocol.codec import ProtocolCodec
from fast_celery_ping.protocol.messages import (
    BINDING_KEY,
    ENVELOPE_EXPIRES_SECONDS,
    FANOUT_CHANNEL,
    KEY_SEPARATOR,
    PRIORITY_STEPS,
    REPLY_QUEUE_SUFFIX,
    WireFormat,
    WorkerResponse,
)

logger = structlog.get_logger(__name__)


def reply_queue_name(token: str) -> str:
    """Base reply address for a reply channel token."""
    return f"{token}.{REPLY_QUEUE_SUFFIX}"


def reply_addresses(queue: str) -> list[str]:
    """The base reply queue followed by its priority-tagged variants."""
    return [queue] + [f"{queue}{KEY_SEPARATOR}{step}" for step in PRIORITY_STEPS]


def binding_member(token: str, queue: str, pattern: str = "") -> str:
    """Binding-set entry mapping a routing key to a queue."""
    return KEY_SEPARATOR.join((token, pattern, queue))


class RedisBroker:
    """Ping Celery workers through a Redis broker.

    Attributes:
        config: Connection parameters.
        codec: Protocol codec.
        client: Redis async client (set by :meth:`connect`).
        wait_granularity: BRPOP timeout per loop iteration, in seconds.
        binding_delay: Pause after registering the reply binding.
    """

    wait_granularity: float = 1
    binding_delay: float = 0.05

    def __init__(
        self,
        config: BrokerConfig,
        codec: Optional[ProtocolCodec] = None,
    ) -> None:
        self.config = config
        self.codec = codec or ProtocolCodec()
        self.client: Optional[redis.Redis] = None

    @property
    def broadcast_channel(self) -> str:
        return FANOUT_CHANNEL.format(db=self.config.redis_db)

    async def connect(self) -> None:
        """Create the client and verify it with PING.

        Raises:
            BrokerConnectError: If the URL is invalid or Redis is unreachable.
        """
        try:
            self.client = redis.from_url(
                self.config.resolved_url(),
                decode_responses=False,
            )
        except ValueError as exc:
            raise BrokerConnectError(f"Failed to parse Redis URL: {exc}") from exc

        try:
            await self.health()
        except BrokerConnectError:
            await self.close()
            raise

        await logger.ainfo("redis_connected", channel=self.broadcast_channel)

    async def close(self) -> None:
        if self.client is None:
            return
        client, self.client = self.client, None
        await client.aclose()
        await logger.adebug("redis_disconnected")

    async def health(self) -> None:
        client = self._require_client()
        try:
            await client.ping()
        except (RedisError, OSError) as exc:
            raise BrokerConnectError(f"Redis health check failed: {exc}") from exc

    def _require_client(self) -> redis.Redis:
        if self.client is None:
            raise ConfigurationError("Redis client not initialized. Call connect() first.")
        return self.client

    async def ping(
        self,
        timeout: float,
        destinations: Optional[Sequence[str]] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> dict[str, WorkerResponse]:
        """Broadcast a ping and collect replies.

        The reply binding and every reply key are removed before returning,
        on success, timeout and error alike.

        Raises:
            ConfigurationError: If not connected.
            PublishError: If the broadcast or binding registration failed.
            BrokerConnectError: If Redis failed mid-collection before any reply.
        """
        client = self._require_client()

        token = self.codec.new_reply_channel()
        queue = reply_queue_name(token)
        keys = reply_addresses(queue)
        binding = binding_member(token, queue)
        payload = self.codec.encode_ping(
            token,
            destinations,
            WireFormat.ENVELOPED,
            expires_in=max(ENVELOPE_EXPIRES_SECONDS, math.ceil(timeout) + 1),
        )

        collector = ResponseCollector(
            timeout,
            self.codec,
            min_wait=self.wait_granularity,
            cancel=cancel,
        )

        try:
            try:
                await client.publish(self.broadcast_channel, payload)
                await client.sadd(BINDING_KEY, binding)
            except (RedisError, OSError) as exc:
                raise PublishError(f"Failed to send ping message: {exc}") from exc

            await logger.adebug(
                "ping_published",
                channel=self.broadcast_channel,
                reply_queue=queue,
                destinations=list(destinations or []),
            )

            await asyncio.sleep(self.binding_delay)
            collector.start()
            await self._collect(client, keys, collector)
        finally:
            await self._cleanup(client, binding, keys)

        if collector.cancelled:
            await logger.ainfo("ping_cancelled", responses=collector.count)
        return collector.responses

    async def _collect(
        self,
        client: redis.Redis,
        keys: list[str],
        collector: ResponseCollector,
    ) -> None:
        while collector.keep_waiting():
            try:
                # Client-side bound in case a half-open socket never answers.
                item = await wait_first(
                    client.brpop(keys, timeout=self.wait_granularity),
                    timeout=self.wait_granularity + collector.remaining,
                    cancel=collector.cancel,
                )
            except (RedisError, OSError) as exc:
                if collector.count:
                    await logger.awarning(
                        "reply_receive_failed",
                        error=str(exc),
                        responses=collector.count,
                    )
                    return
                raise BrokerConnectError(f"Failed to receive response: {exc}") from exc

            if not item:
                continue

            _key, body = item
            collector.add_payload(body)

    async def _cleanup(self, client: redis.Redis, binding: str, keys: list[str]) -> None:
        try:
            await client.srem(BINDING_KEY, binding)
        except (RedisError, OSError) as exc:
            await logger.awarning("reply_cleanup_failed", key=BINDING_KEY, error=str(exc))

        try:
            await client.delete(*keys)
        except (RedisError, OSError) as exc:
            await logger.awarning("reply_cleanup_failed", key=keys[0], error=str(exc))
