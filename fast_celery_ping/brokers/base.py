"""Broker contract shared by the Redis and AMQP transports."""

import asyncio
from typing import Optional, Protocol, Sequence, runtime_checkable

from fast_celery_ping.protocol.messages import WorkerResponse


@runtime_checkable
class Broker(Protocol):
    """Connect, broadcast one ping, collect replies, disconnect.

    Implementations compose :class:`~fast_celery_ping.protocol.codec.ProtocolCodec`
    and :class:`~fast_celery_ping.core.collector.ResponseCollector`.
    """

    async def connect(self) -> None:
        """Open the broker connection.

        Raises:
            BrokerConnectError: If the broker cannot be reached.
        """

    async def close(self) -> None:
        """Close the connection; safe to call when never connected."""

    async def health(self) -> None:
        """Check liveness.

        Raises:
            ConfigurationError: If not connected.
            BrokerConnectError: If the probe fails.
        """

    async def ping(
        self,
        timeout: float,
        destinations: Optional[Sequence[str]] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> dict[str, WorkerResponse]:
        """Broadcast a ping and collect replies until ``timeout`` seconds pass.

        Returns:
            Replies keyed by worker identity; empty if nobody answered.
        """
