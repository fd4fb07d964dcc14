"""AMQP (RabbitMQ) transport for the pidbox ping.

The ping goes to the ``celery.pidbox`` fanout exchange; workers reply through
the ``reply.celery.pidbox`` direct exchange to a temporary exclusive queue
bound with the reply channel token.
"""

import asyncio
from typing import Any, Optional, Sequence

import aio_pika
import structlog
from aio_pika import DeliveryMode, ExchangeType
from aio_pika.abc import (
    AbstractChannel,
    AbstractConnection,
    AbstractExchange,
    AbstractIncomingMessage,
    AbstractQueue,
)
from aio_pika.exceptions import AMQPException, ChannelInvalidStateError

from fast_celery_ping.config import BrokerConfig
from fast_celery_ping.core.collector import DEFAULT_QUIET_PERIOD, ResponseCollector, wait_first
from fast_celery_ping.errors import (
    BrokerConnectError,
    ConfigurationError,
    DeclareError,
    PublishError,
)
from fast_celery_ping.protocol.codec import ProtocolCodec
from fast_celery_ping.protocol.messages import (
    PIDBOX_EXCHANGE,
    REPLY_EXCHANGE,
    WireFormat,
    WorkerResponse,
)

logger = structlog.get_logger(__name__)

AMQP_ERRORS = (AMQPException, ChannelInvalidStateError, OSError)

# Pushed into the reply inbox when the channel closes mid-wait.
CHANNEL_CLOSED = object()


class AMQPBroker:
    """Ping Celery workers through an AMQP broker.

    Attributes:
        config: Connection parameters.
        codec: Protocol codec.
        quiet_period: Stop this many seconds after the last reply once at
            least one worker answered; ``None`` waits for the full timeout.
    """

    def __init__(
        self,
        config: BrokerConfig,
        codec: Optional[ProtocolCodec] = None,
        quiet_period: Optional[float] = DEFAULT_QUIET_PERIOD,
    ) -> None:
        self.config = config
        self.codec = codec or ProtocolCodec()
        self.quiet_period = quiet_period
        self.connection: Optional[AbstractConnection] = None
        self.channel: Optional[AbstractChannel] = None
        self.pidbox_exchange: Optional[AbstractExchange] = None
        self.reply_exchange: Optional[AbstractExchange] = None

    async def connect(self) -> None:
        """Open connection and channel, then declare both pidbox exchanges.

        Raises:
            BrokerConnectError: If the broker is unreachable.
            DeclareError: If an exchange cannot be declared.
        """
        try:
            self.connection = await aio_pika.connect(self.config.resolved_url())
            self.channel = await self.connection.channel()
        except (*AMQP_ERRORS, asyncio.TimeoutError) as exc:
            await self.close()
            raise BrokerConnectError(f"Failed to connect to AMQP broker: {exc}") from exc

        try:
            self.pidbox_exchange = await self._declare_exchange(PIDBOX_EXCHANGE, ExchangeType.FANOUT)
            self.reply_exchange = await self._declare_exchange(REPLY_EXCHANGE, ExchangeType.DIRECT)
        except DeclareError:
            await self.close()
            raise

        await self.health()
        await logger.ainfo("amqp_connected", exchange=PIDBOX_EXCHANGE)

    async def _declare_exchange(self, name: str, kind: ExchangeType) -> AbstractExchange:
        """Declare passively first; only declare for real if that fails."""
        channel = self._require_channel()
        try:
            return await channel.declare_exchange(name, kind, durable=True, passive=True)
        except AMQP_ERRORS as exc:
            await logger.adebug("exchange_passive_declare_failed", exchange=name, error=str(exc))

        try:
            # A failed passive declare closes the channel on the broker side.
            if channel.is_closed:
                channel = self.channel = await self._require_connection().channel()
            return await channel.declare_exchange(name, kind, durable=True, auto_delete=False)
        except AMQP_ERRORS as exc:
            raise DeclareError(f"Failed to declare {name} exchange: {exc}") from exc

    async def close(self) -> None:
        channel, self.channel = self.channel, None
        connection, self.connection = self.connection, None
        self.pidbox_exchange = self.reply_exchange = None

        if channel is not None and not channel.is_closed:
            await channel.close()
        if connection is not None and not connection.is_closed:
            await connection.close()
            await logger.adebug("amqp_disconnected")

    async def health(self) -> None:
        connection = self._require_connection()
        if connection.is_closed:
            raise BrokerConnectError("AMQP connection is closed")
        self._require_channel()

    def _require_connection(self) -> AbstractConnection:
        if self.connection is None:
            raise ConfigurationError("AMQP connection not initialized. Call connect() first.")
        return self.connection

    def _require_channel(self) -> AbstractChannel:
        if self.channel is None:
            raise ConfigurationError("AMQP channel not initialized. Call connect() first.")
        return self.channel

    async def ping(
        self,
        timeout: float,
        destinations: Optional[Sequence[str]] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> dict[str, WorkerResponse]:
        """Broadcast a ping and collect replies.

        Raises:
            ConfigurationError: If not connected.
            DeclareError: If the reply queue cannot be declared or bound.
            PublishError: If the broadcast fails.
            BrokerConnectError: If the channel closes before any reply arrived.
        """
        self._require_connection()
        channel = self._require_channel()
        if self.pidbox_exchange is None or self.reply_exchange is None:
            raise ConfigurationError("AMQP exchanges not declared. Call connect() first.")

        token = self.codec.new_reply_channel()

        try:
            queue = await channel.declare_queue(
                token, durable=False, exclusive=True, auto_delete=True
            )
        except AMQP_ERRORS as exc:
            raise DeclareError(f"Failed to declare reply queue: {exc}") from exc

        try:
            await queue.bind(self.reply_exchange, routing_key=token)
        except AMQP_ERRORS as exc:
            await self._delete_queue(queue)
            raise DeclareError(f"Failed to bind reply queue: {exc}") from exc

        payload = self.codec.encode_ping(token, destinations, WireFormat.RAW)
        try:
            await self.pidbox_exchange.publish(
                aio_pika.Message(
                    payload,
                    content_type="application/json",
                    delivery_mode=DeliveryMode.PERSISTENT,
                ),
                routing_key="",
            )
        except AMQP_ERRORS as exc:
            await self._delete_queue(queue)
            raise PublishError(f"Failed to publish ping message: {exc}") from exc

        await logger.adebug(
            "ping_published",
            exchange=PIDBOX_EXCHANGE,
            reply_queue=token,
            destinations=list(destinations or []),
        )

        inbox: asyncio.Queue[Any] = asyncio.Queue()

        async def on_message(message: AbstractIncomingMessage) -> None:
            inbox.put_nowait(message.body)

        def on_closed(*_: Any) -> None:
            inbox.put_nowait(CHANNEL_CLOSED)

        collector = ResponseCollector(
            timeout,
            self.codec,
            quiet_period=self.quiet_period,
            cancel=cancel,
        )

        try:
            consumer_tag = await queue.consume(on_message, no_ack=True)
        except AMQP_ERRORS as exc:
            await self._delete_queue(queue)
            raise DeclareError(f"Failed to start consuming replies: {exc}") from exc

        channel.close_callbacks.add(on_closed)
        try:
            collector.start()
            await self._collect(channel, inbox, collector)
        finally:
            channel.close_callbacks.discard(on_closed)
            await self._cancel_consumer(queue, consumer_tag)

        if collector.cancelled:
            await logger.ainfo("ping_cancelled", responses=collector.count)
        return collector.responses

    async def _collect(
        self,
        channel: AbstractChannel,
        inbox: "asyncio.Queue[Any]",
        collector: ResponseCollector,
    ) -> None:
        while collector.keep_waiting():
            body = None
            if not channel.is_closed:
                body = await wait_first(inbox.get(), collector.next_wait(), collector.cancel)

            if channel.is_closed or body is CHANNEL_CLOSED:
                if collector.count:
                    await logger.awarning(
                        "reply_receive_failed",
                        error="channel closed",
                        responses=collector.count,
                    )
                    return
                raise BrokerConnectError("AMQP channel closed while waiting for replies")

            if body is not None:
                collector.add_payload(body)

    async def _cancel_consumer(self, queue: AbstractQueue, consumer_tag: str) -> None:
        # The exclusive auto-delete queue goes away once its consumer does.
        try:
            await queue.cancel(consumer_tag)
        except AMQP_ERRORS as exc:
            await logger.awarning("reply_cleanup_failed", queue=queue.name, error=str(exc))

    async def _delete_queue(self, queue: AbstractQueue) -> None:
        """Drop a reply queue that never got a consumer."""
        try:
            await queue.delete(if_unused=False, if_empty=False)
        except AMQP_ERRORS as exc:
            await logger.awarning("reply_cleanup_failed", queue=queue.name, error=str(exc))
