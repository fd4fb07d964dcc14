"""Pick a transport from the broker URL."""

from typing import Optional

from fast_celery_ping.brokers.amqp_broker import AMQPBroker
from fast_celery_ping.brokers.base import Broker
from fast_celery_ping.brokers.redis_broker import RedisBroker
from fast_celery_ping.config import BrokerConfig
from fast_celery_ping.protocol.codec import ProtocolCodec


def create_broker(config: BrokerConfig, codec: Optional[ProtocolCodec] = None) -> Broker:
    """Return an unconnected broker matching ``config.url``'s scheme."""
    if config.broker_type == "amqp":
        return AMQPBroker(config, codec)
    return RedisBroker(config, codec)
