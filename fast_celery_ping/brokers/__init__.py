"""Broker transports: Redis (pub/sub + lists) and AMQP (fanout/direct exchanges)."""

from fast_celery_ping.brokers.amqp_broker import AMQPBroker
from fast_celery_ping.brokers.base import Broker
from fast_celery_ping.brokers.factory import create_broker
from fast_celery_ping.brokers.redis_broker import RedisBroker

__all__ = ["AMQPBroker", "Broker", "RedisBroker", "create_broker"]
