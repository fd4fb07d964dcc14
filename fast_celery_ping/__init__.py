"""fast-celery-ping: discover live Celery workers over the pidbox control bus.

Broadcasts a ``ping`` control message through Redis or AMQP and collects the
``pong`` replies within a bounded time window.
"""

__version__ = "1.0.0"

__all__ = ["__version__"]
