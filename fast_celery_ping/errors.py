"""Exception hierarchy for the ping transports."""


class PingError(Exception):
    """Base class for every error raised by fast-celery-ping."""


class ConfigurationError(PingError):
    """Transport used before it was connected, or configured inconsistently."""


class BrokerConnectError(PingError):
    """Broker unreachable, bad address, or connection lost."""


class DeclareError(PingError):
    """Exchange, queue or binding setup failed."""


class PublishError(PingError):
    """The ping broadcast could not be published."""


class DecodeError(PingError, ValueError):
    """A reply payload could not be parsed; callers skip it."""
