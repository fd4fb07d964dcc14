"""Celery pidbox wire protocol: control messages, envelopes and reply parsing."""

from fast_celery_ping.protocol.codec import IdentityMatch, MatchKind, ProtocolCodec
from fast_celery_ping.protocol.messages import (
    BINDING_KEY,
    FANOUT_CHANNEL,
    KEY_SEPARATOR,
    PIDBOX_EXCHANGE,
    PRIORITY_STEPS,
    REPLY_EXCHANGE,
    REPLY_QUEUE_SUFFIX,
    ControlMessage,
    Envelope,
    ReplyTo,
    WireFormat,
    WorkerResponse,
)

__all__ = [
    "BINDING_KEY",
    "FANOUT_CHANNEL",
    "KEY_SEPARATOR",
    "PIDBOX_EXCHANGE",
    "PRIORITY_STEPS",
    "REPLY_EXCHANGE",
    "REPLY_QUEUE_SUFFIX",
    "ControlMessage",
    "Envelope",
    "IdentityMatch",
    "MatchKind",
    "ProtocolCodec",
    "ReplyTo",
    "WireFormat",
    "WorkerResponse",
]
