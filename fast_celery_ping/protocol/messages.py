"""Celery pidbox control messages and their wire envelopes."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Names fixed by kombu/Celery; workers only answer when these match exactly.
PIDBOX_EXCHANGE = "celery.pidbox"
REPLY_EXCHANGE = "reply.celery.pidbox"
REPLY_QUEUE_SUFFIX = "reply.celery.pidbox"
BINDING_KEY = "_kombu.binding.reply.celery.pidbox"
KEY_SEPARATOR = "\x06\x16"
PRIORITY_STEPS = (3, 6, 9)
FANOUT_CHANNEL = "/{db}." + PIDBOX_EXCHANGE

ENVELOPE_EXPIRES_SECONDS = 10


class WireFormat(str, Enum):
    """How a control message is framed on the wire.

    Attributes:
        RAW: Plain JSON control message (AMQP).
        ENVELOPED: Base64 body wrapped in a kombu envelope (Redis).
    """

    RAW = "raw"
    ENVELOPED = "enveloped"


class ReplyTo(BaseModel):
    """Where workers should route their replies."""

    exchange: str = Field(default=REPLY_EXCHANGE, description="Reply exchange")
    routing_key: str = Field(description="Reply channel token")


class ControlMessage(BaseModel):
    """A pidbox control command as Celery workers expect it.

    Attributes:
        method: Control command name.
        arguments: Command arguments (empty for ping).
        destination: Target worker names, ``None`` to broadcast.
        pattern: Destination pattern (unused, always null).
        matcher: Destination matcher (unused, always null).
        ticket: Unique request identifier.
        reply_to: Reply routing descriptor.
    """

    method: str = Field(default="ping", description="Control method")
    arguments: dict[str, Any] = Field(default_factory=dict)
    destination: Optional[list[str]] = Field(default=None)
    pattern: Optional[str] = None
    matcher: Optional[str] = None
    ticket: str = Field(default_factory=lambda: str(uuid.uuid4()))
    reply_to: ReplyTo

    @field_validator("destination", mode="before")
    @classmethod
    def _empty_means_broadcast(cls, value: Any) -> Any:
        if value is not None and len(value) == 0:
            return None
        return list(value) if value is not None else None

    def serialize(self) -> str:
        """Serialize to compact JSON."""
        return self.model_dump_json()


class DeliveryInfo(BaseModel):
    exchange: str = PIDBOX_EXCHANGE
    routing_key: str = ""


class EnvelopeHeaders(BaseModel):
    clock: int = 1
    expires: int = Field(description="Absolute unix time (seconds) after which workers drop the message")


class EnvelopeProperties(BaseModel):
    delivery_mode: int = 2
    delivery_info: DeliveryInfo = Field(default_factory=DeliveryInfo)
    priority: int = 0
    body_encoding: str = "base64"
    delivery_tag: str = Field(default_factory=lambda: str(uuid.uuid4()))


class Envelope(BaseModel):
    """kombu message framing used by the Redis transport.

    ``body`` holds the base64 text of the serialized control message.
    """

    model_config = ConfigDict(populate_by_name=True)

    body: str
    content_encoding: str = Field(default="utf-8", alias="content-encoding")
    content_type: str = Field(default="application/json", alias="content-type")
    headers: EnvelopeHeaders
    properties: EnvelopeProperties = Field(default_factory=EnvelopeProperties)

    def serialize(self) -> str:
        """Serialize to JSON using the dashed wire keys."""
        return self.model_dump_json(by_alias=True)


class WorkerResponse(BaseModel):
    """A pong observed from one worker.

    Attributes:
        worker: Worker identity, usually ``name@host``.
        status: Reply status, ``pong`` on success.
        received_at: When the reply was processed.
    """

    worker: str = Field(min_length=1)
    status: str = "pong"
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def as_result(self) -> dict[str, str]:
        """Return the ``{status, observed_at}`` record handed to callers."""
        return {
            "status": self.status,
            "observed_at": self.received_at.isoformat(),
        }
