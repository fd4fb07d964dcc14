"""Encoding of ping requests and parsing of worker replies.

Workers in the wild answer in a handful of shapes. Replies are matched
against an ordered list of matchers:

1. worker-keyed pong: ``{"celery@nero": {"ok": "pong"}}``
2. identity field at top level: ``{"hostname": "worker@host"}``
3. identity field nested under ``data`` or ``worker``
4. generic scan (identity extraction only): any string value containing
   ``@``, or any string under a key containing ``host``
"""

import base64
import binascii
import json
import math
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Sequence

from fast_celery_ping.errors import DecodeError
from fast_celery_ping.protocol.messages import (
    ENVELOPE_EXPIRES_SECONDS,
    ControlMessage,
    Envelope,
    EnvelopeHeaders,
    ReplyTo,
    WireFormat,
)


IDENTITY_FIELDS = ("hostname", "worker", "nodename", "node", "name")
NESTED_FIELDS = ("data", "worker")


class MatchKind(str, Enum):
    WORKER_KEYED_PONG = "worker_keyed_pong"
    IDENTITY_FIELD = "identity_field"
    NESTED_IDENTITY_FIELD = "nested_identity_field"
    GENERIC_SCAN = "generic_scan"


@dataclass(frozen=True)
class IdentityMatch:
    """Result of a successful matcher."""

    identity: str
    kind: MatchKind

    @property
    def is_evidence(self) -> bool:
        """Whether this match proves the document came from a worker."""
        return self.kind is not MatchKind.GENERIC_SCAN


Matcher = Callable[[dict[str, Any]], Optional[IdentityMatch]]


def _match_worker_keyed_pong(document: dict[str, Any]) -> Optional[IdentityMatch]:
    for key, value in document.items():
        if "@" in key and isinstance(value, dict) and value.get("ok") == "pong":
            return IdentityMatch(key, MatchKind.WORKER_KEYED_PONG)
    return None


def _first_identity_field(document: dict[str, Any]) -> Optional[str]:
    for field in IDENTITY_FIELDS:
        value = document.get(field)
        if isinstance(value, str) and value:
            return value
    return None


def _match_identity_field(document: dict[str, Any]) -> Optional[IdentityMatch]:
    identity = _first_identity_field(document)
    if identity:
        return IdentityMatch(identity, MatchKind.IDENTITY_FIELD)
    return None


def _match_nested_identity_field(document: dict[str, Any]) -> Optional[IdentityMatch]:
    for container in NESTED_FIELDS:
        nested = document.get(container)
        if isinstance(nested, dict):
            identity = _first_identity_field(nested)
            if identity:
                return IdentityMatch(identity, MatchKind.NESTED_IDENTITY_FIELD)
    return None


def _match_generic_scan(document: dict[str, Any]) -> Optional[IdentityMatch]:
    for key, value in document.items():
        if isinstance(value, str) and value and ("@" in value or "host" in key):
            return IdentityMatch(value, MatchKind.GENERIC_SCAN)
    return None


MATCHERS: tuple[Matcher, ...] = (
    _match_worker_keyed_pong,
    _match_identity_field,
    _match_nested_identity_field,
    _match_generic_scan,
)


class ProtocolCodec:
    """Stateless translation between control messages and wire bytes."""

    def __init__(self, matchers: Sequence[Matcher] = MATCHERS) -> None:
        self.matchers = tuple(matchers)

    def new_reply_channel(self) -> str:
        """Generate a fresh reply channel token."""
        return str(uuid.uuid4())

    def encode_ping(
        self,
        reply_channel: str,
        destinations: Optional[Sequence[str]] = None,
        wire_format: WireFormat = WireFormat.RAW,
        *,
        expires_in: float = ENVELOPE_EXPIRES_SECONDS,
    ) -> bytes:
        """Build a ping control message.

        Args:
            reply_channel: Token workers use as the reply routing key.
            destinations: Worker names to target; ``None`` or empty broadcasts.
            wire_format: RAW JSON or a base64 ENVELOPED kombu message.
            expires_in: Seconds until workers should discard the message
                (ENVELOPED only).

        Returns:
            UTF-8 encoded JSON.
        """
        message = ControlMessage(
            destination=destinations,
            reply_to=ReplyTo(routing_key=reply_channel),
        )
        payload = message.serialize()

        if wire_format is WireFormat.RAW:
            return payload.encode()

        if wire_format is WireFormat.ENVELOPED:
            envelope = Envelope(
                body=base64.b64encode(payload.encode()).decode("ascii"),
                headers=EnvelopeHeaders(
                    expires=int(time.time()) + math.ceil(expires_in),
                ),
            )
            return envelope.serialize().encode()

        raise ValueError(f"Unsupported wire format: {wire_format!r}")

    def decode_response(self, data: bytes | str) -> dict[str, Any]:
        """Parse a reply, unwrapping one level of base64 enveloping.

        Raises:
            DecodeError: If the payload or its embedded body is not a JSON object.
        """
        document = self._load_object(data, "response")

        body = document.get("body")
        if isinstance(body, str):
            try:
                raw_body = base64.b64decode(body, validate=True)
            except (binascii.Error, ValueError) as exc:
                raise DecodeError(f"Failed to decode base64 body: {exc}") from exc
            return self._load_object(raw_body, "decoded body")

        return document

    @staticmethod
    def _load_object(data: bytes | str, what: str) -> dict[str, Any]:
        try:
            document = json.loads(data)
        except (json.JSONDecodeError, UnicodeDecodeError, TypeError) as exc:
            raise DecodeError(f"Failed to parse {what}: {exc}") from exc

        if not isinstance(document, dict):
            raise DecodeError(f"Failed to parse {what}: expected a JSON object")
        return document

    def match(self, document: dict[str, Any]) -> Optional[IdentityMatch]:
        """Run the matchers in order and return the first hit."""
        for matcher in self.matchers:
            result = matcher(document)
            if result is not None:
                return result
        return None

    def validate_response(self, document: dict[str, Any]) -> bool:
        """Whether the document carries evidence of a replying worker."""
        for matcher in self.matchers:
            result = matcher(document)
            if result is not None and result.is_evidence:
                return True
        return False

    def extract_identity(self, document: dict[str, Any]) -> str:
        """Return the replying worker's identity, or ``""`` if none is found."""
        result = self.match(document)
        return result.identity if result else ""

    @staticmethod
    def format_pong(worker: str, status: str = "pong") -> dict[str, dict[str, str]]:
        """Render a reply the way Celery's ``inspect ping`` reports it."""
        return {worker: {"ok": status}}
