"""Configuration: immutable settings layered from defaults, environment and flags."""

import os
import re
from typing import Any, Literal, Mapping, Optional
from urllib.parse import quote, urlsplit, urlunsplit

from pydantic import BaseModel, ConfigDict, Field, model_validator

DEFAULT_BROKER_URL = "redis://localhost:6379/0"
DEFAULT_TIMEOUT = 1.5

BrokerType = Literal["redis", "amqp"]

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?|\.\d+)\s*(ms|s|m|h)?\s*$")
_DURATION_UNITS = {None: 1.0, "ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def detect_broker_type(broker_url: str) -> BrokerType:
    """Infer the transport from the URL scheme, defaulting to Redis."""
    if not broker_url:
        return "redis"
    try:
        scheme = urlsplit(broker_url).scheme.lower()
    except ValueError:
        return "redis"
    if scheme in ("amqp", "amqps"):
        return "amqp"
    return "redis"


def parse_duration(value: str) -> float:
    """Parse ``"1.5s"``, ``"500ms"``, ``"2m"`` or a bare number of seconds.

    Raises:
        ValueError: If the value is not a duration.
    """
    match = _DURATION_RE.match(value)
    if not match:
        raise ValueError(f"invalid duration: {value!r}")
    amount, unit = match.groups()
    return float(amount) * _DURATION_UNITS[unit]


class BrokerConfig(BaseModel):
    """Connection parameters handed to a transport.

    Attributes:
        url: Broker URL (``redis://`` or ``amqp://``).
        database: Redis database index; 0 keeps whatever the URL says.
        username: Overrides the URL user when set.
        password: Overrides the URL password when set.
    """

    model_config = ConfigDict(frozen=True)

    url: str = Field(min_length=1)
    database: int = Field(default=0, ge=0)
    username: str = ""
    password: str = ""

    @property
    def broker_type(self) -> BrokerType:
        return detect_broker_type(self.url)

    def resolved_url(self) -> str:
        """Return the URL with explicit database and credentials applied."""
        parts = urlsplit(self.url)
        if not (self.username or self.password or self.database):
            return self.url

        userinfo, _, hostport = parts.netloc.rpartition("@")
        user, _, password = userinfo.partition(":")
        if self.username:
            user = quote(self.username, safe="")
        if self.password:
            password = quote(self.password, safe="")

        netloc = hostport
        if user or password:
            netloc = f"{user}:{password}@{hostport}" if password else f"{user}@{hostport}"

        path = parts.path
        if self.database and self.broker_type == "redis":
            path = f"/{self.database}"

        return urlunsplit((parts.scheme, netloc, path, parts.query, parts.fragment))

    @property
    def redis_db(self) -> int:
        """Database index the Redis client ends up using."""
        if self.database:
            return self.database
        path = urlsplit(self.url).path.strip("/")
        return int(path) if path.isdigit() else 0


class Settings(BaseModel):
    """Everything a single run needs, frozen once built."""

    model_config = ConfigDict(frozen=True)

    broker_url: str = Field(default=DEFAULT_BROKER_URL, min_length=1)
    broker_type: BrokerType = "redis"
    database: int = Field(default=0, ge=0)
    username: str = ""
    password: str = ""
    timeout: float = Field(default=DEFAULT_TIMEOUT, gt=0)
    output_format: Literal["text", "json"] = "text"
    verbose: bool = False
    destinations: tuple[str, ...] = ()
    retry_attempts: int = Field(default=3, gt=0)

    @model_validator(mode="before")
    @classmethod
    def _derive_broker_type(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            data["broker_type"] = detect_broker_type(data.get("broker_url") or DEFAULT_BROKER_URL)
        return data

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from environment variables over the defaults.

        Unparseable numeric values are ignored and the default is kept.
        """
        env = os.environ if environ is None else environ
        values: dict[str, Any] = {}

        broker_url = env.get("BROKER_URL") or env.get("CELERY_BROKER_URL")
        if broker_url:
            values["broker_url"] = broker_url
        if env.get("BROKER_USERNAME"):
            values["username"] = env["BROKER_USERNAME"]
        if env.get("BROKER_PASSWORD"):
            values["password"] = env["BROKER_PASSWORD"]
        if env.get("BROKER_DB"):
            try:
                values["database"] = int(env["BROKER_DB"])
            except ValueError:
                pass
        if env.get("BROKER_TIMEOUT"):
            try:
                values["timeout"] = parse_duration(env["BROKER_TIMEOUT"])
            except ValueError:
                pass
        if env.get("OUTPUT_FORMAT"):
            values["output_format"] = env["OUTPUT_FORMAT"]
        if env.get("VERBOSE"):
            values["verbose"] = env["VERBOSE"] in ("true", "1")

        return cls.model_validate(values)

    def with_overrides(self, **overrides: Any) -> "Settings":
        """Layer non-empty overrides on top and re-validate."""
        values = self.model_dump()
        values.update({k: v for k, v in overrides.items() if v not in (None, "", 0, False, ())})
        return type(self).model_validate(values)

    def broker_config(self) -> BrokerConfig:
        return BrokerConfig(
            url=self.broker_url,
            database=self.database,
            username=self.username,
            password=self.password,
        )
