"""Application configuration via pydantic-settings.

Configuration is loaded from environment variables and/or ``.env``
files.  All variables carry the ``FARMHUB_`` prefix and nested models
use ``__`` as the delimiter, e.g. ``FARMHUB_MQTT__HOST=broker.local``.

The schema covers:

* **MQTT** — broker connection (host/port or a single URL, credentials).
* **Topics** — inbound sensor filter, outbound control prefix, bridge
  status topic.
* **Liveness** — silence window after which a device is offline.
* **Commands** — acknowledgement policy and timeout.
* **HTTP** — listen address and CORS origins for the REST + WebSocket surface.
* **Fan-out** — per-subscriber queue bound.
* **Logging** — level, format, optional file sink, rotation.

All durations are in **seconds**.
"""

from __future__ import annotations

from typing import Annotated, Literal
from urllib.parse import urlsplit

from pydantic import (
    BaseModel,
    Field,
    SecretStr,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

_MQTT_SCHEMES = ("mqtt", "tcp")

# -------------------------------------------------------------------
# Sub-models (BaseModel, NOT BaseSettings — nested via composition)
# -------------------------------------------------------------------


class MqttSettings(BaseModel):
    """MQTT broker connection configuration.

    Environment variables (with ``__`` nesting)::

        FARMHUB_MQTT__HOST=broker.local
        FARMHUB_MQTT__PORT=1883
        FARMHUB_MQTT__USERNAME=user
        FARMHUB_MQTT__PASSWORD=secret

    or, equivalently, a single endpoint URL::

        FARMHUB_MQTT__URL=mqtt://broker.local:1883

    When ``url`` is set its host and port win over ``host``/``port``.
    """

    url: str | None = Field(
        default=None,
        description="Broker endpoint URL (mqtt://host:port). Overrides host/port.",
    )
    host: str = Field(
        default="localhost",
        description="MQTT broker hostname or IP address.",
    )
    port: Annotated[int, Field(ge=1, le=65535)] = Field(
        default=1883,
        description="MQTT broker port.",
    )
    username: str | None = Field(
        default=None,
        description="MQTT authentication username (optional).",
    )
    password: SecretStr | None = Field(
        default=None,
        description="MQTT authentication password (optional).",
    )
    client_id: str = Field(
        default="",
        description=(
            "MQTT client identifier. When empty, the bridge generates "
            "'farmhub-{hex8}' at startup."
        ),
    )
    qos: Annotated[int, Field(ge=0, le=2)] = Field(
        default=1,
        description="QoS for subscriptions and acknowledged commands.",
    )
    reconnect_interval: Annotated[float, Field(gt=0)] = Field(
        default=5.0,
        description=(
            "Initial seconds to wait before reconnecting after "
            "connection loss.  Doubles on each consecutive failure "
            "up to ``reconnect_max_interval``."
        ),
    )
    reconnect_max_interval: Annotated[float, Field(gt=0)] = Field(
        default=300.0,
        description="Upper bound (seconds) for the reconnect backoff.",
    )

    @model_validator(mode="after")
    def _apply_url(self) -> MqttSettings:
        if not self.url:
            return self
        parts = urlsplit(self.url)
        if parts.scheme not in _MQTT_SCHEMES or not parts.hostname:
            msg = f"Unsupported MQTT URL {self.url!r} (expected mqtt://host[:port])"
            raise ValueError(msg)
        self.host = parts.hostname
        if parts.port is not None:
            self.port = parts.port
        if parts.username and self.username is None:
            self.username = parts.username
        if parts.password and self.password is None:
            self.password = SecretStr(parts.password)
        return self


class TopicSettings(BaseModel):
    """MQTT topic layout.

    Inbound readings arrive on ``<prefix>/<deviceId>/sensor``; commands
    leave on ``<control_prefix>/<deviceId>/control``.
    """

    sensor_filter: str = Field(
        default="farm/+/sensor",
        description="Subscription filter for inbound sensor readings.",
    )
    control_prefix: str = Field(
        default="farm",
        description="Prefix for outbound control topics.",
    )
    status: str = Field(
        default="farmhub/status",
        description="Retained bridge heartbeat / LWT topic.",
    )


class LivenessSettings(BaseModel):
    """Device liveness window."""

    timeout: Annotated[float, Field(gt=0)] = Field(
        default=15.0,
        description="Seconds of silence before a device is marked offline.",
    )


class CommandSettings(BaseModel):
    """Outbound command delivery policy."""

    expect_ack: bool = Field(
        default=True,
        description=(
            "Wait for the transport to confirm delivery (QoS >= 1) "
            "before acknowledging the caller."
        ),
    )
    timeout: Annotated[float, Field(gt=0)] = Field(
        default=5.0,
        description="Seconds to wait for a transport acknowledgement.",
    )


class HttpSettings(BaseModel):
    """Listen address for the REST and WebSocket surface."""

    host: str = Field(default="0.0.0.0", description="Bind address.")
    port: Annotated[int, Field(ge=1, le=65535)] = Field(
        default=3001,
        description="Listen port.",
    )
    cors_origins: list[str] = Field(
        default_factory=lambda: ["*"],
        description=(
            "Origins allowed to call the REST API from a browser.  "
            'Set as a JSON list, e.g. ``FARMHUB_HTTP__CORS_ORIGINS=["http://localhost:3000"]``.'
        ),
    )


class FanoutSettings(BaseModel):
    """Real-time subscriber delivery."""

    queue_size: Annotated[int, Field(ge=1)] = Field(
        default=256,
        description=(
            "Maximum undelivered events per subscriber.  A subscriber "
            "whose queue overflows is disconnected."
        ),
    )


class LoggingSettings(BaseModel):
    """Logging configuration.

    When ``file`` is set, logs are also written to a rotating file
    (size-based rotation, ``backup_count`` generations kept).  When
    ``None``, logs go to stderr only.

    The ``format`` field selects the output format:

    - ``"json"`` (default) — structured JSON lines for container
      log aggregators.
    - ``"text"`` — human-readable timestamped format for local
      development and direct terminal use.
    """

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Root log level.",
    )
    format: Literal["json", "text"] = Field(
        default="json",
        description="Log output format ('json' or 'text').",
    )
    file: str | None = Field(
        default=None,
        description="Optional log file path. ``None`` means stderr only.",
    )
    max_file_size_mb: Annotated[int, Field(ge=1)] = Field(
        default=10,
        description=(
            "Maximum log file size in megabytes before rotation. "
            "Only applies when ``file`` is set."
        ),
    )
    backup_count: Annotated[int, Field(ge=0)] = Field(
        default=3,
        description="Number of rotated log files to keep.",
    )


# -------------------------------------------------------------------
# Root settings
# -------------------------------------------------------------------


class Settings(BaseSettings):
    """Root settings for the farmhub bridge.

    Example ``.env``::

        FARMHUB_MQTT__URL=mqtt://broker.hivemq.com:1883
        FARMHUB_TOPICS__SENSOR_FILTER=farm/+/sensor
        FARMHUB_TOPICS__CONTROL_PREFIX=farm
        FARMHUB_LIVENESS__TIMEOUT=15
        FARMHUB_HTTP__PORT=3001
        FARMHUB_LOGGING__FORMAT=text
    """

    model_config = SettingsConfigDict(
        env_prefix="FARMHUB_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    mqtt: MqttSettings = Field(
        default_factory=MqttSettings,
        description="MQTT broker connection settings.",
    )
    topics: TopicSettings = Field(
        default_factory=TopicSettings,
        description="MQTT topic layout.",
    )
    liveness: LivenessSettings = Field(
        default_factory=LivenessSettings,
        description="Device liveness window.",
    )
    commands: CommandSettings = Field(
        default_factory=CommandSettings,
        description="Outbound command delivery policy.",
    )
    http: HttpSettings = Field(
        default_factory=HttpSettings,
        description="REST / WebSocket listen address.",
    )
    fanout: FanoutSettings = Field(
        default_factory=FanoutSettings,
        description="Real-time subscriber delivery.",
    )
    logging: LoggingSettings = Field(
        default_factory=LoggingSettings,
        description="Logging configuration.",
    )
    history_size: Annotated[int, Field(ge=1)] = Field(
        default=100,
        description="Readings kept in memory per device.",
    )
    heartbeat_interval: Annotated[float, Field(gt=0)] | None = Field(
        default=60.0,
        description="Seconds between bridge heartbeats. ``None`` disables them.",
    )
