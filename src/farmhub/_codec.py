"""Telemetry codec: inbound MQTT sensor messages to :class:`SensorReading`.

Topic layout::

    {prefix}/{deviceId}/sensor

Payload (every field optional, unknown fields ignored)::

    {
        "temperature": 30.5,        # °C
        "humidity": 55,             # %
        "soil_moisture": 40,        # %
        "light": 300,               # raw intensity
        "relay_status": false,
        "mode": "auto",             # "auto" | "manual"
        "ts": 1000                  # device-side epoch-ms
    }

Decoding is pure.  Failures raise a :class:`~farmhub._errors.DecodeError`
subclass; the caller logs and drops the message.

Parsing is strict RFC 8259 JSON: the ``NaN``/``Infinity`` tokens that
:func:`json.loads` accepts by default, and number literals that
overflow to infinity, are rejected.  Every parsed value can therefore
be re-serialised for HTTP and WebSocket clients.  ``relay_status`` and
``ts`` are strictly typed; measurements accept any JSON number.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, StrictBool, StrictInt, ValidationError

from farmhub._errors import InvalidPayloadError, MalformedTopicError

Mode = Literal["auto", "manual"]

# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class SensorReading:
    """One telemetry sample from a device.

    Measurements are ``None`` when the device did not send them.
    ``received_at`` is the server's epoch-ms arrival stamp.
    """

    device_id: str
    received_at: int
    temperature: float | None = None
    humidity: float | None = None
    soil_moisture: float | None = None
    light: float | None = None
    relay_status: bool | None = None
    mode: Mode | None = None
    device_ts: int | None = None

    def to_dict(self) -> dict[str, object]:
        """Wire representation; absent measurements are omitted."""
        data: dict[str, object] = {"deviceId": self.device_id}
        for key, value in (
            ("temperature", self.temperature),
            ("humidity", self.humidity),
            ("soil_moisture", self.soil_moisture),
            ("light", self.light),
            ("relay_status", self.relay_status),
            ("mode", self.mode),
            ("ts", self.device_ts),
        ):
            if value is not None:
                data[key] = value
        data["receivedAt"] = self.received_at
        return data


class _SensorPayload(BaseModel):
    """Validation model for the inbound JSON object."""

    model_config = ConfigDict(extra="ignore", allow_inf_nan=False)

    temperature: float | None = None
    humidity: float | None = None
    soil_moisture: float | None = None
    light: float | None = None
    relay_status: StrictBool | None = None
    mode: Mode | None = None
    ts: StrictInt | None = None


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def _reject_constant(token: str) -> Any:
    msg = f"{token} is not valid JSON"
    raise ValueError(msg)


def _finite_float(text: str) -> float:
    value = float(text)
    if not math.isfinite(value):
        msg = f"Number {text} is out of range"
        raise ValueError(msg)
    return value


def parse_json(raw: bytes | str) -> Any:
    """Parse *raw* as strict JSON.

    Raises:
        ValueError: Not UTF-8, not JSON, or contains a non-finite number.
    """
    text = raw.decode("utf-8") if isinstance(raw, (bytes, bytearray)) else raw
    return json.loads(text, parse_constant=_reject_constant, parse_float=_finite_float)


def device_id_from_topic(topic: str) -> str:
    """Return the device segment (second path level) of *topic*.

    Raises:
        MalformedTopicError: If the segment is missing or empty.
    """
    parts = topic.split("/")
    if len(parts) < 2 or not parts[1]:  # noqa: PLR2004
        msg = f"No device segment in topic {topic!r}"
        raise MalformedTopicError(msg, topic=topic)
    return parts[1]


def decode(topic: str, raw: bytes | str, *, received_at: int) -> SensorReading:
    """Decode one inbound sensor message.

    Args:
        topic: The MQTT topic the message arrived on.
        raw: The message payload.
        received_at: Server arrival time in epoch-ms.

    Raises:
        MalformedTopicError: The topic has no device segment.
        InvalidPayloadError: The payload is not UTF-8 JSON, not an
            object, an empty object, or has a mistyped field.
    """
    device_id = device_id_from_topic(topic)

    try:
        data: Any = parse_json(raw)
    except ValueError as exc:
        msg = f"Payload on {topic!r} is not valid JSON: {exc}"
        raise InvalidPayloadError(msg, topic=topic) from exc

    if not isinstance(data, dict):
        msg = f"Payload on {topic!r} is not a JSON object"
        raise InvalidPayloadError(msg, topic=topic)
    if not data:
        msg = f"Payload on {topic!r} is an empty object"
        raise InvalidPayloadError(msg, topic=topic)

    try:
        payload = _SensorPayload.model_validate(data)
    except ValidationError as exc:
        msg = f"Payload on {topic!r} failed validation: {exc.error_count()} error(s)"
        raise InvalidPayloadError(msg, topic=topic) from exc

    return SensorReading(
        device_id=device_id,
        received_at=received_at,
        temperature=payload.temperature,
        humidity=payload.humidity,
        soil_moisture=payload.soil_moisture,
        light=payload.light,
        relay_status=payload.relay_status,
        mode=payload.mode,
        device_ts=payload.ts,
    )
