"""Tests for farmhub._codec — inbound telemetry decoding.

Test Techniques Used:
    - Specification-based Testing: Field mapping and wire representation
    - Equivalence Partitioning: Valid, sparse, and malformed payloads
    - Error Condition Testing: Each DecodeError subclass
    - Boundary Value Analysis: Empty object, missing device segment
"""

from __future__ import annotations

import json

import pytest

from farmhub._codec import SensorReading, decode, device_id_from_topic, parse_json
from farmhub._errors import DecodeError, InvalidPayloadError, MalformedTopicError

_FULL = {
    "temperature": 30.5,
    "humidity": 55,
    "soil_moisture": 40,
    "light": 300,
    "relay_status": False,
    "mode": "auto",
    "ts": 1000,
}


# ---------------------------------------------------------------------------
# device_id_from_topic
# ---------------------------------------------------------------------------


class TestDeviceIdFromTopic:
    """Topic parsing tests.

    Technique: Equivalence Partitioning — well-formed vs. malformed topics.
    """

    @pytest.mark.parametrize(
        ("topic", "expected"),
        [
            ("farm/node-1/sensor", "node-1"),
            ("greenhouse/abc/sensor", "abc"),
            ("farm/node-1", "node-1"),
        ],
    )
    def test_second_level_is_device_id(self, topic: str, expected: str) -> None:
        """The second topic level names the device."""
        assert device_id_from_topic(topic) == expected

    @pytest.mark.parametrize("topic", ["farm", "farm//sensor", ""])
    def test_missing_segment_raises(self, topic: str) -> None:
        """Topics without a device segment raise MalformedTopicError."""
        with pytest.raises(MalformedTopicError) as exc_info:
            device_id_from_topic(topic)

        assert exc_info.value.topic == topic


# ---------------------------------------------------------------------------
# decode — happy paths
# ---------------------------------------------------------------------------


class TestDecode:
    """Successful decoding tests.

    Technique: Specification-based Testing — verifying every field is
    mapped and the server arrival stamp is attached.
    """

    def test_full_payload_maps_every_field(self) -> None:
        """All known fields populate the SensorReading."""
        reading = decode("farm/node-1/sensor", json.dumps(_FULL).encode(), received_at=5)

        assert reading == SensorReading(
            device_id="node-1",
            received_at=5,
            temperature=30.5,
            humidity=55.0,
            soil_moisture=40.0,
            light=300.0,
            relay_status=False,
            mode="auto",
            device_ts=1000,
        )

    def test_sparse_payload_leaves_fields_absent(self) -> None:
        """Fields the device did not send stay None."""
        reading = decode("farm/node-2/sensor", b'{"humidity": 80}', received_at=1)

        assert reading.humidity == 80.0
        assert reading.temperature is None
        assert reading.relay_status is None
        assert reading.mode is None

    def test_unknown_fields_are_ignored(self) -> None:
        """Extra keys in the payload are dropped silently."""
        reading = decode(
            "farm/node-1/sensor",
            b'{"temperature": 21, "firmware": "1.2.3"}',
            received_at=1,
        )

        assert reading.temperature == 21.0
        assert "firmware" not in reading.to_dict()

    def test_accepts_str_payload(self) -> None:
        """A str payload decodes like its UTF-8 bytes."""
        reading = decode("farm/node-1/sensor", '{"light": 12}', received_at=1)

        assert reading.light == 12.0

    def test_device_id_comes_from_topic_not_payload(self) -> None:
        """A deviceId inside the payload does not override the topic."""
        reading = decode(
            "farm/node-1/sensor",
            b'{"deviceId": "spoofed", "temperature": 20}',
            received_at=1,
        )

        assert reading.device_id == "node-1"


# ---------------------------------------------------------------------------
# decode — failures
# ---------------------------------------------------------------------------


class TestDecodeErrors:
    """Decoding failure tests.

    Technique: Error Condition Testing — every rejected payload raises a
    DecodeError subclass carrying the topic.
    """

    @pytest.mark.parametrize(
        "raw",
        [
            b"not json",
            b"\xff\xfe\x00",
            b"[1, 2, 3]",
            b'"just a string"',
            b"42",
            b"{}",
            b'{"temperature": "hot"}',
            b'{"mode": "turbo"}',
            b'{"relay_status": "maybe"}',
        ],
    )
    def test_invalid_payload_raises(self, raw: bytes) -> None:
        """Malformed, non-object, empty, or mistyped payloads are rejected."""
        with pytest.raises(InvalidPayloadError) as exc_info:
            decode("farm/node-1/sensor", raw, received_at=1)

        assert exc_info.value.topic == "farm/node-1/sensor"

    @pytest.mark.parametrize(
        "raw",
        [
            b'{"temperature": NaN}',
            b'{"humidity": Infinity}',
            b'{"light": -Infinity}',
            b'{"soil_moisture": 1e999}',
            b'{"temperature": "NaN"}',
            b'{"temperature": 20, "extra": NaN}',
        ],
    )
    def test_non_finite_numbers_rejected(self, raw: bytes) -> None:
        """Readings must stay serialisable as standard JSON."""
        with pytest.raises(InvalidPayloadError):
            decode("farm/node-1/sensor", raw, received_at=1)

    @pytest.mark.parametrize(
        "raw",
        [
            b'{"relay_status": "yes"}',
            b'{"relay_status": 1}',
            b'{"ts": "1000"}',
            b'{"ts": 1000.5}',
        ],
    )
    def test_strict_flag_and_timestamp_types(self, raw: bytes) -> None:
        """relay_status must be a JSON boolean and ts a JSON integer."""
        with pytest.raises(InvalidPayloadError):
            decode("farm/node-1/sensor", raw, received_at=1)

    def test_malformed_topic_checked_first(self) -> None:
        """A bad topic is reported even when the payload is fine."""
        with pytest.raises(MalformedTopicError):
            decode("farm", b'{"temperature": 20}', received_at=1)

    def test_all_failures_share_base_class(self) -> None:
        """Callers can catch DecodeError for every rejection."""
        assert issubclass(InvalidPayloadError, DecodeError)
        assert issubclass(MalformedTopicError, DecodeError)


# ---------------------------------------------------------------------------
# SensorReading.to_dict
# ---------------------------------------------------------------------------


class TestSensorReadingToDict:
    """Wire representation tests.

    Technique: Specification-based Testing — present fields only, device
    timestamp exposed as ``ts``.
    """

    def test_omits_absent_fields(self) -> None:
        """Only present measurements appear."""
        reading = SensorReading(device_id="n", received_at=7, humidity=50.0)

        assert reading.to_dict() == {"deviceId": "n", "humidity": 50.0, "receivedAt": 7}

    def test_false_relay_status_is_kept(self) -> None:
        """A falsy but present value is not mistaken for absent."""
        reading = SensorReading(device_id="n", received_at=7, relay_status=False)

        assert reading.to_dict()["relay_status"] is False

    def test_device_timestamp_is_ts(self) -> None:
        """device_ts is serialised under the device's own key ``ts``."""
        reading = SensorReading(device_id="n", received_at=7, device_ts=99)

        assert reading.to_dict()["ts"] == 99


# ---------------------------------------------------------------------------
# parse_json
# ---------------------------------------------------------------------------


class TestParseJson:
    """Strict JSON parsing shared with the HTTP surface.

    Technique: Equivalence Partitioning — standard JSON vs. the
    extensions json.loads accepts by default.
    """

    def test_parses_bytes_and_str(self) -> None:
        assert parse_json(b'{"a": [1, 2.5]}') == {"a": [1, 2.5]}
        assert parse_json('{"a": null}') == {"a": None}

    @pytest.mark.parametrize(
        "raw",
        [b"NaN", b"[Infinity]", b'{"x": -Infinity}', b"1e400", b"\xff\xfe{"],
    )
    def test_rejects_with_value_error(self, raw: bytes) -> None:
        with pytest.raises(ValueError):
            parse_json(raw)
