"""Tests for farmhub._registry — per-device state.

Test Techniques Used:
    - State-based Testing: apply / mark_offline transitions
    - Specification-based Testing: Replace-not-merge semantics
    - Idempotence Testing: Repeated mark_offline
    - Boundary Value Analysis: History ring capacity
"""

from __future__ import annotations

from dataclasses import FrozenInstanceError

import pytest

from farmhub._codec import SensorReading
from farmhub._registry import DeviceRegistry, DeviceState


def _reading(device_id: str = "node-1", at: int = 1000, **fields: object) -> SensorReading:
    return SensorReading(device_id=device_id, received_at=at, **fields)  # type: ignore[arg-type]


@pytest.fixture
def registry() -> DeviceRegistry:
    return DeviceRegistry(history_size=3)


# ---------------------------------------------------------------------------
# apply
# ---------------------------------------------------------------------------


class TestApply:
    """apply() tests.

    Technique: State-based Testing — verifying the returned and stored
    state after each reading.
    """

    def test_first_reading_creates_online_state(self, registry: DeviceRegistry) -> None:
        """The first reading creates an online device stamped with receivedAt."""
        state = registry.apply(_reading(temperature=30.5))

        assert state.online is True
        assert state.last_seen_at == 1000
        assert state.latest.temperature == 30.5
        assert registry.get("node-1") is state
        assert "node-1" in registry

    def test_reading_replaces_previous_state(self, registry: DeviceRegistry) -> None:
        """Sparse readings are not merged with earlier values."""
        registry.apply(_reading(at=1, temperature=30.0, relay_status=True))
        state = registry.apply(_reading(at=2, humidity=60.0))

        assert state.latest.humidity == 60.0
        assert state.latest.temperature is None
        assert state.latest.relay_status is None

    def test_reading_brings_offline_device_back(self, registry: DeviceRegistry) -> None:
        """A reading after mark_offline makes the device online again."""
        registry.apply(_reading(at=1))
        registry.mark_offline("node-1", at=2)

        state = registry.apply(_reading(at=3))

        assert state.online is True
        assert state.last_seen_at == 3

    def test_snapshot_reflects_last_reading(self, registry: DeviceRegistry) -> None:
        """After any sequence of readings the snapshot holds the last one."""
        for i in range(10):
            registry.apply(_reading(at=i, light=float(i)))

        (state,) = registry.snapshot()
        assert state.latest.light == 9.0
        assert state.online is True

    def test_snapshot_is_first_seen_order(self, registry: DeviceRegistry) -> None:
        """Devices are listed in the order they first reported."""
        registry.apply(_reading("b"))
        registry.apply(_reading("a"))
        registry.apply(_reading("b", at=2000))

        assert [s.device_id for s in registry.snapshot()] == ["b", "a"]
        assert len(registry) == 2

    def test_states_are_immutable(self, registry: DeviceRegistry) -> None:
        """DeviceState instances cannot be mutated in place."""
        state = registry.apply(_reading())

        with pytest.raises(FrozenInstanceError):
            state.online = False  # type: ignore[misc]


# ---------------------------------------------------------------------------
# mark_offline
# ---------------------------------------------------------------------------


class TestMarkOffline:
    """mark_offline() tests.

    Technique: Idempotence Testing — only the first call transitions.
    """

    def test_marks_online_device_offline(self, registry: DeviceRegistry) -> None:
        """An online device becomes offline, stamped with *at*."""
        registry.apply(_reading(temperature=20.0))

        state = registry.mark_offline("node-1", at=16000)

        assert state is not None
        assert state.online is False
        assert state.last_seen_at == 16000
        assert state.latest.temperature == 20.0
        assert registry.get("node-1") == state

    def test_second_call_is_noop(self, registry: DeviceRegistry) -> None:
        """Calling twice yields exactly one transition."""
        registry.apply(_reading())

        first = registry.mark_offline("node-1", at=2)
        second = registry.mark_offline("node-1", at=3)

        assert first is not None
        assert second is None
        assert registry.get("node-1").last_seen_at == 2  # type: ignore[union-attr]

    def test_unknown_device_is_noop(self, registry: DeviceRegistry) -> None:
        """Unknown devices are not created."""
        assert registry.mark_offline("ghost", at=1) is None
        assert "ghost" not in registry


# ---------------------------------------------------------------------------
# history
# ---------------------------------------------------------------------------


class TestHistory:
    """Bounded reading history tests.

    Technique: Boundary Value Analysis — ring capacity.
    """

    def test_history_keeps_most_recent(self, registry: DeviceRegistry) -> None:
        """Only the last ``history_size`` readings are kept, oldest first."""
        for i in range(5):
            registry.apply(_reading(at=i))

        assert [r.received_at for r in registry.history("node-1")] == [2, 3, 4]

    def test_unknown_device_has_empty_history(self, registry: DeviceRegistry) -> None:
        assert registry.history("ghost") == []

    def test_non_positive_size_rejected(self) -> None:
        with pytest.raises(ValueError, match="history_size"):
            DeviceRegistry(history_size=0)


# ---------------------------------------------------------------------------
# DeviceState.to_dict
# ---------------------------------------------------------------------------


class TestDeviceStateToDict:
    """Wire representation tests."""

    def test_includes_reading_and_liveness(self) -> None:
        """to_dict() merges the reading with online / lastSeenAt."""
        state = DeviceState(
            device_id="node-1",
            latest=_reading(at=5, mode="manual"),
            online=False,
            last_seen_at=9,
        )

        assert state.to_dict() == {
            "deviceId": "node-1",
            "mode": "manual",
            "receivedAt": 5,
            "online": False,
            "lastSeenAt": 9,
        }
