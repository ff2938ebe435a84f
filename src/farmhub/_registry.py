"""Per-device state registry.

Owns the mapping ``device_id → DeviceState``.  Each reading replaces
the device's state wholesale; sparse payloads are *not* merged with
earlier readings, so a reading without ``relay_status`` yields a state
without ``relay_status``.  Display-level retention of last-known
pump/mode values is left to clients.

States are frozen dataclasses swapped in a single assignment, so a
reader never observes a half-applied update.  Devices are never
removed; iteration order is first-seen order.

A bounded ring of recent readings is kept per device for chart
back-fill (``history``).
"""

from __future__ import annotations

import dataclasses
from collections import deque
from dataclasses import dataclass

from farmhub._codec import SensorReading

_DEFAULT_HISTORY = 100


@dataclass(frozen=True, slots=True)
class DeviceState:
    """Latest known state of one device."""

    device_id: str
    latest: SensorReading
    online: bool
    last_seen_at: int

    def to_dict(self) -> dict[str, object]:
        """Wire representation: the latest reading plus liveness fields."""
        data = self.latest.to_dict()
        data["online"] = self.online
        data["lastSeenAt"] = self.last_seen_at
        return data


class DeviceRegistry:
    """Single owner of all :class:`DeviceState` instances."""

    def __init__(self, *, history_size: int = _DEFAULT_HISTORY) -> None:
        if history_size < 1:
            msg = f"history_size must be positive, got {history_size}"
            raise ValueError(msg)
        self._history_size = history_size
        self._states: dict[str, DeviceState] = {}
        self._history: dict[str, deque[SensorReading]] = {}

    def apply(self, reading: SensorReading) -> DeviceState:
        """Insert or replace the state for ``reading.device_id``.

        The device becomes online and ``last_seen_at`` is the reading's
        arrival time.
        """
        state = DeviceState(
            device_id=reading.device_id,
            latest=reading,
            online=True,
            last_seen_at=reading.received_at,
        )
        self._states[reading.device_id] = state
        ring = self._history.get(reading.device_id)
        if ring is None:
            ring = self._history[reading.device_id] = deque(maxlen=self._history_size)
        ring.append(reading)
        return state

    def mark_offline(self, device_id: str, *, at: int) -> DeviceState | None:
        """Transition *device_id* to offline.

        Returns the new state, or ``None`` when the device is unknown or
        already offline (no transition happened).
        """
        current = self._states.get(device_id)
        if current is None or not current.online:
            return None
        state = dataclasses.replace(current, online=False, last_seen_at=at)
        self._states[device_id] = state
        return state

    def get(self, device_id: str) -> DeviceState | None:
        """Return the current state of *device_id*, if known."""
        return self._states.get(device_id)

    def snapshot(self) -> list[DeviceState]:
        """Return every known device's state in first-seen order."""
        return list(self._states.values())

    def history(self, device_id: str) -> list[SensorReading]:
        """Return recent readings for *device_id*, oldest first."""
        return list(self._history.get(device_id, ()))

    def __len__(self) -> int:
        return len(self._states)

    def __contains__(self, device_id: object) -> bool:
        return device_id in self._states
