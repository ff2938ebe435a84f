"""Real-time events pushed to subscribers.

Every event serialises to a single JSON frame::

    {"event": "<name>", "data": <payload>}

===================  ==============================================
Event                Payload
===================  ==============================================
``sensor:snapshot``  list of device states (sent on join)
``sensor:data``      one reading plus its device's ``online`` flag
``device:status``    ``{deviceId, online, at}`` liveness transition
``rules:snapshot``   list of ``{deviceId, rules, savedAt}``
===================  ==============================================
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, ClassVar, Protocol

if TYPE_CHECKING:
    from farmhub._registry import DeviceState
    from farmhub._rules import RuleSet


class Event(Protocol):
    """Anything the fan-out hub can broadcast."""

    name: ClassVar[str]

    def to_message(self) -> dict[str, object]: ...


@dataclass(frozen=True, slots=True)
class SensorSnapshot:
    states: tuple[DeviceState, ...]

    name: ClassVar[str] = "sensor:snapshot"

    def to_message(self) -> dict[str, object]:
        return {"event": self.name, "data": [s.to_dict() for s in self.states]}


@dataclass(frozen=True, slots=True)
class SensorData:
    """A new reading, carried with the device state it produced."""

    state: DeviceState

    name: ClassVar[str] = "sensor:data"

    def to_message(self) -> dict[str, object]:
        return {"event": self.name, "data": self.state.to_dict()}


@dataclass(frozen=True, slots=True)
class DeviceStatusChanged:
    """A device went online or offline."""

    device_id: str
    online: bool
    at: int

    name: ClassVar[str] = "device:status"

    def to_message(self) -> dict[str, object]:
        return {
            "event": self.name,
            "data": {"deviceId": self.device_id, "online": self.online, "at": self.at},
        }


@dataclass(frozen=True, slots=True)
class RulesSnapshot:
    rule_sets: tuple[RuleSet, ...]

    name: ClassVar[str] = "rules:snapshot"

    def to_message(self) -> dict[str, object]:
        return {"event": self.name, "data": [r.to_dict() for r in self.rule_sets]}
