"""Bridge heartbeat and availability.

Publishes a retained JSON heartbeat for the bridge itself, with LWT
integration so a crash is visible to other MQTT clients.

Topic layout::

    {status_topic}    ← bridge heartbeat (retained JSON) / "offline"

Heartbeat payload schema::

    {
        "status": "online",
        "uptime_s": 3600.0,
        "version": "0.1.0",
        "devices": {"node-1": "online", "node-2": "offline"},
        "subscribers": 2,
        "pending_commands": 0
    }

- The broker publishes ``"offline"`` to the status topic if the bridge
  disconnects unexpectedly (:func:`build_will_config`).
- On graceful shutdown the bridge publishes ``"offline"`` itself.
- Publication is fire-and-forget: failures are logged, never raised.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field

from farmhub._clock import ClockPort
from farmhub._mqtt import MqttPort, WillConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class HeartbeatPayload:
    """Immutable bridge status snapshot."""

    status: str
    uptime_s: float
    version: str
    devices: dict[str, str] = field(default_factory=dict)
    subscribers: int = 0
    pending_commands: int = 0

    def to_dict(self) -> dict[str, object]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


def build_will_config(status_topic: str) -> WillConfig:
    """Create the bridge's LWT: ``"offline"`` on *status_topic*, QoS 1, retained."""
    return WillConfig(
        topic=status_topic,
        payload="offline",
        qos=1,
        retain=True,
    )


@dataclass
class HealthReporter:
    """Builds and publishes bridge heartbeats.

    Parameters
    ----------
    mqtt:
        MQTT port used for publishing.
    status_topic:
        Retained topic for heartbeats and the offline marker.
    version:
        Application version string included in heartbeats.
    clock:
        Monotonic clock for uptime measurement.
    """

    mqtt: MqttPort
    status_topic: str
    version: str
    clock: ClockPort
    _start_time: float = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._start_time = self.clock.now()

    def heartbeat(
        self,
        *,
        devices: Mapping[str, bool],
        subscribers: int = 0,
        pending_commands: int = 0,
    ) -> HeartbeatPayload:
        """Build a heartbeat from the current device liveness map."""
        return HeartbeatPayload(
            status="online",
            uptime_s=self.clock.now() - self._start_time,
            version=self.version,
            devices={
                device_id: "online" if online else "offline"
                for device_id, online in devices.items()
            },
            subscribers=subscribers,
            pending_commands=pending_commands,
        )

    async def publish_heartbeat(self, payload: HeartbeatPayload) -> None:
        logger.debug("Publishing heartbeat to %s", self.status_topic)
        await self._safe_publish(payload.to_json())

    async def shutdown(self) -> None:
        """Publish ``"offline"`` to the status topic."""
        logger.info("Health reporter shutting down, publishing offline")
        await self._safe_publish("offline")

    async def _safe_publish(self, payload: str) -> None:
        try:
            await self.mqtt.publish(self.status_topic, payload, retain=True, qos=1)
        except Exception:
            logger.exception("Failed to publish health to %s", self.status_topic)
