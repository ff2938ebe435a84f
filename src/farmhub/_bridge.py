"""Composition root: wires the broker components to MQTT.

Data flow::

    MQTT {prefix}/{id}/sensor
        → decode()                         (TelemetryCodec)
        → DeviceRegistry.apply()
        → LivenessSupervisor.on_reading()
        → FanoutHub.broadcast(sensor:data [, device:status online])

    liveness timeout
        → DeviceRegistry.mark_offline()
        → FanoutHub.broadcast(device:status offline)

Ingest is one synchronous step on the event loop: a reading's state
update, timer re-arm and broadcasts happen without an intervening
suspension point, so no subscriber can observe one without the others.

Lifecycle (:meth:`Bridge.start` / :meth:`Bridge.stop`):

1. Register the message callback and subscribe to the sensor filter.
2. Start the MQTT connection loop (real client only).
3. Start the periodic heartbeat (when enabled).
4. On stop: cancel heartbeat and liveness timers, disconnect
   subscribers, publish ``offline``, stop MQTT.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid

from farmhub._clock import ClockPort, SystemClock
from farmhub._codec import decode
from farmhub._commands import CommandRouter
from farmhub._errors import DecodeError
from farmhub._events import DeviceStatusChanged, SensorData
from farmhub._fanout import FanoutHub
from farmhub._health import HealthReporter, HeartbeatPayload, build_will_config
from farmhub._liveness import LivenessSupervisor
from farmhub._mqtt import (
    MqttClient,
    MqttConnectable,
    MqttLifecycle,
    MqttMessageHandler,
    MqttPort,
)
from farmhub._registry import DeviceRegistry, DeviceState
from farmhub._rules import RulesStore
from farmhub._settings import Settings

logger = logging.getLogger(__name__)


class Bridge:
    """Owns one instance of every broker component.

    Args:
        settings: Parsed application settings.
        mqtt: Override the MQTT adapter (e.g. ``MockMqttClient`` in
            tests).  When ``None``, an aiomqtt-backed client is built
            from ``settings.mqtt``.
        clock: Override the clock (e.g. ``FakeClock`` in tests).
        name: Application name, used for the generated client id.
        version: Application version reported in heartbeats.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        mqtt: MqttPort | None = None,
        clock: ClockPort | None = None,
        name: str = "farmhub",
        version: str = "0.0.0",
    ) -> None:
        self._settings = settings
        self._name = name
        self._clock = clock if clock is not None else SystemClock()
        self._mqtt = self._create_mqtt(mqtt, settings)

        self.registry = DeviceRegistry(history_size=settings.history_size)
        self.router = CommandRouter(
            mqtt=self._mqtt,
            clock=self._clock,
            control_prefix=settings.topics.control_prefix,
            qos=settings.mqtt.qos,
            expect_ack=settings.commands.expect_ack,
            timeout=settings.commands.timeout,
        )
        self.rules = RulesStore(router=self.router, clock=self._clock)
        self.hub = FanoutHub(
            registry=self.registry,
            rules=self.rules,
            router=self.router,
            queue_size=settings.fanout.queue_size,
        )
        self.liveness = LivenessSupervisor(
            registry=self.registry,
            clock=self._clock,
            timeout=settings.liveness.timeout,
            on_status=self.hub.broadcast,
        )
        self.health = HealthReporter(
            mqtt=self._mqtt,
            status_topic=settings.topics.status,
            version=version,
            clock=self._clock,
        )
        self._heartbeat_task: asyncio.Task[None] | None = None

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def mqtt(self) -> MqttPort:
        return self._mqtt

    # -- Lifecycle ----------------------------------------------------------

    async def start(self) -> None:
        """Subscribe to telemetry and start background work."""
        if isinstance(self._mqtt, MqttMessageHandler):
            self._mqtt.on_message(self.handle_message)
        await self._mqtt.subscribe(self._settings.topics.sensor_filter)
        if isinstance(self._mqtt, MqttLifecycle):
            await self._mqtt.start()
        if self._settings.heartbeat_interval is not None:
            self._heartbeat_task = asyncio.create_task(
                self._heartbeat_loop(self._settings.heartbeat_interval),
            )
        logger.info(
            "Bridge started (sensors=%s, control=%s/+/control, timeout=%.1fs)",
            self._settings.topics.sensor_filter,
            self._settings.topics.control_prefix,
            self._settings.liveness.timeout,
        )

    async def stop(self) -> None:
        """Tear down in reverse order of :meth:`start`."""
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._heartbeat_task
            self._heartbeat_task = None
        self.liveness.shutdown()
        await self.hub.close()
        await self.health.shutdown()
        if isinstance(self._mqtt, MqttLifecycle):
            await self._mqtt.stop()
        logger.info("Shutdown complete")

    # -- Ingest -------------------------------------------------------------

    async def handle_message(self, topic: str, payload: bytes) -> None:
        """MQTT message callback."""
        self.ingest(topic, payload)

    def ingest(self, topic: str, payload: bytes | str) -> DeviceState | None:
        """Apply one inbound sensor message.

        Returns the device's new state, or ``None`` when the message
        was dropped as undecodable.
        """
        try:
            reading = decode(topic, payload, received_at=self._clock.epoch_ms())
        except DecodeError as exc:
            logger.warning("Dropping message on %s: %s", topic, exc)
            return None

        previous = self.registry.get(reading.device_id)
        state = self.registry.apply(reading)
        self.liveness.on_reading(reading.device_id)
        self.hub.broadcast(SensorData(state))
        if previous is None or not previous.online:
            logger.info("Device '%s' online", reading.device_id)
            self.hub.broadcast(
                DeviceStatusChanged(
                    device_id=reading.device_id,
                    online=True,
                    at=state.last_seen_at,
                ),
            )
        logger.debug("Reading from '%s': %s", reading.device_id, reading)
        return state

    # -- Health -------------------------------------------------------------

    def heartbeat(self) -> HeartbeatPayload:
        """Current bridge status."""
        return self.health.heartbeat(
            devices={s.device_id: s.online for s in self.registry.snapshot()},
            subscribers=self.hub.subscriber_count,
            pending_commands=len(self.router.pending),
        )

    # -- Internal -----------------------------------------------------------

    def _create_mqtt(self, mqtt: MqttPort | None, settings: Settings) -> MqttPort:
        """Create the MQTT client, or return the injected one.

        When no explicit ``client_id`` is configured, generates one
        from the app name and a short random suffix.
        """
        if mqtt is not None:
            return mqtt
        mqtt_settings = settings.mqtt
        if not mqtt_settings.client_id:
            mqtt_settings = mqtt_settings.model_copy(
                update={"client_id": f"{self._name}-{uuid.uuid4().hex[:8]}"},
            )
        return MqttClient(
            settings=mqtt_settings,
            will=build_will_config(settings.topics.status),
        )

    async def _heartbeat_loop(self, interval: float) -> None:
        """Publish a heartbeat every *interval* seconds while connected.

        Adapters that report their connection are given up to *interval*
        to come up before each beat; a beat with no connection is skipped.
        """
        while True:
            if isinstance(self._mqtt, MqttConnectable) and not await self._mqtt.wait_connected(
                interval
            ):
                logger.debug("MQTT not connected, skipping heartbeat")
                continue
            await self.health.publish_heartbeat(self.heartbeat())
            await asyncio.sleep(interval)
