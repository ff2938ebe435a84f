"""Outbound device commands over MQTT.

Topic layout::

    {control_prefix}/{deviceId}/control

Payload is the caller's command object, JSON-encoded, with a ``cmd``
discriminator::

    {"cmd": "setPump", "pump": true}
    {"cmd": "setMode", "mode": "auto"}
    {"cmd": "setThresholds", "tempOn": 30, "humAirBelow": 50, ...}
    {"cmd": "setRules", "rules": [...], "savedAt": 1700000000000}

Delivery modes:

- **Fire-and-forget** — published with QoS 0; :meth:`CommandRouter.send`
  returns as soon as the publish call returns.
- **Acknowledged** — published with the configured QoS (PUBACK for
  QoS 1) and tracked as a :class:`PendingCommand` until the transport
  confirms, fails, or the timeout elapses.

Failures raise :class:`~farmhub._errors.CommandError` subclasses; the
router never retries.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from farmhub._clock import ClockPort
from farmhub._errors import CommandTimeoutError, PublishFailedError
from farmhub._mqtt import MqttPort

if TYPE_CHECKING:
    from farmhub._rules import RuleSet

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Ack:
    """Transport confirmation for one command."""

    correlation_id: str
    device_id: str
    topic: str
    payload: dict[str, Any]
    issued_at: int

    def to_dict(self) -> dict[str, object]:
        return {"ok": True, "topic": self.topic, "payload": self.payload}


@dataclass(slots=True)
class PendingCommand:
    """An acknowledged command awaiting its transport confirmation."""

    correlation_id: str
    device_id: str
    topic: str
    payload: dict[str, Any]
    issued_at: int
    result: asyncio.Future[Ack] = field(repr=False)


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------


class CommandRouter:
    """Publishes device commands and correlates their acknowledgements.

    Args:
        mqtt: Outbound transport.
        clock: Source of ``issued_at`` stamps.
        control_prefix: First topic level for control topics.
        qos: QoS used for acknowledged commands.
        expect_ack: Default delivery mode.
        timeout: Default acknowledgement timeout in seconds.
    """

    def __init__(
        self,
        *,
        mqtt: MqttPort,
        clock: ClockPort,
        control_prefix: str,
        qos: int = 1,
        expect_ack: bool = True,
        timeout: float = 5.0,
    ) -> None:
        self._mqtt = mqtt
        self._clock = clock
        self._control_prefix = control_prefix.rstrip("/")
        self._qos = qos
        self._expect_ack = expect_ack
        self._timeout = timeout
        self._pending: dict[str, PendingCommand] = {}

    @property
    def pending(self) -> list[PendingCommand]:
        """Acknowledged commands still awaiting confirmation."""
        return list(self._pending.values())

    def control_topic(self, device_id: str) -> str:
        return f"{self._control_prefix}/{device_id}/control"

    async def send(
        self,
        device_id: str,
        payload: Mapping[str, Any],
        *,
        expect_ack: bool | None = None,
        timeout: float | None = None,
    ) -> Ack:
        """Publish *payload* on the device's control topic.

        Args:
            device_id: Target device.
            payload: Command object (JSON-serialisable).
            expect_ack: Override the router's default delivery mode.
            timeout: Override the acknowledgement timeout (seconds).

        Raises:
            PublishFailedError: The transport rejected the publish.
            CommandTimeoutError: No confirmation within *timeout*.
        """
        topic = self.control_topic(device_id)
        body = dict(payload)
        ack = Ack(
            correlation_id=uuid.uuid4().hex,
            device_id=device_id,
            topic=topic,
            payload=body,
            issued_at=self._clock.epoch_ms(),
        )
        wants_ack = self._expect_ack if expect_ack is None else expect_ack
        encoded = json.dumps(body)

        if not wants_ack:
            try:
                await self._mqtt.publish(topic, encoded, retain=False, qos=0)
            except Exception as exc:
                raise self._publish_failed(ack, exc) from exc
            logger.info("Command sent to %s: %s", topic, body)
            return ack

        return await self._send_acknowledged(
            ack,
            encoded,
            self._timeout if timeout is None else timeout,
        )

    async def set_rules(self, rule_set: RuleSet) -> Ack:
        """Push a full rule set to its device (``setRules`` command)."""
        return await self.send(
            rule_set.device_id,
            {
                "cmd": "setRules",
                "rules": list(rule_set.rules),
                "savedAt": rule_set.saved_at,
            },
        )

    async def set_config(
        self,
        device_id: str,
        *,
        thresholds: Mapping[str, Any] | None = None,
        mode: str | None = None,
    ) -> list[Ack]:
        """Push automation thresholds and, when given, a mode switch.

        ``setThresholds`` is always sent first; ``setMode`` follows only
        if *mode* is set and the thresholds were delivered.
        """
        acks = [await self.send(device_id, {"cmd": "setThresholds", **(thresholds or {})})]
        if mode:
            acks.append(await self.send(device_id, {"cmd": "setMode", "mode": mode}))
        return acks

    # -- Internal -----------------------------------------------------------

    async def _send_acknowledged(self, ack: Ack, encoded: str, timeout: float) -> Ack:
        loop = asyncio.get_running_loop()
        pending = PendingCommand(
            correlation_id=ack.correlation_id,
            device_id=ack.device_id,
            topic=ack.topic,
            payload=ack.payload,
            issued_at=ack.issued_at,
            result=loop.create_future(),
        )
        self._pending[pending.correlation_id] = pending
        deliver = asyncio.create_task(self._deliver(pending, ack, encoded))
        try:
            async with asyncio.timeout(timeout):
                result = await pending.result
        except TimeoutError:
            deliver.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await deliver
            logger.warning(
                "Command %s to %s timed out after %.1fs",
                pending.correlation_id,
                pending.topic,
                timeout,
            )
            msg = f"No acknowledgement from transport within {timeout:g}s"
            raise CommandTimeoutError(
                msg,
                device_id=ack.device_id,
                topic=ack.topic,
            ) from None
        finally:
            self._pending.pop(pending.correlation_id, None)
            if not deliver.done():
                deliver.cancel()
        logger.info("Command acknowledged on %s: %s", result.topic, result.payload)
        return result

    async def _deliver(self, pending: PendingCommand, ack: Ack, encoded: str) -> None:
        """Publish and resolve the pending command's future exactly once."""
        try:
            await self._mqtt.publish(pending.topic, encoded, retain=False, qos=self._qos)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if not pending.result.done():
                pending.result.set_exception(self._publish_failed(ack, exc))
            return
        if not pending.result.done():
            pending.result.set_result(ack)

    @staticmethod
    def _publish_failed(ack: Ack, exc: Exception) -> PublishFailedError:
        logger.error("Command to %s failed: %s", ack.topic, exc)
        error = PublishFailedError(
            f"Publish to {ack.topic} failed: {exc}",
            device_id=ack.device_id,
            topic=ack.topic,
        )
        error.__cause__ = exc
        return error
