"""MQTT transport for the broker.

The broker only needs two things from MQTT: a stream of raw sensor
messages in, and control publishes out.  Those are the :class:`MqttPort`
contract; optional capabilities (message callbacks, a background
connection, waiting for that connection) are separate protocols so the
bridge can check for them with ``isinstance``.

Adapters:

- :class:`MqttClient` talks to a real broker through aiomqtt.  The
  import is deferred to the connection loop, so the in-memory adapters
  work without it.
- :class:`MockMqttClient` records traffic for tests and can simulate
  inbound messages or a failing transport.
- :class:`NullMqttClient` drops everything.

Inbound payloads reach callbacks as raw bytes, one message at a time in
arrival order; decoding belongs to :mod:`farmhub._codec`.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from farmhub._settings import MqttSettings

logger = logging.getLogger(__name__)

MessageCallback = Callable[[str, bytes], Awaitable[None]]
"""Async callback receiving ``(topic, payload)`` for each inbound message."""


@dataclass(frozen=True)
class WillConfig:
    """Last will published by the broker if the bridge drops off.

    Kept free of aiomqtt types; :class:`MqttClient` converts it when it
    connects.
    """

    topic: str
    payload: str = "offline"
    qos: int = 1
    retain: bool = True


# ---------------------------------------------------------------------------
# Ports
# ---------------------------------------------------------------------------


@runtime_checkable
class MqttPort(Protocol):
    """Publish/subscribe contract used by the command router and health.

    ``publish`` returns once the transport has taken the message: right
    after the write for QoS 0, after the broker's PUBACK/PUBCOMP for
    QoS 1/2.  A transport failure raises.
    """

    async def publish(
        self,
        topic: str,
        payload: str,
        *,
        retain: bool = False,
        qos: int = 1,
    ) -> None: ...

    async def subscribe(self, topic: str) -> None: ...


@runtime_checkable
class MqttMessageHandler(Protocol):
    """Adapters that push inbound messages to a callback."""

    def on_message(self, callback: MessageCallback) -> None: ...


@runtime_checkable
class MqttLifecycle(Protocol):
    """Adapters owning a background connection."""

    async def start(self) -> None: ...

    async def stop(self) -> None: ...


@runtime_checkable
class MqttConnectable(Protocol):
    """Adapters that can report when their connection is up."""

    async def wait_connected(self, timeout: float) -> bool: ...


# ---------------------------------------------------------------------------
# In-memory adapters
# ---------------------------------------------------------------------------


@dataclass
class NullMqttClient:
    """Adapter that discards every publish and subscribe."""

    async def publish(
        self,
        topic: str,
        payload: str,  # noqa: ARG002
        *,
        retain: bool = False,  # noqa: ARG002
        qos: int = 1,  # noqa: ARG002
    ) -> None:
        logger.debug("Discarding publish to %s", topic)

    async def subscribe(self, topic: str) -> None:
        logger.debug("Discarding subscribe to %s", topic)


@dataclass
class MockMqttClient:
    """Records publishes and subscriptions; delivers simulated readings.

    ``deliver()`` feeds a message to the registered callbacks as the real
    client would.  Setting ``publish_error`` makes every publish raise
    it, which stands in for a broken broker connection.
    """

    published: list[tuple[str, str, bool, int]] = field(
        default_factory=list,
    )
    subscriptions: list[str] = field(default_factory=list)
    publish_error: Exception | None = None
    _callbacks: list[MessageCallback] = field(
        default_factory=list,
        init=False,
        repr=False,
    )

    async def publish(
        self,
        topic: str,
        payload: str,
        *,
        retain: bool = False,
        qos: int = 1,
    ) -> None:
        if self.publish_error is not None:
            raise self.publish_error
        self.published.append((topic, payload, retain, qos))

    async def subscribe(self, topic: str) -> None:
        self.subscriptions.append(topic)

    def on_message(self, callback: MessageCallback) -> None:
        self._callbacks.append(callback)

    async def deliver(self, topic: str, payload: str | bytes) -> None:
        """Hand *payload* to every callback, encoding ``str`` as UTF-8."""
        raw = payload.encode("utf-8") if isinstance(payload, str) else payload
        for cb in self._callbacks:
            await cb(topic, raw)

    @property
    def publish_count(self) -> int:
        return len(self.published)

    def reset(self) -> None:
        """Forget all traffic and callbacks and clear ``publish_error``."""
        self.published.clear()
        self.subscriptions.clear()
        self._callbacks.clear()
        self.publish_error = None

    def get_messages_for(
        self,
        topic: str,
    ) -> list[tuple[str, bool, int]]:
        """``(payload, retain, qos)`` of every publish to *topic*, in order."""
        return [
            (payload, retain, qos)
            for t, payload, retain, qos in self.published
            if t == topic
        ]


# ---------------------------------------------------------------------------
# aiomqtt adapter
# ---------------------------------------------------------------------------


@dataclass
class MqttClient:
    """Broker connection backed by aiomqtt.

    A background task keeps the connection alive, reconnecting with
    exponential backoff from ``reconnect_interval`` up to
    ``reconnect_max_interval`` and re-subscribing the sensor filter each
    time.  While disconnected ``publish`` raises (commands fail fast
    with ``publish_failed``) and no readings arrive, so devices fall
    offline through the liveness timeout.
    """

    settings: MqttSettings
    will: WillConfig | None = None

    _callbacks: list[MessageCallback] = field(
        default_factory=list,
        init=False,
        repr=False,
    )
    _subscriptions: set[str] = field(
        default_factory=set,
        init=False,
        repr=False,
    )
    _client: Any = field(default=None, init=False, repr=False)
    _listen_task: asyncio.Task[None] | None = field(
        default=None,
        init=False,
        repr=False,
    )
    _connected: asyncio.Event = field(
        default_factory=asyncio.Event,
        init=False,
        repr=False,
    )
    _stopping: bool = field(default=False, init=False, repr=False)

    async def publish(
        self,
        topic: str,
        payload: str,
        *,
        retain: bool = False,
        qos: int = 1,
    ) -> None:
        """Publish through the live connection.

        Raises:
            RuntimeError: If there is no connection.
        """
        if self._client is None:
            msg = "MqttClient is not connected"
            raise RuntimeError(msg)
        await self._client.publish(
            topic,
            payload,
            retain=retain,
            qos=qos,
        )
        logger.debug("Published to %s (qos=%d, retain=%s)", topic, qos, retain)

    async def subscribe(self, topic: str) -> None:
        """Subscribe now if connected, and again after every reconnect."""
        self._subscriptions.add(topic)
        if self._client is not None:
            await self._client.subscribe(
                topic,
                qos=self.settings.qos,
            )

    def on_message(self, callback: MessageCallback) -> None:
        self._callbacks.append(callback)

    async def start(self) -> None:
        """Spawn the connection loop; a second call while running is a no-op."""
        if self._listen_task is not None and not self._listen_task.done():
            logger.debug("MqttClient.start() called while already running")
            return
        self._stopping = False
        self._listen_task = asyncio.create_task(
            self._connection_loop(),
        )

    async def stop(self) -> None:
        """Cancel the connection loop.  Safe to call more than once."""
        self._stopping = True
        if self._listen_task is not None:
            self._listen_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._listen_task
            self._listen_task = None
        self._client = None
        self._connected.clear()

    @property
    def is_connected(self) -> bool:
        return self._connected.is_set()

    async def wait_connected(self, timeout: float) -> bool:
        """Wait up to *timeout* seconds for the broker connection.

        Returns:
            Whether the client is connected.
        """
        try:
            async with asyncio.timeout(timeout):
                await self._connected.wait()
        except TimeoutError:
            return False
        return True

    # -- Internal -----------------------------------------------------------

    def _next_delay(self, delay: float) -> float:
        return min(delay * 2, self.settings.reconnect_max_interval)

    async def _connection_loop(self) -> None:
        try:
            import aiomqtt  # noqa: PLC0415
        except ModuleNotFoundError as exc:
            msg = "aiomqtt is required to use MqttClient"
            raise RuntimeError(msg) from exc

        delay = self.settings.reconnect_interval
        while not self._stopping:
            try:
                password: str | None = None
                if self.settings.password is not None:
                    password = self.settings.password.get_secret_value()

                will: aiomqtt.Will | None = None
                if self.will is not None:
                    will = aiomqtt.Will(
                        topic=self.will.topic,
                        payload=self.will.payload,
                        qos=self.will.qos,
                        retain=self.will.retain,
                    )

                async with aiomqtt.Client(
                    hostname=self.settings.host,
                    port=self.settings.port,
                    username=self.settings.username,
                    password=password,
                    identifier=self.settings.client_id or None,
                    will=will,
                ) as client:
                    self._client = client
                    try:
                        for topic in list(self._subscriptions):
                            await client.subscribe(
                                topic,
                                qos=self.settings.qos,
                            )

                        self._connected.set()
                        delay = self.settings.reconnect_interval
                        logger.info(
                            "MQTT connected to %s:%d",
                            self.settings.host,
                            self.settings.port,
                        )

                        async for message in client.messages:
                            await self._dispatch(message)
                    finally:
                        self._connected.clear()
                        self._client = None

            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning(
                    "MQTT connection lost, reconnecting in %.1fs",
                    delay,
                    exc_info=True,
                )
                await asyncio.sleep(delay)
                delay = self._next_delay(delay)

    async def _dispatch(self, message: Any) -> None:
        topic = str(message.topic)

        if message.payload is None:
            logger.debug("Skipping empty message on %s", topic)
            return

        payload = (
            bytes(message.payload)
            if isinstance(message.payload, (bytes, bytearray))
            else str(message.payload).encode("utf-8")
        )

        # one failing callback must not starve the others
        for cb in self._callbacks:
            try:
                await cb(topic, payload)
            except Exception:
                logger.exception("Error in message callback for %s", topic)
