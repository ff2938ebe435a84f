"""Real-time fan-out to connected subscribers.

Each subscriber gets a bounded queue drained by its own sender task.
``broadcast`` only enqueues and never awaits, so:

- every subscriber sees events in exactly the order they were
  broadcast (a reading and a liveness expiry can never interleave
  differently for two subscribers);
- a slow or dead subscriber cannot delay anyone else.  When its
  queue overflows, or a send fails, it is dropped and closed.

On join the subscriber's queue is seeded with ``sensor:snapshot`` and,
when any rules were saved, ``rules:snapshot``, before it is
registered for broadcasts, so nothing can overtake the snapshot.

Client requests (``control:send``, ``rules:save``) are answered to the
originating subscriber only, as an ``ack`` frame.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from farmhub._commands import CommandRouter
from farmhub._errors import CommandError, RuleValidationError, error_ack
from farmhub._events import Event, RulesSnapshot, SensorSnapshot
from farmhub._registry import DeviceRegistry
from farmhub._rules import RulesStore

logger = logging.getLogger(__name__)

# join always seeds up to two snapshot frames
_MIN_QUEUE_SIZE = 2


class Subscriber(Protocol):
    """A connected real-time client."""

    async def send(self, message: dict[str, object]) -> None: ...

    async def close(self) -> None: ...


@dataclass(eq=False)
class _Subscription:
    subscriber: Subscriber
    queue: asyncio.Queue[dict[str, object]]
    task: asyncio.Task[None] | None = field(default=None, repr=False)


class FanoutHub:
    """Broadcasts broker events to every connected subscriber.

    Args:
        registry: Source of the device snapshot sent on join.
        rules: Source of the rules snapshot; target of ``rules:save``.
        router: Target of ``control:send``.
        queue_size: Maximum undelivered frames per subscriber.
    """

    def __init__(
        self,
        *,
        registry: DeviceRegistry,
        rules: RulesStore,
        router: CommandRouter,
        queue_size: int = 256,
    ) -> None:
        self._registry = registry
        self._rules = rules
        self._router = router
        self._queue_size = max(queue_size, _MIN_QUEUE_SIZE)
        self._subscriptions: dict[Subscriber, _Subscription] = {}
        self._closing: set[asyncio.Task[None]] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    # -- Membership ---------------------------------------------------------

    def join(self, subscriber: Subscriber) -> None:
        """Register *subscriber* and queue its initial snapshots."""
        if subscriber in self._subscriptions:
            return
        sub = _Subscription(
            subscriber=subscriber,
            queue=asyncio.Queue(maxsize=self._queue_size),
        )
        sub.queue.put_nowait(
            SensorSnapshot(tuple(self._registry.snapshot())).to_message(),
        )
        rule_sets = self._rules.snapshot()
        if rule_sets:
            sub.queue.put_nowait(RulesSnapshot(tuple(rule_sets)).to_message())
        self._subscriptions[subscriber] = sub
        sub.task = asyncio.create_task(self._pump(sub))
        logger.info("Subscriber joined (%d connected)", self.subscriber_count)

    async def leave(self, subscriber: Subscriber) -> None:
        """Unregister *subscriber*; undelivered frames are discarded."""
        sub = self._subscriptions.pop(subscriber, None)
        if sub is None:
            return
        await self._stop_pump(sub)
        logger.info("Subscriber left (%d connected)", self.subscriber_count)

    async def close(self) -> None:
        """Disconnect every subscriber."""
        subs = list(self._subscriptions.values())
        self._subscriptions.clear()
        for sub in subs:
            await self._stop_pump(sub)
            with contextlib.suppress(Exception):
                await sub.subscriber.close()
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)

    # -- Delivery -----------------------------------------------------------

    def broadcast(self, event: Event) -> int:
        """Queue *event* for every subscriber.

        Returns:
            The number of subscribers the event was queued for.
        """
        message = event.to_message()
        delivered = 0
        for sub in list(self._subscriptions.values()):
            if self._offer(sub, message):
                delivered += 1
        return delivered

    def reply(self, subscriber: Subscriber, message: dict[str, object]) -> bool:
        """Queue *message* for *subscriber* only."""
        sub = self._subscriptions.get(subscriber)
        if sub is None:
            return False
        return self._offer(sub, message)

    # -- Client requests ----------------------------------------------------

    async def on_command_request(
        self,
        subscriber: Subscriber,
        payload: Any,
        *,
        request_id: object = None,
    ) -> dict[str, object]:
        """Handle ``control:send``: relay a command and acknowledge it.

        The acknowledgement is returned and, when *request_id* is given,
        also queued to *subscriber* as an ``ack`` frame.
        """
        if not isinstance(payload, Mapping) or not payload.get("deviceId"):
            ack: dict[str, object] = {"ok": False, "error": "deviceId required"}
        else:
            command = {k: v for k, v in payload.items() if k != "deviceId"}
            try:
                result = await self._router.send(str(payload["deviceId"]), command)
            except CommandError as exc:
                ack = error_ack(exc)
            else:
                ack = result.to_dict()
        self._acknowledge(subscriber, request_id, ack)
        return ack

    async def on_rules_save(
        self,
        subscriber: Subscriber,
        payload: Any,
        *,
        request_id: object = None,
    ) -> dict[str, object]:
        """Handle ``rules:save``: store, deliver, acknowledge and broadcast."""
        body: Mapping[str, Any] = payload if isinstance(payload, Mapping) else {}
        try:
            rule_set = await self._rules.save(body.get("deviceId"), body.get("rules"))
        except (RuleValidationError, CommandError) as exc:
            ack: dict[str, object] = error_ack(exc)
            self._acknowledge(subscriber, request_id, ack)
            return ack
        ack = {"ok": True, "savedAt": rule_set.saved_at}
        self._acknowledge(subscriber, request_id, ack)
        self.broadcast(RulesSnapshot(tuple(self._rules.snapshot())))
        return ack

    # -- Internal -----------------------------------------------------------

    def _acknowledge(
        self,
        subscriber: Subscriber,
        request_id: object,
        ack: dict[str, object],
    ) -> None:
        if request_id is not None:
            self.reply(subscriber, {"event": "ack", "id": request_id, "data": ack})

    def _offer(self, sub: _Subscription, message: dict[str, object]) -> bool:
        try:
            sub.queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning(
                "Subscriber fell %d frames behind, disconnecting",
                sub.queue.qsize(),
            )
            self._drop(sub)
            return False
        return True

    def _drop(self, sub: _Subscription) -> None:
        """Remove *sub* without awaiting; close it in the background."""
        if self._subscriptions.get(sub.subscriber) is sub:
            del self._subscriptions[sub.subscriber]
        if sub.task is not None and sub.task is not asyncio.current_task():
            sub.task.cancel()
        task = asyncio.create_task(self._close_quietly(sub.subscriber))
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    async def _pump(self, sub: _Subscription) -> None:
        while True:
            message = await sub.queue.get()
            try:
                await sub.subscriber.send(message)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.info("Dropping subscriber after failed send: %s", exc)
                self._drop(sub)
                return

    @staticmethod
    async def _stop_pump(sub: _Subscription) -> None:
        if sub.task is None:
            return
        sub.task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sub.task

    @staticmethod
    async def _close_quietly(subscriber: Subscriber) -> None:
        try:
            await subscriber.close()
        except Exception:
            logger.debug("Error closing subscriber", exc_info=True)
