"""Recording subscriber for fan-out tests."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field


@dataclass(eq=False)
class RecordingSubscriber:
    """Test double for the fan-out ``Subscriber`` protocol.

    Records every frame it is sent.  Set ``fail`` to make ``send``
    raise (a dead connection), or ``delay`` to make each send take that
    many seconds (a slow connection).
    """

    messages: list[dict[str, object]] = field(default_factory=list)
    closed: bool = False
    fail: Exception | None = None
    delay: float = 0.0

    async def send(self, message: dict[str, object]) -> None:
        if self.fail is not None:
            raise self.fail
        if self.delay:
            await asyncio.sleep(self.delay)
        self.messages.append(message)

    async def close(self) -> None:
        self.closed = True

    def events(self) -> list[str]:
        """Event names received so far, in order."""
        return [str(m["event"]) for m in self.messages]

    def of(self, event: str) -> list[object]:
        """``data`` of every received frame named *event*."""
        return [m.get("data") for m in self.messages if m["event"] == event]

    @staticmethod
    async def settle(rounds: int = 5) -> None:
        """Yield to the event loop so pending sends can complete."""
        for _ in range(rounds):
            await asyncio.sleep(0)
