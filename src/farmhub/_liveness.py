"""Per-device liveness timers.

State machine per device::

    Unknown ──reading──▶ Online (timer armed)
    Online  ──reading──▶ Online (timer re-armed)
    Online  ──timeout──▶ Offline
    Offline ──reading──▶ Online (timer armed)

Timers are one-shot ``loop.call_later`` handles.  Re-arming cancels the
previous handle before scheduling a new one, and the expiry callback
runs on the same event loop thread, so cancel/re-arm and expiry are
mutually exclusive: a cancelled handle never fires, and a reading
processed after an expiry simply brings the device back online.

Expiry asks the registry for the offline transition; only an actual
transition is reported, so an already-offline device never produces a
second ``device:status`` event.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from farmhub._clock import ClockPort
from farmhub._events import DeviceStatusChanged
from farmhub._registry import DeviceRegistry

logger = logging.getLogger(__name__)

StatusCallback = Callable[[DeviceStatusChanged], None]


class LivenessSupervisor:
    """Demotes silent devices to offline after ``timeout`` seconds.

    Args:
        registry: Owner of device state; asked to perform the transition.
        clock: Source of the ``at`` stamp on offline transitions.
        timeout: Silence window in seconds.
        on_status: Called synchronously with each offline transition.
    """

    def __init__(
        self,
        *,
        registry: DeviceRegistry,
        clock: ClockPort,
        timeout: float,
        on_status: StatusCallback,
    ) -> None:
        if timeout <= 0:
            msg = f"Liveness timeout must be positive, got {timeout}"
            raise ValueError(msg)
        self._registry = registry
        self._clock = clock
        self._timeout = timeout
        self._on_status = on_status
        self._timers: dict[str, asyncio.TimerHandle] = {}

    @property
    def timeout(self) -> float:
        return self._timeout

    @property
    def armed(self) -> frozenset[str]:
        """Devices with a pending offline timer."""
        return frozenset(self._timers)

    def on_reading(self, device_id: str) -> None:
        """(Re)arm the offline timer for *device_id*.

        Must be called from the event loop thread.
        """
        self.cancel(device_id)
        loop = asyncio.get_running_loop()
        self._timers[device_id] = loop.call_later(
            self._timeout,
            self._on_timeout,
            device_id,
        )

    def cancel(self, device_id: str) -> None:
        """Cancel the pending timer for *device_id*, if any."""
        handle = self._timers.pop(device_id, None)
        if handle is not None:
            handle.cancel()

    def shutdown(self) -> None:
        """Cancel every pending timer."""
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

    def _on_timeout(self, device_id: str) -> None:
        self._timers.pop(device_id, None)
        state = self._registry.mark_offline(device_id, at=self._clock.epoch_ms())
        if state is None:
            return
        logger.info(
            "Device '%s' silent for %.1fs, marked offline",
            device_id,
            self._timeout,
        )
        self._on_status(
            DeviceStatusChanged(
                device_id=device_id,
                online=False,
                at=state.last_seen_at,
            ),
        )
