"""Automation rule sets, one per device.

A rule set is replaced wholesale on every save.  Saving is a single
logical operation with delivery: the new set is stamped, pushed to the
device as a ``setRules`` command, and only committed once the command
router reports success.  A failed delivery leaves the previously saved
set in place and re-raises the :class:`~farmhub._errors.CommandError`.

Rule objects are stored exactly as the client sent them; the only
validation is structural (a device id and a list of rules).
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from farmhub._clock import ClockPort
from farmhub._commands import CommandRouter
from farmhub._errors import RuleValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RuleSet:
    """The last saved rules for one device."""

    device_id: str
    rules: tuple[dict[str, Any], ...]
    saved_at: int

    def to_dict(self) -> dict[str, object]:
        return {
            "deviceId": self.device_id,
            "rules": list(self.rules),
            "savedAt": self.saved_at,
        }


class RulesStore:
    """Single owner of every device's :class:`RuleSet`."""

    def __init__(self, *, router: CommandRouter, clock: ClockPort) -> None:
        self._router = router
        self._clock = clock
        self._rule_sets: dict[str, RuleSet] = {}
        self._last_stamp: dict[str, int] = {}

    async def save(self, device_id: Any, rules: Any) -> RuleSet:
        """Validate, stamp, deliver and commit a rule set.

        Raises:
            RuleValidationError: *device_id* missing or *rules* not a list.
            CommandError: The ``setRules`` command could not be delivered.
        """
        if not isinstance(device_id, str) or not device_id:
            msg = "deviceId is required"
            raise RuleValidationError(msg)
        if isinstance(rules, (str, bytes)) or not isinstance(rules, Sequence):
            msg = "rules must be a list"
            raise RuleValidationError(msg)

        rule_set = RuleSet(
            device_id=device_id,
            rules=tuple(rules),
            saved_at=self._stamp(device_id),
        )
        await self._router.set_rules(rule_set)
        current = self._rule_sets.get(device_id)
        if current is not None and current.saved_at > rule_set.saved_at:
            # A later save was delivered first; keep it.
            logger.debug("Discarding superseded rules for '%s'", device_id)
            return rule_set
        self._rule_sets[device_id] = rule_set
        logger.info(
            "Saved %d rule(s) for '%s' (savedAt=%d)",
            len(rule_set.rules),
            device_id,
            rule_set.saved_at,
        )
        return rule_set

    def get(self, device_id: str) -> RuleSet | None:
        return self._rule_sets.get(device_id)

    def snapshot(self) -> list[RuleSet]:
        """Every device's rule set, in first-saved order."""
        return list(self._rule_sets.values())

    def __len__(self) -> int:
        return len(self._rule_sets)

    def _stamp(self, device_id: str) -> int:
        """Epoch-ms stamp, strictly greater than any earlier one for the device."""
        now = self._clock.epoch_ms()
        previous = self._last_stamp.get(device_id)
        stamp = now if previous is None or now > previous else previous + 1
        self._last_stamp[device_id] = stamp
        return stamp
