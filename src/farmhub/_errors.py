"""Error taxonomy and structured error payloads.

Exception hierarchy::

    FarmhubError
    ├── DecodeError              inbound message rejected (dropped, logged)
    │   ├── MalformedTopicError
    │   └── InvalidPayloadError
    ├── CommandError             outbound command failed (returned to caller)
    │   ├── PublishFailedError
    │   └── CommandTimeoutError
    └── RuleValidationError      rules:save request rejected

None of these are fatal to the process.  Decode errors terminate the
handling of a single message; command and validation errors are turned
into an acknowledgement for the originating caller via
:func:`build_error_payload`.

Payload schema::

    {
        "error_type": "command_timeout",
        "message": "Human-readable error description",
        "device": "node-1" | null,
        "timestamp": "2026-02-14T12:34:56+00:00",
        "details": {}
    }
"""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime

# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class FarmhubError(Exception):
    """Base class for all broker errors."""


class DecodeError(FarmhubError):
    """An inbound telemetry message could not be decoded."""

    def __init__(self, message: str, *, topic: str) -> None:
        super().__init__(message)
        self.topic = topic


class MalformedTopicError(DecodeError):
    """The topic carries no device segment."""


class InvalidPayloadError(DecodeError):
    """The payload is not a non-empty, well-typed JSON object."""


class CommandError(FarmhubError):
    """An outbound command could not be delivered."""

    def __init__(self, message: str, *, device_id: str, topic: str) -> None:
        super().__init__(message)
        self.device_id = device_id
        self.topic = topic


class PublishFailedError(CommandError):
    """The transport rejected the publish.  ``__cause__`` holds the reason."""


class CommandTimeoutError(CommandError):
    """The transport did not confirm delivery within the timeout."""


class RuleValidationError(FarmhubError):
    """A rules:save request is structurally invalid."""


ERROR_TYPES: dict[type[Exception], str] = {
    MalformedTopicError: "malformed_topic",
    InvalidPayloadError: "invalid_payload",
    PublishFailedError: "publish_failed",
    CommandTimeoutError: "command_timeout",
    RuleValidationError: "validation_error",
}
"""Machine-readable ``error_type`` strings for the broker's exceptions."""

# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ErrorPayload:
    """Immutable structured error payload."""

    error_type: str
    message: str
    device: str | None
    timestamp: str
    details: dict[str, object] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        """Serialise to a plain dictionary."""
        return asdict(self)

    def to_json(self) -> str:
        """Serialise to a JSON string."""
        return json.dumps(self.to_dict())


# ---------------------------------------------------------------------------
# Payload builder
# ---------------------------------------------------------------------------


def build_error_payload(
    error: Exception,
    *,
    error_type_map: dict[type[Exception], str] | None = None,
    device: str | None = None,
    details: dict[str, object] | None = None,
    clock: Callable[[], datetime] | None = None,
) -> ErrorPayload:
    """Convert an exception into a structured :class:`ErrorPayload`.

    Looks up the exact class of the exception; subclasses are not
    matched.  Unmapped exceptions get the generic ``"error"`` type.

    When *device* is omitted and the error is a :class:`CommandError`,
    the command's device is used.

    Args:
        error: The exception to convert.
        error_type_map: Mapping from exception types to ``error_type``
            strings.  Defaults to :data:`ERROR_TYPES`.
        device: Optional device id to include in the payload.
        details: Optional extra context.
        clock: Optional callable returning a :class:`~datetime.datetime`.
            Defaults to ``datetime.now(UTC)``.
    """
    resolved_map = ERROR_TYPES if error_type_map is None else error_type_map
    error_type = resolved_map.get(type(error), "error")
    if device is None and isinstance(error, CommandError):
        device = error.device_id
    now = clock() if clock is not None else datetime.now(UTC)
    return ErrorPayload(
        error_type=error_type,
        message=str(error),
        device=device,
        timestamp=now.isoformat(),
        details=details or {},
    )


def error_ack(error: Exception) -> dict[str, object]:
    """Build the ``{"ok": false, ...}`` acknowledgement for *error*."""
    payload = build_error_payload(error)
    return {"ok": False, "error": payload.message, "errorType": payload.error_type}
