"""Public test-support utilities for farmhub.

Re-exports test doubles and factories so that test suites can import
everything from a single ``farmhub.testing`` namespace instead of
reaching into private modules.

Provided symbols:

- :class:`BridgeHarness` — Bridge wired to pre-configured doubles.
- :class:`MockMqttClient` — in-memory MQTT double that records calls.
- :class:`NullMqttClient` — silent no-op MQTT adapter.
- :class:`FakeClock` — deterministic clock for timing tests.
- :class:`RecordingSubscriber` — fan-out subscriber that records frames.
- :func:`make_settings` — factory for ``Settings`` without ``.env`` files.
"""

from farmhub._mqtt import MockMqttClient, NullMqttClient
from farmhub.testing._clock import FakeClock
from farmhub.testing._harness import BridgeHarness
from farmhub.testing._settings import make_settings
from farmhub.testing._subscriber import RecordingSubscriber

__all__ = [
    "BridgeHarness",
    "FakeClock",
    "MockMqttClient",
    "NullMqttClient",
    "RecordingSubscriber",
    "make_settings",
]
