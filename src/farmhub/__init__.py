"""farmhub.

Smart-farm device broker: reconciles MQTT telemetry into live device
state, tracks liveness, and fans it out to WebSocket subscribers while
relaying commands and automation rules back to the devices.
"""

from importlib.metadata import PackageNotFoundError, version

from farmhub._bridge import Bridge
from farmhub._clock import ClockPort, SystemClock
from farmhub._codec import SensorReading, decode, device_id_from_topic
from farmhub._commands import Ack, CommandRouter, PendingCommand
from farmhub._errors import (
    CommandError,
    CommandTimeoutError,
    DecodeError,
    ErrorPayload,
    FarmhubError,
    InvalidPayloadError,
    MalformedTopicError,
    PublishFailedError,
    RuleValidationError,
    build_error_payload,
)
from farmhub._events import (
    DeviceStatusChanged,
    Event,
    RulesSnapshot,
    SensorData,
    SensorSnapshot,
)
from farmhub._fanout import FanoutHub, Subscriber
from farmhub._health import HealthReporter, HeartbeatPayload, build_will_config
from farmhub._http import create_app
from farmhub._liveness import LivenessSupervisor
from farmhub._logging import JsonFormatter, configure_logging
from farmhub._mqtt import (
    MessageCallback,
    MockMqttClient,
    MqttClient,
    MqttConnectable,
    MqttLifecycle,
    MqttMessageHandler,
    MqttPort,
    NullMqttClient,
    WillConfig,
)
from farmhub._registry import DeviceRegistry, DeviceState
from farmhub._rules import RulesStore, RuleSet
from farmhub._settings import LoggingSettings, MqttSettings, Settings

try:
    __version__ = version("farmhub")
except PackageNotFoundError:
    # Source checkout without installed metadata
    __version__ = "0.0.0+unknown"

__all__ = [
    # Version
    "__version__",
    # Composition
    "Bridge",
    "create_app",
    # Clock
    "ClockPort",
    "SystemClock",
    # Telemetry
    "SensorReading",
    "decode",
    "device_id_from_topic",
    # State
    "DeviceRegistry",
    "DeviceState",
    "LivenessSupervisor",
    # Commands and rules
    "Ack",
    "CommandRouter",
    "PendingCommand",
    "RuleSet",
    "RulesStore",
    # Fan-out
    "DeviceStatusChanged",
    "Event",
    "FanoutHub",
    "RulesSnapshot",
    "SensorData",
    "SensorSnapshot",
    "Subscriber",
    # Logging
    "JsonFormatter",
    "configure_logging",
    # MQTT
    "MessageCallback",
    "MockMqttClient",
    "MqttClient",
    "MqttConnectable",
    "MqttLifecycle",
    "MqttMessageHandler",
    "MqttPort",
    "NullMqttClient",
    "WillConfig",
    # Errors
    "CommandError",
    "CommandTimeoutError",
    "DecodeError",
    "ErrorPayload",
    "FarmhubError",
    "InvalidPayloadError",
    "MalformedTopicError",
    "PublishFailedError",
    "RuleValidationError",
    "build_error_payload",
    # Health
    "HeartbeatPayload",
    "HealthReporter",
    "build_will_config",
    # Settings
    "LoggingSettings",
    "MqttSettings",
    "Settings",
]
