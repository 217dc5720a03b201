from .topics import (
    TelemetryReading,
    AckMessage,
    StatusMessage,
    SUBSCRIPTION_PATTERNS,
    build_topic,
    decode_message,
)
from .mqtt_client import MqttTransport, InMemoryTransport, create_transport

__all__ = [
    "TelemetryReading",
    "AckMessage",
    "StatusMessage",
    "SUBSCRIPTION_PATTERNS",
    "build_topic",
    "decode_message",
    "MqttTransport",
    "InMemoryTransport",
    "create_transport",
]
