"""
Topic and payload codec for the factory MQTT namespace

Topic layout: factory/{plant}/machine/{machineId}/{kind}[/{subkind}]

Inbound messages are decoded into one of three message types. Anything else
raises TransportParseError, which the router logs and drops.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

import numpy as np

from ..exceptions import TransportParseError

logger = logging.getLogger(__name__)

TOPIC_ROOT = 'factory'

TELEMETRY = 'telemetry'
CONTROL = 'control'
ACK = 'ack'
STATUS = 'status'

TELEMETRY_PATTERN = f'{TOPIC_ROOT}/+/machine/+/{TELEMETRY}'
ACK_PATTERN = f'{TOPIC_ROOT}/+/machine/+/{CONTROL}/{ACK}'
STATUS_PATTERN = f'{TOPIC_ROOT}/+/machine/+/{STATUS}'

SUBSCRIPTION_PATTERNS = (TELEMETRY_PATTERN, ACK_PATTERN, STATUS_PATTERN)


@dataclass(frozen=True)
class TopicAddress:
    """Parsed topic"""
    plant_id: str
    machine_id: str
    kind: str
    subkind: Optional[str] = None


@dataclass(frozen=True)
class TelemetryReading:
    """One sensor reading from a machine"""
    machine_id: str
    plant_id: str
    timestamp: datetime
    temperature: float
    vibration: float
    power: float
    raw_payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'machineId': self.machine_id,
            'plantId': self.plant_id,
            'ts': self.timestamp.isoformat(),
            'temp': self.temperature,
            'vibration': self.vibration,
            'power': self.power,
            'raw': self.raw_payload
        }


@dataclass(frozen=True)
class AckMessage:
    """Device acknowledgement of a control message"""
    plant_id: str
    machine_id: str
    req_id: str
    status: str
    raw_payload: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StatusMessage:
    """Device-reported machine status"""
    plant_id: str
    machine_id: str
    status: str
    message: Optional[str] = None
    raw_payload: Dict[str, Any] = field(default_factory=dict)


InboundMessage = Union[TelemetryReading, AckMessage, StatusMessage]


def build_topic(plant_id: str, machine_id: str, kind: str, subkind: Optional[str] = None) -> str:
    """Build a machine topic, e.g. factory/A1/machine/CNC-001/control"""
    topic = f'{TOPIC_ROOT}/{plant_id}/machine/{machine_id}/{kind}'
    if subkind:
        topic = f'{topic}/{subkind}'
    return topic


def parse_topic(topic: str) -> TopicAddress:
    """
    Split a topic into plant, machine and kind

    Raises:
        TransportParseError: if the topic is outside the machine namespace
    """
    parts = topic.split('/') if isinstance(topic, str) else []

    if len(parts) not in (5, 6) or parts[0] != TOPIC_ROOT or parts[2] != 'machine':
        raise TransportParseError(f"Unrecognized topic shape: {topic}", topic=topic)

    if not parts[1] or not parts[3] or not parts[4]:
        raise TransportParseError(f"Empty topic segment: {topic}", topic=topic)

    subkind = parts[5] if len(parts) == 6 else None
    return TopicAddress(plant_id=parts[1], machine_id=parts[3], kind=parts[4], subkind=subkind)


def _load_body(payload: Union[bytes, str, Dict[str, Any]], topic: str) -> Dict[str, Any]:
    if isinstance(payload, dict):
        return payload

    try:
        if isinstance(payload, (bytes, bytearray)):
            payload = payload.decode('utf-8')
        body = json.loads(payload)
    except (UnicodeDecodeError, ValueError, TypeError) as e:
        raise TransportParseError(f"Body is not valid JSON: {e}", topic=topic)

    if not isinstance(body, dict):
        raise TransportParseError("Body is not a JSON object", topic=topic)

    return body


def _metric(body: Dict[str, Any], key: str, topic: str) -> float:
    value = body.get(key)
    if value is None or isinstance(value, bool):
        raise TransportParseError(f"Missing or non-numeric '{key}'", topic=topic)

    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        raise TransportParseError(f"Missing or non-numeric '{key}'", topic=topic)

    if not np.isfinite(number):
        raise TransportParseError(f"Non-finite '{key}': {value}", topic=topic)

    return number


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string or epoch milliseconds; None when unusable"""
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        try:
            seconds = value / 1000.0
            if not np.isfinite(seconds):
                return None
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    if isinstance(value, str):
        text = value.strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            return datetime.fromisoformat(text)
        except ValueError:
            return None

    return None


def _decode_telemetry(address: TopicAddress, body: Dict[str, Any], topic: str) -> TelemetryReading:
    timestamp = parse_timestamp(body.get('ts'))
    if timestamp is None:
        if body.get('ts') is not None:
            logger.warning(f"Unusable timestamp {body.get('ts')!r} on {topic}, using receive time")
        timestamp = datetime.now()

    return TelemetryReading(
        machine_id=address.machine_id,
        plant_id=address.plant_id,
        timestamp=timestamp,
        temperature=_metric(body, 'temp', topic),
        vibration=_metric(body, 'vibration', topic),
        power=_metric(body, 'power', topic),
        raw_payload=body
    )


def _decode_ack(address: TopicAddress, body: Dict[str, Any], topic: str) -> AckMessage:
    req_id = body.get('reqId')
    status = body.get('status')
    if not isinstance(req_id, str) or not req_id:
        raise TransportParseError("Ack without reqId", topic=topic)
    if status is None:
        raise TransportParseError("Ack without status", topic=topic)

    return AckMessage(
        plant_id=address.plant_id,
        machine_id=address.machine_id,
        req_id=req_id,
        status=str(status),
        raw_payload=body
    )


def _decode_status(address: TopicAddress, body: Dict[str, Any], topic: str) -> StatusMessage:
    status = body.get('status')
    if not isinstance(status, str) or not status:
        raise TransportParseError("Status message without status", topic=topic)

    message = body.get('message')
    return StatusMessage(
        plant_id=address.plant_id,
        machine_id=address.machine_id,
        status=status,
        message=str(message) if message is not None else None,
        raw_payload=body
    )


def decode_message(topic: str, payload: Union[bytes, str, Dict[str, Any]]) -> InboundMessage:
    """
    Decode an inbound transport message

    Args:
        topic: Topic the message arrived on
        payload: Raw body (bytes/str JSON) or an already decoded dict

    Returns:
        TelemetryReading, AckMessage or StatusMessage

    Raises:
        TransportParseError: for unknown topic shapes and malformed bodies
    """
    address = parse_topic(topic)

    if address.kind == TELEMETRY and address.subkind is None:
        return _decode_telemetry(address, _load_body(payload, topic), topic)
    if address.kind == CONTROL and address.subkind == ACK:
        return _decode_ack(address, _load_body(payload, topic), topic)
    if address.kind == STATUS and address.subkind is None:
        return _decode_status(address, _load_body(payload, topic), topic)

    raise TransportParseError(f"Not an inbound message kind: {topic}", topic=topic)


def encode_payload(body: Dict[str, Any]) -> bytes:
    """Serialize an outbound body"""
    return json.dumps(body, default=_json_default).encode('utf-8')


def _json_default(obj: Any) -> Any:
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, np.generic):
        return obj.item()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")
