"""
Unit Tests for topic parsing and message decoding
"""

import json
import unittest
from datetime import datetime, timezone

from machine_control.exceptions import TransportParseError
from machine_control.messaging.topics import (
    SUBSCRIPTION_PATTERNS,
    AckMessage,
    StatusMessage,
    TelemetryReading,
    build_topic,
    decode_message,
    encode_payload,
    parse_timestamp,
    parse_topic,
)


class TestTopics(unittest.TestCase):
    """Test cases for topic helpers"""

    def test_build_topic(self):
        self.assertEqual(build_topic('A1', 'CNC-001', 'control'), 'factory/A1/machine/CNC-001/control')
        self.assertEqual(build_topic('A1', 'CNC-001', 'control', 'ack'),
                         'factory/A1/machine/CNC-001/control/ack')

    def test_parse_topic(self):
        address = parse_topic('factory/A1/machine/CNC-001/control/ack')

        self.assertEqual(address.plant_id, 'A1')
        self.assertEqual(address.machine_id, 'CNC-001')
        self.assertEqual(address.kind, 'control')
        self.assertEqual(address.subkind, 'ack')

    def test_parse_topic_rejects_bad_shapes(self):
        for topic in ('factory/A1/machine/CNC-001',
                      'plant/A1/machine/CNC-001/telemetry',
                      'factory/A1/robot/CNC-001/telemetry',
                      'factory//machine/CNC-001/telemetry',
                      'factory/A1/machine/CNC-001/control/ack/extra'):
            with self.assertRaises(TransportParseError):
                parse_topic(topic)

    def test_subscription_patterns(self):
        self.assertEqual(SUBSCRIPTION_PATTERNS, (
            'factory/+/machine/+/telemetry',
            'factory/+/machine/+/control/ack',
            'factory/+/machine/+/status',
        ))


class TestDecodeMessage(unittest.TestCase):
    """Test cases for decode_message"""

    TELEMETRY_TOPIC = 'factory/A1/machine/CNC-001/telemetry'

    def test_telemetry(self):
        payload = json.dumps({'ts': '2024-01-01T10:00:00.000Z', 'temp': 96,
                              'vibration': 1.2, 'power': 250, 'rpm': 1200}).encode()
        message = decode_message(self.TELEMETRY_TOPIC, payload)

        self.assertIsInstance(message, TelemetryReading)
        self.assertEqual(message.machine_id, 'CNC-001')
        self.assertEqual(message.plant_id, 'A1')
        self.assertEqual(message.temperature, 96.0)
        self.assertEqual(message.timestamp, datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc))
        self.assertEqual(message.raw_payload['rpm'], 1200)

    def test_telemetry_without_ts_uses_receive_time(self):
        before = datetime.now()
        message = decode_message(self.TELEMETRY_TOPIC, {'temp': 70, 'vibration': 1, 'power': 250})
        self.assertGreaterEqual(message.timestamp, before)

    def test_telemetry_rejects_missing_or_bad_metrics(self):
        bodies = [
            {'temp': 70, 'vibration': 1.0},
            {'temp': None, 'vibration': 1.0, 'power': 250},
            {'temp': 'hot', 'vibration': 1.0, 'power': 250},
            {'temp': True, 'vibration': 1.0, 'power': 250},
            {'temp': float('nan'), 'vibration': 1.0, 'power': 250},
            {'temp': 70, 'vibration': float('inf'), 'power': 250},
        ]
        for body in bodies:
            with self.assertRaises(TransportParseError):
                decode_message(self.TELEMETRY_TOPIC, body)

    def test_telemetry_rejects_metric_too_large_for_float(self):
        payload = '{"temp": ' + '9' * 400 + ', "vibration": 1.0, "power": 250}'
        with self.assertRaises(TransportParseError):
            decode_message(self.TELEMETRY_TOPIC, payload)

    def test_telemetry_with_out_of_range_ts_uses_receive_time(self):
        before = datetime.now()
        for ts in (1e20, -1e20, '99999-01-01T00:00:00'):
            body = {'ts': ts, 'temp': 70, 'vibration': 1.0, 'power': 250}
            self.assertGreaterEqual(decode_message(self.TELEMETRY_TOPIC, body).timestamp, before)

    def test_bad_json(self):
        with self.assertRaises(TransportParseError):
            decode_message(self.TELEMETRY_TOPIC, b'{not json')
        with self.assertRaises(TransportParseError):
            decode_message(self.TELEMETRY_TOPIC, b'\xff\xfe')

    def test_non_object_body(self):
        with self.assertRaises(TransportParseError):
            decode_message(self.TELEMETRY_TOPIC, b'[1, 2, 3]')

    def test_ack(self):
        message = decode_message('factory/A1/machine/CNC-001/control/ack',
                                 b'{"reqId": "manual-1-abc", "status": "ok"}')

        self.assertIsInstance(message, AckMessage)
        self.assertEqual(message.req_id, 'manual-1-abc')
        self.assertEqual(message.status, 'ok')

    def test_ack_requires_req_id_and_status(self):
        for body in ({'status': 'ok'}, {'reqId': 'manual-1-abc'}, {'reqId': '', 'status': 'ok'}):
            with self.assertRaises(TransportParseError):
                decode_message('factory/A1/machine/CNC-001/control/ack', body)

    def test_status(self):
        message = decode_message('factory/A1/machine/CNC-001/status',
                                 '{"status": "idle", "message": "Reset"}')

        self.assertIsInstance(message, StatusMessage)
        self.assertEqual(message.status, 'idle')
        self.assertEqual(message.message, 'Reset')

    def test_status_requires_status(self):
        with self.assertRaises(TransportParseError):
            decode_message('factory/A1/machine/CNC-001/status', {'message': 'hello'})

    def test_outbound_control_topic_not_inbound(self):
        with self.assertRaises(TransportParseError):
            decode_message('factory/A1/machine/CNC-001/control', {'reqId': 'x', 'cmd': 'start'})


class TestPayloadHelpers(unittest.TestCase):

    def test_parse_timestamp(self):
        self.assertEqual(parse_timestamp(0), datetime(1970, 1, 1, tzinfo=timezone.utc))
        self.assertEqual(parse_timestamp('2024-03-01T12:30:00'), datetime(2024, 3, 1, 12, 30))
        self.assertIsNone(parse_timestamp('yesterday'))
        self.assertIsNone(parse_timestamp(None))
        self.assertIsNone(parse_timestamp(1e20))
        self.assertIsNone(parse_timestamp(10 ** 400))
        self.assertIsNone(parse_timestamp(float('inf')))

    def test_encode_payload(self):
        payload = encode_payload({'reqId': 'r1', 'at': datetime(2024, 1, 1, 10, 0)})
        self.assertEqual(json.loads(payload), {'reqId': 'r1', 'at': '2024-01-01T10:00:00'})


if __name__ == '__main__':
    unittest.main()
