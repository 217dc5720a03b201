"""
Unit Tests for the Message Router
"""

import json
import unittest
from unittest.mock import Mock, patch

from machine_control.control.rules import MachineState
from machine_control.events import event_bus as events
from utils.control_helpers import build_core, event_names, telemetry, topic


class TestMessageRouter(unittest.TestCase):
    """Test cases for MessageRouter without a history store"""

    def setUp(self):
        self.core = build_core()
        self.router = self.core.router

    def test_healthy_telemetry(self):
        handled = self.router.handle_message(topic('CNC-001', 'telemetry'), telemetry())

        self.assertTrue(handled)
        self.assertEqual(event_names(self.core), [events.TELEMETRY, events.MACHINE_EVALUATION])

        name, payload = self.core.events[0]
        self.assertEqual(payload['machineId'], 'CNC-001')
        self.assertEqual(payload['temp'], 70.0)
        self.assertEqual(payload['evaluation']['overallStatus'], 'HEALTHY')
        self.assertEqual(self.core.events[1][1]['evaluation']['recommendedState'], 'running')
        self.assertEqual(self.core.transport.published, [])

    def test_critical_telemetry_stops_machine(self):
        self.router.handle_message(topic('CNC-001', 'telemetry'), telemetry(temp=96))

        self.assertEqual(self.core.store.get('CNC-001').current_state, MachineState.STOPPED)
        control = self.core.transport.published_to(topic('CNC-001', 'control'))
        self.assertEqual(len(control), 1)
        self.assertEqual(control[0]['cmd'], 'emergency_stop')
        self.assertEqual(control[0]['reason'], 'Automatic safety shutdown')
        self.assertIn(events.ALERT, event_names(self.core))

    def test_over_temp_alert_threshold(self):
        self.router.handle_message(topic('CNC-001', 'telemetry'), telemetry(temp=85))
        self.assertNotIn(events.ALERT, event_names(self.core))

        self.router.handle_message(topic('CNC-001', 'telemetry'), telemetry(temp=86))
        alert = [payload for name, payload in self.core.events if name == events.ALERT][0]
        self.assertEqual(alert['type'], 'over_temp')
        self.assertEqual(alert['value'], 86.0)
        self.assertEqual(alert['threshold'], 85.0)
        self.assertFalse(alert['acknowledged'])

    def test_vibration_warning_moves_to_maintenance(self):
        self.router.handle_message(topic('CNC-001', 'telemetry'), telemetry(vibration=3.0))

        entry = self.core.store.get('CNC-001')
        self.assertEqual(entry.current_state, MachineState.MAINTENANCE)
        self.assertEqual(self.core.transport.published, [])

    def test_telemetry_for_unregistered_machine(self):
        """Test evaluation still runs and is emitted for machines outside the registry"""
        self.assertTrue(self.router.handle_message(topic('NEW-001', 'telemetry'), telemetry()))
        self.assertFalse(self.core.store.known('NEW-001'))
        self.assertEqual(event_names(self.core), [events.TELEMETRY, events.MACHINE_EVALUATION])

    def test_malformed_messages_dropped(self):
        cases = [
            ('factory/A1/machine/CNC-001', telemetry()),
            (topic('CNC-001', 'telemetry'), b'not json'),
            (topic('CNC-001', 'telemetry'), b'"a string"'),
            (topic('CNC-001', 'telemetry'), {'temp': 70}),
            (topic('CNC-001', 'control', 'ack'), {'status': 'ok'}),
            (topic('CNC-001', 'status'), {}),
        ]
        for message_topic, payload in cases:
            self.assertFalse(self.router.handle_message(message_topic, payload))

        self.assertEqual(self.core.events, [])
        self.assertEqual(self.router.metrics.messages_dropped, len(cases))

    def test_out_of_range_numbers_do_not_raise(self):
        huge_temp = '{"temp": ' + '9' * 400 + ', "vibration": 1.0, "power": 250}'
        self.assertFalse(self.router.handle_message(topic('CNC-001', 'telemetry'), huge_temp))

        for ts in (1e20, '99999-01-01T00:00:00'):
            payload = json.dumps(telemetry(ts=ts))
            self.assertTrue(self.router.handle_message(topic('CNC-001', 'telemetry'), payload))

        huge_ts = '{"ts": ' + '9' * 400 + ', "temp": 70, "vibration": 1.0, "power": 250}'
        self.assertTrue(self.router.handle_message(topic('CNC-001', 'telemetry'), huge_ts))

        self.assertEqual(self.router.metrics.messages_dropped, 1)
        self.assertEqual(self.router.metrics.messages_processed, 3)

    def test_ack_for_known_command(self):
        result = self.core.dispatcher.dispatch('CNC-001', 'A1', 'start', 'alice', 'operator')
        self.core.events.clear()

        self.router.handle_message(topic('CNC-001', 'control', 'ack'),
                                   {'reqId': result.req_id, 'status': 'ok'})

        self.assertEqual(self.core.events, [
            (events.COMMAND_ACK, {'reqId': result.req_id, 'machineId': 'CNC-001', 'status': 'ok'})
        ])

    def test_ack_for_unknown_command_dropped(self):
        handled = self.router.handle_message(topic('CNC-001', 'control', 'ack'),
                                             {'reqId': 'manual-1-deadbeef', 'status': 'ok'})

        self.assertTrue(handled)
        self.assertEqual(self.core.events, [])
        self.assertEqual(self.router.metrics.unknown_acks, 1)

    def test_status_overwrites_state(self):
        self.router.handle_message(topic('CNC-001', 'status'), {'status': 'running', 'message': 'Started'})

        entry = self.core.store.get('CNC-001')
        self.assertEqual(entry.current_state, MachineState.RUNNING)
        self.assertEqual(entry.status_message, 'Started')
        self.assertEqual(event_names(self.core), [events.STATUS, events.MACHINE_STATE_UPDATE])
        self.assertEqual(self.core.events[0][1]['status'], 'running')
        self.assertEqual(self.core.events[1][1]['state'], 'running')

    def test_processing_error_does_not_raise(self):
        with patch.object(self.core.auto_actions, 'on_verdict', side_effect=RuntimeError('boom')):
            handled = self.router.handle_message(topic('CNC-001', 'telemetry'), telemetry(temp=96))

        self.assertFalse(handled)
        self.assertEqual(self.router.metrics.messages_failed, 1)
        self.assertTrue(self.router.handle_message(topic('CNC-001', 'telemetry'), telemetry()))

    def test_metrics(self):
        self.router.handle_message(topic('CNC-001', 'telemetry'), telemetry())
        self.router.handle_message(topic('CNC-001', 'status'), {'status': 'idle'})
        self.router.handle_message(topic('CNC-001', 'telemetry'), b'{')

        metrics = self.router.get_metrics()
        self.assertEqual(metrics['messages_received'], 3)
        self.assertEqual(metrics['messages_processed'], 2)
        self.assertEqual(metrics['messages_dropped'], 1)
        self.assertEqual(metrics['by_kind'], {'telemetry': 1, 'status': 1})

    def test_subscribed_through_transport(self):
        delivered = self.core.transport.inject(topic('CNC-001', 'telemetry'), telemetry())
        self.assertTrue(delivered)
        self.assertEqual(self.router.metrics.messages_processed, 1)

        self.assertFalse(self.core.transport.inject(topic('CNC-001', 'control'), {'reqId': 'x'}))


class TestMessageRouterHistory(unittest.TestCase):
    """Test history writes made by the router"""

    def setUp(self):
        self.history = Mock()
        self.core = build_core(self.history)

    def test_telemetry_writes(self):
        self.core.router.handle_message(topic('CNC-001', 'telemetry'), telemetry(temp=96))

        self.history.record_telemetry.assert_called_once()
        reading, evaluation = self.history.record_condition.call_args[0]
        self.assertEqual(reading.machine_id, 'CNC-001')
        self.assertEqual(evaluation['recommendedState'], 'stopped')
        self.assertTrue(self.history.record_condition.call_args[1]['auto_action_taken'])
        self.history.record_auto_action.assert_called_once()
        self.history.record_alert.assert_called_once_with('CNC-001', 'A1', 'over_temp', 96.0, 85.0)

    def test_history_failure_does_not_block_evaluation(self):
        self.history.record_telemetry.return_value = None
        self.history.record_condition.return_value = None

        self.assertTrue(self.core.router.handle_message(topic('CNC-001', 'telemetry'), telemetry(temp=96)))
        self.assertEqual(self.core.store.get('CNC-001').current_state, MachineState.STOPPED)

    def test_ack_writes_record(self):
        result = self.core.dispatcher.dispatch('CNC-001', 'A1', 'start', 'alice', 'operator')
        self.core.router.handle_message(topic('CNC-001', 'control', 'ack'),
                                        {'reqId': result.req_id, 'status': 'done'})

        self.history.record_command_ack.assert_called_once_with(result.req_id, 'CNC-001', 'done')

    def test_unknown_ack_writes_nothing(self):
        self.core.router.handle_message(topic('CNC-001', 'control', 'ack'),
                                        {'reqId': 'manual-1-deadbeef', 'status': 'ok'})
        self.history.record_command_ack.assert_not_called()

    def test_status_updates_registry(self):
        self.core.router.handle_message(topic('CNC-001', 'status'), {'status': 'maintenance'})
        self.history.update_machine_status.assert_called_once_with('CNC-001', 'maintenance')


if __name__ == '__main__':
    unittest.main()
