"""
Unit Tests for the Machine Control Service
"""

import threading
import unittest

from machine_control.config.settings import Settings
from machine_control.control.dispatcher import CommandStatus
from machine_control.control.rules import MachineState
from machine_control.events import event_bus as events
from machine_control.messaging.mqtt_client import InMemoryTransport
from machine_control.service import MachineControlService
from utils.control_helpers import memory_history, telemetry, topic


class TestMachineControlService(unittest.TestCase):
    """Test cases for MachineControlService"""

    def setUp(self):
        self.settings = Settings()
        self.original_file = self.settings.config_file
        self.settings.reload(self.original_file)
        self.settings.set('plant.id', 'A1')

        self.history = memory_history()
        self.transport = InMemoryTransport()

    def tearDown(self):
        self.history.close()
        self.settings.reload(self.original_file)

    def _service(self):
        return MachineControlService(self.settings, transport=self.transport, history=self.history)

    def test_initialize_registry_seeds_defaults(self):
        service = self._service()

        self.assertEqual(service.initialize_registry(), 10)
        self.assertEqual(len(service.state_store), 10)
        self.assertEqual(service.state_store.get('CNC-001').current_state, MachineState.IDLE)

        # Seeding is idempotent
        self.assertEqual(service.initialize_registry(), 10)
        self.assertEqual(len(self.history.load_machines()), 10)

    def test_registry_without_seeding(self):
        self.settings.set('registry.seed_defaults', False)
        service = self._service()

        self.assertEqual(service.initialize_registry(), 0)
        self.assertEqual(len(service.state_store), 0)

    def test_start_routes_machine_traffic(self):
        service = self._service()
        self.assertTrue(service.start(wait_for_connection=False))
        self.addCleanup(service.stop)

        self.assertTrue(self.transport.inject(topic('CNC-001', 'telemetry'), telemetry(temp=95)))

        self.assertEqual(service.state_store.get('CNC-001').current_state, MachineState.STOPPED)
        self.assertEqual(len(self.transport.published_to(topic('CNC-001', 'control'))), 1)
        self.assertEqual(service.router.metrics.messages_processed, 1)

    def test_dispatch_command_uses_configured_plant(self):
        self.settings.set('plant.id', 'B4')
        service = self._service()
        service.start(wait_for_connection=False)
        self.addCleanup(service.stop)

        result = service.dispatch_command('ROB-001', 'start', 'alice', 'operator')

        published = self.transport.published_to(topic('ROB-001', 'control', plant='B4'))
        self.assertEqual(published[0]['reqId'], result.req_id)
        self.assertEqual(result.resulting_state, MachineState.RUNNING)

    def test_get_status(self):
        service = self._service()
        service.start(wait_for_connection=False)
        self.addCleanup(service.stop)
        service.dispatch_command('CV-001', 'start', 'alice', 'operator')

        status = service.get_status()

        self.assertTrue(status['running'])
        self.assertTrue(status['connected'])
        self.assertEqual(status['machines'], 10)
        self.assertEqual(status['pending_commands'], 1)
        self.assertEqual(status['failed_history_writes'], 0)
        self.assertIn('messages_received', status['router'])

    def test_expiry_thread_times_out_commands(self):
        self.settings.set('commands.ack_timeout_seconds', 0.05)
        self.settings.set('commands.expiry_check_interval', 0.01)
        service = self._service()

        timed_out = threading.Event()
        service.event_bus.subscribe(
            'watcher', lambda name, payload: timed_out.set() if name == events.COMMAND_TIMEOUT else None
        )

        service.start(wait_for_connection=False)
        self.addCleanup(service.stop)
        result = service.dispatch_command('CNC-002', 'start', 'alice', 'operator')

        self.assertTrue(timed_out.wait(timeout=2))
        self.assertEqual(service.dispatcher.pending.get(result.req_id).status, CommandStatus.TIMED_OUT)

    def test_stop(self):
        service = self._service()
        service.start(wait_for_connection=False)
        service.stop()

        self.assertFalse(service.is_running)
        self.assertFalse(self.transport.is_connected)

        # Stopping twice is a no-op
        service.stop()

    def test_request_stop_releases_wait(self):
        service = self._service()
        service.request_stop()
        service.wait()


if __name__ == '__main__':
    unittest.main()
