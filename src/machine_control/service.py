"""
Machine Control Service
Wires the history store, state store, dispatcher, auto actions and router to
the transport and runs them until shutdown
"""

import argparse
import logging
import signal
import threading
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from .config.settings import Settings, settings as default_settings
from .control.auto_actions import AutoActionController
from .control.dispatcher import CommandDispatcher, DispatchResult
from .control.state_store import MachineStateStore
from .events.event_bus import EventBus
from .messaging.mqtt_client import create_transport
from .messaging.router import MessageRouter
from .messaging.topics import SUBSCRIPTION_PATTERNS
from .storage.history import HistoryStore
from .utils.logger import setup_logging

logger = logging.getLogger(__name__)


class MachineControlService:
    """Owns every control component and their lifecycle"""

    def __init__(self, config: Optional[Settings] = None, transport=None,
                 history: Optional[HistoryStore] = None, use_mock: bool = False):
        """
        Build the service

        Args:
            config: Settings instance; defaults to the global settings
            transport: Pre-built transport; created from the MQTT settings when omitted
            history: Pre-built history store; created from the database settings when omitted
            use_mock: Use the in-memory transport instead of MQTT
        """
        self.settings = config or default_settings
        self.control_config = self.settings.get_control_config()
        self.mqtt_config = self.settings.get_mqtt_config()

        self.history = history if history is not None else HistoryStore(self.settings.get_database_config())
        self.state_store = MachineStateStore()
        self.event_bus = EventBus(snapshot_provider=self.state_store.snapshot)
        self.transport = transport or create_transport(self.mqtt_config, use_mock=use_mock)

        self.dispatcher = CommandDispatcher(
            self.state_store,
            self.transport,
            history=self.history,
            event_bus=self.event_bus,
            ack_timeout_seconds=self.control_config.ack_timeout_seconds,
            qos=self.mqtt_config.qos,
            closed_retention=self.control_config.closed_command_retention
        )
        self.auto_actions = AutoActionController(self.dispatcher, history=self.history)
        self.router = MessageRouter(
            self.state_store,
            self.dispatcher,
            self.auto_actions,
            history=self.history,
            event_bus=self.event_bus,
            over_temp_threshold=self.control_config.over_temp_threshold
        )

        self._stop_event = threading.Event()
        self._expiry_thread: Optional[threading.Thread] = None
        self.is_running = False

    def initialize_registry(self) -> int:
        """
        Load the machine registry into the state store, seeding defaults first
        when configured

        Returns:
            Number of machines loaded
        """
        try:
            if self.control_config.seed_defaults:
                created = self.history.seed_default_machines()
                if created:
                    logger.info(f"Seeded {created} default machines")
            records = self.history.load_machines()
        except SQLAlchemyError as e:
            logger.error(f"Could not load machine registry: {e}")
            records = []

        return self.state_store.load_registry(records)

    def _subscription_patterns(self):
        configured = [p for p in (self.mqtt_config.topics or {}).values() if p]
        return configured or list(SUBSCRIPTION_PATTERNS)

    def start(self, wait_for_connection: bool = True) -> bool:
        """
        Load the registry, subscribe the router and connect the transport

        Returns:
            True if the transport connected
        """
        if self.is_running:
            logger.warning("Service already running")
            return True

        self.initialize_registry()
        self.router.subscribe(self.transport, self._subscription_patterns())
        connected = self.transport.connect(wait=wait_for_connection)

        if self.control_config.ack_timeout_seconds:
            self._stop_event.clear()
            self._expiry_thread = threading.Thread(target=self._expiry_loop, daemon=True)
            self._expiry_thread.start()

        self.is_running = True
        logger.info(f"Machine control service started for plant {self.control_config.plant_id}")
        return connected

    def _expiry_loop(self):
        interval = self.control_config.expiry_check_interval
        while not self._stop_event.wait(interval):
            self.dispatcher.expire_pending()

    def stop(self):
        """Disconnect the transport and close the history store"""
        if not self.is_running:
            return

        self._stop_event.set()
        if self._expiry_thread is not None:
            self._expiry_thread.join(timeout=5)
            self._expiry_thread = None

        self.transport.disconnect()
        self.history.close()
        self.is_running = False
        logger.info("Machine control service stopped")

    def wait(self):
        """Block until stop is requested"""
        self._stop_event.wait()

    def request_stop(self):
        self._stop_event.set()

    def dispatch_command(self, machine_id: str, command: str, issuer: str,
                         role: Optional[str], plant_id: Optional[str] = None) -> DispatchResult:
        """Dispatch an operator command in this service's plant"""
        return self.dispatcher.dispatch(
            machine_id, plant_id or self.control_config.plant_id, command, issuer, role
        )

    def get_status(self) -> Dict[str, Any]:
        return {
            'running': self.is_running,
            'connected': self.transport.is_connected,
            'machines': len(self.state_store),
            'pending_commands': len(self.dispatcher.pending.pending()),
            'router': self.router.get_metrics(),
            'transport': self.transport.get_metrics(),
            'failed_history_writes': self.history.failed_writes
        }


def main():
    """Main execution function"""
    parser = argparse.ArgumentParser(description='Run the machine control service')
    parser.add_argument('--config', type=str, default=None,
                        help='Path to configuration file')
    parser.add_argument('--log-level', type=str, default=None,
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        help='Logging level')
    parser.add_argument('--mock', action='store_true',
                        help='Use the in-memory transport instead of MQTT')

    args = parser.parse_args()

    if args.config:
        default_settings.reload(args.config)

    logging_config = default_settings.get_logging_config()
    if args.log_level:
        logging_config['level'] = args.log_level
    setup_logging(logging_config)

    service = MachineControlService(use_mock=args.mock)

    def _signal_handler(signum, frame):
        logger.info(f"Received signal {signum}. Shutting down gracefully...")
        service.request_stop()

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    try:
        service.start()
        service.wait()
    except Exception as e:
        logger.error(f"Service failed: {str(e)}")
        raise
    finally:
        service.stop()


if __name__ == '__main__':
    main()
