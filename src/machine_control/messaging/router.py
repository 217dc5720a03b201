"""
Message Router
Entry point for every inbound transport message: decodes it and drives the
evaluation, state and command correlation paths
"""

import logging
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Union

from ..control.auto_actions import AutoActionController
from ..control.dispatcher import CommandDispatcher
from ..control.rules import EvaluationVerdict, MachineState, evaluate
from ..control.state_store import MachineStateStore
from ..events import event_bus as events
from ..exceptions import TransportParseError
from ..utils.logger import LogContext
from .topics import (
    SUBSCRIPTION_PATTERNS,
    AckMessage,
    StatusMessage,
    TelemetryReading,
    decode_message,
)

logger = logging.getLogger(__name__)

OVER_TEMP = 'over_temp'


@dataclass
class RouterMetrics:
    """Counters for routed messages"""
    messages_received: int = 0
    messages_processed: int = 0
    messages_dropped: int = 0
    messages_failed: int = 0
    unknown_acks: int = 0
    by_kind: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    processing_times: deque = field(default_factory=lambda: deque(maxlen=1000))

    def get_avg_processing_time(self) -> float:
        """Get average processing time in milliseconds"""
        if not self.processing_times:
            return 0.0
        return sum(self.processing_times) / len(self.processing_times)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'messages_received': self.messages_received,
            'messages_processed': self.messages_processed,
            'messages_dropped': self.messages_dropped,
            'messages_failed': self.messages_failed,
            'unknown_acks': self.unknown_acks,
            'by_kind': dict(self.by_kind),
            'avg_processing_time_ms': self.get_avg_processing_time()
        }


class MessageRouter:
    """
    Routes telemetry, control acks and device status reports

    handle_message never raises: malformed messages are logged and dropped,
    and a failure while processing one message does not affect the next.
    """

    def __init__(self, state_store: MachineStateStore, dispatcher: CommandDispatcher,
                 auto_actions: AutoActionController, history=None, event_bus=None,
                 over_temp_threshold: float = 85.0):
        """
        Initialize router

        Args:
            state_store: Shared machine state table
            dispatcher: Owner of the pending command table
            auto_actions: Receives every verdict
            history: History store for telemetry, conditions, acks and alerts
            event_bus: Outward event fan-out
            over_temp_threshold: Temperature above which an over_temp alert is raised
        """
        self.state_store = state_store
        self.dispatcher = dispatcher
        self.auto_actions = auto_actions
        self.history = history
        self.event_bus = event_bus
        self.over_temp_threshold = over_temp_threshold
        self.metrics = RouterMetrics()

    def subscribe(self, transport, patterns: Optional[Iterable[str]] = None):
        """Subscribe the router to the machine topics of a transport"""
        transport.subscribe(list(patterns or SUBSCRIPTION_PATTERNS), handler=self.handle_message)

    def handle_message(self, topic: str, payload: Union[bytes, str, Dict[str, Any]]) -> bool:
        """
        Process one inbound message

        Returns:
            True if the message was decoded and processed
        """
        self.metrics.messages_received += 1
        start = time.time()

        try:
            message = decode_message(topic, payload)
        except TransportParseError as e:
            self.metrics.messages_dropped += 1
            logger.warning(f"Dropping message on {topic}: {e}")
            return False

        try:
            with LogContext(machine_id=message.machine_id):
                if isinstance(message, TelemetryReading):
                    self.metrics.by_kind['telemetry'] += 1
                    self._handle_telemetry(message)
                elif isinstance(message, AckMessage):
                    self.metrics.by_kind['ack'] += 1
                    self._handle_ack(message)
                elif isinstance(message, StatusMessage):
                    self.metrics.by_kind['status'] += 1
                    self._handle_status(message)
        except Exception as e:
            self.metrics.messages_failed += 1
            logger.error(f"Error handling message on {topic}: {e}", exc_info=True)
            return False

        self.metrics.messages_processed += 1
        self.metrics.processing_times.append((time.time() - start) * 1000)
        return True

    def _emit(self, name: str, payload: Dict[str, Any]):
        if self.event_bus is not None:
            self.event_bus.emit(name, payload)

    def _handle_telemetry(self, reading: TelemetryReading) -> EvaluationVerdict:
        if self.history is not None:
            self.history.record_telemetry(reading)

        verdict = evaluate(reading.temperature, reading.vibration, reading.power)
        evaluation = verdict.to_dict()

        if self.history is not None:
            self.history.record_condition(
                reading, evaluation,
                auto_action_taken=verdict.recommended_state != MachineState.RUNNING
            )

        self.state_store.apply_evaluation(reading.machine_id, verdict)
        self.auto_actions.on_verdict(reading.machine_id, reading.plant_id, verdict)

        if verdict.has_issue:
            logger.info(f"Machine {reading.machine_id}: {verdict.recommended_state.value} "
                        f"({', '.join(alert.message for alert in verdict.alerts)})")

        self._emit(events.TELEMETRY, dict(reading.to_dict(), evaluation=evaluation))
        self._emit(events.MACHINE_EVALUATION, {
            'machineId': reading.machine_id,
            'evaluation': evaluation,
            'timestamp': datetime.now().isoformat()
        })

        if reading.temperature > self.over_temp_threshold:
            self._raise_over_temp(reading)

        return verdict

    def _raise_over_temp(self, reading: TelemetryReading):
        alert = {
            'machineId': reading.machine_id,
            'plantId': reading.plant_id,
            'ts': datetime.now().isoformat(),
            'type': OVER_TEMP,
            'value': reading.temperature,
            'threshold': self.over_temp_threshold,
            'acknowledged': False
        }

        if self.history is not None:
            self.history.record_alert(
                reading.machine_id, reading.plant_id, OVER_TEMP,
                reading.temperature, self.over_temp_threshold
            )

        self._emit(events.ALERT, alert)

    def _handle_ack(self, ack: AckMessage):
        command = self.dispatcher.acknowledge(ack.req_id, ack.status)

        if command is None:
            self.metrics.unknown_acks += 1
            logger.info(f"Ack for unknown command {ack.req_id} from {ack.machine_id}, ignoring")
            return

        if self.history is not None:
            self.history.record_command_ack(ack.req_id, ack.machine_id, ack.status)

        self._emit(events.COMMAND_ACK, {
            'reqId': ack.req_id,
            'machineId': ack.machine_id,
            'status': ack.status
        })

    def _handle_status(self, status: StatusMessage):
        logger.info(f"Updating machine {status.machine_id} state to: {status.status}")
        entry = self.state_store.apply_device_status(status.machine_id, status.status, status.message)

        if self.history is not None:
            self.history.update_machine_status(status.machine_id, entry.current_state.value)

        now = datetime.now().isoformat()
        self._emit(events.STATUS, {
            'machineId': status.machine_id,
            'status': status.status,
            'message': status.message,
            'ts': now
        })
        self._emit(events.MACHINE_STATE_UPDATE, {
            'machineId': status.machine_id,
            'state': entry.current_state.value,
            'timestamp': now
        })

    def get_metrics(self) -> Dict[str, Any]:
        return self.metrics.to_dict()
