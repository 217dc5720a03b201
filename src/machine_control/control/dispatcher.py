"""
Command Dispatcher
Validates operator commands, applies the predicted state and publishes
control messages; correlates device acks through the pending command table
"""

import logging
import threading
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from ..events import event_bus as events
from ..exceptions import ValidationError
from ..messaging.topics import CONTROL, build_topic
from ..utils.logger import LogContext, log_audit
from .rules import MachineState, OverallStatus
from .state_store import MachineStateStore

logger = logging.getLogger(__name__)

# Local state predicted from each command; anything else leaves the state alone
COMMAND_STATES: Dict[str, MachineState] = {
    'start': MachineState.RUNNING,
    'stop': MachineState.STOPPED,
    'maintenance_mode': MachineState.MAINTENANCE,
    'emergency_stop': MachineState.STOPPED,
}

EMERGENCY_STOP = 'emergency_stop'
EMERGENCY_ROLES = ('admin', 'operator')
VIEWER_ROLE = 'viewer'


class CommandStatus(Enum):
    """Lifecycle of an issued command"""
    PENDING = "pending"
    ACKED = "acked"
    TIMED_OUT = "timed-out"


@dataclass
class PendingCommand:
    """A command waiting for its device acknowledgement"""
    req_id: str
    machine_id: str
    plant_id: str
    command: str
    issuer: str
    issued_at: datetime = field(default_factory=datetime.now)
    status: CommandStatus = CommandStatus.PENDING
    ack_status: Optional[str] = None
    acked_at: Optional[datetime] = None
    system_issued: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'reqId': self.req_id,
            'machineId': self.machine_id,
            'plantId': self.plant_id,
            'command': self.command,
            'issuer': self.issuer,
            'issuedAt': self.issued_at.isoformat(),
            'status': self.status.value,
            'ackStatus': self.ack_status,
            'ackedAt': self.acked_at.isoformat() if self.acked_at else None,
            'systemIssued': self.system_issued
        }


@dataclass(frozen=True)
class DispatchResult:
    """Outcome of an accepted command"""
    req_id: str
    resulting_state: MachineState
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'reqId': self.req_id,
            'resultingState': self.resulting_state.value,
            'message': self.message
        }


class PendingCommandTable:
    """
    Thread-safe table of issued commands keyed by reqId

    Open commands stay until they are acknowledged or expired. Closed commands
    move to a bounded list of recent entries, oldest dropped first; the history
    store keeps the full record.
    """

    def __init__(self, closed_retention: int = 1000):
        self._commands: Dict[str, PendingCommand] = {}
        self._closed: "OrderedDict[str, PendingCommand]" = OrderedDict()
        self.closed_retention = closed_retention
        self._lock = threading.Lock()

    def add(self, command: PendingCommand):
        with self._lock:
            self._commands[command.req_id] = command

    def _close(self, command: PendingCommand):
        self._commands.pop(command.req_id, None)
        self._closed.pop(command.req_id, None)
        self._closed[command.req_id] = command
        while len(self._closed) > self.closed_retention:
            self._closed.popitem(last=False)

    def get(self, req_id: str) -> Optional[PendingCommand]:
        with self._lock:
            command = self._commands.get(req_id) or self._closed.get(req_id)
            return replace(command) if command else None

    def acknowledge(self, req_id: str, status: str) -> Optional[PendingCommand]:
        """
        Mark a command acknowledged

        A late ack for a recently timed-out command still closes it as acked.

        Returns:
            The updated command, or None when the reqId is unknown
        """
        with self._lock:
            command = self._commands.get(req_id) or self._closed.get(req_id)
            if command is None:
                return None

            command.status = CommandStatus.ACKED
            command.ack_status = status
            command.acked_at = datetime.now()
            self._close(command)
            return replace(command)

    def pending(self) -> List[PendingCommand]:
        with self._lock:
            return [replace(c) for c in self._commands.values()]

    def expire(self, timeout_seconds: float) -> List[PendingCommand]:
        """
        Mark commands pending for longer than the timeout as timed out

        Returns:
            Commands that expired in this call
        """
        cutoff = datetime.now() - timedelta(seconds=timeout_seconds)
        expired = []

        with self._lock:
            for command in list(self._commands.values()):
                if command.issued_at <= cutoff:
                    command.status = CommandStatus.TIMED_OUT
                    self._close(command)
                    expired.append(replace(command))

        return expired

    def __len__(self) -> int:
        """Number of open and retained closed commands"""
        with self._lock:
            return len(self._commands) + len(self._closed)


class CommandDispatcher:
    """
    Issues commands to machines

    Operator commands go through the admission checks; system commands from
    the auto-action controller bypass them. Both paths apply the predicted
    state immediately and return without waiting for the device ack.
    """

    def __init__(self, state_store: MachineStateStore, transport, history=None,
                 event_bus=None, ack_timeout_seconds: Optional[float] = None,
                 qos: int = 1, closed_retention: int = 1000):
        """
        Initialize dispatcher

        Args:
            state_store: Shared machine state table
            transport: Publisher with publish(topic, body, qos)
            history: History store for manual command audit records
            event_bus: Receives state updates and command timeouts
            ack_timeout_seconds: Expire unacknowledged commands after this long; None disables
            qos: QoS used for control messages
            closed_retention: Closed commands kept in memory for late lookups
        """
        self.state_store = state_store
        self.transport = transport
        self.history = history
        self.event_bus = event_bus
        self.ack_timeout_seconds = ack_timeout_seconds
        self.qos = qos
        self.pending = PendingCommandTable(closed_retention)

    @staticmethod
    def _generate_req_id(prefix: str) -> str:
        timestamp = int(time.time() * 1000)
        return f"{prefix}-{timestamp}-{uuid.uuid4().hex[:8]}"

    def _validate(self, machine_id: str, command: str, role: Optional[str]):
        if not role:
            raise ValidationError("role required", machine_id, command)

        if not self.state_store.known(machine_id):
            raise ValidationError("machine not found", machine_id, command)

        if role == VIEWER_ROLE:
            raise ValidationError("insufficient permissions", machine_id, command)

        if command == EMERGENCY_STOP and role not in EMERGENCY_ROLES:
            raise ValidationError("insufficient permissions for emergency stop", machine_id, command)

        entry = self.state_store.get(machine_id)

        if command == 'start' and entry.last_evaluation is not None \
                and entry.last_evaluation.overall_status == OverallStatus.ISSUE_DETECTED:
            raise ValidationError("cannot start with detected issues", machine_id, command)

        if command == 'stop' and entry.current_state == MachineState.STOPPED:
            raise ValidationError("already stopped", machine_id, command)

    def _apply(self, machine_id: str, command: str):
        """Apply the predicted state; returns (previous, resulting)"""
        previous = self.state_store.get(machine_id).current_state
        target = COMMAND_STATES.get(command)

        if target is None or self.state_store.apply_command_result(machine_id, target) is None:
            return previous, previous

        return previous, target

    def _publish(self, machine_id: str, plant_id: str, body: Dict[str, Any]):
        topic = build_topic(plant_id, machine_id, CONTROL)
        if not self.transport.publish(topic, body, qos=self.qos):
            logger.warning(f"Control message {body['reqId']} could not be queued on {topic}")

    def _emit_state(self, machine_id: str, state: MachineState):
        if self.event_bus is not None:
            self.event_bus.emit(events.MACHINE_STATE_UPDATE, {
                'machineId': machine_id,
                'state': state.value,
                'timestamp': datetime.now().isoformat()
            })

    def dispatch(self, machine_id: str, plant_id: str, command: str,
                 issuer: str, role: Optional[str]) -> DispatchResult:
        """
        Dispatch an operator command

        Args:
            machine_id: Target machine
            plant_id: Plant of the machine
            command: start, stop, maintenance_mode, emergency_stop or a device-specific command
            issuer: Operator name
            role: Already resolved role of the operator

        Returns:
            DispatchResult with the reqId and the predicted state

        Raises:
            ValidationError: if the command is refused
        """
        with self.state_store.machine_lock(machine_id):
            try:
                self._validate(machine_id, command, role)
            except ValidationError as e:
                log_audit('COMMAND', 'machine', machine_id, user=issuer,
                          details={'command': command, 'role': role, 'reason': e.reason},
                          result='REJECTED')
                raise

            req_id = self._generate_req_id('manual')
            previous, resulting = self._apply(machine_id, command)
            self.pending.add(PendingCommand(
                req_id=req_id,
                machine_id=machine_id,
                plant_id=plant_id,
                command=command,
                issuer=issuer
            ))

        with LogContext(machine_id=machine_id, req_id=req_id):
            self._publish(machine_id, plant_id, {
                'reqId': req_id,
                'cmd': command,
                'operator': issuer,
                'role': role,
                'timestamp': datetime.now().isoformat()
            })

            if self.history is not None:
                self.history.record_manual_command(
                    machine_id, plant_id, command, issuer, role, req_id,
                    previous.value, resulting.value
                )

            log_audit('COMMAND', 'machine', machine_id, user=issuer,
                      details={'command': command, 'role': role, 'reqId': req_id,
                               'previousState': previous.value, 'newState': resulting.value})
            logger.info(f"Command {command} sent to machine {machine_id} by {issuer}")

        self._emit_state(machine_id, resulting)

        return DispatchResult(
            req_id=req_id,
            resulting_state=resulting,
            message=f"Command {command} sent to machine {machine_id}"
        )

    def dispatch_system(self, machine_id: str, plant_id: str, command: str,
                        reason: str, alerts: Optional[List[Dict[str, Any]]] = None) -> DispatchResult:
        """
        Dispatch a system-issued command without admission checks

        Used by automatic safety actions, which must never be refused.
        """
        prefix = 'emergency' if command == EMERGENCY_STOP else 'system'
        alerts = list(alerts or [])

        with self.state_store.machine_lock(machine_id):
            req_id = self._generate_req_id(prefix)
            previous, resulting = self._apply(machine_id, command)
            self.pending.add(PendingCommand(
                req_id=req_id,
                machine_id=machine_id,
                plant_id=plant_id,
                command=command,
                issuer='SYSTEM',
                system_issued=True
            ))

        with LogContext(machine_id=machine_id, req_id=req_id):
            self._publish(machine_id, plant_id, {
                'reqId': req_id,
                'cmd': command,
                'reason': reason,
                'alerts': alerts
            })
            logger.warning(f"System command {command} sent to machine {machine_id}: {reason}")

        if previous != resulting:
            self._emit_state(machine_id, resulting)

        return DispatchResult(
            req_id=req_id,
            resulting_state=resulting,
            message=f"System command {command} sent to machine {machine_id}"
        )

    def acknowledge(self, req_id: str, status: str) -> Optional[PendingCommand]:
        """Correlate a device ack; None when the reqId is unknown"""
        command = self.pending.acknowledge(req_id, status)
        if command is not None:
            logger.info(f"Command {req_id} acknowledged by {command.machine_id}: {status}")
        return command

    def expire_pending(self) -> List[PendingCommand]:
        """Time out overdue commands when an ack timeout is configured"""
        if not self.ack_timeout_seconds:
            return []

        expired = self.pending.expire(self.ack_timeout_seconds)
        for command in expired:
            logger.warning(f"Command {command.req_id} to {command.machine_id} not acknowledged "
                           f"within {self.ack_timeout_seconds}s")
            if self.event_bus is not None:
                self.event_bus.emit(events.COMMAND_TIMEOUT, {
                    'reqId': command.req_id,
                    'machineId': command.machine_id,
                    'command': command.command,
                    'status': command.status.value
                })

        return expired
