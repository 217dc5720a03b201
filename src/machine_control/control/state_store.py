"""
Machine State Store
In-memory table of per-machine status shared by the router, the dispatcher
and the auto-action controller
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Union

from .rules import EvaluationVerdict, MachineState

logger = logging.getLogger(__name__)

# Verdicts that move the machine; a healthy verdict leaves the current state alone
_STATE_FORCING = (MachineState.STOPPED, MachineState.MAINTENANCE)


@dataclass
class MachineStateEntry:
    """Current view of one machine"""
    machine_id: str
    current_state: MachineState = MachineState.IDLE
    last_evaluation: Optional[EvaluationVerdict] = None
    last_update: datetime = field(default_factory=datetime.now)
    status_message: Optional[str] = None
    machine_data: Dict[str, Any] = field(default_factory=dict)
    known: bool = True

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the outward representation"""
        return {
            'machineId': self.machine_id,
            'currentState': self.current_state.value,
            'lastEvaluation': self.last_evaluation.to_dict() if self.last_evaluation else None,
            'lastUpdate': self.last_update.isoformat(),
            'statusMessage': self.status_message,
            'machineData': dict(self.machine_data)
        }


def coerce_state(value: Union[str, MachineState]) -> MachineState:
    """Map a device/registry status string onto a MachineState"""
    if isinstance(value, MachineState):
        return value
    try:
        return MachineState(str(value).strip().lower())
    except ValueError:
        logger.warning(f"Unrecognized machine state '{value}', recording as error")
        return MachineState.ERROR


class MachineStateStore:
    """
    Synchronized per-machine state table

    Every mutation is last-writer-wins and stamps last_update. The table lock
    only guards membership; each registered machine carries its own
    re-entrant lock so updates for different machines never wait on each
    other. Ids outside the table share a single lock.
    """

    def __init__(self):
        self._states: Dict[str, MachineStateEntry] = {}
        self._machine_locks: Dict[str, threading.RLock] = {}
        self._unregistered_lock = threading.RLock()
        self._table_lock = threading.Lock()

    def _lock_for(self, machine_id: str) -> threading.RLock:
        with self._table_lock:
            return self._machine_locks.get(machine_id, self._unregistered_lock)

    def _insert(self, entry: MachineStateEntry):
        with self._table_lock:
            self._states[entry.machine_id] = entry
            self._machine_locks.setdefault(entry.machine_id, threading.RLock())

    @contextmanager
    def machine_lock(self, machine_id: str):
        """Hold the lock of one machine across a read-check-write sequence"""
        lock = self._lock_for(machine_id)
        with lock:
            yield

    def load_registry(self, records: Iterable[Dict[str, Any]]) -> int:
        """
        Create one entry per registry machine

        Args:
            records: Registry rows with at least `machineId` and optional `status`

        Returns:
            Number of machines loaded
        """
        count = 0
        for record in records:
            machine_id = record.get('machineId')
            if not machine_id:
                logger.warning(f"Skipping registry record without machineId: {record}")
                continue

            entry = MachineStateEntry(
                machine_id=machine_id,
                current_state=coerce_state(record.get('status') or MachineState.IDLE),
                machine_data=dict(record)
            )
            with self.machine_lock(machine_id):
                self._insert(entry)
            count += 1

        logger.info(f"Initialized {count} machine states")
        return count

    def known(self, machine_id: str) -> bool:
        with self._table_lock:
            return machine_id in self._states

    def get(self, machine_id: str) -> MachineStateEntry:
        """
        Get a snapshot of one machine

        Returns the default idle projection for a machine that is not in the
        table; never raises.
        """
        with self.machine_lock(machine_id):
            with self._table_lock:
                entry = self._states.get(machine_id)
            if entry is None:
                return MachineStateEntry(
                    machine_id=machine_id,
                    machine_data={'machineId': machine_id, 'name': 'Unknown Machine'},
                    known=False
                )
            return replace(entry, machine_data=dict(entry.machine_data))

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        """Get all machine states keyed by machine id"""
        with self._table_lock:
            machine_ids = list(self._states)
        return {machine_id: self.get(machine_id).to_dict() for machine_id in machine_ids}

    def _existing(self, machine_id: str) -> Optional[MachineStateEntry]:
        with self._table_lock:
            return self._states.get(machine_id)

    def apply_evaluation(self, machine_id: str, verdict: EvaluationVerdict) -> Optional[MachineStateEntry]:
        """Record a verdict; a stop or maintenance recommendation also moves the machine"""
        with self.machine_lock(machine_id):
            entry = self._existing(machine_id)
            if entry is None:
                logger.debug(f"Evaluation for unregistered machine {machine_id} not tracked")
                return None

            entry.last_evaluation = verdict
            if verdict.recommended_state in _STATE_FORCING:
                entry.current_state = verdict.recommended_state
            entry.last_update = datetime.now()
            return replace(entry)

    def apply_command_result(self, machine_id: str,
                             new_state: Union[str, MachineState]) -> Optional[MachineStateEntry]:
        """Write the state predicted from an issued command"""
        with self.machine_lock(machine_id):
            entry = self._existing(machine_id)
            if entry is None:
                logger.debug(f"Command result for unregistered machine {machine_id} not tracked")
                return None

            entry.current_state = coerce_state(new_state)
            entry.last_update = datetime.now()
            return replace(entry)

    def apply_device_status(self, machine_id: str, status: Union[str, MachineState],
                            message: Optional[str] = None) -> MachineStateEntry:
        """Overwrite the state with a device report; registers machines the registry missed"""
        state = coerce_state(status)
        with self.machine_lock(machine_id):
            entry = self._existing(machine_id)
            if entry is None:
                logger.info(f"Registering machine {machine_id} from device status report")
                entry = MachineStateEntry(
                    machine_id=machine_id,
                    machine_data={'machineId': machine_id}
                )
                self._insert(entry)

            entry.current_state = state
            entry.status_message = message or 'State updated'
            entry.last_update = datetime.now()
            return replace(entry)

    def __len__(self) -> int:
        with self._table_lock:
            return len(self._states)
