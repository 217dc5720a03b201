from ..exceptions import MachineControlError, ValidationError, TransportParseError
from .rules import MachineState, OverallStatus, AlertSeverity, EvaluationVerdict, evaluate
from .state_store import MachineStateStore, MachineStateEntry
from .dispatcher import CommandDispatcher, DispatchResult, PendingCommand, CommandStatus
from .auto_actions import AutoActionController

__all__ = [
    "MachineControlError",
    "ValidationError",
    "TransportParseError",
    "MachineState",
    "OverallStatus",
    "AlertSeverity",
    "EvaluationVerdict",
    "evaluate",
    "MachineStateStore",
    "MachineStateEntry",
    "CommandDispatcher",
    "DispatchResult",
    "PendingCommand",
    "CommandStatus",
    "AutoActionController",
]
