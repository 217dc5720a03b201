"""
Rule Evaluator for machine telemetry

Classifies one reading (temperature, vibration, power) against static safety
thresholds. Evaluation is pure: the same three values always give the same
verdict, and nothing outside the returned object is touched.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class MachineState(Enum):
    """Operating states of a machine"""
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"
    MAINTENANCE = "maintenance"
    ERROR = "error"


class AlertSeverity(Enum):
    """Severity of an evaluation alert"""
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


class OverallStatus(Enum):
    """Summary of a verdict"""
    HEALTHY = "HEALTHY"
    ISSUE_DETECTED = "ISSUE_DETECTED"


@dataclass(frozen=True)
class ThresholdRule:
    """Warning/critical bounds and actions for one metric"""
    metric: str
    warning: float
    critical: float
    warning_action: str
    critical_action: str
    warning_message: str
    critical_message: str
    # State forced by a warning on this metric; None leaves the state alone
    warning_state: Optional[MachineState] = None


# Evaluation order matters for the order of actions and alerts
CONTROL_RULES: Tuple[ThresholdRule, ...] = (
    ThresholdRule(
        metric='temperature',
        warning=85.0,
        critical=95.0,
        warning_action='reduce_speed',
        critical_action='emergency_stop',
        warning_message='Temperature high: {value}°C',
        critical_message='Temperature critical: {value}°C',
    ),
    ThresholdRule(
        metric='vibration',
        warning=2.5,
        critical=4.0,
        warning_action='schedule_maintenance',
        critical_action='immediate_stop',
        warning_message='Vibration high: {value}',
        critical_message='Vibration critical: {value}',
        warning_state=MachineState.MAINTENANCE,
    ),
    ThresholdRule(
        metric='power',
        warning=280.0,
        critical=320.0,
        warning_action='check_load',
        critical_action='power_cutoff',
        warning_message='Power consumption high: {value}W',
        critical_message='Power consumption critical: {value}W',
    ),
)

# stopped > maintenance > running
_STATE_RANK = {
    MachineState.RUNNING: 0,
    MachineState.MAINTENANCE: 1,
    MachineState.STOPPED: 2,
}


@dataclass(frozen=True)
class Alert:
    """One threshold violation"""
    severity: AlertSeverity
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {'type': self.severity.value, 'message': self.message}


@dataclass(frozen=True)
class EvaluationVerdict:
    """Classification of one telemetry reading"""
    actions: Tuple[str, ...]
    alerts: Tuple[Alert, ...]
    recommended_state: MachineState
    overall_status: OverallStatus

    @property
    def has_issue(self) -> bool:
        return self.overall_status == OverallStatus.ISSUE_DETECTED

    def to_dict(self) -> Dict[str, Any]:
        """Convert verdict to the wire/history representation"""
        return {
            'actions': list(self.actions),
            'alerts': [alert.to_dict() for alert in self.alerts],
            'recommendedState': self.recommended_state.value,
            'overallStatus': self.overall_status.value
        }


def _format_value(value: float) -> str:
    """Render a reading the way operators see it (96 rather than 96.0)"""
    if float(value).is_integer():
        return str(int(value))
    return str(value)


def _escalate(current: MachineState, candidate: MachineState) -> MachineState:
    if _STATE_RANK[candidate] > _STATE_RANK[current]:
        return candidate
    return current


def evaluate(temperature: float, vibration: float, power: float) -> EvaluationVerdict:
    """
    Evaluate a reading against the control rules

    Args:
        temperature: Temperature in °C
        vibration: Vibration level
        power: Power draw in W

    Returns:
        EvaluationVerdict with actions and alerts in temperature, vibration,
        power order
    """
    readings = {'temperature': temperature, 'vibration': vibration, 'power': power}
    actions = []
    alerts = []
    recommended_state = MachineState.RUNNING

    for rule in CONTROL_RULES:
        value = readings[rule.metric]
        shown = _format_value(value)

        if value >= rule.critical:
            actions.append(rule.critical_action)
            alerts.append(Alert(AlertSeverity.CRITICAL, rule.critical_message.format(value=shown)))
            recommended_state = _escalate(recommended_state, MachineState.STOPPED)
        elif value >= rule.warning:
            actions.append(rule.warning_action)
            alerts.append(Alert(AlertSeverity.WARNING, rule.warning_message.format(value=shown)))
            if rule.warning_state is not None:
                recommended_state = _escalate(recommended_state, rule.warning_state)

    overall_status = (
        OverallStatus.HEALTHY if recommended_state == MachineState.RUNNING
        else OverallStatus.ISSUE_DETECTED
    )

    return EvaluationVerdict(
        actions=tuple(actions),
        alerts=tuple(alerts),
        recommended_state=recommended_state,
        overall_status=overall_status
    )
