"""
Auto-Action Controller
Turns evaluation verdicts into automatic safety stops and maintenance tickets
"""

import logging
from typing import Optional

from ..utils.logger import log_audit
from .dispatcher import EMERGENCY_STOP, CommandDispatcher, DispatchResult
from .rules import EvaluationVerdict, MachineState

logger = logging.getLogger(__name__)

SHUTDOWN_REASON = "Automatic safety shutdown"
AUDIT_REASON = "Critical condition detected"
MAINTENANCE_REASON = "High vibration detected"


class AutoActionController:
    """Reacts to verdicts that recommend stopping or servicing a machine"""

    def __init__(self, dispatcher: CommandDispatcher, history=None):
        self.dispatcher = dispatcher
        self.history = history

    def on_verdict(self, machine_id: str, plant_id: str,
                   verdict: EvaluationVerdict) -> Optional[DispatchResult]:
        """
        Act on a verdict

        Returns:
            The emergency stop dispatch result when one was issued, else None
        """
        alerts = [alert.to_dict() for alert in verdict.alerts]

        if verdict.recommended_state == MachineState.STOPPED:
            result = self.dispatcher.dispatch_system(
                machine_id, plant_id, EMERGENCY_STOP, SHUTDOWN_REASON, alerts
            )

            if self.history is not None:
                self.history.record_auto_action(
                    machine_id, plant_id, EMERGENCY_STOP, AUDIT_REASON, alerts, result.req_id
                )

            log_audit('AUTO_ACTION', 'machine', machine_id,
                      details={'action': EMERGENCY_STOP, 'reqId': result.req_id, 'alerts': alerts})
            logger.warning(f"Emergency stop issued for machine {machine_id}")
            return result

        if verdict.recommended_state == MachineState.MAINTENANCE:
            if self.history is not None:
                self.history.record_maintenance_ticket(
                    machine_id, plant_id, MAINTENANCE_REASON, alerts,
                    priority='medium', ticket_type='preventive'
                )

            log_audit('AUTO_ACTION', 'machine', machine_id,
                      details={'action': 'schedule_maintenance', 'alerts': alerts})
            logger.info(f"Maintenance scheduled for machine {machine_id}")

        return None
