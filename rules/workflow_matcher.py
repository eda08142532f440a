# rules/workflow_matcher.py
import logging
from dataclasses import dataclass
from typing import List, Optional

from clinical.staging import CKDStage
from normalize.values import normalize_result_value

logger = logging.getLogger(__name__)

ALERT_BELOW = ("Inférieur à", "below")
ALERT_ABOVE = ("Supérieur à", "above")

ACTION_NOTIFY = "Notification"
ACTION_EMAIL = "Email"


@dataclass(frozen=True)
class FiredRequirement:
    """One workflow requirement whose alert condition held for a result"""
    workflow_id: int
    workflow_name: str
    test_name: str
    frequency: str
    alert_type: str
    threshold: float
    unit: Optional[str]
    action: str

    @property
    def direction(self) -> str:
        return "below" if self.alert_type in ALERT_BELOW else "above"

    @property
    def sends_email(self) -> bool:
        return self.action.lower() == ACTION_EMAIL.lower()

    def rule_key(self):
        return (self.test_name, self.direction, self.threshold, self.unit, self.sends_email)


def condition_holds(alert_type: str, value: float, threshold: float) -> bool:
    if alert_type in ALERT_BELOW:
        return value < threshold
    if alert_type in ALERT_ABOVE:
        return value > threshold
    raise ValueError(f"Unknown alert type: {alert_type}")


def match_rules(patient_stage: Optional[CKDStage], doctor_id: int, test_name: str,
                value: float, workflows) -> List[FiredRequirement]:
    """
    Find the requirements that fire for a result.

    Only workflows authored by doctor_id for patient_stage apply. The stage
    is the one the patient held when the result arrived. Test names are
    compared exactly.
    """
    if patient_stage is None:
        return []

    fired = []
    for workflow in workflows:
        if workflow.created_by != doctor_id or workflow.ckd_stage != patient_stage.value:
            continue
        for req in workflow.requirements:
            if req.test_name != test_name:
                continue
            try:
                threshold = normalize_result_value(req.alert_value)
                holds = condition_holds(req.alert_type, value, threshold)
            except ValueError as e:
                logger.warning(f"Skipping requirement {req.id} of workflow {workflow.id}: {e}")
                continue
            if holds:
                fired.append(FiredRequirement(
                    workflow_id=workflow.id,
                    workflow_name=workflow.name,
                    test_name=req.test_name,
                    frequency=req.frequency,
                    alert_type=req.alert_type,
                    threshold=threshold,
                    unit=req.alert_unit,
                    action=req.action,
                ))

    logger.info(f"{len(fired)} workflow requirement(s) fired for {test_name}={value}")
    return fired
