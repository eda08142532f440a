# notify/dispatcher.py
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import List, Optional

from clinical.deviation import DeviationResult, Tier, format_value, result_message
from clinical.egfr import is_renal_function_test
from models import Notification
from notify.templates import critical_result_sms, patient_result_email, protocol_alert_email

logger = logging.getLogger(__name__)

SEVERITY_DFG = "dfg"
SEVERITY_WARNING = "warning"

KIND_RESULT = "result"
KIND_STAGE = "stage"
KIND_WORKFLOW = "workflow"


@dataclass
class Delivery:
    channel: str  # email | sms
    recipient: Optional[str]
    body: str
    subject: Optional[str] = None
    reason: str = ""


@dataclass
class DispatchReport:
    notifications: List[Notification] = field(default_factory=list)
    deliveries: List[Delivery] = field(default_factory=list)
    delivery_failures: List[str] = field(default_factory=list)


def dedupe_requirements(fired):
    """Identical rules from several workflows alert once."""
    seen = set()
    unique = []
    for req in fired:
        key = req.rule_key()
        if key in seen:
            continue
        seen.add(key)
        unique.append(req)
    return unique


class NotificationDispatcher:
    """
    Turns the signals of one lab result into notification records and
    channel deliveries. Records are written before any channel is tried.
    """

    def __init__(self, store, email_channel, sms_channel=None):
        self.store = store
        self.email_channel = email_channel
        self.sms_channel = sms_channel

    def stage_change_notification(self, patient, previous, new_stage, egfr) -> Notification:
        old_label = previous.value if previous else "unstaged"
        return Notification(
            patient_id=patient.id,
            doctor_id=patient.doctor_id,
            kind=KIND_STAGE,
            message=(
                f"CKD stage of {patient.full_name} changed: {old_label} → {new_stage.value} "
                f"(eGFR: {egfr} mL/min/1.73m²)"
            ),
            severity=SEVERITY_WARNING,
        )

    def result_notification(self, patient, doctor, test, value, deviation: DeviationResult) -> Notification:
        # The dfg tag files renal function results together; wording still follows the tier
        severity = SEVERITY_DFG if is_renal_function_test(test) else deviation.tier.value
        return Notification(
            patient_id=patient.id,
            doctor_id=doctor.id,
            lab_test_id=test.id,
            kind=KIND_RESULT,
            message=f"Patient {patient.full_name}: {result_message(test, value, deviation)}",
            severity=severity,
        )

    def workflow_notification(self, patient, doctor, test, value, fired) -> Notification:
        return Notification(
            patient_id=patient.id,
            doctor_id=doctor.id,
            lab_test_id=test.id,
            kind=KIND_WORKFLOW,
            message=(
                f"Patient {patient.full_name}: protocol '{fired.workflow_name}' alert, "
                f"{test.test_name} {format_value(value, test.unit)} is {fired.direction} "
                f"{format_value(fired.threshold, fired.unit)}"
            ),
            severity=SEVERITY_WARNING,
        )

    def plan_deliveries(self, patient, doctor, test, value, deviation, fired, result_date, result_message_text):
        deliveries = []
        for req in fired:
            if not req.sends_email:
                continue
            subject, html = protocol_alert_email(patient, test, value, req)
            deliveries.append(Delivery("email", doctor.email, html, subject, f"protocol '{req.workflow_name}'"))

        if patient.email:
            subject, html = patient_result_email(patient, doctor, test, value, result_date or date.today(),
                                                 deviation.tier.value)
            deliveries.append(Delivery("email", patient.email, html, subject, "patient result"))

        if deviation.tier == Tier.ERROR and self.sms_channel is not None and self.sms_channel.enabled:
            deliveries.append(Delivery("sms", doctor.phone, critical_result_sms(patient, result_message_text),
                                       reason="critical result"))
        return deliveries

    async def _deliver(self, delivery: Delivery) -> bool:
        if not delivery.recipient:
            logger.warning(f"No {delivery.channel} address for {delivery.reason}, not delivered")
            return False
        if delivery.channel == "sms":
            return await self.sms_channel.send_sms(delivery.recipient, delivery.body)
        return await self.email_channel.send_email(delivery.recipient, delivery.subject, delivery.body)

    async def deliver(self, deliveries: List[Delivery]) -> List[str]:
        """Send deliveries concurrently; return a description of each failure."""
        pending = []
        for delivery in deliveries:
            if delivery.channel == "email" and not self.email_channel.enabled:
                logger.info(f"Email channel disabled, skipping {delivery.reason}")
                continue
            pending.append(delivery)

        outcomes = await asyncio.gather(*(self._deliver(d) for d in pending), return_exceptions=True)

        failures = []
        for delivery, outcome in zip(pending, outcomes):
            if outcome is True:
                continue
            if isinstance(outcome, Exception):
                logger.error(f"{delivery.channel} delivery for {delivery.reason} raised: {outcome}")
            detail = f"{delivery.channel} to {delivery.recipient or 'unknown recipient'} failed ({delivery.reason})"
            logger.warning(f"Delivery failure: {detail}")
            failures.append(detail)
        return failures

    async def dispatch(self, patient, doctor, test, value, deviation, stage_change=None, fired=None,
                       result_date=None) -> DispatchReport:
        """
        Persist the notifications for one result, then deliver them.

        Always one result notification; the stage notification, already
        written together with the stage, is passed through; one notification
        per distinct fired requirement.
        """
        fired = dedupe_requirements(fired or [])
        result_note = self.result_notification(patient, doctor, test, value, deviation)
        workflow_notes = [self.workflow_notification(patient, doctor, test, value, req) for req in fired]

        self.store.add_notifications([result_note, *workflow_notes])

        created = [result_note]
        if stage_change is not None:
            created.append(stage_change.notification)
        created.extend(workflow_notes)
        logger.info(f"Persisted {len(created)} notification(s) for patient {patient.id}")

        deliveries = self.plan_deliveries(
            patient, doctor, test, value, deviation, fired, result_date,
            result_message(test, value, deviation),
        )
        failures = await self.deliver(deliveries)
        return DispatchReport(notifications=created, deliveries=deliveries, delivery_failures=failures)
