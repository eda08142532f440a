# pipeline.py
import asyncio
import logging
import weakref
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from clinical.deviation import evaluate
from clinical.egfr import age_in_years, compute_egfr, triggers_egfr
from clinical.staging import CKDStage, classify_stage, parse_stage
from config import EGFRSettings, PipelineConfig
from errors import StageConsistencyError, SubmissionValidationError
from ingest.lab_result import LabResultSubmission
from models import LabResult, Notification
from notify.channels import EmailChannel, SMSChannel
from notify.dispatcher import NotificationDispatcher
from rules.workflow_matcher import FiredRequirement, match_rules
from store import LabStore

logger = logging.getLogger(__name__)


@dataclass
class PipelineOutcome:
    lab_result: LabResult
    derived_result: Optional[LabResult] = None
    egfr: Optional[int] = None
    previous_stage: Optional[CKDStage] = None
    ckd_stage: Optional[CKDStage] = None
    stage_changed: bool = False
    notifications: List[Notification] = field(default_factory=list)
    fired_requirements: List[FiredRequirement] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    delivery_failures: List[str] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return bool(self.warnings)

    @property
    def delivery_warning(self) -> bool:
        return bool(self.delivery_failures)

    def to_dict(self) -> Dict:
        return {
            "lab_result": self.lab_result.model_dump(),
            "derived_result": self.derived_result.model_dump() if self.derived_result else None,
            "egfr": self.egfr,
            "previous_stage": self.previous_stage.value if self.previous_stage else None,
            "ckd_stage": self.ckd_stage.value if self.ckd_stage else None,
            "stage_changed": self.stage_changed,
            "notifications": [n.model_dump() for n in self.notifications],
            "fired_requirements": [
                {"workflow": r.workflow_name, "test_name": r.test_name, "action": r.action}
                for r in self.fired_requirements
            ],
            "partial": self.partial,
            "warnings": self.warnings,
            "delivery_warning": self.delivery_warning,
            "delivery_failures": self.delivery_failures,
        }


class PatientLocks:
    """
    One asyncio lock per patient; serializes stage updates.
    An entry lives only while some task holds or awaits its lock.
    """

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[int, asyncio.Lock]" = weakref.WeakValueDictionary()

    def __len__(self) -> int:
        return len(self._locks)

    def for_patient(self, patient_id: int) -> asyncio.Lock:
        lock = self._locks.get(patient_id)
        if lock is None:
            lock = self._locks[patient_id] = asyncio.Lock()
        return lock


class ResultPipeline:
    """
    Runs every step that follows the recording of one lab result:
    eGFR derivation, deviation, workflow rules, stage update, notifications.
    """

    def __init__(self, store: LabStore, dispatcher: NotificationDispatcher,
                 egfr_settings: Optional[EGFRSettings] = None, stage_update_retries: int = 3,
                 locks: Optional[PatientLocks] = None):
        self.store = store
        self.dispatcher = dispatcher
        self.egfr_settings = egfr_settings or EGFRSettings()
        self.stage_update_retries = stage_update_retries
        self.locks = locks or PatientLocks()

    async def submit(self, submission: LabResultSubmission) -> PipelineOutcome:
        """
        Record one result and run the steps that follow it.

        Store calls are synchronous SQLAlchemy work and block the event loop
        while they run; only channel delivery is awaited off the loop.
        """
        # Lookups and validation fail fast, before any write
        patient = self.store.get_patient(submission.patient_id)
        doctor = self.store.get_doctor(submission.doctor_id)
        test = self.store.get_lab_test(submission.lab_test_id)
        value = submission.result_value
        derives_egfr = triggers_egfr(test)
        if derives_egfr and value <= 0:
            raise SubmissionValidationError(f"Invalid creatinine value: {value}")

        # Stage snapshot: workflow rules apply to the stage held on arrival
        snapshot_stage = parse_stage(patient.ckd_stage)

        lab_result = self.store.add_lab_result(LabResult(
            patient_id=patient.id,
            doctor_id=doctor.id,
            lab_test_id=test.id,
            result_value=value,
            result_date=submission.result_date,
        ))
        outcome = PipelineOutcome(lab_result=lab_result, previous_stage=snapshot_stage, ckd_stage=snapshot_stage)
        logger.info(f"Processing {test.test_name}={value} for patient {patient.id}")

        if derives_egfr:
            self._derive_egfr(patient, doctor, lab_result, submission, outcome)

        deviation = evaluate(value, test)

        try:
            workflows = self.store.workflows_for_doctor(doctor.id)
        except SQLAlchemyError as e:
            logger.warning(f"Could not load workflows for doctor {doctor.id}: {e}")
            outcome.warnings.append(f"Workflow rules not evaluated: {e}")
            workflows = []
        outcome.fired_requirements = match_rules(snapshot_stage, doctor.id, test.test_name, value, workflows)

        stage_change = None
        if outcome.egfr is not None:
            stage_change = await self._update_stage(patient.id, outcome.egfr, lab_result)
            if stage_change is not None:
                outcome.ckd_stage = stage_change.current
                outcome.stage_changed = True
            else:
                outcome.ckd_stage = classify_stage(outcome.egfr)

        try:
            report = await self.dispatcher.dispatch(
                patient, doctor, test, value, deviation,
                stage_change=stage_change,
                fired=outcome.fired_requirements,
                result_date=submission.result_date,
            )
            outcome.notifications = report.notifications
            outcome.delivery_failures = report.delivery_failures
        except SQLAlchemyError as e:
            logger.error(f"Notifications for lab result {lab_result.id} not persisted: {e}")
            outcome.warnings.append(f"Notifications not persisted: {e}")
            if stage_change is not None:
                outcome.notifications = [stage_change.notification]

        logger.info(
            f"Lab result {lab_result.id} done: stage {outcome.ckd_stage.value if outcome.ckd_stage else 'unset'}, "
            f"{len(outcome.notifications)} notification(s), {len(outcome.warnings)} warning(s)"
        )
        return outcome

    def _derive_egfr(self, patient, doctor, lab_result, submission, outcome):
        age = age_in_years(patient.birth_date, submission.result_date)
        try:
            egfr = compute_egfr(
                submission.result_value, age, patient.gender == "F",
                ethnicity_factor=self.egfr_settings.ethnicity_factor,
            )
        except ValueError as e:
            logger.warning(f"eGFR not derived for patient {patient.id}: {e}")
            outcome.warnings.append(f"eGFR not derived: {e}")
            return
        outcome.egfr = egfr
        logger.info(f"eGFR computed for patient {patient.id}: {egfr}")

        egfr_test = self.store.find_egfr_test(self.egfr_settings.test_name)
        if egfr_test is None:
            logger.warning(f"No '{self.egfr_settings.test_name}' test in catalog, derived result skipped")
            outcome.warnings.append(f"Derived eGFR result skipped: no '{self.egfr_settings.test_name}' test in catalog")
            return

        try:
            outcome.derived_result = self.store.add_lab_result(LabResult(
                patient_id=lab_result.patient_id,
                doctor_id=lab_result.doctor_id,
                lab_test_id=egfr_test.id,
                result_value=egfr,
                result_date=lab_result.result_date,
                derived_from_id=lab_result.id,
            ))
        except SQLAlchemyError as e:
            logger.error(f"Failed to save derived eGFR for patient {patient.id}: {e}")
            outcome.warnings.append(f"Derived eGFR result not saved: {e}")

    async def _update_stage(self, patient_id: int, egfr: int, lab_result: LabResult):
        new_stage = classify_stage(egfr)
        async with self.locks.for_patient(patient_id):
            try:
                return self.store.apply_stage_change(
                    patient_id, new_stage, egfr,
                    self.dispatcher.stage_change_notification,
                    retries=self.stage_update_retries,
                )
            except StageConsistencyError as e:
                logger.error(f"Stage update failed after lab result {lab_result.id}: {e.message}")
                raise StageConsistencyError(e.message, patient_id=patient_id, lab_result_id=lab_result.id) from e


def build_pipeline(config: PipelineConfig, engine) -> ResultPipeline:
    store = LabStore(engine)
    dispatcher = NotificationDispatcher(store, EmailChannel(config.email), SMSChannel(config.sms))
    return ResultPipeline(
        store,
        dispatcher,
        egfr_settings=config.egfr,
        stage_update_retries=config.stage_update_retries,
    )
