# store.py
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from sqlalchemy import update
from sqlalchemy.orm import selectinload
from sqlmodel import Session, select, func, col

from clinical.egfr import pick_egfr_test
from clinical.staging import CKDStage, parse_stage
from errors import ReferenceNotFoundError, StageConsistencyError
from models import Doctor, LabResult, LabTest, Notification, Patient, Workflow

logger = logging.getLogger(__name__)


@dataclass
class StageChange:
    previous: Optional[CKDStage]
    current: CKDStage
    egfr: int
    notification: Notification


class LabStore:
    """Persistence boundary of the result pipeline."""

    def __init__(self, engine):
        self.engine = engine

    def session(self) -> Session:
        # Returned rows stay readable once the session is closed
        return Session(self.engine, expire_on_commit=False)

    def _get(self, model, entity: str, entity_id: int):
        with self.session() as session:
            row = session.get(model, entity_id)
        if row is None:
            raise ReferenceNotFoundError(entity, entity_id)
        return row

    def get_patient(self, patient_id: int) -> Patient:
        return self._get(Patient, "Patient", patient_id)

    def get_doctor(self, doctor_id: int) -> Doctor:
        return self._get(Doctor, "Doctor", doctor_id)

    def get_lab_test(self, lab_test_id: int) -> LabTest:
        return self._get(LabTest, "Lab test", lab_test_id)

    def find_egfr_test(self, configured_name: str) -> Optional[LabTest]:
        with self.session() as session:
            tests = session.exec(select(LabTest)).all()
        return pick_egfr_test(tests, configured_name)

    def add_lab_result(self, result: LabResult) -> LabResult:
        with self.session() as session:
            session.add(result)
            session.commit()
            session.refresh(result)
        logger.info(f"Saved lab result {result.id} (test {result.lab_test_id}) for patient {result.patient_id}")
        return result

    def results_for_patient(self, patient_id: int) -> List[LabResult]:
        with self.session() as session:
            query = select(LabResult).where(LabResult.patient_id == patient_id).order_by(LabResult.id)
            return list(session.exec(query).all())

    def workflows_for_doctor(self, doctor_id: int) -> List[Workflow]:
        with self.session() as session:
            query = (
                select(Workflow)
                .where(Workflow.created_by == doctor_id)
                .options(selectinload(Workflow.requirements))
            )
            return list(session.exec(query).all())

    def apply_stage_change(
        self,
        patient_id: int,
        new_stage: CKDStage,
        egfr: int,
        build_notification: Callable,
        retries: int = 3,
    ) -> Optional[StageChange]:
        """
        Move the patient to new_stage and record the stage notification in
        one transaction.

        The write is a compare-and-swap on stage_version; a lost race is
        re-read and retried. Returns None when the stage is already current.
        Any failure rolls back both halves and raises StageConsistencyError.
        """
        for attempt in range(1, retries + 1):
            with self.session() as session:
                patient = session.get(Patient, patient_id)
                if patient is None:
                    raise ReferenceNotFoundError("Patient", patient_id)
                previous = parse_stage(patient.ckd_stage)
                if previous == new_stage:
                    return None

                version = patient.stage_version
                try:
                    written = session.exec(
                        update(Patient)
                        .where(col(Patient.id) == patient_id, col(Patient.stage_version) == version)
                        .values(ckd_stage=new_stage.value, stage_version=version + 1)
                    )
                    if written.rowcount == 0:
                        session.rollback()
                        logger.warning(
                            f"Stage of patient {patient_id} changed concurrently "
                            f"(attempt {attempt}/{retries}), re-reading"
                        )
                        continue
                    notification = build_notification(patient, previous, new_stage, egfr)
                    session.add(notification)
                    session.commit()
                except Exception as e:
                    session.rollback()
                    raise StageConsistencyError(
                        f"Stage update for patient {patient_id} rolled back: {e}",
                        patient_id=patient_id,
                    ) from e

            logger.info(f"Patient {patient_id} stage {previous.value if previous else 'unset'} → {new_stage.value} (eGFR {egfr})")
            return StageChange(previous=previous, current=new_stage, egfr=egfr, notification=notification)

        raise StageConsistencyError(
            f"Stage update for patient {patient_id} kept conflicting after {retries} attempts",
            patient_id=patient_id,
        )

    def add_notifications(self, notifications: List[Notification]) -> List[Notification]:
        if not notifications:
            return notifications
        with self.session() as session:
            session.add_all(notifications)
            session.commit()
            for notification in notifications:
                session.refresh(notification)
        return notifications

    def notifications_for_doctor(self, doctor_id: int) -> List[Notification]:
        with self.session() as session:
            query = (
                select(Notification)
                .where(Notification.doctor_id == doctor_id)
                .order_by(col(Notification.created_at).desc(), col(Notification.id).desc())
            )
            return list(session.exec(query).all())

    def notifications_for_patient(self, patient_id: int) -> List[Notification]:
        with self.session() as session:
            query = select(Notification).where(Notification.patient_id == patient_id).order_by(Notification.id)
            return list(session.exec(query).all())

    def count_unread_critical(self, doctor_id: int) -> int:
        with self.session() as session:
            query = (
                select(func.count())
                .select_from(Notification)
                .where(
                    Notification.doctor_id == doctor_id,
                    Notification.severity == "error",
                    col(Notification.is_read).is_(False),
                )
            )
            return session.exec(query).one()
