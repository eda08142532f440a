"""
Pytest Configuration and Fixtures

Shared fixtures for the result pipeline tests: an in-memory database with
the seeded catalog, one doctor, one patient, and recording channels.
"""
from datetime import date
from pathlib import Path

import pytest
from sqlmodel import Session, select

from db import init_db, make_engine, seed_catalog
from models import Doctor, LabTest, Patient, Workflow, WorkflowRequirement
from notify.dispatcher import NotificationDispatcher
from pipeline import ResultPipeline
from store import LabStore

CATALOG_CSV = Path(__file__).parent.parent / "data" / "lab_tests.csv"

# Patient is 59 on this date
RESULT_DATE = date(2025, 1, 10)


class FakeEmailChannel:
    def __init__(self, enabled=True, succeed=True):
        self.enabled = enabled
        self.succeed = succeed
        self.sent = []
        self.on_send = None

    async def send_email(self, to, subject, html):
        if self.on_send:
            self.on_send(to, subject, html)
        self.sent.append((to, subject, html))
        return self.succeed


class FakeSMSChannel:
    def __init__(self, enabled=True, succeed=True):
        self.enabled = enabled
        self.succeed = succeed
        self.sent = []

    async def send_sms(self, to, body):
        self.sent.append((to, body))
        return self.succeed


@pytest.fixture
def engine():
    engine = make_engine("sqlite://")
    init_db(engine)
    seed_catalog(engine, str(CATALOG_CSV))
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine) -> LabStore:
    return LabStore(engine)


@pytest.fixture
def catalog(engine):
    """Lab tests by name"""
    with Session(engine, expire_on_commit=False) as session:
        return {t.test_name: t for t in session.exec(select(LabTest)).all()}


@pytest.fixture
def doctor(engine) -> Doctor:
    with Session(engine, expire_on_commit=False) as session:
        doc = Doctor(first_name="Amina", last_name="Diallo", email="dr.diallo@example.org",
                     phone="+22990000001", specialty="Néphrologie", hospital="CHU")
        session.add(doc)
        session.commit()
        session.refresh(doc)
        return doc


@pytest.fixture
def make_patient(engine, doctor):
    def _make(ckd_stage=None, gender="M", birth_date=date(1965, 6, 15), email="patient@example.org"):
        with Session(engine, expire_on_commit=False) as session:
            patient = Patient(doctor_id=doctor.id, first_name="Koffi", last_name="Mensah", email=email,
                              birth_date=birth_date, gender=gender, ckd_stage=ckd_stage)
            session.add(patient)
            session.commit()
            session.refresh(patient)
            return patient
    return _make


@pytest.fixture
def patient(make_patient) -> Patient:
    return make_patient()


@pytest.fixture
def make_workflow(engine, doctor):
    def _make(ckd_stage, requirements, name="Suivi MRC", created_by=None):
        with Session(engine, expire_on_commit=False) as session:
            workflow = Workflow(name=name, description="Protocole de suivi", ckd_stage=ckd_stage,
                                created_by=created_by or doctor.id)
            session.add(workflow)
            session.commit()
            session.refresh(workflow)
            for position, req in enumerate(requirements):
                session.add(WorkflowRequirement(workflow_id=workflow.id, position=position, **req))
            session.commit()
            return workflow
    return _make


@pytest.fixture
def email_channel() -> FakeEmailChannel:
    return FakeEmailChannel()


@pytest.fixture
def sms_channel() -> FakeSMSChannel:
    return FakeSMSChannel(enabled=False)


@pytest.fixture
def dispatcher(store, email_channel, sms_channel) -> NotificationDispatcher:
    return NotificationDispatcher(store, email_channel, sms_channel)


@pytest.fixture
def pipeline(store, dispatcher) -> ResultPipeline:
    return ResultPipeline(store, dispatcher)


def creatinine_requirement(threshold="1.5", alert_type="Supérieur à", action="Notification"):
    return {
        "test_name": "Créatinine sanguine",
        "frequency": "Mensuel",
        "alert_type": alert_type,
        "alert_value": threshold,
        "alert_unit": "mg/dL",
        "action": action,
    }


@pytest.fixture
def creatinine_req():
    return creatinine_requirement


@pytest.fixture
def result_date() -> date:
    return RESULT_DATE


@pytest.fixture
def enabled_sms() -> FakeSMSChannel:
    return FakeSMSChannel(enabled=True)
