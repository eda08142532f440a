"""
Tests for the alert aggregator and notification dispatcher
"""
from datetime import datetime

import pytest

from clinical.deviation import evaluate
from clinical.staging import CKDStage
from notify.dispatcher import NotificationDispatcher, dedupe_requirements
from rules.workflow_matcher import FiredRequirement


def fired_requirement(action="Notification", threshold=1.5, workflow_id=1, name="Suivi 3A"):
    return FiredRequirement(workflow_id=workflow_id, workflow_name=name, test_name="Créatinine sanguine",
                            frequency="Mensuel", alert_type="Supérieur à", threshold=threshold,
                            unit="mg/dL", action=action)


@pytest.mark.asyncio
class TestDispatch:

    async def test_one_result_notification_per_result(self, dispatcher, store, patient, doctor, catalog):
        test = catalog["Potassium"]
        report = await dispatcher.dispatch(patient, doctor, test, 4.2, evaluate(4.2, test))
        assert len(report.notifications) == 1
        note = report.notifications[0]
        assert note.id is not None
        assert note.severity == "info"
        assert note.kind == "result"
        assert note.lab_test_id == test.id
        assert "New normal result for Potassium" in note.message
        assert store.notifications_for_patient(patient.id)[0].id == note.id

    @pytest.mark.parametrize("value,severity,wording", [
        (7.0, "error", "dangerously high"),
        (2.0, "error", "dangerously low"),
        (5.2, "warning", "abnormal result"),
    ])
    async def test_severity_follows_tier(self, dispatcher, patient, doctor, catalog, value, severity, wording):
        test = catalog["Potassium"]
        report = await dispatcher.dispatch(patient, doctor, test, value, evaluate(value, test))
        assert report.notifications[0].severity == severity
        assert wording in report.notifications[0].message

    async def test_renal_tests_tagged_dfg(self, dispatcher, patient, doctor, catalog):
        test = catalog["Créatinine sanguine"]
        report = await dispatcher.dispatch(patient, doctor, test, 2.0, evaluate(2.0, test))
        note = report.notifications[0]
        assert note.severity == "dfg"
        # Wording still follows the deviation tier
        assert "dangerously high" in note.message

    async def test_fired_requirements_each_persist_a_notification(self, dispatcher, store, patient, doctor,
                                                                  catalog, email_channel):
        test = catalog["Créatinine sanguine"]
        fired = [fired_requirement(), fired_requirement(action="Email", threshold=1.7)]
        report = await dispatcher.dispatch(patient, doctor, test, 1.8, evaluate(1.8, test), fired=fired)

        kinds = [n.kind for n in report.notifications]
        assert kinds == ["result", "workflow", "workflow"]
        assert len(store.notifications_for_patient(patient.id)) == 3

        doctor_mails = [m for m in email_channel.sent if m[0] == doctor.email]
        assert len(doctor_mails) == 1
        assert "Protocol alert: Suivi 3A" in doctor_mails[0][1]

    async def test_identical_rules_alert_once(self, dispatcher, patient, doctor, catalog):
        test = catalog["Créatinine sanguine"]
        fired = [fired_requirement(workflow_id=1), fired_requirement(workflow_id=2, name="Copie")]
        report = await dispatcher.dispatch(patient, doctor, test, 1.8, evaluate(1.8, test), fired=fired)
        assert [n.kind for n in report.notifications].count("workflow") == 1

    async def test_patient_receives_result_email(self, dispatcher, patient, doctor, catalog, email_channel):
        test = catalog["Potassium"]
        await dispatcher.dispatch(patient, doctor, test, 4.2, evaluate(4.2, test))
        assert [m[0] for m in email_channel.sent] == [patient.email]
        assert email_channel.sent[0][1] == "New lab result"

    async def test_notifications_persist_before_delivery(self, dispatcher, store, patient, doctor, catalog,
                                                         email_channel):
        seen = []
        email_channel.on_send = lambda *args: seen.append(len(store.notifications_for_patient(patient.id)))
        test = catalog["Potassium"]
        await dispatcher.dispatch(patient, doctor, test, 4.2, evaluate(4.2, test))
        assert seen == [1]

    async def test_delivery_failure_is_soft(self, dispatcher, store, patient, doctor, catalog, email_channel):
        email_channel.succeed = False
        test = catalog["Potassium"]
        report = await dispatcher.dispatch(patient, doctor, test, 4.2, evaluate(4.2, test))
        assert len(report.delivery_failures) == 1
        assert patient.email in report.delivery_failures[0]
        assert len(store.notifications_for_patient(patient.id)) == 1

    async def test_disabled_email_is_not_a_failure(self, dispatcher, patient, doctor, catalog, email_channel):
        email_channel.enabled = False
        test = catalog["Potassium"]
        report = await dispatcher.dispatch(patient, doctor, test, 7.0, evaluate(7.0, test),
                                           fired=[fired_requirement(action="Email")])
        assert report.delivery_failures == []
        assert email_channel.sent == []

    async def test_channel_exception_reported(self, dispatcher, patient, doctor, catalog, email_channel):
        def boom(*args):
            raise ConnectionError("smtp down")
        email_channel.on_send = boom
        test = catalog["Potassium"]
        report = await dispatcher.dispatch(patient, doctor, test, 4.2, evaluate(4.2, test))
        assert len(report.delivery_failures) == 1

    async def test_missing_doctor_address_reported(self, store, patient, doctor, catalog, email_channel):
        doctor.email = None
        dispatcher = NotificationDispatcher(store, email_channel)
        test = catalog["Créatinine sanguine"]
        report = await dispatcher.dispatch(patient, doctor, test, 1.8, evaluate(1.8, test),
                                           fired=[fired_requirement(action="Email")])
        assert any("unknown recipient" in f for f in report.delivery_failures)

    async def test_critical_result_sms(self, store, patient, doctor, catalog, email_channel, enabled_sms):
        sms = enabled_sms
        dispatcher = NotificationDispatcher(store, email_channel, sms)
        test = catalog["Potassium"]

        await dispatcher.dispatch(patient, doctor, test, 4.2, evaluate(4.2, test))
        assert sms.sent == []

        await dispatcher.dispatch(patient, doctor, test, 7.0, evaluate(7.0, test))
        assert len(sms.sent) == 1
        assert sms.sent[0][0] == doctor.phone
        assert "dangerously high" in sms.sent[0][1]

    async def test_persisted_notifications_read_back(self, dispatcher, store, patient, doctor, catalog,
                                                     make_workflow, creatinine_req):
        make_workflow(ckd_stage="Stage 3A", requirements=[creatinine_req()])
        test = catalog["Potassium"]
        await dispatcher.dispatch(patient, doctor, test, 4.2, evaluate(4.2, test))
        await dispatcher.dispatch(patient, doctor, test, 7.0, evaluate(7.0, test))

        stored = store.notifications_for_doctor(doctor.id)
        assert len(stored) == 2
        assert all(isinstance(n.created_at, datetime) for n in stored)
        # Newest first
        assert stored[0].severity == "error"
        assert store.workflows_for_doctor(doctor.id)[0].created_at is not None


def test_stage_change_message(dispatcher, patient):
    note = dispatcher.stage_change_notification(patient, CKDStage.STAGE_2, CKDStage.STAGE_3B, 44)
    assert note.severity == "warning"
    assert note.kind == "stage"
    assert note.doctor_id == patient.doctor_id
    assert "Stage 2 → Stage 3B" in note.message
    assert "eGFR: 44" in note.message


def test_dedupe_keeps_distinct_actions():
    fired = [fired_requirement(), fired_requirement(action="Email"), fired_requirement(workflow_id=3)]
    assert len(dedupe_requirements(fired)) == 2
