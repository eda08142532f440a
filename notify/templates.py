# notify/templates.py
from html import escape

from clinical.deviation import format_value

HEADER_COLOR = "#2563eb"
TIER_COLORS = {"error": "#dc2626", "warning": "#d97706", "info": "#059669"}


def _layout(title: str, body: str, footer: str) -> str:
    return f"""
    <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px; border: 1px solid #eee; border-radius: 5px;">
      <div style="text-align: center; margin-bottom: 20px;">
        <h1 style="color: {HEADER_COLOR};">CKD Monitoring</h1>
        <hr style="border: 1px solid #eee;">
      </div>
      <div style="background-color: #f8fafc; padding: 15px; border-radius: 5px; margin-bottom: 20px;">
        <h2 style="color: #1e40af; margin-bottom: 15px;">{escape(title)}</h2>
        {body}
      </div>
      <div style="font-size: 12px; color: #6b7280; text-align: center; margin-top: 20px;">
        <p>{escape(footer)}</p>
      </div>
    </div>
    """


def _line(label: str, value) -> str:
    return f'<p style="color: #374151; margin: 5px 0;"><strong>{escape(label)}:</strong> {escape(str(value))}</p>'


def patient_result_email(patient, doctor, test, value, result_date, tier: str):
    """New result e-mail sent to the patient"""
    normal_range = "n/a"
    if test.normal_min is not None and test.normal_max is not None:
        normal_range = f"{test.normal_min:g} - {test.normal_max:g} {test.unit or ''}".strip()
    body = "".join([
        _line("Test", test.test_name),
        _line("Value", format_value(value, test.unit)),
        _line("Normal range", normal_range),
        _line("Test date", result_date.isoformat()),
        f'<p style="color: {TIER_COLORS.get(tier, "#374151")}; margin: 5px 0;">'
        f'Your doctor, Dr. {escape(doctor.first_name)} {escape(doctor.last_name)}, has been notified of this result.</p>',
    ])
    html = _layout(
        "New lab result",
        body,
        "This message was sent automatically. Please contact your doctor with any questions.",
    )
    return "New lab result", html


def protocol_alert_email(patient, test, value, fired):
    """Alert e-mail sent to the doctor when an Email requirement fires"""
    body = "".join([
        _line("Patient", patient.full_name),
        _line("Protocol", fired.workflow_name),
        _line("Test", test.test_name),
        _line("Value", format_value(value, test.unit)),
        _line("Alert", f"{fired.alert_type} {format_value(fired.threshold, fired.unit)}"),
        _line("Monitoring frequency", fired.frequency),
    ])
    subject = f"Protocol alert: {fired.workflow_name} ({patient.full_name})"
    html = _layout(
        "Monitoring protocol alert",
        body,
        "This message was sent automatically. Do not reply to this email.",
    )
    return subject, html


def critical_result_sms(patient, message: str) -> str:
    return f"[CKD] {patient.full_name}: {message}"
