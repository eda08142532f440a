# notify/channels.py
import asyncio
import logging
import smtplib
from email.message import EmailMessage

import requests

from config import EmailSettings, SMSSettings

logger = logging.getLogger(__name__)


class EmailChannel:
    """
    Outbound e-mail over SMTP.
    Without credentials the channel is disabled and sends nothing.
    """

    def __init__(self, settings: EmailSettings):
        self.settings = settings

    @property
    def enabled(self) -> bool:
        return bool(self.settings.user and self.settings.password)

    def _send(self, to: str, subject: str, html: str):
        msg = EmailMessage()
        msg["From"] = self.settings.sender or self.settings.user
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content("This message requires an HTML capable mail client.")
        msg.add_alternative(html, subtype="html")

        with smtplib.SMTP(self.settings.host, self.settings.port, timeout=self.settings.timeout) as smtp:
            if self.settings.use_tls:
                smtp.starttls()
            smtp.login(self.settings.user, self.settings.password)
            smtp.send_message(msg)

    async def send_email(self, to: str, subject: str, html: str) -> bool:
        if not self.enabled:
            logger.info("Email credentials not configured")
            return False
        try:
            await asyncio.to_thread(self._send, to, subject, html)
            logger.info(f"Email '{subject}' sent to {to}")
            return True
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send email to {to}: {e}")
            return False


class SMSChannel:
    """Outbound SMS through the Twilio REST API."""

    def __init__(self, settings: SMSSettings):
        self.settings = settings

    @property
    def enabled(self) -> bool:
        s = self.settings
        return bool(s.account_sid and s.auth_token and s.from_number)

    def _post(self, to: str, body: str) -> bool:
        s = self.settings
        url = f"{s.api_base.rstrip('/')}/Accounts/{s.account_sid}/Messages.json"
        resp = requests.post(
            url,
            data={"To": to, "From": s.from_number, "Body": body},
            auth=(s.account_sid, s.auth_token),
            timeout=s.timeout,
        )
        if resp.status_code not in (200, 201):
            logger.error(f"Failed to send SMS to {to}: {resp.status_code} {resp.text}")
            return False
        logger.info(f"SMS sent to {to} → {resp.status_code}")
        return True

    async def send_sms(self, to: str, body: str) -> bool:
        if not self.enabled:
            logger.info("Twilio credentials not configured")
            return False
        try:
            return await asyncio.to_thread(self._post, to, body)
        except requests.exceptions.RequestException as e:
            logger.error(f"Network error sending SMS to {to}: {e}")
            return False
