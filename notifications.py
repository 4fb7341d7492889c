import logging
import smtplib
from email.message import EmailMessage
from email.utils import formataddr
from typing import Optional

import httpx

from config import settings

logger = logging.getLogger(__name__)

OTP_SUBJECT = "Your Library App OTP Code"
REMINDER_SUBJECT = "Library Book Due Date Reminder"


def otp_message(code: str, validity_minutes: int) -> str:
    return f"Your OTP code for book borrowing is: {code}. This code will expire in {validity_minutes} minutes."


def reminder_email_body(name: str, due_date: str) -> str:
    return (
        f"Dear {name},\n\n"
        f"This is a friendly reminder that your borrowed book is due on {due_date}. "
        f"Please return it on time.\n\n"
        f"Thank you,\nLibrary Management"
    )


def reminder_sms_body(due_date: str) -> str:
    return f"Library Reminder: Your borrowed book is due on {due_date}. Please return it on time."


class NotificationDispatcher:
    """Sends e-mail over SMTP and SMS through an HTTP gateway.

    Delivery is best-effort: every method returns False when the channel is
    disabled, unconfigured or failing, and never raises.
    """

    def __init__(self, email_enabled: Optional[bool] = None, sms_enabled: Optional[bool] = None,
                 timeout: Optional[float] = None) -> None:
        self.email_enabled = settings.enable_email_notifications if email_enabled is None else email_enabled
        self.sms_enabled = settings.enable_sms_notifications if sms_enabled is None else sms_enabled
        self.timeout = settings.notification_timeout if timeout is None else timeout

    def email_available(self) -> bool:
        return self.email_enabled and bool(settings.smtp_host)

    def sms_available(self) -> bool:
        return self.sms_enabled and bool(settings.sms_gateway_url)

    def send_email(self, recipient: str, subject: str, body: str) -> bool:
        if not self.email_available():
            logger.info("E-mail channel unavailable; message to %s not sent", recipient)
            return False

        message = EmailMessage()
        message["From"] = formataddr((settings.smtp_from_name, settings.smtp_from_email))
        message["To"] = recipient
        message["Subject"] = subject
        message.set_content(body)

        try:
            with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=self.timeout) as smtp:
                smtp.starttls()
                if settings.smtp_username and settings.smtp_password:
                    smtp.login(settings.smtp_username, settings.smtp_password)
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            logger.warning(f"Failed to send e-mail to {recipient}: {exc}")
            return False
        logger.info(f"E-mail '{subject}' sent to {recipient}")
        return True

    def send_sms(self, recipient: str, body: str) -> bool:
        if not self.sms_available():
            logger.info("SMS channel unavailable; message to %s not sent", recipient)
            return False

        headers = {}
        if settings.sms_gateway_token:
            headers["Authorization"] = f"Bearer {settings.sms_gateway_token}"
        try:
            resp = httpx.post(
                settings.sms_gateway_url,
                json={"to": recipient, "body": body},
                headers=headers,
                timeout=self.timeout,
            )
        except httpx.HTTPError as exc:
            logger.warning(f"SMS gateway unreachable for {recipient}: {exc}")
            return False
        if resp.status_code >= 400:
            logger.warning(f"SMS gateway rejected message to {recipient}: {resp.status_code}")
            return False
        logger.info(f"SMS sent to {recipient}")
        return True
