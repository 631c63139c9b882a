import asyncio
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, Optional

from donor_crm import config

logger = logging.getLogger(__name__)


class NotificationSender:
    """
    Outbound message dispatch used by journey nodes.
    Every method may raise; callers are expected to catch per call.
    """

    async def send_email(self, to: str, subject: str, html: str, text: Optional[str] = None) -> Dict[str, Any]:
        raise NotImplementedError

    async def send_sms(self, to: str, body: str) -> Dict[str, Any]:
        raise NotImplementedError

    async def send_whatsapp(self, to: str, body: str) -> Dict[str, Any]:
        raise NotImplementedError


class DevNotificationSender(NotificationSender):
    """Logs messages instead of delivering them. Used when no transport is configured."""

    async def send_email(self, to, subject, html, text=None):
        logger.info(f"[EMAIL DEV FALLBACK] To: {to} Subject: {subject}")
        return {"delivered": False, "mode": "dev"}

    async def send_sms(self, to, body):
        logger.info(f"[SMS DEV FALLBACK] To: {to} Body: {body[:80]}")
        return {"delivered": False, "mode": "dev"}

    async def send_whatsapp(self, to, body):
        logger.info(f"[WHATSAPP DEV FALLBACK] To: {to} Body: {body[:80]}")
        return {"delivered": False, "mode": "dev"}


def build_email_message(sender: str, to: str, subject: str, html: str, text: Optional[str] = None) -> MIMEMultipart:
    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = sender
    msg["To"] = to
    msg["Reply-To"] = sender
    msg["X-Mailer"] = "DonorCRM/1.0"
    if text:
        msg.attach(MIMEText(text, "plain"))
    msg.attach(MIMEText(html or text or "", "html"))
    return msg


class SmtpNotificationSender(DevNotificationSender):
    """Delivers email over SMTP; SMS and WhatsApp stay on the logging fallback."""

    def __init__(self, host: str, port: int, username: str, password: str, sender: str):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender

    def _deliver(self, msg: MIMEMultipart):
        try:
            logger.debug(f"[EMAIL] Connecting to {self.host}:{self.port}")
            with smtplib.SMTP(self.host, self.port) as server:
                server.starttls()
                server.login(self.username, self.password)
                server.send_message(msg)
        except smtplib.SMTPAuthenticationError as e:
            logger.error(f"[EMAIL] SMTP Authentication failed: {e}")
            logger.error("[EMAIL] Please check SMTP_USERNAME and SMTP_PASSWORD")
            raise
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(f"[EMAIL] SMTP Recipients refused: {e}")
            raise
        except smtplib.SMTPException as e:
            logger.error(f"[EMAIL] SMTP Exception: {e}")
            raise

    async def send_email(self, to, subject, html, text=None):
        if not to or not to.strip():
            raise ValueError("Recipient email is required")

        logger.info(f"[EMAIL] Sending to {to}, subject: {subject}")
        msg = build_email_message(self.sender, to, subject, html, text)
        # smtplib blocks; keep it off the event loop the scheduler shares with request handling.
        await asyncio.to_thread(self._deliver, msg)
        logger.info(f"[EMAIL] Sent successfully to {to}")
        return {"delivered": True, "mode": "smtp"}


def build_notification_sender() -> NotificationSender:
    if config.SMTP_USERNAME and config.SMTP_PASSWORD:
        logger.info(f"[NOTIFY] Using SMTP sender via {config.SMTP_HOST}:{config.SMTP_PORT}")
        return SmtpNotificationSender(
            host=config.SMTP_HOST,
            port=config.SMTP_PORT,
            username=config.SMTP_USERNAME,
            password=config.SMTP_PASSWORD,
            sender=config.EMAIL_FROM,
        )
    logger.warning("[NOTIFY] SMTP credentials missing, messages will only be logged")
    return DevNotificationSender()
