"""Registration confirmation emails carrying the check-in QR code.

Delivery happens after the payment transition has committed; a failed send
is logged and reported, never propagated into the payment path.
"""

import base64
import io
import logging
import smtplib
import ssl
from dataclasses import dataclass
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import List, Optional

import qrcode
from sqlalchemy.orm import sessionmaker

from .config import Settings
from .db import transaction
from .errors import NotEligibleError, NotFoundError
from .models import PAYMENT_COMPLETED, Event, User, Vehicle
from .store import RegistrationStore

logger = logging.getLogger(__name__)


class EmailSender:
    def __init__(self, settings: Settings) -> None:
        self.smtp_server = settings.SMTP_SERVER
        self.smtp_port = settings.SMTP_PORT
        self.username = settings.SMTP_USERNAME
        self.password = settings.SMTP_PASSWORD
        self.from_email = settings.FROM_EMAIL
        self.from_name = settings.FROM_NAME
        self.enabled = settings.SEND_EMAILS
        self.timeout = settings.EMAIL_TIMEOUT

    def send_email(
        self,
        to_emails: List[str],
        subject: str,
        html_content: str,
        text_content: Optional[str] = None,
    ) -> bool:
        if not self.enabled:
            logger.info("email sending disabled, would send %r to %s", subject, to_emails)
            return True

        message = MIMEMultipart("alternative")
        message["Subject"] = subject
        message["From"] = f"{self.from_name} <{self.from_email}>"
        message["To"] = ", ".join(to_emails)
        if text_content:
            message.attach(MIMEText(text_content, "plain"))
        message.attach(MIMEText(html_content, "html"))

        try:
            with smtplib.SMTP(self.smtp_server, self.smtp_port, timeout=self.timeout) as server:
                server.starttls(context=ssl.create_default_context())
                if self.username:
                    server.login(self.username, self.password)
                server.sendmail(self.from_email, to_emails, message.as_string())
        except (smtplib.SMTPException, OSError):
            logger.exception("failed to send %r to %s", subject, to_emails)
            return False

        logger.info("email %r sent to %s", subject, to_emails)
        return True


@dataclass(frozen=True)
class Confirmation:
    registration_id: str
    to_email: str
    to_name: str
    event_name: str
    event_date: datetime
    location: str
    vehicle: str
    price_cents: int
    qr_code_data: str

    @property
    def subject(self) -> str:
        return f"Event Registration Confirmation - {self.event_name}"


def qr_data_url(data: str) -> str:
    qr = qrcode.QRCode(version=None, box_size=10, border=2)
    qr.add_data(data)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode()


def render_text(c: Confirmation) -> str:
    return (
        f"Hi {c.to_name},\n\n"
        f"Your vehicle registration for {c.event_name} has been confirmed.\n\n"
        f"Event: {c.event_name}\n"
        f"Date: {c.event_date:%A, %B %d, %Y %H:%M} UTC\n"
        f"Location: {c.location}\n"
        f"Vehicle: {c.vehicle}\n"
        f"Registration fee: ${c.price_cents / 100:.2f}\n\n"
        f"Check-in code: {c.qr_code_data}\n\n"
        "Please arrive at least 30 minutes before the event starts and have your QR code ready.\n"
    )


def render_html(c: Confirmation) -> str:
    return f"""<!DOCTYPE html>
<html>
  <head><meta charset="utf-8"><title>Event Registration Confirmation</title></head>
  <body style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
    <h1>Registration Confirmed!</h1>
    <p>Hi {escape(c.to_name)},</p>
    <p>Your vehicle registration for <strong>{escape(c.event_name)}</strong> has been confirmed.</p>
    <div style="background: #f9fafb; padding: 20px; border-radius: 8px;">
      <p><strong>Event:</strong> {escape(c.event_name)}</p>
      <p><strong>Date:</strong> {c.event_date:%A, %B %d, %Y %H:%M} UTC</p>
      <p><strong>Location:</strong> {escape(c.location)}</p>
      <p><strong>Vehicle:</strong> {escape(c.vehicle)}</p>
      <p><strong>Registration Fee:</strong> ${c.price_cents / 100:.2f}</p>
    </div>
    <div style="text-align: center; margin: 20px 0;">
      <h2>Your Check-in QR Code</h2>
      <img src="{qr_data_url(c.qr_code_data)}" alt="QR Code" style="max-width: 300px;" />
      <p style="font-size: 12px; word-break: break-all;">Code: {escape(c.qr_code_data)}</p>
    </div>
    <p>Please arrive at least 30 minutes before the event starts and have your QR code ready.</p>
  </body>
</html>
"""


class ConfirmationNotifier:
    def __init__(self, sessions: sessionmaker, sender: EmailSender) -> None:
        self._sessions = sessions
        self._sender = sender

    def _load(self, registration_id: str) -> Confirmation | None:
        with transaction(self._sessions) as db:
            registration = RegistrationStore(db).get(registration_id)
            if registration is None:
                raise NotFoundError("Registration")
            if registration.payment_status != PAYMENT_COMPLETED or not registration.qr_code_data:
                raise NotEligibleError("Cannot send a confirmation for an unpaid registration")

            user = db.get(User, registration.user_id)
            event = db.get(Event, registration.event_id)
            vehicle = db.get(Vehicle, registration.vehicle_id)
            if user is None or not user.email or event is None:
                logger.warning("no recipient or event for registration %s, confirmation skipped", registration_id)
                return None

            return Confirmation(
                registration_id=registration.id,
                to_email=user.email,
                to_name=user.name or user.email,
                event_name=event.name,
                event_date=event.date,
                location=event.location,
                vehicle=f"{vehicle.year} {vehicle.make} {vehicle.model}" if vehicle else "",
                price_cents=event.vendor_price,
                qr_code_data=registration.qr_code_data,
            )

    def send_confirmation(self, registration_id: str) -> bool:
        confirmation = self._load(registration_id)
        if confirmation is None:
            return False
        return self._sender.send_email(
            [confirmation.to_email],
            confirmation.subject,
            render_html(confirmation),
            render_text(confirmation),
        )

    def resend_confirmation(self, registration_id: str, user_id: str) -> bool:
        """Owner-only resend of a paid registration's confirmation."""
        with transaction(self._sessions) as db:
            registration = RegistrationStore(db).get(registration_id)
            if registration is None or registration.user_id != user_id:
                raise NotFoundError("Registration")
        sent = self.send_confirmation(registration_id)
        logger.info("confirmation resend for %s: sent=%s", registration_id, sent)
        return sent
