from __future__ import annotations

import logging
import os
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

import dotenv

from ..settings import settings
from ..utils import to_isoformat

logger = logging.getLogger(__name__)

_APPS_DIR = Path(__file__).resolve().parents[2]


@dataclass(frozen=True)
class EmailResult:
    ok: bool
    error: Optional[str] = None


# template kind -> (subject, body); formatted with the send params.
TEMPLATES: Dict[str, tuple] = {
    "invoice": (
        "Invoice {number} from {business_name}",
        "Hi {client_name},\n\n"
        "{business_name} has sent you invoice {number} for {amount}.\n"
        "Due: {due_date}\n\n"
        "View and pay online: {public_url}\n",
    ),
    "reminder": (
        "Reminder: invoice {number} from {business_name}",
        "Hi {client_name},\n\n"
        "This is a friendly reminder that invoice {number} for {amount} is still open.\n"
        "Due: {due_date}\n\n"
        "View and pay online: {public_url}\n",
    ),
    "offer": (
        "Offer {number} from {business_name}",
        "Hi {client_name},\n\n"
        "{business_name} has sent you offer {number} for {amount}.\n\n"
        "Review, accept or decline online: {public_url}\n",
    ),
}


class EmailSender(Protocol):
    def send(self, to: str, template: str, params: Dict[str, Any]) -> EmailResult:
        ...


def _invoice_emails_enabled() -> bool:
    # Prefer the Settings value (works in prod), but also re-load apps/.env for local dev
    # so toggling ENABLE_INVOICE_EMAILS doesn't require a server restart.
    dotenv.load_dotenv(dotenv_path=_APPS_DIR / ".env", override=True)
    env_flag = (os.getenv("ENABLE_INVOICE_EMAILS", "").strip().lower() == "true")
    return bool(settings.ENABLE_INVOICE_EMAILS) or env_flag


def render(template: str, params: Dict[str, Any]) -> tuple:
    if template not in TEMPLATES:
        raise ValueError(f"Unknown email template: {template}")
    subject, body = TEMPLATES[template]
    values = {k: ("n/a" if v is None else v) for k, v in params.items()}
    return subject.format(**values), body.format(**values)


def format_amount(amount_minor_units: int, currency: str) -> str:
    return f"{int(amount_minor_units) / 100:,.2f} {(currency or '').upper()}"


def document_params(record: Any, *, business_name: Optional[str], public_url: str) -> Dict[str, Any]:
    """Template params for an invoice or offer record."""
    due = to_isoformat(record.due_date)
    return {
        "number": record.number,
        "business_name": business_name or "Your supplier",
        "client_name": record.client_name,
        "amount": format_amount(record.amount_minor_units, record.currency),
        "due_date": due[:10] if due else None,
        "public_url": public_url,
    }


class SmtpEmailSender:
    """Sends templated emails over SMTP. Delivery problems come back as EmailResult(ok=False)."""

    def send(self, to: str, template: str, params: Dict[str, Any]) -> EmailResult:
        if not _invoice_emails_enabled():
            return EmailResult(ok=False, error="Invoice emails are disabled (set ENABLE_INVOICE_EMAILS=true)")

        to = (to or "").strip()
        if not to:
            return EmailResult(ok=False, error="Missing recipient email")

        try:
            subject, body = render(template, params)
        except (KeyError, ValueError) as e:
            return EmailResult(ok=False, error=f"Template error: {e}")

        # Dev-friendly behavior: if SMTP auth isn't configured, don't attempt network.
        username = (settings.SMTP_USERNAME or "").strip()
        password = (settings.SMTP_PASSWORD or "").strip()
        if not username or not password:
            logger.info("[dev] %s email to %s: %s", template, to, subject)
            return EmailResult(ok=True)

        msg = EmailMessage()
        msg["From"] = settings.EMAIL_FROM
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content(body)

        try:
            with smtplib.SMTP(settings.SMTP_SERVER, int(settings.SMTP_PORT), timeout=20) as smtp:
                smtp.ehlo()
                # Most SMTP providers require STARTTLS on 587.
                try:
                    smtp.starttls()
                    smtp.ehlo()
                except smtplib.SMTPNotSupportedError:
                    pass
                smtp.login(username, password)
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.warning("Email delivery to %s failed: %s", to, e)
            return EmailResult(ok=False, error=str(e))

        return EmailResult(ok=True)


def get_email_sender() -> EmailSender:
    return SmtpEmailSender()
