from __future__ import annotations

import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Mapping

import httpx

from .settings import settings


def send_email(subject: str, body: str, to: str) -> bool:
    """Send an email if SMTP settings are configured.

    Environment variables:
      - PDC_ENABLE_EMAIL=true
      - PDC_SMTP_HOST / PDC_SMTP_PORT
      - PDC_SMTP_USER / PDC_SMTP_PASSWORD
      - PDC_EMAIL_FROM
    """
    if not settings.enable_email:
        return False
    if not all(
        [
            settings.smtp_host,
            settings.smtp_port,
            settings.smtp_user,
            settings.smtp_password,
            settings.email_from,
            to,
        ]
    ):
        return False

    try:
        msg = MIMEMultipart()
        msg["From"] = settings.email_from
        msg["To"] = to
        msg["Subject"] = subject
        msg.attach(MIMEText(body, "plain"))

        server = smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=settings.request_timeout_s)
        server.starttls()
        server.login(settings.smtp_user, settings.smtp_password)
        server.sendmail(settings.email_from, [to], msg.as_string())
        server.quit()
        return True
    except (smtplib.SMTPException, OSError):
        return False


def email_notifier(recipient: str, subject: str, payload: Mapping[str, Any]) -> bool:
    body = "\n".join(f"{k.capitalize()}: {v}" for k, v in payload.items())
    return send_email(subject, body, recipient)


def webhook_notifier(recipient: str, subject: str, payload: Mapping[str, Any]) -> bool:
    """POST the event as JSON to ``recipient`` (a URL)."""
    try:
        with httpx.Client(timeout=settings.request_timeout_s, follow_redirects=False) as client:
            resp = client.post(recipient, json={"subject": subject, **payload})
        return resp.is_success
    except httpx.HTTPError:
        return False
