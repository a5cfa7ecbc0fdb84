from __future__ import annotations

import logging
import smtplib
import ssl
from email.message import EmailMessage
from typing import Any

import requests

from app.config import (
    brevo_api_key,
    brevo_from_email,
    brevo_sender_name,
    email_backend,
    is_local_dev,
    smtp_from_email,
    smtp_host,
    smtp_pass,
    smtp_port,
    smtp_user,
)

logger = logging.getLogger(__name__)

BREVO_SEND_URL = "https://api.brevo.com/v3/smtp/email"


class EmailSendError(RuntimeError):
    pass


def _send_via_brevo(*, to_email: str, subject: str, text: str) -> None:
    """
    Brevo Transactional Email API:
    https://developers.brevo.com/docs/send-a-transactional-email
    """
    key = brevo_api_key()
    if not key:
        raise EmailSendError("BREVO_API_KEY not configured")
    sender_email = (brevo_from_email() or smtp_from_email()).strip()
    if not sender_email:
        raise EmailSendError("BREVO_FROM/SMTP_FROM not configured")

    payload = {
        "sender": {"email": sender_email, "name": brevo_sender_name()},
        "to": [{"email": to_email}],
        "subject": subject,
        "textContent": text,
    }
    try:
        resp = requests.post(
            BREVO_SEND_URL,
            headers={"api-key": key, "Accept": "application/json"},
            json=payload,
            timeout=15,
        )
    except requests.RequestException as e:
        raise EmailSendError(f"Brevo request failed: {e.__class__.__name__}") from e
    if not (200 <= int(resp.status_code) < 300):
        raise EmailSendError(f"Brevo send failed: HTTP {resp.status_code}: {resp.text[:500]}")


def _send_via_smtp(*, to_email: str, subject: str, text: str) -> None:
    host = smtp_host()
    port = int(smtp_port())
    user = smtp_user()
    password = smtp_pass()
    sender = smtp_from_email()
    if not host:
        raise EmailSendError("SMTP_HOST not configured")
    if not sender:
        raise EmailSendError("SMTP_FROM (or BREVO_FROM/SMTP_USER) not configured")

    msg = EmailMessage()
    msg["From"] = sender
    msg["To"] = to_email
    msg["Subject"] = subject
    msg.set_content(text)

    try:
        if port == 465:
            with smtplib.SMTP_SSL(host, port, timeout=15, context=ssl.create_default_context()) as s:
                if user and password:
                    s.login(user, password)
                s.send_message(msg)
            return
        with smtplib.SMTP(host, port, timeout=15) as s:
            s.ehlo()
            if s.has_extn("starttls"):
                s.starttls(context=ssl.create_default_context())
                s.ehlo()
            if user and password:
                s.login(user, password)
            s.send_message(msg)
    except (smtplib.SMTPException, OSError) as e:
        raise EmailSendError(f"SMTP send failed: {e.__class__.__name__}: {e}") from e


def send_email(*, to_email: str, subject: str, text: str) -> str:
    """
    Deliver one plain-text email. Returns the backend that handled it.

    Prefer Brevo if configured; otherwise fall back to SMTP, and to console
    output in local dev.
    """
    to_email = (to_email or "").strip()
    if not to_email or "@" not in to_email:
        raise EmailSendError("Invalid recipient email")

    backend = email_backend()
    if backend in ("disabled", "off", "none"):
        return "disabled"
    if backend in ("console", "log"):
        logger.warning("EMAIL_BACKEND=console: to=%s subject=%s\n%s", to_email, subject, text)
        return "console"
    if backend == "brevo" or (backend == "auto" and brevo_api_key()):
        _send_via_brevo(to_email=to_email, subject=subject, text=text)
        return "brevo"
    if backend == "smtp" or (backend == "auto" and smtp_host()):
        _send_via_smtp(to_email=to_email, subject=subject, text=text)
        return "smtp"

    if is_local_dev():
        logger.warning(
            "No email provider configured; console output in local dev.\nto=%s subject=%s\n%s",
            to_email,
            subject,
            text,
        )
        return "console"

    raise EmailSendError(
        "Email provider not configured. Set BREVO_API_KEY+BREVO_FROM (Brevo) or SMTP_HOST+SMTP_FROM (SMTP)."
    )


def plan_receipt_text(*, grant: dict[str, Any], houses: list[dict[str, Any]]) -> str:
    lines = [
        f"Plan #{grant['id']} for {grant['area']}",
        f"Houses unlocked: {grant['pinned_count']} of {grant['houses_to_view']}",
        f"Amount paid: INR {grant['amount_paid']}",
        f"Valid for {grant['duration_days']} day(s), until {grant['valid_until']}",
        "",
        "Your houses (nearest first):",
    ]
    for i, h in enumerate(houses, start=1):
        dist = h.get("distance_km")
        dist_txt = f" ({dist} km)" if dist is not None else ""
        lines.append(f"{i}. {h.get('title')} - INR {h.get('rent')}/month{dist_txt}")
    return "\n".join(lines)


def send_plan_receipt(*, to_email: str, grant: dict[str, Any], houses: list[dict[str, Any]]) -> str:
    """
    Best-effort purchase receipt. Never raises: a failed receipt must not look
    like a failed payment.
    """
    try:
        return send_email(
            to_email=to_email,
            subject=f"Your FindMyRoom plan for {grant['area']}",
            text=plan_receipt_text(grant=grant, houses=houses),
        )
    except EmailSendError as e:
        logger.warning("Plan receipt not sent: grant_id=%s to=%s error=%s", grant.get("id"), to_email, e)
        return "failed"
