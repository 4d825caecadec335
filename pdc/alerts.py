from __future__ import annotations

import smtplib
from email.mime.text import MIMEText
from typing import Any

from . import db
from .settings import Settings, settings


def _smtp_ready(cfg: Settings) -> bool:
    return cfg.enable_email and all(
        [cfg.smtp_host, cfg.smtp_port, cfg.smtp_user, cfg.smtp_password, cfg.email_from, cfg.email_to]
    )


def format_alert(deployment: str, kind: str, **details: Any) -> tuple[str, str]:
    """Subject and plain-text body for an operator alert about one deployment."""
    subject = f"[pdc] {kind}: {deployment}"
    lines = [f"Deployment: {deployment}", f"Alert: {kind}"]
    lines.extend(f"{key.replace('_', ' ').capitalize()}: {value}" for key, value in details.items())
    return subject, "\n".join(lines)


def send_email(subject: str, body: str) -> bool:
    """Send an alert email when PDC_ENABLE_EMAIL and the PDC_SMTP_* settings are set."""
    if not _smtp_ready(settings):
        return False

    msg = MIMEText(body, "plain")
    msg["From"] = settings.email_from
    msg["To"] = settings.email_to
    msg["Subject"] = subject
    try:
        server = smtplib.SMTP(settings.smtp_host, settings.smtp_port)
        server.starttls()
        server.login(settings.smtp_user, settings.smtp_password)
        server.sendmail(settings.email_from, [settings.email_to], msg.as_string())
        server.quit()
    except (smtplib.SMTPException, OSError) as e:
        db.log_event("WARN", f"Alert email '{subject}' not sent: {e}")
        return False
    return True


def alert(deployment: str, kind: str, **details: Any) -> bool:
    """Mail an operator alert about one deployment if email is configured."""
    subject, body = format_alert(deployment, kind, **details)
    return send_email(subject, body)
