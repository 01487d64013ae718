from __future__ import annotations

import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from .models import ConvergenceRecord
from .settings import settings


def send_email(subject: str, body: str) -> bool:
    """Send an email if SMTP settings are configured.

    Environment variables:
      - CDR_ENABLE_EMAIL=true
      - CDR_SMTP_HOST / CDR_SMTP_PORT
      - CDR_SMTP_USER / CDR_SMTP_PASSWORD
      - CDR_EMAIL_FROM / CDR_EMAIL_TO
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
            settings.email_to,
        ]
    ):
        return False

    try:
        msg = MIMEMultipart()
        msg["From"] = settings.email_from
        msg["To"] = settings.email_to
        msg["Subject"] = subject
        msg.attach(MIMEText(body, "plain"))

        server = smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=10)
        server.starttls()
        server.login(settings.smtp_user, settings.smtp_password)
        server.sendmail(settings.email_from, [settings.email_to], msg.as_string())
        server.quit()
        return True
    except (smtplib.SMTPException, OSError):
        return False


def notify_revision_failed(app: str, rec: ConvergenceRecord) -> bool:
    subject = f"DEPLOY FAILED: {app} revision {rec.revision}"
    body = (
        f"App: {app}\n"
        f"Revision: {rec.revision}\n"
        f"Started: {rec.started_at}\n"
        f"Completed: {rec.completed_at}\n"
        f"Attempts: {rec.attempts}\n"
        f"Reason: {rec.reason}"
    )
    return send_email(subject, body)
