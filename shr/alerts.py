from __future__ import annotations

import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from .settings import Settings


def send_email(settings: Settings, subject: str, body: str) -> bool:
    """Send an email if SMTP settings are configured.

    Config keys (or ``SHR_``-prefixed environment variables):
      - ENABLE_EMAIL=true
      - SMTP_HOST / SMTP_PORT
      - SMTP_USER / SMTP_PASSWORD
      - EMAIL_FROM / EMAIL_TO
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

    msg = MIMEMultipart()
    msg["From"] = settings.email_from
    msg["To"] = settings.email_to
    msg["Subject"] = subject
    msg.attach(MIMEText(body, "plain"))
    try:
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=10) as server:
            server.starttls()
            server.login(settings.smtp_user, settings.smtp_password)
            server.sendmail(settings.email_from, [settings.email_to], msg.as_string())
        return True
    except (smtplib.SMTPException, OSError):
        return False


def notify_restart(settings: Settings, project: str, url: str, detail: str, restarted: bool) -> bool:
    subject = f"{'RESTARTED' if restarted else 'RESTART FAILED'}: {project}"
    body = (
        f"Project: {project}\n"
        f"Health URL: {url}\n"
        f"Action: {'service restarted' if restarted else 'restart failed, manual attention needed'}\n"
        f"Detail: {detail}\n"
    )
    return send_email(settings, subject, body)
