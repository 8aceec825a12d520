from __future__ import annotations

import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from .settings import settings


def send_email(subject: str, body: str) -> bool:
    """Send an alert email if SMTP settings are configured.

    Environment variables:
      - FCC_ENABLE_EMAIL=true
      - FCC_SMTP_HOST / FCC_SMTP_PORT
      - FCC_SMTP_USER / FCC_SMTP_PASSWORD
      - FCC_EMAIL_FROM / FCC_EMAIL_TO

    Returns False when alerting is disabled, misconfigured, or delivery fails;
    alerting never interrupts the caller.
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
    msg["Subject"] = f"[fcc] {subject}"
    msg.attach(MIMEText(body, "plain"))

    try:
        server = smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=10)
        server.starttls()
        server.login(settings.smtp_user, settings.smtp_password)
        server.sendmail(settings.email_from, [settings.email_to], msg.as_string())
        server.quit()
        return True
    except (smtplib.SMTPException, OSError):
        return False
