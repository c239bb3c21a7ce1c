from __future__ import annotations

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from .models import Phase, Service
from .settings import settings

logger = logging.getLogger(__name__)


def send_email(subject: str, body: str) -> bool:
    """Send an email if SMTP settings are configured.

    Environment variables:
      - DORC_ENABLE_EMAIL=true
      - DORC_SMTP_HOST / DORC_SMTP_PORT
      - DORC_SMTP_USER / DORC_SMTP_PASSWORD
      - DORC_EMAIL_FROM / DORC_EMAIL_TO
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

        server = smtplib.SMTP(settings.smtp_host, settings.smtp_port)
        server.starttls()
        server.login(settings.smtp_user, settings.smtp_password)
        server.sendmail(settings.email_from, [settings.email_to], msg.as_string())
        server.quit()
        return True
    except (smtplib.SMTPException, OSError) as e:
        logger.warning("alert email failed: %s", e)
        return False


def rollout_outcome(service: Service, attempted_revision: str, reason: str | None) -> bool:
    """Alert on a rollout that did not commit its target revision."""
    if service.phase == Phase.FAILED:
        subject = f"FAILED: {service.service_id} needs operator action"
    else:
        subject = f"ROLLED BACK: {service.service_id} stays on {service.current_revision}"
    body = (
        f"Service: {service.service_id}\n"
        f"Attempted revision: {attempted_revision}\n"
        f"Phase: {service.phase.value}\n"
        f"Current revision: {service.current_revision}\n"
        f"Reason: {reason or 'unknown'}"
    )
    return send_email(subject, body)
