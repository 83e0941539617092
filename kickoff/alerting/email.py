"""
Email alerting for audit findings.

Sends SMTP alerts with a per-type cooldown to prevent spam. Alerting is
best-effort: failures are logged and never raised into the audit.
"""

import asyncio
import logging
import smtplib
from datetime import datetime, timedelta
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from enum import Enum

from kickoff.config import get_settings
from kickoff.utils.dates import utc_now

logger = logging.getLogger(__name__)


class AlertType(Enum):
    """Types of alerts that can be sent."""

    STALE_PENDING = "stale_pending"
    MISSING_REMOTE = "missing_remote"
    GAP_DETECTED = "gap_detected"


SEVERITY = {
    AlertType.STALE_PENDING: "CRITICAL",
    AlertType.MISSING_REMOTE: "WARNING",
    AlertType.GAP_DETECTED: "WARNING",
}

ACTIONS = {
    AlertType.STALE_PENDING: (
        "A scheduled send time passed with no delivery confirmation. Fans may not have "
        "received the notification. Check the Braze campaign and webhook delivery."
    ),
    AlertType.MISSING_REMOTE: (
        "Ledger rows point at schedules Braze no longer lists. Reset the fixtures from "
        "the admin API or wait for the next reconcile + scheduler pass."
    ),
    AlertType.GAP_DETECTED: (
        "Eligible fixtures in the near-term window have no schedule. Check scheduler "
        "outcomes (content_unresolved, create_failed) for these fixtures."
    ),
}

# In-memory cooldown tracking (resets on restart, which is acceptable)
_last_alert_times: dict[AlertType, datetime] = {}

MAX_LISTED_FINDINGS = 25


def _can_send_alert(alert_type: AlertType) -> bool:
    """Check if enough time has passed since last alert of this type."""
    settings = get_settings()
    cooldown = timedelta(minutes=settings.ALERT_COOLDOWN_MINUTES)

    last_sent = _last_alert_times.get(alert_type)
    if last_sent is None:
        return True

    return utc_now() - last_sent >= cooldown


def _record_alert_sent(alert_type: AlertType) -> None:
    _last_alert_times[alert_type] = utc_now()


def build_alert_email(alert_type: AlertType, findings: list[dict]) -> tuple[str, str]:
    """Build email subject and body for an audit alert."""
    severity = SEVERITY[alert_type]
    title = alert_type.value.replace("_", " ").title()
    subject = f"[Kickoff Notifier] {severity}: {title} ({len(findings)})"

    lines = []
    for finding in findings[:MAX_LISTED_FINDINGS]:
        detail = ", ".join(f"{key}={value}" for key, value in finding.items())
        lines.append(f"- {detail}")
    if len(findings) > MAX_LISTED_FINDINGS:
        lines.append(f"- ... and {len(findings) - MAX_LISTED_FINDINGS} more")
    listing = "\n".join(lines)

    body = f"""
Kickoff Notifier Audit Alert
============================

Type: {alert_type.value}
Severity: {severity}
Findings: {len(findings)}

{listing}

Action Required:
----------------
{ACTIONS[alert_type]}

---
This is an automated alert from Kickoff Notifier.
"""
    return subject, body


async def send_alert_email(alert_type: AlertType, findings: list[dict]) -> bool:
    """
    Send an alert email if SMTP is enabled and the cooldown allows.

    Returns:
        True if email was sent, False if skipped (cooldown/disabled/error).
    """
    settings = get_settings()

    if not findings:
        return False

    if not settings.SMTP_ENABLED:
        logger.debug("[ALERT] SMTP disabled, skipping email")
        return False

    if not _can_send_alert(alert_type):
        logger.info(
            f"[ALERT] Skipped {alert_type.value}: cooldown active ({settings.ALERT_COOLDOWN_MINUTES}min)"
        )
        return False

    subject, body = build_alert_email(alert_type, findings)

    # Send email in thread pool to avoid blocking
    try:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None,
            _send_smtp_email,
            settings.SMTP_HOST,
            settings.SMTP_PORT,
            settings.SMTP_USERNAME,
            settings.SMTP_PASSWORD,
            settings.SMTP_FROM_EMAIL,
            settings.SMTP_TO_EMAIL,
            subject,
            body,
        )
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"[ALERT] Failed to send email: {e}")
        return False

    _record_alert_sent(alert_type)
    logger.info(f"[ALERT] Email sent: {alert_type.value} to {settings.SMTP_TO_EMAIL}")
    return True


def _send_smtp_email(
    host: str,
    port: int,
    username: str,
    password: str,
    from_email: str,
    to_email: str,
    subject: str,
    body: str,
) -> None:
    """Synchronous SMTP send (runs in executor)."""
    msg = MIMEMultipart()
    msg["From"] = from_email
    msg["To"] = to_email
    msg["Subject"] = subject
    msg.attach(MIMEText(body, "plain"))

    with smtplib.SMTP(host, port) as server:
        server.starttls()
        server.login(username, password)
        server.sendmail(from_email, to_email, msg.as_string())
