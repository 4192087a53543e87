"""
Reminder delivery.

Local pushes are handed to a bridge with a delay and never change a reminder.
The daily email job is the only thing that marks reminders as sent.
"""

import logging
import math
from datetime import date, datetime, time, timedelta, timezone

import requests

import store
from expiry import days_until_expiry
from utils import send_email

logger = logging.getLogger(__name__)


class PushBridge:
    """Hand-off point for device notifications."""

    def send(self, seconds, message, title, url):
        raise NotImplementedError


class ScheduledPushBridge(PushBridge):
    """Delivers each push from an APScheduler one-shot job after ``seconds``."""

    def __init__(self, scheduler, webhook_url=None, timeout=10):
        self.scheduler = scheduler
        self.webhook_url = webhook_url
        self.timeout = timeout

    def send(self, seconds, message, title, url):
        if not self.scheduler.running:
            logger.warning("Scheduler is not running; dropping push for %s", url)
            return None
        run_date = datetime.now(timezone.utc) + timedelta(seconds=seconds)
        return self.scheduler.add_job(
            self.deliver, "date", run_date=run_date,
            kwargs={"message": message, "title": title, "url": url},
        )

    def deliver(self, message, title, url):
        if not self.webhook_url:
            logger.info("Push (no webhook configured): %s | %s | %s", title, message, url)
            return
        try:
            resp = requests.post(self.webhook_url,
                                 json={"title": title, "message": message, "url": url},
                                 timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            logger.error("Push delivery failed for %s: %s", url, e)


def seconds_until(reminder_date, now=None):
    """Whole seconds from ``now`` until UTC midnight of ``reminder_date``."""
    now = now or datetime.now(timezone.utc)
    due = datetime.combine(reminder_date, time.min, tzinfo=timezone.utc)
    return math.floor((due - now).total_seconds())


def schedule_notification_for_reminder(reminder, bridge, now=None):
    seconds = seconds_until(reminder.reminder_date, now)
    if seconds <= 0:
        return False
    document = reminder.document
    bridge.send(
        seconds,
        f"Your {document.name} requires attention",
        f"Document Reminder: {document.document_type}",
        f"/document/{document.id}",
    )
    logger.info("Scheduled notification for %s in %s seconds", document.name, seconds)
    return True


def schedule_local_notifications(session, user_id, bridge, now=None):
    """Queue a push for every pending future reminder of the user. Returns how many."""
    profile = store.get_profile(session, user_id)
    if not profile or not profile.push_notifications_enabled or not profile.expiry_reminders_enabled:
        logger.info("Push notifications are disabled for user %s", user_id)
        return 0

    now = now or datetime.now(timezone.utc)
    pending = store.list_reminders(session, user_id, pending_only=True, from_date=now.date())
    if not pending:
        logger.info("No pending reminders found for user %s", user_id)
        return 0

    return sum(1 for r in pending if schedule_notification_for_reminder(r, bridge, now))


# ==========================================================
# DAILY EMAIL JOB
# ==========================================================
def _reminder_email(profile, document, days_left, base_url):
    subject = f"Reminder: {document.name} expires in {days_left} days"
    lines = [
        f"Hello {profile.display_name or 'there'},",
        "",
        "This is a friendly reminder that your document is expiring soon:",
        "",
        f"  Name: {document.name}",
        f"  Type: {document.document_type}",
    ]
    if document.issuing_authority:
        lines.append(f"  Issued by: {document.issuing_authority}")
    lines += [
        f"  Expiry Date: {document.expiry_date.isoformat()}",
        f"  Days until expiry: {days_left}",
        "",
        "Please make sure to renew this document before it expires.",
        f"View it here: {base_url}/document/{document.id}",
        "",
        "You can manage your notification preferences in your profile settings.",
    ]
    return subject, "\n".join(lines)


def send_reminder_emails(session, today=None, mailer=send_email, base_url=""):
    """Email every reminder due today and mark the delivered ones as sent."""
    today = today or date.today()
    logger.info("Starting reminder email job for %s", today)

    reminders = store.due_reminders(session, today)
    if not reminders:
        logger.info("No reminders to send today")
        return {"sent": 0, "errors": 0, "total": 0}

    sent = errors = 0
    for reminder in reminders:
        profile = store.get_profile(session, reminder.user_id)
        if (not profile or not profile.email_notifications_enabled
                or not profile.expiry_reminders_enabled or not profile.email):
            logger.info("Skipping reminder %s - notifications disabled or no email", reminder.id)
            continue

        document = reminder.document
        subject, body = _reminder_email(profile, document,
                                        days_until_expiry(document.expiry_date, today), base_url)
        if not mailer(profile.email, subject, body):
            errors += 1
            continue
        try:
            store.mark_reminder_sent(session, reminder)
            sent += 1
        except store.StoreError:
            logger.error("Could not mark reminder %s as sent", reminder.id)
            errors += 1

    logger.info("Reminder job complete. Sent: %s, Errors: %s", sent, errors)
    return {"sent": sent, "errors": errors, "total": len(reminders)}
