"""
Membership notifications.

Fire-and-forget email via Postmark. Billing state changes must never fail
because a notification could not be delivered, so `notify` logs and returns
on every error.
"""
import logging
import os
from datetime import datetime
from typing import Any, Dict, Optional

from dateutil import tz
from postmarker.core import PostmarkClient
from sqlalchemy import select

from vvip.core.database import accounts, get_db_session
from vvip.features.billing.commitment import as_utc
from vvip.models.subscription import SubscriptionRecord

logger = logging.getLogger("vvip.billing.notifier")

DEFAULT_SENDER = "THE VVIP <concierge@the-vvip.example>"
DEFAULT_TIMEZONE = "Asia/Tokyo"

# kind -> (subject, body); bodies are formatted with the notification data
TEMPLATES = {
    "subscription_started": (
        "Welcome to THE VVIP {plan}",
        "Your {plan} membership is now active.\n"
        "Your minimum commitment period runs until {commitment_until}.",
    ),
    "payment_succeeded": (
        "Your THE VVIP membership has been renewed",
        "Thank you. Your {plan} membership has been renewed until {commitment_until}.",
    ),
    "plan_changed": (
        "Your THE VVIP plan has changed",
        "Your membership is now {plan}.\n"
        "Your new commitment period runs until {commitment_until}.",
    ),
    "payment_failed": (
        "Action needed: payment for THE VVIP failed",
        "We could not collect the payment for your {plan} membership.\n"
        "Please update your payment method at {app_url} to keep your benefits.",
    ),
    "subscription_cancelled": (
        "Your THE VVIP membership has ended",
        "Your paid membership has ended and your account is now on the Free plan.\n"
        "You can subscribe again at any time at {app_url}.",
    ),
}


def member_date(value: Optional[datetime]) -> Optional[str]:
    """ISO calendar date of `value` as the member sees it (MEMBER_TIMEZONE, default JST)."""
    if value is None:
        return None
    zone = tz.gettz(os.getenv("MEMBER_TIMEZONE") or DEFAULT_TIMEZONE) or tz.UTC
    return as_utc(value).astimezone(zone).date().isoformat()


def notification_data(record: SubscriptionRecord) -> Dict[str, Any]:
    return {"plan": record.plan, "commitment_until": member_date(record.commitment_until)}


class _SafeDict(dict):
    def __missing__(self, key):
        return "-"


def render(kind: str, data: Dict[str, Any]) -> tuple:
    """Return (subject, text body) for a notification kind."""
    if kind not in TEMPLATES:
        raise KeyError(f"Unknown notification kind: {kind}")
    subject, body = TEMPLATES[kind]
    values = _SafeDict(app_url=os.getenv("APP_URL", ""))
    values.update({k: v for k, v in data.items() if v is not None})
    return subject.format_map(values), body.format_map(values)


def _lookup_email(account_id: str) -> Optional[str]:
    with get_db_session() as session:
        row = session.execute(
            select(accounts.c.email).where(accounts.c.account_id == account_id)
        ).first()
        return row.email if row else None


class EmailNotifier:
    """Sends membership notifications through Postmark when configured."""

    def __init__(self, server_token: Optional[str] = None, sender: Optional[str] = None):
        token = server_token or os.getenv("POSTMARK_SERVER_TOKEN")
        self.sender = sender or os.getenv("EMAIL_SENDER") or DEFAULT_SENDER
        if not token:
            logger.warning("POSTMARK_SERVER_TOKEN not set - notifications will be logged but not sent")
            self.client = None
        else:
            self.client = PostmarkClient(server_token=token)

    def notify(self, account_id: str, kind: str, data: Optional[Dict[str, Any]] = None) -> bool:
        """Deliver a notification. Returns True if an email was sent; never raises."""
        try:
            subject, body = render(kind, data or {})
            recipient = _lookup_email(account_id)
            if not recipient:
                logger.info(
                    f"[notify] {kind} skipped: no email on file",
                    extra={"account_id": account_id},
                )
                return False
            if self.client is None:
                logger.info(
                    f"[notify] {kind} logged (not sent) to {recipient}",
                    extra={"account_id": account_id},
                )
                return False
            response = self.client.emails.send(
                From=self.sender,
                To=recipient,
                Subject=subject,
                TextBody=body,
                Tag=kind,
            )
            logger.info(
                f"[notify] {kind} sent: {response.get('MessageID')}",
                extra={"account_id": account_id},
            )
            return True
        except Exception as e:
            logger.error(
                f"[notify] {kind} failed: {e}",
                extra={"account_id": account_id, "error_code": "notification_failed"},
            )
            return False


_notifier: Optional[EmailNotifier] = None


def get_notifier() -> EmailNotifier:
    global _notifier
    if _notifier is None:
        _notifier = EmailNotifier()
    return _notifier


def reset_notifier() -> None:
    """Drop the cached notifier (configuration changed)."""
    global _notifier
    _notifier = None
