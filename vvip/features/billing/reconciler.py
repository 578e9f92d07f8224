"""
Webhook reconciler.

Keeps subscription records consistent with Stripe's asynchronous events:
1. Verify signature (degraded trust mode without a secret, never in production)
2. Check idempotency (skip events already processed)
3. Dispatch by event type and apply state changes
4. Mark as processed, or store the error and re-raise so Stripe redelivers

Every handler derives its update from the stored record plus the event
payload, so redelivery and out-of-order delivery converge on the same state.
"""
import hashlib
import logging
import os
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError

from vvip.core.database import billing_events, get_db_session
from vvip.core.errors import ConfigurationError, ProcessorError, ProcessorUnavailableError
from vvip.core.logging import log_event
from vvip.features.billing import store
from vvip.features.billing.catalog import PLAN_DEFINITIONS, get_price_id
from vvip.features.billing.commitment import commitment_end
from vvip.features.billing.history import delete_payment_row, record_payment_row
from vvip.features.billing.notifier import get_notifier, notification_data
from vvip.features.billing.provider import BillingWebhookResult, PaymentProvider
from vvip.features.billing.stripe_provider import (
    get_provider,
    parse_stripe_payload,
    verify_stripe_event,
)
from vvip.models.subscription import FREE_PLAN, SubscriptionRecord

logger = logging.getLogger("vvip.billing.reconciler")

ACTIVATION_REASON = "subscription_create"
RENEWAL_REASON = "subscription_cycle"


def _verify(
    raw_payload: bytes,
    signature_header: Optional[str],
    provider: Optional[PaymentProvider],
) -> BillingWebhookResult:
    secret = os.getenv("STRIPE_WEBHOOK_SECRET")
    if secret:
        if provider is not None:
            return provider.verify_webhook_signature(raw_payload, signature_header, secret)
        return verify_stripe_event(raw_payload, signature_header, secret)

    if os.getenv("ENV", "development").lower() == "production":
        raise ConfigurationError("STRIPE_WEBHOOK_SECRET is required in production")
    logger.warning("[webhook] STRIPE_WEBHOOK_SECRET not set - accepting unverified event")
    return parse_stripe_payload(raw_payload)


def _claim_event(event: BillingWebhookResult, payload_hash: str) -> bool:
    """Record the event. False if it was already processed (or is being processed)."""
    with get_db_session() as session:
        existing = session.execute(
            select(billing_events.c.processed).where(
                billing_events.c.stripe_event_id == event.event_id
            )
        ).first()
        if existing is not None:
            if existing.processed:
                return False
            # Earlier attempt failed; Stripe is redelivering
            session.execute(
                update(billing_events)
                .where(billing_events.c.stripe_event_id == event.event_id)
                .values(error=None)
            )
            return True

    try:
        with get_db_session() as session:
            session.execute(
                insert(billing_events).values(
                    stripe_event_id=event.event_id,
                    event_type=event.event_type,
                    payload_hash=payload_hash,
                    processed=False,
                )
            )
    except IntegrityError:
        # Race condition: another delivery already inserted this event
        return False
    return True


def _mark_processed(event_id: str, now: datetime) -> None:
    with get_db_session() as session:
        session.execute(
            update(billing_events)
            .where(billing_events.c.stripe_event_id == event_id)
            .values(processed=True, processed_at=now, error=None)
        )


def _mark_failed(event_id: str, error: str) -> None:
    with get_db_session() as session:
        session.execute(
            update(billing_events)
            .where(billing_events.c.stripe_event_id == event_id)
            .values(error=error[:1000])
        )


def _notify(record: SubscriptionRecord, kind: str) -> None:
    get_notifier().notify(record.account_id, kind, notification_data(record))


def _no_match(event: BillingWebhookResult) -> str:
    log_event(
        "info",
        "billing.webhook.no_match",
        subscription_id=event.subscription_id,
        event_type=event.event_type,
        extra={"event_id": event.event_id},
        logger_name=logger.name,
    )
    return "no_match"


def _activate(event: BillingWebhookResult, now: datetime) -> str:
    """First invoice of a new subscription was paid."""
    record = store.find_by_subscription_id(event.subscription_id)
    if record is not None:
        if record.payment_failed:
            store.update_record(record.account_id, payment_failed=False)
        return "already_active"

    if not event.account_id:
        return _no_match(event)
    record = store.get_record(event.account_id)
    if record is None:
        return _no_match(event)
    if record.has_paid_plan:
        logger.warning(
            f"[webhook] {event.subscription_id} paid but account is already on {record.plan}",
            extra={"account_id": record.account_id, "subscription_id": event.subscription_id},
        )
        return "ignored"

    plan_id = event.plan_id
    if plan_id not in PLAN_DEFINITIONS or plan_id == FREE_PLAN:
        logger.warning(
            f"[webhook] Cannot activate {event.subscription_id}: unknown plan {plan_id}",
            extra={"account_id": record.account_id, "subscription_id": event.subscription_id},
        )
        return "ignored"

    try:
        record = store.conditional_update(
            record.account_id,
            expected_plan=FREE_PLAN,
            expected_subscription_id=None,
            **store.activation_fields(plan_id, event.subscription_id, now),
        )
    except store.StaleRecordError:
        current = store.get_record(event.account_id)
        if current and current.stripe_subscription_id == event.subscription_id:
            return "already_active"
        raise

    record_payment_row(
        record.account_id,
        plan_id,
        "initial",
        stripe_reference=event.invoice_id,
        amount=event.amount_paid,
        currency=event.currency,
        now=now,
    )
    log_event(
        "info",
        "billing.subscription.activated",
        account_id=record.account_id,
        subscription_id=event.subscription_id,
        extra={"plan_id": plan_id, "source": "webhook"},
        logger_name=logger.name,
    )
    _notify(record, "subscription_started")
    return "activated"


def _renew(
    event: BillingWebhookResult,
    record: SubscriptionRecord,
    provider: Optional[PaymentProvider],
    now: datetime,
) -> str:
    # The ledger row is the per-invoice claim: invoice.paid and
    # invoice.payment_succeeded both describe one invoice
    claimed = record_payment_row(
        record.account_id,
        record.plan,
        "renewal",
        stripe_reference=event.invoice_id,
        amount=event.amount_paid,
        currency=event.currency,
        now=now,
    )
    if not claimed:
        return "duplicate_invoice"

    try:
        updated, kind, outcome = _apply_renewal(record, provider, now)
    except Exception:
        # Release the claim so the redelivery can renew
        delete_payment_row(event.invoice_id, "renewal")
        raise

    log_event(
        "info",
        f"billing.subscription.{outcome}",
        account_id=record.account_id,
        subscription_id=record.stripe_subscription_id,
        extra={"plan_id": updated.plan, "commitment_until": updated.commitment_until},
        logger_name=logger.name,
    )
    _notify(updated, kind)
    return outcome


def _apply_renewal(
    record: SubscriptionRecord,
    provider: Optional[PaymentProvider],
    now: datetime,
) -> Tuple[SubscriptionRecord, str, str]:
    subscription_id = record.stripe_subscription_id
    if record.pending_downgrade:
        target = record.pending_downgrade
        price_id = get_price_id(target)
        provider = provider or get_provider()
        if provider is None:
            raise ProcessorUnavailableError()
        snapshot = provider.retrieve_subscription(subscription_id)
        if not snapshot.item_id:
            raise ProcessorError(f"Subscription {subscription_id} has no items")
        provider.update_subscription_price(
            subscription_id,
            snapshot.item_id,
            price_id,
            prorate=False,
            metadata={"plan_id": target, "pending_downgrade": ""},
        )
        updated = store.conditional_update(
            record.account_id,
            expected_plan=record.plan,
            expected_subscription_id=subscription_id,
            **store.activation_fields(target, subscription_id, now),
        )
        return updated, "plan_changed", "downgrade_applied"

    updated = store.conditional_update(
        record.account_id,
        expected_plan=record.plan,
        expected_subscription_id=subscription_id,
        commitment_until=commitment_end(now),
        payment_failed=False,
    )
    return updated, "payment_succeeded", "renewed"


def _on_payment_succeeded(event, provider, now) -> str:
    if event.billing_reason == ACTIVATION_REASON:
        return _activate(event, now)

    record = store.find_by_subscription_id(event.subscription_id)
    if record is None:
        return _no_match(event)

    if event.billing_reason in (RENEWAL_REASON, None):
        return _renew(event, record, provider, now)

    # Proration or manual invoices: payment went through, nothing to extend
    if record.payment_failed:
        store.update_record(record.account_id, payment_failed=False)
    return "payment_recorded"


def _on_payment_failed(event, provider, now) -> str:
    record = store.find_by_subscription_id(event.subscription_id)
    if record is None:
        return _no_match(event)
    record = store.update_record(record.account_id, payment_failed=True)
    log_event(
        "warning",
        "billing.payment.failed",
        account_id=record.account_id,
        subscription_id=event.subscription_id,
        extra={"invoice_id": event.invoice_id},
        logger_name=logger.name,
    )
    _notify(record, "payment_failed")
    return "payment_failed"


def _on_subscription_deleted(event, provider, now) -> str:
    record = store.find_by_subscription_id(event.subscription_id)
    if record is None and event.account_id:
        candidate = store.get_record(event.account_id)
        # Fall back to metadata only if the account holds no other subscription
        if candidate and candidate.has_paid_plan and candidate.stripe_subscription_id in (None, event.subscription_id):
            record = candidate
    if record is None:
        return _no_match(event)

    previous_plan = record.plan
    record = store.reset_to_free(
        record.account_id,
        expected_plan=record.plan,
        expected_subscription_id=record.stripe_subscription_id,
    )
    log_event(
        "info",
        "billing.subscription.cancelled",
        account_id=record.account_id,
        subscription_id=event.subscription_id,
        extra={"source": "stripe", "previous_plan": previous_plan},
        logger_name=logger.name,
    )
    _notify(record, "subscription_cancelled")
    return "cancelled"


HANDLERS: Dict[str, Callable[..., str]] = {
    "invoice.payment_succeeded": _on_payment_succeeded,
    "invoice.paid": _on_payment_succeeded,
    "invoice.payment_failed": _on_payment_failed,
    "customer.subscription.deleted": _on_subscription_deleted,
}


def handle_webhook_event(
    raw_payload: bytes,
    signature_header: Optional[str],
    *,
    provider: Optional[PaymentProvider] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Process a Stripe webhook delivery (idempotent).

    Returns:
        {"received": True, "event_id", "event_type", "outcome"}

    Raises:
        InvalidSignatureError: verification failed; nothing stored
        ConfigurationError: unverified delivery in production
        Exception: apply failed; the event keeps its error for redelivery
    """
    now = now or datetime.now(timezone.utc)
    event = _verify(raw_payload, signature_header, provider)
    payload_hash = hashlib.sha256(raw_payload).hexdigest()

    if not _claim_event(event, payload_hash):
        return {
            "received": True,
            "event_id": event.event_id,
            "event_type": event.event_type,
            "outcome": "duplicate",
        }

    handler = HANDLERS.get(event.event_type)
    try:
        outcome = handler(event, provider, now) if handler else "ignored"
        _mark_processed(event.event_id, now)
    except Exception as e:
        _mark_failed(event.event_id, str(e))
        log_event(
            "error",
            "billing.webhook.failed",
            subscription_id=event.subscription_id,
            event_type=event.event_type,
            error_code=getattr(e, "code", type(e).__name__),
            extra={"event_id": event.event_id, "error": e},
            logger_name=logger.name,
        )
        raise

    return {
        "received": True,
        "event_id": event.event_id,
        "event_type": event.event_type,
        "outcome": outcome,
    }
