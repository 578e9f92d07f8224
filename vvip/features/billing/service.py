"""
Subscription command handler.

Synchronous member commands:
- create: customer + payment method + incomplete Stripe subscription
- record payment: durable commit of a new paid plan after Stripe confirms it
- change: immediate upgrade (prorated) or deferred downgrade
- cancel: refused inside the minimum commitment window
- status

All Stripe-specific code is in stripe_provider.py. Store writes that depend
on a prior read are conditional (see store.conditional_update).
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from vvip.core.errors import (
    ConflictError,
    CommitmentActiveError,
    NoActiveSubscriptionError,
    NotFoundError,
    PaymentNotConfirmedError,
    ProcessorError,
    ProcessorUnavailableError,
    SamePlanError,
    UnknownPlanError,
)
from vvip.core.logging import log_event
from vvip.features.billing import store
from vvip.features.billing.catalog import get_plan, get_price_id, plan_for_price
from vvip.features.billing.commitment import (
    commitment_end,
    is_within_commitment,
    remaining_days,
)
from vvip.features.billing.history import record_payment_row
from vvip.features.billing.notifier import get_notifier, notification_data
from vvip.features.billing.provider import PaymentProvider
from vvip.features.billing.stripe_provider import billing_enabled, get_provider
from vvip.models.subscription import FREE_PLAN, SubscriptionRecord

logger = logging.getLogger("vvip.billing.service")

# Stripe statuses that mean the first invoice has been paid
CONFIRMED_STATUSES = {"active", "trialing"}


def _require_provider(provider: Optional[PaymentProvider]) -> PaymentProvider:
    provider = provider or get_provider()
    if provider is None:
        raise ProcessorUnavailableError()
    return provider


def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.now(timezone.utc)


def _load_record(account_id: str) -> SubscriptionRecord:
    record = store.get_record(account_id)
    if record is None:
        raise NotFoundError(f"No subscription record for account {account_id}")
    return record


def _notify(account_id: str, kind: str, record: SubscriptionRecord) -> None:
    get_notifier().notify(account_id, kind, notification_data(record))


def create_subscription(
    account_id: str,
    plan_id: str,
    payment_method_id: str,
    *,
    provider: Optional[PaymentProvider] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Start a paid subscription. The plan is NOT activated here.

    Returns:
        {"subscription_id", "client_secret", "status", "price_id", "plan_id"}

    Raises:
        ProcessorUnavailableError: Stripe is not configured
        UnknownPlanError / PriceNotConfiguredError: plan cannot be sold
        ConflictError: account already holds a paid plan
        PaymentRejectedError: card declined (Stripe's message)
        ProcessorError: any other Stripe failure
    """
    provider = _require_provider(provider)
    price_id = get_price_id(plan_id)
    record = _load_record(account_id)

    if record.has_paid_plan:
        raise ConflictError(
            f"Account already has an active {record.plan} subscription; change the plan instead",
            code="subscription_exists",
        )

    customer_id = record.stripe_customer_id
    if not customer_id:
        customer_id = provider.create_customer({"account_id": account_id})
        store.update_record(account_id, stripe_customer_id=customer_id)

    provider.attach_payment_method(customer_id, payment_method_id)
    provider.set_default_payment_method(customer_id, payment_method_id)

    created = provider.create_subscription(
        customer_id,
        price_id,
        metadata={
            "account_id": account_id,
            "plan_id": plan_id,
            "min_commitment_until": commitment_end(_now(now)).isoformat(),
        },
    )

    log_event(
        "info",
        "billing.subscription.created",
        account_id=account_id,
        subscription_id=created.subscription_id,
        extra={"plan_id": plan_id, "status": created.status},
        logger_name=logger.name,
    )

    return {
        "subscription_id": created.subscription_id,
        "client_secret": created.client_secret,
        "status": created.status,
        "price_id": price_id,
        "plan_id": plan_id,
    }


def record_payment(
    account_id: str,
    subscription_id: str,
    *,
    provider: Optional[PaymentProvider] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Commit a new paid plan once Stripe reports the subscription as paid.

    Idempotent: if the record already holds the subscription (for example
    because the activation webhook arrived first) the current status is
    returned unchanged.

    Raises:
        PaymentNotConfirmedError: subscription not owned by the account or not paid
        ConflictError: the record changed to a different paid subscription
    """
    now = _now(now)
    provider = _require_provider(provider)
    record = _load_record(account_id)

    if record.stripe_subscription_id == subscription_id:
        return get_subscription_status(account_id, now=now)

    snapshot = provider.retrieve_subscription(subscription_id)
    if not record.stripe_customer_id or snapshot.customer_id != record.stripe_customer_id:
        raise PaymentNotConfirmedError("Subscription does not belong to this account")
    if snapshot.status not in CONFIRMED_STATUSES:
        raise PaymentNotConfirmedError(f"Payment has not been confirmed (status: {snapshot.status})")

    plan_id = snapshot.metadata.get("plan_id") or plan_for_price(snapshot.price_id)
    if not plan_id or not get_plan(plan_id).is_paid:
        raise UnknownPlanError(f"Invalid plan: {plan_id}")

    if record.has_paid_plan:
        raise ConflictError(
            f"Account already has an active {record.plan} subscription",
            code="subscription_exists",
        )

    try:
        record = store.conditional_update(
            account_id,
            expected_plan=FREE_PLAN,
            expected_subscription_id=None,
            **store.activation_fields(plan_id, subscription_id, now),
        )
    except store.StaleRecordError:
        current = store.get_record(account_id)
        if current and current.stripe_subscription_id == subscription_id:
            # Activation webhook committed first
            return get_subscription_status(account_id, now=now)
        raise ConflictError("Subscription changed concurrently; please retry")

    record_payment_row(
        account_id,
        plan_id,
        "initial",
        stripe_reference=snapshot.latest_invoice_id or subscription_id,
        amount=snapshot.amount_paid,
        currency=snapshot.currency,
        now=now,
    )

    log_event(
        "info",
        "billing.subscription.activated",
        account_id=account_id,
        subscription_id=subscription_id,
        extra={"plan_id": plan_id, "source": "client_confirm"},
        logger_name=logger.name,
    )
    _notify(account_id, "subscription_started", record)

    return get_subscription_status(account_id, now=now)


def _stale_to_error(account_id: str) -> Exception:
    current = store.get_record(account_id)
    if current is None or not current.has_paid_plan:
        return NoActiveSubscriptionError("No active subscription")
    return ConflictError("Subscription changed concurrently; please retry")


def change_subscription(
    account_id: str,
    target_plan_id: str,
    *,
    provider: Optional[PaymentProvider] = None,
) -> Dict[str, str]:
    """
    Switch between paid tiers.

    Upgrades take effect now with proration. Downgrades only record
    `pending_downgrade`; the renewal webhook applies them.

    Returns:
        {"type": "upgrade" | "downgrade", "message": str}
    """
    target = get_plan(target_plan_id)
    if not target.is_paid:
        raise UnknownPlanError(f"Invalid plan: {target_plan_id}")

    record = _load_record(account_id)
    if not record.has_paid_plan or not record.stripe_subscription_id:
        raise NoActiveSubscriptionError("No active subscription")

    current_tier = get_plan(record.plan).tier
    if target.tier == current_tier:
        raise SamePlanError("You are already on this plan")

    provider = _require_provider(provider)
    price_id = get_price_id(target.plan_id)
    subscription_id = record.stripe_subscription_id

    if target.tier > current_tier:
        snapshot = provider.retrieve_subscription(subscription_id)
        if not snapshot.item_id:
            raise ProcessorError("Could not load subscription details")
        provider.update_subscription_price(
            subscription_id,
            snapshot.item_id,
            price_id,
            prorate=True,
            metadata={"plan_id": target.plan_id, "pending_downgrade": ""},
        )
        try:
            store.conditional_update(
                account_id,
                expected_plan=record.plan,
                expected_subscription_id=subscription_id,
                plan=target.plan_id,
                pending_downgrade=None,
            )
        except (store.StaleRecordError, SQLAlchemyError) as e:
            logger.error(
                f"[billing] Stripe upgraded {subscription_id} to {target.plan_id} but the record was not updated: {e}",
                extra={"account_id": account_id, "subscription_id": subscription_id},
            )
            if isinstance(e, store.StaleRecordError):
                raise _stale_to_error(account_id) from e
            raise

        log_event(
            "info",
            "billing.subscription.upgraded",
            account_id=account_id,
            subscription_id=subscription_id,
            extra={"from_plan": record.plan, "to_plan": target.plan_id},
            logger_name=logger.name,
        )
        return {
            "type": "upgrade",
            "message": f"Upgraded to {target.name}. The prorated difference is charged now.",
        }

    provider.update_subscription_metadata(subscription_id, {"pending_downgrade": target.plan_id})
    try:
        store.conditional_update(
            account_id,
            expected_plan=record.plan,
            expected_subscription_id=subscription_id,
            pending_downgrade=target.plan_id,
        )
    except store.StaleRecordError as e:
        raise _stale_to_error(account_id) from e

    log_event(
        "info",
        "billing.subscription.downgrade_scheduled",
        account_id=account_id,
        subscription_id=subscription_id,
        extra={"from_plan": record.plan, "to_plan": target.plan_id},
        logger_name=logger.name,
    )
    return {
        "type": "downgrade",
        "message": f"Your plan will change to {target.name} at the next renewal.",
    }


def cancel_subscription(
    account_id: str,
    *,
    provider: Optional[PaymentProvider] = None,
    now: Optional[datetime] = None,
) -> Dict[str, str]:
    """
    Cancel a paid plan immediately, unless the commitment window is still open.

    Raises:
        NoActiveSubscriptionError: no paid plan (also the loser of a concurrent cancel)
        CommitmentActiveError: refused; carries remaining_days and commitment_until
    """
    now = _now(now)
    record = _load_record(account_id)
    if not record.has_paid_plan:
        raise NoActiveSubscriptionError("You do not have a paid plan")

    if is_within_commitment(now, record.commitment_until):
        raise CommitmentActiveError(
            remaining_days(now, record.commitment_until),
            record.commitment_until,
        )

    subscription_id = record.stripe_subscription_id
    provider = provider or get_provider()
    cancelled_remotely = False
    if subscription_id and provider is not None:
        provider.cancel_subscription(subscription_id)
        cancelled_remotely = True
    elif subscription_id:
        logger.warning(
            "[billing] Billing disabled; cancelling locally only",
            extra={"account_id": account_id, "subscription_id": subscription_id},
        )

    try:
        record = store.reset_to_free(
            account_id,
            expected_plan=record.plan,
            expected_subscription_id=subscription_id,
        )
    except (store.StaleRecordError, SQLAlchemyError) as e:
        if cancelled_remotely:
            logger.error(
                f"[billing] Stripe cancelled {subscription_id} but the record was not reset: {e}",
                extra={"account_id": account_id, "subscription_id": subscription_id},
            )
        if isinstance(e, store.StaleRecordError):
            raise NoActiveSubscriptionError("No active subscription") from e
        raise

    log_event(
        "info",
        "billing.subscription.cancelled",
        account_id=account_id,
        subscription_id=subscription_id,
        extra={"source": "member"},
        logger_name=logger.name,
    )
    _notify(account_id, "subscription_cancelled", record)

    return {"message": "Your subscription has been cancelled."}


def get_subscription_status(account_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Get account's subscription status.

    Returns:
        {
            "plan": str,
            "started_at": datetime | None,
            "commitment_until": datetime | None,
            "pending_downgrade": str | None,
            "payment_failed": bool,
            "is_within_commitment": bool,
            "remaining_days": int,
            "billing_enabled": bool
        }
    """
    now = _now(now)
    record = store.get_record(account_id) or SubscriptionRecord(account_id=account_id)
    return {
        "plan": record.plan,
        "started_at": record.started_at,
        "commitment_until": record.commitment_until,
        "pending_downgrade": record.pending_downgrade,
        "payment_failed": record.payment_failed,
        "is_within_commitment": is_within_commitment(now, record.commitment_until),
        "remaining_days": remaining_days(now, record.commitment_until),
        "billing_enabled": billing_enabled(),
    }
