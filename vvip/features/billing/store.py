"""
Subscription state store.

Read/write access to `subscription_records`. Mutations that depend on a prior
read go through `conditional_update`, which re-checks the plan and Stripe
subscription id inside the UPDATE so two concurrent commands cannot both win.
"""
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError

from vvip.core.database import get_db_session, subscription_records
from vvip.features.billing.commitment import as_utc, commitment_end
from vvip.models.subscription import FREE_PLAN, SubscriptionRecord


MUTABLE_FIELDS = {
    "plan",
    "stripe_subscription_id",
    "stripe_customer_id",
    "started_at",
    "commitment_until",
    "pending_downgrade",
    "payment_failed",
}

# Post-state of a cancelled or deleted subscription
RESET_FIELDS = {
    "plan": FREE_PLAN,
    "stripe_subscription_id": None,
    "started_at": None,
    "commitment_until": None,
    "pending_downgrade": None,
    "payment_failed": False,
}


def activation_fields(plan_id: str, stripe_subscription_id: str, now: datetime) -> dict:
    """Fields written when a paid plan is committed (first payment or plan switch at renewal)."""
    return {
        "plan": plan_id,
        "stripe_subscription_id": stripe_subscription_id,
        "started_at": now,
        "commitment_until": commitment_end(now),
        "pending_downgrade": None,
        "payment_failed": False,
    }


class StaleRecordError(Exception):
    """The record changed between read and conditional write."""


def _row_to_record(row) -> SubscriptionRecord:
    return SubscriptionRecord(
        account_id=row.account_id,
        plan=row.plan,
        stripe_subscription_id=row.stripe_subscription_id,
        stripe_customer_id=row.stripe_customer_id,
        started_at=as_utc(row.started_at),
        commitment_until=as_utc(row.commitment_until),
        pending_downgrade=row.pending_downgrade,
        payment_failed=bool(row.payment_failed),
        updated_at=as_utc(row.updated_at),
    )


def _check_fields(fields: dict) -> dict:
    unknown = set(fields) - MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown subscription fields: {', '.join(sorted(unknown))}")
    values = dict(fields)
    values["updated_at"] = datetime.now(timezone.utc)
    return values


def get_record(account_id: str) -> Optional[SubscriptionRecord]:
    with get_db_session() as session:
        row = session.execute(
            select(subscription_records).where(subscription_records.c.account_id == account_id)
        ).first()
        return _row_to_record(row) if row else None


def find_by_subscription_id(stripe_subscription_id: Optional[str]) -> Optional[SubscriptionRecord]:
    if not stripe_subscription_id:
        return None
    with get_db_session() as session:
        row = session.execute(
            select(subscription_records).where(
                subscription_records.c.stripe_subscription_id == stripe_subscription_id
            )
        ).first()
        return _row_to_record(row) if row else None


def ensure_record(account_id: str) -> SubscriptionRecord:
    """Create the Free record for an account if it does not exist (idempotent)."""
    existing = get_record(account_id)
    if existing:
        return existing
    try:
        with get_db_session() as session:
            session.execute(
                insert(subscription_records).values(
                    account_id=account_id,
                    plan=FREE_PLAN,
                    payment_failed=False,
                    updated_at=datetime.now(timezone.utc),
                )
            )
    except IntegrityError:
        # Race condition: another request created it first
        pass
    return get_record(account_id)


def update_record(account_id: str, **fields: Any) -> SubscriptionRecord:
    """Unconditional partial update. Raises LookupError if the record is missing."""
    values = _check_fields(fields)
    with get_db_session() as session:
        result = session.execute(
            update(subscription_records)
            .where(subscription_records.c.account_id == account_id)
            .values(**values)
        )
        if result.rowcount == 0:
            raise LookupError(f"No subscription record for account {account_id}")
    return get_record(account_id)


def conditional_update(
    account_id: str,
    *,
    expected_plan: str,
    expected_subscription_id: Optional[str],
    **fields: Any,
) -> SubscriptionRecord:
    """
    Atomically update a record only if plan and subscription id still match.

    Raises:
        StaleRecordError: no row matched (concurrent change or missing record)
    """
    values = _check_fields(fields)
    conditions = [
        subscription_records.c.account_id == account_id,
        subscription_records.c.plan == expected_plan,
    ]
    if expected_subscription_id is None:
        conditions.append(subscription_records.c.stripe_subscription_id.is_(None))
    else:
        conditions.append(subscription_records.c.stripe_subscription_id == expected_subscription_id)

    with get_db_session() as session:
        result = session.execute(
            update(subscription_records).where(*conditions).values(**values)
        )
        if result.rowcount != 1:
            raise StaleRecordError(
                f"Subscription record for {account_id} changed concurrently"
            )
    return get_record(account_id)


def reset_to_free(account_id: str, *, expected_plan: str, expected_subscription_id: Optional[str]) -> SubscriptionRecord:
    return conditional_update(
        account_id,
        expected_plan=expected_plan,
        expected_subscription_id=expected_subscription_id,
        **RESET_FIELDS,
    )
