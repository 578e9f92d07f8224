"""Payment ledger: one row per initial charge or renewal."""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, insert, select
from sqlalchemy.exc import IntegrityError

from vvip.core.database import get_db_session, payments
from vvip.features.billing.commitment import as_utc

PAYMENT_KINDS = ("initial", "renewal")


def record_payment_row(
    account_id: str,
    plan: str,
    kind: str,
    *,
    stripe_reference: Optional[str] = None,
    amount: Optional[int] = None,
    currency: Optional[str] = None,
    status: str = "succeeded",
    now: Optional[datetime] = None,
) -> bool:
    """
    Append a payment row. Returns False if (stripe_reference, kind) was
    already recorded, so redelivered webhooks do not double count.
    """
    if kind not in PAYMENT_KINDS:
        raise ValueError(f"Unknown payment kind: {kind}")
    try:
        with get_db_session() as session:
            session.execute(
                insert(payments).values(
                    account_id=account_id,
                    plan=plan,
                    kind=kind,
                    stripe_reference=stripe_reference,
                    amount=amount,
                    currency=currency,
                    status=status,
                    created_at=now or datetime.now(timezone.utc),
                )
            )
    except IntegrityError:
        return False
    return True


def get_payment_history(account_id: str, limit: int = 50) -> List[Dict[str, Any]]:
    """Most recent payments first."""
    with get_db_session() as session:
        rows = session.execute(
            select(payments)
            .where(payments.c.account_id == account_id)
            .order_by(payments.c.created_at.desc(), payments.c.id.desc())
            .limit(limit)
        ).fetchall()
    return [
        {
            "plan": r.plan,
            "kind": r.kind,
            "amount": r.amount,
            "currency": r.currency,
            "status": r.status,
            "stripe_reference": r.stripe_reference,
            "created_at": as_utc(r.created_at).isoformat() if r.created_at else None,
        }
        for r in rows
    ]


def delete_payment_row(stripe_reference: Optional[str], kind: str) -> None:
    if not stripe_reference:
        return
    with get_db_session() as session:
        session.execute(
            delete(payments).where(
                payments.c.stripe_reference == stripe_reference,
                payments.c.kind == kind,
            )
        )

