"""
Drift reconciliation job.

Compares local subscription records with Stripe and reports records whose
subscription has ended remotely (missed or failed `customer.subscription.deleted`
delivery), paid plans without a subscription id, and price/plan mismatches.
With fix=True, records whose subscription ended remotely are reset to Free.
Every run is written to `billing_job_runs`.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import insert, select

from vvip.core.database import billing_job_runs, get_db_session, subscription_records
from vvip.core.errors import ProcessorError, ProcessorUnavailableError
from vvip.features.billing import store
from vvip.features.billing.catalog import plan_for_price
from vvip.features.billing.provider import PaymentProvider
from vvip.features.billing.stripe_provider import get_provider
from vvip.models.subscription import FREE_PLAN

logger = logging.getLogger("vvip.billing.reconcile_job")

JOB_NAME = "system.reconcile"
ENDED_STATUSES = {"canceled", "incomplete_expired"}


def _load_paid_records() -> List[Any]:
    with get_db_session() as session:
        return session.execute(
            select(subscription_records).where(subscription_records.c.plan != FREE_PLAN)
        ).fetchall()


def run_reconcile_job(
    now: datetime,
    fix: bool = False,
    limit: int = 100,
    provider: Optional[PaymentProvider] = None,
) -> Dict[str, Any]:
    provider = provider or get_provider()
    if provider is None:
        raise ProcessorUnavailableError()

    issues: List[Dict[str, Any]] = []
    corrections = 0
    status = "success"

    for row in _load_paid_records():
        if not row.stripe_subscription_id:
            issues.append({
                "type": "missing_subscription_id",
                "account_id": row.account_id,
                "plan": row.plan,
            })
            continue

        try:
            snapshot = provider.retrieve_subscription(row.stripe_subscription_id)
        except ProcessorError as e:
            status = "partial"
            issues.append({
                "type": "lookup_failed",
                "account_id": row.account_id,
                "subscription_id": row.stripe_subscription_id,
                "error": str(e),
            })
            continue

        if snapshot.status in ENDED_STATUSES:
            issues.append({
                "type": "remote_ended",
                "account_id": row.account_id,
                "subscription_id": row.stripe_subscription_id,
                "status": snapshot.status,
            })
            if fix and corrections < limit:
                try:
                    store.reset_to_free(
                        row.account_id,
                        expected_plan=row.plan,
                        expected_subscription_id=row.stripe_subscription_id,
                    )
                    corrections += 1
                except store.StaleRecordError:
                    # Changed since the scan (webhook or member command); next run re-checks
                    logger.info(
                        "[reconcile] record changed during run, skipped",
                        extra={"account_id": row.account_id},
                    )
            continue

        remote_plan = plan_for_price(snapshot.price_id)
        if remote_plan and remote_plan != row.plan:
            issues.append({
                "type": "plan_mismatch",
                "account_id": row.account_id,
                "subscription_id": row.stripe_subscription_id,
                "local_plan": row.plan,
                "remote_plan": remote_plan,
            })

    stats = {
        "issues_found": len(issues),
        "corrections_applied": corrections,
    }
    with get_db_session() as session:
        session.execute(
            insert(billing_job_runs).values(
                job_name=JOB_NAME,
                started_at=now,
                finished_at=datetime.now(timezone.utc),
                status=status,
                stats_json=json.dumps(stats),
            )
        )

    logger.info(
        f"[reconcile] {len(issues)} issue(s), {corrections} correction(s)",
        extra={"status": status},
    )

    return {
        "issues_found": len(issues),
        "corrections_applied": corrections,
        "issues": issues,
        "status": status,
        "timestamp": now.isoformat(),
    }
