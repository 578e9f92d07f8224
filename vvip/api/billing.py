"""
Billing API routes.

Member surface (authenticated):
- POST /api/billing/subscriptions: Start a paid subscription
- POST /api/billing/subscriptions/confirm: Commit the plan after client-side payment confirmation
- POST /api/billing/subscriptions/change: Upgrade now or schedule a downgrade
- POST /api/billing/subscriptions/cancel: Cancel (refused inside the commitment window)
- GET  /api/billing/status: Subscription status
- GET  /api/billing/payments: Payment history

Public:
- GET  /api/billing/plans: Plan catalog
- GET  /api/billing/config: Publishable key and mode (server configuration only)
- POST /api/billing/webhook: Stripe webhooks
"""
import os
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from vvip.core.auth import get_current_account_id
from vvip.features.billing import service
from vvip.features.billing.catalog import list_plans
from vvip.features.billing.history import get_payment_history
from vvip.features.billing.reconciler import handle_webhook_event


router = APIRouter(prefix="/billing", tags=["billing"])


class CreateSubscriptionRequest(BaseModel):
    plan_id: str = Field(..., min_length=1)
    payment_method_id: str = Field(..., min_length=1)


class CreateSubscriptionResponse(BaseModel):
    subscription_id: str
    client_secret: Optional[str] = None
    status: str
    price_id: str
    plan_id: str


class ConfirmPaymentRequest(BaseModel):
    subscription_id: str = Field(..., min_length=1)


class ChangeSubscriptionRequest(BaseModel):
    plan_id: str = Field(..., min_length=1)


class ChangeSubscriptionResponse(BaseModel):
    type: str  # upgrade | downgrade
    message: str


class CancelSubscriptionResponse(BaseModel):
    message: str


class SubscriptionStatusResponse(BaseModel):
    plan: str
    started_at: Optional[datetime] = None
    commitment_until: Optional[datetime] = None
    pending_downgrade: Optional[str] = None
    payment_failed: bool
    is_within_commitment: bool
    remaining_days: int
    billing_enabled: bool


class PaymentEntry(BaseModel):
    plan: str
    kind: str
    amount: Optional[int] = None
    currency: Optional[str] = None
    status: str
    stripe_reference: Optional[str] = None
    created_at: Optional[str] = None  # ISO8601


class PlanEntry(BaseModel):
    plan_id: str
    name: str
    tier: int
    list_price: int
    available: bool  # price configured


class BillingConfigResponse(BaseModel):
    enabled: bool
    publishable_key: Optional[str] = None
    mode: Optional[str] = None  # test | live


@router.post("/subscriptions", response_model=CreateSubscriptionResponse)
def create_subscription(
    body: CreateSubscriptionRequest,
    account_id: str = Depends(get_current_account_id),
):
    """
    Create an incomplete Stripe subscription for a paid plan.

    The client confirms payment with `client_secret` (3-D Secure if needed),
    then calls /subscriptions/confirm.

    Errors:
        503: Billing unavailable or price not configured
        400: Invalid plan
        402: Card declined (Stripe's message)
        409: Account already subscribed
        502: Stripe error
    """
    return service.create_subscription(account_id, body.plan_id, body.payment_method_id)


@router.post("/subscriptions/confirm", response_model=SubscriptionStatusResponse)
def confirm_payment(
    body: ConfirmPaymentRequest,
    account_id: str = Depends(get_current_account_id),
):
    """Commit the paid plan once Stripe reports the subscription active (409 otherwise)."""
    return service.record_payment(account_id, body.subscription_id)


@router.post("/subscriptions/change", response_model=ChangeSubscriptionResponse)
def change_subscription(
    body: ChangeSubscriptionRequest,
    account_id: str = Depends(get_current_account_id),
):
    return service.change_subscription(account_id, body.plan_id)


@router.post("/subscriptions/cancel", response_model=CancelSubscriptionResponse)
def cancel_subscription(account_id: str = Depends(get_current_account_id)):
    """
    Cancel the paid plan immediately.

    Errors:
        403: Inside the minimum commitment window; body carries
             remaining_days and commitment_until
        400: No paid plan
    """
    return service.cancel_subscription(account_id)


@router.get("/status", response_model=SubscriptionStatusResponse)
def get_status(account_id: str = Depends(get_current_account_id)):
    return service.get_subscription_status(account_id)


@router.get("/payments", response_model=List[PaymentEntry])
def get_payments(
    limit: int = Query(50, ge=1, le=200),
    account_id: str = Depends(get_current_account_id),
):
    return get_payment_history(account_id, limit=limit)


@router.get("/plans", response_model=List[PlanEntry])
def get_plans():
    return [
        PlanEntry(
            plan_id=p.plan_id,
            name=p.name,
            tier=p.tier,
            list_price=p.list_price,
            available=bool(p.price_id),
        )
        for p in list_plans()
    ]


@router.get("/config", response_model=BillingConfigResponse)
def get_billing_config():
    """Publishable key for the payment form. Never overridable by clients."""
    publishable_key = os.getenv("STRIPE_PUBLISHABLE_KEY")
    mode = None
    if publishable_key:
        mode = "live" if publishable_key.startswith("pk_live") else "test"
    return BillingConfigResponse(
        enabled=service.billing_enabled() and bool(publishable_key),
        publishable_key=publishable_key,
        mode=mode,
    )


@router.post("/webhook")
async def handle_webhook(request: Request, stripe_signature: Optional[str] = Header(None)):
    """
    Handle Stripe webhook events.

    Signature verification uses STRIPE_WEBHOOK_SECRET.
    Event deduplication uses stripe_event_id (billing_events table).

    Returns:
        {"received": true, ...} (also for events matching no record)

    Errors:
        400: Invalid signature or payload
        5xx: Apply failed; Stripe redelivers
    """
    # Raw body is required for signature verification
    body = await request.body()
    return await run_in_threadpool(handle_webhook_event, body, stripe_signature)
