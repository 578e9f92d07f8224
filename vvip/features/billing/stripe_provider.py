"""
Stripe payment provider implementation.

Implements PaymentProvider using the Stripe API. Handles webhook signature
verification and normalizes event payloads across Stripe API versions
(invoice subscription references moved under `parent` in 2025 versions).
"""
import json
import logging
import os
from typing import Dict, Any, Optional

import stripe

from vvip.core.errors import (
    InvalidSignatureError,
    PaymentRejectedError,
    ProcessorError,
    ProcessorUnavailableError,
)
from vvip.features.billing.catalog import plan_for_price
from vvip.features.billing.provider import (
    BillingWebhookResult,
    CreatedSubscription,
    SubscriptionSnapshot,
)

logger = logging.getLogger("vvip.billing.stripe")


def _raise_processor_error(action: str, e: Exception) -> None:
    if isinstance(e, stripe.CardError):
        # Decline message is user-facing
        raise PaymentRejectedError(e.user_message or str(e)) from e
    message = getattr(e, "user_message", None) or str(e)
    logger.warning(f"[stripe] {action} failed: {message}")
    raise ProcessorError(message) from e


def _id_of(value: Any) -> Optional[str]:
    """Stripe references may be ids or expanded objects."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return value.get("id")


class StripeProvider:
    """Stripe implementation of PaymentProvider protocol."""

    def __init__(self, secret_key: Optional[str] = None):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY env var)
        """
        self.secret_key = secret_key or os.getenv("STRIPE_SECRET_KEY")

        if not self.secret_key:
            raise ProcessorUnavailableError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key

    @property
    def mode(self) -> str:
        return "live" if self.secret_key.startswith("sk_live") else "test"

    def create_customer(self, metadata: Dict[str, str]) -> str:
        try:
            customer = stripe.Customer.create(metadata=metadata)
            return customer.id
        except stripe.StripeError as e:
            _raise_processor_error("customer creation", e)

    def attach_payment_method(self, customer_id: str, payment_method_id: str) -> None:
        try:
            stripe.PaymentMethod.attach(payment_method_id, customer=customer_id)
        except stripe.StripeError as e:
            _raise_processor_error("payment method attach", e)

    def set_default_payment_method(self, customer_id: str, payment_method_id: str) -> None:
        try:
            stripe.Customer.modify(
                customer_id,
                invoice_settings={"default_payment_method": payment_method_id},
            )
        except stripe.StripeError as e:
            _raise_processor_error("default payment method update", e)

    def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        metadata: Dict[str, str],
    ) -> CreatedSubscription:
        try:
            subscription = stripe.Subscription.create(
                customer=customer_id,
                items=[{"price": price_id}],
                metadata=metadata,
                payment_behavior="default_incomplete",
                payment_settings={"save_default_payment_method": "on_subscription"},
                expand=["latest_invoice.confirmation_secret"],
            )
        except stripe.StripeError as e:
            _raise_processor_error("subscription creation", e)

        invoice = subscription.get("latest_invoice") or {}
        client_secret = None
        if not isinstance(invoice, str):
            secret_obj = invoice.get("confirmation_secret") or {}
            client_secret = secret_obj.get("client_secret")
            if not client_secret:
                # Pre-2025 API versions expose the payment intent directly
                intent = invoice.get("payment_intent") or {}
                if not isinstance(intent, str):
                    client_secret = intent.get("client_secret")

        return CreatedSubscription(
            subscription_id=subscription.id,
            status=subscription.status,
            client_secret=client_secret,
            latest_invoice_id=_id_of(invoice) if invoice else None,
        )

    def update_subscription_price(
        self,
        subscription_id: str,
        item_id: str,
        price_id: str,
        prorate: bool,
        metadata: Optional[Dict[str, str]] = None,
    ) -> None:
        params: Dict[str, Any] = {
            "items": [{"id": item_id, "price": price_id}],
            "proration_behavior": "always_invoice" if prorate else "none",
        }
        if metadata is not None:
            params["metadata"] = metadata
        try:
            stripe.Subscription.modify(subscription_id, **params)
        except stripe.StripeError as e:
            _raise_processor_error("subscription price update", e)

    def update_subscription_metadata(self, subscription_id: str, metadata: Dict[str, str]) -> None:
        try:
            stripe.Subscription.modify(
                subscription_id,
                metadata=metadata,
                proration_behavior="none",
            )
        except stripe.StripeError as e:
            _raise_processor_error("subscription metadata update", e)

    def cancel_subscription(self, subscription_id: str) -> None:
        try:
            stripe.Subscription.cancel(subscription_id)
        except stripe.StripeError as e:
            _raise_processor_error("subscription cancel", e)

    def retrieve_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        try:
            sub = stripe.Subscription.retrieve(subscription_id, expand=["latest_invoice"])
        except stripe.StripeError as e:
            _raise_processor_error("subscription retrieve", e)

        items = (sub.get("items") or {}).get("data") or []
        first_item = items[0] if items else None
        invoice = sub.get("latest_invoice")
        if isinstance(invoice, str) or invoice is None:
            amount_paid, currency = None, None
        else:
            amount_paid, currency = invoice.get("amount_paid"), invoice.get("currency")

        return SubscriptionSnapshot(
            subscription_id=sub.id,
            status=sub.get("status"),
            customer_id=_id_of(sub.get("customer")),
            item_id=first_item.get("id") if first_item else None,
            price_id=_id_of(first_item.get("price")) if first_item else None,
            metadata=dict(sub.get("metadata") or {}),
            latest_invoice_id=_id_of(invoice),
            amount_paid=amount_paid,
            currency=currency,
        )

    def verify_webhook_signature(self, payload: bytes, signature_header: Optional[str], secret: str) -> BillingWebhookResult:
        return verify_stripe_event(payload, signature_header, secret)


def verify_stripe_event(payload: bytes, signature_header: Optional[str], secret: str) -> BillingWebhookResult:
    """Verify a webhook signature (no API key needed) and parse the event."""
    if not signature_header:
        raise InvalidSignatureError("Missing stripe-signature header")
    try:
        event = stripe.Webhook.construct_event(payload, signature_header, secret)
    except ValueError as e:
        raise InvalidSignatureError(f"Invalid payload: {e}") from e
    except stripe.SignatureVerificationError as e:
        raise InvalidSignatureError(f"Invalid signature: {e}") from e
    return parse_stripe_event(event)


def parse_stripe_payload(payload: bytes) -> BillingWebhookResult:
    """Parse an unverified payload (degraded trust mode)."""
    try:
        event = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise InvalidSignatureError(f"Invalid payload: {e}") from e
    if not isinstance(event, dict) or "type" not in event or "id" not in event:
        raise InvalidSignatureError("Invalid payload: not a Stripe event")
    return parse_stripe_event(event)


def _invoice_subscription_details(invoice: Dict[str, Any]) -> Dict[str, Any]:
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or invoice.get("subscription_details") or {}
    return details


def _invoice_price_id(invoice: Dict[str, Any]) -> Optional[str]:
    lines = (invoice.get("lines") or {}).get("data") or []
    if not lines:
        return None
    line = lines[0]
    price = line.get("price")
    if price:
        return _id_of(price)
    pricing = line.get("pricing") or {}
    return (pricing.get("price_details") or {}).get("price")


def parse_stripe_event(event: Dict[str, Any]) -> BillingWebhookResult:
    """Parse Stripe event into normalized BillingWebhookResult."""
    event_type = event["type"]
    event_id = event["id"]
    data = (event.get("data") or {}).get("object") or {}

    subscription_id = None
    metadata: Dict[str, Any] = {}
    price_id = None
    billing_reason = None
    invoice_id = None
    amount_paid = None
    currency = None

    if event_type.startswith("invoice."):
        details = _invoice_subscription_details(data)
        subscription_id = _id_of(data.get("subscription")) or _id_of(details.get("subscription"))
        metadata = dict(details.get("metadata") or {})
        price_id = _invoice_price_id(data)
        billing_reason = data.get("billing_reason")
        invoice_id = data.get("id")
        amount_paid = data.get("amount_paid")
        currency = data.get("currency")
    elif event_type.startswith("customer.subscription."):
        subscription_id = data.get("id")
        metadata = dict(data.get("metadata") or {})
        items = (data.get("items") or {}).get("data") or []
        if items:
            price_id = _id_of(items[0].get("price"))

    plan_id = metadata.get("plan_id") or plan_for_price(price_id)

    return BillingWebhookResult(
        event_id=event_id,
        event_type=event_type,
        subscription_id=subscription_id,
        account_id=metadata.get("account_id"),
        plan_id=plan_id,
        billing_reason=billing_reason,
        invoice_id=invoice_id,
        amount_paid=amount_paid,
        currency=currency,
        metadata=metadata,
    )


def billing_enabled() -> bool:
    """Check if billing is enabled (Stripe configured)."""
    return bool(os.getenv("STRIPE_SECRET_KEY"))


def get_provider() -> Optional[StripeProvider]:
    """Get the Stripe provider if billing is enabled."""
    if not billing_enabled():
        return None
    try:
        return StripeProvider()
    except ProcessorUnavailableError:
        return None
