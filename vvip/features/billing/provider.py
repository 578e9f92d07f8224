"""
Payment provider protocol.

Defines the interface the billing core needs from a payment processor
(Stripe in production, fakes in tests) and the normalized shapes it returns.
"""
from typing import Protocol, Dict, Any, Optional
from dataclasses import dataclass, field


@dataclass
class CreatedSubscription:
    """Result of creating an incomplete subscription."""
    subscription_id: str
    status: str
    client_secret: Optional[str]
    latest_invoice_id: Optional[str] = None


@dataclass
class SubscriptionSnapshot:
    """Current processor-side view of a subscription."""
    subscription_id: str
    status: str
    customer_id: Optional[str]
    item_id: Optional[str]
    price_id: Optional[str]
    metadata: Dict[str, str] = field(default_factory=dict)
    latest_invoice_id: Optional[str] = None
    amount_paid: Optional[int] = None
    currency: Optional[str] = None


@dataclass
class BillingWebhookResult:
    """Normalized webhook event."""
    event_id: str
    event_type: str
    subscription_id: Optional[str]
    account_id: Optional[str]  # from subscription metadata, if present
    plan_id: Optional[str]  # from metadata or price lookup
    billing_reason: Optional[str]  # invoices only
    invoice_id: Optional[str]
    amount_paid: Optional[int]
    currency: Optional[str]
    metadata: Dict[str, Any] = field(default_factory=dict)


class PaymentProvider(Protocol):
    """
    Protocol for payment providers.

    Implementations raise:
    - PaymentRejectedError for card declines (message shown to the user)
    - ProcessorError for any other processor failure
    - InvalidSignatureError from verify_webhook_signature
    """

    def create_customer(self, metadata: Dict[str, str]) -> str:
        """Create a customer and return its id."""
        ...

    def attach_payment_method(self, customer_id: str, payment_method_id: str) -> None:
        ...

    def set_default_payment_method(self, customer_id: str, payment_method_id: str) -> None:
        ...

    def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        metadata: Dict[str, str],
    ) -> CreatedSubscription:
        """
        Create a subscription that allows incomplete payment.

        The returned client secret (if any) lets the client finish
        authentication (3-D Secure) before the first invoice is paid.
        """
        ...

    def update_subscription_price(
        self,
        subscription_id: str,
        item_id: str,
        price_id: str,
        prorate: bool,
        metadata: Optional[Dict[str, str]] = None,
    ) -> None:
        ...

    def update_subscription_metadata(self, subscription_id: str, metadata: Dict[str, str]) -> None:
        ...

    def cancel_subscription(self, subscription_id: str) -> None:
        ...

    def retrieve_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        ...

    def verify_webhook_signature(self, payload: bytes, signature_header: Optional[str], secret: str) -> BillingWebhookResult:
        """Verify authenticity and return the parsed event."""
        ...
