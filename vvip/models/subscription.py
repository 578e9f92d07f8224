from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict


FREE_PLAN = "Free"


class SubscriptionRecord(BaseModel):
    """Persisted subscription state for one account."""
    model_config = ConfigDict(frozen=True)

    account_id: str
    plan: str = FREE_PLAN
    stripe_subscription_id: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    started_at: Optional[datetime] = None
    commitment_until: Optional[datetime] = None
    pending_downgrade: Optional[str] = None
    payment_failed: bool = False
    updated_at: Optional[datetime] = None

    @property
    def has_paid_plan(self) -> bool:
        return self.plan != FREE_PLAN
