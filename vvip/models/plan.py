"""
vvip/models/plan.py

Plan model for membership tiers.

Plans are static: the catalog owns every instance.
"""

from typing import Optional
from pydantic import BaseModel, ConfigDict


class Plan(BaseModel):
    """
    Plan represents a membership tier.

    Examples:
    - Free (no subscription, tier 0)
    - Gold (tier 1)
    - Platinum (tier 2)
    - VVIP (tier 3)

    `price_id` is the Stripe price reference and is None for Free.
    """
    model_config = ConfigDict(frozen=True)

    plan_id: str
    name: str
    tier: int
    price_id: Optional[str] = None
    list_price: int = 0  # JPY for one three-month period

    @property
    def is_paid(self) -> bool:
        return self.tier > 0
