"""
Plan catalog.

Single source of truth for plan identifiers, tier ranks and Stripe prices.
Prices are read from the environment at call time so configuration changes
(and test monkeypatching) take effect without reloading the module.
"""
import os
from typing import Dict, List, Optional

from vvip.core.errors import PriceNotConfiguredError, UnknownPlanError
from vvip.models.plan import Plan
from vvip.models.subscription import FREE_PLAN


# plan_id -> (display name, tier rank, price env var, three-month list price in JPY)
PLAN_DEFINITIONS = {
    FREE_PLAN: ("Free", 0, None, 0),
    "Gold": ("Gold", 1, "STRIPE_PRICE_GOLD", 59400),
    "Platinum": ("Platinum", 2, "STRIPE_PRICE_PLATINUM", 89400),
    "VVIP": ("VVIP", 3, "STRIPE_PRICE_VVIP", 149400),
}


def _price_from_env(env_var: Optional[str]) -> Optional[str]:
    if not env_var:
        return None
    return os.getenv(env_var) or None


def get_plan(plan_id: str) -> Plan:
    """Return the plan for an identifier; raise UnknownPlanError otherwise."""
    definition = PLAN_DEFINITIONS.get(plan_id)
    if definition is None:
        raise UnknownPlanError(f"Invalid plan: {plan_id}")
    name, tier, env_var, list_price = definition
    return Plan(
        plan_id=plan_id,
        name=name,
        tier=tier,
        price_id=_price_from_env(env_var),
        list_price=list_price,
    )


def tier_rank(plan_id: str) -> int:
    return get_plan(plan_id).tier


def get_price_id(plan_id: str) -> str:
    """
    Resolve the Stripe price for a paid plan.

    Raises:
        UnknownPlanError: identifier is not a paid tier
        PriceNotConfiguredError: tier is known but its price env var is unset
    """
    plan = get_plan(plan_id)
    if not plan.is_paid:
        raise UnknownPlanError(f"Invalid plan: {plan_id}")
    if not plan.price_id:
        raise PriceNotConfiguredError(f"No Stripe price configured for plan: {plan_id}")
    return plan.price_id


def plan_for_price(price_id: Optional[str]) -> Optional[str]:
    """Reverse lookup: Stripe price id -> plan id."""
    if not price_id:
        return None
    for plan_id, (_, _, env_var, _) in PLAN_DEFINITIONS.items():
        if env_var and _price_from_env(env_var) == price_id:
            return plan_id
    return None


def list_plans(include_free: bool = False) -> List[Plan]:
    """All plans ordered by tier rank."""
    plans = [get_plan(plan_id) for plan_id in PLAN_DEFINITIONS]
    if not include_free:
        plans = [p for p in plans if p.is_paid]
    return sorted(plans, key=lambda p: p.tier)


def price_map() -> Dict[str, Optional[str]]:
    return {p.plan_id: p.price_id for p in list_plans()}
