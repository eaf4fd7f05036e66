"""
Static provider plan catalog and the date arithmetic the plan engine relies on.
Prices and features are copied onto the plan document at activation time.
"""
import copy
import math
from datetime import datetime, timedelta

from marketplace.timeutil import parse_ts, utcnow

PLAN_ORDER: tuple[str, ...] = ("free", "basic", "premium", "enterprise")
PLAN_TYPES: tuple[str, ...] = ("monthly", "yearly")
PLAN_STATUSES: tuple[str, ...] = ("pending", "active", "expired", "cancelled")

PERIOD_DAYS: dict[str, int] = {"monthly": 30, "yearly": 365}

PLAN_CONFIG: dict[str, dict] = {
    "free": {
        "name": "Free",
        "price": {"monthly": 0, "yearly": 0},
        "features": {
            "maxListings": 5,
            "maxImages": 10,
            "prioritySupport": False,
            "analytics": False,
            "customDomain": False,
            "apiAccess": False,
            "whiteLabel": False,
        },
    },
    "basic": {
        "name": "Basic",
        "price": {"monthly": 29.99, "yearly": 299.99},
        "features": {
            "maxListings": 25,
            "maxImages": 50,
            "prioritySupport": True,
            "analytics": True,
            "customDomain": False,
            "apiAccess": False,
            "whiteLabel": False,
        },
    },
    "premium": {
        "name": "Premium",
        "price": {"monthly": 59.99, "yearly": 599.99},
        "features": {
            "maxListings": 100,
            "maxImages": 200,
            "prioritySupport": True,
            "analytics": True,
            "customDomain": True,
            "apiAccess": True,
            "whiteLabel": False,
        },
    },
    "enterprise": {
        "name": "Enterprise",
        "price": {"monthly": 99.99, "yearly": 999.99},
        "features": {
            "maxListings": -1,  # unlimited
            "maxImages": -1,
            "prioritySupport": True,
            "analytics": True,
            "customDomain": True,
            "apiAccess": True,
            "whiteLabel": True,
        },
    },
}

# Current plan status -> statuses the engine may move it to.
# Activation is not listed: it always starts a fresh period from any status.
PLAN_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"active"}),
    "active": frozenset({"active", "expired", "cancelled"}),
    "expired": frozenset(),
    "cancelled": frozenset(),
}


def is_valid_plan_transition(current: str, new: str) -> bool:
    return new in PLAN_TRANSITIONS.get(current, frozenset())


def end_date_for(plan_type: str, start: datetime, extra_days: int = 0) -> datetime:
    return start + timedelta(days=PERIOD_DAYS[plan_type] + extra_days)


def days_remaining(end_date, now: datetime | None = None) -> int:
    """max(0, ceil((end_date - now) / 1 day))"""
    now = now or utcnow()
    delta = (parse_ts(end_date) - now).total_seconds()
    return max(0, math.ceil(delta / 86400))


def plan_price(plan_name: str, plan_type: str) -> float:
    return PLAN_CONFIG[plan_name]["price"][plan_type]


def plan_features(plan_name: str) -> dict:
    return copy.deepcopy(PLAN_CONFIG[plan_name]["features"])


def can_upgrade(current_plan: str, new_plan: str) -> bool:
    """Strictly higher in PLAN_ORDER."""
    if current_plan not in PLAN_ORDER or new_plan not in PLAN_ORDER:
        return False
    return PLAN_ORDER.index(new_plan) > PLAN_ORDER.index(current_plan)


def upgrade_price(current_plan: str, new_plan: str, plan_type: str) -> float:
    return round(max(0.0, plan_price(new_plan, plan_type) - plan_price(current_plan, plan_type)), 2)
