"""Subscription plans: pricing, per-plan usage limits and referral commission."""

import math
from typing import Optional

# -1 means unlimited
UNLIMITED = -1

PLAN_ORDER = ["free", "starter", "pro", "empire"]

SUBSCRIPTION_PLANS = {
    "starter": {
        "name": "Starter",
        "pricing": {"monthly": 500, "yearly": 5000},
    },
    "pro": {
        "name": "Pro",
        "pricing": {"monthly": 1200, "yearly": 12000},
    },
    "empire": {
        "name": "Ultimate",
        "pricing": {"monthly": 2500, "yearly": 25000},
    },
}

BILLING_CYCLES = ("monthly", "yearly")

# Chat usage
HOURLY_MESSAGE_LIMITS = {"free": 20, "starter": 100, "pro": 500, "empire": 2000}
DAILY_AI_GENERATION_LIMITS = {"free": 5, "starter": 50, "pro": 200, "empire": UNLIMITED}
MAX_CHATS = {"free": 3, "starter": 10, "pro": 50, "empire": UNLIMITED}
MAX_MESSAGES_PER_CHAT = {"free": 50, "starter": 200, "pro": 1000, "empire": UNLIMITED}

# Referral commission on a referred user's subscription charges
COMMISSION_RATES = {"starter": 0.4, "pro": 0.4, "empire": 0.4}
RENEWAL_COMMISSION_FACTOR = 0.5


def user_plan(user: Optional[dict]) -> str:
    plan = ((user or {}).get("subscription") or {}).get("plan") or "free"
    return plan if plan in PLAN_ORDER else "free"


def subscription_is_active(user: Optional[dict]) -> bool:
    return bool(((user or {}).get("subscription") or {}).get("is_active"))


def plan_amount(plan: str, billing_cycle: str = "monthly") -> int:
    if plan not in SUBSCRIPTION_PLANS:
        raise ValueError(f"Plan {plan} not found")
    if billing_cycle not in BILLING_CYCLES:
        raise ValueError(f"Invalid billing cycle: {billing_cycle}")
    return SUBSCRIPTION_PLANS[plan]["pricing"][billing_cycle]


def plan_display_name(plan: str) -> str:
    return SUBSCRIPTION_PLANS.get(plan, {}).get("name", plan.capitalize())


def commission_rate(plan: str, renewal: bool = False) -> float:
    rate = COMMISSION_RATES.get(plan, 0)
    return rate * RENEWAL_COMMISSION_FACTOR if renewal else rate


def calculate_commission(amount: int, rate: float) -> int:
    return math.floor(amount * rate)
