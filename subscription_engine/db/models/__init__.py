"""Database models package exports."""

from subscription_engine.db.models.plan import Plan, PlanFeature, PlanPricing
from subscription_engine.db.models.subscription import Subscription
from subscription_engine.db.models.subscription_usage import SubscriptionUsage

__all__ = [
    "Plan",
    "PlanFeature",
    "PlanPricing",
    "Subscription",
    "SubscriptionUsage",
]
