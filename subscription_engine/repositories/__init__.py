"""Repository layer package."""

from subscription_engine.repositories.plan_repo import PlanRepo
from subscription_engine.repositories.subscription_repo import SubscriptionRepo
from subscription_engine.repositories.usage_repo import UsageRepo

__all__ = [
    "PlanRepo",
    "SubscriptionRepo",
    "UsageRepo",
]
