"""Lifecycle actions: one class per subscription transition."""

from subscription_engine.services.actions.base import ActionResult, BaseAction
from subscription_engine.services.actions.cancel import CancelSubscriptionAction
from subscription_engine.services.actions.change_plan import (
    ChangePlanAction,
    ProrationCalculator,
)
from subscription_engine.services.actions.consume import ConsumeFeatureAction
from subscription_engine.services.actions.create import StartTrialAction, SubscribeAction
from subscription_engine.services.actions.duplicate import DuplicateSubscriptionAction
from subscription_engine.services.actions.expire import ExpireSubscriptionAction
from subscription_engine.services.actions.renew import RenewSubscriptionAction
from subscription_engine.services.actions.reset_usage import ResetFeatureUsageAction
from subscription_engine.services.actions.resume import ResumeSubscriptionAction

__all__ = [
    "ActionResult",
    "BaseAction",
    "CancelSubscriptionAction",
    "ChangePlanAction",
    "ConsumeFeatureAction",
    "DuplicateSubscriptionAction",
    "ExpireSubscriptionAction",
    "ProrationCalculator",
    "RenewSubscriptionAction",
    "ResetFeatureUsageAction",
    "ResumeSubscriptionAction",
    "StartTrialAction",
    "SubscribeAction",
]
