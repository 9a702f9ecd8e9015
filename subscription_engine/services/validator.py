"""Business rule checks shared by lifecycle actions and the usage ledger."""
from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from subscription_engine.core.config import SubscriptionSettings
from subscription_engine.core.exceptions import (
    BusinessRuleError,
    FeatureNotAvailableError,
    InvalidAmountError,
    InvalidFeatureKeyError,
    InvalidStateError,
    InvalidTransitionError,
    PlanNotAvailableError,
    ReasonCode,
    SubscriptionEngineError,
)
from subscription_engine.db.models.plan import Plan, PlanFeature, PlanPricing
from subscription_engine.db.models.subscription import Subscription
from subscription_engine.domain.status import SubscriptionStatus
from subscription_engine.domain.subscriber import SubscriberRef
from subscription_engine.repositories.subscription_repo import SubscriptionRepo

logger = logging.getLogger(__name__)

FEATURE_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")

OPERATIONS = ("renew", "cancel", "resume", "expire")


class SubscriptionValidator:
    """
    Stateless checks that raise on the first violation.

    Methods that need the database take the repository explicitly so the
    check runs inside the caller's transaction, after its locks are held.
    """

    def __init__(self, config: SubscriptionSettings) -> None:
        self.config = config

    # -- trials --------------------------------------------------------------

    def validate_trial_duration(self, days: int) -> None:
        minimum = self.config.trial_min_days
        maximum = self.config.trial_max_days
        if days < 1 or days < minimum or days > maximum:
            raise BusinessRuleError.invalid_trial_duration(days, minimum, maximum)

    async def validate_trial_eligibility(
        self, repo: SubscriptionRepo, subscriber: SubscriberRef, plan: Plan
    ) -> None:
        if self.config.allow_multiple_trials_per_plan:
            return
        if await repo.has_trialed(subscriber, plan.id):
            raise BusinessRuleError.not_eligible_for_trial(
                f"a trial of plan '{plan.id}' was already used"
            )

    # -- catalog -------------------------------------------------------------

    def validate_plan_availability(self, plan: Optional[Plan]) -> Plan:
        if plan is None:
            raise PlanNotAvailableError("Plan does not exist")
        if plan.is_deleted:
            raise PlanNotAvailableError(
                f"Plan '{plan.id}' has been deleted", context={"plan_id": plan.id}
            )
        if not plan.is_active:
            raise PlanNotAvailableError(
                f"Plan '{plan.id}' is not active", context={"plan_id": plan.id}
            )
        return plan

    def validate_pricing_availability(
        self, pricing: Optional[PlanPricing], plan: Plan
    ) -> PlanPricing:
        if pricing is None:
            raise PlanNotAvailableError("Plan pricing does not exist")
        if pricing.plan_id != plan.id:
            raise PlanNotAvailableError(
                f"Pricing {pricing.id} does not belong to plan '{plan.id}'",
                context={"plan_id": plan.id, "plan_pricing_id": pricing.id},
            )
        if not pricing.is_active:
            raise PlanNotAvailableError(
                f"Pricing {pricing.id} is not active",
                context={"plan_pricing_id": pricing.id},
            )
        return pricing

    # -- state ---------------------------------------------------------------

    def validate_status_transition(
        self, current: SubscriptionStatus, target: SubscriptionStatus
    ) -> None:
        if not current.can_transition_to(target):
            raise InvalidTransitionError(
                f"Cannot transition subscription from {current.value} to {target.value}",
                context={"from": current.value, "to": target.value},
            )

    async def ensure_no_active_subscription(
        self,
        repo: SubscriptionRepo,
        subscriber: SubscriberRef,
        exclude_id=None,
    ) -> None:
        if await repo.has_active(subscriber, exclude_id=exclude_id):
            raise BusinessRuleError.already_subscribed()

    def validate_subscription_state(self, subscription: Subscription) -> None:
        """Date ordering: start <= end, trial end >= start, grace end >= end."""

        starts_at = subscription.starts_at
        ends_at = subscription.ends_at
        if starts_at and ends_at and starts_at > ends_at:
            raise InvalidStateError("Subscription starts after it ends")
        if starts_at and subscription.trial_ends_at and subscription.trial_ends_at < starts_at:
            raise InvalidStateError("Trial ends before the subscription starts")
        if ends_at and subscription.grace_ends_at and subscription.grace_ends_at < ends_at:
            raise InvalidStateError("Grace period ends before the subscription ends")

    # -- features ------------------------------------------------------------

    def validate_feature_key(self, feature_key: str) -> None:
        if not feature_key or not FEATURE_KEY_PATTERN.match(feature_key):
            raise InvalidFeatureKeyError(
                f"Invalid feature key '{feature_key}'",
                context={"feature_key": feature_key},
            )

    def validate_consumption_amount(self, amount: int) -> None:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidAmountError(
                "Consumption amount must be a positive integer",
                context={"amount": amount},
            )

    def validate_feature_exists(
        self, feature: Optional[PlanFeature], feature_key: str, plan_id: str
    ) -> PlanFeature:
        if feature is None:
            raise FeatureNotAvailableError(
                f"Feature '{feature_key}' is not part of plan '{plan_id}'",
                context={"feature_key": feature_key, "plan_id": plan_id},
            )
        return feature

    def validate_feature_consumption(
        self,
        feature: Optional[PlanFeature],
        feature_key: str,
        plan_id: str,
        amount: int,
    ) -> PlanFeature:
        self.validate_feature_key(feature_key)
        self.validate_consumption_amount(amount)
        feature = self.validate_feature_exists(feature, feature_key, plan_id)
        if feature.limit is False:
            raise FeatureNotAvailableError(
                f"Feature '{feature_key}' is disabled on plan '{plan_id}'",
                context={"feature_key": feature_key, "plan_id": plan_id},
            )
        return feature

    # -- per operation -------------------------------------------------------

    def validate_renewal_eligibility(self, subscription: Subscription) -> None:
        allowed = (
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.EXPIRED,
            SubscriptionStatus.INACTIVE,
        )
        if subscription.status not in allowed:
            raise InvalidTransitionError(
                f"Cannot renew a {subscription.status.value} subscription",
                context={"status": subscription.status.value},
            )

    def validate_cancellation_eligibility(self, subscription: Subscription) -> None:
        if subscription.status not in SubscriptionStatus.active_statuses():
            raise InvalidTransitionError(
                f"Cannot cancel a {subscription.status.value} subscription",
                context={"status": subscription.status.value},
            )

    def validate_resumption_eligibility(
        self, subscription: Subscription, now: datetime
    ) -> None:
        if subscription.status not in (SubscriptionStatus.CANCELED, SubscriptionStatus.EXPIRED):
            raise InvalidTransitionError(
                f"Cannot resume a {subscription.status.value} subscription",
                context={"status": subscription.status.value},
            )
        if not subscription.has_valid_period(now):
            raise BusinessRuleError(
                ReasonCode.PERIOD_ENDED,
                "Subscription period has ended; renew instead",
                context={"ends_at": subscription.ends_at.isoformat()},
            )

    def validate_expiration_eligibility(self, subscription: Subscription) -> None:
        if subscription.status not in SubscriptionStatus.active_statuses():
            raise InvalidTransitionError(
                f"Cannot expire a {subscription.status.value} subscription",
                context={"status": subscription.status.value},
            )
        if subscription.is_lifetime:
            raise InvalidStateError("Lifetime subscriptions never expire")

    def validate_for_operation(
        self, subscription: Subscription, operation: str, now: datetime
    ) -> None:
        if operation == "renew":
            self.validate_renewal_eligibility(subscription)
        elif operation == "cancel":
            self.validate_cancellation_eligibility(subscription)
        elif operation == "resume":
            self.validate_resumption_eligibility(subscription, now)
        elif operation == "expire":
            self.validate_expiration_eligibility(subscription)
        else:
            raise ValueError(f"Unknown operation '{operation}'")

    def validation_summary(self, subscription: Subscription, now: datetime) -> Dict[str, Any]:
        """Report state validity, allowed operations and upcoming deadlines."""

        errors: List[str] = []
        try:
            self.validate_subscription_state(subscription)
        except SubscriptionEngineError as exc:
            errors.append(exc.message)

        allowed: List[str] = []
        for operation in OPERATIONS:
            try:
                self.validate_for_operation(subscription, operation, now)
            except SubscriptionEngineError:
                continue
            allowed.append(operation)

        warnings: List[str] = []
        if (
            subscription.ends_at is not None
            and now <= subscription.ends_at <= now + timedelta(days=3)
        ):
            warnings.append("Subscription ends within 3 days")
        if (
            subscription.is_on_trial(now)
            and subscription.trial_ends_at <= now + timedelta(days=1)
        ):
            warnings.append("Trial ends within 1 day")

        return {
            "is_valid": not errors,
            "errors": errors,
            "allowed_operations": allowed,
            "warnings": warnings,
        }
