"""
Error taxonomy for the subscription engine.

Every error raised by a lifecycle action or the usage ledger derives from
:class:`SubscriptionEngineError` so API and batch callers can branch on the
kind of failure. Business-rule violations carry a machine-checkable
:class:`ReasonCode`.
"""
from __future__ import annotations

import enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

if TYPE_CHECKING:  # pragma: no cover - typing only
    from subscription_engine.domain.events import SubscriptionEvent


class ReasonCode(str, enum.Enum):
    """Machine-readable reasons attached to business-rule errors."""

    ALREADY_SUBSCRIBED = "already_subscribed"
    NOT_ELIGIBLE_FOR_TRIAL = "not_eligible_for_trial"
    INVALID_TRIAL_DURATION = "invalid_trial_duration"
    INSUFFICIENT_USAGE = "insufficient_usage"
    DOWNGRADE_NOT_ALLOWED = "downgrade_not_allowed"
    DOWNGRADE_EXCEEDS_USAGE = "downgrade_exceeds_usage"
    SAME_PLAN = "same_plan"
    PLAN_CHANGE_DURING_TRIAL = "plan_change_during_trial"
    PERIOD_ENDED = "period_ended"
    RENEWAL_FAILED = "renewal_failed"
    NO_ACTIVE_SUBSCRIPTION = "no_active_subscription"


class SubscriptionEngineError(Exception):
    """
    Base error with API-friendly context.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        status_code: HTTP status code used by the API layer
        context: Additional data about the failure
        events: Domain events that must still be published although the
            operation itself was rolled back
    """

    error_code = "SUBSCRIPTION_ERROR"
    status_code = 400

    def __init__(
        self,
        message: str,
        *,
        context: Optional[Dict[str, Any]] = None,
        events: Optional[Sequence["SubscriptionEvent"]] = None,
    ) -> None:
        self.message = message
        self.context = context or {}
        self.events: List["SubscriptionEvent"] = list(events or [])
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "error_code": self.error_code,
            "reason": None,
            "context": self.context,
        }


class SubscriptionNotFoundError(SubscriptionEngineError):
    error_code = "SUBSCRIPTION_NOT_FOUND"
    status_code = 404


class ValidationError(SubscriptionEngineError):
    """Caller input or state precondition violation. Never retried."""

    error_code = "VALIDATION_ERROR"
    status_code = 422


class InvalidTransitionError(ValidationError):
    error_code = "INVALID_STATUS_TRANSITION"
    status_code = 409


class InvalidStateError(ValidationError):
    error_code = "INVALID_SUBSCRIPTION_STATE"
    status_code = 409


class PlanNotAvailableError(ValidationError):
    error_code = "PLAN_NOT_AVAILABLE"


class FeatureNotAvailableError(ValidationError):
    error_code = "FEATURE_NOT_AVAILABLE"


class InvalidFeatureKeyError(ValidationError):
    error_code = "INVALID_FEATURE_KEY"


class InvalidAmountError(ValidationError):
    error_code = "INVALID_AMOUNT"


class BusinessRuleError(ValidationError):
    """Validation error with a reason code callers can branch on."""

    error_code = "BUSINESS_RULE_VIOLATION"

    def __init__(
        self,
        reason: ReasonCode,
        message: str,
        *,
        context: Optional[Dict[str, Any]] = None,
        events: Optional[Sequence["SubscriptionEvent"]] = None,
    ) -> None:
        self.reason = reason
        super().__init__(message, context=context, events=events)

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["reason"] = self.reason.value
        return payload

    @classmethod
    def already_subscribed(cls) -> "BusinessRuleError":
        return cls(
            ReasonCode.ALREADY_SUBSCRIBED,
            "Subscriber already has an active subscription",
        )

    @classmethod
    def not_eligible_for_trial(cls, reason: str = "") -> "BusinessRuleError":
        message = "Subscriber is not eligible for a trial"
        if reason:
            message = f"{message}: {reason}"
        return cls(ReasonCode.NOT_ELIGIBLE_FOR_TRIAL, message)

    @classmethod
    def invalid_trial_duration(cls, days: int, minimum: int, maximum: int) -> "BusinessRuleError":
        return cls(
            ReasonCode.INVALID_TRIAL_DURATION,
            f"Trial duration must be between {minimum} and {maximum} days, got {days}",
            context={"days": days, "min_days": minimum, "max_days": maximum},
        )

    @classmethod
    def insufficient_usage(
        cls, feature_key: str, requested: int, available: Optional[int]
    ) -> "BusinessRuleError":
        return cls(
            ReasonCode.INSUFFICIENT_USAGE,
            f"Insufficient usage remaining for feature '{feature_key}'",
            context={
                "feature_key": feature_key,
                "requested": requested,
                "available": available,
            },
        )

    @classmethod
    def no_active_subscription(cls) -> "BusinessRuleError":
        return cls(
            ReasonCode.NO_ACTIVE_SUBSCRIPTION,
            "Subscriber has no active subscription",
        )


class ActionNotExecutedError(RuntimeError):
    """A post-execution query was made before the action ran."""
