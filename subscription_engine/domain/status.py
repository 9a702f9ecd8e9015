"""Subscription status model and its transition graph."""
from __future__ import annotations

import enum
from typing import FrozenSet, Tuple


class SubscriptionStatus(str, enum.Enum):
    """All states a subscription can be in."""

    PENDING = "pending"
    TRIAL = "trial"
    ACTIVE = "active"
    INACTIVE = "inactive"
    CANCELED = "canceled"
    EXPIRED = "expired"

    @classmethod
    def active_statuses(cls) -> Tuple["SubscriptionStatus", ...]:
        """Statuses that allow feature consumption and count as 'subscribed'."""

        return (cls.TRIAL, cls.ACTIVE)

    @classmethod
    def inactive_statuses(cls) -> Tuple["SubscriptionStatus", ...]:
        return (cls.PENDING, cls.INACTIVE, cls.CANCELED, cls.EXPIRED)

    @property
    def is_active(self) -> bool:
        return self in self.active_statuses()

    @property
    def label(self) -> str:
        return self.value.capitalize()

    def valid_transitions(self) -> FrozenSet["SubscriptionStatus"]:
        return _TRANSITIONS[self]

    def can_transition_to(self, target: "SubscriptionStatus") -> bool:
        return target in _TRANSITIONS[self]


_TRANSITIONS = {
    SubscriptionStatus.PENDING: frozenset(
        {SubscriptionStatus.TRIAL, SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELED}
    ),
    SubscriptionStatus.TRIAL: frozenset(
        {SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELED, SubscriptionStatus.EXPIRED}
    ),
    SubscriptionStatus.ACTIVE: frozenset(
        {SubscriptionStatus.INACTIVE, SubscriptionStatus.CANCELED, SubscriptionStatus.EXPIRED}
    ),
    SubscriptionStatus.INACTIVE: frozenset(
        {SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELED, SubscriptionStatus.EXPIRED}
    ),
    # Reactivation edges used by renew and resume.
    SubscriptionStatus.CANCELED: frozenset({SubscriptionStatus.ACTIVE}),
    SubscriptionStatus.EXPIRED: frozenset({SubscriptionStatus.ACTIVE}),
}
