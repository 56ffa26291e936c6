"""Legal subscription status transitions and access rules.

trialing -> active -> {past_due, cancelled} -> expired
past_due -> active on a successful retry, or -> expired once the grace
period has elapsed. cancelled and expired are terminal: reactivation is a
new subscription, not a transition.
"""
from __future__ import annotations

from datetime import datetime

from models.enums import SubscriptionStatus
from services.exceptions import InvalidTransition

S = SubscriptionStatus

TERMINAL_STATUSES: frozenset[str] = frozenset({S.CANCELLED.value, S.EXPIRED.value})

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    S.TRIALING.value: frozenset({S.ACTIVE.value, S.CANCELLED.value}),
    # active -> active is a renewal
    S.ACTIVE.value: frozenset({S.ACTIVE.value, S.PAST_DUE.value, S.CANCELLED.value, S.EXPIRED.value}),
    S.PAST_DUE.value: frozenset({S.ACTIVE.value, S.CANCELLED.value, S.EXPIRED.value}),
    S.CANCELLED.value: frozenset(),
    S.EXPIRED.value: frozenset(),
}


def _value(status) -> str:
    return status.value if isinstance(status, SubscriptionStatus) else str(status)


def is_terminal(status) -> bool:
    return _value(status) in TERMINAL_STATUSES


def can_transition(current, target) -> bool:
    return _value(target) in ALLOWED_TRANSITIONS.get(_value(current), frozenset())


def check_transition(current, target) -> None:
    if not can_transition(current, target):
        raise InvalidTransition(_value(current), _value(target))


def has_access(subscription, now: datetime) -> bool:
    """Whether the subscription currently grants its plan's features.

    Cancelled subscriptions keep access until the end of the paid period.
    """
    if subscription is None or subscription.status == S.EXPIRED.value:
        return False
    return subscription.current_period_start <= now <= subscription.current_period_end
