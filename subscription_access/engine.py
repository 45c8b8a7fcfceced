"""
Entitlement engine: pure trial/subscription transitions and access decisions.

No I/O and no clock reads. Every function takes ``now`` explicitly and returns
new records instead of mutating.
"""

from __future__ import annotations

import math
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Optional, Tuple

from .config import TRIAL_LENGTH
from .errors import (
    AlreadyEntitledError,
    MalformedEventError,
    SubscriptionIdentityMismatchError,
    TrialAlreadyConsumedError,
)
from .models import (
    AccessReason,
    AccessVerdict,
    EntitlementRecord,
    EventType,
    SubscriptionEvent,
    SubscriptionInfo,
    SubscriptionState,
    TrialInfo,
    TrialState,
)

SECONDS_PER_DAY = 86400

# Closed mapping of provider status strings. Anything else is rejected.
PROVIDER_STATUS_MAP = {
    "active": SubscriptionState.ACTIVE,
    "trialing": SubscriptionState.ACTIVE,
    "past_due": SubscriptionState.PAST_DUE,
    "unpaid": SubscriptionState.PAST_DUE,
    "incomplete": SubscriptionState.PAST_DUE,
    "canceled": SubscriptionState.CANCELED,
    "cancelled": SubscriptionState.CANCELED,
    "incomplete_expired": SubscriptionState.CANCELED,
}


def days_remaining(ends_at: datetime, now: datetime) -> int:
    """Whole days left, rounded up and floored at 0 (0.1 days -> 1)."""
    remaining_seconds = ends_at.timestamp() - now.timestamp()
    if remaining_seconds <= 0:
        return 0
    return max(0, math.ceil(remaining_seconds / SECONDS_PER_DAY))


def _subscription_grants(record: EntitlementRecord, now: datetime) -> bool:
    sub = record.subscription
    return (
        sub is not None
        and sub.state == SubscriptionState.ACTIVE
        and sub.current_period_end is not None
        and now.timestamp() < sub.current_period_end.timestamp()
    )


def _trial_grants(record: EntitlementRecord, now: datetime) -> bool:
    trial = record.trial
    return (
        trial.state == TrialState.ACTIVE
        and trial.ends_at is not None
        and now.timestamp() < trial.ends_at.timestamp()
    )


def observe_trial_expiry(record: EntitlementRecord, now: datetime) -> EntitlementRecord:
    """Return the record with an elapsed active trial marked expired, else the same object."""
    trial = record.trial
    if trial.state == TrialState.ACTIVE and trial.ends_at is not None:
        if now.timestamp() >= trial.ends_at.timestamp():
            return replace(record, trial=replace(trial, state=TrialState.EXPIRED))
    return record


def compute_access(record: EntitlementRecord, now: datetime) -> Tuple[AccessVerdict, EntitlementRecord]:
    """
    Compute the access verdict at ``now``.

    Returns the verdict and the record to persist. When an active trial has
    lapsed, the returned record has the trial marked expired and is a different
    object from ``record``; the caller must write it back.
    """
    observed = observe_trial_expiry(record, now)

    if _subscription_grants(observed, now):
        verdict = AccessVerdict(
            has_access=True,
            reason=AccessReason.SUBSCRIPTION_ACTIVE,
            days_remaining=days_remaining(observed.subscription.current_period_end, now),
        )
    elif _trial_grants(observed, now):
        verdict = AccessVerdict(
            has_access=True,
            reason=AccessReason.TRIAL_ACTIVE,
            days_remaining=days_remaining(observed.trial.ends_at, now),
        )
    elif observed.trial.state == TrialState.EXPIRED and observed.subscription is None:
        verdict = AccessVerdict(has_access=False, reason=AccessReason.TRIAL_EXPIRED)
    else:
        verdict = AccessVerdict(has_access=False, reason=AccessReason.NO_ACCESS)

    return verdict, observed


def start_trial(
    record: EntitlementRecord,
    now: datetime,
    trial_length: timedelta = TRIAL_LENGTH,
) -> EntitlementRecord:
    """Start the account's one and only trial."""
    verdict, _ = compute_access(record, now)
    if verdict.has_access:
        raise AlreadyEntitledError(record.account_id)
    if record.trial.state != TrialState.NOT_STARTED:
        raise TrialAlreadyConsumedError(record.account_id)
    if trial_length <= timedelta(0):
        raise ValueError("trial_length must be positive")

    return replace(
        record,
        trial=TrialInfo(state=TrialState.ACTIVE, started_at=now, ends_at=now + trial_length),
    )


def map_provider_status(status: Optional[str], event_type: EventType) -> SubscriptionState:
    """Map a provider status to local state. Canceled events always cancel."""
    if event_type == EventType.CANCELED:
        return SubscriptionState.CANCELED
    if status is None or not str(status).strip():
        # no renewal reported
        return SubscriptionState.CANCELED
    normalized = str(status).strip().lower()
    try:
        return PROVIDER_STATUS_MAP[normalized]
    except KeyError:
        raise MalformedEventError(f"Unknown subscription status: {status!r}", fields=["status"]) from None


def apply_subscription_event(
    record: EntitlementRecord,
    event: SubscriptionEvent,
    now: Optional[datetime] = None,
) -> Tuple[EntitlementRecord, bool]:
    """
    Apply a lifecycle event to the record.

    Returns ``(record, applied)``. Duplicate or superseded deliveries
    (sequence <= last applied for that subscription) return the record
    unchanged with ``applied=False``. When ``now`` is given, an applied event
    also records a lapsed trial as expired.
    """
    if event.account_id != record.account_id:
        raise ValueError("event account_id does not match record")

    current = record.subscription
    if current is not None and current.external_subscription_id != event.external_subscription_id:
        raise SubscriptionIdentityMismatchError(
            record.account_id,
            current.external_subscription_id,
            event.external_subscription_id,
        )

    last_seq = record.last_sequence_for(event.external_subscription_id)
    if last_seq is not None and event.sequence <= last_seq:
        return record, False

    state = map_provider_status(event.status, event.event_type)

    if current is None:
        period_start = event.period_start
        period_end = event.period_end
        plan_id = event.plan_id or ""
    else:
        period_start = event.period_start if event.period_start is not None else current.current_period_start
        period_end = event.period_end if event.period_end is not None else current.current_period_end
        plan_id = event.plan_id if event.plan_id else current.plan_id

    subscription = SubscriptionInfo(
        state=state,
        external_subscription_id=event.external_subscription_id,
        current_period_start=period_start,
        current_period_end=period_end,
        plan_id=plan_id,
    )
    sequences = dict(record.last_applied_event_seq)
    sequences[event.external_subscription_id] = event.sequence

    updated = replace(record, subscription=subscription, last_applied_event_seq=sequences)
    if now is not None:
        updated = observe_trial_expiry(updated, now)
    return updated, True
