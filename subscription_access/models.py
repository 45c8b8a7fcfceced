from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional


class TrialState(str, Enum):
    NOT_STARTED = "not_started"
    ACTIVE = "active"
    EXPIRED = "expired"


class SubscriptionState(str, Enum):
    NONE = "none"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class AccessReason(str, Enum):
    TRIAL_ACTIVE = "trial_active"
    SUBSCRIPTION_ACTIVE = "subscription_active"
    TRIAL_EXPIRED = "trial_expired"
    NO_ACCESS = "no_access"


class EventType(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    CANCELED = "canceled"


def _require_aware(value: Optional[datetime], name: str) -> None:
    if value is not None and value.tzinfo is None:
        raise ValueError(f"{name} must be timezone-aware")


@dataclass(frozen=True)
class TrialInfo:
    """One-time trial window. ends_at is fixed when the trial starts."""

    state: TrialState = TrialState.NOT_STARTED
    started_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        _require_aware(self.started_at, "started_at")
        _require_aware(self.ends_at, "ends_at")
        if self.state != TrialState.NOT_STARTED and (self.started_at is None or self.ends_at is None):
            raise ValueError("a started trial requires started_at and ends_at")


@dataclass(frozen=True)
class SubscriptionInfo:
    """Local view of the single external subscription bound to an account."""

    state: SubscriptionState
    external_subscription_id: str
    current_period_start: Optional[datetime]
    current_period_end: Optional[datetime]
    plan_id: str = ""

    def __post_init__(self) -> None:
        if not self.external_subscription_id.strip():
            raise ValueError("external_subscription_id is required")
        _require_aware(self.current_period_start, "current_period_start")
        _require_aware(self.current_period_end, "current_period_end")


@dataclass(frozen=True)
class EntitlementRecord:
    """Per-account trial and subscription state.

    ``version`` is owned by the record store (0 = never persisted).
    ``last_applied_event_seq`` maps external subscription id to the highest
    delivery sequence applied for it.
    """

    account_id: str
    trial: TrialInfo = field(default_factory=TrialInfo)
    subscription: Optional[SubscriptionInfo] = None
    last_applied_event_seq: Mapping[str, int] = field(default_factory=dict)
    email: str = ""
    display_name: str = ""
    created_at: Optional[datetime] = None
    last_sign_in_at: Optional[datetime] = None
    version: int = 0

    def __post_init__(self) -> None:
        account_id = str(self.account_id).strip()
        if not account_id:
            raise ValueError("account_id is required")
        _require_aware(self.created_at, "created_at")
        _require_aware(self.last_sign_in_at, "last_sign_in_at")
        object.__setattr__(self, "account_id", account_id)
        object.__setattr__(
            self, "last_applied_event_seq", MappingProxyType(dict(self.last_applied_event_seq))
        )

    def last_sequence_for(self, external_subscription_id: str) -> Optional[int]:
        return self.last_applied_event_seq.get(external_subscription_id)

    def with_version(self, version: int) -> "EntitlementRecord":
        return replace(self, version=version)

    def same_state_as(self, other: "EntitlementRecord") -> bool:
        """Compare everything except the store-owned version."""
        return (
            self.account_id == other.account_id
            and self.trial == other.trial
            and self.subscription == other.subscription
            and dict(self.last_applied_event_seq) == dict(other.last_applied_event_seq)
            and self.email == other.email
            and self.display_name == other.display_name
            and self.created_at == other.created_at
            and self.last_sign_in_at == other.last_sign_in_at
        )


@dataclass(frozen=True)
class AccessVerdict:
    has_access: bool
    reason: AccessReason
    days_remaining: int = 0

    def to_dict(self) -> dict:
        return {
            "hasAccess": self.has_access,
            "reason": self.reason.value,
            "daysRemaining": self.days_remaining,
        }


@dataclass(frozen=True)
class SubscriptionEvent:
    """A validated subscription lifecycle event from the payment provider."""

    account_id: str
    external_subscription_id: str
    event_type: EventType
    sequence: int
    status: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    plan_id: Optional[str] = None

    def __post_init__(self) -> None:
        account_id = str(self.account_id).strip()
        subscription_id = str(self.external_subscription_id).strip()
        if not account_id:
            raise ValueError("account_id is required")
        if not subscription_id:
            raise ValueError("external_subscription_id is required")
        object.__setattr__(self, "account_id", account_id)
        object.__setattr__(self, "external_subscription_id", subscription_id)
        _require_aware(self.period_start, "period_start")
        _require_aware(self.period_end, "period_end")

    def log_context(self) -> dict:
        return {
            "account_id": self.account_id,
            "external_subscription_id": self.external_subscription_id,
            "event_type": self.event_type.value,
            "sequence": self.sequence,
            "status": self.status,
        }


@dataclass(frozen=True)
class AccountProfile:
    """Identity fields handed over after the identity provider verified a token."""

    account_id: str
    email: str = ""
    display_name: str = ""

    def __post_init__(self) -> None:
        account_id = str(self.account_id).strip()
        if not account_id:
            raise ValueError("account_id is required")
        object.__setattr__(self, "account_id", account_id)
