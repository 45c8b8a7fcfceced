"""
Pydantic schemas for the entitlement API and the webhook event payload.

Event payloads accept snake_case or camelCase keys. The account id may also be
carried in the provider's ``metadata`` object.
"""

from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .errors import MalformedEventError
from .models import (
    AccessReason,
    EntitlementRecord,
    EventType,
    SubscriptionEvent,
    SubscriptionInfo,
    SubscriptionState,
    TrialInfo,
    TrialState,
)


class SubscriptionEventPayload(BaseModel):
    """Body of POST /entitlement/events."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
        extra="ignore",
    )

    account_id: str = Field(..., min_length=1, max_length=255)
    external_subscription_id: str = Field(..., min_length=1, max_length=255)
    event_type: EventType
    # strict: booleans and numeric strings are not sequence numbers
    sequence: int = Field(
        ...,
        ge=0,
        strict=True,
        description="Provider delivery sequence, monotonic per subscription",
    )
    status: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    plan_id: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def lift_metadata_account_id(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        if data.get("account_id") or data.get("accountId"):
            return data
        metadata = data.get("metadata")
        if isinstance(metadata, dict):
            account_id = metadata.get("account_id") or metadata.get("accountId")
            if account_id:
                return {**data, "account_id": account_id}
        return data

    @field_validator("event_type", mode="before")
    @classmethod
    def normalize_event_type(cls, value: Any) -> Any:
        if isinstance(value, str):
            normalized = value.strip().lower()
            return "canceled" if normalized == "cancelled" else normalized
        return value

    @field_validator("period_start", "period_end")
    @classmethod
    def assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @model_validator(mode="after")
    def validate_periods(self):
        if self.event_type != EventType.CANCELED:
            if self.period_start is None or self.period_end is None:
                raise ValueError("period_start and period_end are required for created/updated events")
        if self.period_start is not None and self.period_end is not None:
            if self.period_end < self.period_start:
                raise ValueError("period_end must not be before period_start")
        return self

    def to_event(self) -> SubscriptionEvent:
        return SubscriptionEvent(
            account_id=self.account_id,
            external_subscription_id=self.external_subscription_id,
            event_type=self.event_type,
            sequence=self.sequence,
            status=self.status,
            period_start=self.period_start,
            period_end=self.period_end,
            plan_id=self.plan_id or None,
        )


_FIELD_BY_ALIAS = {to_camel(name): name for name in SubscriptionEventPayload.model_fields}


def parse_subscription_event(payload: Mapping[str, Any]) -> SubscriptionEvent:
    """Validate a raw webhook payload. Raises MalformedEventError."""
    try:
        return SubscriptionEventPayload.model_validate(payload).to_event()
    except ValidationError as exc:
        # error locations are reported by alias; expose the snake_case names
        fields = sorted(
            {
                ".".join(_FIELD_BY_ALIAS.get(str(part), str(part)) for part in err["loc"])
                for err in exc.errors()
                if err["loc"]
            }
        )
        raise MalformedEventError("Malformed subscription event", fields=fields) from exc


class AccessVerdictResponse(BaseModel):
    """Response for GET /entitlement/{account_id}."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    has_access: bool
    reason: AccessReason
    days_remaining: int = Field(..., ge=0)


class TrialResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    state: TrialState
    started_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None

    @classmethod
    def from_trial(cls, trial: TrialInfo) -> "TrialResponse":
        return cls(state=trial.state, started_at=trial.started_at, ends_at=trial.ends_at)


class TrialStartResponse(BaseModel):
    trial: TrialResponse


class EventAppliedResponse(BaseModel):
    applied: bool


class SubscriptionResponse(BaseModel):
    """Response for GET /entitlement/{account_id}/subscription."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    subscription_id: str
    status: SubscriptionState
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    plan_id: str = ""

    @classmethod
    def from_subscription(cls, subscription: SubscriptionInfo) -> "SubscriptionResponse":
        return cls(
            subscription_id=subscription.external_subscription_id,
            status=subscription.state,
            current_period_start=subscription.current_period_start,
            current_period_end=subscription.current_period_end,
            plan_id=subscription.plan_id,
        )


class AccountResponse(BaseModel):
    """Response for POST /entitlement/sign-in."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    account_id: str
    email: str = ""
    display_name: str = ""
    created_at: Optional[datetime] = None
    last_sign_in_at: Optional[datetime] = None
    trial: TrialResponse

    @classmethod
    def from_record(cls, record: EntitlementRecord) -> "AccountResponse":
        return cls(
            account_id=record.account_id,
            email=record.email,
            display_name=record.display_name,
            created_at=record.created_at,
            last_sign_in_at=record.last_sign_in_at,
            trial=TrialResponse.from_trial(record.trial),
        )
