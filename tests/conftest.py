"""
Shared pytest fixtures for entitlement tests.

Entitlement decisions run against injected synthetic time; only identity token
expiry is checked against the wall clock.
"""

import time
from datetime import datetime, timedelta, timezone

import jwt
import pytest

from subscription_access.clock import FixedClock
from subscription_access.errors import StoreUnavailableError
from subscription_access.locking import AccountLockRegistry
from subscription_access.models import AccountProfile, EventType, SubscriptionEvent
from subscription_access.reconciler import EventReconciler
from subscription_access.retry import RetryPolicy
from subscription_access.service import AccessQueryService
from subscription_access.store import InMemoryRecordStore

T0 = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
ACCOUNT_ID = "acct_123"
SUB_X = "sub_X"

FAST_RETRY = RetryPolicy(max_attempts=3, base_delay_seconds=0.01, max_delay_seconds=0.05, jitter_factor=0)
IDENTITY_SECRET = "identity-test-secret-0123456789abcdef"


def make_event(
    seq: int,
    event_type: EventType = EventType.CREATED,
    *,
    account_id: str = ACCOUNT_ID,
    subscription_id: str = SUB_X,
    status: str = "active",
    period_start: datetime = T0,
    period_end: datetime = T0 + timedelta(days=30),
    plan_id: str = "plan_monthly",
) -> SubscriptionEvent:
    return SubscriptionEvent(
        account_id=account_id,
        external_subscription_id=subscription_id,
        event_type=event_type,
        sequence=seq,
        status=status,
        period_start=period_start,
        period_end=period_end,
        plan_id=plan_id,
    )


def event_payload(seq: int, event_type: str = "created", **overrides) -> dict:
    payload = {
        "account_id": ACCOUNT_ID,
        "external_subscription_id": SUB_X,
        "event_type": event_type,
        "sequence": seq,
        "status": "active",
        "period_start": int(T0.timestamp()),
        "period_end": int((T0 + timedelta(days=30)).timestamp()),
        "plan_id": "plan_monthly",
    }
    payload.update(overrides)
    return payload


def identity_token(secret: str = IDENTITY_SECRET, **claims) -> str:
    """HS256 identity token for ACCOUNT_ID; pass a claim as None to drop it."""
    payload = {
        "sub": ACCOUNT_ID,
        "email": "user@example.com",
        "name": "Test User",
        # PyJWT checks exp against the wall clock
        "exp": int(time.time()) + 3600,
    }
    payload.update(claims)
    payload = {key: value for key, value in payload.items() if value is not None}
    return jwt.encode(payload, secret, algorithm="HS256")


class FlakyStore(InMemoryRecordStore):
    """In-memory store whose reads/writes fail a configurable number of times."""

    def __init__(self, put_failures: int = 0, get_failures: int = 0) -> None:
        super().__init__()
        self.put_failures = put_failures
        self.get_failures = get_failures
        self.put_calls = 0

    def get(self, account_id):
        if self.get_failures > 0:
            self.get_failures -= 1
            raise StoreUnavailableError("read timeout")
        return super().get(account_id)

    def put(self, record, expected_version=None):
        self.put_calls += 1
        if self.put_failures > 0:
            self.put_failures -= 1
            raise StoreUnavailableError("write timeout")
        return super().put(record, expected_version)


@pytest.fixture
def clock():
    return FixedClock(T0)


@pytest.fixture
def store():
    return InMemoryRecordStore()


@pytest.fixture
def locks():
    return AccountLockRegistry()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def service(store, clock, locks, sleeps):
    return AccessQueryService(
        store,
        clock=clock,
        locks=locks,
        retry_policy=FAST_RETRY,
        sleep=sleeps.append,
    )


@pytest.fixture
def reconciler(store, clock, locks, sleeps):
    return EventReconciler(
        store,
        clock=clock,
        locks=locks,
        retry_policy=FAST_RETRY,
        sleep=sleeps.append,
    )


@pytest.fixture
def registered(service):
    return service.register_account(
        AccountProfile(account_id=ACCOUNT_ID, email="user@example.com", display_name="Test User")
    )
