"""
Trial and subscription entitlement resolution.

This package provides:
- Entitlement engine: pure trial/subscription transitions and access verdicts
- EventReconciler: idempotent, order-tolerant application of provider events
- AccessQueryService: read path with lazy trial-expiry write-back, sign-in registration
- IdentityVerifier: turns identity tokens into account profiles (JWT by default)
- RecordStore: in-memory, Redis and SQL stores with version compare-and-swap
- create_app: FastAPI app exposing the entitlement endpoints

Trial length: 7 days (configurable via TRIAL_LENGTH_DAYS)
"""

from subscription_access.clock import Clock, FixedClock, SystemClock
from subscription_access.engine import (
    apply_subscription_event,
    compute_access,
    days_remaining,
    map_provider_status,
    start_trial,
)
from subscription_access.errors import (
    AccountNotFoundError,
    AlreadyEntitledError,
    EntitlementError,
    InvalidIdentityTokenError,
    MalformedEventError,
    StoreError,
    StoreUnavailableError,
    SubscriptionIdentityMismatchError,
    SubscriptionNotFoundError,
    TrialAlreadyConsumedError,
    VersionConflictError,
)
from subscription_access.identity import IdentityVerifier, JwtIdentityVerifier
from subscription_access.models import (
    AccessReason,
    AccessVerdict,
    AccountProfile,
    EntitlementRecord,
    EventType,
    SubscriptionEvent,
    SubscriptionInfo,
    SubscriptionState,
    TrialInfo,
    TrialState,
)
from subscription_access.reconciler import EventReconciler, ReconcileOutcome
from subscription_access.retry import RetryPolicy
from subscription_access.schemas import parse_subscription_event
from subscription_access.service import AccessQueryService
from subscription_access.store import InMemoryRecordStore, RecordStore, build_store_from_env

__all__ = [
    # Clock
    "Clock",
    "FixedClock",
    "SystemClock",
    # Engine
    "apply_subscription_event",
    "compute_access",
    "days_remaining",
    "map_provider_status",
    "start_trial",
    # Errors
    "AccountNotFoundError",
    "AlreadyEntitledError",
    "EntitlementError",
    "InvalidIdentityTokenError",
    "MalformedEventError",
    "StoreError",
    "StoreUnavailableError",
    "SubscriptionIdentityMismatchError",
    "SubscriptionNotFoundError",
    "TrialAlreadyConsumedError",
    "VersionConflictError",
    # Identity
    "IdentityVerifier",
    "JwtIdentityVerifier",
    # Models
    "AccessReason",
    "AccessVerdict",
    "AccountProfile",
    "EntitlementRecord",
    "EventType",
    "SubscriptionEvent",
    "SubscriptionInfo",
    "SubscriptionState",
    "TrialInfo",
    "TrialState",
    # Reconciler
    "EventReconciler",
    "ReconcileOutcome",
    "RetryPolicy",
    "parse_subscription_event",
    # Service
    "AccessQueryService",
    # Store
    "InMemoryRecordStore",
    "RecordStore",
    "build_store_from_env",
]
