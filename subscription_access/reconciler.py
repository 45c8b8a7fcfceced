"""
Subscription event reconciliation.

Applies provider lifecycle events to entitlement records:
- duplicates and superseded deliveries are successful no-ops
- per-account serialization via an in-process lock plus version compare-and-swap
- version conflicts re-read and re-apply (no backoff)
- transient store failures retried with bounded exponential backoff; on
  exhaustion the stored record is left untouched so redelivery can retry

Malformed events and subscription identity mismatches are rejected and never
retried here; retry is the event source's responsibility.

Usage:
    reconciler = EventReconciler(store, clock=SystemClock())
    outcome = reconciler.apply_payload(webhook_json)
    outcome.applied  # False for duplicates
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

from .clock import Clock, SystemClock
from .engine import apply_subscription_event
from .errors import (
    MalformedEventError,
    StoreUnavailableError,
    SubscriptionIdentityMismatchError,
    VersionConflictError,
)
from .locking import AccountLockRegistry
from .models import EntitlementRecord, SubscriptionEvent
from .retry import RetryPolicy, call_with_retry
from .schemas import parse_subscription_event
from .store import RecordStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconcileOutcome:
    account_id: str
    applied: bool
    record: EntitlementRecord

    def to_dict(self) -> dict:
        return {"applied": self.applied}


class EventReconciler:
    """Applies subscription lifecycle events idempotently, one account at a time."""

    def __init__(
        self,
        store: RecordStore,
        *,
        clock: Optional[Clock] = None,
        locks: Optional[AccountLockRegistry] = None,
        retry_policy: Optional[RetryPolicy] = None,
        audit_sink: Optional[Callable[[str, dict], None]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self.locks = locks or AccountLockRegistry()
        self.retry_policy = retry_policy or RetryPolicy()
        self._audit_sink = audit_sink or (lambda event, payload: None)
        self._sleep = sleep

    def apply_payload(self, payload: Mapping[str, Any]) -> ReconcileOutcome:
        try:
            event = parse_subscription_event(payload)
        except MalformedEventError as exc:
            logger.warning("Rejected malformed subscription event", extra={"fields": exc.fields})
            self._audit_sink("subscription_event.malformed", {"fields": exc.fields})
            raise
        return self.apply(event)

    def apply(self, event: SubscriptionEvent) -> ReconcileOutcome:
        context = event.log_context()
        with self.locks.hold(event.account_id):
            try:
                return self._apply_locked(event, context)
            except StoreUnavailableError:
                # read or write retries exhausted; the stored record is untouched
                self._audit_sink("subscription_event.store_unavailable", context)
                raise

    def _apply_locked(self, event: SubscriptionEvent, context: dict) -> ReconcileOutcome:
        while True:
            record = self._load(event.account_id, context)
            try:
                updated, applied = apply_subscription_event(record, event, now=self.clock.now())
            except (SubscriptionIdentityMismatchError, MalformedEventError) as exc:
                logger.warning(
                    "Rejected subscription event",
                    extra={**context, "error_code": exc.error_code},
                )
                self._audit_sink("subscription_event.rejected", {**context, "error_code": exc.error_code})
                raise

            if not applied:
                logger.info(
                    "Ignored duplicate or superseded subscription event",
                    extra={**context, "last_applied_sequence": record.last_sequence_for(event.external_subscription_id)},
                )
                self._audit_sink("subscription_event.duplicate", context)
                return ReconcileOutcome(account_id=record.account_id, applied=False, record=record)

            try:
                stored = call_with_retry(
                    lambda: self.store.put(updated, expected_version=record.version),
                    policy=self.retry_policy,
                    sleep=self._sleep,
                    context=context,
                )
            except VersionConflictError:
                logger.info("Concurrent record update, re-applying event", extra=context)
                continue

            logger.info(
                "Applied subscription event",
                extra={**context, "subscription_state": stored.subscription.state.value},
            )
            self._audit_sink("subscription_event.applied", context)
            return ReconcileOutcome(account_id=stored.account_id, applied=True, record=stored)

    def _load(self, account_id: str, context: dict) -> EntitlementRecord:
        record = call_with_retry(
            lambda: self.store.get(account_id),
            policy=self.retry_policy,
            sleep=self._sleep,
            context=context,
        )
        if record is None:
            logger.info("Subscription event for unregistered account, creating record", extra=context)
            record = EntitlementRecord(account_id=account_id, created_at=self.clock.now())
        return record
