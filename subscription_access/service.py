"""
Access query service: the read path and trial start for callers.

Reads may write: a lapsed trial observed during a query is persisted as
expired before the verdict is returned. All writes run under the per-account
lock with version compare-and-swap, and share the lock registry with the
event reconciler when both are wired together.
"""

from __future__ import annotations

import logging
import time
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Optional

from . import config
from .clock import Clock, SystemClock
from .engine import compute_access, observe_trial_expiry, start_trial
from .errors import AccountNotFoundError, SubscriptionNotFoundError, VersionConflictError
from .locking import AccountLockRegistry
from .models import AccessVerdict, AccountProfile, EntitlementRecord, SubscriptionInfo, TrialInfo
from .retry import RetryPolicy, call_with_retry
from .store import RecordStore

logger = logging.getLogger(__name__)


class AccessQueryService:
    def __init__(
        self,
        store: RecordStore,
        *,
        clock: Optional[Clock] = None,
        locks: Optional[AccountLockRegistry] = None,
        retry_policy: Optional[RetryPolicy] = None,
        trial_length: Optional[timedelta] = None,
        audit_sink: Optional[Callable[[str, dict], None]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self.locks = locks or AccountLockRegistry()
        self.retry_policy = retry_policy or RetryPolicy()
        self.trial_length = trial_length or config.TRIAL_LENGTH
        self._audit_sink = audit_sink or (lambda event, payload: None)
        self._sleep = sleep

    def query_access(self, account_id: str) -> AccessVerdict:
        """Current verdict for the account. Persists trial expiry when observed."""
        account_id = _require_account_id(account_id)
        now = self.clock.now()
        record = self.get_record(account_id)
        verdict, observed = compute_access(record, now)
        if observed is not record:
            self._persist_trial_expiry(account_id, now)
        return verdict

    def request_trial_start(self, account_id: str) -> TrialInfo:
        """Start the account's single trial. Raises AlreadyEntitledError or TrialAlreadyConsumedError."""
        account_id = _require_account_id(account_id)
        context = {"account_id": account_id}
        with self.locks.hold(account_id):
            while True:
                now = self.clock.now()
                record = self.get_record(account_id)
                updated = start_trial(record, now, self.trial_length)
                try:
                    stored = self._put(updated, record.version, context)
                except VersionConflictError:
                    continue
                logger.info(
                    "Trial started",
                    extra={**context, "trial_ends_at": stored.trial.ends_at.isoformat()},
                )
                self._audit_sink("trial.started", {**context, "ends_at": stored.trial.ends_at.isoformat()})
                return stored.trial

    def register_account(self, profile: AccountProfile) -> EntitlementRecord:
        """
        Create the record on first verified sign-in; refresh profile fields and
        the sign-in time later.

        Trial and subscription state are never changed here, except that a
        lapsed trial is recorded as expired.
        """
        context = {"account_id": profile.account_id}
        with self.locks.hold(profile.account_id):
            while True:
                now = self.clock.now()
                existing = self._get(profile.account_id, context)
                if existing is None:
                    candidate = EntitlementRecord(
                        account_id=profile.account_id,
                        email=profile.email,
                        display_name=profile.display_name,
                        created_at=now,
                        last_sign_in_at=now,
                    )
                    expected_version = 0
                else:
                    candidate = replace(
                        observe_trial_expiry(existing, now),
                        email=profile.email or existing.email,
                        display_name=profile.display_name or existing.display_name,
                        last_sign_in_at=now,
                    )
                    if candidate.same_state_as(existing):
                        return existing
                    expected_version = existing.version

                try:
                    stored = self._put(candidate, expected_version, context)
                except VersionConflictError:
                    continue
                if existing is None:
                    logger.info("Registered account", extra=context)
                    self._audit_sink("account.registered", context)
                return stored

    def get_record(self, account_id: str) -> EntitlementRecord:
        account_id = _require_account_id(account_id)
        record = self._get(account_id, {"account_id": account_id})
        if record is None:
            raise AccountNotFoundError(account_id)
        return record

    def get_subscription(self, account_id: str) -> SubscriptionInfo:
        """Bound subscription for the account. Raises SubscriptionNotFoundError when none."""
        record = self.get_record(account_id)
        if record.subscription is None:
            raise SubscriptionNotFoundError(record.account_id)
        return record.subscription

    def expire_lapsed_trial(self, account_id: str) -> bool:
        """Persist expiry if the account's trial has lapsed. Returns True when written."""
        return self._persist_trial_expiry(_require_account_id(account_id), self.clock.now())

    def _persist_trial_expiry(self, account_id: str, now: datetime) -> bool:
        context = {"account_id": account_id}
        with self.locks.hold(account_id):
            while True:
                current = self.get_record(account_id)
                observed = observe_trial_expiry(current, now)
                if observed is current:
                    return False
                try:
                    self._put(observed, current.version, context)
                except VersionConflictError:
                    continue
                logger.info("Trial expired", extra=context)
                self._audit_sink("trial.expired", context)
                return True

    def _get(self, account_id: str, context: dict) -> Optional[EntitlementRecord]:
        return call_with_retry(
            lambda: self.store.get(account_id),
            policy=self.retry_policy,
            sleep=self._sleep,
            context=context,
        )

    def _put(self, record: EntitlementRecord, expected_version: int, context: dict) -> EntitlementRecord:
        return call_with_retry(
            lambda: self.store.put(record, expected_version=expected_version),
            policy=self.retry_policy,
            sleep=self._sleep,
            context=context,
        )


def _require_account_id(account_id: str) -> str:
    normalized = str(account_id).strip()
    if not normalized:
        raise ValueError("account_id is required")
    return normalized
