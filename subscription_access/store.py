"""
Entitlement record store contract, in-memory reference store and record codec.

Stores must give read-after-write consistency per account and support
compare-and-swap on the record version:

- put(record, expected_version=None) writes unconditionally
- put(record, expected_version=0) creates, failing if the account exists
- put(record, expected_version=n) succeeds only if the stored version is n

The returned record carries the new version.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from threading import RLock
from typing import Dict, Iterator, Optional

from . import config
from .errors import VersionConflictError
from .models import (
    EntitlementRecord,
    SubscriptionInfo,
    SubscriptionState,
    TrialInfo,
    TrialState,
)

logger = logging.getLogger(__name__)

RECORD_SCHEMA_VERSION = 1


class RecordStore(ABC):
    """Durable per-account storage for entitlement records."""

    @abstractmethod
    def get(self, account_id: str) -> Optional[EntitlementRecord]:
        """Return the latest record or None when the account is unknown."""

    @abstractmethod
    def put(self, record: EntitlementRecord, expected_version: Optional[int] = None) -> EntitlementRecord:
        """Persist the record; raises VersionConflictError or StoreUnavailableError."""

    @abstractmethod
    def account_ids(self) -> Iterator[str]:
        """Iterate known account ids."""

    @staticmethod
    def _require_account_id(account_id: str) -> str:
        normalized = str(account_id).strip()
        if not normalized:
            raise ValueError("account_id is required")
        return normalized


class InMemoryRecordStore(RecordStore):
    """Thread-safe single-process store. Reference implementation and test double."""

    def __init__(self) -> None:
        self._records: Dict[str, EntitlementRecord] = {}
        self._lock = RLock()

    def get(self, account_id: str) -> Optional[EntitlementRecord]:
        normalized = self._require_account_id(account_id)
        with self._lock:
            return self._records.get(normalized)

    def put(self, record: EntitlementRecord, expected_version: Optional[int] = None) -> EntitlementRecord:
        with self._lock:
            existing = self._records.get(record.account_id)
            current_version = existing.version if existing is not None else 0
            if expected_version is not None and expected_version != current_version:
                raise VersionConflictError(record.account_id, expected_version, current_version)
            stored = record.with_version(current_version + 1)
            self._records[record.account_id] = stored
            return stored

    def account_ids(self) -> Iterator[str]:
        with self._lock:
            ids = sorted(self._records)
        return iter(ids)


def _dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def encode_record(record: EntitlementRecord) -> dict:
    sub = record.subscription
    return {
        "schema_version": RECORD_SCHEMA_VERSION,
        "account_id": record.account_id,
        "version": record.version,
        "email": record.email,
        "display_name": record.display_name,
        "created_at": _dt(record.created_at),
        "last_sign_in_at": _dt(record.last_sign_in_at),
        "trial": {
            "state": record.trial.state.value,
            "started_at": _dt(record.trial.started_at),
            "ends_at": _dt(record.trial.ends_at),
        },
        "subscription": None
        if sub is None
        else {
            "state": sub.state.value,
            "plan_id": sub.plan_id,
            "external_subscription_id": sub.external_subscription_id,
            "current_period_start": _dt(sub.current_period_start),
            "current_period_end": _dt(sub.current_period_end),
        },
        "last_applied_event_seq": dict(record.last_applied_event_seq),
    }


def decode_record(raw: dict) -> EntitlementRecord:
    if int(raw.get("schema_version", RECORD_SCHEMA_VERSION)) != RECORD_SCHEMA_VERSION:
        raise ValueError("Unsupported entitlement record schema version")

    trial_raw = raw.get("trial") or {}
    trial = TrialInfo(
        state=TrialState(trial_raw.get("state", TrialState.NOT_STARTED.value)),
        started_at=_parse_dt(trial_raw.get("started_at")),
        ends_at=_parse_dt(trial_raw.get("ends_at")),
    )

    sub_raw = raw.get("subscription")
    subscription = None
    if sub_raw:
        subscription = SubscriptionInfo(
            state=SubscriptionState(sub_raw["state"]),
            plan_id=sub_raw.get("plan_id") or "",
            external_subscription_id=sub_raw["external_subscription_id"],
            current_period_start=_parse_dt(sub_raw.get("current_period_start")),
            current_period_end=_parse_dt(sub_raw.get("current_period_end")),
        )

    return EntitlementRecord(
        account_id=raw["account_id"],
        trial=trial,
        subscription=subscription,
        last_applied_event_seq={k: int(v) for k, v in (raw.get("last_applied_event_seq") or {}).items()},
        email=raw.get("email") or "",
        display_name=raw.get("display_name") or "",
        created_at=_parse_dt(raw.get("created_at")),
        last_sign_in_at=_parse_dt(raw.get("last_sign_in_at")),
        version=int(raw.get("version", 0)),
    )


def build_store_from_env(backend: Optional[str] = None) -> RecordStore:
    """Build the store selected by ENTITLEMENT_STORE_BACKEND."""
    backend = (backend or config.ENTITLEMENT_STORE_BACKEND).lower()
    if backend == "memory":
        return InMemoryRecordStore()
    if backend == "redis":
        from .redis_store import RedisRecordStore

        return RedisRecordStore(redis_url=config.REDIS_URL)
    if backend == "sql":
        from .sql_store import SqlRecordStore

        return SqlRecordStore(database_url=config.DATABASE_URL)
    raise ValueError(f"unknown entitlement store backend: {backend}")
