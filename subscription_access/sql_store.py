"""
SQLAlchemy-backed entitlement record store.

The record document is kept as JSON next to a version column. Writes are
conditional UPDATEs on the version, so concurrent processes get optimistic
concurrency without holding row locks.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Iterator, Optional

from sqlalchemy import Column, DateTime, Integer, String, Text, create_engine, insert, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import declarative_base

from .errors import StoreUnavailableError, VersionConflictError
from .models import EntitlementRecord
from .store import RecordStore, decode_record, encode_record

logger = logging.getLogger(__name__)

# Connection loss, lock timeouts and pool exhaustion all mean "try again later"
_UNAVAILABLE_ERRORS = (OperationalError, InterfaceError, PoolTimeoutError)

Base = declarative_base()


class EntitlementRecordRow(Base):
    """Persisted entitlement record. One row per account, never deleted."""

    __tablename__ = "entitlement_records"

    account_id = Column(String(255), primary_key=True, comment="Opaque account identifier")
    version = Column(Integer, nullable=False, default=1, comment="Optimistic concurrency version")
    trial_state = Column(String(32), nullable=False, index=True)
    subscription_state = Column(String(32), nullable=True)
    document = Column(Text, nullable=False, comment="JSON-encoded EntitlementRecord")
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )


class SqlRecordStore(RecordStore):
    def __init__(
        self,
        database_url: Optional[str] = None,
        engine: Optional[Engine] = None,
        create_tables: bool = True,
    ) -> None:
        if engine is None:
            if not database_url:
                raise ValueError("database_url or engine is required")
            engine = create_engine(database_url)
        self._engine = engine
        if create_tables:
            Base.metadata.create_all(self._engine)

    def get(self, account_id: str) -> Optional[EntitlementRecord]:
        normalized = self._require_account_id(account_id)
        try:
            with self._engine.connect() as conn:
                row = conn.execute(
                    select(EntitlementRecordRow.document, EntitlementRecordRow.version).where(
                        EntitlementRecordRow.account_id == normalized
                    )
                ).first()
        except _UNAVAILABLE_ERRORS as exc:
            logger.warning("Entitlement store read failed", extra={"account_id": normalized, "error": str(exc)})
            raise StoreUnavailableError(cause=exc) from exc
        if row is None:
            return None
        return decode_record(json.loads(row.document)).with_version(row.version)

    def put(self, record: EntitlementRecord, expected_version: Optional[int] = None) -> EntitlementRecord:
        try:
            with self._engine.begin() as conn:
                if expected_version is None:
                    expected_version = self._current_version(conn, record.account_id)
                if expected_version == 0:
                    return self._insert(conn, record)
                return self._compare_and_swap(conn, record, expected_version)
        except _UNAVAILABLE_ERRORS as exc:
            logger.warning(
                "Entitlement store write failed",
                extra={"account_id": record.account_id, "error": str(exc)},
            )
            raise StoreUnavailableError(cause=exc) from exc

    def account_ids(self) -> Iterator[str]:
        try:
            with self._engine.connect() as conn:
                ids = conn.execute(
                    select(EntitlementRecordRow.account_id).order_by(EntitlementRecordRow.account_id)
                ).scalars().all()
        except _UNAVAILABLE_ERRORS as exc:
            raise StoreUnavailableError(cause=exc) from exc
        return iter(ids)

    @staticmethod
    def _current_version(conn, account_id: str) -> int:
        version = conn.execute(
            select(EntitlementRecordRow.version).where(EntitlementRecordRow.account_id == account_id)
        ).scalar()
        return int(version) if version is not None else 0

    @staticmethod
    def _values(record: EntitlementRecord) -> dict:
        return {
            "trial_state": record.trial.state.value,
            "subscription_state": record.subscription.state.value if record.subscription else None,
            "document": json.dumps(encode_record(record)),
            "updated_at": datetime.now(timezone.utc),
        }

    def _insert(self, conn, record: EntitlementRecord) -> EntitlementRecord:
        stored = record.with_version(1)
        try:
            conn.execute(
                insert(EntitlementRecordRow).values(
                    account_id=record.account_id,
                    version=1,
                    **self._values(stored),
                )
            )
        except IntegrityError as exc:
            # row appeared concurrently; the transaction is rolled back by the caller
            raise VersionConflictError(record.account_id, 0, None) from exc
        return stored

    def _compare_and_swap(self, conn, record: EntitlementRecord, expected_version: int) -> EntitlementRecord:
        stored = record.with_version(expected_version + 1)
        result = conn.execute(
            update(EntitlementRecordRow)
            .where(
                EntitlementRecordRow.account_id == record.account_id,
                EntitlementRecordRow.version == expected_version,
            )
            .values(version=expected_version + 1, **self._values(stored))
        )
        if result.rowcount != 1:
            actual = self._current_version(conn, record.account_id)
            raise VersionConflictError(record.account_id, expected_version, actual)
        return stored
