"""
Redis-backed entitlement record store.

One JSON document per account. Compare-and-swap uses WATCH/MULTI so writers in
different processes serialize on the record version.
"""

from __future__ import annotations

import json
import logging
from typing import Iterator, Optional

import redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError

from .errors import StoreUnavailableError, VersionConflictError
from .models import EntitlementRecord
from .store import RecordStore, decode_record, encode_record

logger = logging.getLogger(__name__)

KEY_PREFIX = "entitlements:record:v1:"
INDEX_KEY = "entitlements:accounts"


class RedisRecordStore(RecordStore):
    def __init__(self, redis_url: Optional[str] = None, client=None) -> None:
        if client is None:
            if not redis_url:
                raise ValueError("redis_url or client is required")
            client = redis.from_url(redis_url, decode_responses=True)
        self._redis = client

    @staticmethod
    def _key(account_id: str) -> str:
        return f"{KEY_PREFIX}{account_id}"

    def get(self, account_id: str) -> Optional[EntitlementRecord]:
        normalized = self._require_account_id(account_id)
        try:
            raw = self._redis.get(self._key(normalized))
        except (RedisConnectionError, RedisTimeoutError) as exc:
            logger.warning("Entitlement store read failed", extra={"account_id": normalized, "error": str(exc)})
            raise StoreUnavailableError(cause=exc) from exc
        if not raw:
            return None
        return decode_record(json.loads(raw))

    def put(self, record: EntitlementRecord, expected_version: Optional[int] = None) -> EntitlementRecord:
        key = self._key(record.account_id)
        try:
            with self._redis.pipeline() as pipe:
                pipe.watch(key)
                raw = pipe.get(key)
                current_version = int(json.loads(raw).get("version", 0)) if raw else 0
                if expected_version is not None and expected_version != current_version:
                    pipe.unwatch()
                    raise VersionConflictError(record.account_id, expected_version, current_version)

                stored = record.with_version(current_version + 1)
                pipe.multi()
                pipe.set(key, json.dumps(encode_record(stored)))
                pipe.sadd(INDEX_KEY, record.account_id)
                pipe.execute()
                return stored
        except WatchError as exc:
            # another writer changed the key between WATCH and EXEC
            raise VersionConflictError(record.account_id, expected_version, None) from exc
        except (RedisConnectionError, RedisTimeoutError) as exc:
            logger.warning(
                "Entitlement store write failed",
                extra={"account_id": record.account_id, "error": str(exc)},
            )
            raise StoreUnavailableError(cause=exc) from exc

    def account_ids(self) -> Iterator[str]:
        try:
            members = self._redis.smembers(INDEX_KEY)
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise StoreUnavailableError(cause=exc) from exc
        return iter(sorted(members))
