"""
Tests for record stores: compare-and-swap semantics, codec, backend errors.

Redis is replaced by an in-process fake (no server needed); the SQL store
runs against SQLite (in memory, or a file when the pool itself is under test).
"""

from dataclasses import replace
from datetime import timedelta

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import WatchError
from sqlalchemy import create_engine
from sqlalchemy.pool import QueuePool, StaticPool

from conftest import ACCOUNT_ID, FAST_RETRY, SUB_X, T0, make_event
from subscription_access.engine import apply_subscription_event, start_trial
from subscription_access.errors import StoreUnavailableError, VersionConflictError
from subscription_access.models import EntitlementRecord
from subscription_access.reconciler import EventReconciler
from subscription_access.redis_store import INDEX_KEY, RedisRecordStore
from subscription_access.sql_store import SqlRecordStore
from subscription_access.store import (
    RECORD_SCHEMA_VERSION,
    InMemoryRecordStore,
    build_store_from_env,
    decode_record,
    encode_record,
)


class _FakePipeline:
    def __init__(self, fake):
        self._fake = fake
        self._watched = {}
        self._queue = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.reset()
        return False

    def reset(self):
        self._watched = {}
        self._queue = None

    def watch(self, *keys):
        self._fake.check_up()
        for key in keys:
            self._watched[key] = self._fake.store.get(key)

    def unwatch(self):
        self._watched = {}

    def get(self, key):
        return self._fake.get(key)

    def multi(self):
        self._queue = []

    def set(self, key, value):
        self._queue.append(("set", key, value))

    def sadd(self, key, member):
        self._queue.append(("sadd", key, member))

    def execute(self):
        hook, self._fake.before_execute = self._fake.before_execute, None
        if hook is not None:
            hook()
        for key, value in self._watched.items():
            if self._fake.store.get(key) != value:
                raise WatchError("Watched variable changed.")
        for op, key, value in self._queue:
            if op == "set":
                self._fake.store[key] = value
            else:
                self._fake.sets.setdefault(key, set()).add(value)
        return [True] * len(self._queue)


class _FakeRedis:
    def __init__(self):
        self.store = {}
        self.sets = {}
        self.down = False
        self.before_execute = None

    def check_up(self):
        if self.down:
            raise RedisConnectionError("connection refused")

    def get(self, key):
        self.check_up()
        return self.store.get(key)

    def smembers(self, key):
        self.check_up()
        return set(self.sets.get(key, set()))

    def pipeline(self):
        return _FakePipeline(self)


def _record(account_id=ACCOUNT_ID) -> EntitlementRecord:
    return EntitlementRecord(account_id=account_id, email="a@example.com", created_at=T0)


def _sqlite_store() -> SqlRecordStore:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    return SqlRecordStore(engine=engine)


def _single_connection_engine(tmp_path):
    return create_engine(
        f"sqlite:///{tmp_path / 'records.db'}",
        poolclass=QueuePool,
        pool_size=1,
        max_overflow=0,
        pool_timeout=0.05,
    )


@pytest.fixture(params=["memory", "redis", "sql"])
def any_store(request):
    if request.param == "memory":
        return InMemoryRecordStore()
    if request.param == "redis":
        return RedisRecordStore(client=_FakeRedis())
    return _sqlite_store()


class TestStoreContract:
    def test_get_unknown_returns_none(self, any_store):
        assert any_store.get("missing") is None

    def test_create_then_read(self, any_store):
        stored = any_store.put(_record(), expected_version=0)

        assert stored.version == 1
        loaded = any_store.get(ACCOUNT_ID)
        assert loaded.version == 1
        assert loaded.same_state_as(_record())

    def test_create_twice_conflicts(self, any_store):
        any_store.put(_record(), expected_version=0)
        with pytest.raises(VersionConflictError):
            any_store.put(_record(), expected_version=0)

    def test_compare_and_swap(self, any_store):
        v1 = any_store.put(_record(), expected_version=0)
        trial_started = start_trial(v1, T0)

        v2 = any_store.put(trial_started, expected_version=1)
        assert v2.version == 2

        with pytest.raises(VersionConflictError):
            any_store.put(trial_started, expected_version=1)
        assert any_store.get(ACCOUNT_ID).version == 2

    def test_unconditional_put(self, any_store):
        any_store.put(_record())
        any_store.put(_record())
        assert any_store.get(ACCOUNT_ID).version == 2

    def test_account_ids(self, any_store):
        any_store.put(_record("b"))
        any_store.put(_record("a"))
        assert list(any_store.account_ids()) == ["a", "b"]

    def test_round_trips_full_record(self, any_store):
        record = replace(start_trial(_record(), T0), last_sign_in_at=T0 + timedelta(hours=2))
        record, _ = apply_subscription_event(record, make_event(3))
        any_store.put(record)

        loaded = any_store.get(ACCOUNT_ID)

        assert loaded.same_state_as(record)
        assert loaded.last_sequence_for(SUB_X) == 3
        assert loaded.trial.ends_at == T0 + timedelta(days=7)
        assert loaded.last_sign_in_at == T0 + timedelta(hours=2)

    def test_reconciler_end_to_end(self, any_store, clock):
        reconciler = EventReconciler(any_store, clock=clock)
        assert reconciler.apply(make_event(1)).applied is True
        assert reconciler.apply(make_event(1)).applied is False
        assert any_store.get(ACCOUNT_ID).version == 1


class TestRecordCodec:
    def test_encode_includes_schema_version(self):
        payload = encode_record(_record())
        assert payload["schema_version"] == RECORD_SCHEMA_VERSION
        assert payload["subscription"] is None

    def test_decode_rejects_unknown_schema(self):
        payload = encode_record(_record())
        payload["schema_version"] = 999
        with pytest.raises(ValueError):
            decode_record(payload)


class TestRedisStore:
    def test_watch_error_becomes_version_conflict(self):
        fake = _FakeRedis()
        store = RedisRecordStore(client=fake)
        store.put(_record(), expected_version=0)

        def concurrent_writer():
            fake.store[f"entitlements:record:v1:{ACCOUNT_ID}"] = "{\"version\": 7}"

        fake.before_execute = concurrent_writer
        with pytest.raises(VersionConflictError):
            store.put(_record(), expected_version=1)

    def test_index_tracks_accounts(self):
        fake = _FakeRedis()
        RedisRecordStore(client=fake).put(_record())
        assert fake.sets[INDEX_KEY] == {ACCOUNT_ID}

    def test_connection_errors_become_store_unavailable(self):
        fake = _FakeRedis()
        store = RedisRecordStore(client=fake)
        fake.down = True

        with pytest.raises(StoreUnavailableError):
            store.get(ACCOUNT_ID)
        with pytest.raises(StoreUnavailableError):
            store.put(_record())
        with pytest.raises(StoreUnavailableError):
            list(store.account_ids())

    def test_requires_url_or_client(self):
        with pytest.raises(ValueError):
            RedisRecordStore()


class TestSqlStore:
    def test_pool_timeout_becomes_store_unavailable(self, tmp_path):
        engine = _single_connection_engine(tmp_path)
        store = SqlRecordStore(engine=engine)
        held = engine.connect()
        try:
            with pytest.raises(StoreUnavailableError):
                store.get(ACCOUNT_ID)
            with pytest.raises(StoreUnavailableError):
                store.put(_record())
            with pytest.raises(StoreUnavailableError):
                list(store.account_ids())
        finally:
            held.close()
            engine.dispose()

    def test_store_recovers_once_pool_frees_up(self, tmp_path, clock):
        engine = _single_connection_engine(tmp_path)
        store = SqlRecordStore(engine=engine)
        held = engine.connect()
        reconciler = EventReconciler(
            store,
            clock=clock,
            retry_policy=FAST_RETRY,
            sleep=lambda seconds: held.close(),
        )

        # first read times out; the backoff sleep releases the pool
        assert reconciler.apply(make_event(1)).applied is True
        assert store.get(ACCOUNT_ID).last_sequence_for(SUB_X) == 1
        engine.dispose()


class TestBuildStore:
    def test_memory_backend(self):
        assert isinstance(build_store_from_env("memory"), InMemoryRecordStore)

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            build_store_from_env("cassandra")
