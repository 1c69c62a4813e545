import json
from contextlib import contextmanager
from datetime import timedelta

import pytest
from psycopg import errors

from tessra.logging import get_logger
from tessra.storage.errors import DurableStoreUnavailableError
from tessra.storage.models import JOB_ACTIVE, BackoffPolicy, Session, utcnow
from tessra.storage.postgres import PostgresStore


class FakeResult:
    def __init__(self, rows=(), rowcount=0):
        self.rows = list(rows)
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    def __init__(self, *results):
        self.results = list(results)
        self.executed = []

    def execute(self, sql, params=None):
        self.executed.append((" ".join(sql.split()), params))
        if self.results:
            outcome = self.results.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return FakeResult()

    @contextmanager
    def transaction(self):
        yield


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    @contextmanager
    def connection(self):
        yield self.conn


class UnreachablePool:
    @contextmanager
    def connection(self):
        raise errors.OperationalError("connection refused")
        yield  # pragma: no cover


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://unit-test"
    store.pool = pool
    store.logger = get_logger("tests.postgres")
    return store


def _job_row(**overrides):
    now = utcnow()
    row = {
        "id": 7,
        "name": "ocr:process",
        "payload": json.dumps({"upload_id": "u1"}),
        "status": JOB_ACTIVE,
        "attempts_made": 1,
        "max_attempts": 3,
        "backoff": json.dumps({"type": "fixed", "delay_ms": 500}),
        "priority": 0,
        "available_at": now,
        "leased_until": now + timedelta(seconds=60),
        "worker_id": "worker-1",
        "last_error": None,
        "result": None,
        "created_at": now,
        "updated_at": now,
        "finished_at": None,
    }
    row.update(overrides)
    return row


def test_replace_sessions_deletes_then_inserts_in_a_transaction():
    conn = FakeConnection(FakeResult(rowcount=2), FakeResult(rowcount=1))
    session = Session.new()

    _store(FakePool(conn)).replace_sessions(session)

    assert conn.executed[0][0] == "DELETE FROM sessions"
    assert conn.executed[1][0].startswith("INSERT INTO sessions")
    assert conn.executed[1][1][0] == session.token


def test_touch_session_is_a_conditional_update():
    now = utcnow()
    cutoff = now - timedelta(hours=24)
    conn = FakeConnection(FakeResult(rowcount=1), FakeResult(rowcount=0))
    store = _store(FakePool(conn))

    assert store.touch_session("tok", now=now, idle_cutoff=cutoff) is True
    assert store.touch_session("tok", now=now, idle_cutoff=cutoff) is False
    sql, params = conn.executed[0]
    assert "expires_at > %s AND last_activity_at > %s" in sql
    assert params == (now, "tok", now, cutoff)


def test_claim_uses_skip_locked_and_priority_order():
    now = utcnow()
    conn = FakeConnection(FakeResult([_job_row()]))

    job = _store(FakePool(conn)).claim_next_job("worker-1", lease_seconds=60, now=now)

    sql, params = conn.executed[0]
    assert "FOR UPDATE SKIP LOCKED" in sql
    assert "ORDER BY priority ASC, available_at ASC, id ASC" in sql
    assert params["leased_until"] == now + timedelta(seconds=60)
    assert "stalled_count < %(max_stalled)s" in sql
    assert "stalled_count = jobs.stalled_count + CASE WHEN jobs.status = %(active)s THEN 1 ELSE 0 END" in sql
    assert params["max_stalled"] == 1
    assert job.id == 7
    assert job.payload == {"upload_id": "u1"}
    assert job.backoff == BackoffPolicy(type="fixed", delay_ms=500)


def test_claim_returns_none_when_idle():
    conn = FakeConnection(FakeResult([]))
    assert _store(FakePool(conn)).claim_next_job("w", lease_seconds=60) is None


def test_fail_stalled_jobs_marks_over_limit_leases_failed():
    now = utcnow()
    conn = FakeConnection(FakeResult([_job_row(status="failed", last_error="stalled", stalled_count=2)]))

    failed = _store(FakePool(conn)).fail_stalled_jobs(now=now, max_stalled_count=2)

    sql, params = conn.executed[0]
    assert sql.startswith("UPDATE jobs SET status = %(failed)s")
    assert "leased_until < %(now)s AND stalled_count >= %(max_stalled)s" in sql
    assert params["error"] == "stalled"
    assert params["max_stalled"] == 2
    assert [job.stalled_count for job in failed] == [2]
    assert failed[0].last_error == "stalled"


def test_enqueue_serializes_payload_and_backoff():
    conn = FakeConnection(FakeResult([_job_row(status="waiting", attempts_made=0)]))
    _store(FakePool(conn)).enqueue_job(
        "ocr:process", {"upload_id": "u1"}, backoff=BackoffPolicy(delay_ms=500), priority=2
    )

    params = conn.executed[0][1]
    assert json.loads(params[1]) == {"upload_id": "u1"}
    assert json.loads(params[4]) == {"type": "exponential", "delay_ms": 500}
    assert params[5] == 2


def test_lease_operations_require_ownership():
    conn = FakeConnection(FakeResult(rowcount=0), FakeResult(rowcount=1))
    store = _store(FakePool(conn))

    assert store.complete_job(7, "stale-worker", result={"ok": True}) is False
    assert store.release_job(7, "worker-1") is True
    for sql, params in conn.executed:
        assert "worker_id = %s" in sql


def test_get_upload_with_malformed_id_is_missing():
    conn = FakeConnection(errors.InvalidTextRepresentation("invalid input syntax for type uuid"))
    assert _store(FakePool(conn)).get_upload("not-a-uuid") is None


def test_connectivity_errors_become_store_unavailable():
    store = _store(UnreachablePool())
    with pytest.raises(DurableStoreUnavailableError) as excinfo:
        store.get_setting("storage_driver")
    assert excinfo.value.backend == "database"
