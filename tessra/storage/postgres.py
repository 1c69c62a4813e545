from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tessra.logging import get_logger
from tessra.storage.errors import ConstraintViolation, DurableStoreUnavailableError
from tessra.storage.models import (
    DEFAULT_MAX_STALLED_COUNT,
    JOB_ACTIVE,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_STALLED_ERROR,
    JOB_WAITING,
    BackoffPolicy,
    Job,
    Session,
    Setting,
    Upload,
    utcnow,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS sessions (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        token TEXT NOT NULL UNIQUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL,
        last_activity_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS settings (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS uploads (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        object_key TEXT NOT NULL,
        mime TEXT NOT NULL,
        size_bytes BIGINT NOT NULL,
        sha256 TEXT NOT NULL,
        visibility TEXT NOT NULL DEFAULT 'private' CHECK (visibility IN ('public', 'private')),
        storage_driver TEXT NOT NULL DEFAULT 'local',
        ocr_text TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS jobs (
        id BIGSERIAL PRIMARY KEY,
        name TEXT NOT NULL,
        payload JSONB NOT NULL DEFAULT '{}'::jsonb,
        status TEXT NOT NULL DEFAULT 'waiting',
        attempts_made INTEGER NOT NULL DEFAULT 0,
        max_attempts INTEGER NOT NULL DEFAULT 3,
        stalled_count INTEGER NOT NULL DEFAULT 0,
        backoff JSONB NOT NULL,
        priority INTEGER NOT NULL DEFAULT 0,
        available_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        leased_until TIMESTAMPTZ,
        worker_id TEXT,
        last_error TEXT,
        result JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        finished_at TIMESTAMPTZ
    )
    """,
    """
    ALTER TABLE jobs ADD COLUMN IF NOT EXISTS stalled_count INTEGER NOT NULL DEFAULT 0
    """,
    """
    CREATE INDEX IF NOT EXISTS jobs_claim_idx
        ON jobs (status, priority, available_at, id)
    """,
)


class PostgresStore:
    """Postgres-backed durable store for sessions, settings, uploads and jobs."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        """Borrow a pooled connection; connectivity failures become store errors.

        The pool commits on clean exit and rolls back when the block raises.
        """
        try:
            with self.pool.connection() as conn:
                yield conn
        except errors.OperationalError as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise DurableStoreUnavailableError(
                "database unavailable", operation="connect"
            ) from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # sessions
    def replace_sessions(self, session: Session) -> Session:
        """Delete every session and insert ``session`` in one transaction."""
        with self._connect() as conn, conn.transaction():
            revoked = conn.execute("DELETE FROM sessions").rowcount
            conn.execute(
                """
                INSERT INTO sessions (token, created_at, expires_at, last_activity_at)
                VALUES (%s, %s, %s, %s)
                """,
                (
                    session.token,
                    session.created_at,
                    session.expires_at,
                    session.last_activity_at,
                ),
            )
        if revoked:
            self.logger.info("sessions_revoked_on_create", count=revoked)
        return session

    def touch_session(self, token: str, *, now: datetime, idle_cutoff: datetime) -> bool:
        """Bump ``last_activity_at`` only if the session is still live."""
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE sessions
                SET last_activity_at = %s
                WHERE token = %s AND expires_at > %s AND last_activity_at > %s
                """,
                (now, token, now, idle_cutoff),
            )
            return result.rowcount == 1

    def delete_session(self, token: str) -> int:
        with self._connect() as conn:
            return conn.execute("DELETE FROM sessions WHERE token = %s", (token,)).rowcount

    def delete_expired_sessions(self, *, now: datetime, idle_cutoff: datetime) -> int:
        with self._connect() as conn:
            return conn.execute(
                "DELETE FROM sessions WHERE expires_at < %s OR last_activity_at < %s",
                (now, idle_cutoff),
            ).rowcount

    # settings
    def get_setting(self, key: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT value FROM settings WHERE key = %s", (key,)
            ).fetchone()
        return row["value"] if row else None

    def upsert_setting(self, key: str, value: str) -> Setting:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO settings (key, value, updated_at)
                VALUES (%s, %s, now())
                ON CONFLICT (key) DO UPDATE
                    SET value = EXCLUDED.value, updated_at = EXCLUDED.updated_at
                RETURNING *
                """,
                (key, value),
            ).fetchone()
        return Setting(key=row["key"], value=row["value"], updated_at=row["updated_at"])

    # uploads
    def create_upload(
        self,
        *,
        object_key: str,
        mime: str,
        size_bytes: int,
        sha256: str,
        visibility: str = "private",
        storage_driver: str = "local",
    ) -> Upload:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO uploads (object_key, mime, size_bytes, sha256, visibility, storage_driver)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (object_key, mime, size_bytes, sha256, visibility, storage_driver),
                ).fetchone()
        except errors.CheckViolation:
            raise ConstraintViolation("invalid upload visibility", {"visibility": visibility})
        return self._row_to_upload(row)

    def get_upload(self, upload_id: str) -> Optional[Upload]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM uploads WHERE id = %s", (upload_id,)
                ).fetchone()
        except errors.InvalidTextRepresentation:
            # not a UUID, so no such upload
            return None
        return self._row_to_upload(row) if row else None

    def set_upload_ocr_text(self, upload_id: str, text: str) -> bool:
        with self._connect() as conn:
            return (
                conn.execute(
                    "UPDATE uploads SET ocr_text = %s WHERE id = %s", (text, upload_id)
                ).rowcount
                == 1
            )

    @staticmethod
    def _row_to_upload(row: Dict[str, Any]) -> Upload:
        return Upload(
            id=str(row["id"]),
            object_key=row["object_key"],
            mime=row["mime"],
            size_bytes=row["size_bytes"],
            sha256=row["sha256"],
            visibility=row.get("visibility", "private"),
            storage_driver=row.get("storage_driver", "local"),
            ocr_text=row.get("ocr_text"),
            created_at=row.get("created_at") or utcnow(),
        )

    # jobs
    def enqueue_job(
        self,
        name: str,
        payload: Dict[str, Any],
        *,
        max_attempts: int = 3,
        backoff: BackoffPolicy | None = None,
        priority: int = 0,
        available_at: datetime | None = None,
    ) -> Job:
        backoff = backoff or BackoffPolicy()
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO jobs (name, payload, status, max_attempts, backoff, priority, available_at)
                VALUES (%s, %s, %s, %s, %s, %s, COALESCE(%s, now()))
                RETURNING *
                """,
                (
                    name,
                    json.dumps(payload),
                    JOB_WAITING,
                    max_attempts,
                    json.dumps(backoff.to_dict()),
                    priority,
                    available_at,
                ),
            ).fetchone()
        return self._row_to_job(row)

    def get_job(self, job_id: int) -> Optional[Job]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM jobs WHERE id = %s", (job_id,)).fetchone()
        return self._row_to_job(row) if row else None

    def list_jobs(self, *, status: Optional[str] = None) -> List[Job]:
        with self._connect() as conn:
            if status:
                rows = conn.execute(
                    "SELECT * FROM jobs WHERE status = %s ORDER BY id", (status,)
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM jobs ORDER BY id").fetchall()
        return [self._row_to_job(row) for row in rows]

    def claim_next_job(
        self,
        worker_id: str,
        *,
        lease_seconds: int,
        now: datetime | None = None,
        max_stalled_count: int = DEFAULT_MAX_STALLED_COUNT,
    ) -> Optional[Job]:
        """Lease the most urgent eligible job.

        Waiting jobs whose ``available_at`` has passed are eligible, and so are
        active jobs whose lease expired (their worker died) while they are
        still under ``max_stalled_count``; reclaiming one bumps its
        ``stalled_count``. SKIP LOCKED keeps concurrent claimers from ever
        receiving the same row.
        """
        now = now or utcnow()
        with self._connect() as conn:
            row = conn.execute(
                """
                WITH next_job AS (
                    SELECT id FROM jobs
                    WHERE (status = %(waiting)s AND available_at <= %(now)s)
                       OR (status = %(active)s AND leased_until < %(now)s
                           AND stalled_count < %(max_stalled)s)
                    ORDER BY priority ASC, available_at ASC, id ASC
                    LIMIT 1
                    FOR UPDATE SKIP LOCKED
                )
                UPDATE jobs
                SET status = %(active)s,
                    stalled_count = jobs.stalled_count
                        + CASE WHEN jobs.status = %(active)s THEN 1 ELSE 0 END,
                    worker_id = %(worker_id)s,
                    leased_until = %(leased_until)s,
                    updated_at = %(now)s
                FROM next_job
                WHERE jobs.id = next_job.id
                RETURNING jobs.*
                """,
                {
                    "waiting": JOB_WAITING,
                    "active": JOB_ACTIVE,
                    "now": now,
                    "max_stalled": max_stalled_count,
                    "worker_id": worker_id,
                    "leased_until": now + timedelta(seconds=lease_seconds),
                },
            ).fetchone()
        return self._row_to_job(row) if row else None

    def fail_stalled_jobs(
        self,
        *,
        now: datetime | None = None,
        max_stalled_count: int = DEFAULT_MAX_STALLED_COUNT,
    ) -> List[Job]:
        now = now or utcnow()
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE jobs
                SET status = %(failed)s, last_error = %(error)s, leased_until = NULL,
                    finished_at = %(now)s, updated_at = %(now)s
                WHERE status = %(active)s AND leased_until < %(now)s
                  AND stalled_count >= %(max_stalled)s
                RETURNING *
                """,
                {
                    "failed": JOB_FAILED,
                    "error": JOB_STALLED_ERROR,
                    "active": JOB_ACTIVE,
                    "now": now,
                    "max_stalled": max_stalled_count,
                },
            ).fetchall()
        return [self._row_to_job(row) for row in rows]

    def extend_job_lease(self, job_id: int, worker_id: str, *, lease_seconds: int) -> bool:
        with self._connect() as conn:
            return (
                conn.execute(
                    """
                    UPDATE jobs SET leased_until = now() + make_interval(secs => %s)
                    WHERE id = %s AND worker_id = %s AND status = %s
                    """,
                    (lease_seconds, job_id, worker_id, JOB_ACTIVE),
                ).rowcount
                == 1
            )

    def complete_job(self, job_id: int, worker_id: str, *, result: Any = None) -> bool:
        with self._connect() as conn:
            return (
                conn.execute(
                    """
                    UPDATE jobs
                    SET status = %s, result = %s, leased_until = NULL,
                        finished_at = now(), updated_at = now()
                    WHERE id = %s AND worker_id = %s AND status = %s
                    """,
                    (
                        JOB_COMPLETED,
                        json.dumps(result, default=str),
                        job_id,
                        worker_id,
                        JOB_ACTIVE,
                    ),
                ).rowcount
                == 1
            )

    def retry_job(
        self,
        job_id: int,
        worker_id: str,
        *,
        attempts_made: int,
        available_at: datetime,
        error: str,
    ) -> bool:
        with self._connect() as conn:
            return (
                conn.execute(
                    """
                    UPDATE jobs
                    SET status = %s, attempts_made = %s, available_at = %s,
                        last_error = %s, leased_until = NULL, worker_id = NULL,
                        updated_at = now()
                    WHERE id = %s AND worker_id = %s AND status = %s
                    """,
                    (
                        JOB_WAITING,
                        attempts_made,
                        available_at,
                        error,
                        job_id,
                        worker_id,
                        JOB_ACTIVE,
                    ),
                ).rowcount
                == 1
            )

    def fail_job(self, job_id: int, worker_id: str, *, attempts_made: int, error: str) -> bool:
        with self._connect() as conn:
            return (
                conn.execute(
                    """
                    UPDATE jobs
                    SET status = %s, attempts_made = %s, last_error = %s,
                        leased_until = NULL, finished_at = now(), updated_at = now()
                    WHERE id = %s AND worker_id = %s AND status = %s
                    """,
                    (JOB_FAILED, attempts_made, error, job_id, worker_id, JOB_ACTIVE),
                ).rowcount
                == 1
            )

    def release_job(self, job_id: int, worker_id: str) -> bool:
        with self._connect() as conn:
            return (
                conn.execute(
                    """
                    UPDATE jobs
                    SET status = %s, leased_until = NULL, worker_id = NULL, updated_at = now()
                    WHERE id = %s AND worker_id = %s AND status = %s
                    """,
                    (JOB_WAITING, job_id, worker_id, JOB_ACTIVE),
                ).rowcount
                == 1
            )

    @staticmethod
    def _row_to_job(row: Dict[str, Any]) -> Job:
        payload = row.get("payload") or {}
        if isinstance(payload, str):
            payload = json.loads(payload)
        backoff = row.get("backoff")
        if isinstance(backoff, str):
            backoff = json.loads(backoff)
        return Job(
            id=row["id"],
            name=row["name"],
            payload=payload,
            status=row.get("status", JOB_WAITING),
            attempts_made=row.get("attempts_made", 0),
            max_attempts=row.get("max_attempts", 3),
            stalled_count=row.get("stalled_count", 0),
            backoff=BackoffPolicy.from_dict(backoff),
            priority=row.get("priority", 0),
            available_at=row.get("available_at") or utcnow(),
            leased_until=row.get("leased_until"),
            worker_id=row.get("worker_id"),
            last_error=row.get("last_error"),
            result=row.get("result"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
            finished_at=row.get("finished_at"),
        )
