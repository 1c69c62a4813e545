from __future__ import annotations

import copy
import itertools
import threading
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from tessra.logging import get_logger
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


class MemoryStore:
    """In-process durable store used by tests and local development.

    Mirrors :class:`tessra.storage.postgres.PostgresStore` method for method.
    Every operation holds ``_data_lock`` for its whole duration, which gives the
    same atomicity the SQL statements get from a single transaction.
    Returned objects are copies so callers cannot mutate stored state.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.sessions: Dict[str, Session] = {}
        self.settings: Dict[str, Setting] = {}
        self.uploads: Dict[str, Upload] = {}
        self.jobs: Dict[int, Job] = {}
        self._job_ids = itertools.count(1)
        # RLock so helpers can nest inside public methods
        self._data_lock = threading.RLock()

    # sessions
    def replace_sessions(self, session: Session) -> Session:
        with self._data_lock:
            revoked = len(self.sessions)
            self.sessions = {session.token: copy.copy(session)}
        if revoked:
            self.logger.info("sessions_revoked_on_create", count=revoked)
        return copy.copy(session)

    def touch_session(self, token: str, *, now: datetime, idle_cutoff: datetime) -> bool:
        with self._data_lock:
            sess = self.sessions.get(token)
            if sess is None or now >= sess.expires_at or sess.last_activity_at <= idle_cutoff:
                return False
            sess.last_activity_at = now
            return True

    def delete_session(self, token: str) -> int:
        with self._data_lock:
            return 1 if self.sessions.pop(token, None) is not None else 0

    def delete_expired_sessions(self, *, now: datetime, idle_cutoff: datetime) -> int:
        with self._data_lock:
            stale = [
                token
                for token, sess in self.sessions.items()
                if sess.expires_at < now or sess.last_activity_at < idle_cutoff
            ]
            for token in stale:
                self.sessions.pop(token, None)
            return len(stale)

    # settings
    def get_setting(self, key: str) -> Optional[str]:
        with self._data_lock:
            setting = self.settings.get(key)
            return setting.value if setting else None

    def upsert_setting(self, key: str, value: str) -> Setting:
        with self._data_lock:
            setting = Setting(key=key, value=value, updated_at=utcnow())
            self.settings[key] = setting
            return copy.copy(setting)

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
        upload = Upload(
            id=str(uuid.uuid4()),
            object_key=object_key,
            mime=mime,
            size_bytes=size_bytes,
            sha256=sha256,
            visibility=visibility,
            storage_driver=storage_driver,
        )
        with self._data_lock:
            self.uploads[upload.id] = upload
        return copy.copy(upload)

    def get_upload(self, upload_id: str) -> Optional[Upload]:
        with self._data_lock:
            upload = self.uploads.get(upload_id)
            return copy.copy(upload) if upload else None

    def set_upload_ocr_text(self, upload_id: str, text: str) -> bool:
        with self._data_lock:
            upload = self.uploads.get(upload_id)
            if upload is None:
                return False
            upload.ocr_text = text
            return True

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
        now = utcnow()
        with self._data_lock:
            job = Job(
                id=next(self._job_ids),
                name=name,
                payload=copy.deepcopy(payload),
                max_attempts=max_attempts,
                backoff=backoff or BackoffPolicy(),
                priority=priority,
                available_at=available_at or now,
                created_at=now,
                updated_at=now,
            )
            self.jobs[job.id] = job
            return copy.deepcopy(job)

    def get_job(self, job_id: int) -> Optional[Job]:
        with self._data_lock:
            job = self.jobs.get(job_id)
            return copy.deepcopy(job) if job else None

    def list_jobs(self, *, status: Optional[str] = None) -> List[Job]:
        with self._data_lock:
            jobs = [copy.deepcopy(j) for j in self.jobs.values() if status is None or j.status == status]
        jobs.sort(key=lambda j: j.id)
        return jobs

    def _lease_expired(self, job: Job, now: datetime) -> bool:
        return job.status == JOB_ACTIVE and job.leased_until is not None and job.leased_until < now

    def _eligible(self, job: Job, now: datetime, max_stalled_count: int) -> bool:
        if job.status == JOB_WAITING:
            return job.available_at <= now
        return self._lease_expired(job, now) and job.stalled_count < max_stalled_count

    def claim_next_job(
        self,
        worker_id: str,
        *,
        lease_seconds: int,
        now: datetime | None = None,
        max_stalled_count: int = DEFAULT_MAX_STALLED_COUNT,
    ) -> Optional[Job]:
        now = now or utcnow()
        with self._data_lock:
            candidates = [
                j for j in self.jobs.values() if self._eligible(j, now, max_stalled_count)
            ]
            if not candidates:
                return None
            job = min(candidates, key=lambda j: (j.priority, j.available_at, j.id))
            if job.status == JOB_ACTIVE:
                job.stalled_count += 1
                self.logger.warning(
                    "job_lease_reclaimed",
                    job_id=job.id,
                    previous_worker=job.worker_id,
                    stalled_count=job.stalled_count,
                )
            job.status = JOB_ACTIVE
            job.worker_id = worker_id
            job.leased_until = now + timedelta(seconds=lease_seconds)
            job.updated_at = now
            return copy.deepcopy(job)

    def fail_stalled_jobs(
        self,
        *,
        now: datetime | None = None,
        max_stalled_count: int = DEFAULT_MAX_STALLED_COUNT,
    ) -> List[Job]:
        """Fail jobs whose lease expired after they already stalled too often."""
        now = now or utcnow()
        failed: List[Job] = []
        with self._data_lock:
            for job in self.jobs.values():
                if not self._lease_expired(job, now) or job.stalled_count < max_stalled_count:
                    continue
                job.status = JOB_FAILED
                job.last_error = JOB_STALLED_ERROR
                job.leased_until = None
                job.finished_at = now
                job.updated_at = now
                failed.append(copy.deepcopy(job))
        return failed

    def _owned(self, job_id: int, worker_id: str) -> Optional[Job]:
        job = self.jobs.get(job_id)
        if job is None or job.status != JOB_ACTIVE or job.worker_id != worker_id:
            return None
        return job

    def extend_job_lease(self, job_id: int, worker_id: str, *, lease_seconds: int) -> bool:
        with self._data_lock:
            job = self._owned(job_id, worker_id)
            if job is None:
                return False
            job.leased_until = utcnow() + timedelta(seconds=lease_seconds)
            return True

    def complete_job(self, job_id: int, worker_id: str, *, result: Any = None) -> bool:
        now = utcnow()
        with self._data_lock:
            job = self._owned(job_id, worker_id)
            if job is None:
                return False
            job.status = JOB_COMPLETED
            job.result = copy.deepcopy(result)
            job.leased_until = None
            job.finished_at = now
            job.updated_at = now
            return True

    def retry_job(
        self,
        job_id: int,
        worker_id: str,
        *,
        attempts_made: int,
        available_at: datetime,
        error: str,
    ) -> bool:
        with self._data_lock:
            job = self._owned(job_id, worker_id)
            if job is None:
                return False
            job.status = JOB_WAITING
            job.attempts_made = attempts_made
            job.available_at = available_at
            job.last_error = error
            job.leased_until = None
            job.worker_id = None
            job.updated_at = utcnow()
            return True

    def fail_job(self, job_id: int, worker_id: str, *, attempts_made: int, error: str) -> bool:
        now = utcnow()
        with self._data_lock:
            job = self._owned(job_id, worker_id)
            if job is None:
                return False
            job.status = JOB_FAILED
            job.attempts_made = attempts_made
            job.last_error = error
            job.leased_until = None
            job.finished_at = now
            job.updated_at = now
            return True

    def release_job(self, job_id: int, worker_id: str) -> bool:
        with self._data_lock:
            job = self._owned(job_id, worker_id)
            if job is None:
                return False
            job.status = JOB_WAITING
            job.leased_until = None
            job.worker_id = None
            job.updated_at = utcnow()
            return True

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None
