"""Durable job queue and the asyncio worker pool that drains it.

Delivery is at-least-once: a claimed job is leased to one worker, and if that
worker dies the lease expires and another worker picks the job up again.
Processors therefore have to be idempotent.

Lifecycle of a job::

    waiting -> active -> completed
                      -> waiting   (failed, attempts left, rescheduled with backoff)
                      -> failed    (attempts exhausted, no processor registered,
                                    or the lease expired too many times)
"""

from __future__ import annotations

import asyncio
import inspect
import uuid
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

from tessra.logging import get_logger
from tessra.storage.models import DEFAULT_MAX_STALLED_COUNT, BackoffPolicy, Job, utcnow

if TYPE_CHECKING:
    from tessra.storage.memory import MemoryStore
    from tessra.storage.postgres import PostgresStore

logger = get_logger(__name__)

QUEUE_NAME = "tessra-jobs"
DEFAULT_ATTEMPTS = 3
DEFAULT_BACKOFF = BackoffPolicy(type="exponential", delay_ms=2000)
DEFAULT_CONCURRENCY = 5
DEFAULT_POLL_INTERVAL_SECONDS = 1.0
DEFAULT_LEASE_SECONDS = 60
DEFAULT_SHUTDOWN_GRACE_SECONDS = 30.0
MAX_CLAIM_BACKOFF_SECONDS = 60.0

Processor = Callable[[Dict[str, Any]], Union[Any, Awaitable[Any]]]
JobListener = Callable[..., Any]


class UnregisteredProcessorError(LookupError):
    """A job names a processor that was never registered."""

    def __init__(self, job_name: str) -> None:
        super().__init__(f"no processor registered for job '{job_name}'")
        self.job_name = job_name


class JobStalledError(RuntimeError):
    """A job's lease expired more often than the pool tolerates."""

    def __init__(self, job_id: int, stalled_count: int) -> None:
        super().__init__(f"job {job_id} stalled {stalled_count} time(s)")
        self.job_id = job_id
        self.stalled_count = stalled_count


class ProcessorRegistrationError(RuntimeError):
    """Duplicate registration, or registration after the pool started."""


class JobShutdownError(RuntimeError):
    """One or more errors occurred while stopping workers or releasing jobs."""

    def __init__(self, errors: List[BaseException], message: str = "job system shutdown failed") -> None:
        detail = "; ".join(f"{type(e).__name__}: {e}" for e in errors)
        super().__init__(f"{message}: {detail}" if detail else message)
        self.errors = list(errors)


class ProcessorRegistry:
    """Name -> processor table, frozen into a read-only mapping at pool start."""

    def __init__(self) -> None:
        self._processors: Dict[str, Processor] = {}
        self._frozen: Optional[Mapping[str, Processor]] = None

    @property
    def frozen(self) -> bool:
        return self._frozen is not None

    def register(self, name: str, processor: Processor) -> None:
        if self._frozen is not None:
            logger.error("job_processor_registered_after_start", job_name=name)
            raise ProcessorRegistrationError(
                f"cannot register '{name}': worker pool already started"
            )
        if name in self._processors:
            raise ProcessorRegistrationError(f"processor '{name}' is already registered")
        if not callable(processor):
            raise TypeError("processor must be callable")
        self._processors[name] = processor
        logger.info("job_processor_registered", job_name=name)

    def freeze(self) -> Mapping[str, Processor]:
        if self._frozen is None:
            self._frozen = MappingProxyType(dict(self._processors))
        return self._frozen

    def get(self, name: str) -> Optional[Processor]:
        source = self._frozen if self._frozen is not None else self._processors
        return source.get(name)

    def names(self) -> List[str]:
        return sorted(self._processors)


class JobQueue:
    """Producer side: appends durable job records and never waits on processing."""

    def __init__(
        self,
        store: "PostgresStore | MemoryStore",
        *,
        name: str = QUEUE_NAME,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.name = name
        self._clock = clock

    async def enqueue(
        self,
        name: str,
        payload: Dict[str, Any],
        *,
        attempts: int = DEFAULT_ATTEMPTS,
        backoff: Optional[BackoffPolicy] = None,
        delay_ms: Optional[int] = None,
        priority: Optional[int] = None,
    ) -> Job:
        """Persist a job for ``name``.

        ``priority`` follows the usual queue convention: a lower number runs
        first, and jobs without one run at 0. ``delay_ms`` postpones the first
        attempt.
        """
        if attempts < 1:
            raise ValueError("attempts must be at least 1")
        if not isinstance(payload, dict):
            raise TypeError("job payload must be a JSON object")
        available_at = self._clock() + timedelta(milliseconds=max(delay_ms or 0, 0))
        job = await asyncio.to_thread(
            self.store.enqueue_job,
            name,
            payload,
            max_attempts=attempts,
            backoff=backoff or DEFAULT_BACKOFF,
            priority=priority or 0,
            available_at=available_at,
        )
        logger.info(
            "job_enqueued",
            queue=self.name,
            job_id=job.id,
            job_name=name,
            priority=job.priority,
            delay_ms=delay_ms or 0,
        )
        return job

    async def get(self, job_id: int) -> Optional[Job]:
        return await asyncio.to_thread(self.store.get_job, job_id)


class JobWorkerPool:
    """N concurrent workers claiming leased jobs and dispatching them by name.

    Blocking store calls run in a thread. Synchronous processors run in a
    thread too; coroutine processors run on the loop.
    """

    def __init__(
        self,
        store: "PostgresStore | MemoryStore",
        registry: ProcessorRegistry,
        *,
        concurrency: int = DEFAULT_CONCURRENCY,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        lease_seconds: int = DEFAULT_LEASE_SECONDS,
        shutdown_grace: float = DEFAULT_SHUTDOWN_GRACE_SECONDS,
        max_stalled_count: int = DEFAULT_MAX_STALLED_COUNT,
        clock: Callable[[], datetime] = utcnow,
        on_completed: Optional[JobListener] = None,
        on_failed: Optional[JobListener] = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.store = store
        self.registry = registry
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.lease_seconds = lease_seconds
        self.shutdown_grace = shutdown_grace
        self.max_stalled_count = max_stalled_count
        self._clock = clock
        self.on_completed = on_completed
        self.on_failed = on_failed
        self._processors: Mapping[str, Processor] = MappingProxyType({})
        self._tasks: List[asyncio.Task] = []
        self._stop_event: Optional[asyncio.Event] = None
        self._in_flight: Dict[int, str] = {}
        self._shutdown_errors: List[BaseException] = []
        self._instance = uuid.uuid4().hex[:8]

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    @property
    def in_flight(self) -> Dict[int, str]:
        return dict(self._in_flight)

    async def start(self) -> None:
        if self._tasks:
            logger.warning("job_pool_already_running")
            return
        self._processors = self.registry.freeze()
        self._stop_event = asyncio.Event()
        self._shutdown_errors = []
        for index in range(self.concurrency):
            worker_id = f"worker-{self._instance}-{index}"
            task = asyncio.create_task(self._worker_loop(worker_id), name=worker_id)
            self._tasks.append(task)
        logger.info(
            "job_pool_started",
            concurrency=self.concurrency,
            processors=sorted(self._processors),
        )

    async def stop(self) -> None:
        """Stop claiming, let in-flight jobs finish within the grace period,
        then cancel stragglers and hand their jobs back to the queue.

        Raises :class:`JobShutdownError` listing every error encountered.
        """
        if not self._tasks:
            return
        assert self._stop_event is not None
        self._stop_event.set()
        logger.info("job_pool_stopping", in_flight=len(self._in_flight))

        _, pending = await asyncio.wait(self._tasks, timeout=self.shutdown_grace)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning("job_pool_cancelling_workers", count=len(pending))
        results = await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        errors: List[BaseException] = [
            r
            for r in results
            if isinstance(r, BaseException) and not isinstance(r, asyncio.CancelledError)
        ]
        errors.extend(self._shutdown_errors)
        self._shutdown_errors = []
        if errors:
            logger.error("job_pool_shutdown_errors", count=len(errors))
            raise JobShutdownError(errors)
        logger.info("job_pool_stopped")

    async def run_once(self, worker_id: str = "inline") -> Optional[Job]:
        """Claim and process a single eligible job; returns it, or None if idle."""
        self._processors = self.registry.freeze()
        job = await self._claim(worker_id)
        if job is None:
            return None
        await self._process(job, worker_id)
        return job

    async def _claim(self, worker_id: str) -> Optional[Job]:
        now = self._clock()
        await self._fail_stalled(now)
        return await asyncio.to_thread(
            self.store.claim_next_job,
            worker_id,
            lease_seconds=self.lease_seconds,
            now=now,
            max_stalled_count=self.max_stalled_count,
        )

    async def _fail_stalled(self, now: datetime) -> None:
        stalled = await asyncio.to_thread(
            self.store.fail_stalled_jobs,
            now=now,
            max_stalled_count=self.max_stalled_count,
        )
        for job in stalled:
            logger.error(
                "job_failed",
                job_id=job.id,
                job_name=job.name,
                reason="stalled",
                attempts_made=job.attempts_made,
                stalled_count=job.stalled_count,
            )
            await self._notify(self.on_failed, job, JobStalledError(job.id, job.stalled_count))

    async def _sleep(self, seconds: float) -> None:
        assert self._stop_event is not None
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _worker_loop(self, worker_id: str) -> None:
        assert self._stop_event is not None
        consecutive_errors = 0
        while not self._stop_event.is_set():
            try:
                job = await self._claim(worker_id)
            except Exception as exc:
                consecutive_errors += 1
                backoff = min(
                    MAX_CLAIM_BACKOFF_SECONDS,
                    self.poll_interval * (2 ** min(consecutive_errors, 6)),
                )
                logger.error(
                    "job_claim_failed",
                    worker_id=worker_id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                    backoff_seconds=backoff,
                )
                await self._sleep(backoff)
                continue
            consecutive_errors = 0
            if job is None:
                await self._sleep(self.poll_interval)
                continue
            try:
                await self._process(job, worker_id)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(
                    "job_processing_error",
                    worker_id=worker_id,
                    job_id=job.id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )

    async def _invoke(self, processor: Processor, payload: Dict[str, Any]) -> Any:
        if inspect.iscoroutinefunction(processor):
            return await processor(payload)
        result = await asyncio.to_thread(processor, payload)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _heartbeat(self, job: Job, worker_id: str) -> None:
        interval = max(self.lease_seconds / 3, 0.05)
        while True:
            await asyncio.sleep(interval)
            try:
                owned = await asyncio.to_thread(
                    self.store.extend_job_lease,
                    job.id,
                    worker_id,
                    lease_seconds=self.lease_seconds,
                )
            except Exception as exc:
                logger.warning("job_lease_extend_failed", job_id=job.id, error=str(exc))
                continue
            if not owned:
                logger.warning("job_lease_lost", job_id=job.id, worker_id=worker_id)
                return

    async def _process(self, job: Job, worker_id: str) -> None:
        processor = self._processors.get(job.name)
        if processor is None:
            await self._fail(job, worker_id, UnregisteredProcessorError(job.name), reason="unregistered_processor")
            return

        self._in_flight[job.id] = worker_id
        heartbeat = asyncio.create_task(self._heartbeat(job, worker_id))
        logger.info(
            "job_started",
            job_id=job.id,
            job_name=job.name,
            attempt=job.attempts_made + 1,
            max_attempts=job.max_attempts,
            worker_id=worker_id,
        )
        try:
            result = await self._invoke(processor, dict(job.payload))
        except asyncio.CancelledError:
            await self._release(job, worker_id)
            raise
        except Exception as exc:
            await self._handle_failure(job, worker_id, exc)
        else:
            await self._complete(job, worker_id, result)
        finally:
            heartbeat.cancel()
            self._in_flight.pop(job.id, None)

    async def _complete(self, job: Job, worker_id: str, result: Any) -> None:
        acked = await asyncio.to_thread(self.store.complete_job, job.id, worker_id, result=result)
        if not acked:
            logger.warning("job_lease_lost", job_id=job.id, worker_id=worker_id, stage="complete")
            return
        logger.info("job_completed", job_id=job.id, job_name=job.name, attempt=job.attempts_made + 1)
        await self._notify(self.on_completed, job, result)

    async def _handle_failure(self, job: Job, worker_id: str, exc: Exception) -> None:
        attempts_made = job.attempts_made + 1
        if attempts_made >= job.max_attempts:
            await self._fail(job, worker_id, exc, reason="attempts_exhausted")
            return
        delay = job.backoff.delay_for(attempts_made)
        acked = await asyncio.to_thread(
            self.store.retry_job,
            job.id,
            worker_id,
            attempts_made=attempts_made,
            available_at=self._clock() + delay,
            error=_describe(exc),
        )
        if not acked:
            logger.warning("job_lease_lost", job_id=job.id, worker_id=worker_id, stage="retry")
            return
        logger.warning(
            "job_retry_scheduled",
            job_id=job.id,
            job_name=job.name,
            attempts_made=attempts_made,
            max_attempts=job.max_attempts,
            delay_ms=int(delay.total_seconds() * 1000),
            error=str(exc),
            error_type=type(exc).__name__,
        )

    async def _fail(self, job: Job, worker_id: str, exc: Exception, *, reason: str) -> None:
        attempts_made = job.attempts_made + 1
        acked = await asyncio.to_thread(
            self.store.fail_job,
            job.id,
            worker_id,
            attempts_made=attempts_made,
            error=_describe(exc),
        )
        if not acked:
            logger.warning("job_lease_lost", job_id=job.id, worker_id=worker_id, stage="fail")
            return
        logger.error(
            "job_failed",
            job_id=job.id,
            job_name=job.name,
            reason=reason,
            attempts_made=attempts_made,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        await self._notify(self.on_failed, job, exc)

    async def _release(self, job: Job, worker_id: str) -> None:
        try:
            released = await asyncio.to_thread(self.store.release_job, job.id, worker_id)
        except Exception as exc:
            logger.error("job_release_failed", job_id=job.id, error=str(exc))
            self._shutdown_errors.append(exc)
            return
        logger.info("job_released", job_id=job.id, released=released)

    async def _notify(self, listener: Optional[JobListener], job: Job, outcome: Any) -> None:
        if listener is None:
            return
        try:
            result = listener(job, outcome)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            logger.error("job_listener_failed", job_id=job.id, error=str(exc))


def _describe(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"[:2000]
