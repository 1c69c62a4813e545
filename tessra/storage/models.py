from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

SESSION_ABSOLUTE_TTL = timedelta(days=7)
SESSION_IDLE_TTL = timedelta(hours=24)

# expired leases tolerated before a job is failed as stalled
DEFAULT_MAX_STALLED_COUNT = 1
JOB_STALLED_ERROR = "stalled"

JOB_WAITING = "waiting"
JOB_ACTIVE = "active"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_token(nbytes: int = 32) -> str:
    """URL-safe token carrying ``nbytes`` of randomness."""
    return secrets.token_urlsafe(nbytes)


@dataclass
class Session:
    token: str
    created_at: datetime
    expires_at: datetime
    last_activity_at: datetime

    @classmethod
    def new(
        cls, now: datetime | None = None, *, absolute_ttl: timedelta = SESSION_ABSOLUTE_TTL
    ) -> "Session":
        now = now or utcnow()
        return cls(
            token=new_token(),
            created_at=now,
            expires_at=now + absolute_ttl,
            last_activity_at=now,
        )


@dataclass
class Setting:
    key: str
    value: str
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Upload:
    id: str
    object_key: str
    mime: str
    size_bytes: int
    sha256: str
    visibility: str = "private"
    storage_driver: str = "local"
    ocr_text: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class BackoffPolicy:
    """Retry delay schedule: ``exponential`` doubles per attempt, ``fixed`` does not."""

    type: str = "exponential"
    delay_ms: int = 2000

    def __post_init__(self) -> None:
        if self.type not in {"exponential", "fixed"}:
            raise ValueError(f"unsupported backoff type: {self.type}")
        if self.delay_ms < 0:
            raise ValueError("backoff delay_ms must be non-negative")

    def delay_for(self, attempts_made: int) -> timedelta:
        """Delay before the next try once ``attempts_made`` tries have failed."""
        if self.type == "fixed":
            return timedelta(milliseconds=self.delay_ms)
        exponent = max(attempts_made - 1, 0)
        return timedelta(milliseconds=self.delay_ms * (2 ** exponent))

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "delay_ms": self.delay_ms}

    @classmethod
    def from_dict(cls, data: Dict[str, Any] | None) -> "BackoffPolicy":
        if not data:
            return cls()
        return cls(type=data.get("type", "exponential"), delay_ms=int(data.get("delay_ms", 2000)))


@dataclass
class Job:
    id: int
    name: str
    payload: Dict[str, Any]
    status: str = JOB_WAITING
    attempts_made: int = 0
    max_attempts: int = 3
    stalled_count: int = 0
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    priority: int = 0
    available_at: datetime = field(default_factory=utcnow)
    leased_until: Optional[datetime] = None
    worker_id: Optional[str] = None
    last_error: Optional[str] = None
    result: Any = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
