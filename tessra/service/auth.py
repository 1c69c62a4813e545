"""Admin authentication.

:class:`AuthGate` evaluates an ordered chain of strategies. Each strategy
either returns an :class:`AdminPrincipal` or ``None`` to defer to the next
one; the request is rejected only when every strategy defers. The default
chain tries the session cookie first and the static bearer token second.
"""

from __future__ import annotations

import hmac
from dataclasses import dataclass
from typing import Optional, Protocol, Sequence

from fastapi import Request

from tessra.logging import get_logger
from tessra.service.errors import AuthenticationError, ServerError
from tessra.service.sessions import SessionManager

logger = get_logger(__name__)

SESSION_COOKIE = "session_token"


@dataclass(frozen=True)
class AdminPrincipal:
    method: str
    session_token: Optional[str] = None


class AuthStrategy(Protocol):
    name: str

    async def authenticate(self, request: Request) -> Optional[AdminPrincipal]: ...


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    lower = header.lower()
    if not lower.startswith("bearer "):
        return None
    return header.split(" ", 1)[1].strip() or None


def constant_time_equals(candidate: Optional[str], expected: Optional[str]) -> bool:
    if not candidate or not expected:
        return False
    return hmac.compare_digest(candidate.encode("utf-8"), expected.encode("utf-8"))


class SessionCookieStrategy:
    """Accepts a live ``session_token`` cookie.

    A session store outage is logged and treated as "defer", so sessions fail
    closed while the bearer strategy can still admit the request.
    """

    name = "session"

    def __init__(self, sessions: SessionManager, *, cookie_name: str = SESSION_COOKIE) -> None:
        self.sessions = sessions
        self.cookie_name = cookie_name

    async def authenticate(self, request: Request) -> Optional[AdminPrincipal]:
        token = request.cookies.get(self.cookie_name)
        if not token:
            return None
        try:
            valid = await self.sessions.validate(token)
        except Exception as exc:
            logger.error(
                "session_validation_unavailable",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return None
        if not valid:
            return None
        return AdminPrincipal(method=self.name, session_token=token)


class BearerTokenStrategy:
    """Accepts ``Authorization: Bearer <ADMIN_TOKEN>``."""

    name = "bearer"

    def __init__(self, admin_token: Optional[str]) -> None:
        self.admin_token = admin_token

    async def authenticate(self, request: Request) -> Optional[AdminPrincipal]:
        token = _extract_bearer(request.headers.get("Authorization"))
        if not token:
            return None
        if constant_time_equals(token, self.admin_token):
            return AdminPrincipal(method=self.name)
        return None


class AuthGate:
    def __init__(self, strategies: Sequence[AuthStrategy], *, admin_token: Optional[str] = None) -> None:
        if not strategies:
            raise ValueError("AuthGate needs at least one strategy")
        self.strategies = tuple(strategies)
        self.admin_token = admin_token

    @classmethod
    def default(cls, sessions: SessionManager, admin_token: Optional[str]) -> "AuthGate":
        return cls(
            [SessionCookieStrategy(sessions), BearerTokenStrategy(admin_token)],
            admin_token=admin_token,
        )

    async def authenticate(self, request: Request) -> Optional[AdminPrincipal]:
        for strategy in self.strategies:
            principal = await strategy.authenticate(request)
            if principal is not None:
                return principal
        return None

    async def require_admin(self, request: Request) -> AdminPrincipal:
        principal = await self.authenticate(request)
        if principal is None:
            logger.info("admin_auth_rejected", path=request.url.path)
            raise AuthenticationError("Unauthorized")
        return principal

    def check_admin_key(self, admin_key: Optional[str]) -> bool:
        """Compare a login credential against ``ADMIN_TOKEN``.

        Raises :class:`ServerError` when no admin token is configured.
        """
        if not self.admin_token:
            logger.error("admin_token_not_configured")
            raise ServerError("Server configuration error: ADMIN_TOKEN is not set")
        return constant_time_equals(admin_key, self.admin_token)
