"""
Scope and session plumbing.

``ScopeContext`` is the single owner of "who is signed in" and "which property
is selected". It never gets read implicitly by the managers: they register
listeners and receive the new value as an argument, and every manager call
takes the scope id explicitly.

``ScopeGuard`` is what each manager uses to throw away responses that belong
to a scope that is no longer active (a load for property A that resolves after
the user switched to property B).
"""
import asyncio
import enum
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from kost.core.errors import AuthError
from kost.core.security import decode_token

logger = logging.getLogger(__name__)


class AuthEvent(str, enum.Enum):
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"


@dataclass(frozen=True)
class Session:
    user_id: uuid.UUID
    access_token: str | None = None

    @classmethod
    def from_token(cls, token: str) -> "Session":
        payload = decode_token(token)
        if not payload or payload.get("type", "access") != "access":
            raise AuthError("Invalid or expired session token")
        try:
            user_id = uuid.UUID(str(payload.get("sub")))
        except ValueError:
            raise AuthError("Session token has no valid subject")
        return cls(user_id=user_id, access_token=token)


AuthListener = Callable[[AuthEvent, Session | None], Awaitable[None]]
ScopeListener = Callable[[uuid.UUID | None], Awaitable[None]]

ScopeToken = tuple[uuid.UUID | None, int]


class ScopeGuard:
    """Active scope plus a generation counter; tokens from older generations are stale."""

    def __init__(self) -> None:
        self.scope_id: uuid.UUID | None = None
        self._generation = 0

    def switch(self, scope_id: uuid.UUID | None) -> None:
        self.scope_id = scope_id
        self._generation += 1

    def capture(self, scope_id: uuid.UUID | None) -> ScopeToken:
        return (scope_id, self._generation)

    def is_current(self, token: ScopeToken) -> bool:
        return token == (self.scope_id, self._generation)

    def is_active(self, scope_id: uuid.UUID | None) -> bool:
        return scope_id is not None and scope_id == self.scope_id


async def _notify(listeners: list, *args) -> None:
    # Independent flows: run concurrently, join, then surface the first failure
    results = await asyncio.gather(*(listener(*args) for listener in list(listeners)), return_exceptions=True)
    errors = [r for r in results if isinstance(r, BaseException)]
    for error in errors[1:]:
        logger.error("Additional scope listener failure: %s", error)
    if errors:
        raise errors[0]


class ScopeContext:
    def __init__(self) -> None:
        self._session: Session | None = None
        self._scope_id: uuid.UUID | None = None
        self._auth_listeners: list[AuthListener] = []
        self._scope_listeners: list[ScopeListener] = []

    # ── Queries ─────────────────────────────────────
    def get_session(self) -> Session | None:
        return self._session

    def require_session(self) -> Session:
        if self._session is None:
            raise AuthError("Not signed in")
        return self._session

    def current_scope(self) -> uuid.UUID | None:
        return self._scope_id

    # ── Listener registration ───────────────────────
    def on_auth_state_change(self, callback: AuthListener) -> Callable[[], None]:
        self._auth_listeners.append(callback)
        return lambda: self._remove(self._auth_listeners, callback)

    def on_scope_change(self, callback: ScopeListener) -> Callable[[], None]:
        self._scope_listeners.append(callback)
        return lambda: self._remove(self._scope_listeners, callback)

    @staticmethod
    def _remove(listeners: list, callback) -> None:
        if callback in listeners:
            listeners.remove(callback)

    # ── Transitions ─────────────────────────────────
    async def sign_in(self, session: Session) -> None:
        self._session = session
        logger.info("Session started for user %s", session.user_id)
        await _notify(self._auth_listeners, AuthEvent.SIGNED_IN, session)

    async def sign_out(self) -> None:
        if self._session is None:
            return
        logger.info("Session ended for user %s", self._session.user_id)
        self._session = None
        self._scope_id = None
        await _notify(self._auth_listeners, AuthEvent.SIGNED_OUT, None)

    async def select_scope(self, scope_id: uuid.UUID | None) -> None:
        if scope_id == self._scope_id:
            return
        self.require_session()
        self._scope_id = scope_id
        logger.info("Active property switched to %s", scope_id)
        await _notify(self._scope_listeners, scope_id)
