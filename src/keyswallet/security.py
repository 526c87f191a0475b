"""Session tokens for callers of the wallet API."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from secrets import token_urlsafe
from typing import Dict, Iterable, Optional

from .config import SESSION_MINUTES
from .exceptions import AuthenticationError
from .models import Principal, as_utc, utc_now


@dataclass(slots=True)
class Session:
    """Represents an authenticated API session."""

    token: str
    user_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utc_now)

    def is_expired(self, *, at: Optional[datetime] = None) -> bool:
        moment = as_utc(at) if at else utc_now()
        return moment >= as_utc(self.expires_at)


class AuthManager:
    """Issue and resolve bearer tokens.

    Identity is established by the hosting backend, which calls
    :meth:`create_session` once a user has signed in; the API only resolves
    the resulting token back to a :class:`~keyswallet.models.Principal`.
    """

    def __init__(self, *, session_minutes: int = SESSION_MINUTES) -> None:
        self._session_duration = timedelta(minutes=session_minutes)
        self._sessions: Dict[str, Session] = {}
        self._lock = threading.Lock()

    def create_session(self, user_id: str, *, at: Optional[datetime] = None) -> Session:
        if not user_id:
            raise ValueError("user_id is required")
        now = as_utc(at) if at else utc_now()
        session = Session(
            token=token_urlsafe(32),
            user_id=user_id,
            expires_at=now + self._session_duration,
            created_at=now,
        )
        with self._lock:
            self._sessions[session.token] = session
        return session

    def resolve(self, token: Optional[str], *, at: Optional[datetime] = None) -> Principal:
        """Return the principal for ``token`` or raise :class:`AuthenticationError`."""

        if not token:
            raise AuthenticationError()
        with self._lock:
            session = self._sessions.get(token)
            if session is None:
                raise AuthenticationError()
            if session.is_expired(at=at):
                self._sessions.pop(token, None)
                raise AuthenticationError()
        return Principal(session.user_id)

    def logout(self, token: str) -> None:
        with self._lock:
            self._sessions.pop(token, None)

    def expire_sessions(self, *, at: Optional[datetime] = None) -> None:
        now = as_utc(at) if at else utc_now()
        with self._lock:
            expired = [token for token, session in self._sessions.items() if session.is_expired(at=now)]
            for token in expired:
                self._sessions.pop(token, None)

    def active_sessions(self, user_id: str) -> Iterable[Session]:
        with self._lock:
            return tuple(session for session in self._sessions.values() if session.user_id == user_id)


__all__ = ["AuthManager", "Session"]
