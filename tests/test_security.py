from datetime import datetime, timedelta

import pytest

from keyswallet.exceptions import AuthenticationError
from keyswallet.models import Principal
from keyswallet.security import AuthManager


def test_session_token_resolves_to_principal() -> None:
    auth = AuthManager(session_minutes=30)
    session = auth.create_session("alice")

    assert auth.resolve(session.token) == Principal("alice")
    assert [item.token for item in auth.active_sessions("alice")] == [session.token]


def test_missing_or_unknown_tokens_are_rejected() -> None:
    auth = AuthManager()

    for token in (None, "", "not-a-token"):
        with pytest.raises(AuthenticationError):
            auth.resolve(token)
    with pytest.raises(ValueError):
        auth.create_session("")


def test_expired_sessions_are_dropped() -> None:
    auth = AuthManager(session_minutes=5)
    start = datetime(2026, 1, 1, 9, 0)
    old = auth.create_session("alice", at=start)
    fresh = auth.create_session("alice", at=start + timedelta(minutes=4))

    with pytest.raises(AuthenticationError):
        auth.resolve(old.token, at=start + timedelta(minutes=5))

    auth.expire_sessions(at=start + timedelta(minutes=10))
    assert auth.active_sessions("alice") == ()
    with pytest.raises(AuthenticationError):
        auth.resolve(fresh.token, at=start)


def test_logout_revokes_token() -> None:
    auth = AuthManager()
    session = auth.create_session("bob")

    auth.logout(session.token)

    with pytest.raises(AuthenticationError):
        auth.resolve(session.token)
