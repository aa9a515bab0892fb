"""Unit tests for auth/service.py -- the authentication orchestrator.

Fixtures (conftest.py): threshold=3 lockout, cap=2 refresh store, fake clock,
and a registered principal "alice" with password TEST_PASSWORD.

Covers:
- register: conflicts by username / email, default role, session issued
- login: success, wrong password, unknown user, inactive user
- the threshold=3 / cap=2 scenario end to end
- refresh: rotation, error mapping, roles re-read, inactive principal
- logout / logout_all / authenticate with the blacklist
- fail-closed vs fail-open when the guard or blacklist is unavailable
"""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from auth.blacklist import TokenBlacklist
from auth.service import AuthService
from core.errors import (
    AccountLockedError,
    ConflictError,
    ErrorCode,
    InvalidCredentialsError,
    RegistrationDisabledError,
    TokenExpiredError,
    TokenInvalidError,
    TokenRevokedError,
)

TEST_PASSWORD = "correct-horse-battery"


class SpyStore:
    """Wraps a real credential store and records every call made to it."""

    def __init__(self, inner):
        self._inner = inner
        self.calls: list[str] = []

    def __getattr__(self, name):
        attr = getattr(self._inner, name)
        if callable(attr):

            def recorded(*args, **kwargs):
                self.calls.append(name)
                return attr(*args, **kwargs)

            return recorded
        return attr


# ---------------------------------------------------------------------------
# register()
# ---------------------------------------------------------------------------


def test_register_issues_session_with_default_role(service):
    session = service.register("bob", "bob@example.com", "long-enough-pw", "192.0.2.1")
    assert session.user["username"] == "bob"
    assert session.user["roles"] == ["ROLE_USER"]
    assert session.token_type == "bearer"
    assert session.expires_in == 900

    claims = service.authenticate(session.access_token)
    assert claims.principal_id == session.user["id"]
    assert service.refresh_tokens.get(session.refresh_token).created_from_ip == "192.0.2.1"


def test_register_conflicts(service, alice):
    with pytest.raises(ConflictError) as exc:
        service.register("alice", "other@example.com", "long-enough-pw")
    assert exc.value.code is ErrorCode.USERNAME_ALREADY_EXISTS

    with pytest.raises(ConflictError) as exc:
        service.register("alice2", "ALICE@example.com", "long-enough-pw")
    assert exc.value.code is ErrorCode.EMAIL_ALREADY_EXISTS


def test_register_race_on_insert_reports_the_taken_field(user_store, issuer, refresh_store, blacklist, lockout, alice):
    # The pre-check misses alice's email (another request committed it in
    # between); the UNIQUE(email) violation must still surface as an email conflict.
    racing = MagicMock(wraps=user_store)
    racing.exists_by_email.side_effect = [False, True]
    service = AuthService(racing, issuer, refresh_store, blacklist, lockout)

    with pytest.raises(ConflictError) as exc:
        service.register("carol", "alice@example.com", "long-enough-pw")
    assert exc.value.code is ErrorCode.EMAIL_ALREADY_EXISTS
    assert racing.create_user.call_count == 1


def test_register_disabled(user_store, issuer, refresh_store, blacklist, lockout):
    service = AuthService(user_store, issuer, refresh_store, blacklist, lockout, self_registration_enabled=False)
    with pytest.raises(RegistrationDisabledError):
        service.register("bob", "bob@example.com", "long-enough-pw")


# ---------------------------------------------------------------------------
# login()
# ---------------------------------------------------------------------------


def test_login_success_resets_failures(service, alice, lockout):
    with pytest.raises(InvalidCredentialsError):
        service.login("alice", "wrong")
    session = service.login("alice", TEST_PASSWORD)
    assert session.user["id"] == alice.id
    assert lockout.get_record("alice") is None


def test_unknown_user_and_wrong_password_look_identical(service, alice):
    with pytest.raises(InvalidCredentialsError) as unknown:
        service.login("nobody", TEST_PASSWORD)
    with pytest.raises(InvalidCredentialsError) as wrong:
        service.login("alice", "wrong")
    assert unknown.value.message == wrong.value.message


def test_inactive_user_cannot_log_in(service, alice, user_store):
    user_store.set_active(alice.id, False)
    with pytest.raises(InvalidCredentialsError):
        service.login("alice", TEST_PASSWORD)


# ---------------------------------------------------------------------------
# Scenario: threshold=3, cap=2
# ---------------------------------------------------------------------------


def test_three_failures_lock_and_fourth_attempt_skips_credential_store(
    user_store, issuer, refresh_store, blacklist, lockout, alice
):
    spy = SpyStore(user_store)
    service = AuthService(spy, issuer, refresh_store, blacklist, lockout)

    with pytest.raises(InvalidCredentialsError):
        service.login("alice", "wrong-1")
    with pytest.raises(InvalidCredentialsError):
        service.login("alice", "wrong-2")
    with pytest.raises(AccountLockedError) as third:
        service.login("alice", "wrong-3")
    assert third.value.just_locked
    assert lockout.is_locked("alice")

    spy.calls.clear()
    with pytest.raises(AccountLockedError) as fourth:
        service.login("alice", TEST_PASSWORD)  # even the right password
    assert not fourth.value.just_locked
    assert fourth.value.remaining == timedelta(minutes=30)
    assert "30 minutes" in fourth.value.message
    assert spy.calls == []


def test_lock_lapses_then_login_works(service, alice, clock):
    for attempt in range(3):
        with pytest.raises((InvalidCredentialsError, AccountLockedError)):
            service.login("alice", f"wrong-{attempt}")
    clock.advance(minutes=30, seconds=1)
    assert service.login("alice", TEST_PASSWORD).user["username"] == "alice"


def test_third_session_revokes_oldest_refresh_token(service, alice, clock, refresh_store):
    first = service.login("alice", TEST_PASSWORD)
    clock.advance(seconds=1)
    second = service.login("alice", TEST_PASSWORD)
    clock.advance(seconds=1)
    third = service.login("alice", TEST_PASSWORD)

    assert refresh_store.active_count(alice.id) == 2
    assert not refresh_store.is_valid(first.refresh_token)
    assert refresh_store.is_valid(second.refresh_token)
    assert refresh_store.is_valid(third.refresh_token)


def test_refresh_after_logout_is_revoked_not_invalid(service, alice):
    session = service.login("alice", TEST_PASSWORD)
    service.logout(session.refresh_token)
    with pytest.raises(TokenRevokedError):
        service.refresh(session.refresh_token)


# ---------------------------------------------------------------------------
# refresh()
# ---------------------------------------------------------------------------


def test_refresh_rotates(service, alice, refresh_store):
    session = service.login("alice", TEST_PASSWORD)
    renewed = service.refresh(session.refresh_token, "198.51.100.9")

    assert renewed.refresh_token != session.refresh_token
    assert renewed.access_token != session.access_token
    assert not refresh_store.is_valid(session.refresh_token)
    assert refresh_store.get(renewed.refresh_token).created_from_ip == "198.51.100.9"

    with pytest.raises(TokenRevokedError):
        service.refresh(session.refresh_token)


def test_refresh_error_mapping(service, alice, clock):
    with pytest.raises(TokenInvalidError):
        service.refresh("not-a-real-token")

    session = service.login("alice", TEST_PASSWORD)
    clock.advance(days=8)
    with pytest.raises(TokenExpiredError):
        service.refresh(session.refresh_token)


def test_refresh_picks_up_role_changes(service, alice, user_store):
    session = service.login("alice", TEST_PASSWORD)
    user_store.set_roles(alice.id, ["ROLE_USER", "ROLE_ADMIN"])

    renewed = service.refresh(session.refresh_token)
    claims = service.authenticate(renewed.access_token)
    assert claims.roles == ["ROLE_ADMIN", "ROLE_USER"]


def test_refresh_refused_for_deactivated_principal(service, alice, user_store, refresh_store):
    session = service.login("alice", TEST_PASSWORD)
    user_store.set_active(alice.id, False)
    with pytest.raises(TokenInvalidError):
        service.refresh(session.refresh_token)
    assert refresh_store.active_count(alice.id) == 0


# ---------------------------------------------------------------------------
# logout / logout_all / authenticate
# ---------------------------------------------------------------------------


def test_logout_blacklists_access_token(service, alice, clock):
    session = service.login("alice", TEST_PASSWORD)
    assert service.authenticate(session.access_token).principal_id == alice.id

    service.logout(session.refresh_token, session.access_token)
    with pytest.raises(TokenRevokedError):
        service.authenticate(session.access_token)

    # Once the access token would have expired anyway, expiry is what callers see.
    clock.advance(minutes=16)
    with pytest.raises(TokenExpiredError):
        service.authenticate(session.access_token)


def test_logout_is_seen_by_another_worker_on_the_same_database(
    service, alice, engine, clock, issuer, refresh_store, lockout, user_store
):
    other = AuthService(user_store, issuer, refresh_store, TokenBlacklist(engine=engine, clock=clock), lockout)
    session = service.login("alice", TEST_PASSWORD)
    assert other.authenticate(session.access_token).principal_id == alice.id

    service.logout(session.refresh_token, session.access_token)
    with pytest.raises(TokenRevokedError):
        other.authenticate(session.access_token)


def test_logout_is_idempotent_and_tolerates_garbage(service, alice, blacklist):
    session = service.login("alice", TEST_PASSWORD)
    service.logout(session.refresh_token, "garbage")
    service.logout(session.refresh_token)
    service.logout(None, None)
    assert len(blacklist) == 0


def test_logout_all_revokes_every_refresh_token(service, alice, refresh_store):
    a = service.login("alice", TEST_PASSWORD)
    b = service.login("alice", TEST_PASSWORD)
    assert service.logout_all(alice.id) == 2
    for session in (a, b):
        with pytest.raises(TokenRevokedError):
            service.refresh(session.refresh_token)


def test_authenticate_rejects_garbage(service):
    with pytest.raises(TokenInvalidError):
        service.authenticate("garbage")


# ---------------------------------------------------------------------------
# Fail-closed / fail-open
# ---------------------------------------------------------------------------


def _broken_guard():
    guard = MagicMock()
    guard.get_remaining_lockout_time.side_effect = RuntimeError("lockout store down")
    guard.login_failed.side_effect = RuntimeError("lockout store down")
    guard.login_succeeded.side_effect = RuntimeError("lockout store down")
    return guard


def test_unavailable_guard_fails_closed_by_default(user_store, issuer, refresh_store, blacklist, alice):
    service = AuthService(user_store, issuer, refresh_store, blacklist, _broken_guard())
    with pytest.raises(RuntimeError):
        service.login("alice", TEST_PASSWORD)


def test_unavailable_guard_fail_open(user_store, issuer, refresh_store, blacklist, alice):
    service = AuthService(user_store, issuer, refresh_store, blacklist, _broken_guard(), lockout_fail_open=True)
    assert service.login("alice", TEST_PASSWORD).user["username"] == "alice"
    with pytest.raises(InvalidCredentialsError):
        service.login("alice", "wrong")


def test_unavailable_blacklist_fails_closed_by_default(user_store, issuer, refresh_store, lockout, alice):
    broken = MagicMock()
    broken.contains.side_effect = RuntimeError("blacklist down")
    service = AuthService(user_store, issuer, refresh_store, broken, lockout)
    session = service.login("alice", TEST_PASSWORD)
    with pytest.raises(RuntimeError):
        service.authenticate(session.access_token)

    open_service = AuthService(user_store, issuer, refresh_store, broken, lockout, blacklist_fail_open=True)
    assert open_service.authenticate(session.access_token).principal_id == alice.id
