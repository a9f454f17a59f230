"""Unit tests for auth/sessions.py -- SessionManager and the refresh token ledger.

Covers:
- register(): user + first ledger row written together; duplicate email -> Conflict
- register(): unique-constraint Conflict when the pre-check is raced
- login(): one new ledger row per login; generic Unauthorized on every failure
- refresh(): rotation T1 -> T2, replay of T1 rejected, T2 still valid
- refresh(): expired token revoked as a side effect; unknown token rejected
- refresh(): inactive user rejected and its token revoked
- refresh(): every loser of a rotation race gets Unauthorized and adds no row
- refresh(): a failing insert rolls back the revoke of the presented token
- logout(): idempotent; scoped to the owner when user_id is given
- logout_all(): every live token revoked; already-revoked rows not recounted
- max_active_sessions: oldest live tokens revoked past the cap
"""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from auth.errors import Conflict, Unauthorized
from auth.models import RefreshToken
from auth.sessions import SessionManager
from auth.store import AuthStore, to_iso
from auth.tokens import decode_access_token


def _active_tokens(store, user_id):
    return [t for t in store.list_refresh_tokens(user_id) if not t.is_revoked]


class TestRegister:
    def test_register_creates_user_and_one_token(self, store, sessions) -> None:
        result = sessions.register("Ana", "Ana@X.com", "secret1", phone="555-0100")
        assert result.user.id is not None
        assert result.user.email == "ana@x.com"

        user = store.get_by_id(result.user.id)
        assert user.name == "Ana"
        assert user.phone == "555-0100"
        assert user.global_role == "user"
        assert user.hashed_password != "secret1"

        ledger = store.list_refresh_tokens(result.user.id)
        assert len(ledger) == 1
        assert ledger[0].token == result.tokens.refresh_token
        assert ledger[0].is_revoked is False

        payload = decode_access_token(result.tokens.access_token)
        assert payload["user_id"] == result.user.id
        assert payload["email"] == "ana@x.com"

    def test_duplicate_email_conflict(self, store, sessions) -> None:
        sessions.register("Ana", "ana@x.com", "secret1")
        with pytest.raises(Conflict):
            sessions.register("Other", "ANA@x.com", "secret2")
        assert store.get_by_email("ana@x.com").name == "Ana"

    def test_raced_duplicate_is_conflict(self, store, sessions, monkeypatch) -> None:
        """The unique constraint still yields Conflict when the pre-check misses."""
        sessions.register("Ana", "ana@x.com", "secret1")
        monkeypatch.setattr(store, "get_by_email", lambda email: None)
        with pytest.raises(Conflict):
            sessions.register("Other", "ana@x.com", "secret2")

    def test_failed_token_insert_rolls_back_user(self, store, sessions, monkeypatch) -> None:
        def boom(record, conn=None):
            raise RuntimeError("insert failed")

        monkeypatch.setattr(store, "add_refresh_token", boom)
        with pytest.raises(RuntimeError):
            sessions.register("Ana", "ana@x.com", "secret1")
        monkeypatch.undo()
        assert store.get_by_email("ana@x.com") is None


class TestLogin:
    def test_login_appends_ledger_row(self, store, sessions, make_user) -> None:
        registered = make_user(email="ana@x.com")
        result = sessions.login("ana@x.com", "secret1")

        assert result.user.id == registered.user.id
        assert result.tokens.refresh_token != registered.tokens.refresh_token
        assert len(_active_tokens(store, registered.user.id)) == 2
        assert store.get_by_id(registered.user.id).last_login is not None

    def test_login_case_insensitive_email(self, sessions, make_user) -> None:
        make_user(email="ana@x.com")
        assert sessions.login("ANA@x.com", "secret1").user.email == "ana@x.com"

    def test_wrong_password_and_unknown_email_look_the_same(self, sessions, make_user) -> None:
        make_user(email="ana@x.com")
        with pytest.raises(Unauthorized) as wrong:
            sessions.login("ana@x.com", "nope")
        with pytest.raises(Unauthorized) as unknown:
            sessions.login("ghost@x.com", "secret1")
        assert wrong.value.message == unknown.value.message

    def test_failed_login_writes_nothing(self, store, sessions, make_user) -> None:
        registered = make_user(email="ana@x.com")
        with pytest.raises(Unauthorized):
            sessions.login("ana@x.com", "nope")
        assert len(store.list_refresh_tokens(registered.user.id)) == 1

    def test_inactive_user_cannot_login(self, store, sessions, make_user) -> None:
        registered = make_user(email="ana@x.com")
        store.update_user(registered.user.id, is_active=False)
        with pytest.raises(Unauthorized):
            sessions.login("ana@x.com", "secret1")


class TestRefresh:
    def test_rotation(self, store, sessions, make_user) -> None:
        first = make_user()
        t1 = first.tokens.refresh_token

        second = sessions.refresh(t1)
        t2 = second.tokens.refresh_token

        assert t2 != t1
        assert second.user.id == first.user.id
        assert store.get_refresh_token(t1).is_revoked is True
        assert store.get_refresh_token(t2).is_revoked is False
        assert decode_access_token(second.tokens.access_token)["user_id"] == first.user.id

        with pytest.raises(Unauthorized):
            sessions.refresh(t1)

        third = sessions.refresh(t2)
        assert third.tokens.refresh_token not in (t1, t2)

    def test_unknown_token(self, sessions) -> None:
        with pytest.raises(Unauthorized):
            sessions.refresh("never-issued")

    def test_expired_token_is_revoked(self, store, sessions, make_user) -> None:
        user_id = make_user().user.id
        past = datetime.now(timezone.utc) - timedelta(days=1)
        store.add_refresh_token(RefreshToken(token="stale-token", user_id=user_id, expires_at=to_iso(past)))

        with pytest.raises(Unauthorized):
            sessions.refresh("stale-token")
        assert store.get_refresh_token("stale-token").is_revoked is True

    def test_inactive_user_token_revoked(self, store, sessions, make_user) -> None:
        registered = make_user()
        store.update_user(registered.user.id, is_active=False)
        with pytest.raises(Unauthorized):
            sessions.refresh(registered.tokens.refresh_token)
        assert store.get_refresh_token(registered.tokens.refresh_token).is_revoked is True

    def test_refresh_after_logout(self, sessions, make_user) -> None:
        registered = make_user()
        sessions.logout(registered.tokens.refresh_token)
        with pytest.raises(Unauthorized):
            sessions.refresh(registered.tokens.refresh_token)

    def test_lost_race_adds_no_token(self, store, sessions, make_user, monkeypatch) -> None:
        """A caller that read the row before another rotation committed must lose."""
        registered = make_user()
        token = registered.tokens.refresh_token
        stale = store.get_refresh_token(token)

        sessions.refresh(token)
        rows_after_winner = len(store.list_refresh_tokens(registered.user.id))

        monkeypatch.setattr(store, "get_refresh_token", lambda t: stale)
        with pytest.raises(Unauthorized):
            sessions.refresh(token)
        monkeypatch.undo()

        assert len(store.list_refresh_tokens(registered.user.id)) == rows_after_winner

    def test_failed_insert_keeps_presented_token(self, store, sessions, make_user, monkeypatch) -> None:
        registered = make_user()
        token = registered.tokens.refresh_token

        def boom(record, conn=None):
            raise RuntimeError("insert failed")

        monkeypatch.setattr(store, "add_refresh_token", boom)
        with pytest.raises(RuntimeError):
            sessions.refresh(token)
        monkeypatch.undo()

        assert store.get_refresh_token(token).is_revoked is False
        assert sessions.refresh(token).tokens.refresh_token != token


class TestConcurrentRefresh:
    """Real threads against a file-backed DB: at most one rotation succeeds."""

    def test_one_winner(self, tmp_path) -> None:
        from auth.seed import seed_catalog

        store = AuthStore(f"sqlite:///{tmp_path / 'race.db'}")
        seed_catalog(store)
        sessions = SessionManager(store, max_active_sessions=0)
        registered = sessions.register("Ana", "ana@x.com", "secret1")
        token = registered.tokens.refresh_token

        barrier = threading.Barrier(4)
        outcomes: list[str] = []
        lock = threading.Lock()

        def worker() -> None:
            barrier.wait()
            try:
                sessions.refresh(token)
                outcome = "ok"
            except Unauthorized:
                outcome = "unauthorized"
            with lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("ok") == 1
        assert outcomes.count("unauthorized") == 3
        assert len(_active_tokens(store, registered.user.id)) == 1
        store.close()


class TestLogout:
    def test_logout_revokes_and_is_idempotent(self, store, sessions, make_user) -> None:
        registered = make_user()
        token = registered.tokens.refresh_token
        sessions.logout(token)
        sessions.logout(token)
        sessions.logout("never-issued")
        assert store.get_refresh_token(token).is_revoked is True

    def test_logout_leaves_other_sessions(self, store, sessions, make_user) -> None:
        registered = make_user(email="ana@x.com")
        other = sessions.login("ana@x.com", "secret1")
        sessions.logout(registered.tokens.refresh_token)
        assert store.get_refresh_token(other.tokens.refresh_token).is_revoked is False

    def test_logout_scoped_to_owner(self, store, sessions, make_user) -> None:
        victim = make_user()
        attacker = make_user()
        sessions.logout(victim.tokens.refresh_token, user_id=attacker.user.id)
        assert store.get_refresh_token(victim.tokens.refresh_token).is_revoked is False

    def test_logout_all(self, store, sessions, make_user) -> None:
        registered = make_user(email="ana@x.com")
        sessions.login("ana@x.com", "secret1")
        sessions.login("ana@x.com", "secret1")
        bystander = make_user()

        assert sessions.logout_all(registered.user.id) == 3
        assert _active_tokens(store, registered.user.id) == []
        assert sessions.logout_all(registered.user.id) == 0
        assert len(_active_tokens(store, bystander.user.id)) == 1

        with pytest.raises(Unauthorized):
            sessions.refresh(registered.tokens.refresh_token)

    def test_login_after_logout_all(self, sessions, make_user) -> None:
        registered = make_user(email="ana@x.com")
        sessions.logout_all(registered.user.id)
        result = sessions.login("ana@x.com", "secret1")
        assert sessions.refresh(result.tokens.refresh_token).user.id == registered.user.id


class TestSessionCap:
    def test_oldest_sessions_revoked(self, store) -> None:
        capped = SessionManager(store, max_active_sessions=2)
        first = capped.register("Ana", "ana@x.com", "secret1")
        second = capped.login("ana@x.com", "secret1")
        third = capped.login("ana@x.com", "secret1")

        active = {t.token for t in _active_tokens(store, first.user.id)}
        assert active == {second.tokens.refresh_token, third.tokens.refresh_token}
        assert store.get_refresh_token(first.tokens.refresh_token).is_revoked is True

    def test_rotation_does_not_consume_cap(self, store) -> None:
        capped = SessionManager(store, max_active_sessions=2)
        first = capped.register("Ana", "ana@x.com", "secret1")
        second = capped.login("ana@x.com", "secret1")
        rotated = capped.refresh(second.tokens.refresh_token)

        active = {t.token for t in _active_tokens(store, first.user.id)}
        assert active == {first.tokens.refresh_token, rotated.tokens.refresh_token}

    def test_unlimited_by_default_zero(self, store, sessions, make_user) -> None:
        registered = make_user(email="ana@x.com")
        for _ in range(4):
            sessions.login("ana@x.com", "secret1")
        assert len(_active_tokens(store, registered.user.id)) == 5

