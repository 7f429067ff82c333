"""Session manager behaviour: registration, login, refresh and revocation."""

import asyncio
from datetime import timedelta

import pytest

from tokenward.result import Failure, Success
from tokenward.service.errors import ErrorKind
from tokenward.service.tokens import REFRESH
from tokenward.storage.errors import StoreUnavailable

EMAIL = "alice@example.com"
PASSWORD = "Str0ng!Passw0rd"


async def _register(runtime, email=EMAIL, password=PASSWORD, **names):
    outcome = await runtime.sessions.register(email, password, **names)
    assert isinstance(outcome, Success)
    return outcome.value


class TestRegisterAndLogin:
    @pytest.mark.asyncio
    async def test_register_then_login_issue_verifiable_access_tokens(self, runtime):
        """Both sessions carry access tokens for the same user."""
        registered = await _register(runtime, first_name="Alice")
        logged_in = await runtime.sessions.login(EMAIL, PASSWORD)
        assert isinstance(logged_in, Success)

        secret = runtime.settings.access_token_secret
        for session in (registered, logged_in.value):
            claims = runtime.codec.verify(session.access_token, secret)
            assert isinstance(claims, Success)
            assert claims.value.user_id == registered.user.id
            assert session.expires_in == 15 * 60
        assert registered.user.first_name == "Alice"

    @pytest.mark.asyncio
    async def test_register_persists_refresh_row_with_store_expiry(self, runtime, clock):
        session = await _register(runtime)
        row = runtime.store.get_refresh_token(session.refresh_token)
        assert row is not None
        assert row.user_id == session.user.id
        assert row.expires_at == clock.now() + timedelta(days=7)
        assert not row.is_revoked

    @pytest.mark.asyncio
    async def test_duplicate_email_is_rejected_without_mutation(self, runtime):
        await _register(runtime)
        users_before = runtime.store.list_users()
        tokens_before = len(runtime.store.refresh_tokens)

        outcome = await runtime.sessions.register(EMAIL, "An0ther!Passw0rd")

        assert isinstance(outcome, Failure)
        assert outcome.error.kind is ErrorKind.ALREADY_EXISTS
        assert runtime.store.list_users() == users_before
        assert len(runtime.store.refresh_tokens) == tokens_before

    @pytest.mark.asyncio
    async def test_email_is_normalized(self, runtime):
        await _register(runtime, email="  Alice@Example.COM ")
        outcome = await runtime.sessions.login("alice@example.com", PASSWORD)
        assert isinstance(outcome, Success)
        duplicate = await runtime.sessions.register("ALICE@example.com", PASSWORD)
        assert duplicate.error.kind is ErrorKind.ALREADY_EXISTS

    @pytest.mark.asyncio
    async def test_unknown_email_and_wrong_password_are_indistinguishable(self, runtime):
        await _register(runtime)
        wrong_password = await runtime.sessions.login(EMAIL, "Wr0ng!Password")
        unknown_email = await runtime.sessions.login("nobody@example.com", PASSWORD)

        assert isinstance(wrong_password, Failure)
        assert isinstance(unknown_email, Failure)
        assert wrong_password.error == unknown_email.error
        assert wrong_password.error.kind is ErrorKind.INVALID_CREDENTIALS
        assert wrong_password.error.message == "Invalid credentials"

    @pytest.mark.asyncio
    async def test_unknown_email_still_runs_a_hash_comparison(self, runtime):
        calls = []
        original = runtime.hasher.verify_dummy

        def _spy(password):
            calls.append(password)
            return original(password)

        runtime.hasher.verify_dummy = _spy
        await runtime.sessions.login("nobody@example.com", PASSWORD)
        assert calls == [PASSWORD]

    @pytest.mark.asyncio
    async def test_deactivated_account_is_reported_before_password_check(self, runtime):
        session = await _register(runtime)
        await runtime.sessions.deactivate_user(session.user.id)

        outcome = await runtime.sessions.login(EMAIL, "Wr0ng!Password")

        assert outcome.error.kind is ErrorKind.ACCOUNT_DEACTIVATED

    @pytest.mark.asyncio
    async def test_login_records_last_login(self, runtime, clock):
        session = await _register(runtime)
        clock.advance(60)
        await runtime.sessions.login(EMAIL, PASSWORD)
        user = runtime.store.get_user(session.user.id)
        assert user.last_login_at == clock.now()


class TestRefresh:
    @pytest.mark.asyncio
    async def test_refresh_issues_new_access_token(self, runtime):
        session = await _register(runtime)
        outcome = await runtime.sessions.refresh(session.refresh_token)
        assert isinstance(outcome, Success)
        assert outcome.value.refresh_token is None
        claims = runtime.codec.verify(
            outcome.value.access_token, runtime.settings.access_token_secret
        )
        assert claims.value.user_id == session.user.id

    @pytest.mark.asyncio
    async def test_garbage_and_access_tokens_are_invalid(self, runtime):
        session = await _register(runtime)
        for token in ("not-a-token", session.access_token):
            outcome = await runtime.sessions.refresh(token)
            assert outcome.error.kind is ErrorKind.INVALID_TOKEN
            assert outcome.error.message == "Invalid refresh token"

    @pytest.mark.asyncio
    async def test_claim_expired_token_is_invalid(self, runtime, clock):
        session = await _register(runtime)
        clock.advance(days=8)
        outcome = await runtime.sessions.refresh(session.refresh_token)
        assert outcome.error.kind is ErrorKind.INVALID_TOKEN

    @pytest.mark.asyncio
    async def test_store_expired_token_reports_expiry(self, runtime, clock):
        """The ledger row is authoritative even while the claims are still valid."""
        session = await _register(runtime)
        row = runtime.store.refresh_tokens[session.refresh_token]
        row.expires_at = clock.now() - timedelta(seconds=1)

        claims = runtime.codec.verify(
            session.refresh_token, runtime.settings.refresh_token_secret, token_type=REFRESH
        )
        assert isinstance(claims, Success)

        outcome = await runtime.sessions.refresh(session.refresh_token)
        assert outcome.error.kind is ErrorKind.TOKEN_EXPIRED
        assert outcome.error.message == "Refresh token expired"

    @pytest.mark.asyncio
    async def test_token_without_ledger_row_is_invalid(self, runtime):
        session = await _register(runtime)
        runtime.store.refresh_tokens.pop(session.refresh_token)
        outcome = await runtime.sessions.refresh(session.refresh_token)
        assert outcome.error.kind is ErrorKind.INVALID_TOKEN


class TestRevocation:
    @pytest.mark.asyncio
    async def test_logout_revokes_only_the_presented_token(self, runtime):
        first = await _register(runtime)
        second = (await runtime.sessions.login(EMAIL, PASSWORD)).value

        await runtime.sessions.logout(first.user.id, first.refresh_token)

        revoked = await runtime.sessions.refresh(first.refresh_token)
        assert revoked.error.kind is ErrorKind.INVALID_TOKEN
        still_active = await runtime.sessions.refresh(second.refresh_token)
        assert isinstance(still_active, Success)

    @pytest.mark.asyncio
    async def test_repeated_logout_is_a_noop(self, runtime):
        session = await _register(runtime)
        await runtime.sessions.logout(session.user.id, session.refresh_token)
        await runtime.sessions.logout(session.user.id, session.refresh_token)
        assert runtime.store.get_refresh_token(session.refresh_token).is_revoked

    @pytest.mark.asyncio
    async def test_logout_cannot_revoke_another_users_token(self, runtime):
        alice = await _register(runtime)
        bob = await _register(runtime, email="bob@example.com")
        await runtime.sessions.logout(bob.user.id, alice.refresh_token)
        assert isinstance(await runtime.sessions.refresh(alice.refresh_token), Success)

    @pytest.mark.asyncio
    async def test_revoke_all_invalidates_every_refresh_token(self, runtime):
        sessions = [await _register(runtime)]
        for _ in range(2):
            sessions.append((await runtime.sessions.login(EMAIL, PASSWORD)).value)

        revoked = await runtime.sessions.revoke_all_tokens(sessions[0].user.id)

        assert revoked == 3
        for session in sessions:
            outcome = await runtime.sessions.refresh(session.refresh_token)
            assert outcome.error.kind is ErrorKind.INVALID_TOKEN
        assert await runtime.sessions.revoke_all_tokens(sessions[0].user.id) == 0


class TestRotation:
    @pytest.mark.asyncio
    async def test_rotation_replaces_the_presented_token(self, make_runtime):
        runtime = make_runtime(rotate_refresh_tokens=True)
        session = await _register(runtime)

        outcome = await runtime.sessions.refresh(session.refresh_token)

        assert isinstance(outcome, Success)
        rotated = outcome.value.refresh_token
        assert rotated and rotated != session.refresh_token
        assert (await runtime.sessions.refresh(session.refresh_token)).error.kind is (
            ErrorKind.INVALID_TOKEN
        )
        assert isinstance(await runtime.sessions.refresh(rotated), Success)

    @pytest.mark.asyncio
    async def test_concurrent_rotation_has_a_single_winner(self, make_runtime):
        runtime = make_runtime(rotate_refresh_tokens=True)
        session = await _register(runtime)

        results = await asyncio.gather(
            *(runtime.sessions.refresh(session.refresh_token) for _ in range(3))
        )

        winners = [r for r in results if isinstance(r, Success)]
        assert len(winners) == 1
        assert all(r.error.kind is ErrorKind.INVALID_TOKEN for r in results if isinstance(r, Failure))


class TestProfileAndAccount:
    @pytest.mark.asyncio
    async def test_profile_cached_after_register_and_after_each_invalidation(self, runtime):
        session = await _register(runtime)
        user_id = session.user.id

        first = await runtime.sessions.get_profile(user_id)
        assert first.value.cached is True

        for invalidate in (
            lambda: runtime.sessions.logout(user_id, session.refresh_token),
            lambda: runtime.sessions.revoke_all_tokens(user_id),
            lambda: runtime.sessions.update_profile(user_id, first_name="Al"),
        ):
            await invalidate()
            miss = await runtime.sessions.get_profile(user_id)
            hit = await runtime.sessions.get_profile(user_id)
            assert miss.value.cached is False
            assert hit.value.cached is True

        assert hit.value.profile.first_name == "Al"

    @pytest.mark.asyncio
    async def test_authenticate_resolves_active_users_only(self, runtime):
        session = await _register(runtime)
        principal = await runtime.sessions.authenticate(session.access_token)
        assert principal.value.user_id == session.user.id
        assert principal.value.email == EMAIL

        await runtime.sessions.deactivate_user(session.user.id)
        denied = await runtime.sessions.authenticate(session.access_token)
        assert denied.error.kind is ErrorKind.ACCOUNT_DEACTIVATED

    @pytest.mark.asyncio
    async def test_authenticate_rejects_refresh_and_expired_tokens(self, runtime, clock):
        session = await _register(runtime)
        wrong_type = await runtime.sessions.authenticate(session.refresh_token)
        assert wrong_type.error.kind is ErrorKind.INVALID_TOKEN

        clock.advance(minutes=16)
        expired = await runtime.sessions.authenticate(session.access_token)
        assert expired.error.kind is ErrorKind.TOKEN_EXPIRED

    @pytest.mark.asyncio
    async def test_update_profile_unknown_user(self, runtime):
        outcome = await runtime.sessions.update_profile("missing", first_name="X")
        assert outcome.error.kind is ErrorKind.NOT_FOUND

    @pytest.mark.asyncio
    async def test_change_password_revokes_sessions(self, runtime):
        session = await _register(runtime)
        new_password = "N3w!Passw0rdX"

        bad = await runtime.sessions.change_password(session.user.id, "Wr0ng!pass", new_password)
        assert bad.error.kind is ErrorKind.INVALID_CREDENTIALS

        changed = await runtime.sessions.change_password(session.user.id, PASSWORD, new_password)
        assert changed.value == 1
        assert (await runtime.sessions.refresh(session.refresh_token)).error.kind is (
            ErrorKind.INVALID_TOKEN
        )
        assert isinstance(await runtime.sessions.login(EMAIL, new_password), Success)
        assert isinstance(await runtime.sessions.login(EMAIL, PASSWORD), Failure)

    @pytest.mark.asyncio
    async def test_deactivate_unknown_user(self, runtime):
        outcome = await runtime.sessions.deactivate_user("missing")
        assert outcome.error.kind is ErrorKind.NOT_FOUND


class TestStoreFailures:
    @pytest.mark.asyncio
    async def test_store_unavailable_propagates(self, runtime):
        def _down(*args, **kwargs):
            raise StoreUnavailable("get_user_by_email")

        runtime.store.get_user_by_email = _down
        with pytest.raises(StoreUnavailable):
            await runtime.sessions.login(EMAIL, PASSWORD)
