import pytest

from scripts.deactivate_user import deactivate_account
from tokenward.result import Failure

PASSWORD = "Str0ng!Passw0rd"


class TestDeactivateAccount:
    @pytest.mark.asyncio
    async def test_deactivates_and_revokes(self, runtime):
        session = (await runtime.sessions.register("hank@example.com", PASSWORD)).value

        result = await deactivate_account(runtime, "Hank@Example.com")

        assert result["status"] == "deactivated"
        assert result["revoked"] == 1
        assert not runtime.store.get_user(session.user.id).is_active
        assert isinstance(await runtime.sessions.refresh(session.refresh_token), Failure)

        again = await deactivate_account(runtime, "hank@example.com")
        assert again["status"] == "already_inactive"

    @pytest.mark.asyncio
    async def test_dry_run_changes_nothing(self, runtime):
        session = (await runtime.sessions.register("ivy@example.com", PASSWORD)).value
        result = await deactivate_account(runtime, "ivy@example.com", dry_run=True)
        assert result["status"] == "dry_run"
        assert runtime.store.get_user(session.user.id).is_active

    @pytest.mark.asyncio
    async def test_unknown_email(self, runtime):
        result = await deactivate_account(runtime, "nobody@example.com")
        assert result["status"] == "not_found"

    @pytest.mark.asyncio
    async def test_email_is_normalised_like_registration(self, runtime):
        session = (await runtime.sessions.register("judy@example.com", PASSWORD)).value
        # Fullwidth letters and a zero-width space fold to the registered address
        result = await deactivate_account(runtime, " ＪＵＤＹ\u200b@example.com ")
        assert result["status"] == "deactivated"
        assert result["user_id"] == session.user.id
