"""Account service tests: registration, passwords and reset flow."""

from urllib.parse import parse_qs, urlparse

import pytest

from authkernel.service.accounts import AccountService
from authkernel.service.errors import (
    AuthenticationFailedError,
    ConflictError,
    InvalidCodeError,
    InvalidRefreshTokenError,
    UserNotFoundError,
    ValidationError,
)
from authkernel.service.tokens import TokenCodec
from authkernel.storage.models import VerificationContext

PASSWORD = "CorrectHorse42!"


@pytest.fixture
def account_service(memory_store, session_manager, verification_manager, dispatcher, clock):
    return AccountService(
        memory_store,
        session_manager,
        verification_manager,
        dispatcher,
        password_min_length=8,
        reset_ttl_minutes=60,
        reset_base_url="https://app.example/reset-password",
        clock=clock,
    )


def _token_from(dispatcher) -> str:
    _, url, _ = dispatcher.resets[-1]
    return parse_qs(urlparse(url).query)["token"][0]


class TestRegistration:
    """Account creation."""

    async def test_register_hashes_password_and_sends_code(
        self, account_service, dispatcher, memory_store
    ):
        user = await account_service.register(" New@Example.com ", PASSWORD)

        stored = memory_store.get_user(user.id)
        assert stored.email == "new@example.com"
        assert stored.password_hash.startswith("$argon2id$")
        assert stored.is_verified is False
        assert dispatcher.codes[0][0] == "new@example.com"

    async def test_duplicate_email(self, account_service):
        await account_service.register("dup@example.com", PASSWORD)

        with pytest.raises(ConflictError):
            await account_service.register("DUP@example.com", PASSWORD)

    async def test_dispatch_failure_still_returns_account(
        self, account_service, dispatcher, memory_store
    ):
        dispatcher.fail = True

        user = await account_service.register("undelivered@example.com", PASSWORD)

        assert memory_store.get_user(user.id).email == "undelivered@example.com"
        assert len(memory_store.list_verifications(user.id)) == 1

        dispatcher.fail = False
        resent = await account_service.verification.resend(user.id)
        assert dispatcher.codes[-1][1] == resent.code

    async def test_register_and_login(self, account_service, session_manager):
        user, login = await account_service.register_and_login(
            "fresh@example.com", PASSWORD, ip="10.0.0.1", user_agent="pytest"
        )

        assert login.pending_verification is True
        assert login.session.ip == "10.0.0.1"
        claims = await session_manager.authenticate(login.access_token)
        assert claims.user_id == user.id

    async def test_short_password(self, account_service):
        with pytest.raises(ValidationError):
            await account_service.register("short@example.com", "abc")

    async def test_register_verify_login(
        self, account_service, verification_manager, session_manager, dispatcher, trust
    ):
        user = await account_service.register("flow@example.com", PASSWORD)
        code = dispatcher.codes[-1][1]

        await verification_manager.consume(user.id, code, VerificationContext.EMAIL_CONFIRMATION)
        authenticated = await account_service.authenticate("flow@example.com", PASSWORD)
        login = await session_manager.login(authenticated.id)

        assert trust.is_verified(user.id)
        assert login.pending_verification is False


class TestAuthenticate:
    """Password checks."""

    async def test_wrong_password_and_unknown_email_look_alike(self, account_service):
        await account_service.register("auth@example.com", PASSWORD)

        with pytest.raises(AuthenticationFailedError) as wrong:
            await account_service.authenticate("auth@example.com", "nope-nope")
        with pytest.raises(AuthenticationFailedError) as unknown:
            await account_service.authenticate("ghost@example.com", PASSWORD)

        assert wrong.value.to_envelope() == unknown.value.to_envelope()

    async def test_change_password_revokes_sessions(self, account_service, session_manager):
        user = await account_service.register("change@example.com", PASSWORD)
        login = await session_manager.login(user.id)

        revoked = await account_service.change_password(user.id, PASSWORD, "BrandNewPass9")

        assert revoked == 1
        with pytest.raises(InvalidRefreshTokenError):
            await session_manager.refresh(login.refresh_token)
        with pytest.raises(AuthenticationFailedError):
            await account_service.authenticate("change@example.com", PASSWORD)
        await account_service.authenticate("change@example.com", "BrandNewPass9")

    async def test_change_password_requires_current(self, account_service):
        user = await account_service.register("guard@example.com", PASSWORD)

        with pytest.raises(AuthenticationFailedError):
            await account_service.change_password(user.id, "wrong-password", "BrandNewPass9")


class TestPasswordReset:
    """Forgot/reset password flow."""

    async def test_reset_flow(self, account_service, session_manager, memory_store, dispatcher):
        user = await account_service.register("reset@example.com", PASSWORD)
        login = await session_manager.login(user.id)

        token = await account_service.request_password_reset("reset@example.com")

        assert _token_from(dispatcher) == token
        assert dispatcher.resets[-1][2] == 60
        stored = memory_store.get_user(user.id).password_reset
        assert stored.token_hash == TokenCodec.hash_secret(token)

        await account_service.reset_password(token, "ResetPass123")

        assert memory_store.get_user(user.id).password_reset is None
        await account_service.authenticate("reset@example.com", "ResetPass123")
        with pytest.raises(InvalidRefreshTokenError):
            await session_manager.refresh(login.refresh_token)
        with pytest.raises(InvalidCodeError):
            await account_service.reset_password(token, "AnotherPass123")

    async def test_new_request_replaces_old_token(self, account_service):
        await account_service.register("twice@example.com", PASSWORD)
        first = await account_service.request_password_reset("twice@example.com")
        second = await account_service.request_password_reset("twice@example.com")

        with pytest.raises(InvalidCodeError):
            await account_service.reset_password(first, "ResetPass123")
        await account_service.reset_password(second, "ResetPass123")

    async def test_expired_token(self, account_service, clock):
        await account_service.register("late@example.com", PASSWORD)
        token = await account_service.request_password_reset("late@example.com")
        clock.advance(minutes=60)

        with pytest.raises(InvalidCodeError):
            await account_service.reset_password(token, "ResetPass123")

    async def test_unknown_email(self, account_service):
        with pytest.raises(UserNotFoundError):
            await account_service.request_password_reset("nobody@example.com")

    async def test_change_password_clears_pending_reset(self, account_service):
        user = await account_service.register("clear@example.com", PASSWORD)
        token = await account_service.request_password_reset("clear@example.com")

        await account_service.change_password(user.id, PASSWORD, "BrandNewPass9")

        with pytest.raises(InvalidCodeError):
            await account_service.reset_password(token, "ResetPass123")
