"""Unit tests for the auth service.

Tests for:
- Password hashing and verification
- Registration and login
- Refresh-token rotation
- Logout and request authentication
"""

import asyncio

import pytest

from taskboard.config import Settings
from taskboard.service.auth import AuthService
from taskboard.service.errors import (
    AuthenticationError,
    DuplicateEmailError,
    InvalidCredentialsError,
    InvalidOrExpiredTokenError,
    ValidationError,
)
from taskboard.storage.memory import MemoryStore


@pytest.fixture
def settings():
    """Create test settings."""
    return Settings(
        jwt_secret="Test-Access-Key_for-Automation-Only-987654321!",
        jwt_refresh_secret="Test-Refresh-Key_for-Automation-Only-123456789!",
        access_token_ttl_minutes=15,
        refresh_token_ttl_days=7,
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def auth_service(memory_store, settings):
    return AuthService(store=memory_store, settings=settings)


class TestPasswordHashing:
    """Tests for password hashing."""

    def test_hash_is_argon2id(self, auth_service):
        pwd_hash, algo = auth_service._hash_password("secret123")
        assert algo == "argon2id"
        assert pwd_hash.startswith("$argon2id$")
        assert "secret123" not in pwd_hash

    async def test_verify_password(self, auth_service):
        result = await auth_service.register("Ada", "ada@example.com", "secret123")
        assert auth_service.verify_password(result.user.id, "secret123")
        assert not auth_service.verify_password(result.user.id, "wrong-password")

    def test_verify_missing_record(self, auth_service):
        assert auth_service.verify_password("missing-user", "secret123") is False


class TestRegister:
    async def test_tokens_belong_to_new_user(self, auth_service, memory_store):
        result = await auth_service.register("Ada", "Ada@Example.com", "secret123")
        access = auth_service.tokens.verify_access_token(result.access_token)
        refresh = auth_service.tokens.verify_refresh_token(result.refresh_token)
        record = memory_store.find_active_refresh_token(result.refresh_token, refresh.user_id)

        assert access.user_id == result.user.id
        assert record is not None
        assert record.user_id == access.user_id
        assert result.user.email == "ada@example.com"

    async def test_only_the_verifier_is_stored(self, auth_service, memory_store):
        result = await auth_service.register("Ada", "ada@example.com", "secret123")
        pwd_hash, _ = memory_store.get_password_record(result.user.id)
        assert pwd_hash != "secret123"

    async def test_duplicate_email_is_case_insensitive(self, auth_service):
        await auth_service.register("Ada", "ada@example.com", "secret123")
        with pytest.raises(DuplicateEmailError) as exc_info:
            await auth_service.register("Ada Again", "ADA@example.com", "secret123")
        assert exc_info.value.message == "User already exists with this email"
        assert exc_info.value.status_code == 400

    async def test_short_password_rejected(self, auth_service):
        with pytest.raises(ValidationError):
            await auth_service.register("Ada", "ada@example.com", "12345")

    async def test_blank_name_rejected(self, auth_service):
        with pytest.raises(ValidationError):
            await auth_service.register("   ", "ada@example.com", "secret123")


class TestLogin:
    async def test_login_succeeds(self, auth_service):
        registered = await auth_service.register("Ada", "ada@example.com", "secret123")
        result = await auth_service.login("ADA@example.com", "secret123")
        assert result.user.id == registered.user.id
        assert result.refresh_token != registered.refresh_token

    async def test_wrong_password_and_unknown_email_look_identical(self, auth_service):
        await auth_service.register("Ada", "ada@example.com", "secret123")

        with pytest.raises(InvalidCredentialsError) as wrong_password:
            await auth_service.login("ada@example.com", "not-the-password")
        with pytest.raises(InvalidCredentialsError) as unknown_email:
            await auth_service.login("nobody@example.com", "secret123")

        assert type(wrong_password.value) is type(unknown_email.value)
        assert wrong_password.value.message == unknown_email.value.message
        assert wrong_password.value.message == "Invalid email or password"
        assert wrong_password.value.error_code == unknown_email.value.error_code


class TestRefresh:
    """Tests for refresh-token rotation."""

    async def test_refresh_rotates(self, auth_service, memory_store):
        registered = await auth_service.register("Ada", "ada@example.com", "secret123")
        pair = await auth_service.refresh(registered.refresh_token)

        assert pair.refresh_token != registered.refresh_token
        user_id = auth_service.tokens.verify_access_token(pair.access_token).user_id
        assert user_id == registered.user.id
        assert memory_store.find_active_refresh_token(registered.refresh_token, user_id) is None
        assert memory_store.find_active_refresh_token(pair.refresh_token, user_id) is not None

    async def test_refresh_token_is_single_use(self, auth_service):
        registered = await auth_service.register("Ada", "ada@example.com", "secret123")
        await auth_service.refresh(registered.refresh_token)
        with pytest.raises(InvalidOrExpiredTokenError):
            await auth_service.refresh(registered.refresh_token)

    async def test_concurrent_refresh_has_one_winner(self, auth_service):
        registered = await auth_service.register("Ada", "ada@example.com", "secret123")
        results = await asyncio.gather(
            auth_service.refresh(registered.refresh_token),
            auth_service.refresh(registered.refresh_token),
            return_exceptions=True,
        )
        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, InvalidOrExpiredTokenError)]
        assert len(successes) == 1
        assert len(failures) == 1

    async def test_access_token_cannot_refresh(self, auth_service):
        registered = await auth_service.register("Ada", "ada@example.com", "secret123")
        with pytest.raises(InvalidOrExpiredTokenError):
            await auth_service.refresh(registered.access_token)

    async def test_garbage_token_rejected(self, auth_service):
        with pytest.raises(InvalidOrExpiredTokenError):
            await auth_service.refresh("not-a-token")


class TestLogout:
    async def test_logout_revokes_refresh_token(self, auth_service):
        registered = await auth_service.register("Ada", "ada@example.com", "secret123")
        await auth_service.logout(registered.user.id, registered.refresh_token)
        with pytest.raises(InvalidOrExpiredTokenError):
            await auth_service.refresh(registered.refresh_token)

    async def test_logout_twice_is_harmless(self, auth_service):
        registered = await auth_service.register("Ada", "ada@example.com", "secret123")
        await auth_service.logout(registered.user.id, registered.refresh_token)
        await auth_service.logout(registered.user.id, registered.refresh_token)

    async def test_logout_without_token(self, auth_service):
        registered = await auth_service.register("Ada", "ada@example.com", "secret123")
        await auth_service.logout(registered.user.id, None)

    async def test_logout_cannot_revoke_another_users_token(self, auth_service):
        ada = await auth_service.register("Ada", "ada@example.com", "secret123")
        bob = await auth_service.register("Bob", "bob@example.com", "secret123")
        await auth_service.logout(bob.user.id, ada.refresh_token)
        pair = await auth_service.refresh(ada.refresh_token)
        assert pair.access_token


class TestAuthenticate:
    async def test_valid_bearer(self, auth_service):
        registered = await auth_service.register("Ada", "ada@example.com", "secret123")
        ctx = await auth_service.authenticate(f"Bearer {registered.access_token}")
        assert ctx.user_id == registered.user.id
        assert ctx.email == "ada@example.com"
        assert ctx.role == "user"

    @pytest.mark.parametrize("header", [None, "", "Bearer", "Basic abc", "Bearer not.a.token"])
    async def test_rejects_bad_headers(self, auth_service, header):
        with pytest.raises(AuthenticationError):
            await auth_service.authenticate(header)

    async def test_refresh_token_is_not_a_bearer(self, auth_service):
        registered = await auth_service.register("Ada", "ada@example.com", "secret123")
        with pytest.raises(AuthenticationError):
            await auth_service.authenticate(f"Bearer {registered.refresh_token}")

    async def test_deleted_user_rejected(self, auth_service, memory_store):
        registered = await auth_service.register("Ada", "ada@example.com", "secret123")
        memory_store.users.pop(registered.user.id)
        with pytest.raises(AuthenticationError):
            await auth_service.authenticate(f"Bearer {registered.access_token}")
