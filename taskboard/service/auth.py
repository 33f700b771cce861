from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from taskboard.config import Settings
from taskboard.logging import get_logger
from taskboard.service.errors import (
    AuthenticationError,
    DuplicateEmailError,
    InvalidCredentialsError,
    InvalidOrExpiredTokenError,
    UserNotFoundError,
    ValidationError,
)
from taskboard.service.tokens import TokenError, TokenExpiredError, TokenIssuer
from taskboard.storage.errors import ConstraintViolation
from taskboard.storage.models import RefreshTokenRecord, User

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class AuthStore(Protocol):
    def create_user(self, name: str, email: str, *, role: str = "user") -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def save_refresh_token(
        self, token: str, user_id: str, expires_at: datetime
    ) -> RefreshTokenRecord: ...

    def find_active_refresh_token(
        self, token: str, user_id: str
    ) -> Optional[RefreshTokenRecord]: ...

    def revoke_user_refresh_token(self, token: str, user_id: str) -> bool: ...

    def rotate_refresh_token(
        self,
        old_token: str,
        user_id: str,
        new_token: str,
        new_expires_at: datetime,
    ) -> Optional[RefreshTokenRecord]: ...

    def list_refresh_tokens(self, user_id: str) -> List[RefreshTokenRecord]: ...


@dataclass
class AuthContext:
    user_id: str
    email: str
    role: str


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str


@dataclass
class AuthResult:
    user: User
    access_token: str
    refresh_token: str


class AuthService:
    """Account registration, credential checks and the refresh-token lifecycle.

    A session moves Anonymous -> Authenticated on register/login, through a
    transient Refreshing state on refresh (back to Authenticated on success,
    Anonymous on failure) and to Anonymous on logout.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        tokens: Optional[TokenIssuer] = None,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self.tokens = tokens or TokenIssuer(settings)
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None
        self.logger = logger

    async def register(self, name: str, email: str, password: str) -> AuthResult:
        name = (name or "").strip()
        email = (email or "").strip().lower()
        if not name:
            raise ValidationError("Name is required", detail={"field": "name"})
        if not email:
            raise ValidationError("Email is required", detail={"field": "email"})
        self._check_password(password)
        if self.store.get_user_by_email(email):
            raise DuplicateEmailError()
        try:
            user = self.store.create_user(name=name, email=email)
        except ConstraintViolation as exc:
            # Lost a race with a concurrent registration for the same address
            raise DuplicateEmailError(detail=exc.detail) from exc
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user.id, pwd_hash, algo)
        access_token, refresh_token = self._issue_session_tokens(user.id)
        self.logger.info("user_registered", user_id=user.id)
        return AuthResult(user=user, access_token=access_token, refresh_token=refresh_token)

    async def login(self, email: str, password: str) -> AuthResult:
        user = self.store.get_user_by_email((email or "").strip())
        if not user:
            # Burn an argon2 verify so unknown emails cost the same as bad passwords
            self._verify_dummy(password)
            self.logger.info("login_failed", reason="unknown_email")
            raise InvalidCredentialsError()
        if not self.verify_password(user.id, password):
            self.logger.info("login_failed", reason="bad_password", user_id=user.id)
            raise InvalidCredentialsError()
        access_token, refresh_token = self._issue_session_tokens(user.id)
        self.logger.info("user_logged_in", user_id=user.id)
        return AuthResult(user=user, access_token=access_token, refresh_token=refresh_token)

    async def refresh(self, refresh_token: str) -> TokenPair:
        """Exchange a refresh token for a new pair; each token works once."""
        try:
            claims = self.tokens.verify_refresh_token(refresh_token)
        except TokenExpiredError:
            self.logger.info("refresh_rejected", reason="expired")
            raise InvalidOrExpiredTokenError()
        except TokenError as exc:
            self.logger.warning("refresh_rejected", reason="invalid_signature", error=str(exc))
            raise InvalidOrExpiredTokenError()

        record = self.store.find_active_refresh_token(refresh_token, claims.user_id)
        if not record:
            self.logger.warning("refresh_rejected", reason="not_active", user_id=claims.user_id)
            raise InvalidOrExpiredTokenError()

        issued = self.tokens.issue_refresh_token(claims.user_id)
        rotated = self.store.rotate_refresh_token(
            refresh_token, claims.user_id, issued.token, issued.expires_at
        )
        if not rotated:
            self.logger.warning("refresh_rejected", reason="already_rotated", user_id=claims.user_id)
            raise InvalidOrExpiredTokenError()

        access_token = self.tokens.issue_access_token(claims.user_id)
        self.logger.info("refresh_token_rotated", user_id=claims.user_id)
        return TokenPair(access_token=access_token, refresh_token=issued.token)

    async def logout(self, user_id: str, refresh_token: Optional[str] = None) -> None:
        if not refresh_token:
            self.logger.info("user_logged_out", user_id=user_id, revoked=False)
            return
        revoked = self.store.revoke_user_refresh_token(refresh_token, user_id)
        self.logger.info("user_logged_out", user_id=user_id, revoked=revoked)

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = self._extract_bearer(authorization)
        if not token:
            raise AuthenticationError("Not authorized")
        try:
            claims = self.tokens.verify_access_token(token)
        except TokenError as exc:
            self.logger.info("access_token_rejected", error=str(exc))
            raise AuthenticationError("Not authorized") from exc
        user = self.store.get_user(claims.user_id)
        if not user:
            self.logger.warning("access_token_user_missing", user_id=claims.user_id)
            raise UserNotFoundError("Not authorized")
        return AuthContext(user_id=user.id, email=user.email, role=user.role)

    async def get_profile(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise UserNotFoundError("User not found")
        return user

    def _issue_session_tokens(self, user_id: str) -> Tuple[str, str]:
        access_token = self.tokens.issue_access_token(user_id)
        issued = self.tokens.issue_refresh_token(user_id)
        self.store.save_refresh_token(issued.token, user_id, issued.expires_at)
        return access_token, issued.token

    def _check_password(self, password: str) -> None:
        if not password or len(password) < self.settings.password_min_length:
            raise ValidationError(
                f"Password must be at least {self.settings.password_min_length} characters",
                detail={"field": "password"},
            )

    def _hash_password(self, password: str) -> Tuple[str, str]:
        digest = self._pwd_hasher.hash(password)
        return digest, PASSWORD_ALGO

    def _verify_dummy(self, password: str) -> None:
        if self._dummy_hash is None:
            self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        try:
            self._pwd_hasher.verify(self._dummy_hash, password or "")
        except (InvalidHash, VerifyMismatchError):
            pass

    def verify_password(self, user_id: str, password: str) -> bool:
        """Verify a user's password against stored hash."""
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password or "")
        except (InvalidHash, VerifyMismatchError):
            return False

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        token = header.split(" ", 1)[1].strip()
        return token or None


__all__ = ["AuthService", "AuthContext", "AuthResult", "AuthStore", "TokenPair"]
