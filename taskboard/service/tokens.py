from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from taskboard.config import Settings
from taskboard.logging import get_logger

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


class TokenError(Exception):
    """Base class for every token verification failure."""


class InvalidTokenSignatureError(TokenError):
    """Token is malformed, signed with another key or not meant for us."""


class TokenExpiredError(TokenError):
    """Token signature is valid but its ``exp`` has passed."""


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_at: datetime


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    token_type: str
    issued_at: datetime
    expires_at: datetime
    jti: str | None = None


class TokenIssuer:
    """Signs and verifies HS256 access and refresh tokens.

    Access and refresh tokens use separate secrets, so a refresh token can
    never pass as an access token even if the ``type`` claim were forged.
    """

    def __init__(self, settings: Settings) -> None:
        if settings.jwt_secret == settings.jwt_refresh_secret:
            raise ValueError("access and refresh secrets must differ")
        self.settings = settings
        self._access_ttl = timedelta(minutes=settings.access_token_ttl_minutes)
        self._refresh_ttl = timedelta(days=settings.refresh_token_ttl_days)
        self._clock_skew_leeway = timedelta(seconds=settings.token_clock_skew_seconds)

    def issue_access_token(self, user_id: str) -> str:
        return self._issue(user_id, ACCESS_TOKEN_TYPE).token

    def issue_refresh_token(self, user_id: str) -> IssuedToken:
        return self._issue(user_id, REFRESH_TOKEN_TYPE)

    def verify_access_token(self, token: str) -> TokenClaims:
        return self._verify(token, ACCESS_TOKEN_TYPE)

    def verify_refresh_token(self, token: str) -> TokenClaims:
        return self._verify(token, REFRESH_TOKEN_TYPE)

    def _secret_for(self, token_type: str) -> bytes:
        if token_type == REFRESH_TOKEN_TYPE:
            return self.settings.jwt_refresh_secret.encode()
        return self.settings.jwt_secret.encode()

    def _issue(self, user_id: str, token_type: str) -> IssuedToken:
        now = datetime.now(timezone.utc)
        ttl = self._refresh_ttl if token_type == REFRESH_TOKEN_TYPE else self._access_ttl
        expires_at = now + ttl
        payload: dict[str, Any] = {
            "userId": user_id,
            "type": token_type,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
        }
        if token_type == REFRESH_TOKEN_TYPE:
            payload["jti"] = uuid.uuid4().hex
        token = self._encode_jwt(payload, self._secret_for(token_type))
        return IssuedToken(
            token=token,
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, secret: bytes) -> str:
        return self._encode_segment(
            hmac.new(secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any], secret: bytes) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, secret)}"

    def _verify(self, token: str, token_type: str) -> TokenClaims:
        if not isinstance(token, str) or token.count(".") != 2:
            raise InvalidTokenSignatureError("malformed token")
        header_b64, payload_b64, sig_b64 = token.split(".")

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_header_decode_failed", error=str(exc))
            raise InvalidTokenSignatureError("malformed header") from exc
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidTokenSignatureError("unsupported algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", self._secret_for(token_type))
        if not sig_b64.isascii() or not hmac.compare_digest(expected_sig, sig_b64):
            raise InvalidTokenSignatureError("signature mismatch")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenSignatureError("malformed payload") from exc
        if not isinstance(payload, dict):
            raise InvalidTokenSignatureError("malformed payload")

        if payload.get("iss") != self.settings.jwt_issuer:
            raise InvalidTokenSignatureError("issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise InvalidTokenSignatureError("audience mismatch")
        if payload.get("type") != token_type:
            raise InvalidTokenSignatureError("wrong token type")
        user_id = payload.get("userId")
        if not isinstance(user_id, str) or not user_id:
            raise InvalidTokenSignatureError("missing subject")

        try:
            exp_ts = float(payload["exp"])
            iat_ts = float(payload.get("iat", exp_ts))
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidTokenSignatureError("missing expiry") from exc
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            raise TokenExpiredError("token expired")

        return TokenClaims(
            user_id=user_id,
            token_type=token_type,
            issued_at=datetime.fromtimestamp(iat_ts, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(exp_ts, tz=timezone.utc),
            jti=payload.get("jti"),
        )


__all__ = [
    "IssuedToken",
    "TokenClaims",
    "TokenIssuer",
    "TokenError",
    "InvalidTokenSignatureError",
    "TokenExpiredError",
]
