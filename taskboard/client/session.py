from __future__ import annotations

import asyncio
import inspect
import json
from typing import Any, Awaitable, Callable, Dict, Optional, Union

import httpx

from taskboard.client.storage import ClientStorage, FileStorage, MemoryStorage
from taskboard.config import Settings, get_settings
from taskboard.logging import get_logger

logger = get_logger(__name__)

ACCESS_TOKEN_KEY = "accessToken"
REFRESH_TOKEN_KEY = "refreshToken"
USER_KEY = "user"

SessionExpiredCallback = Callable[[], Union[None, Awaitable[None]]]


class ApiError(Exception):
    """Non-2xx API response, or a transport failure (``status_code == 0``)."""

    def __init__(
        self,
        status_code: int,
        message: str,
        *,
        code: Optional[str] = None,
        errors: Optional[list] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.code = code
        self.errors = errors or []


class AuthExpiredError(ApiError):
    """The session can no longer be refreshed; the user must log in again."""

    def __init__(self, message: str = "Session expired, please log in again") -> None:
        super().__init__(401, message, code="session_expired")


class _PendingRefresh:
    """One in-flight refresh; concurrent 401 handlers await the same future."""

    def __init__(self) -> None:
        self.future: asyncio.Future[str] = asyncio.get_running_loop().create_future()


class SessionManager:
    """Authenticated API access for one user session.

    Attaches the access token to every call. On a 401 the manager refreshes
    once, shares that refresh with every request that failed meanwhile and
    replays each request a single time. When the refresh fails the whole
    session is cleared and ``on_session_expired`` runs.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        storage: Optional[ClientStorage] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        on_session_expired: Optional[SessionExpiredCallback] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        settings = settings or get_settings()
        self.base_url = (base_url or settings.api_base_url).rstrip("/")
        if storage is None:
            storage = (
                FileStorage(settings.client_storage_path)
                if settings.client_storage_path
                else MemoryStorage()
            )
        self.storage = storage
        self.timeout = timeout if timeout is not None else settings.client_timeout_seconds
        self.on_session_expired = on_session_expired
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(self.timeout),
            headers={"Content-Type": "application/json"},
            transport=transport,
        )
        self._pending_refresh: Optional[_PendingRefresh] = None
        self.access_token: Optional[str] = storage.get(ACCESS_TOKEN_KEY)
        self.refresh_token: Optional[str] = storage.get(REFRESH_TOKEN_KEY)
        self.user: Optional[Dict[str, Any]] = self._load_user()

    async def __aenter__(self) -> "SessionManager":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    @property
    def is_authenticated(self) -> bool:
        return bool(self.access_token) and self.user is not None

    # session lifecycle

    async def login(self, email: str, password: str) -> Dict[str, Any]:
        data = await self.request(
            "POST",
            "/auth/login",
            json={"email": email, "password": password},
            authenticated=False,
        )
        self._store_session(data)
        logger.info("client_logged_in", user_id=self.user.get("id") if self.user else None)
        return self.user or {}

    async def register(self, name: str, email: str, password: str) -> Dict[str, Any]:
        data = await self.request(
            "POST",
            "/auth/register",
            json={"name": name, "email": email, "password": password},
            authenticated=False,
        )
        self._store_session(data)
        logger.info("client_registered", user_id=self.user.get("id") if self.user else None)
        return self.user or {}

    async def logout(self) -> None:
        """Tell the server to revoke the refresh token, then forget everything.

        The server call is best-effort: local state is cleared even when it
        fails.
        """
        try:
            if self.access_token:
                await self.request(
                    "POST",
                    "/auth/logout",
                    json={"refreshToken": self.refresh_token} if self.refresh_token else {},
                    refresh_on_401=False,
                )
        except ApiError as exc:
            logger.warning("client_logout_failed", status_code=exc.status_code, error=exc.message)
        finally:
            self.clear()
        logger.info("client_logged_out")

    async def restore(self) -> Optional[Dict[str, Any]]:
        """Validate a stored session against ``GET /auth/profile``."""
        if not self.access_token:
            return None
        try:
            data = await self.request("GET", "/auth/profile")
        except ApiError as exc:
            logger.info("client_restore_failed", status_code=exc.status_code, error=exc.message)
            self.clear()
            return None
        self.user = (data or {}).get("user")
        self._persist_user()
        return self.user

    def clear(self) -> None:
        self.access_token = None
        self.refresh_token = None
        self.user = None
        for key in (ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY, USER_KEY):
            self.storage.delete(key)

    # requests

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: Optional[Dict[str, Any]] = None,
        authenticated: bool = True,
        refresh_on_401: bool = True,
    ) -> Any:
        """Send a request and return the ``data`` member of the success envelope."""
        sent_token = self.access_token if authenticated else None
        response = await self._send(method, path, json=json, params=params, token=sent_token)
        if response.status_code == 401 and authenticated and refresh_on_401:
            await self._recover_from_401(sent_token)
            response = await self._send(
                method, path, json=json, params=params, token=self.access_token
            )
            if response.status_code == 401:
                logger.warning("client_retry_unauthorized", method=method, path=path)
                raise AuthExpiredError()
        return self._unwrap(response)

    async def get(self, path: str, **kwargs: Any) -> Any:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, **kwargs: Any) -> Any:
        return await self.request("POST", path, **kwargs)

    async def put(self, path: str, **kwargs: Any) -> Any:
        return await self.request("PUT", path, **kwargs)

    async def patch(self, path: str, **kwargs: Any) -> Any:
        return await self.request("PATCH", path, **kwargs)

    async def delete(self, path: str, **kwargs: Any) -> Any:
        return await self.request("DELETE", path, **kwargs)

    async def _send(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: Optional[Dict[str, Any]] = None,
        token: Optional[str] = None,
    ) -> httpx.Response:
        headers = {"Authorization": f"Bearer {token}"} if token else None
        try:
            return await self._client.request(
                method, path, json=json, params=params, headers=headers
            )
        except httpx.TimeoutException as exc:
            logger.error("client_request_timeout", method=method, path=path, error=str(exc))
            raise ApiError(0, "Request timed out", code="network_error") from exc
        except httpx.HTTPError as exc:
            logger.error("client_request_failed", method=method, path=path, error=str(exc))
            raise ApiError(0, "Network error, please check your connection", code="network_error") from exc

    def _unwrap(self, response: httpx.Response) -> Any:
        try:
            body = response.json()
        except ValueError:
            body = None
        if response.is_success:
            return body.get("data") if isinstance(body, dict) else None
        if not isinstance(body, dict):
            raise ApiError(response.status_code, response.reason_phrase or "Request failed")
        raise ApiError(
            response.status_code,
            body.get("error") or response.reason_phrase or "Request failed",
            code=body.get("code"),
            errors=body.get("errors"),
        )

    # refresh

    async def _recover_from_401(self, sent_token: Optional[str]) -> None:
        pending = self._pending_refresh
        if pending is not None:
            # Shielded so a cancelled waiter does not cancel the shared refresh
            await asyncio.shield(pending.future)
            return
        if sent_token and self.access_token is None:
            # A refresh already failed and expired the session
            raise AuthExpiredError()
        if self.access_token and sent_token != self.access_token:
            # A refresh completed after this request went out
            return
        await self._refresh()

    async def _refresh(self) -> str:
        pending = _PendingRefresh()
        self._pending_refresh = pending
        try:
            token = await self._perform_refresh()
        except Exception as exc:
            error = exc if isinstance(exc, AuthExpiredError) else AuthExpiredError()
            pending.future.set_exception(error)
            # Mark retrieved; with no waiters asyncio would log it as unhandled
            pending.future.exception()
            self._pending_refresh = None
            await self._expire_session()
            if error is exc:
                raise
            raise error from exc
        except BaseException:
            pending.future.cancel()
            self._pending_refresh = None
            raise
        pending.future.set_result(token)
        self._pending_refresh = None
        return token

    async def _perform_refresh(self) -> str:
        if not self.refresh_token:
            logger.info("client_refresh_failed", reason="no_refresh_token")
            raise AuthExpiredError()
        logger.info("client_refresh_started")
        response = await self._send(
            "POST", "/auth/refresh", json={"refreshToken": self.refresh_token}
        )
        if not response.is_success:
            logger.warning("client_refresh_failed", status_code=response.status_code)
            raise AuthExpiredError()
        data = self._unwrap(response) or {}
        access_token = data.get("accessToken")
        refresh_token = data.get("refreshToken")
        if not access_token or not refresh_token:
            logger.warning("client_refresh_failed", reason="malformed_response")
            raise AuthExpiredError()
        self._store_tokens(access_token, refresh_token)
        logger.info("client_refresh_succeeded")
        return access_token

    async def _expire_session(self) -> None:
        self.clear()
        logger.info("client_session_expired")
        if self.on_session_expired is None:
            return
        result = self.on_session_expired()
        if inspect.isawaitable(result):
            await result

    # persistence

    def _store_session(self, data: Optional[Dict[str, Any]]) -> None:
        data = data or {}
        self._store_tokens(data.get("accessToken"), data.get("refreshToken"))
        self.user = data.get("user")
        self._persist_user()

    def _store_tokens(self, access_token: Optional[str], refresh_token: Optional[str]) -> None:
        self.access_token = access_token
        self.refresh_token = refresh_token
        if access_token:
            self.storage.set(ACCESS_TOKEN_KEY, access_token)
        if refresh_token:
            self.storage.set(REFRESH_TOKEN_KEY, refresh_token)

    def _persist_user(self) -> None:
        if self.user is None:
            self.storage.delete(USER_KEY)
        else:
            self.storage.set(USER_KEY, json.dumps(self.user))

    def _load_user(self) -> Optional[Dict[str, Any]]:
        raw = self.storage.get(USER_KEY)
        if not raw:
            return None
        try:
            user = json.loads(raw)
        except ValueError:
            logger.warning("client_stored_user_corrupt")
            self.storage.delete(USER_KEY)
            return None
        return user if isinstance(user, dict) else None


__all__ = [
    "ApiError",
    "AuthExpiredError",
    "SessionManager",
    "ACCESS_TOKEN_KEY",
    "REFRESH_TOKEN_KEY",
    "USER_KEY",
]
