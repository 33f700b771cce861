"""Tests for the client session manager.

Tests for:
- Session persistence in client storage
- Single-flight refresh when several requests hit a 401 together
- Session expiry when the refresh is rejected
- Best-effort logout and session restore
- End-to-end use against the real app over ASGI
"""

import asyncio
import json

import httpx
import pytest

from taskboard import app as app_module
from taskboard.client.session import (
    ACCESS_TOKEN_KEY,
    REFRESH_TOKEN_KEY,
    USER_KEY,
    ApiError,
    AuthExpiredError,
    SessionManager,
)
from taskboard.client.storage import FileStorage, MemoryStorage

BASE_URL = "http://testserver/api"

USER = {"id": "user-1", "name": "Ada", "email": "ada@example.com", "role": "user"}


def _ok(data=None, status_code=200):
    return httpx.Response(status_code, json={"success": True, "message": "", "data": data})


def _error(status_code, error, code):
    return httpx.Response(status_code, json={"success": False, "error": error, "code": code})


def _stored_session(access="old-access", refresh="old-refresh"):
    return MemoryStorage(
        {
            ACCESS_TOKEN_KEY: access,
            REFRESH_TOKEN_KEY: refresh,
            USER_KEY: json.dumps(USER),
        }
    )


class FakeApi:
    """Async handler for ``httpx.MockTransport`` that rotates tokens like the server."""

    def __init__(self, *, refresh_ok=True, refresh_delay=0.01, slow_paths=()):
        self.refresh_ok = refresh_ok
        self.refresh_delay = refresh_delay
        self.slow_paths = set(slow_paths)
        self.refresh_calls = 0
        self.valid_access = "new-access"
        self.requests = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append((request.method, request.url.path, request.headers.get("Authorization")))
        await asyncio.sleep(0)
        if request.url.path == "/api/auth/refresh":
            self.refresh_calls += 1
            await asyncio.sleep(self.refresh_delay)
            if not self.refresh_ok:
                return _error(401, "Invalid or expired refresh token", "invalid_or_expired_token")
            body = json.loads(request.content)
            assert body == {"refreshToken": "old-refresh"}
            return _ok({"accessToken": "new-access", "refreshToken": "new-refresh"})
        if request.url.path == "/api/auth/logout":
            return _error(500, "Internal server error", "server_error")
        if request.url.path in self.slow_paths:
            await asyncio.sleep(0.05)
        if request.headers.get("Authorization") != f"Bearer {self.valid_access}":
            return _error(401, "Not authorized", "unauthorized")
        if request.url.path == "/api/auth/profile":
            return _ok({"user": USER})
        return _ok({"path": request.url.path})


def _session(api, storage=None, **kwargs):
    return SessionManager(
        BASE_URL,
        storage=storage if storage is not None else _stored_session(),
        transport=httpx.MockTransport(api),
        **kwargs,
    )


class TestStoredSession:
    async def test_session_loaded_from_storage(self):
        async with _session(FakeApi()) as session:
            assert session.is_authenticated
            assert session.user == USER

    async def test_corrupt_user_is_discarded(self):
        storage = MemoryStorage({ACCESS_TOKEN_KEY: "a", USER_KEY: "{not json"})
        async with _session(FakeApi(), storage=storage) as session:
            assert session.user is None
            assert storage.get(USER_KEY) is None

    def test_file_storage_survives_reopen(self, tmp_path):
        path = tmp_path / "client" / "session.json"
        storage = FileStorage(path)
        storage.set(ACCESS_TOKEN_KEY, "abc")
        storage.set(REFRESH_TOKEN_KEY, "def")
        storage.delete(REFRESH_TOKEN_KEY)

        reopened = FileStorage(path)
        assert reopened.get(ACCESS_TOKEN_KEY) == "abc"
        assert reopened.get(REFRESH_TOKEN_KEY) is None

    def test_file_storage_ignores_corrupt_file(self, tmp_path):
        path = tmp_path / "session.json"
        path.write_text("not json")
        assert FileStorage(path).get(ACCESS_TOKEN_KEY) is None


class TestRefresh:
    """Tests for refreshing after a 401."""

    async def test_concurrent_401s_share_one_refresh(self):
        api = FakeApi()
        async with _session(api) as session:
            results = await asyncio.gather(session.get("/tasks"), session.get("/tasks/stats/summary"))

            assert api.refresh_calls == 1
            assert results == [{"path": "/api/tasks"}, {"path": "/api/tasks/stats/summary"}]
            assert session.access_token == "new-access"
            assert session.storage.get(REFRESH_TOKEN_KEY) == "new-refresh"

    async def test_many_concurrent_401s_share_one_refresh(self):
        api = FakeApi()
        async with _session(api) as session:
            await asyncio.gather(*(session.get(f"/tasks/{n}") for n in range(5)))

            assert api.refresh_calls == 1

    async def test_stale_request_replays_without_refreshing(self):
        api = FakeApi()
        async with _session(api) as session:
            await session.get("/tasks")
            assert api.refresh_calls == 1

            # A request that went out with the old token, failing after the refresh
            await session._recover_from_401("old-access")
            assert api.refresh_calls == 1

    async def test_unauthenticated_requests_never_refresh(self):
        api = FakeApi()
        async with _session(api) as session:
            with pytest.raises(ApiError) as exc_info:
                await session.request("GET", "/tasks", authenticated=False)

            assert exc_info.value.status_code == 401
            assert api.refresh_calls == 0

    async def test_refresh_failure_expires_session(self):
        api = FakeApi(refresh_ok=False)
        expired = []
        storage = _stored_session()
        async with _session(api, storage=storage, on_session_expired=lambda: expired.append(True)) as session:
            results = await asyncio.gather(
                session.get("/tasks"), session.get("/tasks/stats/summary"), return_exceptions=True
            )

            assert all(isinstance(r, AuthExpiredError) for r in results)
            assert api.refresh_calls == 1
            assert expired == [True]
            assert not session.is_authenticated
            assert storage.get(ACCESS_TOKEN_KEY) is None
            assert storage.get(REFRESH_TOKEN_KEY) is None
            assert storage.get(USER_KEY) is None

    async def test_late_401_after_failed_refresh_expires_once(self):
        api = FakeApi(refresh_ok=False, slow_paths={"/api/tasks/stats/summary"})
        expired = []
        async with _session(api, on_session_expired=lambda: expired.append(True)) as session:
            results = await asyncio.gather(
                session.get("/tasks"), session.get("/tasks/stats/summary"), return_exceptions=True
            )

            assert all(isinstance(r, AuthExpiredError) for r in results)
            assert api.refresh_calls == 1
            assert expired == [True]

    async def test_async_expiry_callback_is_awaited(self):
        api = FakeApi(refresh_ok=False)
        expired = []

        async def on_expired():
            await asyncio.sleep(0)
            expired.append(True)

        async with _session(api, on_session_expired=on_expired) as session:
            with pytest.raises(AuthExpiredError):
                await session.get("/tasks")

        assert expired == [True]

    async def test_missing_refresh_token_expires_session(self):
        api = FakeApi()
        storage = MemoryStorage({ACCESS_TOKEN_KEY: "old-access", USER_KEY: json.dumps(USER)})
        async with _session(api, storage=storage) as session:
            with pytest.raises(AuthExpiredError):
                await session.get("/tasks")

            assert api.refresh_calls == 0
            assert not session.is_authenticated

    async def test_second_401_after_refresh_is_terminal(self):
        api = FakeApi()
        api.valid_access = "never-valid"
        async with _session(api) as session:
            with pytest.raises(AuthExpiredError):
                await session.get("/tasks")

            assert api.refresh_calls == 1

    async def test_network_failure_becomes_api_error(self):
        def broken(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with SessionManager(
            BASE_URL, storage=_stored_session(), transport=httpx.MockTransport(broken)
        ) as session:
            with pytest.raises(ApiError) as exc_info:
                await session.get("/tasks")

        assert exc_info.value.status_code == 0
        assert exc_info.value.code == "network_error"


class TestLogoutAndRestore:
    async def test_logout_clears_even_when_server_fails(self):
        api = FakeApi()
        storage = _stored_session(access="new-access")
        async with _session(api, storage=storage) as session:
            await session.logout()

            assert not session.is_authenticated
            assert storage.get(ACCESS_TOKEN_KEY) is None
            assert api.refresh_calls == 0

    async def test_restore_valid_session(self):
        api = FakeApi()
        async with _session(api, storage=_stored_session(access="new-access")) as session:
            user = await session.restore()

            assert user == USER
            assert session.is_authenticated

    async def test_restore_without_token(self):
        async with _session(FakeApi(), storage=MemoryStorage()) as session:
            assert await session.restore() is None


class TestAgainstApp:
    """The client driving the real application over ASGI."""

    @pytest.fixture
    def transport(self):
        return httpx.ASGITransport(app=app_module.app)

    async def test_register_create_and_refresh(self, transport):
        async with SessionManager(BASE_URL, storage=MemoryStorage(), transport=transport) as session:
            user = await session.register("Ada", "ada@example.com", "secret123")
            assert user["email"] == "ada@example.com"

            created = await session.post("/tasks", json={"title": "Buy milk"})
            assert created["status"] == "todo"
            assert created["priority"] == "medium"

            old_refresh = session.refresh_token
            session.access_token = "expired-or-garbage"
            tasks = await session.get("/tasks")

            assert [t["title"] for t in tasks["tasks"]] == ["Buy milk"]
            assert session.refresh_token != old_refresh

    async def test_login_errors_surface_as_api_error(self, transport):
        async with SessionManager(BASE_URL, storage=MemoryStorage(), transport=transport) as session:
            with pytest.raises(ApiError) as exc_info:
                await session.login("nobody@example.com", "secret123")

        assert exc_info.value.status_code == 401
        assert exc_info.value.message == "Invalid email or password"
        assert exc_info.value.code == "invalid_credentials"

    async def test_logout_revokes_on_server(self, transport):
        storage = MemoryStorage()
        async with SessionManager(BASE_URL, storage=storage, transport=transport) as session:
            await session.register("Ada", "ada@example.com", "secret123")
            refresh_token = session.refresh_token
            await session.logout()

            with pytest.raises(ApiError) as exc_info:
                await session.request(
                    "POST",
                    "/auth/refresh",
                    json={"refreshToken": refresh_token},
                    authenticated=False,
                )

        assert exc_info.value.status_code == 401
