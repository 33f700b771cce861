from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request

from taskboard.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    Pagination,
    ProfileResponse,
    RegisterRequest,
    StatsRates,
    StatsResponse,
    StatsSummary,
    TaskCreateRequest,
    TaskListResponse,
    TaskPositionRequest,
    TaskResponse,
    TaskTimeRequest,
    TaskUpdateRequest,
    TokenPairResponse,
    TokenRefreshRequest,
    UserResponse,
)
from taskboard.logging import bind_user, get_logger
from taskboard.service.auth import AuthContext
from taskboard.service.errors import (
    AuthenticationError,
    RateLimitedError,
    ValidationError,
)
from taskboard.service.runtime import Runtime, check_rate_limit, get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/api")


async def _enforce_rate_limit(
    runtime: Runtime, key: str, limit: int, window_seconds: int
) -> None:
    """Raise ``RateLimitedError`` (429) once ``key`` exhausts its bucket."""
    allowed, _, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    if not allowed:
        logger.warning(
            "rate_limit_exceeded", bucket=key.split(":", 1)[0], retry_after=reset_seconds
        )
        raise RateLimitedError(
            "Too many requests, please try again later",
            detail={"retry_after": reset_seconds},
        )


async def get_user(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    runtime = get_runtime()
    try:
        ctx = await runtime.auth.authenticate(authorization)
    except AuthenticationError as exc:
        raise AuthenticationError("Not authorized") from exc
    request.state.user = ctx
    bind_user(ctx.user_id)
    return ctx


# auth


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create an account and start a session.

    Raises:
        400: validation failure or the email is already registered
        429: too many registrations for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"register:{body.email}",
        runtime.settings.register_rate_limit_per_minute,
        60,
    )
    result = await runtime.auth.register(body.name, body.email, body.password)
    return Envelope(
        message="Registration successful",
        data=AuthResponse(
            user=UserResponse.from_user(result.user),
            access_token=result.access_token,
            refresh_token=result.refresh_token,
        ),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Authenticate with email and password.

    Raises:
        401: credentials rejected; the message never reveals which part was wrong
        429: too many attempts for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    result = await runtime.auth.login(body.email, body.password)
    return Envelope(
        message="Login successful",
        data=AuthResponse(
            user=UserResponse.from_user(result.user),
            access_token=result.access_token,
            refresh_token=result.refresh_token,
        ),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: Optional[TokenRefreshRequest] = None):
    if not body or not body.refresh_token:
        raise ValidationError("Refresh token is required", detail={"field": "refreshToken"})
    runtime = get_runtime()
    pair = await runtime.auth.refresh(body.refresh_token)
    return Envelope(
        message="Tokens refreshed",
        data=TokenPairResponse(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    await runtime.auth.logout(principal.user_id, body.refresh_token if body else None)
    return Envelope(message="Logged out successfully")


@router.get("/auth/profile", response_model=Envelope, tags=["auth"])
async def profile(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = await runtime.auth.get_profile(principal.user_id)
    return Envelope(
        message="Profile fetched successfully",
        data=ProfileResponse(user=UserResponse.from_user(user)),
    )


# tasks


@router.get("/tasks", response_model=Envelope, tags=["tasks"])
async def list_tasks(
    status: Optional[str] = Query(None, max_length=32),
    priority: Optional[str] = Query(None, max_length=32),
    search: Optional[str] = Query(None, max_length=200),
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    tasks, pagination = await runtime.tasks.list_tasks(
        principal.user_id,
        status=status or None,
        priority=priority or None,
        search=search or None,
        page=page,
        limit=limit,
    )
    return Envelope(
        message="Tasks fetched successfully",
        data=TaskListResponse(
            tasks=[TaskResponse.from_task(t) for t in tasks],
            pagination=Pagination(**pagination),
        ),
    )


# Registered before /tasks/{task_id} so "stats" is never captured as an id
@router.get("/tasks/stats/summary", response_model=Envelope, tags=["tasks"])
async def task_stats(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    stats = await runtime.tasks.stats(principal.user_id)
    return Envelope(
        message="Statistics fetched successfully",
        data=StatsResponse(
            summary=StatsSummary(**stats["summary"]),
            rates=StatsRates(**stats["rates"]),
            last_updated=stats["last_updated"],
        ),
    )


@router.get("/tasks/{task_id}", response_model=Envelope, tags=["tasks"])
async def get_task(
    task_id: str = Path(..., min_length=1, max_length=64),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    task = await runtime.tasks.get_task(task_id, principal.user_id)
    return Envelope(message="Task fetched successfully", data=TaskResponse.from_task(task))


@router.post("/tasks", response_model=Envelope, status_code=201, tags=["tasks"])
async def create_task(body: TaskCreateRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    task = await runtime.tasks.create_task(
        principal.user_id, title=body.title, **body.task_fields()
    )
    return Envelope(message="Task created successfully", data=TaskResponse.from_task(task))


@router.put("/tasks/{task_id}", response_model=Envelope, tags=["tasks"])
async def update_task(
    body: TaskUpdateRequest,
    task_id: str = Path(..., min_length=1, max_length=64),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    task = await runtime.tasks.update_task(task_id, principal.user_id, body.changes())
    return Envelope(message="Task updated successfully", data=TaskResponse.from_task(task))


@router.delete("/tasks/{task_id}", response_model=Envelope, tags=["tasks"])
async def delete_task(
    task_id: str = Path(..., min_length=1, max_length=64),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    await runtime.tasks.delete_task(task_id, principal.user_id)
    return Envelope(message="Task deleted successfully")


@router.patch("/tasks/{task_id}/position", response_model=Envelope, tags=["tasks"])
async def update_task_position(
    body: TaskPositionRequest,
    task_id: str = Path(..., min_length=1, max_length=64),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    task = await runtime.tasks.update_position(
        task_id, principal.user_id, body.position, body.status
    )
    return Envelope(message="Task position updated", data=TaskResponse.from_task(task))


@router.patch("/tasks/{task_id}/time", response_model=Envelope, tags=["tasks"])
async def update_task_time(
    body: TaskTimeRequest,
    task_id: str = Path(..., min_length=1, max_length=64),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    task = await runtime.tasks.update_time(task_id, principal.user_id, body.actual_time)
    return Envelope(message="Task time updated", data=TaskResponse.from_task(task))
