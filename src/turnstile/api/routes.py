from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Request, Response
from pydantic import BaseModel, PositiveInt, ValidationError

from turnstile.api.middleware import default_key
from turnstile.core.cleanup import CleanupJob
from turnstile.core.models import LimitOptions, StrategyType
from turnstile.core.service import AdmissionService

router = APIRouter()
admin_router = APIRouter(tags=["rate-limit"])


class HealthResponse(BaseModel):
    status: str
    strategy: str
    store: str
    cache: str
    cache_available: bool


class ConfigResponse(BaseModel):
    window_ms: int
    max_requests: int
    strategy: StrategyType
    store: str
    cache: str
    cache_available: bool
    cleanup_enabled: bool
    cleanup_interval_ms: int


class ConfigUpdate(BaseModel):
    window_ms: PositiveInt | None = None
    max_requests: PositiveInt | None = None
    strategy: StrategyType | None = None
    cleanup_enabled: bool | None = None
    cleanup_interval_ms: PositiveInt | None = None


class StatusResponse(BaseModel):
    key: str
    strategy: StrategyType
    limited: bool
    current: int
    limit: int
    remaining: int
    reset_at: int
    retry_after: int


def get_service(request: Request) -> AdmissionService:
    service = getattr(request.app.state, "admission_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Rate limiter is not initialized")
    return service


def get_cleanup_job(request: Request, service: AdmissionService = Depends(get_service)) -> CleanupJob:
    job = getattr(request.app.state, "cleanup_job", None)
    if job is None:
        job = CleanupJob(service)
        request.app.state.cleanup_job = job
    return job


def get_user_id(request: Request) -> str:
    """Caller identity set by an upstream auth layer on `request.state.user_id`."""
    user_id = getattr(request.state, "user_id", None)
    if not user_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    return user_id


def _config(service: AdmissionService, job: CleanupJob) -> ConfigResponse:
    return ConfigResponse(
        **service.describe(),
        cleanup_enabled=job.is_running(),
        cleanup_interval_ms=job.interval_ms,
    )


async def _status(
    service: AdmissionService,
    key: str,
    strategy: StrategyType | None,
    user_id: str | None = None,
) -> StatusResponse:
    resolved = strategy or service.get_defaults().strategy
    status = await service.get_limit_status(key, LimitOptions(strategy=resolved, user_id=user_id))
    return StatusResponse(key=key, strategy=resolved, **asdict(status))


@router.get("/health", response_model=HealthResponse)
async def health_check(service: AdmissionService = Depends(get_service)):
    info = service.describe()
    return HealthResponse(
        status="healthy",
        strategy=info["strategy"],
        store=info["store"],
        cache=info["cache"],
        cache_available=info["cache_available"],
    )


@admin_router.get("/config", response_model=ConfigResponse)
async def read_config(
    service: AdmissionService = Depends(get_service),
    job: CleanupJob = Depends(get_cleanup_job),
):
    return _config(service, job)


@admin_router.put("/config", response_model=ConfigResponse)
async def update_config(
    payload: dict[str, Any] = Body(...),
    service: AdmissionService = Depends(get_service),
    job: CleanupJob = Depends(get_cleanup_job),
):
    try:
        update = ConfigUpdate.model_validate(payload)
    except ValidationError as exc:
        raise HTTPException(
            status_code=400,
            detail=[
                {"field": ".".join(str(part) for part in error["loc"]), "message": error["msg"]}
                for error in exc.errors()
            ],
        ) from exc

    service.set_defaults(
        window_ms=update.window_ms,
        max_requests=update.max_requests,
        strategy=update.strategy,
    )

    if update.cleanup_interval_ms is not None:
        await job.set_interval(update.cleanup_interval_ms)
    if update.cleanup_enabled is True:
        job.start()
    elif update.cleanup_enabled is False:
        await job.stop()

    return _config(service, job)


@admin_router.get("/status", response_model=StatusResponse)
async def caller_status(
    request: Request,
    strategy: StrategyType | None = None,
    service: AdmissionService = Depends(get_service),
):
    user_id = getattr(request.state, "user_id", None)
    return await _status(service, default_key(request), strategy, user_id)


@admin_router.get("/status/{key:path}", response_model=StatusResponse)
async def key_status(
    key: str,
    strategy: StrategyType | None = None,
    service: AdmissionService = Depends(get_service),
):
    return await _status(service, key, strategy)


@admin_router.delete("/clear/{key:path}", status_code=204)
async def clear_key(
    key: str,
    user_id: str = Depends(get_user_id),
    service: AdmissionService = Depends(get_service),
):
    await service.clear_limit(key, user_id)
    return Response(status_code=204)
