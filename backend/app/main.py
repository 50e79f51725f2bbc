import asyncio
import contextlib
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.routes import audit, health, notifications, reconciliation, second_factor, signing_requests
from app.core.config import settings
from app.core.errors import WorkflowError, WorkflowErrorKind
from app.core.logging_setup import logger
from app.db.session import init_db
from app.services.reconciliation import run_scheduler_loop

STATUS_BY_KIND: dict[WorkflowErrorKind, int] = {
    WorkflowErrorKind.REQUEST_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    WorkflowErrorKind.SIGNER_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    WorkflowErrorKind.EXEMPTION_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    WorkflowErrorKind.REQUEST_NOT_SENT: status.HTTP_409_CONFLICT,
    WorkflowErrorKind.REQUEST_ALREADY_TERMINAL: status.HTTP_409_CONFLICT,
    WorkflowErrorKind.SIGNER_ALREADY_TERMINAL: status.HTTP_409_CONFLICT,
    WorkflowErrorKind.OUT_OF_ORDER: status.HTTP_409_CONFLICT,
    WorkflowErrorKind.CONCURRENT_CONFLICT: status.HTTP_409_CONFLICT,
    WorkflowErrorKind.SECOND_FACTOR_REQUIRED: status.HTTP_401_UNAUTHORIZED,
    WorkflowErrorKind.SECOND_FACTOR_INVALID: status.HTTP_403_FORBIDDEN,
    WorkflowErrorKind.INVALID_REQUEST: status.HTTP_422_UNPROCESSABLE_ENTITY,
    WorkflowErrorKind.PERSISTENCE_FAILURE: status.HTTP_503_SERVICE_UNAVAILABLE,
    WorkflowErrorKind.NOTIFICATION_DISPATCH_FAILED: status.HTTP_502_BAD_GATEWAY,
}


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncGenerator[None, None]:
    init_db()

    scheduler_task: asyncio.Task | None = None
    if settings.scheduler_enabled:
        scheduler_task = asyncio.create_task(run_scheduler_loop(settings.scheduler_interval_seconds))

    yield

    if scheduler_task is not None:
        scheduler_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await scheduler_task


def _normalize_origin(value: str | None) -> str | None:
    if not value:
        return None
    cleaned = value.strip().rstrip("/")
    return cleaned or None


async def workflow_error_handler(_: Request, exc: WorkflowError) -> JSONResponse:
    status_code = STATUS_BY_KIND.get(exc.kind, status.HTTP_400_BAD_REQUEST)
    if status_code >= 500:
        logger.error("Workflow failure %s: %s", exc.kind.value, exc.message)
    return JSONResponse(status_code=status_code, content={"detail": exc.to_dict()})


def create_app() -> FastAPI:
    application = FastAPI(
        title=settings.project_name,
        debug=settings.debug,
        lifespan=lifespan,
    )

    public_front_base = settings.resolved_public_app_url()
    raw_origins = settings.allowed_origins + ([public_front_base] if public_front_base else [])
    origins: list[str] = []
    for item in raw_origins:
        normalized = _normalize_origin(item)
        if normalized and normalized not in origins:
            origins.append(normalized)
    logger.info("CORS origins: %s", origins)

    application.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.add_exception_handler(WorkflowError, workflow_error_handler)

    application.include_router(health.router, prefix="/health")
    application.include_router(signing_requests.router, prefix=settings.api_v1_str)
    application.include_router(second_factor.router, prefix=settings.api_v1_str)
    application.include_router(notifications.router, prefix=settings.api_v1_str)
    application.include_router(reconciliation.router, prefix=settings.api_v1_str)
    application.include_router(audit.router, prefix=settings.api_v1_str)

    @application.get("/")
    def root():
        return {"service": settings.project_name}

    logger.info("%s initialized", settings.project_name)
    return application


app = create_app()
