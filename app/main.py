"""
Agent Trigger Scheduler - FastAPI Application
Cron and interval schedules that run agents, with execution history and traces
"""
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.encoders import jsonable_encoder
from contextlib import asynccontextmanager
import logging
from starlette.exceptions import HTTPException
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from app.database import build_session_factory, engine as default_engine, init_db
from app.config import settings
from app.core.clock import now_utc
from app.core.exceptions import AppError
from app.api.routes import health
from app.api.v1 import executions, schedules
from app.services.agent_runner import run_agent_prompt
from app.services.scheduler_runtime import SchedulerRuntime

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


def _error_body(error: str, details=None) -> dict:
    return {"error": error, "details": jsonable_encoder(details)}


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=_error_body(exc.message, exc.details))


async def http_error_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(str(exc.detail)),
        headers=getattr(exc, "headers", None),
    )


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content=_error_body("Validation failed", exc.errors()))


def create_app(engine=None, execute_callback=None) -> FastAPI:
    """Build the API. Tests pass their own engine and execution callback."""
    bind = engine or default_engine
    callback = execute_callback or run_agent_prompt

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handle startup and shutdown events."""
        logger.info("Starting %s...", settings.app_name)
        init_db(bind)
        logger.info("Database initialized")

        runtime = SchedulerRuntime(build_session_factory(bind), execute_callback=callback)
        app.state.scheduler = runtime
        if settings.scheduler_enabled:
            count = await runtime.initialize_schedules()
            logger.info("Scheduler started with %s active schedules", count)
        else:
            logger.info("Scheduler disabled by SCHEDULER_ENABLED")
        logger.info("API running on %s environment", settings.app_env)
        yield
        await runtime.shutdown()
        logger.info("Shutting down %s...", settings.app_name)

    app = FastAPI(
        title=settings.app_name,
        description="Scheduled agent runs with execution history and step traces",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.engine = bind

    # Respect forwarded proto/host so redirects don't downgrade to http.
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)

    @app.get("/")
    async def root() -> dict:
        return {
            "name": settings.app_name,
            "environment": settings.app_env,
            "timestamp": now_utc().isoformat(),
        }

    prefix = settings.api_v1_prefix
    app.include_router(health.router, prefix=prefix, tags=["Health"])
    app.include_router(schedules.router, prefix=f"{prefix}/agents", tags=["Schedules"])
    app.include_router(executions.router, prefix=f"{prefix}/agents", tags=["Executions"])
    return app


app = create_app()
