from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from tenantauth.api.error_handling import register_exception_handlers
from tenantauth.api.routes import router
from tenantauth.logging import get_logger, set_correlation_id
from tenantauth.service.auth import __version__
from tenantauth.service.runtime import get_runtime

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup; stop the session sweeper on shutdown."""
    runtime = get_runtime()
    if runtime.settings.session_sweep_enabled:
        await runtime.sweeper.start()
    logger.info("app_started", version=__version__)

    yield

    try:
        await runtime.sweeper.stop()
        runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc), error_type=type(exc).__name__)


app = FastAPI(title="tenantauth", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    """Tag the request with a correlation ID and echo it back.

    Taken from the X-Request-ID header when the caller provides one,
    otherwise generated.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    # Responses carry credentials; keep them out of shared caches
    response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health():
    """Report whether the credential store answers."""
    result = await get_runtime().auth.health_check()
    status_code = 200 if result.status == "serving" else 503
    return JSONResponse(status_code=status_code, content=result.model_dump(mode="json"))


def create_app() -> FastAPI:
    return app
