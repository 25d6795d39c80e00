from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from autoapply.api.router import api_router
from autoapply.core.config import get_settings
from autoapply.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from autoapply.services.runtime import Runtime, build_runtime

logger = logging.getLogger(__name__)


def create_app(runtime: Runtime | None = None) -> FastAPI:
    runtime = runtime or build_runtime(get_settings())
    settings = runtime.settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.worker_autostart:
            runtime.supervisor.start()
        try:
            yield
        finally:
            await runtime.close()
            shutdown_telemetry(app.state.telemetry, app)

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.runtime = runtime
    app.state.telemetry = setup_telemetry(settings, app)

    @app.middleware("http")
    async def request_logging_middleware(request: Request, call_next):
        started_at = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started_at) * 1000.0
        logger.info(
            "http request method=%s path=%s status=%s duration_ms=%.2f",
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
        )
        return response

    app.include_router(api_router)
    return app


configure_logging()
app = create_app()
