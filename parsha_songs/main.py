from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from parsha_songs.api.router import api_router
from parsha_songs.core.config import get_settings
from parsha_songs.core.telemetry import TelemetryRuntime, setup_telemetry, shutdown_telemetry
from parsha_songs.services.repository import RepositoryError, get_repository
from parsha_songs.services.visits import VisitCounter

settings = get_settings()
_telemetry_runtime: TelemetryRuntime | None = None
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    repository = get_repository()
    await repository.initialize()
    logger.info("storage ready backend=%s", repository.backend_name)
    try:
        yield
    finally:
        if _telemetry_runtime is not None:
            shutdown_telemetry(app, _telemetry_runtime)
        await get_repository().close()
        get_repository.cache_clear()


app = FastAPI(title=settings.app_name, lifespan=lifespan)
_telemetry_runtime = setup_telemetry(app, settings)


def client_ip(request: Request) -> str:
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        first_hop = forwarded_for.split(",")[0].strip()
        if first_hop:
            return first_hop
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    if request.client is not None:
        return request.client.host
    return "unknown"


@app.middleware("http")
async def visit_tracking_middleware(request: Request, call_next):
    if request.method == "GET" and request.url.path == "/":
        try:
            await VisitCounter(get_repository()).record(client_ip(request), request.headers.get("user-agent"))
        except RepositoryError:
            logger.exception("failed to record visit")
    return await call_next(request)


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
