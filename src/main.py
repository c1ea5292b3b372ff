"""FastAPI application entrypoint.

Builds the app around a single ``CircuitBreakerRegistry`` created at
startup and shared, via ``app.state``, with the provider clients and the
health reporter.  Exposes ``GET /api/health`` and maps backend errors to
structured JSON responses.
"""

import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

from src.clients.llm_client import AnthropicClient
from src.clients.sms_client import TwilioClient
from src.core.config import Settings, server_options
from src.core.errors import (
    BreakerOpenError,
    OperationTimeoutError,
    SeqBackendError,
    StructuredErrorResponse,
)
from src.db import Database
from src.health import HealthReporter, StorageProbe
from src.resilience.circuit_breaker import CircuitBreakerRegistry

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    registry: CircuitBreakerRegistry | None = None,
    database: StorageProbe | None = None,
) -> FastAPI:
    """Build the FastAPI app.

    Args:
        settings: Configuration; read from the environment when omitted.
        registry: Breaker registry; built from *settings* when omitted.
        database: Storage probe; built from ``DATABASE_URL`` when omitted
                  (``None`` if that is empty).
    """
    settings = settings or Settings()
    registry = registry or CircuitBreakerRegistry.from_settings(settings)
    if database is None and settings.DATABASE_URL:
        database = Database(settings.DATABASE_URL)

    llm_client = AnthropicClient(settings, registry)
    sms_client = TwilioClient(settings, registry)
    reporter = HealthReporter(
        registry,
        database,
        monitored_services=settings.HEALTH_MONITORED_SERVICES,
        version=settings.SERVICE_VERSION,
        probe_timeout=settings.HEALTH_PROBE_TIMEOUT_SECONDS,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await llm_client.close()
        await sms_client.close()
        if isinstance(database, Database):
            await database.dispose()

    app = FastAPI(
        title=settings.SERVICE_NAME,
        version=settings.SERVICE_VERSION,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.breakers = registry
    app.state.database = database
    app.state.llm_client = llm_client
    app.state.sms_client = sms_client
    app.state.health_reporter = reporter

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next) -> Response:
        """Assign or preserve a unique request ID on every request."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    @app.exception_handler(SeqBackendError)
    async def backend_error_handler(request: Request, exc: SeqBackendError) -> JSONResponse:
        request_id = (
            request.headers.get("X-Request-ID") or getattr(request.state, "request_id", "") or str(uuid.uuid4())
        )
        body = StructuredErrorResponse.from_exception(exc, request_id)
        headers = {"X-Request-ID": request_id}
        if isinstance(exc, BreakerOpenError):
            status_code = 503
            headers["Retry-After"] = str(max(1, round(exc.retry_after)))
        elif isinstance(exc, OperationTimeoutError):
            status_code = 504
        else:
            status_code = 502
        logger.warning("%s on %s: %s", body.code, request.url.path, exc)
        return JSONResponse(body.model_dump(), status_code=status_code, headers=headers)

    @app.get("/api/health")
    async def health() -> JSONResponse:
        """Return aggregate health; 503 only when storage is down."""
        result = await reporter.check_health()
        status_code = 503 if result.status == "unhealthy" else 200
        return JSONResponse(result.to_payload(), status_code=status_code)

    return app


app = create_app()


def run() -> None:
    """Serve the app with uvicorn using ``Settings`` host, port and TLS."""
    import uvicorn

    settings = app.state.settings
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(app, **server_options(settings))


if __name__ == "__main__":
    run()
