"""WebDAV-style storage gateway over local disk or S3-compatible blob storage."""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Optional
from urllib.parse import quote

import structlog
from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse, PlainTextResponse
from opentelemetry import trace
from starlette.datastructures import UploadFile

from ..common.http_security import DAV_METHODS, cors_headers, require_metrics_access
from ..common.metrics import GLOBAL_REGISTRY, Counter, Histogram
from ..common.observability import bind_request_context, configure_observability, instrument_fastapi_app
from ..common.schemas import HealthReport
from ..common.settings import GatewaySettings
from .errors import GatewayError, InvalidPath, PayloadTooLarge
from .handlers import Gateway, Submission
from .listing_cache import CacheCoordinator
from .storage import BlobStore, build_store

SERVICE_NAME = "bucketdav.gateway"

REQUEST_COUNTER = GLOBAL_REGISTRY.register(Counter("bucketdav_requests_total", "Total gateway requests"))
ERROR_COUNTER = GLOBAL_REGISTRY.register(Counter("bucketdav_request_errors_total", "Gateway requests answered with an error"))
LATENCY_HISTOGRAM = GLOBAL_REGISTRY.register(
    Histogram(
        "bucketdav_request_latency_seconds",
        buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0],
        description="Gateway request latency",
    )
)
TRACER = trace.get_tracer(SERVICE_NAME)


class GatewayState:
    def __init__(self, settings: GatewaySettings, store: BlobStore, cache: CacheCoordinator):
        self.settings = settings
        self.store = store
        self.cache = cache
        self.cors_headers = cors_headers(settings.cors_allow_origin)
        self.gateway = Gateway(
            store,
            cache,
            cors_headers=self.cors_headers,
            max_upload_bytes=settings.max_upload_bytes,
        )
        self.logger = structlog.get_logger(SERVICE_NAME).bind(backend=store.status().get("backend"))


def get_state(request: Request) -> GatewayState:
    return request.app.state.gateway_state  # type: ignore[attr-defined]


def get_gateway(state: GatewayState = Depends(get_state)) -> Gateway:
    return state.gateway


def raw_request_path(request: Request) -> str:
    """The request path exactly as sent, before any percent-decoding."""
    raw = request.scope.get("raw_path")
    if not raw:
        return quote(request.url.path)
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise InvalidPath(reason="path is not valid UTF-8") from exc


def request_origin(request: Request) -> str:
    return str(request.base_url).rstrip("/")


def is_directory_request(raw_path: str) -> bool:
    return raw_path == "/" or raw_path.endswith("/")


def check_content_length(request: Request, limit: int) -> None:
    content_length = request.headers.get("content-length")
    if content_length and content_length.isdigit() and int(content_length) > limit:
        raise PayloadTooLarge(f"File exceeds max size: {limit} bytes")


def create_app(
    settings: Optional[GatewaySettings] = None,
    store: Optional[BlobStore] = None,
    cache: Optional[CacheCoordinator] = None,
) -> FastAPI:
    settings = settings or GatewaySettings()
    configure_observability(SERVICE_NAME, settings)
    store = store or build_store(settings)
    cache = cache or CacheCoordinator.from_settings(settings)
    state = GatewayState(settings, store, cache)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        state.logger.info("gateway_started", listing_cache=cache.status())
        try:
            yield
        finally:
            await cache.close()

    app = FastAPI(lifespan=lifespan)
    instrument_fastapi_app(app)
    app.state.gateway_state = state

    @app.middleware("http")
    async def record_latency(request: Request, call_next):  # noqa: ANN001 - FastAPI middleware signature
        start = time.perf_counter()
        bind_request_context(request.method, request.url.path)
        REQUEST_COUNTER.inc()
        try:
            response = await call_next(request)
        except Exception:
            duration = time.perf_counter() - start
            LATENCY_HISTOGRAM.observe(duration)
            ERROR_COUNTER.inc()
            state.logger.exception("http_request_error", duration_ms=round(duration * 1000, 2))
            raise

        duration = time.perf_counter() - start
        LATENCY_HISTOGRAM.observe(duration)

        log_kwargs = {"status": response.status_code, "duration_ms": round(duration * 1000, 2)}
        if response.status_code >= 500:
            state.logger.error("http_request", **log_kwargs)
        elif duration >= 1.0:
            state.logger.warning("http_request", **log_kwargs)
        else:
            state.logger.info("http_request", **log_kwargs)
        return response

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError) -> PlainTextResponse:
        ERROR_COUNTER.inc()
        log = state.logger.error if exc.status_code >= 500 else state.logger.info
        log("gateway_error", error=type(exc).__name__, message=exc.message, reason=exc.reason)
        return PlainTextResponse(exc.message, status_code=exc.status_code, headers=state.cors_headers)

    @app.get("/healthz", status_code=status.HTTP_200_OK)
    async def health_check(state: GatewayState = Depends(get_state)) -> dict:
        """Health check for K8s readiness/liveness probes."""
        health = HealthReport()
        try:
            backend_status = state.store.status()
            health.checks["backend"] = backend_status.get("backend", "unknown")
            if "writable" in backend_status:
                health.checks["writable"] = backend_status["writable"]
        except Exception as exc:  # noqa: BLE001
            health.checks["backend"] = f"error: {exc}"
            health.status = "unhealthy"

        if health.status != "healthy":
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=health.model_dump())
        return health.model_dump()

    @app.get("/status")
    async def status_probe(state: GatewayState = Depends(get_state)) -> JSONResponse:
        with TRACER.start_as_current_span("gateway.status"):
            return JSONResponse(
                {
                    "store": state.store.status(),
                    "listing_cache": state.cache.status(),
                    "multi_upload_path": state.settings.multi_upload_path,
                    "cache_flush_path": state.settings.cache_flush_path,
                    "max_upload_bytes": state.settings.max_upload_bytes,
                }
            )

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics_endpoint(request: Request, state: GatewayState = Depends(get_state)) -> PlainTextResponse:
        require_metrics_access(request, state.settings.metrics_token)
        return PlainTextResponse(GLOBAL_REGISTRY.render())

    async def multi_upload(
        request: Request,
        background: BackgroundTasks,
        gateway: Gateway = Depends(get_gateway),
    ) -> Response:
        submissions: list[Submission] = []
        async with request.form() as form:
            for _field, value in form.multi_items():
                if not isinstance(value, UploadFile):
                    continue
                submissions.append(Submission(name=value.filename or "", data=await value.read()))
        return await gateway.store_many(submissions, request_origin(request), background)

    async def flush_listing_cache(
        request: Request,
        background: BackgroundTasks,
        gateway: Gateway = Depends(get_gateway),
    ) -> Response:
        return await gateway.flush_cache(request_origin(request), background)

    app.add_api_route(settings.multi_upload_path, multi_upload, methods=["POST"])
    app.add_api_route(settings.cache_flush_path, flush_listing_cache, methods=["POST"])

    @app.options("/{path:path}")
    async def preflight(path: str, state: GatewayState = Depends(get_state)) -> Response:
        headers = {**state.cors_headers, "Allow": DAV_METHODS, "DAV": "1"}
        return Response(status_code=status.HTTP_204_NO_CONTENT, headers=headers)

    @app.api_route("/{path:path}", methods=["GET", "HEAD"])
    async def read_path(
        path: str,
        request: Request,
        background: BackgroundTasks,
        gateway: Gateway = Depends(get_gateway),
    ) -> Response:
        raw_path = raw_request_path(request)
        if is_directory_request(raw_path):
            return await gateway.list_directory(raw_path, request_origin(request), background)
        return await gateway.fetch(raw_path, include_body=request.method == "GET")

    @app.api_route("/{path:path}", methods=["PROPFIND"])
    async def propfind(
        path: str,
        request: Request,
        background: BackgroundTasks,
        gateway: Gateway = Depends(get_gateway),
    ) -> Response:
        return await gateway.list_directory(
            raw_request_path(request), request_origin(request), background, multistatus=True
        )

    @app.put("/{path:path}")
    async def write_path(
        path: str,
        request: Request,
        background: BackgroundTasks,
        state: GatewayState = Depends(get_state),
    ) -> Response:
        check_content_length(request, state.settings.max_upload_bytes)
        data = await request.body()
        return await state.gateway.store_object(raw_request_path(request), data, request_origin(request), background)

    @app.delete("/{path:path}")
    async def delete_path(
        path: str,
        request: Request,
        background: BackgroundTasks,
        gateway: Gateway = Depends(get_gateway),
    ) -> Response:
        return await gateway.delete_object(raw_request_path(request), request_origin(request), background)

    return app
