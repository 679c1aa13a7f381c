from __future__ import annotations

import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.exception_handlers import (
    http_exception_handler,
    request_validation_exception_handler,
)
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy import text
from starlette.middleware.trustedhost import TrustedHostMiddleware
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from galleryswap_api.catalog import get_catalog_client
from galleryswap_api.core.config import Settings
from galleryswap_api.db import SessionLocal
from galleryswap_api.eventlog import log
from galleryswap_api.metrics import observe_http_request, render_prometheus_metrics
from galleryswap_api.routers import (
    events,
    experiments,
    rotation,
    statistics,
    storefront,
    webhooks,
)

ROUTERS = (rotation, experiments, storefront, events, webhooks, statistics)


def _split_list(value: str) -> list[str]:
    return [part.strip() for part in str(value or "").split(",") if part.strip()]


def _route_template(request: Request) -> str:
    route = request.scope.get("route")
    return str(getattr(route, "path", None) or request.url.path)


def _tag_request_id(request: Request, response: Response) -> Response:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        response.headers["X-Request-Id"] = str(request_id)
    return response


def _probe_db() -> dict[str, object]:
    try:
        with SessionLocal() as session:
            session.execute(text("SELECT 1"))
    except Exception as exc:  # noqa: BLE001
        return {"ok": False, "error": str(exc)[:400]}
    return {"ok": True, "error": None}


def _probe_catalog() -> dict[str, object]:
    # Construction only; no outbound call on readiness checks.
    try:
        get_catalog_client()
    except Exception as exc:  # noqa: BLE001
        return {"ok": False, "error": str(exc)[:400]}
    return {"ok": True, "error": None}


def create_app(*, settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings()

    app = FastAPI(
        title="GallerySwap API",
        version=settings.service_version,
        openapi_url="/api/openapi.json",
        docs_url="/docs",
    )

    if settings.trust_proxy_headers:
        # Forwarded client ips feed the per-ip rate limits.
        app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

    app.add_middleware(
        TrustedHostMiddleware, allowed_hosts=_split_list(settings.allowed_hosts) or ["*"]
    )

    origins = _split_list(settings.cors_allowed_origins)
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials="*" not in origins,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["*"],
        )

    @app.middleware("http")
    async def _request_context(request: Request, call_next):
        started = time.perf_counter()
        request_id = request.headers.get("x-request-id") or f"req_{uuid4().hex}"
        request.state.request_id = request_id

        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            response.headers["X-Request-Id"] = request_id
            return response
        finally:
            duration_ms = (time.perf_counter() - started) * 1000.0
            observe_http_request(
                path=_route_template(request),
                method=request.method,
                status=str(status),
                duration_ms=duration_ms,
            )
            if settings.log_json:
                log(
                    "http",
                    "request",
                    level="error" if status >= 500 else "info",
                    request_id=request_id,
                    method=request.method,
                    path=request.url.path,
                    status=status,
                    duration_ms=round(duration_ms, 2),
                )

    @app.exception_handler(HTTPException)
    async def _http_error(request: Request, exc: HTTPException):
        return _tag_request_id(request, await http_exception_handler(request, exc))

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        return _tag_request_id(
            request, await request_validation_exception_handler(request, exc)
        )

    @app.exception_handler(Exception)
    async def _unhandled_error(request: Request, exc: Exception):
        request_id = getattr(request.state, "request_id", None)
        log(
            "http",
            "unhandled error",
            level="error",
            request_id=request_id,
            path=request.url.path,
            error=type(exc).__name__,
        )
        return _tag_request_id(
            request,
            JSONResponse(
                status_code=500,
                content={"detail": "Internal Server Error", "request_id": request_id},
            ),
        )

    @app.get("/api/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "version": settings.service_version}

    @app.get("/api/ready")
    def ready() -> dict[str, object]:
        db = _probe_db()
        catalog = _probe_catalog()
        return {
            "status": "ok" if db["ok"] and catalog["ok"] else "fail",
            "db": db,
            "catalog": catalog,
            "catalog_mode": settings.catalog_mode,
        }

    @app.get("/api/metrics", response_class=PlainTextResponse)
    def metrics() -> Response:
        with SessionLocal() as session:
            body = render_prometheus_metrics(db=session)
        return PlainTextResponse(content=body, media_type="text/plain; version=0.0.4")

    for module in ROUTERS:
        app.include_router(module.router)

    return app


app = create_app()
