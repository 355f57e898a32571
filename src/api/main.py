"""FastAPI application entrypoint for the OpenPolicy service.

Wires the owner-facing routers (workspaces, documents, billing, media, AI),
the unauthenticated surfaces (public documents, slug availability, Polar
webhook) and the operational endpoints (``/health``, ``/version``,
``/metrics``).
"""

from __future__ import annotations

from time import perf_counter
from typing import Any, Dict, Optional, Tuple
from uuid import uuid4

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse

from src.ai.router import router as ai_router
from src.auth.middleware import AUTH_CONTEXT_KEY, resolve_request_auth_context
from src.billing.router import router as billing_router
from src.billing.webhooks import router as billing_webhook_router
from src.core.config import get_settings
from src.core.logger import bind_request_context, clear_request_context, get_logger
from src.core.metrics import record_http_request, record_rate_limit_block, render_prometheus_metrics
from src.core.observability import init_sentry, sentry_scope
from src.core.rate_limit import RateLimitDecision, get_ip_rate_limiter
from src.documents.router import public_router as public_documents_router
from src.documents.router import router as documents_router
from src.media.router import router as media_router
from src.storage.db import load_models
from src.storage.db import test_connection as test_db_connection
from src.storage.redis_client import test_connection as test_redis_connection
from src.workspaces.router import router as workspaces_router


settings = get_settings()
logger = get_logger("openpolicy.api")

app = FastAPI(title=settings.app_name, version=settings.app_version)

_PROMETHEUS_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"


def _client_ip(request: Request) -> str:
    for header in ("x-forwarded-for", "x-real-ip"):
        raw = request.headers.get(header, "")
        candidate = raw.split(",")[0].strip()
        if candidate:
            return candidate
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def _ip_rate_limit_active() -> bool:
    return bool(settings.ip_rate_limit_enabled) and settings.is_production


def _check_ip_rate_limit(request: Request) -> Tuple[Optional[RateLimitDecision], Optional[Response]]:
    """Return the limiter decision and, when blocked, the 429 response to send."""

    if not _ip_rate_limit_active():
        return None, None

    decision = get_ip_rate_limiter().check(ip=_client_ip(request))
    if decision.allowed:
        return decision, None

    record_rate_limit_block(kind="ip")
    blocked = JSONResponse(
        status_code=429,
        content={
            "detail": "Rate limit exceeded",
            "limit": decision.limit,
            "remaining": decision.remaining,
            "reset_seconds": decision.reset_seconds,
        },
    )
    return decision, blocked


def _route_template(request: Request) -> str:
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    started_at = perf_counter()
    request_id = request.headers.get("x-request-id") or str(uuid4())
    workspace_id = request.headers.get("x-workspace-id")

    auth_context = resolve_request_auth_context(request)
    setattr(request.state, AUTH_CONTEXT_KEY, auth_context)
    bind_request_context(
        request_id=request_id,
        workspace_id=workspace_id,
        user_id=auth_context.user_id if auth_context is not None else None,
    )

    status_code = 500
    try:
        with sentry_scope(workspace_id=workspace_id, request_id=request_id):
            decision, response = _check_ip_rate_limit(request)
            if response is None:
                response = await call_next(request)
        status_code = int(response.status_code)
    finally:
        if settings.metrics_enabled:
            record_http_request(
                method=request.method,
                path=_route_template(request),
                status_code=status_code,
                duration_seconds=perf_counter() - started_at,
            )
        clear_request_context()

    if decision is not None:
        response.headers["x-rate-limit-limit"] = str(decision.limit)
        response.headers["x-rate-limit-remaining"] = str(decision.remaining)
        response.headers["x-rate-limit-reset"] = str(decision.reset_seconds)
    response.headers["x-request-id"] = request_id
    return response


@app.on_event("startup")
def on_startup() -> None:
    load_models()
    logger.info(
        "application_startup",
        env=settings.env,
        version=settings.app_version,
        sentry_enabled=init_sentry(),
        metrics_enabled=settings.metrics_enabled,
        ip_rate_limit_enabled=_ip_rate_limit_active(),
        polar_server=settings.polar_server,
        deploy_hook_configured=bool(settings.deploy_hook_url),
        ai_provider=settings.ai_provider,
    )


def _check_dependencies() -> Dict[str, Dict[str, Any]]:
    checks = {
        "database": test_db_connection,
        "redis": test_redis_connection,
    }
    services: Dict[str, Dict[str, Any]] = {}
    for name, check in checks.items():
        ok, error = check()
        services[name] = {"ok": ok, "error": error}
    return services


@app.get("/health")
def health() -> JSONResponse:
    services = _check_dependencies()
    healthy = all(entry["ok"] for entry in services.values())
    if not healthy:
        logger.warning(
            "health_check_degraded",
            failing=sorted(name for name, entry in services.items() if not entry["ok"]),
        )
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "ok" if healthy else "degraded",
            "env": settings.env,
            "services": services,
        },
    )


@app.get("/version")
def version() -> dict[str, str]:
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "env": settings.env,
        "polar_server": settings.polar_server,
    }


@app.get("/metrics")
def metrics() -> PlainTextResponse:
    if not settings.metrics_enabled:
        return PlainTextResponse("metrics disabled\n", status_code=404)
    body = render_prometheus_metrics(
        app_name=settings.app_name,
        app_version=settings.app_version,
        env=settings.env,
    )
    return PlainTextResponse(body, media_type=_PROMETHEUS_CONTENT_TYPE)


for _router in (
    workspaces_router,
    billing_webhook_router,
    billing_router,
    documents_router,
    public_documents_router,
    ai_router,
    media_router,
):
    app.include_router(_router)
