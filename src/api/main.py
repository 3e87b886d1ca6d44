"""FastAPI application entrypoint for relaydesk."""

from __future__ import annotations

from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from src.conversations.router import router as conversations_router
from src.core.config import get_settings
from src.core.logger import bind_request_context, clear_request_context, get_logger
from src.core.metrics import record_http_request, render_prometheus_metrics
from src.core.observability import init_sentry, sentry_scope
from src.ingestion.router import router as ingestion_router
from src.realtime.bridge import EventFanoutBridge
from src.realtime.broker import RedisPubSubBroker
from src.realtime.router import router as realtime_router
from src.storage.db import load_models
from src.storage.db import test_connection as test_db_connection
from src.storage.redis_client import create_subscriber_client
from src.storage.redis_client import test_connection as test_redis_connection


settings = get_settings()
logger = get_logger("relaydesk.api")

app = FastAPI(title=settings.app_name, version=settings.app_version)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    started_at = perf_counter()
    request_id = request.headers.get("x-request-id", str(uuid4()))
    workspace_id = request.headers.get("x-workspace-id") or request.query_params.get("workspaceId")
    bind_request_context(request_id=request_id, workspace_id=workspace_id)

    response = None
    status_code = 500

    try:
        with sentry_scope(workspace_id=workspace_id, request_id=request_id):
            response = await call_next(request)
        status_code = int(response.status_code)
    finally:
        duration = perf_counter() - started_at
        if settings.metrics_enabled:
            record_http_request(
                method=request.method,
                path=request.url.path,
                status_code=status_code,
                duration_seconds=duration,
            )
        clear_request_context()

    response.headers["x-request-id"] = request_id
    return response


@app.on_event("startup")
def on_startup() -> None:
    load_models()
    sentry_enabled = init_sentry()
    broker = RedisPubSubBroker(
        create_subscriber_client(),
        poll_sleep_seconds=settings.broker_poll_sleep_seconds,
    )
    app.state.broker = broker
    app.state.bridge = EventFanoutBridge(broker)
    logger.info(
        "application_startup",
        env=settings.env,
        version=settings.app_version,
        sentry_enabled=sentry_enabled,
        metrics_enabled=settings.metrics_enabled,
    )


@app.on_event("shutdown")
def on_shutdown() -> None:
    broker = getattr(app.state, "broker", None)
    if broker is not None:
        broker.close()
    logger.info("application_shutdown")


def realtime_status() -> dict[str, object]:
    """Fan-out state: live channels must have a running broker listener."""

    bridge = getattr(app.state, "bridge", None)
    broker = getattr(app.state, "broker", None)
    if bridge is None or broker is None:
        return {"ok": False, "error": "not_started", "channels": 0, "listening": False}

    channels = len(bridge.snapshot())
    listening = bool(broker.running)
    ok = listening or channels == 0
    return {
        "ok": ok,
        "error": None if ok else "listener_stopped",
        "channels": channels,
        "listening": listening,
    }


@app.get("/health")
def health() -> JSONResponse:
    db_ok, db_error = test_db_connection()
    redis_ok, redis_error = test_redis_connection()
    realtime = realtime_status()

    healthy = db_ok and redis_ok and bool(realtime["ok"])
    status = "ok" if healthy else "degraded"

    payload = {
        "status": status,
        "env": settings.env,
        "services": {
            "database": {"ok": db_ok, "error": db_error},
            "redis": {"ok": redis_ok, "error": redis_error},
            "realtime": realtime,
        },
    }

    return JSONResponse(content=payload, status_code=200 if healthy else 503)


@app.get("/version")
def version() -> dict[str, str]:
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "env": settings.env,
    }


@app.get("/metrics")
def metrics() -> PlainTextResponse:
    if not settings.metrics_enabled:
        return PlainTextResponse("metrics disabled\n", status_code=404)

    payload = render_prometheus_metrics(
        app_name=settings.app_name,
        app_version=settings.app_version,
        env=settings.env,
    )
    return PlainTextResponse(
        payload,
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )


app.include_router(ingestion_router)
app.include_router(conversations_router)
app.include_router(realtime_router)
