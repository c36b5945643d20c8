import asyncio
from contextlib import suppress
from datetime import datetime, timezone
import logging
import time
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.db import engine
from app.errors import ApiError, error_response
from app.logging_utils import setup_json_logging
from app.routers import admin, attendance
from app.services.challenges import get_challenge_store
from app.services.mail import get_mail_sender
from app.services.schema_guard import SchemaGuardResult, verify_runtime_schema
from app.settings import get_cors_origins, get_settings, is_geofence_configured

settings = get_settings()
setup_json_logging(settings.log_level)
logger = logging.getLogger("app.request")
sweeper_logger = logging.getLogger("app.challenge_sweeper")

app = FastAPI(title=settings.app_name, version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or str(uuid4())
    request.state.request_id = request_id
    request.state.actor = getattr(request.state, "actor", "system")
    request.state.actor_id = getattr(request.state, "actor_id", "system")

    start = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        response.headers["X-Request-Id"] = request_id
        return response
    finally:
        latency_ms = round((time.perf_counter() - start) * 1000, 2)
        logger.info(
            "request_complete",
            extra={
                "request_id": request_id,
                "path": request.url.path,
                "method": request.method,
                "status_code": status_code,
                "latency_ms": latency_ms,
                "actor": getattr(request.state, "actor", "system"),
                "actor_id": getattr(request.state, "actor_id", "system"),
                "employee_id": getattr(request.state, "employee_id", None),
                "record_id": getattr(request.state, "record_id", None),
            },
        )


@app.exception_handler(ApiError)
async def handle_api_error(request: Request, exc: ApiError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )


@app.exception_handler(HTTPException)
async def handle_http_exception(request: Request, exc: HTTPException) -> JSONResponse:
    status_code = exc.status_code
    code_map = {
        401: "INVALID_TOKEN",
        403: "FORBIDDEN",
        404: "NOT_FOUND",
        405: "METHOD_NOT_ALLOWED",
    }
    code = code_map.get(status_code, "HTTP_ERROR")
    message = str(exc.detail) if exc.detail else "Request failed."
    return error_response(
        request,
        status_code=status_code,
        code=code,
        message=message,
    )


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(
        request,
        status_code=422,
        code="VALIDATION_ERROR",
        message="Request validation failed.",
        details={"errors": [{"loc": list(item.get("loc", ())), "msg": item.get("msg")} for item in exc.errors()]},
    )


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "unhandled_error",
        extra={
            "request_id": getattr(request.state, "request_id", "unknown"),
            "path": request.url.path,
            "method": request.method,
        },
    )
    return error_response(
        request,
        status_code=500,
        code="INTERNAL_ERROR",
        message="Unexpected server error.",
    )


app.include_router(attendance.router)
app.include_router(admin.router)


def _default_schema_guard_result() -> SchemaGuardResult:
    return SchemaGuardResult(
        ok=False,
        checked_at_utc=datetime.now(timezone.utc),
        issues=["SCHEMA_GUARD_NOT_RUN"],
        warnings=[],
    )


def _sweep_interval_seconds() -> int:
    return max(15, int(settings.challenge_sweep_interval_seconds))


async def _challenge_sweeper_loop(stop_event: asyncio.Event) -> None:
    interval_seconds = _sweep_interval_seconds()
    store = get_challenge_store()
    while not stop_event.is_set():
        try:
            purged = await asyncio.to_thread(store.purge_expired, datetime.now(timezone.utc))
        except Exception:
            sweeper_logger.exception("challenge_sweeper_tick_failed")
        else:
            if purged:
                sweeper_logger.info(
                    "challenge_sweeper_tick",
                    extra={"purged": purged, "backend": store.backend_name},
                )

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            continue


@app.on_event("startup")
async def run_schema_guard() -> None:
    result = await asyncio.to_thread(
        verify_runtime_schema,
        engine,
        include_challenge_table=settings.challenge_store_backend.strip().lower() == "database",
    )
    app.state.schema_guard_result = result
    if result.ok:
        sweeper_logger.info("schema_guard_ok", extra=result.to_dict())
        return

    sweeper_logger.error("schema_guard_failed", extra=result.to_dict())
    if settings.schema_guard_strict:
        joined_issues = "; ".join(result.issues)
        raise RuntimeError(f"Runtime schema guard failed: {joined_issues}")


@app.on_event("startup")
async def log_runtime_configuration() -> None:
    if not is_geofence_configured():
        logger.warning("geofence_not_configured", extra={"missing_fields": ["OFFICE_LAT", "OFFICE_LON"]})
    logger.info(
        "runtime_configuration",
        extra={
            "attendance_timezone": settings.attendance_timezone,
            "allowed_distance_meters": settings.allowed_distance_meters,
            "office_start_time": settings.office_start_time,
            "otp_ttl_minutes": settings.otp_ttl_minutes,
            "challenge_store": get_challenge_store().backend_name,
            "mail": get_mail_sender().config_status(),
        },
    )


@app.on_event("startup")
async def start_challenge_sweeper() -> None:
    if not settings.challenge_sweeper_enabled:
        return
    if getattr(app.state, "challenge_sweeper_task", None) is not None:
        return

    stop_event = asyncio.Event()
    task = asyncio.create_task(_challenge_sweeper_loop(stop_event))
    app.state.challenge_sweeper_stop_event = stop_event
    app.state.challenge_sweeper_task = task
    sweeper_logger.info(
        "challenge_sweeper_started",
        extra={"interval_seconds": _sweep_interval_seconds()},
    )


@app.on_event("shutdown")
async def stop_challenge_sweeper() -> None:
    stop_event: asyncio.Event | None = getattr(app.state, "challenge_sweeper_stop_event", None)
    task: asyncio.Task[None] | None = getattr(app.state, "challenge_sweeper_task", None)
    if stop_event is not None:
        stop_event.set()
    if task is not None:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
    app.state.challenge_sweeper_stop_event = None
    app.state.challenge_sweeper_task = None


@app.get("/health")
def health() -> dict[str, Any]:
    schema_guard_result: SchemaGuardResult = getattr(app.state, "schema_guard_result", _default_schema_guard_result())
    return {
        "status": "ok",
        "schema_guard": schema_guard_result.to_dict(),
        "geofence_configured": is_geofence_configured(),
        "challenge_store": get_challenge_store().backend_name,
        "mail": get_mail_sender().config_status(),
    }
