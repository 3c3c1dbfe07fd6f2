from __future__ import annotations

import json
import logging
import time
import uuid

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from aigateway.app.api.admin import router as admin_router
from aigateway.app.api.generation import router as generation_router
from aigateway.app.api.health import router as health_router
from aigateway.app.api.images import router as images_router
from aigateway.app.api.models import router as models_router
from aigateway.app.api.providers import router as providers_router
from aigateway.app.config.settings import runtime_config, settings
from aigateway.app.core.errors import GatewayError, RateLimited
from aigateway.app.core.logging import request_id_var, setup_logging
from aigateway.app.providers.registry import registry
from aigateway.app.security.cors import cors_kwargs
from aigateway.app.services.model_sync import model_sync
from aigateway.app.services.rate_limit import rate_limiter
from aigateway.app.services.stream_session import session_manager

setup_logging(level=settings.log_level, log_file=settings.log_file or None)
logger = logging.getLogger("aigateway")

_SENSITIVE_KEYS = {
    "token",
    "access_token",
    "secret",
    "api_key",
    "authorization",
    "existing_html",
}


def _redact_value(value):
    if isinstance(value, dict):
        redacted = {}
        for key, item in value.items():
            if str(key).lower() in _SENSITIVE_KEYS:
                redacted[key] = "***"
            else:
                redacted[key] = _redact_value(item)
        return redacted
    if isinstance(value, list):
        return [_redact_value(item) for item in value]
    return value


def _safe_headers(request: Request) -> dict:
    allowlist = {
        "user-agent",
        "origin",
        "referer",
        "content-type",
        "x-forwarded-for",
        "x-real-ip",
        "x-caller-id",
    }
    return {key: value for key, value in request.headers.items() if key.lower() in allowlist}


def _safe_body_preview(body, max_bytes: int = 2048) -> str | None:
    """Redacted preview of an already parsed JSON body. Form uploads are never logged."""
    if not isinstance(body, (dict, list)):
        return None
    text = json.dumps(jsonable_encoder(_redact_value(body)), ensure_ascii=False)
    truncated = False
    if len(text) > max_bytes:
        text = text[:max_bytes]
        truncated = True
    return f"{text}…(truncated)" if truncated else text


def _request_context(request: Request, body=None) -> dict:
    context = {
        "method": request.method,
        "path": request.url.path,
        "query": request.url.query,
        "client_ip": request.client.host if request.client else None,
        "headers": _safe_headers(request),
    }
    body_preview = _safe_body_preview(body)
    if body_preview:
        context["body_preview"] = body_preview
    return context


app = FastAPI(title="AI Generation Gateway", version="0.1.0")


@app.on_event("startup")
async def startup_event():
    """Build the provider registry from the current runtime config."""
    registry.timeout_seconds = settings.provider_timeout_seconds
    registry.build_registry(runtime_config.current)
    rate_limiter.configure(settings.rate_limit_requests, settings.rate_limit_window_seconds)
    logger.info(
        "Gateway started",
        extra={"providers": [p.provider_id for p in registry.list_providers()]},
    )
    if settings.sync_models_on_startup:
        result = await model_sync.sync()
        if result.errors:
            logger.warning("Startup model sync incomplete", extra={"errors": result.errors})


@app.on_event("shutdown")
async def shutdown_event():
    await session_manager.shutdown()
    await registry.aclose()


app.add_middleware(
    CORSMiddleware,
    **cors_kwargs(settings.cors_origins_list, allow_credentials=settings.identity_mode != "bearer"),
)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "no-referrer"
        return response


app.add_middleware(SecurityHeadersMiddleware)
app.include_router(health_router)
app.include_router(admin_router)
app.include_router(providers_router)
app.include_router(models_router)
app.include_router(generation_router)
app.include_router(images_router)


class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id

        token = request_id_var.set(request_id)
        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            request_id_var.reset(token)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        response = await call_next(request)
        latency = time.time() - start_time

        route = getattr(request.scope.get("route"), "path", request.url.path)
        logger.info(
            "Request completed",
            extra={
                "request_id": getattr(request.state, "request_id", "unknown"),
                "method": request.method,
                "route": route,
                "status": response.status_code,
                "latency_ms": round(latency * 1000, 2),
            },
        )
        return response


app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(RequestIDMiddleware)


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError):
    request_id = getattr(request.state, "request_id", "unknown")
    headers = {}
    if isinstance(exc, RateLimited):
        headers["Retry-After"] = str(exc.retry_after)
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "GatewayError",
        extra={
            "request_id": request_id,
            "status_code": exc.status_code,
            "error_code": exc.code,
            "error_message": exc.message,
            **_request_context(request),
        },
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={**exc.to_payload(), "request_id": request_id},
        headers=headers,
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    request_id = getattr(request.state, "request_id", "unknown")
    detail = exc.detail if isinstance(exc.detail, dict) else {"code": "HTTP_ERROR", "message": str(exc.detail)}
    context = _request_context(request)
    logger.warning(
        "HTTPException",
        extra={
            "request_id": request_id,
            "status_code": exc.status_code,
            "error_code": detail.get("code"),
            "error_message": detail.get("message"),
            **context,
        },
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"code": detail.get("code", "HTTP_ERROR"), "message": detail.get("message", "Request failed"), "request_id": request_id},
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    request_id = getattr(request.state, "request_id", "unknown")
    context = _request_context(request, exc.body)
    logger.warning(
        "RequestValidationError",
        extra={
            "request_id": request_id,
            "error_detail": jsonable_encoder(exc.errors()),
            **context,
        },
    )
    return JSONResponse(
        status_code=400,
        content={"code": "INVALID_REQUEST", "message": "Invalid request", "detail": jsonable_encoder(exc.errors()), "request_id": request_id},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    request_id = getattr(request.state, "request_id", "unknown")
    context = _request_context(request)
    logger.error("Unhandled exception", extra={"request_id": request_id, **context}, exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "code": "INTERNAL_ERROR",
            "message": "An internal error occurred",
            "request_id": request_id,
        },
    )
