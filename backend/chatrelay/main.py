# SPDX-License-Identifier: Apache-2.0

import logging
import re
import time
import uuid

import redis
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel
from redis.exceptions import RedisError

from .config import settings
from .db import ping_db
from .errors import ChatRelayError
from .metrics import http_request_duration, http_requests_total, metrics_endpoint
from .rate_limit import rate_limit_middleware
from .routes import admin, assistants, conversations
from .routes import auth as auth_routes
from .telemetry import (
    bind_request_context,
    clear_request_context,
    clear_user_context,
    log_json,
    scrub_sensitive_headers,
    setup_logging,
)


class HealthStatus(BaseModel):
    database: bool
    redis: bool


logger = setup_logging()


def create_app() -> FastAPI:
    app = FastAPI(title="Chat Relay Backend", version="0.1.0")

    @app.on_event("startup")
    async def validate_config_on_startup():
        """Fail fast on configuration that only matters once the app serves traffic."""
        if settings.PROVIDER_MOCK_MODE:
            logger.warning("PROVIDER_MOCK_MODE enabled - provider calls return canned replies.")
        elif not settings.OPENAI_API_KEY and not settings.DEEPSEEK_API_KEY:
            log_json(30, "provider_keys_missing")
        if settings.ENVIRONMENT in {"staging", "production"} and not settings.CORS_ORIGINS:
            logger.error("Configuration validation failed: CORS_ORIGINS is empty")
            raise RuntimeError("Invalid configuration: CORS_ORIGINS must be set in staging/production")

    @app.middleware("http")
    async def _correlation_id(request: Request, call_next):
        """Assign or propagate a request ID and ensure it reaches logs and responses."""
        cid = request.headers.get("X-Request-ID")
        if not cid or not re.fullmatch("[A-Za-z0-9-]{8,64}", cid):
            cid = str(uuid.uuid4())

        request.state.request_id = cid
        ctx_token = bind_request_context(cid)
        clear_user_context()
        start = time.perf_counter()
        headers = scrub_sensitive_headers(dict(request.headers))
        try:
            response = await call_next(request)
            return response
        except Exception as exc:
            log_json(
                40,
                "request_failed",
                path=request.url.path,
                method=request.method,
                dur_ms=int((time.perf_counter() - start) * 1000),
                error=str(exc),
                request_headers=headers,
            )
            raise
        finally:
            try:
                if "response" in locals():
                    response.headers["X-Request-ID"] = cid
                    log_json(
                        20,
                        "request_complete",
                        path=request.url.path,
                        method=request.method,
                        status=response.status_code,
                        dur_ms=int((time.perf_counter() - start) * 1000),
                        request_headers=headers,
                    )
            finally:
                clear_request_context(ctx_token)
                clear_user_context()

    app.middleware("http")(rate_limit_middleware)

    @app.middleware("http")
    async def _csrf_protection(request: Request, call_next):
        """Require X-Requested-With header for state-changing operations."""
        if settings.REQUIRE_CSRF_HEADER and request.method in {"POST", "PUT", "PATCH", "DELETE"}:
            if request.url.path not in {"/health", "/metrics"}:
                if request.headers.get("X-Requested-With") != "XMLHttpRequest":
                    return JSONResponse(
                        status_code=403, content={"detail": "CSRF check failed: X-Requested-With header required"}
                    )
        return await call_next(request)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[str(o) for o in settings.CORS_ORIGINS] or ["http://localhost:5173"],
        allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
        allow_methods=settings.CORS_ALLOW_METHODS,
        allow_headers=settings.CORS_ALLOW_HEADERS,
        expose_headers=["X-Request-ID"],
    )

    @app.middleware("http")
    async def _http_metrics_middleware(request: Request, call_next):
        start = time.perf_counter()
        endpoint = request.url.path
        route = request.scope.get("route")
        if route:
            endpoint = getattr(route, "path", None) or endpoint

        response = await call_next(request)
        http_requests_total.labels(method=request.method, endpoint=endpoint, status=str(response.status_code)).inc()
        http_request_duration.labels(method=request.method, endpoint=endpoint).observe(time.perf_counter() - start)
        return response

    @app.middleware("http")
    async def _security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'")
        if request.url.scheme == "https":
            response.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
        response.headers.setdefault("Permissions-Policy", "geolocation=(),microphone=(),camera=(),payment=()")
        return response

    @app.middleware("http")
    async def _json_body_limit(request: Request, call_next):
        max_bytes = settings.MAX_JSON_MB * 1024 * 1024
        cl = request.headers.get("content-length")
        if cl and cl.isdigit() and int(cl) > max_bytes:
            return JSONResponse(status_code=413, content={"detail": "Request body too large"})
        if request.method not in {"POST", "PUT", "PATCH"}:
            return await call_next(request)

        received = 0
        chunks: list[bytes] = []
        try:
            async for chunk in request.stream():
                if not chunk:
                    continue
                received += len(chunk)
                if received > max_bytes:
                    return JSONResponse(status_code=413, content={"detail": "Request body too large"})
                chunks.append(chunk)
        except (RuntimeError, ValueError, TypeError):
            return JSONResponse(status_code=400, content={"detail": "Invalid request body"})

        request._body = b"".join(chunks)  # type: ignore[attr-defined]
        if hasattr(request, "_stream_consumed"):
            request._stream_consumed = True  # type: ignore[attr-defined]
        return await call_next(request)

    @app.exception_handler(ChatRelayError)
    async def _chat_relay_error_handler(request: Request, exc: ChatRelayError):
        log_json(
            30 if exc.status_code < 500 else 40,
            "request_rejected",
            path=request.url.path,
            code=exc.code,
            status=exc.status_code,
        )
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})

    @app.exception_handler(Exception)
    async def _global_exc_handler(request: Request, exc: Exception):
        logger.exception(
            f"Unhandled exception on {request.method} {request.url.path}",
            exc_info=exc,
            extra={"method": request.method, "path": request.url.path},
        )
        resp = JSONResponse(status_code=500, content={"detail": "Internal server error"})
        rid = getattr(getattr(request, "state", None), "request_id", None)
        if rid:
            resp.headers["X-Request-ID"] = rid
        return resp

    app.include_router(auth_routes.router, prefix="/api")
    app.include_router(assistants.router, prefix="/api")
    app.include_router(conversations.router, prefix="/api")
    app.include_router(admin.router, prefix="/api")

    @app.get(
        "/metrics",
        response_class=PlainTextResponse,
        responses={200: {"content": {"text/plain": {}}}, 403: {"description": "Forbidden"}},
    )
    async def metrics(request: Request):
        client_ip = request.client.host if request.client else "unknown"
        if not settings.METRICS_ALLOW_ALL and client_ip not in {"127.0.0.1", "::1"}:
            return JSONResponse(status_code=403, content={"error": "Forbidden"})
        return await metrics_endpoint()

    @app.get("/health", response_model=HealthStatus, responses={200: {"model": HealthStatus}, 503: {"model": HealthStatus}})
    def health():
        db_ok = ping_db()
        redis_ok = True
        if settings.REDIS_URL:
            try:
                client = redis.Redis.from_url(settings.REDIS_URL, socket_connect_timeout=1, socket_timeout=1)
                redis_ok = bool(client.ping())
            except RedisError as exc:
                logging.warning("Redis health check failed: %s", exc)
                redis_ok = False
        code = 200 if db_ok and redis_ok else 503
        return JSONResponse(status_code=code, content={"database": db_ok, "redis": redis_ok})

    return app


app = create_app()
