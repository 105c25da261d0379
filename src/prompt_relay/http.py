"""HTTP surface: the push stream, the tool-call endpoint and health checks."""

from __future__ import annotations

import argparse
import contextlib
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Optional, cast

import structlog
import uvicorn
from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from sqlalchemy import text
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from . import rich_logger
from .auth import AccessTokenAuthenticator, Authenticator, Principal
from .config import Settings, get_settings
from .db import ensure_schema, get_session
from .dispatcher import ProtocolDispatcher
from .errors import AuthenticationFailure
from .framing import connected_event, format_event
from .registry import Connection, ConnectionRegistry, QueueSink, new_connection_id
from .repository import PromptRepository

_LOGGING_CONFIGURED = False

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "Access-Control-Allow-Origin": "*",
}

MCP_CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
}

MCP_STREAM_HEADERS = {
    **MCP_CORS_HEADERS,
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _configure_logging(settings: Settings) -> None:
    """Initialize structlog and stdlib logging formatting."""
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
    ]
    if settings.log_json_enabled:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.processors.KeyValueRenderer(key_order=["event", "path", "status"]))
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(level=level)
    # Per-statement noise from the driver thread.
    logging.getLogger("aiosqlite").setLevel(logging.INFO)
    _LOGGING_CONFIGURED = True


class RequestLoggingMiddleware:
    """Log one line per request once the response has finished.

    Plain ASGI rather than ``BaseHTTPMiddleware`` so long-lived push streams
    pass through untouched and are logged when the client goes away.
    """

    def __init__(self, app: ASGIApp, *, rich_enabled: bool = False) -> None:
        self.app = app
        self.rich_enabled = rich_enabled

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return
        start = time.monotonic()
        status_code = 0

        async def _send(message: Message) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = int(message["status"])
            await send(message)

        try:
            await self.app(scope, receive, _send)
        finally:
            dur_ms = int((time.monotonic() - start) * 1000)
            method = scope.get("method", "-")
            path = scope.get("path", "-")
            client = scope["client"][0] if scope.get("client") else "-"
            structlog.get_logger("http").info(
                "request",
                method=method,
                path=path,
                status=status_code,
                duration_ms=dur_ms,
                client_ip=client,
            )
            if self.rich_enabled:
                rich_logger.log_http_request(method, path, status_code, dur_ms, client)


def _unauthorized() -> JSONResponse:
    return JSONResponse({"error": "Unauthorized"}, status_code=status.HTTP_401_UNAUTHORIZED, headers=MCP_CORS_HEADERS)


async def readiness_check() -> None:
    await ensure_schema()
    async with get_session() as session:
        await session.execute(text("SELECT 1"))


def build_http_app(
    settings: Settings,
    *,
    registry: Optional[ConnectionRegistry] = None,
    authenticator: Optional[Authenticator] = None,
    repository: Optional[PromptRepository] = None,
) -> FastAPI:
    _configure_logging(settings)
    log = structlog.get_logger("http")

    registry = registry if registry is not None else ConnectionRegistry.create(settings)
    if authenticator is None:
        authenticator = AccessTokenAuthenticator(allow_query_token_paths=(settings.http.sse_path,))
    if repository is None:
        repository = PromptRepository(publisher=registry)
    dispatcher = ProtocolDispatcher(repository, settings.mcp, rpc_log_enabled=settings.rpc_log_enabled)

    @asynccontextmanager
    async def lifespan_context(app: FastAPI) -> AsyncIterator[None]:
        await ensure_schema(settings)
        try:
            yield
        finally:
            await registry.shutdown()

    fastapi_app = FastAPI(lifespan=lifespan_context)
    fastapi_app.state.registry = registry
    fastapi_app.state.repository = repository
    fastapi_app.state.dispatcher = dispatcher

    @fastapi_app.exception_handler(AuthenticationFailure)
    async def _on_auth_failure(request: Request, exc: AuthenticationFailure) -> JSONResponse:
        return _unauthorized()

    async def _require_principal(request: Request) -> Principal:
        principal = await authenticator.authenticate(request)
        if principal is None:
            raise AuthenticationFailure(request.url.path)
        return principal

    app_any = cast(Any, fastapi_app)
    if settings.cors.enabled:
        app_any.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors.origins or ["*"],
            allow_methods=settings.cors.allow_methods or ["*"],
            allow_headers=settings.cors.allow_headers or ["*"],
        )
    if settings.http.request_log_enabled:
        app_any.add_middleware(RequestLoggingMiddleware, rich_enabled=settings.log_rich_enabled)

    @fastapi_app.get(settings.http.sse_path)
    async def sse_stream(request: Request) -> Response:
        principal = await _require_principal(request)

        async def _events() -> AsyncIterator[str]:
            # Registration lives and ends with the response body.
            sink = QueueSink(max_pending=settings.sse.max_pending_frames)
            connection = Connection(
                id=new_connection_id(principal.user_id),
                sink=sink,
                user_id=principal.user_id,
                tenant_id=principal.tenant_id,
            )
            registry.register(connection)
            try:
                sink.send(format_event(connected_event(connection.id)))
                async for chunk in sink:
                    yield chunk
            finally:
                registry.unregister(connection.id)

        return StreamingResponse(_events(), media_type="text/event-stream", headers=SSE_HEADERS)

    @fastapi_app.get(f"{settings.http.sse_path}/stats")
    async def sse_stats(request: Request) -> JSONResponse:
        principal = await _require_principal(request)
        if not principal.is_admin:
            log.info("auth.rejected", reason="not_admin", path=request.url.path, user_id=principal.user_id)
            return JSONResponse({"error": "Forbidden"}, status_code=status.HTTP_403_FORBIDDEN)
        return JSONResponse(registry.stats().to_dict())

    @fastapi_app.post(settings.http.mcp_path)
    async def mcp_call(request: Request) -> Response:
        principal = await _require_principal(request)
        body = await request.body()
        return StreamingResponse(
            dispatcher.stream(body, principal),
            media_type="text/event-stream",
            headers=MCP_STREAM_HEADERS,
        )

    @fastapi_app.options(settings.http.mcp_path)
    async def mcp_preflight() -> Response:
        return Response(status_code=status.HTTP_200_OK, headers=MCP_CORS_HEADERS)

    @fastapi_app.get("/health/liveness")
    async def liveness() -> JSONResponse:
        return JSONResponse({"status": "alive"})

    @fastapi_app.get("/health/readiness")
    async def readiness() -> JSONResponse:
        try:
            await readiness_check()
        except Exception as exc:
            with contextlib.suppress(Exception):
                structlog.get_logger("health").error("readiness_error", error=str(exc))
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
        return JSONResponse({"status": "ready"})

    return fastapi_app


def main() -> None:
    """Run the HTTP transport using settings-specified host/port."""

    parser = argparse.ArgumentParser(description="Run the prompt relay HTTP transport")
    parser.add_argument("--host", help="Override HTTP host", default=None)
    parser.add_argument("--port", help="Override HTTP port", type=int, default=None)
    parser.add_argument("--log-level", help="Uvicorn log level", default="info")
    # Be tolerant of extraneous argv when invoked under test runners
    args, _unknown = parser.parse_known_args()

    settings = get_settings()
    host = args.host or settings.http.host
    port = args.port or settings.http.port

    app = build_http_app(settings)
    uvicorn.run(app, host=host, port=port, log_level=args.log_level)


if __name__ == "__main__":  # pragma: no cover - manual execution path
    main()
