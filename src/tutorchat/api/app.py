"""FastAPI application exposing the TutorChat transport proxy."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable
from uuid import uuid4

import httpx
from fastapi import Depends, FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from tutorchat.api.messages import bearer_token, extract_user_message, resolve_session_id
from tutorchat.api.proxy import STREAM_HEADERS, open_relay
from tutorchat.api.schemas import ProxyErrorResponse
from tutorchat.backend.client import BackendClient, BackendError, build_timeout
from tutorchat.config import Settings, get_settings
from tutorchat.metrics.observability import (
    StreamMetrics,
    bind_correlation_id,
    clear_correlation_id,
    configure_logging,
    get_logger,
)

BackendFactory = Callable[[str], BackendClient]


@dataclass(frozen=True)
class AppDependencies:
    backend_factory: BackendFactory


def _build_dependencies(settings: Settings) -> AppDependencies:
    timeout = build_timeout(
        connect=settings.backend_connect_timeout_seconds,
        write=settings.backend_write_timeout_seconds,
        pool=settings.backend_pool_timeout_seconds,
    )

    def backend_factory(token: str) -> BackendClient:
        return BackendClient(settings.backend_base, token, timeout=timeout)

    return AppDependencies(backend_factory=backend_factory)


def _error(status_code: int, error: str, **fields: Any) -> JSONResponse:
    body = ProxyErrorResponse(error=error, **fields)
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


def _passthrough(exc: BackendError) -> Response:
    return Response(
        content=exc.body,
        status_code=exc.status_code,
        media_type=exc.content_type or "text/plain",
    )


async def _read_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        return None


def create_app(*, settings: Settings | None = None, dependencies: AppDependencies | None = None) -> FastAPI:
    settings = settings or get_settings()
    deps = dependencies or _build_dependencies(settings)

    configure_logging()
    logger = get_logger("api")
    app = FastAPI(title="TutorChat Proxy", version="0.1.0")
    app.state.dependencies = deps

    # Optional CORS
    if settings.cors_allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(settings.cors_allow_origins),
            allow_credentials=settings.cors_allow_credentials,
            allow_methods=list(settings.cors_allow_methods),
            allow_headers=list(settings.cors_allow_headers),
            expose_headers=["X-Session-Id", "X-Correlation-ID"],
        )

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):  # type: ignore[override]
        correlation_id = request.headers.get("X-Request-ID", uuid4().hex)
        request.state.correlation_id = correlation_id
        bind_correlation_id(correlation_id)
        try:
            response = await call_next(request)
        finally:
            clear_correlation_id()
        response.headers["X-Correlation-ID"] = correlation_id
        return response

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        correlation_id = getattr(request.state, "correlation_id", uuid4().hex)
        logger.error("unhandled.error", correlation_id=correlation_id, detail=str(exc))
        return _error(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "Internal Server Error",
            detail=str(exc),
            correlation_id=correlation_id,
        )

    def get_dependencies(request: Request) -> AppDependencies:
        return request.app.state.dependencies

    @app.post(settings.chat_route)
    async def chat_proxy(request: Request, dep: AppDependencies = Depends(get_dependencies)) -> Response:
        body = await _read_body(request)

        message = extract_user_message(body)
        if not message:
            StreamMetrics.observe_request("no_message")
            logger.info("proxy.request.rejected", reason="no_message")
            return _error(
                status.HTTP_400_BAD_REQUEST,
                "No user message found",
                expected="{ messages: [...] } or { message: '...' }",
            )

        token = bearer_token(request.headers.get("authorization"))
        if not token:
            StreamMetrics.observe_request("unauthorized")
            logger.info("proxy.request.rejected", reason="unauthorized")
            return _error(status.HTTP_401_UNAUTHORIZED, "Unauthorized", detail="Missing bearer credential")

        session_id = resolve_session_id(body, request.headers)
        if not session_id:
            StreamMetrics.observe_request("no_session")
            logger.info("proxy.request.rejected", reason="no_session")
            return _error(
                status.HTTP_400_BAD_REQUEST,
                "Missing session id",
                detail="Create a conversation before sending messages",
            )

        backend = dep.backend_factory(token)
        try:
            stream = await open_relay(backend, session_id, message)
        except BackendError as exc:
            StreamMetrics.observe_request("backend_error")
            logger.warning("proxy.backend.error", session_id=session_id, status_code=exc.status_code)
            return _passthrough(exc)
        except httpx.TransportError as exc:
            StreamMetrics.observe_request("backend_unavailable")
            logger.error("proxy.backend.unavailable", session_id=session_id, detail=str(exc))
            return _error(status.HTTP_502_BAD_GATEWAY, "Backend unavailable", detail=str(exc))

        StreamMetrics.observe_request("streamed")
        logger.info("proxy.stream.opened", session_id=session_id, message_chars=len(message))
        headers = {**STREAM_HEADERS, "X-Session-Id": session_id}
        return StreamingResponse(stream, media_type="text/event-stream", headers=headers)

    @app.get("/api/sessions/{session_id}")
    async def session_detail(
        session_id: str,
        request: Request,
        dep: AppDependencies = Depends(get_dependencies),
    ) -> Response:
        token = bearer_token(request.headers.get("authorization"))
        if not token:
            return _error(status.HTTP_401_UNAUTHORIZED, "Unauthorized", detail="Missing bearer credential")
        async with dep.backend_factory(token) as backend:
            try:
                payload = await backend.get_session_payload(session_id)
            except BackendError as exc:
                return _passthrough(exc)
            except httpx.TransportError as exc:
                return _error(status.HTTP_502_BAD_GATEWAY, "Backend unavailable", detail=str(exc))
        return JSONResponse(content=payload)

    @app.get("/metrics")
    async def metrics() -> Response:
        payload = generate_latest()
        return Response(content=payload, media_type=CONTENT_TYPE_LATEST)

    @app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        from tutorchat import __version__

        return {"status": "ok", "version": __version__, "environment": settings.environment}

    @app.head("/healthz")
    async def healthcheck_head() -> Response:
        return Response(status_code=status.HTTP_200_OK)

    @app.get("/livez")
    async def liveness() -> dict[str, str]:
        return {"status": "alive"}

    return app


app = create_app()
