from __future__ import annotations

import asyncio
import contextlib
import time
from pathlib import Path
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
from sqlalchemy.engine import make_url
from starlette.middleware.trustedhost import TrustedHostMiddleware
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from devarena_api.ai import GeminiClient
from devarena_api.core.config import Settings
from devarena_api.db import Base, SessionLocal, engine
from devarena_api.errors import ArenaError, to_http_exception
from devarena_api.executor import BattleExecutor
from devarena_api.github import GitHubClient
from devarena_api.logs import log_event, log_json
from devarena_api.metrics import observe_http_request, render_prometheus_metrics
from devarena_api.notifications import ResendEmailSender
from devarena_api.profiles import ProfileCacheManager


def _parse_csv(value: str) -> list[str]:
    raw = str(value or "").strip()
    if not raw:
        return []
    return [part.strip() for part in raw.split(",") if part.strip()]


def _default_executor(settings: Settings) -> BattleExecutor:
    profiles = ProfileCacheManager(
        session_factory=SessionLocal,
        repo_source=GitHubClient(settings),
        generator=GeminiClient(settings, model=settings.ai_profile_model),
        settings=settings,
    )
    return BattleExecutor(
        session_factory=SessionLocal,
        profiles=profiles,
        evaluator=GeminiClient(settings),
        email_sender=ResendEmailSender(settings),
        settings=settings,
    )


def _ensure_sqlite_schema(db_url: str) -> None:
    url = make_url(db_url)
    if not url.drivername.startswith("sqlite"):
        return
    if url.database and url.database != ":memory:":
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)
    # Local SQLite runs without Alembic; Postgres deployments migrate explicitly.
    Base.metadata.create_all(engine)


def create_app(
    *, settings: Settings | None = None, executor: BattleExecutor | None = None
) -> FastAPI:
    settings = settings or Settings()

    app = FastAPI(
        title="DevArena API",
        version="0.1.0",
        openapi_url="/api/openapi.json",
        docs_url="/docs",
    )
    app.state.executor = executor or _default_executor(settings)

    if settings.trust_proxy_headers:
        app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

    allowed_hosts = _parse_csv(settings.allowed_hosts) or ["*"]
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=allowed_hosts)

    cors_origins = _parse_csv(settings.cors_allowed_origins)
    if cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.middleware("http")
    async def _request_context(request: Request, call_next):
        start = time.perf_counter()
        request_id = request.headers.get("x-request-id") or f"req_{uuid4().hex}"
        request.state.request_id = request_id

        try:
            response = await call_next(request)
        except Exception:  # noqa: BLE001
            duration_ms = (time.perf_counter() - start) * 1000.0
            _observe_http(request=request, status_code=500, duration_ms=duration_ms)
            if settings.log_json:
                log_json(
                    {
                        "level": "error",
                        "request_id": request_id,
                        "method": request.method,
                        "path": request.url.path,
                        "status": 500,
                        "duration_ms": round(duration_ms, 2),
                    }
                )
            raise

        duration_ms = (time.perf_counter() - start) * 1000.0
        _observe_http(request=request, status_code=response.status_code, duration_ms=duration_ms)
        response.headers["X-Request-Id"] = request_id

        if settings.log_json:
            log_json(
                {
                    "level": "info",
                    "request_id": request_id,
                    "method": request.method,
                    "path": request.url.path,
                    "status": response.status_code,
                    "duration_ms": round(duration_ms, 2),
                }
            )
        return response

    @app.exception_handler(ArenaError)
    async def _arena_error(request: Request, exc: ArenaError):
        return await _with_request_id_http_exception(request, to_http_exception(exc))

    @app.exception_handler(HTTPException)
    async def _with_request_id_http_exception(request: Request, exc: HTTPException):
        resp = await http_exception_handler(request, exc)
        request_id = getattr(request.state, "request_id", None)
        if request_id:
            resp.headers["X-Request-Id"] = str(request_id)
        return resp

    @app.exception_handler(RequestValidationError)
    async def _with_request_id_validation_error(
        request: Request, exc: RequestValidationError
    ):
        resp = await request_validation_exception_handler(request, exc)
        request_id = getattr(request.state, "request_id", None)
        if request_id:
            resp.headers["X-Request-Id"] = str(request_id)
        return resp

    @app.exception_handler(Exception)
    async def _with_request_id_unhandled(request: Request, exc: Exception):
        request_id = getattr(request.state, "request_id", None)
        log_event(
            "unhandled_exception",
            level="error",
            request_id=request_id,
            path=request.url.path,
            error_type=type(exc).__name__,
            error=str(exc)[:500],
        )
        resp = JSONResponse(status_code=500, content={"detail": "Internal Server Error"})
        if request_id:
            resp.headers["X-Request-Id"] = str(request_id)
        return resp

    @app.on_event("startup")
    async def _startup() -> None:
        _ensure_sqlite_schema(settings.db_url)
        app.state.executor.fail_stale_battles()
        app.state.maintenance_task = asyncio.create_task(
            app.state.executor.maintenance_loop(
                interval_sec=float(settings.arena_maintenance_interval_sec)
            ),
            name="arena-maintenance",
        )

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        task = getattr(app.state, "maintenance_task", None)
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await app.state.executor.aclose()

    @app.get("/api/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/ready")
    def ready() -> dict[str, object]:
        db_ok = False
        db_err: str | None = None
        try:
            with SessionLocal() as session:
                session.execute(text("SELECT 1"))
            db_ok = True
        except Exception as exc:  # noqa: BLE001
            db_err = str(exc)[:400]
        return {"status": "ok" if db_ok else "fail", "db": {"ok": db_ok, "error": db_err}}

    @app.get("/api/metrics", response_class=PlainTextResponse)
    def metrics() -> Response:
        with SessionLocal() as session:
            text_out = render_prometheus_metrics(db=session)
        return PlainTextResponse(content=text_out, media_type="text/plain; version=0.0.4")

    from devarena_api.routers import arena

    app.include_router(arena.router)
    return app


def _observe_http(*, request: Request, status_code: int, duration_ms: float | None = None) -> None:
    route = request.scope.get("route")
    template = getattr(route, "path", None) if route is not None else None
    observe_http_request(
        path=str(template or request.url.path),
        method=request.method,
        status=str(status_code),
        duration_ms=duration_ms,
    )


app = create_app()
