from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
import time
import uuid
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager

from common.utils import log_event, now_utc_iso
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from gatekeeper.auth import AuthGate, ExternalKeyValidator, KeyValidator
from gatekeeper.config import GatewaySettings
from gatekeeper.cors import CorsPolicy
from gatekeeper.token_cache import TokenCache, sweep_forever

CallNext = Callable[[Request], Awaitable[Response]]
SessionRefresher = Callable[[Request, CallNext], Awaitable[Response]]
LOGGER = logging.getLogger("gatekeeper.main")


async def passthrough_session(request: Request, call_next: CallNext) -> Response:
    return await call_next(request)


class MetricsSnapshot(BaseModel):
    generated_at: str
    totals: dict[str, int]
    endpoints: dict[str, dict[str, float | int]]
    auth: dict[str, int]
    token_cache_size: int


class MetricsStore:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._totals = {"requests": 0, "errors": 0}
        self._endpoints: dict[str, dict[str, float | int]] = {}
        self._auth: dict[str, int] = {}

    def observe(self, *, method: str, path: str, status_code: int, duration_ms: float) -> None:
        key = f"{method} {path}"
        bucket = f"{status_code // 100}xx"
        with self._lock:
            self._totals["requests"] += 1
            if status_code >= 400:
                self._totals["errors"] += 1
            endpoint = self._endpoints.setdefault(
                key,
                {"count": 0, "2xx": 0, "4xx": 0, "5xx": 0, "latency_ms_sum": 0.0},
            )
            endpoint["count"] = int(endpoint["count"]) + 1
            if bucket in ("2xx", "4xx", "5xx"):
                endpoint[bucket] = int(endpoint[bucket]) + 1
            endpoint["latency_ms_sum"] = float(endpoint["latency_ms_sum"]) + duration_ms

    def observe_auth(self, reason: str) -> None:
        with self._lock:
            self._auth[reason] = self._auth.get(reason, 0) + 1

    def snapshot(self, *, token_cache_size: int) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(
                generated_at=now_utc_iso(),
                totals=dict(self._totals),
                endpoints={key: dict(value) for key, value in self._endpoints.items()},
                auth=dict(self._auth),
                token_cache_size=token_cache_size,
            )


def create_app(
    *,
    settings: GatewaySettings | None = None,
    token_cache: TokenCache | None = None,
    validator: KeyValidator | None = None,
    session_refresher: SessionRefresher | None = None,
) -> FastAPI:
    resolved_settings = settings or GatewaySettings.from_env()
    cache = token_cache
    if cache is None:
        cache = TokenCache(
            resolved_settings.token_cache_ttl_seconds,
            sweep_interval_seconds=resolved_settings.token_cache_sweep_seconds,
        )
    if validator is None:
        validator = ExternalKeyValidator(
            resolved_settings.auth_service_url,
            timeout_seconds=resolved_settings.auth_timeout_seconds,
        )
    gate = AuthGate(cache, validator, protected_prefix=resolved_settings.protected_prefix)
    cors = CorsPolicy(resolved_settings.allowed_origins, path_prefix=resolved_settings.cors_prefix)
    refresh_session = session_refresher or passthrough_session
    metrics_store = MetricsStore()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.settings = resolved_settings
        app.state.token_cache = cache
        app.state.auth_gate = gate
        app.state.metrics = metrics_store
        sweeper = asyncio.create_task(
            sweep_forever(cache, resolved_settings.token_cache_sweep_seconds)
        )
        try:
            yield
        finally:
            sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweeper

    app = FastAPI(title="Gatekeeper Open API Gateway", version="0.1.0", lifespan=lifespan)

    @app.middleware("http")
    async def gateway_middleware(request: Request, call_next):
        path = request.url.path
        origin = request.headers.get("origin")
        is_api = cors.applies_to(path)

        if is_api and request.method == "OPTIONS":
            return cors.preflight(origin)

        if gate.protects(path):
            decision = await gate.authorize(request.headers.get("authorization"))
            metrics_store.observe_auth(decision.reason)
            if decision.allowed:
                response = await call_next(request)
            else:
                response = JSONResponse(status_code=401, content=decision.error_body())
        else:
            response = await refresh_session(request, call_next)

        if is_api:
            cors.apply(response, origin)
        return response

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as exc:
            duration_ms = (time.perf_counter() - started) * 1000
            metrics_store.observe(
                method=request.method,
                path=request.url.path,
                status_code=500,
                duration_ms=duration_ms,
            )
            LOGGER.exception(
                log_event(
                    "request_complete",
                    request_id=request_id,
                    method=request.method,
                    path=request.url.path,
                    status_code=500,
                    duration_ms=round(duration_ms, 3),
                    error=str(exc),
                )
            )
            response = JSONResponse(
                status_code=500,
                content={"detail": "Internal Server Error", "request_id": request_id},
                headers={"x-request-id": request_id},
            )
            if cors.applies_to(request.url.path):
                cors.apply(response, request.headers.get("origin"))
            return response

        duration_ms = (time.perf_counter() - started) * 1000
        metrics_store.observe(
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=duration_ms,
        )
        response.headers["x-request-id"] = request_id
        LOGGER.info(
            log_event(
                "request_complete",
                request_id=request_id,
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round(duration_ms, 3),
                source_ip=request.client.host if request.client else None,
            )
        )
        return response

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": "gatekeeper"}

    @app.get("/metrics", response_model=MetricsSnapshot)
    async def metrics() -> MetricsSnapshot:
        return metrics_store.snapshot(
            token_cache_size=len(cache),
        )

    @app.get("/api/v1/ping")
    async def ping() -> dict[str, str]:
        return {"status": "ok", "checked_at": now_utc_iso()}

    return app


app = create_app()
