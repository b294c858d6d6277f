"""FastAPI application factory.

Middleware, outermost first:

    request id → CORS → shutdown gate → API key → body size → rate limit → route

Sandbox errors become ``{"error", "kind", ...}`` JSON with the status their
class declares. Anything unexpected is logged with its traceback and reported
as a bare 500.
"""

from __future__ import annotations

import asyncio
import hmac
import math
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from latex_service.api.routes import git_router, router
from latex_service.config import LatexServiceSettings, settings
from latex_service.models.errors import (
    PayloadTooLarge,
    ResourceExceeded,
    SandboxError,
    ServiceUnavailable,
    Unauthorized,
    ValidationError,
)
from latex_service.orchestrator import Orchestrator
from latex_service.sandbox.rate_limit import RateLimiter
from latex_service.sandbox.workspace import WorkspaceRegistry
from latex_service.utils.clock import epoch_seconds

logger = structlog.get_logger().bind(component="api")

EXEMPT_PATHS = frozenset({"/health"})
EXPOSED_HEADERS = [
    "X-Request-Id",
    "X-Dependencies",
    "X-RateLimit-Limit",
    "X-RateLimit-Remaining",
    "X-RateLimit-Reset",
    "Retry-After",
]


class DrainState:
    """In-flight request counter and the shutdown flag."""

    def __init__(self) -> None:
        self.draining = False
        self.active = 0

    async def wait_idle(self, timeout: float, poll: float = 0.1) -> bool:
        """Wait until no request is in flight; ``False`` if ``timeout`` ran out first."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while self.active > 0:
            if loop.time() >= deadline:
                logger.warning("drain_timeout", active=self.active, timeout=timeout)
                return False
            await asyncio.sleep(poll)
        return True


def error_response(exc: SandboxError) -> JSONResponse:
    headers = {}
    if isinstance(exc, ResourceExceeded):
        headers["Retry-After"] = str(exc.retry_after_seconds)
    return JSONResponse(exc.to_payload(), status_code=exc.status_code, headers=headers)


def _validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request body"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    return f"{location}: {first.get('msg')}" if location else str(first.get("msg"))


def create_app(
    cfg: LatexServiceSettings | None = None,
    orchestrator: Orchestrator | None = None,
    rate_limiter: RateLimiter | None = None,
    registry: WorkspaceRegistry | None = None,
) -> FastAPI:
    cfg = cfg or settings
    registry = registry or (orchestrator.registry if orchestrator else WorkspaceRegistry(cfg.work_root))
    rate_limiter = rate_limiter or RateLimiter(
        cfg.rate_limit_max_requests, cfg.rate_limit_window, cfg.rate_limit_max_entries
    )
    orchestrator = orchestrator or Orchestrator(registry, cfg, rate_limiter)
    drain = DrainState()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        purged = await registry.purge_orphans()
        logger.info("service_started", work_root=str(registry.root), orphans=purged["cleaned"])
        yield
        drain.draining = True
        logger.info("shutdown_started", active=drain.active)
        await drain.wait_idle(cfg.shutdown_drain_timeout)
        await registry.sweep()
        logger.info("shutdown_complete")

    app = FastAPI(title="latex-service", lifespan=lifespan)
    app.state.orchestrator = orchestrator
    app.state.rate_limiter = rate_limiter
    app.state.registry = registry
    app.state.drain = drain
    app.include_router(router)
    app.include_router(git_router)

    # ── Exception handlers ───────────────────────────────────────────────────

    @app.exception_handler(SandboxError)
    async def sandbox_error_handler(request: Request, exc: SandboxError) -> JSONResponse:
        log = logger.warning if exc.status_code < 500 else logger.error
        log("request_failed", kind=exc.kind, status=exc.status_code, error=exc.message)
        return error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return error_response(ValidationError(_validation_message(exc)))

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("unhandled_error", error_type=type(exc).__name__)
        return JSONResponse({"error": "Internal server error", "kind": "internal"}, status_code=500)

    # ── Middleware (last registered runs first) ──────────────────────────────

    @app.middleware("http")
    async def rate_limit(request: Request, call_next):
        if request.method != "POST":
            return await call_next(request)

        key = getattr(request.state, "api_key", None) or (
            request.client.host if request.client else "unknown"
        )
        decision = rate_limiter.admit(key)
        headers = {
            "X-RateLimit-Limit": str(decision.limit),
            "X-RateLimit-Remaining": str(decision.remaining),
            "X-RateLimit-Reset": str(math.ceil(epoch_seconds() + decision.reset_after)),
        }
        if not decision.allowed:
            response = error_response(
                ResourceExceeded("Too many requests. Please try again later.", retry_after=decision.retry_after)
            )
        else:
            response = await call_next(request)
        response.headers.update(headers)
        return response

    @app.middleware("http")
    async def limit_body(request: Request, call_next):
        declared = request.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > cfg.max_body_bytes:
            return error_response(
                PayloadTooLarge("Request body too large", limit=cfg.max_body_bytes, observed=int(declared))
            )
        return await call_next(request)

    @app.middleware("http")
    async def api_key_auth(request: Request, call_next):
        expected = cfg.latex_service_api_key
        if not expected or request.url.path in EXEMPT_PATHS or request.method == "OPTIONS":
            return await call_next(request)

        provided = request.headers.get("x-api-key")
        if not provided and request.query_params.get("api_key"):
            logger.warning("api_key_query_param_deprecated")
            provided = request.query_params["api_key"]
        if not provided or not hmac.compare_digest(provided.encode(), expected.encode()):
            return error_response(Unauthorized("Unauthorized: Invalid or missing API key"))

        request.state.api_key = provided
        return await call_next(request)

    @app.middleware("http")
    async def shutdown_gate(request: Request, call_next):
        if drain.draining and request.url.path not in EXEMPT_PATHS:
            return error_response(ServiceUnavailable("Server is shutting down"))
        drain.active += 1
        try:
            return await call_next(request)
        finally:
            drain.active -= 1

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-API-Key", "X-Request-Id"],
        expose_headers=EXPOSED_HEADERS,
    )

    @app.middleware("http")
    async def request_id(request: Request, call_next):
        rid = request.headers.get("x-request-id") or str(uuid.uuid4())
        with structlog.contextvars.bound_contextvars(request_id=rid, endpoint=request.url.path):
            response = await call_next(request)
        response.headers["X-Request-Id"] = rid
        return response

    return app
