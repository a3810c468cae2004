from __future__ import annotations

import asyncio
import logging
import os
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware

from advisor.errors import ApiError, ValidationError
from advisor.llm_provider import get_provider_info
from advisor.routes import advice
from advisor.routes._deps import error_response, request_id_from_request, trace_id_from_request
from advisor.runtime import AdvisorRuntime, build_runtime
from advisor.schemas import success_envelope
from advisor.settings import _env_bool
from advisor.worker_runtime import describe_worker

logger = logging.getLogger(__name__)


def _inprocess_worker_enabled() -> bool:
    return _env_bool(os.environ, "ADVISOR_INPROCESS_WORKER", default=True)


def create_app(runtime: AdvisorRuntime | None = None, *, inprocess_worker: bool | None = None) -> FastAPI:
    rt = runtime or build_runtime()
    run_worker = _inprocess_worker_enabled() if inprocess_worker is None else inprocess_worker

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        stop = asyncio.Event()
        task: asyncio.Task | None = None
        if run_worker:
            task = asyncio.create_task(rt.worker.run_forever(stop=stop))
        try:
            yield
        finally:
            stop.set()
            if task is not None:
                await task

    app = FastAPI(title="District Advisor API", version="0.1.0", lifespan=lifespan)
    app.state.runtime = rt

    cors_origins = os.environ.get("CORS_ALLOW_ORIGINS", "http://127.0.0.1:5173,http://localhost:5173")
    allow_origins = [x.strip() for x in cors_origins.split(",") if x.strip()]
    if allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allow_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.middleware("http")
    async def add_trace_id(request: Request, call_next):
        incoming_trace_id = request.headers.get("x-trace-id", "").strip()
        request.state.trace_id = incoming_trace_id or uuid.uuid4().hex
        request.state.request_id = request.headers.get("x-request-id", f"req_{uuid.uuid4().hex[:12]}")
        response = await call_next(request)
        response.headers["x-trace-id"] = trace_id_from_request(request)
        response.headers["x-request-id"] = request_id_from_request(request)
        return response

    def render_api_error(request: Request, exc: ApiError):
        return error_response(
            request,
            code=exc.code,
            message=exc.message,
            error_class=exc.error_class,
            retryable=exc.retryable,
            status_code=exc.http_status,
        )

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        return render_api_error(request, exc)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        logger.info("rejected payload on %s: %d errors", request.url.path, len(errors))
        fields = sorted({".".join(str(p) for p in e.get("loc", ())[1:]) for e in errors} - {""})
        message = f"invalid payload: {', '.join(fields)}" if fields else "invalid payload"
        return render_api_error(request, ValidationError(message))

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return error_response(
                request,
                code="REQ_NOT_FOUND",
                message="resource not found",
                error_class="validation",
                retryable=False,
                status_code=404,
            )
        return error_response(
            request,
            code="REQ_HTTP_ERROR",
            message=str(exc.detail),
            error_class="validation",
            retryable=False,
            status_code=exc.status_code,
        )

    @app.get("/healthz")
    def healthz(request: Request) -> dict[str, object]:
        data = {
            "status": "ok",
            "worker": describe_worker(rt.worker) if run_worker else None,
            "llm": get_provider_info(),
        }
        return success_envelope(data, trace_id_from_request(request))

    app.include_router(advice.router)
    return app


app = create_app()
