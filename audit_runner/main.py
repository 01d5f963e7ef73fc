from __future__ import annotations

import logging
import os
import uuid

from fastapi import Body, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware

from audit_runner.errors import ApiError
from audit_runner.job_controller import AuditJobController, create_controller_from_env
from audit_runner.llm_provider import get_provider_info
from audit_runner.schemas import AuditActionRequest, error_envelope, success_envelope

logger = logging.getLogger(__name__)


def _trace_id_from_request(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def _error_response(
    request: Request,
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    status_code: int,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_envelope(
            code=code,
            message=message,
            error_class=error_class,
            retryable=retryable,
            trace_id=_trace_id_from_request(request),
        ),
    )


def create_app(controller: AuditJobController | None = None) -> FastAPI:
    app = FastAPI(title="Forensic Audit Runner API", version="0.1.0")
    audit = controller or create_controller_from_env()
    app.state.controller = audit
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
        response = await call_next(request)
        response.headers["x-trace-id"] = _trace_id_from_request(request)
        return response

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        if exc.http_status >= 500:
            logger.error("request failed with %s: %s", exc.code, exc.message)
        return _error_response(
            request,
            code=exc.code,
            message=exc.message,
            error_class=exc.error_class,
            retryable=exc.retryable,
            status_code=exc.http_status,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return _error_response(
            request,
            code="REQ_VALIDATION_FAILED",
            message="invalid payload",
            error_class="validation",
            retryable=False,
            status_code=400,
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return _error_response(
                request,
                code="REQ_NOT_FOUND",
                message="resource not found",
                error_class="validation",
                retryable=False,
                status_code=404,
            )
        return _error_response(
            request,
            code="REQ_HTTP_ERROR",
            message=str(exc.detail),
            error_class="validation",
            retryable=False,
            status_code=exc.status_code,
        )

    @app.get("/healthz")
    def healthz(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, _trace_id_from_request(request))

    @app.get("/api/v1/health")
    def health_api(request: Request) -> dict[str, object]:
        return success_envelope(
            {"status": "ok", "llm": get_provider_info()},
            _trace_id_from_request(request),
        )

    @app.post("/api/v1/audit")
    def audit_action(
        request: Request,
        payload: AuditActionRequest = Body(...),
        x_user_id: str | None = Header(default=None, alias="x-user-id"),
    ):
        trace_id = _trace_id_from_request(request)
        if payload.action == "start":
            started = audit.start(payload.collectionId, created_by=payload.createdBy or x_user_id)
            return success_envelope(started, trace_id, message="audit job created")
        if payload.action == "run":
            job = audit.run(payload.jobId, max_files=payload.maxFiles)
            return success_envelope({"job": job}, trace_id)
        if payload.action == "status":
            return success_envelope({"job": audit.status(payload.jobId)}, trace_id)
        job = audit.cancel(payload.jobId)
        return success_envelope({"job": job}, trace_id, message="audit job cancelled")

    @app.get("/api/v1/audit-jobs/{job_id}")
    def get_audit_job(job_id: str, request: Request):
        return success_envelope({"job": audit.status(job_id)}, _trace_id_from_request(request))

    @app.get("/api/v1/audit-jobs/{job_id}/files")
    def list_audit_job_files(job_id: str, request: Request):
        files = audit.list_files(job_id)
        return success_envelope({"items": files, "total": len(files)}, _trace_id_from_request(request))

    return app


app = create_app()
