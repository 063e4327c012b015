import json
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, Query, Request
from fastapi.openapi.utils import get_openapi
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.middleware.cors import CORSMiddleware

from .config import load_settings
from .dispatcher import parse_save_request
from .errors import MemoryPipelineError, StoreError, ValidationError
from .logs import get_logger, log_event
from .metrics import HTTP_REQUEST_DURATION_SECONDS, HTTP_REQUESTS_TOTAL
from .middleware.request_id import RequestIdMiddleware
from .models import DispatchStatus
from .services import Services, build_services

logger = get_logger("tutor_memory.api")

SETTINGS = load_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Tests may pre-wire services on app.state before startup
    services: Optional[Services] = getattr(app.state, "services", None)
    if services is None:
        services = build_services(SETTINGS)
    app.state.services = services  # type: ignore[attr-defined]
    await services.start()
    log_event(
        logger,
        logging.INFO,
        "memory_service_config",
        mode=services.dispatcher.mode.value,
        backend=services.backend.name if services.backend else None,
        provider=getattr(services.summarizer.client, "provider_name", "unknown"),
    )
    try:
        yield
    finally:
        await services.stop()
        app.state.services = None  # type: ignore[attr-defined]


app = FastAPI(
    title="Tutor Memory API",
    description="Conversation-memory pipeline: session summaries, dedup, queued processing, and retrieval.",
    version="0.1.0",
    lifespan=lifespan,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=list(SETTINGS.cors_allow_origins),
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-Id"],
    allow_credentials=False,
)
app.add_middleware(RequestIdMiddleware)


# HTTP metrics middleware
@app.middleware("http")
async def _http_metrics_middleware(request: Request, call_next):
    t0 = time.perf_counter()
    method = request.method
    path = request.url.path
    status_code = 500
    try:
        response = await call_next(request)
        status_code = getattr(response, "status_code", 500)
        return response
    finally:
        status_class = f"{status_code // 100}xx"
        HTTP_REQUESTS_TOTAL.labels(method=method, path=path, status_class=status_class).inc()
        HTTP_REQUEST_DURATION_SECONDS.labels(method=method, path=path).observe(time.perf_counter() - t0)


@app.exception_handler(MemoryPipelineError)
async def _pipeline_error_handler(request: Request, exc: MemoryPipelineError):
    body = {"error": exc.message}
    if exc.details:
        body["details"] = exc.details
    return JSONResponse(body, status_code=exc.status_code)


@app.exception_handler(StoreError)
async def _store_error_handler(request: Request, exc: StoreError):
    log_event(logger, logging.ERROR, "store_error", path=request.url.path, error=str(exc))
    return JSONResponse({"error": "Storage unavailable"}, status_code=500)


def _services(request: Request) -> Services:
    return request.app.state.services


def _caller_id(request: Request) -> Optional[str]:
    # Set by the upstream auth gateway
    val = (request.headers.get("x-user-id") or "").strip()
    return val or None


def _request_id(request: Request) -> Optional[str]:
    return getattr(request.state, "request_id", None)


def _not_authenticated() -> JSONResponse:
    return JSONResponse({"error": "Not authenticated"}, status_code=401)


@app.get("/health", tags=["meta"], description="Liveness endpoint for health checks.")
async def health():
    return {"status": "ok"}


@app.get("/health/queue", tags=["meta"], description="Memory job queue health and counts.")
async def health_queue(request: Request):
    services = _services(request)
    backend = services.backend
    max_waiting = services.settings.queue_max_waiting
    if backend is None:
        counts = {"queued": 0, "active": 0, "completed": 0, "failed": 0}
        status = "healthy"
    else:
        counts = await backend.counts()
        status = "healthy" if counts.get("queued", 0) < max_waiting else "degraded"
    body = {
        "service": "memory-queue",
        "status": status,
        "mode": services.dispatcher.mode.value,
        "backend": backend.name if backend else None,
        "queue": counts,
        "thresholds": {"maxWaiting": max_waiting},
    }
    return JSONResponse(body, status_code=200 if status == "healthy" else 503)


@app.get("/metrics", tags=["meta"], include_in_schema=False)
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.post(
    "/api/v1/student/memory",
    tags=["memory"],
    description="Save a finished chat session as a memory (deduplicated; queued or processed inline).",
)
async def save_memory(request: Request):
    caller = _caller_id(request)
    if not caller:
        return _not_authenticated()
    try:
        body: Any = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValidationError("request body must be valid JSON")
    services = _services(request)
    save_req = parse_save_request(body)
    req_id = _request_id(request)
    log_event(
        logger,
        logging.INFO,
        "memory_save_request",
        roomId=save_req.room_id,
        chatbotId=save_req.chatbot_id,
        messagesCount=save_req.message_count,
        requestId=req_id,
    )
    outcome = await services.dispatcher.dispatch(save_req, caller_id=caller, request_id=req_id)
    if outcome.status == DispatchStatus.DUPLICATE:
        return {
            "success": True,
            "duplicate": True,
            "memory": outcome.record.to_dict() if outcome.record else None,
        }
    if outcome.status == DispatchStatus.QUEUED:
        return {
            "success": True,
            "jobId": outcome.job_id,
            "status": "queued",
            "message": "Memory processing has been queued",
        }
    return {
        "success": True,
        "status": "processed",
        "direct": True,
        "memory": outcome.record.to_dict() if outcome.record else None,
        "message": "Memory processed and saved successfully",
    }


@app.get(
    "/api/v1/student/memory",
    tags=["memory"],
    description="Recent memories (newest first) plus the learning profile for a student/chatbot pair.",
)
async def get_memories(
    request: Request,
    studentId: Optional[str] = Query(None, description="Student ID"),
    chatbotId: Optional[str] = Query(None, description="Chatbot ID"),
    limit: Optional[str] = Query(None, description="Maximum number of memories (default 5)"),
):
    if not _caller_id(request):
        return _not_authenticated()
    if not studentId or not chatbotId:
        return JSONResponse({"error": "studentId and chatbotId are required"}, status_code=400)
    view = await _services(request).retriever.get_memories(studentId, chatbotId, limit)
    return view.to_dict()


async def _job_status_response(request: Request, job_id: str):
    view = await _services(request).job_status.get_status(job_id)
    if view is None:
        return JSONResponse({"error": "Job not found"}, status_code=404)
    return view.to_dict()


@app.get(
    "/api/v1/student/memory/jobs/{job_id}",
    tags=["memory"],
    description="Normalized status of a queued memory job.",
)
async def get_memory_job(request: Request, job_id: str):
    return await _job_status_response(request, job_id)


@app.patch(
    "/api/v1/student/memory",
    tags=["memory"],
    description="Job status polling by query parameter (legacy clients).",
)
async def patch_memory_job(request: Request, jobId: Optional[str] = Query(None, description="Job ID")):
    if not jobId:
        return JSONResponse({"error": "jobId is required"}, status_code=400)
    return await _job_status_response(request, jobId)


def custom_openapi():
    if app.openapi_schema:
        return app.openapi_schema
    schema = get_openapi(
        title=app.title,
        version=app.version,
        description=app.description,
        routes=app.routes,
    )
    schema["tags"] = [
        {"name": "memory", "description": "Session memory save, retrieval, and job status."},
        {"name": "meta", "description": "Health and metrics."},
    ]
    app.openapi_schema = schema
    return app.openapi_schema


app.openapi = custom_openapi  # type: ignore[assignment]
