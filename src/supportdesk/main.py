"""FastAPI application entry point for the Support Desk chat service.

This module provides:
- FastAPI app initialization
- Chat, session, knowledge base, health and metrics endpoints
- Error handling translating domain errors into ErrorResponse payloads
- Request/response logging with request ids
- CORS configuration for browser clients (pre-flight requests included)
"""

import time
import uuid
from datetime import datetime
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Request, Depends
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from loguru import logger
from starlette.exceptions import HTTPException as StarletteHTTPException

from supportdesk import __version__
from supportdesk.faqs import KnowledgeBaseError, get_faq_repository
from supportdesk.models import (
    ChatMessage, ChatRequest, ChatResponse, ChatSession, ErrorResponse, FAQEntry,
    HealthResponse, SessionSummary, StartSessionRequest, SystemMetrics
)
from supportdesk.service import ChatService, ChatServiceError, get_chat_service
from supportdesk.store import get_conversation_store
from supportdesk.utils import (
    ConfigurationError, get_current_timestamp, initialize_app, sanitize_for_logging
)

# Initialize logging and configuration
config = initialize_app()

# Global application start time for metrics
app_start_time = time.time()

app = FastAPI(
    title="Support Desk Chat Service",
    description="Customer support chat with FAQ matching and human escalation",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json"
)

allowed_origins = [origin.strip() for origin in config["CORS_ALLOWED_ORIGINS"].split(",") if origin.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins or ["*"],
    allow_credentials=False,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)


def error_payload(request: Request, error: str, message: str, details: Optional[dict] = None) -> dict:
    return ErrorResponse(
        error=error,
        message=message,
        details=details,
        request_id=getattr(request.state, 'request_id', None)
    ).model_dump(mode="json")


# Request/Response logging and timing middleware
@app.middleware("http")
async def logging_and_timing_middleware(request: Request, call_next):
    """Log requests and responses with timing information."""
    start_time = time.time()
    request_id = str(uuid.uuid4())[:8]

    logger.info(
        "Incoming request",
        method=request.method,
        path=request.url.path,
        request_id=request_id,
        client_ip=request.client.host if request.client else "unknown"
    )

    request.state.request_id = request_id

    try:
        response = await call_next(request)
    except Exception as e:
        logger.error(
            "Request failed",
            method=request.method,
            path=request.url.path,
            error=str(e),
            error_type=type(e).__name__,
            processing_time_ms=(time.time() - start_time) * 1000,
            request_id=request_id
        )
        # Re-raise the exception to be handled by error handlers
        raise

    logger.info(
        "Request completed",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        processing_time_ms=(time.time() - start_time) * 1000,
        request_id=request_id
    )
    response.headers["X-Request-ID"] = request_id
    return response


REQUIRED_FIELDS = {"userId", "user_id", "message"}


def is_missing_field(error: dict) -> bool:
    # An empty or null userId or message counts as missing
    if error.get("type") == "missing":
        return True
    loc = error.get("loc", ())
    return bool(loc) and loc[-1] in REQUIRED_FIELDS and error.get("input") in ("", None)


# Global exception handlers
@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Handle malformed or incomplete request bodies."""
    errors = exc.errors()
    missing = [
        ".".join(str(part) for part in error.get("loc", ())[1:]) or "body"
        for error in errors if is_missing_field(error)
    ]
    message = "Missing required fields" if missing else "Invalid request"

    logger.warning("Request validation failed", errors=len(errors), missing=missing,
                   request_id=getattr(request.state, 'request_id', None))
    return JSONResponse(
        status_code=400,
        content=error_payload(
            request, "VALIDATION_ERROR", message,
            {"missing": missing} if missing else {"errors": [e.get("msg") for e in errors]}
        )
    )


@app.exception_handler(ChatServiceError)
async def chat_service_error_handler(request: Request, exc: ChatServiceError):
    """Handle chat processing errors with their mapped status."""
    return JSONResponse(
        status_code=exc.status_code,
        content=error_payload(request, exc.error_code, exc.message)
    )


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    """Handle configuration errors."""
    return JSONResponse(
        status_code=500,
        content=error_payload(request, "CONFIGURATION_ERROR", "System configuration error")
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Handle HTTP exceptions with consistent error format."""
    return JSONResponse(
        status_code=exc.status_code,
        content=error_payload(request, "HTTP_ERROR", str(exc.detail), {"status_code": exc.status_code})
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected errors."""
    logger.error(
        "Unexpected error occurred",
        error=str(exc),
        error_type=type(exc).__name__,
        request_id=getattr(request.state, 'request_id', None)
    )
    return JSONResponse(
        status_code=500,
        content=error_payload(request, "INTERNAL_SERVER_ERROR", "An unexpected error occurred. Please try again later.")
    )


@app.on_event("startup")
async def startup_event():
    """Load the knowledge base so configuration problems surface at boot."""
    try:
        faqs = await get_faq_repository().get_faqs()
    except KnowledgeBaseError as e:
        logger.error("Startup validation failed", error=str(e))
        raise ConfigurationError(f"Knowledge base not available: {e}") from e

    logger.info("Startup validation completed successfully", version=__version__, faq_count=len(faqs))


@app.on_event("shutdown")
async def shutdown_event():
    await get_conversation_store().close()
    logger.info("Shutdown complete")


@app.get("/")
async def root():
    """Root endpoint with basic service information."""
    return {
        "service": "Support Desk Chat Service",
        "version": __version__,
        "status": "running",
        "timestamp": get_current_timestamp(),
        "endpoints": {
            "chat": "/chat",
            "sessions": "/sessions",
            "session": "/sessions/{session_id}",
            "messages": "/sessions/{session_id}/messages",
            "faqs": "/faqs",
            "health": "/health",
            "metrics": "/metrics",
            "docs": "/docs"
        }
    }


@app.post("/chat", response_model=ChatResponse)
async def chat_endpoint(
    request: ChatRequest,
    http_request: Request,
    service: ChatService = Depends(get_chat_service)
) -> ChatResponse:
    """
    Main chat endpoint.

    Matches the message against the FAQ knowledge base, decides between an
    automatic answer and escalation, and persists the turn.
    """
    request_id = getattr(http_request.state, 'request_id', None)

    logger.info(
        "Processing chat request",
        session_id=request.session_id,
        user_id=request.user_id,
        message_preview=sanitize_for_logging(request.message, 100),
        request_id=request_id
    )

    return await service.handle_message(request, request_id=request_id)


@app.post("/sessions", response_model=ChatSession, status_code=201)
async def start_session(
    request: StartSessionRequest,
    service: ChatService = Depends(get_chat_service)
) -> ChatSession:
    """Start over: resolve the user's active session and open a new one."""
    return await service.start_new_session(request.user_id)


@app.get("/sessions/{session_id}", response_model=ChatSession)
async def get_session(session_id: str, service: ChatService = Depends(get_chat_service)) -> ChatSession:
    return await service.get_session(session_id)


@app.get("/sessions/{session_id}/messages", response_model=List[ChatMessage])
async def get_session_messages(
    session_id: str,
    since: Optional[datetime] = None,
    service: ChatService = Depends(get_chat_service)
) -> List[ChatMessage]:
    """
    Messages of a session in chronological order.

    Clients poll with `since` set to the timestamp of the last message they
    hold to receive only newer messages.
    """
    return await service.get_messages(session_id, since)


@app.delete("/sessions/{session_id}", status_code=204)
async def delete_session(session_id: str, service: ChatService = Depends(get_chat_service)) -> Response:
    """Delete a session and its messages."""
    await service.delete_session(session_id)
    return Response(status_code=204)


@app.post("/sessions/{session_id}/resolve", response_model=ChatSession)
async def resolve_session(session_id: str, service: ChatService = Depends(get_chat_service)) -> ChatSession:
    return await service.resolve_session(session_id)


@app.get("/users/{user_id}/session", response_model=ChatSession)
async def get_active_session(user_id: str, service: ChatService = Depends(get_chat_service)) -> ChatSession:
    """Most recent active session of a user."""
    session = await service.get_active_session(user_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"No active session for user '{user_id}'")
    return session


@app.get("/users/{user_id}/sessions", response_model=List[SessionSummary])
async def list_user_sessions(
    user_id: str,
    limit: int = 50,
    offset: int = 0,
    service: ChatService = Depends(get_chat_service)
) -> List[SessionSummary]:
    return await service.store.list_sessions(user_id=user_id, limit=min(max(limit, 1), 200), offset=max(offset, 0))


@app.get("/faqs", response_model=List[FAQEntry])
async def list_faqs(
    category: Optional[str] = None,
    service: ChatService = Depends(get_chat_service)
) -> List[FAQEntry]:
    try:
        return await service.faq_repository.get_faqs(category=category)
    except KnowledgeBaseError as e:
        logger.error("FAQ listing failed", error=str(e))
        raise HTTPException(status_code=500, detail="Failed to load the knowledge base")


@app.get("/health", response_model=HealthResponse)
async def health_check(service: ChatService = Depends(get_chat_service)) -> HealthResponse:
    """Report the health of the knowledge base and conversation store."""
    services = {}
    checks = {}

    try:
        faqs = await service.faq_repository.get_faqs()
        services["knowledge_base"] = "healthy" if faqs else "degraded"
        checks["knowledge_base"] = {"status": services["knowledge_base"], **service.faq_repository.get_cache_stats()}
    except KnowledgeBaseError as e:
        services["knowledge_base"] = "unhealthy"
        checks["knowledge_base"] = {"status": "unhealthy", "error": str(e)}

    store_health = await service.store.get_health_status()
    services["conversation_store"] = store_health.get("status", "healthy")
    checks["conversation_store"] = store_health

    if "unhealthy" in services.values():
        status = "unhealthy"
    elif "degraded" in services.values():
        status = "degraded"
    else:
        status = "healthy"

    return HealthResponse(
        status=status,
        timestamp=get_current_timestamp(),
        version=__version__,
        services=services,
        checks=checks
    )


@app.get("/metrics", response_model=SystemMetrics)
async def get_system_metrics(service: ChatService = Depends(get_chat_service)) -> SystemMetrics:
    metrics = await service.store.get_metrics()
    counts = await service.store.get_session_counts()

    return SystemMetrics(
        timestamp=get_current_timestamp(),
        uptime_seconds=time.time() - app_start_time,
        total_sessions=metrics.total_sessions,
        active_sessions=counts.get("active", 0),
        escalated_sessions=counts.get("escalated", 0),
        resolved_sessions=counts.get("resolved", 0),
        total_messages=metrics.total_messages,
        total_turns=metrics.total_turns,
        escalation_rate=metrics.escalation_rate,
        avg_confidence=metrics.avg_confidence,
        avg_response_time_ms=metrics.avg_response_time_ms,
        rule_distribution=dict(metrics.rule_counts),
        escalation_reasons=dict(metrics.escalation_reasons),
        memory_usage_mb=metrics.memory_usage_mb
    )


@app.post("/admin/cleanup")
async def trigger_cleanup(http_request: Request, service: ChatService = Depends(get_chat_service)):
    """Remove sessions idle for longer than the configured TTL."""
    request_id = getattr(http_request.state, 'request_id', None)
    removed = await service.store.cleanup_expired_sessions()

    logger.info("Manual cleanup completed", request_id=request_id, expired_sessions=removed)
    return {
        "status": "cleanup_completed",
        "timestamp": get_current_timestamp(),
        "results": {"expired_sessions": removed}
    }


@app.post("/admin/faqs/reload")
async def reload_faqs(http_request: Request, service: ChatService = Depends(get_chat_service)):
    """Reload the FAQ knowledge base from disk."""
    request_id = getattr(http_request.state, 'request_id', None)
    try:
        count = await service.faq_repository.reload()
    except KnowledgeBaseError as e:
        logger.error("FAQ reload failed", error=str(e), request_id=request_id)
        raise HTTPException(status_code=500, detail="Failed to reload the knowledge base")

    return {"status": "reloaded", "timestamp": get_current_timestamp(), "faq_count": count}


if __name__ == "__main__":
    import os

    import uvicorn

    uvicorn.run(
        "supportdesk.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        log_level=config["LOG_LEVEL"].lower()
    )
