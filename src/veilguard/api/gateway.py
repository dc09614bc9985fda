"""API Gateway - FastAPI application exposing the trust layer."""

import logging, os, threading
from contextlib import asynccontextmanager
from typing import AsyncGenerator, List, Optional
from uuid import uuid4

from fastapi import FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from veilguard.api.schemas import (
    AdminActionResponse,
    ClearSuspiciousRequest,
    ErrorResponse,
    InboundRequest,
    RateLimitRequest,
    RateLimitResponse,
    RefreshResponse,
    RequestOutcomeResponse,
    ResolveFlagRequest,
    RevokeRequest,
    ScoreResponse,
)
from veilguard.common.exceptions import (
    NotFoundError,
    PolicyDeniedError,
    RevokedError,
    TransientError,
    ValidationError,
    VeilguardException,
)
from veilguard.common.logging import LOG_FORMAT
from veilguard.core.types import ReviewStatus
from veilguard.data.schemas import ReviewFlag, SessionStatus
from veilguard.service import TrustService

logging.basicConfig(
    level=os.environ.get("VEILGUARD_LOG_LEVEL", "INFO").upper(),
    format=LOG_FORMAT)
logger = logging.getLogger("veilguard_api")


class ServiceManager:
    """Thread-safe service singleton manager."""
    
    _instance: Optional[TrustService] = None
    _lock = threading.Lock()
    _initialized = False
    
    @classmethod
    def get_service(cls) -> TrustService:
        """Get or create the trust service instance (thread-safe)."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = TrustService.from_config()
                    cls._initialized = True
                    logger.info("TrustService initialized")
        return cls._instance
    
    @classmethod
    def set_service(cls, service: TrustService) -> None:
        """Install a pre-built service (tests, embedding applications)."""
        with cls._lock:
            cls._instance = service
            cls._initialized = True
    
    @classmethod
    def shutdown(cls) -> None:
        """Release the service instance."""
        with cls._lock:
            if cls._instance is not None:
                cls._instance = None
                cls._initialized = False
                logger.info("TrustService shutdown complete")


def get_service() -> TrustService:
    """Get the trust service instance."""
    return ServiceManager.get_service()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    logger.info("Veilguard API Gateway starting up...")
    get_service()  # Pre-initialize service
    logger.info("Veilguard API Gateway ready")
    
    yield
    
    logger.info("Veilguard API Gateway shutting down...")
    ServiceManager.shutdown()
    
    from veilguard.service.trust_service import _shutdown_shared_executor
    _shutdown_shared_executor()
    
    logger.info("Veilguard API Gateway shutdown complete")


# Create FastAPI application
environment = os.environ.get("VEILGUARD_ENVIRONMENT", "development")
enable_docs_default = "false" if environment == "production" else "true"
enable_docs = os.environ.get("VEILGUARD_ENABLE_DOCS", enable_docs_default).lower() == "true"

app = FastAPI(
    title="Veilguard Trust Gateway",
    description="Device-token trust layer: sessions, anomaly scores and action limits.",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs" if enable_docs else None,
    redoc_url="/redoc" if enable_docs else None,
)


# =============================================================================
# EXCEPTION HANDLERS
# =============================================================================

# (exception class, HTTP status, error type), most specific first
ERROR_STATUS = [
    (ValidationError, 400, "validation_error"),
    (NotFoundError, 404, "not_found"),
    (RevokedError, 403, "device_revoked"),
    (PolicyDeniedError, 429, "policy_denied"),
    (TransientError, 503, "service_unavailable"),
]


@app.exception_handler(VeilguardException)
async def veilguard_error_handler(request: Request, exc: VeilguardException) -> JSONResponse:
    """Map the trust layer's error taxonomy to HTTP responses."""
    request_id = getattr(request.state, "request_id", None)
    status_code, error = 500, "internal_error"
    for exc_type, status, name in ERROR_STATUS:
        if isinstance(exc, exc_type):
            status_code, error = status, name
            break
    
    headers = {}
    code = None
    if isinstance(exc, PolicyDeniedError):
        code = exc.policy_code
        retry_after = exc.details.get("retry_after_seconds")
        if retry_after is not None:
            headers["Retry-After"] = str(max(int(retry_after + 0.999), 1))
    
    if status_code >= 500:
        logger.error(
            f"{error}: {exc.message}",
            extra={"request_id": request_id, "error_code": exc.code},
        )
        message = exc.message if status_code == 503 else "An error occurred while processing the request"
    else:
        logger.info(
            f"{error}: {exc.message}",
            extra={"request_id": request_id, "error_code": exc.code},
        )
        message = exc.message
    
    return JSONResponse(
        status_code=status_code,
        headers=headers,
        content=ErrorResponse(
            error=error,
            message=message,
            code=code,
            request_id=request_id,
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected errors.
    
    Logs full exception for debugging but returns sanitized message to client.
    """
    request_id = getattr(request.state, "request_id", None)
    logger.exception(
        "Unexpected error",
        extra={"request_id": request_id, "error_type": type(exc).__name__}
    )
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error="internal_error",
            message="An unexpected error occurred",
            request_id=request_id,
        ).model_dump(),
    )


# =============================================================================
# MIDDLEWARE
# =============================================================================

@app.middleware("http")
async def add_request_id(request: Request, call_next):
    """Add request ID to each request for tracing."""
    request_id = f"req_{uuid4().hex[:12]}"
    request.state.request_id = request_id
    
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


def _client_ip(request: Request, forwarded_for: Optional[str], body: Optional[InboundRequest]) -> Optional[str]:
    if body is not None and body.ip_address:
        return body.ip_address
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    return request.client.host if request.client else None


# =============================================================================
# ENDPOINTS
# =============================================================================

@app.post(
    "/v1/requests",
    response_model=RequestOutcomeResponse,
    responses={
        400: {"description": "Malformed device token", "model": ErrorResponse},
        403: {"description": "Device revoked", "model": ErrorResponse},
        503: {"description": "Trust checks unavailable", "model": ErrorResponse},
    },
    summary="Run an inbound request through the trust layer",
)
def handle_request(
    request: Request,
    body: Optional[InboundRequest] = None,
    x_device_token: Optional[str] = Header(default=None, alias="X-Device-Token"),
    x_forwarded_for: Optional[str] = Header(default=None, alias="X-Forwarded-For"),
    user_agent: Optional[str] = Header(default=None, alias="User-Agent"),
) -> RequestOutcomeResponse:
    """Resolve the device, validate or refresh its session and score it when due."""
    service = get_service()
    outcome = service.handle_request(
        x_device_token or "",
        ip_address=_client_ip(request, x_forwarded_for, body),
        user_agent=user_agent,
        fingerprint=body.fingerprint if body else None,
    )
    return RequestOutcomeResponse(
        device_token=outcome.device_token,
        persona_ids=outcome.persona_ids,
        session_valid=outcome.session_valid,
        session_state=outcome.session_state,
        expires_at=outcome.expires_at,
        refreshed=outcome.refreshed,
        is_suspicious=outcome.is_suspicious,
        risk_level=outcome.anomaly_score.risk_level if outcome.anomaly_score else None,
    )


@app.get("/v1/sessions/{device_token}", response_model=SessionStatus)
def get_session(device_token: str) -> SessionStatus:
    """Session status. An unknown device reports an invalid session."""
    service = get_service()
    service.registry.validate_token_format(device_token)
    return service.session_status(device_token)


@app.post("/v1/sessions/{device_token}/refresh", response_model=RefreshResponse)
def refresh_session(device_token: str) -> RefreshResponse:
    service = get_service()
    service.registry.validate_token_format(device_token)
    return RefreshResponse(device_token=device_token, expires_at=service.refresh_session(device_token))


@app.get("/v1/devices/{device_token}/score", response_model=ScoreResponse)
def score_device(device_token: str) -> ScoreResponse:
    """Score a device now and record the result."""
    service = get_service()
    service.registry.validate_token_format(device_token)
    result = service.score(device_token, fail_open=False)
    return ScoreResponse(
        device_token=device_token,
        score=result.score,
        risk_level=result.risk_level,
        reasons=result.detected_anomalies,
        created_at=result.created_at,
    )


@app.post("/v1/rate-limits/check", response_model=RateLimitResponse)
def check_rate_limit(body: RateLimitRequest) -> RateLimitResponse:
    """Decide whether an action is allowed. Does not record it."""
    decision = get_service().check_rate_limit(
        body.actor_id, body.target_id, body.action_type, device_token=body.device_token
    )
    return RateLimitResponse(**decision.model_dump())


@app.post(
    "/v1/rate-limits/record",
    response_model=RateLimitResponse,
    responses={429: {"description": "Action denied by policy", "model": ErrorResponse}},
)
def record_action(body: RateLimitRequest) -> RateLimitResponse:
    """Atomically check and record an action; denial is a 429."""
    decision = get_service().check_and_record(
        body.actor_id,
        body.target_id,
        body.action_type,
        device_token=body.device_token,
        raise_on_deny=True,
    )
    return RateLimitResponse(**decision.model_dump())


@app.post("/v1/admin/devices/{device_token}/revoke", response_model=AdminActionResponse)
def revoke_device(device_token: str, body: RevokeRequest) -> AdminActionResponse:
    service = get_service()
    service.registry.validate_token_format(device_token)
    changed = service.revoke_device(device_token, body.reason, body.actor_id)
    return AdminActionResponse(device_token=device_token, changed=changed)


@app.post("/v1/admin/devices/{device_token}/clear-suspicious", response_model=AdminActionResponse)
def clear_suspicious(
    device_token: str, body: Optional[ClearSuspiciousRequest] = None
) -> AdminActionResponse:
    service = get_service()
    service.registry.validate_token_format(device_token)
    changed = service.clear_suspicious(device_token, body.actor_id if body else None)
    return AdminActionResponse(device_token=device_token, changed=changed)


@app.get("/v1/admin/review-flags", response_model=List[ReviewFlag])
def list_review_flags(
    status: ReviewStatus = Query(default=ReviewStatus.PENDING),
    limit: int = Query(default=100, ge=1, le=1000),
) -> List[ReviewFlag]:
    return get_service().list_review_flags(status, limit)


@app.post("/v1/admin/review-flags/{flag_id}/resolve", response_model=ReviewFlag)
def resolve_review_flag(flag_id: str, body: ResolveFlagRequest) -> ReviewFlag:
    return get_service().resolve_review_flag(
        flag_id, ReviewStatus(body.status), body.reviewer_id, body.notes
    )


@app.get("/health")
async def health_check() -> dict:
    """Health check endpoint."""
    return {"status": "healthy", "service": "veilguard-gateway"}


@app.get("/ready")
async def readiness_check() -> dict:
    """Readiness check endpoint.

    Returns 503 until the service singleton is initialized.
    """
    if not ServiceManager._initialized:
        raise HTTPException(status_code=503, detail="not_ready")
    return {"status": "ready", "service": "veilguard-gateway"}


# =============================================================================
# DEVELOPMENT SERVER
# =============================================================================

if __name__ == "__main__":
    import uvicorn
    
    uvicorn.run(
        "veilguard.api.gateway:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info",
    )
