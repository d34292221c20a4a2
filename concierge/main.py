import json
import logging
from contextlib import asynccontextmanager
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from concierge.config import Settings, get_settings
from concierge.generator import CompletionReplyGenerator, ReplyGenerator
from concierge.identity import IdentityResolver
from concierge.ingress import WebhookIngress
from concierge.locks import KeyedLock
from concierge.logging_utils import RequestLoggingMiddleware, log_webhook_data, setup_logging
from concierge.metrics import get_metrics, get_metrics_content_type
from concierge.orchestrator import ReplyOrchestrator
from concierge.schemas import (
    ErrorResponse,
    HealthResponse,
    SessionResponse,
    SessionsListResponse,
    StatsResponse,
    WebhookResponse,
    WebhookStatusResponse,
)
from concierge.storage import (
    SessionStore,
    check_db_health,
    create_db_engine,
    create_session_factory,
    init_db,
)
from concierge.transport import WhapiTransport

logger = logging.getLogger(__name__)

CORS_ALLOW_METHODS = "GET,OPTIONS,POST"
CORS_ALLOW_HEADERS = "Content-Type, Authorization, X-Requested-With, Accept"


def cors_headers(settings: Settings, origin: Optional[str]) -> dict[str, str]:
    """
    CORS headers for a bare OPTIONS request on the webhook.

    Browser preflights (Origin plus Access-Control-Request-Method) never get
    here; CORSMiddleware answers those from the same CORS_ALLOW_ORIGINS list.
    """
    headers = {
        "Access-Control-Allow-Methods": CORS_ALLOW_METHODS,
        "Access-Control-Allow-Headers": CORS_ALLOW_HEADERS,
    }
    origins = settings.cors_origins
    if "*" in origins:
        headers["Access-Control-Allow-Origin"] = "*"
    elif origin in origins:
        headers["Access-Control-Allow-Origin"] = origin
        headers["Vary"] = "Origin"
    return headers


router = APIRouter()


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_session_store(request: Request) -> SessionStore:
    return request.app.state.sessions


def get_ingress(request: Request) -> WebhookIngress:
    return request.app.state.ingress


# =============================================================================
# Health Check Routes
# =============================================================================

@router.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """Liveness probe - always returns 200 once the app is running."""
    return HealthResponse(status="ok")


@router.get("/health/ready", response_model=HealthResponse)
def health_ready(request: Request, response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the DB is reachable and the
    sessions table exists, 503 otherwise.
    """
    if not check_db_health(request.app.state.session_factory):
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )
    return HealthResponse(status="ready")


# =============================================================================
# Webhook Routes
# =============================================================================

@router.get("/api/webhook", response_model=WebhookStatusResponse)
async def webhook_status(settings: Settings = Depends(get_app_settings)) -> WebhookStatusResponse:
    return WebhookStatusResponse(status="active", service=settings.SERVICE_NAME)


@router.options("/api/webhook")
async def webhook_options(request: Request, settings: Settings = Depends(get_app_settings)) -> Response:
    headers = cors_headers(settings, request.headers.get("origin"))
    return Response(status_code=status.HTTP_200_OK, headers=headers)


@router.post(
    "/api/webhook",
    response_model=WebhookResponse,
    response_model_exclude_none=True,
    responses={500: {"model": ErrorResponse, "description": "Unhandled error"}},
)
async def webhook(request: Request, ingress: WebhookIngress = Depends(get_ingress)):
    """
    Receive a Whapi delivery and answer every text message in it.

    - Deliveries without message items (status callbacks) are ignored
    - Own messages and non-text items are filtered
    - Remaining items are handled sequentially, in order
    """
    raw_body = await request.body()
    try:
        body = json.loads(raw_body) if raw_body else None
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.warning(f"Webhook body is not JSON, ignoring: {e}")
        body = None

    try:
        outcome = await run_in_threadpool(ingress.handle, body)
    except Exception as e:
        logger.exception("Webhook delivery failed")
        log_webhook_data(request, result="error")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse(message=str(e)).model_dump(),
        )

    if outcome.status == "ignored":
        log_webhook_data(request, result="ignored")
        return WebhookResponse(status="ignored")

    log_webhook_data(
        request,
        result=outcome.status,
        processed=outcome.processed,
        filtered=outcome.filtered,
        failed=outcome.failed,
    )
    return WebhookResponse(
        status=outcome.status,
        processed=outcome.processed,
        filtered=outcome.filtered,
        failed=outcome.failed,
    )


# =============================================================================
# Session Inspection Routes
# =============================================================================

@router.get("/sessions", response_model=SessionsListResponse)
def list_sessions(
    limit: Annotated[int, Query(ge=1, le=100, description="Maximum number of sessions to return")] = 50,
    offset: Annotated[int, Query(ge=0, description="Number of sessions to skip")] = 0,
    linked: Annotated[Optional[bool], Query(description="Only sessions with (true) or without (false) a client")] = None,
    sessions: SessionStore = Depends(get_session_store),
) -> SessionsListResponse:
    """List sessions, most recent interaction first."""
    logger.info(f"GET /sessions: limit={limit}, offset={offset}, linked={linked}")
    records, total = sessions.list_sessions(limit=limit, offset=offset, linked=linked)
    return SessionsListResponse(
        data=[SessionResponse.model_validate(record.model_dump()) for record in records],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/sessions/{phone_number}", response_model=SessionResponse)
def get_session(
    phone_number: str,
    sessions: SessionStore = Depends(get_session_store),
) -> SessionResponse:
    result = sessions.get_session(phone_number)
    if not result.ok:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=result.error)
    if result.value is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="session not found")
    return SessionResponse.model_validate(result.value.model_dump())


@router.get("/stats", response_model=StatsResponse)
def get_statistics(sessions: SessionStore = Depends(get_session_store)) -> StatsResponse:
    """Session-level analytics."""
    return StatsResponse(**sessions.get_stats())


# =============================================================================
# Metrics Route
# =============================================================================

@router.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=get_metrics(), media_type=get_metrics_content_type())


# =============================================================================
# Application Factory
# =============================================================================

def create_app(
    settings: Optional[Settings] = None,
    generator: Optional[ReplyGenerator] = None,
    transport: Optional[WhapiTransport] = None,
) -> FastAPI:
    """
    Build the application and its components from one Settings instance.

    `generator` and `transport` replace the HTTP-backed collaborators,
    which is how tests run without network access.
    """
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL, service_name=settings.SERVICE_NAME)

    engine = create_db_engine(settings.DATABASE_URL)
    session_factory = create_session_factory(engine)
    sessions = SessionStore(session_factory, locks=KeyedLock())
    orchestrator = ReplyOrchestrator(
        identity=IdentityResolver(session_factory, country_code=settings.COUNTRY_CODE),
        sessions=sessions,
        generator=generator or CompletionReplyGenerator(settings),
        fallback_reply=settings.FALLBACK_REPLY,
    )
    ingress = WebhookIngress(
        orchestrator=orchestrator,
        transport=transport or WhapiTransport(settings),
        country_code=settings.COUNTRY_CODE,
        assistant_phone=settings.ASSISTANT_PHONE,
        isolate_failures=settings.ISOLATE_ITEM_FAILURES,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        init_db(engine)
        yield
        engine.dispose()

    app = FastAPI(
        title="Concierge Webhook API",
        description="WhatsApp receptionist: per-phone sessions and automated replies",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.sessions = sessions
    app.state.orchestrator = orchestrator
    app.state.ingress = ingress

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.include_router(router)
    return app


app = create_app()
