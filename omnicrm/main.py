import asyncio
import json
import logging
from contextlib import asynccontextmanager
from functools import partial
from typing import Annotated, Optional

from fastapi import FastAPI, Response, Request, Depends, Header, HTTPException, status
from pydantic import ValidationError
from sqlalchemy.orm import Session

from omnicrm.analysis import analyze_conversation
from omnicrm.channels import handle_session_status
from omnicrm.completion import CompletionClient
from omnicrm.config import settings
from omnicrm.ingest import ingest_whatsapp_message
from omnicrm.logging_utils import setup_logging, RequestLoggingMiddleware, log_webhook_data
from omnicrm.metrics import get_metrics, get_metrics_content_type
from omnicrm.models import Conversation
from omnicrm.scheduler import AnalysisScheduler
from omnicrm.schemas import (
    AnalyzeResponse,
    ErrorResponse,
    HealthResponse,
    IngestResult,
    SessionStatusResponse,
    SessionStatusWebhook,
)
from omnicrm.storage import SessionLocal, check_db_health, get_db, init_db
from omnicrm.utils import verify_hmac_signature


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


def recover_pending_analyses(scheduler: AnalysisScheduler) -> int:
    """Re-schedule conversations left flagged by a previous process."""
    with SessionLocal() as db:
        conversation_ids = [
            conversation_id
            for (conversation_id,) in db.query(Conversation.id).filter(Conversation.needs_analysis.is_(True)).all()
        ]
    for conversation_id in conversation_ids:
        scheduler.schedule(conversation_id)
    return len(conversation_ids)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: create tables, build the completion client and the analysis
    scheduler, re-queue flagged conversations.
    Shutdown: let in-flight analyses finish.
    """
    init_db()

    completion = CompletionClient.from_settings(settings)
    scheduler = AnalysisScheduler(
        partial(analyze_conversation, completion=completion),
        max_concurrency=settings.ANALYSIS_CONCURRENCY,
    )
    app.state.completion = completion
    app.state.scheduler = scheduler

    if completion.configured and settings.ANALYSIS_RECOVER_ON_STARTUP:
        recovered = recover_pending_analyses(scheduler)
        logger.info(f"Re-scheduled {recovered} conversations pending analysis")
    elif not completion.configured:
        logger.warning("COMPLETION_API_KEY not set, conversation analysis disabled")

    yield

    await scheduler.join()
    await completion.close()


app = FastAPI(
    title="omnicrm",
    description="WhatsApp message ingestion and conversation analysis for the sales CRM",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


def get_scheduler(request: Request) -> AnalysisScheduler:
    return request.app.state.scheduler


def get_completion(request: Request) -> CompletionClient:
    return request.app.state.completion


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the DB is reachable and the schema
    is applied, 503 otherwise.
    """
    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Webhook Route
# =============================================================================

@app.post(
    "/webhooks/whatsapp",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=None,
    responses={
        202: {"model": IngestResult, "description": "Event accepted, stored or skipped"},
        400: {"model": ErrorResponse, "description": "Invalid payload"},
        401: {"model": ErrorResponse, "description": "Invalid signature"},
    }
)
async def whatsapp_webhook(
    request: Request,
    x_webhook_hmac: Annotated[Optional[str], Header(alias="X-Webhook-Hmac")] = None,
    db: Session = Depends(get_db),
    scheduler: AnalysisScheduler = Depends(get_scheduler),
    completion: CompletionClient = Depends(get_completion),
) -> dict:
    """
    Receive gateway events.

    - session.status events update the channel's connection status
    - message events are ingested; skipped events are still acknowledged
      with 202 so the gateway does not retry them
    """
    raw_body = await request.body()

    if settings.WEBHOOK_SECRET:
        if not x_webhook_hmac or not verify_hmac_signature(raw_body, x_webhook_hmac, settings.WEBHOOK_SECRET):
            logger.error("Invalid webhook signature")
            log_webhook_data(request, result="invalid_signature")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="invalid signature"
            )

    try:
        body = json.loads(raw_body)
    except json.JSONDecodeError as e:
        logger.error(f"Invalid JSON: {e}")
        log_webhook_data(request, result="invalid_json")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid JSON"
        )

    if isinstance(body, dict) and body.get("event") == "session.status":
        try:
            event = SessionStatusWebhook.model_validate(body)
        except ValidationError as e:
            logger.warning(f"Invalid session.status payload: {e.error_count()} validation errors")
            log_webhook_data(request, result="invalid_session_status")
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Invalid session.status payload"
            )
        await asyncio.to_thread(handle_session_status, db, event)
        log_webhook_data(request, result="session.status")
        return SessionStatusResponse().model_dump()

    # Blocking DB work runs off the loop; scheduling must happen on it
    result = await asyncio.to_thread(ingest_whatsapp_message, db, body)
    if result.conversation_id and completion.configured:
        scheduler.schedule(result.conversation_id)

    log_webhook_data(
        request,
        message_id=result.message_id,
        result="skipped" if result.skipped else "created",
        reason=result.reason,
        conversation_id=result.conversation_id,
    )
    return result.model_dump(exclude_none=True)


# =============================================================================
# Analysis Route
# =============================================================================

@app.post(
    "/conversations/{conversation_id}/analyze",
    response_model=AnalyzeResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={
        404: {"model": ErrorResponse, "description": "Conversation not found"},
        503: {"model": ErrorResponse, "description": "Analysis not configured"},
    }
)
async def reanalyze_conversation(
    conversation_id: str,
    db: Session = Depends(get_db),
    scheduler: AnalysisScheduler = Depends(get_scheduler),
    completion: CompletionClient = Depends(get_completion),
) -> AnalyzeResponse:
    """Flag a conversation for analysis and schedule a pass."""
    if not completion.configured:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="conversation analysis is not configured"
        )

    conversation = db.query(Conversation).filter(Conversation.id == conversation_id).first()
    if conversation is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="conversation not found"
        )

    conversation.needs_analysis = True
    db.commit()

    scheduler.schedule(conversation_id)
    logger.info("Manual analysis scheduled", extra={"conversation_id": conversation_id})
    return AnalyzeResponse(conversation_id=conversation_id)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus-style metrics."""
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
