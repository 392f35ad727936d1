from __future__ import annotations

import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlmodel import Session

from meetai.config import Settings
from meetai.deps import get_orchestrator, get_session, get_settings
from meetai.errors import SignatureVerificationError
from meetai.services.pipeline import PipelineOrchestrator
from meetai.services.webhook_normalizer import normalize_event, verify_signature
from meetai.services.webhook_service import HANDLED_EVENTS, WebhookService

logger = logging.getLogger("meetai.webhooks")


router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stream")
async def receive_stream_webhook(
    request: Request,
    x_signature: Optional[str] = Header(default=None),
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_settings),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    started = time.monotonic()
    body = await request.body()

    if settings.is_production and not verify_signature(body, x_signature or "", settings.webhook_secret):
        raise SignatureVerificationError("Invalid webhook signature")

    try:
        payload = json.loads(body)
    except ValueError:
        logger.exception("Webhook body is not valid JSON")
        return JSONResponse(status_code=500, content={"error": "Webhook processing failed"})

    event_type = payload.get("type") if isinstance(payload, dict) else None
    logger.info("Webhook received: %s", event_type)

    # The provider retries on non-2xx, so dispatch failures are only logged
    try:
        service = WebhookService(session, orchestrator)
        outcome = await run_in_threadpool(service.handle, normalize_event(payload))
        logger.info("Webhook %s handled: %s", event_type, outcome.get("action"))
    except Exception:
        logger.exception("Error processing webhook %s", event_type)

    return {
        "received": True,
        "eventType": event_type,
        "processingTime": f"{int((time.monotonic() - started) * 1000)}ms",
    }


@router.get("/stream")
def stream_webhook_health() -> Dict[str, Any]:
    return {
        "status": "ok",
        "message": "Stream webhook endpoint is active",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "events": HANDLED_EVENTS,
    }
