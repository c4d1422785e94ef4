"""
Voice provider webhooks.

The provider treats repeated non-2xx responses as a broken endpoint, so once
the signature checks out this route always answers ``{"received": true}``;
processing failures are logged, never returned.
"""

import hashlib
import hmac
import json

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request, status
from pydantic import ValidationError

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.models.api.webhook_request import CallEndedEvent
from app.services.calls.webhook_reconciler import webhook_reconciler
from app.services.context_extraction_service import context_extractor

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])
logger = get_logger(__name__)

VAPI_SIGNATURE_HEADER = "x-vapi-signature"


def verify_vapi_signature(raw: bytes, signature: str | None, secret: str) -> None:
    if not signature:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing signature")
    expected = hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, signature):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")


@router.post("/calls")
async def call_webhook(request: Request, background_tasks: BackgroundTasks):
    raw = await request.body()
    if settings.VAPI_WEBHOOK_SECRET:
        verify_vapi_signature(
            raw, request.headers.get(VAPI_SIGNATURE_HEADER), settings.VAPI_WEBHOOK_SECRET
        )

    try:
        event = CallEndedEvent.model_validate(json.loads(raw or b"{}"))
    except (ValueError, ValidationError) as e:
        logger.warning("Unreadable webhook payload", error=str(e))
        return {"received": True}

    if not event.is_end_of_call:
        logger.debug("Ignoring webhook event", event_type=event.type)
        return {"received": True}

    try:
        result = await webhook_reconciler.reconcile(event)
    except Exception as e:
        logger.error(
            "Webhook processing failed",
            operation="reconcile_call",
            provider_call_id=event.call_id,
            error=str(e),
            error_type=type(e).__name__,
        )
        return {"received": True}

    if result.status == "duplicate":
        return {"received": True, "alreadyProcessed": True}

    if result.should_enrich and event.transcript:
        background_tasks.add_task(
            context_extractor.enrich_customer,
            result.customer_id,
            event.transcript,
            call_duration=event.duration_seconds,
        )

    return {"received": True}
