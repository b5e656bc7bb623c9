"""Signed inbound triggers from the workflow orchestrator.

Each request body must carry ``X-Inspectra-Signature`` (hex HMAC-SHA256 of
the raw body under ``WEBHOOK_SECRET``). The signature is checked before the
body is parsed; mismatches answer 401.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone

import structlog
from fastapi import APIRouter, Depends, Request

from inspectra.context import EngineContext
from inspectra.core.errors import Unauthorized, ValidationError
from inspectra.notifications.webhooks import SIGNATURE_HEADER, verify_signature
from inspectra.web.dependencies import get_context

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhooks/inbound", tags=["Webhooks"])

SOURCE = "orchestrator"


async def verified_body(request: Request, ctx: EngineContext = Depends(get_context)) -> dict:
    """Dependency returning the parsed JSON body once its signature checks out."""
    body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)

    if not verify_signature(body, signature, ctx.config.webhooks.secret):
        logger.warning("inbound_webhook_rejected", path=request.url.path)
        raise Unauthorized("Invalid signature")

    if not body:
        return {}
    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        raise ValidationError("Body must be JSON") from None
    if not isinstance(payload, dict):
        raise ValidationError("Body must be a JSON object")
    return payload


@router.post("/trigger-instances")
async def trigger_instances(
    payload: dict = Depends(verified_body),
    ctx: EngineContext = Depends(get_context),
):
    result = await ctx.generator.generate_due_instances()
    return {**result.model_dump(mode="json"), "source": SOURCE}


@router.post("/trigger-reminders")
async def trigger_reminders(
    payload: dict = Depends(verified_body),
    ctx: EngineContext = Depends(get_context),
):
    result = await ctx.reminders.run()
    return {**result.model_dump(mode="json"), "source": SOURCE}


@router.post("/trigger-escalation")
async def trigger_escalation(
    payload: dict = Depends(verified_body),
    ctx: EngineContext = Depends(get_context),
):
    escalated = await ctx.reminders.escalate()
    return {
        "escalation_sent": escalated > 0,
        "unassigned_count": escalated,
        "source": SOURCE,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/health")
async def webhook_health(ctx: EngineContext = Depends(get_context)):
    return {
        "status": "ok",
        "webhook_secret_configured": bool(ctx.config.webhooks.secret),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
