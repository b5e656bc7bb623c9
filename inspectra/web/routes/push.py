"""Browser push subscription management."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from inspectra.context import EngineContext
from inspectra.models import Actor, PushNotification
from inspectra.web.auth import get_current_actor
from inspectra.web.dependencies import get_context
from inspectra.web.models import PushSubscribeRequest, PushTestRequest, PushUnsubscribeRequest

router = APIRouter(prefix="/push", tags=["Push"])


@router.post("/subscribe")
async def subscribe(
    body: PushSubscribeRequest,
    request: Request,
    actor: Actor = Depends(get_current_actor),
    ctx: EngineContext = Depends(get_context),
):
    await ctx.push.subscribe(
        actor.profile_id,
        body.endpoint,
        body.keys.p256dh,
        body.keys.auth,
        user_agent=request.headers.get("user-agent"),
    )
    return {"success": True}


@router.post("/unsubscribe")
async def unsubscribe(
    body: PushUnsubscribeRequest,
    actor: Actor = Depends(get_current_actor),
    ctx: EngineContext = Depends(get_context),
):
    removed = await ctx.push.unsubscribe(actor.profile_id, body.endpoint)
    return {"success": True, "removed": removed}


@router.post("/test")
async def send_test(
    body: PushTestRequest | None = None,
    actor: Actor = Depends(get_current_actor),
    ctx: EngineContext = Depends(get_context),
):
    """Send a test notification to the caller's own subscriptions."""
    body = body or PushTestRequest()
    result = await ctx.push.send_to_profile(
        actor.profile_id,
        PushNotification(title=body.title, body=body.body, url="/", tag="test"),
    )
    return result.model_dump()
