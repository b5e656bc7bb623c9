"""Signature capture and retrieval for an instance."""

from __future__ import annotations

import json
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile, status
from fastapi.responses import RedirectResponse

from inspectra.context import EngineContext
from inspectra.core.errors import Forbidden, ValidationError
from inspectra.lifecycle.signatures import MAX_URL_EXPIRY, MIN_URL_EXPIRY
from inspectra.models import Actor, EventType
from inspectra.web.auth import get_current_actor
from inspectra.web.dependencies import get_context

router = APIRouter(prefix="/locations/{location_id}/instances/{instance_id}/signatures", tags=["Signatures"])


def _parse_json_field(raw: str | None, name: str) -> Any:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        raise ValidationError(f"Invalid {name} format") from None


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_signature(
    location_id: UUID,
    instance_id: UUID,
    signature: UploadFile = File(...),
    points: str | None = Form(default=None),
    device_meta: str | None = Form(default=None, alias="deviceMeta"),
    actor: Actor = Depends(get_current_actor),
    ctx: EngineContext = Depends(get_context),
):
    """Sign an instance. Only its assigned profile may sign, and only once."""
    instance = await ctx.lifecycle.get_instance(instance_id, actor, location_id)
    if instance.assigned_to_profile_id != actor.profile_id:
        raise Forbidden("Only the assigned inspector can sign this inspection")

    parsed_points = _parse_json_field(points, "signature points")
    parsed_meta = _parse_json_field(device_meta, "device meta")
    if parsed_meta is not None and not isinstance(parsed_meta, dict):
        raise ValidationError("Invalid device meta format")

    image = await signature.read()
    record = await ctx.signatures.sign(
        instance_id, actor.profile_id, image, points=parsed_points, device_meta=parsed_meta
    )

    ctx.dispatcher.spawn(
        "append_signed_event",
        lambda: ctx.events.append_quietly(
            instance_id, EventType.SIGNED, actor.profile_id, {"signature_id": str(record.id)}
        ),
    )
    return {"data": record}


@router.get("")
async def list_signatures(
    location_id: UUID,
    instance_id: UUID,
    actor: Actor = Depends(get_current_actor),
    ctx: EngineContext = Depends(get_context),
):
    await ctx.lifecycle.get_instance(instance_id, actor, location_id)
    return {"data": await ctx.signatures.list(instance_id)}


@router.get("/{signature_id}/image")
async def signature_image(
    location_id: UUID,
    instance_id: UUID,
    signature_id: UUID,
    expires_in: int = Query(default=MAX_URL_EXPIRY, ge=MIN_URL_EXPIRY, le=MAX_URL_EXPIRY),
    actor: Actor = Depends(get_current_actor),
    ctx: EngineContext = Depends(get_context),
):
    """Redirect to a short-lived signed URL for the stored image."""
    await ctx.lifecycle.get_instance(instance_id, actor, location_id)
    url = await ctx.signatures.image_url(instance_id, signature_id, expires_in)
    return RedirectResponse(url, status_code=status.HTTP_307_TEMPORARY_REDIRECT)
