"""Inspection instance routes scoped to a location."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from inspectra.context import EngineContext
from inspectra.core.errors import ValidationError
from inspectra.models import Actor, InstanceStatus
from inspectra.web.auth import get_current_actor
from inspectra.web.dependencies import get_context
from inspectra.web.models import CommentRequest, InstanceCreateRequest, InstanceUpdateRequest

router = APIRouter(prefix="/locations/{location_id}/instances", tags=["Instances"])


@router.get("")
async def list_instances(
    location_id: UUID,
    status_filter: InstanceStatus | None = Query(default=None, alias="status"),
    due_from: datetime | None = Query(default=None, alias="from"),
    due_to: datetime | None = Query(default=None, alias="to"),
    assignee: UUID | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    actor: Actor = Depends(get_current_actor),
    ctx: EngineContext = Depends(get_context),
):
    instances = await ctx.lifecycle.list_instances(
        location_id,
        actor,
        status=status_filter.value if status_filter else None,
        due_from=due_from,
        due_to=due_to,
        assignee=assignee,
        limit=limit,
    )
    return {"data": instances}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_instance(
    location_id: UUID,
    body: InstanceCreateRequest,
    actor: Actor = Depends(get_current_actor),
    ctx: EngineContext = Depends(get_context),
):
    instance = await ctx.lifecycle.create_instance(
        actor,
        location_id,
        body.template_id,
        body.due_at,
        assigned_to_profile_id=body.assigned_to_profile_id,
        assigned_to_email=body.assigned_to_email,
        remarks=body.remarks,
    )
    return {"data": instance}


@router.get("/{instance_id}")
async def get_instance(
    location_id: UUID,
    instance_id: UUID,
    actor: Actor = Depends(get_current_actor),
    ctx: EngineContext = Depends(get_context),
):
    return {"data": await ctx.lifecycle.get_instance(instance_id, actor, location_id)}


@router.patch("/{instance_id}")
async def update_instance(
    location_id: UUID,
    instance_id: UUID,
    body: InstanceUpdateRequest,
    actor: Actor = Depends(get_current_actor),
    ctx: EngineContext = Depends(get_context),
):
    """Reassign, transition and/or annotate an instance in one write.

    Only fields present in the body are applied; a rejected status change
    leaves the assignment untouched too.
    """
    changes = {}
    fields = body.model_fields_set
    if "status" in fields:
        if body.status is None:
            raise ValidationError("status must not be null")
        changes["status"] = body.status
    if "remarks" in fields:
        changes["remarks"] = body.remarks
    if "assigned_to_profile_id" in fields:
        changes["profile_id"] = body.assigned_to_profile_id
    if "assigned_to_email" in fields:
        changes["email"] = body.assigned_to_email
    if not changes:
        raise ValidationError("No fields to update")

    instance = await ctx.lifecycle.update(instance_id, actor, location_id=location_id, **changes)
    return {"data": instance}


@router.get("/{instance_id}/events")
async def list_events(
    location_id: UUID,
    instance_id: UUID,
    actor: Actor = Depends(get_current_actor),
    ctx: EngineContext = Depends(get_context),
):
    await ctx.lifecycle.get_instance(instance_id, actor, location_id)
    return {"data": await ctx.events.list(instance_id)}


@router.post("/{instance_id}/comments", status_code=status.HTTP_201_CREATED)
async def add_comment(
    location_id: UUID,
    instance_id: UUID,
    body: CommentRequest,
    actor: Actor = Depends(get_current_actor),
    ctx: EngineContext = Depends(get_context),
):
    event = await ctx.lifecycle.comment(instance_id, actor, body.text, location_id)
    return {"data": event}
