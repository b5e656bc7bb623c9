"""Request and response models for the Inspectra HTTP API.

Usage:
    from inspectra.web.models import InstanceUpdateRequest

    @router.patch("/{instance_id}")
    async def update_instance(body: InstanceUpdateRequest):
        ...
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field

from inspectra.models import InstanceStatus

# ============================================================================
# Instances
# ============================================================================


class InstanceCreateRequest(BaseModel):
    """Used by: POST /locations/{location_id}/instances"""

    template_id: UUID
    due_at: datetime
    assigned_to_profile_id: UUID | None = None
    assigned_to_email: str | None = Field(default=None, max_length=320)
    remarks: str | None = Field(default=None, max_length=2000)


class InstanceUpdateRequest(BaseModel):
    """Used by: PATCH /locations/{location_id}/instances/{instance_id}

    Only fields present in the body are applied.
    """

    status: InstanceStatus | None = None
    remarks: str | None = Field(default=None, max_length=2000)
    assigned_to_profile_id: UUID | None = None
    assigned_to_email: str | None = Field(default=None, max_length=320)


class CommentRequest(BaseModel):
    text: str = Field(min_length=1, max_length=2000)


# ============================================================================
# Push
# ============================================================================


class PushKeys(BaseModel):
    p256dh: str = Field(min_length=1)
    auth: str = Field(min_length=1)


class PushSubscribeRequest(BaseModel):
    """Browser ``PushSubscription.toJSON()`` shape."""

    endpoint: str = Field(min_length=1)
    keys: PushKeys


class PushUnsubscribeRequest(BaseModel):
    endpoint: str = Field(min_length=1)


class PushTestRequest(BaseModel):
    title: str = "Test Notification"
    body: str = "Push notifications are working."
