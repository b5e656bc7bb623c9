"""Inspectra Pydantic models and enums shared across the engine.

ORM rows from ``inspectra.db.models`` are converted into these records at
service boundaries so callers never hold a session-bound object.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class InstanceStatus(str, Enum):
    """Lifecycle states of an inspection instance."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    FAILED = "failed"
    PASSED = "passed"
    VOID = "void"  # Soft-terminal "cancelled"


OPEN_STATUSES = (InstanceStatus.PENDING.value, InstanceStatus.IN_PROGRESS.value)
TERMINAL_STATUSES = (
    InstanceStatus.FAILED.value,
    InstanceStatus.PASSED.value,
    InstanceStatus.VOID.value,
)


class EventType(str, Enum):
    """Audit-trail event kinds."""

    CREATED = "created"
    ASSIGNED = "assigned"
    STARTED = "started"
    FAILED = "failed"
    PASSED = "passed"
    SIGNED = "signed"
    COMMENT = "comment"
    REMINDER_SENT = "reminder_sent"
    ESCALATED = "escalated"
    VOID = "void"
    REVERTED = "reverted"


class Role(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    NURSE = "nurse"
    INSPECTOR = "inspector"


PRIVILEGED_ROLES = frozenset({Role.OWNER.value, Role.ADMIN.value})
COORDINATOR_ROLES = frozenset({Role.OWNER.value, Role.ADMIN.value, Role.NURSE.value})


@dataclass(frozen=True, slots=True)
class Actor:
    """Authenticated caller as resolved by the session layer.

    Capabilities are derived from the role here so that services check
    ``actor.can_revert`` rather than comparing role strings.
    """

    profile_id: UUID
    role: str
    location_ids: frozenset[UUID] = field(default_factory=frozenset)
    user_id: str | None = None
    email: str | None = None
    unrestricted: bool = False  # Development bypass: every location is accessible

    @property
    def can_revert(self) -> bool:
        return self.role in PRIVILEGED_ROLES

    @property
    def can_assign(self) -> bool:
        return self.role in COORDINATOR_ROLES

    @property
    def can_create(self) -> bool:
        return self.role in COORDINATOR_ROLES

    def has_location_access(self, location_id: UUID) -> bool:
        return self.unrestricted or location_id in self.location_ids


class Instance(BaseModel):
    """One occurrence of a template's inspection obligation."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    template_id: UUID
    location_id: UUID
    due_at: datetime
    assigned_to_profile_id: UUID | None = None
    assigned_to_email: str | None = None
    status: InstanceStatus
    remarks: str | None = None
    inspected_at: datetime | None = None
    failed_at: datetime | None = None
    passed_at: datetime | None = None
    created_by: str = "system"
    created_at: datetime | None = None
    template_task: str | None = None  # Joined from the template for display


class Event(BaseModel):
    """Immutable audit-trail entry."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    inspection_instance_id: UUID
    event_type: str
    event_at: datetime
    actor_profile_id: UUID | None = None
    payload: dict[str, Any] | None = None


class Signature(BaseModel):
    """Signature record. ``signature_image_path`` is a storage key, never a URL."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    inspection_instance_id: UUID
    signed_by_profile_id: UUID
    signed_at: datetime
    signature_image_path: str
    signature_points: list[Any] | dict[str, Any] | None = None
    device_meta: dict[str, Any] | None = None


class PushNotification(BaseModel):
    """Payload delivered to browser push subscriptions."""

    title: str
    body: str
    url: str | None = None
    tag: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)


class GenerationResult(BaseModel):
    """Counts returned by one generator run."""

    generated: int = 0
    skipped: int = 0
    errors: int = 0
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class PushResult(BaseModel):
    """Aggregate outcome of a push fan-out."""

    sent: int = 0
    failed: int = 0

    def __add__(self, other: PushResult) -> PushResult:
        return PushResult(sent=self.sent + other.sent, failed=self.failed + other.failed)


class ReminderResult(BaseModel):
    """Counts returned by one reminder sweep."""

    processed: int = 0
    queued: int = 0
    email_sent: int = 0
    email_failed: int = 0
    push_sent: int = 0
    push_failed: int = 0
    by_type: dict[str, int] = Field(default_factory=dict)
    escalation_sent: bool = False
    escalated_instances: int = 0
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
