"""SQLAlchemy async database models for Inspectra.

Logical layout: templates, instances, events, signatures, binder assignments,
push subscriptions, plus the profile/location membership tables used for
access checks and fan-out, the notification outbox and reminder settings.
"""

from __future__ import annotations

from datetime import datetime, timezone
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC timestamps on every backend.

    PostgreSQL keeps the offset natively; SQLite drops it, so values are
    normalised to UTC on the way in and re-tagged as UTC on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
            if dialect.name == "sqlite":
                value = value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class LocationModel(Base):
    """Tenant boundary: every template and instance belongs to one location."""

    __tablename__ = "locations"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=func.now(), nullable=False
    )


class ProfileModel(Base):
    """Application profile linked to an authentication user."""

    __tablename__ = "profiles"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    full_name: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[str | None] = mapped_column(Text)
    role: Mapped[str] = mapped_column(Text, nullable=False, default="inspector")
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=func.now(), nullable=False
    )


class ProfileLocationModel(Base):
    """Membership of a profile in a location."""

    __tablename__ = "profile_locations"

    profile_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("profiles.id"), primary_key=True
    )
    location_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("locations.id"), primary_key=True
    )


class TemplateModel(Base):
    """Recurring inspection definition. Deactivated, never deleted."""

    __tablename__ = "inspection_templates"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    location_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("locations.id"), nullable=False, index=True
    )
    task: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    frequency: Mapped[str] = mapped_column(Text, nullable=False)
    default_assignee_profile_id: Mapped[UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("profiles.id")
    )
    binder_id: Mapped[UUID | None] = mapped_column(Uuid(as_uuid=True), index=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=func.now(), nullable=False
    )

    __table_args__ = (Index("idx_templates_active", "active"),)


class InstanceModel(Base):
    """One occurrence of a template's inspection obligation.

    At most one row per template may be ``pending`` or ``in_progress``; the
    generator's check-then-insert upholds this (no storage constraint).
    """

    __tablename__ = "inspection_instances"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    template_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("inspection_templates.id"), nullable=False
    )
    location_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("locations.id"), nullable=False, index=True
    )
    due_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    assigned_to_profile_id: Mapped[UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("profiles.id"), index=True
    )
    assigned_to_email: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="pending")
    remarks: Mapped[str | None] = mapped_column(Text)
    inspected_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    failed_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    passed_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    created_by: Mapped[str] = mapped_column(Text, nullable=False, default="system")
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("idx_instances_template_status", "template_id", "status"),  # generator guard
        Index("idx_instances_status_due", "status", "due_at"),  # reminder sweep
    )


class EventModel(Base):
    """Immutable audit-trail entry for an instance."""

    __tablename__ = "inspection_events"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    inspection_instance_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("inspection_instances.id"), nullable=False
    )
    event_type: Mapped[str] = mapped_column(Text, nullable=False)
    event_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    actor_profile_id: Mapped[UUID | None] = mapped_column(Uuid(as_uuid=True))
    payload: Mapped[dict | None] = mapped_column(JSON)

    __table_args__ = (Index("idx_events_instance_at", "inspection_instance_id", "event_at"),)


class SignatureModel(Base):
    """A signer's mark on an instance; one per (instance, signer)."""

    __tablename__ = "inspection_signatures"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    inspection_instance_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("inspection_instances.id"), nullable=False
    )
    signed_by_profile_id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    signed_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    signature_image_path: Mapped[str] = mapped_column(Text, nullable=False)
    signature_points: Mapped[list | dict | None] = mapped_column(JSON)
    device_meta: Mapped[dict | None] = mapped_column(JSON)

    __table_args__ = (
        UniqueConstraint(
            "inspection_instance_id", "signed_by_profile_id", name="uq_signature_instance_signer"
        ),
    )


class BinderAssignmentModel(Base):
    """Binder editor/inspector assignment. Read-only here."""

    __tablename__ = "binder_assignments"

    binder_id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True)
    profile_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("profiles.id"), primary_key=True
    )
    can_edit: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    assigned_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)


class PushSubscriptionModel(Base):
    """Browser push endpoint registered by a profile."""

    __tablename__ = "push_subscriptions"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    profile_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("profiles.id"), nullable=False, index=True
    )
    endpoint: Mapped[str] = mapped_column(Text, nullable=False)
    p256dh: Mapped[str] = mapped_column(Text, nullable=False)
    auth: Mapped[str] = mapped_column(Text, nullable=False)
    user_agent: Mapped[str | None] = mapped_column(Text)
    last_seen_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("profile_id", "endpoint", name="uq_push_profile_endpoint"),
    )


class NotificationOutboxModel(Base):
    """Queued outbound email, drained by the reminder sweep."""

    __tablename__ = "notification_outbox"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    type: Mapped[str] = mapped_column(Text, nullable=False)
    to_email: Mapped[str] = mapped_column(Text, nullable=False)
    subject: Mapped[str] = mapped_column(Text, nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="queued")
    error: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=func.now(), nullable=False
    )
    sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime())

    __table_args__ = (Index("idx_outbox_status_created", "status", "created_at"),)


class ReminderSettingsModel(Base):
    """Single-row reminder cadence configuration."""

    __tablename__ = "reminder_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    weekly_due_day: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    monthly_days_before: Mapped[int] = mapped_column(Integer, default=7, nullable=False)
    monthly_due_day: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    yearly_months_before: Mapped[int] = mapped_column(Integer, default=6, nullable=False)
    yearly_monthly_reminder: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    yearly_due_day: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    three_year_months_before: Mapped[int] = mapped_column(Integer, default=6, nullable=False)
    three_year_monthly_reminder: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False
    )
    three_year_due_day: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    updated_by: Mapped[str | None] = mapped_column(Text)
