"""Instance lifecycle: legal transitions, assignment and authorization.

The status write commits first; events, webhooks, push and email are then
launched through the background dispatcher and can never undo it.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from inspectra.core.errors import Forbidden, InvalidTransition, NotFound, ValidationError
from inspectra.core.tasks import BackgroundDispatcher
from inspectra.db.connection import Database
from inspectra.db.models import InstanceModel, ProfileModel, TemplateModel
from inspectra.lifecycle.events import EventLog
from inspectra.models import (
    TERMINAL_STATUSES,
    Actor,
    Event,
    EventType,
    Instance,
    InstanceStatus,
    PushNotification,
    Role,
)
from inspectra.notifications.email import EmailOutbox
from inspectra.notifications.push import PushFanout
from inspectra.notifications.webhooks import WebhookSender

logger = structlog.get_logger(__name__)

# Transitions any actor with location access may perform
TRANSITIONS: dict[str, frozenset[str]] = {
    InstanceStatus.PENDING.value: frozenset(
        {InstanceStatus.IN_PROGRESS.value, InstanceStatus.VOID.value}
    ),
    InstanceStatus.IN_PROGRESS.value: frozenset(
        {InstanceStatus.FAILED.value, InstanceStatus.PASSED.value, InstanceStatus.VOID.value}
    ),
}

# Revert to draft, privileged actors only
REVERTS: dict[str, frozenset[str]] = {
    InstanceStatus.FAILED.value: frozenset({InstanceStatus.PENDING.value}),
    InstanceStatus.PASSED.value: frozenset({InstanceStatus.PENDING.value}),
}

INSPECTED_STATUSES = frozenset(
    {InstanceStatus.IN_PROGRESS.value, InstanceStatus.FAILED.value, InstanceStatus.PASSED.value}
)

FAILURE_ALERT_ROLES = [Role.OWNER.value, Role.ADMIN.value]

UNCHANGED: Any = object()


def check_transition(current: str, new: str, actor: Actor) -> None:
    """Raise unless ``current -> new`` is whitelisted for ``actor``.

    Raises:
        Forbidden: A revert attempted by an actor without ``can_revert``
        InvalidTransition: Any pair outside the whitelist, same-status included
    """
    if new in TRANSITIONS.get(current, ()):
        return

    if new in REVERTS.get(current, ()):
        if not actor.can_revert:
            raise Forbidden(f"Only owners and admins can revert a {current} inspection")
        return

    raise InvalidTransition(f"Cannot transition from {current} to {new}")


def event_type_for(status: str) -> EventType:
    if status == InstanceStatus.IN_PROGRESS.value:
        return EventType.STARTED
    if status == InstanceStatus.PENDING.value:
        return EventType.REVERTED
    return EventType(status)


class InstanceStateMachine:
    """The only writer of instance status and assignment."""

    def __init__(
        self,
        db: Database,
        events: EventLog,
        dispatcher: BackgroundDispatcher,
        push: PushFanout,
        webhooks: WebhookSender,
        outbox: EmailOutbox,
    ):
        self.db = db
        self.events = events
        self.dispatcher = dispatcher
        self.push = push
        self.webhooks = webhooks
        self.outbox = outbox

    async def get_instance(
        self, instance_id: UUID, actor: Actor, location_id: UUID | None = None
    ) -> Instance:
        async with self.db.session() as session:
            row = await self._load(session, instance_id, actor, location_id)
            return await self._to_instance(session, row)

    async def list_instances(
        self,
        location_id: UUID,
        actor: Actor,
        *,
        status: str | None = None,
        due_from: datetime | None = None,
        due_to: datetime | None = None,
        assignee: UUID | None = None,
        limit: int = 50,
    ) -> list[Instance]:
        if not actor.has_location_access(location_id):
            raise Forbidden("No access to this location")

        query = (
            select(InstanceModel, TemplateModel.task)
            .join(TemplateModel, TemplateModel.id == InstanceModel.template_id)
            .where(InstanceModel.location_id == location_id)
            .order_by(InstanceModel.due_at.asc())
            .limit(limit)
        )
        if status:
            query = query.where(InstanceModel.status == status)
        if due_from:
            query = query.where(InstanceModel.due_at >= due_from)
        if due_to:
            query = query.where(InstanceModel.due_at <= due_to)
        if assignee:
            query = query.where(InstanceModel.assigned_to_profile_id == assignee)

        async with self.db.session() as session:
            result = await session.execute(query)
            return [
                Instance.model_validate(row).model_copy(update={"template_task": task})
                for row, task in result.all()
            ]

    async def create_instance(
        self,
        actor: Actor,
        location_id: UUID,
        template_id: UUID,
        due_at: datetime,
        assigned_to_profile_id: UUID | None = None,
        assigned_to_email: str | None = None,
        remarks: str | None = None,
    ) -> Instance:
        """Create an instance by hand (owner, admin or nurse)."""
        if not actor.can_create:
            raise Forbidden("Only owners, admins and nurses can create inspections")
        if not actor.has_location_access(location_id):
            raise Forbidden("No access to this location")

        async with self.db.session() as session:
            template = await session.get(TemplateModel, template_id)
            if template is None or template.location_id != location_id:
                raise NotFound("Template not found")
            if not template.active:
                raise ValidationError("Template is inactive")
            if assigned_to_profile_id is not None:
                await self._require_profile(session, assigned_to_profile_id)

            row = InstanceModel(
                template_id=template_id,
                location_id=location_id,
                due_at=due_at,
                assigned_to_profile_id=assigned_to_profile_id,
                assigned_to_email=assigned_to_email,
                status=InstanceStatus.PENDING.value,
                remarks=remarks,
                created_by=actor.user_id or str(actor.profile_id),
            )
            session.add(row)
            await session.flush()
            await session.refresh(row)
            instance = Instance.model_validate(row).model_copy(
                update={"template_task": template.task}
            )

        logger.info("instance_created", instance_id=str(instance.id), actor=str(actor.profile_id))
        self.dispatcher.spawn(
            "append_created_event",
            lambda: self.events.append_quietly(
                instance.id, EventType.CREATED, actor.profile_id, {"due_at": due_at.isoformat()}
            ),
        )
        return instance

    async def transition(
        self,
        instance_id: UUID,
        new_status: InstanceStatus | str,
        actor: Actor,
        remarks: str | None = None,
        location_id: UUID | None = None,
    ) -> Instance:
        """Move an instance to ``new_status`` and return the updated record."""
        return await self.update(
            instance_id,
            actor,
            status=new_status,
            remarks=UNCHANGED if remarks is None else remarks,
            location_id=location_id,
        )

    async def assign(
        self,
        instance_id: UUID,
        actor: Actor,
        profile_id: UUID | None = UNCHANGED,
        email: str | None = UNCHANGED,
        location_id: UUID | None = None,
    ) -> Instance:
        """Reassign an open instance. Omitted fields keep their current value."""
        return await self.update(
            instance_id, actor, profile_id=profile_id, email=email, location_id=location_id
        )

    async def set_remarks(
        self, instance_id: UUID, actor: Actor, remarks: str | None, location_id: UUID | None = None
    ) -> Instance:
        return await self.update(instance_id, actor, remarks=remarks, location_id=location_id)

    async def update(
        self,
        instance_id: UUID,
        actor: Actor,
        *,
        status: InstanceStatus | str | None = UNCHANGED,
        remarks: str | None = UNCHANGED,
        profile_id: UUID | None = UNCHANGED,
        email: str | None = UNCHANGED,
        location_id: UUID | None = None,
    ) -> Instance:
        """Apply a status change, remarks and reassignment as one write.

        Every check runs before anything is written, and side effects are
        only launched once the single commit has gone through.

        Raises:
            Forbidden: Reassignment without ``can_assign``, or a revert without ``can_revert``
            InvalidTransition: A non-whitelisted status move, or reassigning a terminal instance
            ValidationError: Unknown status or unknown assignee profile
        """
        reassigning = profile_id is not UNCHANGED or email is not UNCHANGED
        target = None
        if status is not UNCHANGED:
            try:
                target = InstanceStatus(status).value
            except ValueError:
                raise ValidationError(f"Unknown status: {status!r}") from None
        if reassigning and not actor.can_assign:
            raise Forbidden("Inspectors cannot reassign inspections")

        now = datetime.now(timezone.utc)
        async with self.db.session() as session:
            row = await self._load(session, instance_id, actor, location_id)
            previous = row.status
            old_profile_id = row.assigned_to_profile_id
            old_email = row.assigned_to_email

            if target is not None:
                check_transition(previous, target, actor)

            new_profile_id, new_email = old_profile_id, old_email
            if reassigning:
                if previous in TERMINAL_STATUSES:
                    raise InvalidTransition(f"Cannot reassign a {previous} inspection")
                if profile_id is not UNCHANGED:
                    new_profile_id = profile_id
                if email is not UNCHANGED:
                    new_email = email
                if new_profile_id is not None and new_profile_id != old_profile_id:
                    await self._require_profile(session, new_profile_id)

            row.assigned_to_profile_id = new_profile_id
            row.assigned_to_email = new_email
            if remarks is not UNCHANGED:
                row.remarks = remarks
            if target is not None:
                row.status = target
                if target in INSPECTED_STATUSES:
                    row.inspected_at = now
                if target == InstanceStatus.FAILED.value:
                    row.failed_at = now
                elif target == InstanceStatus.PASSED.value:
                    row.passed_at = now
                elif target == InstanceStatus.PENDING.value:
                    row.failed_at = None
                    row.passed_at = None

            await session.flush()
            instance = await self._to_instance(session, row)

        if (new_profile_id, new_email) != (old_profile_id, old_email):
            logger.info(
                "instance_reassigned",
                instance_id=str(instance_id),
                profile_id=str(new_profile_id) if new_profile_id else None,
                actor=str(actor.profile_id),
            )
            self._after_assignment(instance, old_profile_id, old_email, actor, now)

        if target is not None:
            logger.info(
                "instance_transitioned",
                instance_id=str(instance_id),
                from_status=previous,
                to_status=target,
                actor=str(actor.profile_id),
            )
            self._after_transition(
                instance, previous, actor, None if remarks is UNCHANGED else remarks, now
            )
        return instance

    async def comment(
        self, instance_id: UUID, actor: Actor, text: str, location_id: UUID | None = None
    ) -> Event:
        if not text or not text.strip():
            raise ValidationError("Comment text is required")

        async with self.db.session() as session:
            await self._load(session, instance_id, actor, location_id)
            return await self.events.append(
                instance_id, EventType.COMMENT, actor.profile_id, {"text": text.strip()}, session=session
            )

    async def _load(
        self,
        session: AsyncSession,
        instance_id: UUID,
        actor: Actor,
        location_id: UUID | None,
    ) -> InstanceModel:
        row = await session.get(InstanceModel, instance_id)
        if row is None or (location_id is not None and row.location_id != location_id):
            raise NotFound("Inspection not found")
        if not actor.has_location_access(row.location_id):
            raise Forbidden("No access to this location")
        return row

    async def _to_instance(self, session: AsyncSession, row: InstanceModel) -> Instance:
        task = await session.scalar(select(TemplateModel.task).where(TemplateModel.id == row.template_id))
        return Instance.model_validate(row).model_copy(update={"template_task": task})

    async def _require_profile(self, session: AsyncSession, profile_id: UUID) -> None:
        if await session.get(ProfileModel, profile_id) is None:
            raise ValidationError(f"Unknown profile: {profile_id}")

    def _after_transition(
        self, instance: Instance, previous: str, actor: Actor, remarks: str | None, at: datetime
    ) -> None:
        status = instance.status.value
        self.dispatcher.spawn(
            "append_transition_event",
            lambda: self.events.append_quietly(
                instance.id,
                event_type_for(status),
                actor.profile_id,
                {"from": previous, "to": status, "remarks": remarks},
                event_at=at,
            ),
        )

        if status in (InstanceStatus.PASSED.value, InstanceStatus.FAILED.value):
            self.dispatcher.spawn(
                "webhook_inspection_completed",
                lambda: self.webhooks.inspection_completed(
                    instance_id=str(instance.id),
                    template_task=instance.template_task,
                    location_id=str(instance.location_id),
                    status=status,
                    completed_by_profile_id=str(actor.profile_id),
                ),
            )

        if status == InstanceStatus.FAILED.value:
            task = instance.template_task or "Inspection"
            self.dispatcher.spawn(
                "push_inspection_failed",
                lambda: self.push.send_to_roles_in_location(
                    instance.location_id,
                    FAILURE_ALERT_ROLES,
                    PushNotification(
                        title="Inspection Failed",
                        body=f"{task} failed inspection",
                        url=f"/inspections/{instance.id}",
                        tag=f"failed-{instance.id}",
                    ),
                ),
            )

    def _after_assignment(
        self,
        instance: Instance,
        old_profile_id: UUID | None,
        old_email: str | None,
        actor: Actor,
        at: datetime,
    ) -> None:
        task = instance.template_task or "Inspection"
        new_profile_id = instance.assigned_to_profile_id
        new_email = instance.assigned_to_email

        self.dispatcher.spawn(
            "append_assigned_event",
            lambda: self.events.append_quietly(
                instance.id,
                EventType.ASSIGNED,
                actor.profile_id,
                {
                    "assigned_to_profile_id": str(new_profile_id) if new_profile_id else None,
                    "assigned_to_email": new_email,
                    "previous_profile_id": str(old_profile_id) if old_profile_id else None,
                    "previous_email": old_email,
                },
                event_at=at,
            ),
        )

        if new_profile_id is not None and new_profile_id != old_profile_id:
            self.dispatcher.spawn(
                "push_assignment",
                lambda: self.push.send_to_profile(
                    new_profile_id,
                    PushNotification(
                        title="New Assignment",
                        body=f"You've been assigned: {task}",
                        url=f"/inspections/{instance.id}",
                        tag=f"assignment-{instance.id}",
                    ),
                ),
            )

        if new_email and new_email != old_email:
            self.dispatcher.spawn(
                "queue_assignment_email",
                lambda: self.outbox.queue(
                    "assignment",
                    new_email,
                    f"New Assignment: {task}",
                    {
                        "instance_id": str(instance.id),
                        "task": task,
                        "due_at": instance.due_at.isoformat(),
                    },
                ),
            )

        self.dispatcher.spawn(
            "webhook_assignment_changed",
            lambda: self.webhooks.assignment_changed(
                instance_id=str(instance.id),
                template_task=instance.template_task,
                location_id=str(instance.location_id),
                new_assignee_profile_id=str(new_profile_id) if new_profile_id else None,
                new_assignee_email=new_email,
                old_assignee_profile_id=str(old_profile_id) if old_profile_id else None,
            ),
        )
