"""Idempotent materialization of due inspection instances.

Each run looks at every active template and creates one ``pending`` instance
for each template that has no open (``pending``/``in_progress``) instance.
Running twice with no state change in between creates nothing new.

Two concurrent runs may both pass the open-instance check for the same
template and insert twice. That race is accepted; there is no storage-level
constraint backing the check.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from enum import Enum
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from inspectra.core.errors import ValidationError
from inspectra.core.tasks import BackgroundDispatcher
from inspectra.db.connection import Database
from inspectra.db.models import BinderAssignmentModel, InstanceModel, TemplateModel
from inspectra.lifecycle.events import EventLog
from inspectra.models import OPEN_STATUSES, EventType, GenerationResult, InstanceStatus
from inspectra.scheduling.due_dates import next_due_date

logger = structlog.get_logger(__name__)


class Outcome(str, Enum):
    GENERATED = "generated"
    SKIPPED = "skipped"
    ERROR = "error"


class InstanceGenerator:
    """Create the next instance for every active template that needs one."""

    def __init__(
        self,
        db: Database,
        events: EventLog,
        dispatcher: BackgroundDispatcher,
        concurrency: int = 10,
    ):
        self.db = db
        self.events = events
        self.dispatcher = dispatcher
        self.concurrency = concurrency

    async def generate_due_instances(self, now: datetime | None = None) -> GenerationResult:
        now = now or datetime.now(timezone.utc)

        async with self.db.session() as session:
            result = await session.execute(select(TemplateModel).where(TemplateModel.active.is_(True)))
            templates = list(result.scalars().all())

        if not templates:
            logger.info("generator_no_templates")
            return GenerationResult(timestamp=now)

        binder_defaults = await self._binder_defaults(
            {t.binder_id for t in templates if t.binder_id is not None}
        )

        semaphore = asyncio.Semaphore(self.concurrency)

        async def bounded(template: TemplateModel) -> Outcome:
            async with semaphore:
                return await self._process_template(template, binder_defaults, now)

        outcomes = await asyncio.gather(*(bounded(t) for t in templates), return_exceptions=True)

        summary = GenerationResult(timestamp=now)
        for template, outcome in zip(templates, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(
                    "generator_template_crashed", template_id=str(template.id), error=str(outcome)
                )
                summary.errors += 1
            elif outcome is Outcome.GENERATED:
                summary.generated += 1
            elif outcome is Outcome.SKIPPED:
                summary.skipped += 1
            else:
                summary.errors += 1

        logger.info(
            "generator_run_complete",
            generated=summary.generated,
            skipped=summary.skipped,
            errors=summary.errors,
        )
        return summary

    async def _binder_defaults(self, binder_ids: set[UUID]) -> dict[UUID, UUID]:
        """Map binder -> earliest-assigned profile."""
        if not binder_ids:
            return {}

        async with self.db.session() as session:
            result = await session.execute(
                select(BinderAssignmentModel.binder_id, BinderAssignmentModel.profile_id)
                .where(BinderAssignmentModel.binder_id.in_(binder_ids))
                .order_by(BinderAssignmentModel.assigned_at.asc())
            )
            defaults: dict[UUID, UUID] = {}
            for binder_id, profile_id in result.all():
                defaults.setdefault(binder_id, profile_id)
            return defaults

    async def _process_template(
        self, template: TemplateModel, binder_defaults: dict[UUID, UUID], now: datetime
    ) -> Outcome:
        try:
            due_at = next_due_date(template.frequency, now)
        except ValidationError as e:
            logger.warning("generator_bad_frequency", template_id=str(template.id), error=e.message)
            return Outcome.ERROR

        try:
            async with self.db.session() as session:
                open_instance = await session.scalar(
                    select(InstanceModel.id)
                    .where(
                        InstanceModel.template_id == template.id,
                        InstanceModel.status.in_(OPEN_STATUSES),
                    )
                    .limit(1)
                )
                if open_instance is not None:
                    return Outcome.SKIPPED

                if due_at is None:
                    # as_needed templates are never scheduled automatically
                    return Outcome.SKIPPED

                assignee = template.default_assignee_profile_id
                if assignee is None and template.binder_id is not None:
                    assignee = binder_defaults.get(template.binder_id)

                instance = InstanceModel(
                    template_id=template.id,
                    location_id=template.location_id,
                    due_at=due_at,
                    assigned_to_profile_id=assignee,
                    status=InstanceStatus.PENDING.value,
                    created_by="system",
                )
                session.add(instance)
                await session.flush()
                instance_id = instance.id
        except SQLAlchemyError as e:
            logger.error("generator_template_failed", template_id=str(template.id), error=str(e))
            return Outcome.ERROR

        logger.info(
            "instance_generated",
            instance_id=str(instance_id),
            template_id=str(template.id),
            due_at=due_at.isoformat(),
        )
        self.dispatcher.spawn(
            "append_generated_event",
            lambda: self.events.append_quietly(
                instance_id,
                EventType.CREATED,
                None,
                {"source": "generator", "template_id": str(template.id), "due_at": due_at.isoformat()},
            ),
        )
        return Outcome.GENERATED
