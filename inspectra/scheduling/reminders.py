"""Reminder sweep: overdue and upcoming reminders plus owner escalation.

Each instance receives a given reminder type at most once per UTC day; the
``reminder_sent`` events already on the instance are the record of what went
out. Unassigned overdue instances are rolled into one escalation email to the
owner address, likewise at most once per instance per day via ``escalated``
events.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass, fields
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

import structlog
from dateutil.relativedelta import relativedelta
from sqlalchemy import Select, or_, select

from inspectra.config import AppConfig
from inspectra.db.connection import Database
from inspectra.db.models import (
    EventModel,
    InstanceModel,
    LocationModel,
    ReminderSettingsModel,
    TemplateModel,
)
from inspectra.lifecycle.events import EventLog
from inspectra.models import OPEN_STATUSES, EventType, PushNotification, PushResult, ReminderResult
from inspectra.notifications.email import EmailOutbox
from inspectra.notifications.push import PushFanout

logger = structlog.get_logger(__name__)

LOOKAHEAD = relativedelta(months=6)

REMINDER_TITLES = {
    "overdue": ("Overdue Inspection", "{task} at {location} is overdue"),
    "due_today": ("Inspection Due Today", "{task} at {location} is due today"),
    "upcoming": ("Upcoming Inspection", "{task} at {location} is coming up soon"),
    "monthly_warning": ("Inspection Reminder", "{task} at {location} is due soon - monthly reminder"),
}


@dataclass(frozen=True)
class ReminderCadence:
    """Reminder knobs; the defaults apply when no settings row exists."""

    weekly_due_day: bool = True
    monthly_days_before: int = 7
    monthly_due_day: bool = True
    yearly_months_before: int = 6
    yearly_monthly_reminder: bool = True
    yearly_due_day: bool = True
    three_year_months_before: int = 6
    three_year_monthly_reminder: bool = True
    three_year_due_day: bool = True

    @classmethod
    def from_row(cls, row: ReminderSettingsModel | None) -> ReminderCadence:
        if row is None:
            return cls()
        return cls(**{f.name: getattr(row, f.name) for f in fields(cls)})


def reminder_type_for(
    due_at: datetime, frequency: str, cadence: ReminderCadence, now: datetime
) -> str | None:
    """Pick the reminder due today for an instance, if any."""
    if due_at < now:
        return "overdue"

    due_day = due_at.astimezone(timezone.utc).date()
    today = now.astimezone(timezone.utc).date()
    days_until = (due_day - today).days

    if frequency == "weekly":
        return "due_today" if days_until == 0 and cadence.weekly_due_day else None

    if frequency in ("monthly", "quarterly"):
        if days_until == 0:
            return "due_today" if cadence.monthly_due_day else None
        if days_until == cadence.monthly_days_before:
            return "upcoming"
        return None

    if frequency in ("yearly", "annual"):
        months_before, monthly, on_due_day = (
            cadence.yearly_months_before,
            cadence.yearly_monthly_reminder,
            cadence.yearly_due_day,
        )
    elif frequency == "every_3_years":
        months_before, monthly, on_due_day = (
            cadence.three_year_months_before,
            cadence.three_year_monthly_reminder,
            cadence.three_year_due_day,
        )
    else:
        return None

    if days_until == 0:
        return "due_today" if on_due_day else None
    # One reminder a month, on the due date's day of month, inside the warning window
    window_start = due_day - relativedelta(months=months_before)
    if monthly and today >= window_start and today.day == due_day.day:
        return "monthly_warning"
    return None


def _day_start(now: datetime) -> datetime:
    return now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)


@dataclass
class _Candidate:
    instance_id: UUID
    location_id: UUID
    due_at: datetime
    profile_id: UUID | None
    email: str | None
    task: str
    location_name: str | None
    reminder_type: str

    @classmethod
    def from_row(
        cls,
        row: InstanceModel,
        task: str | None,
        frequency: str,
        location_name: str | None,
        reminder_type: str,
    ) -> _Candidate:
        return cls(
            instance_id=row.id,
            location_id=row.location_id,
            due_at=row.due_at,
            profile_id=row.assigned_to_profile_id,
            email=row.assigned_to_email,
            task=task or "Inspection",
            location_name=location_name,
            reminder_type=reminder_type,
        )

    def payload(self) -> dict[str, Any]:
        return {
            "instance_id": str(self.instance_id),
            "location_id": str(self.location_id),
            "location_name": self.location_name,
            "task": self.task,
            "due_at": self.due_at.isoformat(),
            "reminder_type": self.reminder_type,
        }


class ReminderSweep:
    """Queue and deliver the day's reminders, then drain the email outbox."""

    def __init__(
        self,
        db: Database,
        events: EventLog,
        push: PushFanout,
        outbox: EmailOutbox,
        config: AppConfig,
    ):
        self.db = db
        self.events = events
        self.push = push
        self.outbox = outbox
        self.batch_limit = config.scheduler.reminder_batch_limit
        self.notification_batch_limit = config.scheduler.notification_batch_limit
        self.owner_email = config.email.owner_escalation_email

    async def run(self, now: datetime | None = None) -> ReminderResult:
        now = now or datetime.now(timezone.utc)
        result = ReminderResult(timestamp=now)

        cadence = await self._cadence()
        due = await self._candidates(cadence, now)
        result.processed = len(due)

        deliveries = await asyncio.gather(*(self._deliver(c, now) for c in due), return_exceptions=True)
        for candidate, outcome in zip(due, deliveries):
            if isinstance(outcome, BaseException):
                logger.error(
                    "reminder_delivery_failed", instance_id=str(candidate.instance_id), error=str(outcome)
                )
                result.push_failed += 1
                continue
            push, queued = outcome
            result.push_sent += push.sent
            result.push_failed += push.failed
            result.queued += int(queued)
            result.by_type[candidate.reminder_type] = result.by_type.get(candidate.reminder_type, 0) + 1

        escalated = await self.escalate(now)
        result.escalated_instances = escalated
        result.escalation_sent = escalated > 0

        result.email_sent, result.email_failed = await self.outbox.drain(self.notification_batch_limit)

        logger.info(
            "reminder_sweep_complete",
            processed=result.processed,
            queued=result.queued,
            push_sent=result.push_sent,
            email_sent=result.email_sent,
            escalated=escalated,
        )
        return result

    async def escalate(self, now: datetime | None = None) -> int:
        """Email the owner about unassigned overdue instances. Returns how many were escalated."""
        now = now or datetime.now(timezone.utc)
        if not self.owner_email:
            logger.debug("escalation_skipped_no_owner_email")
            return 0

        escalated_today = select(EventModel.id).where(
            EventModel.inspection_instance_id == InstanceModel.id,
            EventModel.event_type == EventType.ESCALATED.value,
            EventModel.event_at >= _day_start(now),
        )
        async with self.db.session() as session:
            result = await session.execute(
                select(InstanceModel, TemplateModel.task, LocationModel.name)
                .join(TemplateModel, TemplateModel.id == InstanceModel.template_id)
                .outerjoin(LocationModel, LocationModel.id == InstanceModel.location_id)
                .where(
                    InstanceModel.status.in_(OPEN_STATUSES),
                    InstanceModel.due_at < now,
                    InstanceModel.assigned_to_profile_id.is_(None),
                    InstanceModel.assigned_to_email.is_(None),
                    ~escalated_today.exists(),
                )
                .order_by(InstanceModel.due_at.asc())
                .limit(self.batch_limit)
            )
            pending = [(row.id, row.due_at, task, name) for row, task, name in result.all()]

        if not pending:
            return 0

        by_location: dict[str, list[dict[str, str]]] = defaultdict(list)
        for instance_id, due_at, task, location_name in pending:
            by_location[location_name or "Unknown Location"].append(
                {"id": str(instance_id), "task": task or "Inspection", "due_at": due_at.isoformat()}
            )

        count = len(pending)
        await self.outbox.queue(
            "escalation",
            self.owner_email,
            f"Action Required: {count} unassigned overdue inspection{'s' if count > 1 else ''}",
            {
                "count": count,
                "by_location": dict(by_location),
                "task": f"{count} unassigned overdue inspections",
                "due_at": now.isoformat(),
            },
        )

        for instance_id, *_ in pending:
            await self.events.append_quietly(
                instance_id, EventType.ESCALATED, None, {"to_email": self.owner_email}, event_at=now
            )

        logger.info("escalation_queued", count=count)
        return count

    async def _cadence(self) -> ReminderCadence:
        async with self.db.session() as session:
            row = await session.scalar(select(ReminderSettingsModel).limit(1))
            return ReminderCadence.from_row(row)

    async def _candidates(self, cadence: ReminderCadence, now: datetime) -> list[_Candidate]:
        """Assigned instances owed a reminder today and not yet sent one of that type.

        Overdue and upcoming instances each get their own batch, so an overdue
        backlog cannot crowd out due-today and advance reminders.
        """
        return await self._overdue(now) + await self._upcoming(cadence, now)

    def _open_assigned(self) -> Select:
        return (
            select(InstanceModel, TemplateModel.task, TemplateModel.frequency, LocationModel.name)
            .join(TemplateModel, TemplateModel.id == InstanceModel.template_id)
            .outerjoin(LocationModel, LocationModel.id == InstanceModel.location_id)
            .where(
                InstanceModel.status.in_(OPEN_STATUSES),
                or_(
                    InstanceModel.assigned_to_profile_id.is_not(None),
                    InstanceModel.assigned_to_email.is_not(None),
                ),
            )
            .order_by(InstanceModel.due_at.asc(), InstanceModel.id.asc())
        )

    async def _overdue(self, now: datetime) -> list[_Candidate]:
        sent_today = select(EventModel.id).where(
            EventModel.inspection_instance_id == InstanceModel.id,
            EventModel.event_type == EventType.REMINDER_SENT.value,
            EventModel.event_at >= _day_start(now),
            EventModel.payload["reminder_type"].as_string() == "overdue",
        )
        async with self.db.session() as session:
            result = await session.execute(
                self._open_assigned()
                .where(InstanceModel.due_at < now, ~sent_today.exists())
                .limit(self.batch_limit)
            )
            return [_Candidate.from_row(*row, reminder_type="overdue") for row in result.all()]

    async def _upcoming(self, cadence: ReminderCadence, now: datetime) -> list[_Candidate]:
        """Page through the look-ahead window until a full batch of eligible rows is found."""
        query = self._open_assigned().where(
            InstanceModel.due_at >= now, InstanceModel.due_at <= now + LOOKAHEAD
        )
        candidates: list[_Candidate] = []
        offset = 0
        while len(candidates) < self.batch_limit:
            async with self.db.session() as session:
                rows = (await session.execute(query.offset(offset).limit(self.batch_limit))).all()
            offset += len(rows)

            page = []
            for row, task, frequency, location_name in rows:
                reminder_type = reminder_type_for(row.due_at, frequency, cadence, now)
                if reminder_type is not None:
                    page.append(_Candidate.from_row(row, task, frequency, location_name, reminder_type))

            sent_today = await self._reminders_sent_today([c.instance_id for c in page], now)
            page = [c for c in page if c.reminder_type not in sent_today.get(c.instance_id, set())]
            candidates.extend(page[: self.batch_limit - len(candidates)])

            if len(rows) < self.batch_limit:
                break
        return candidates

    async def _reminders_sent_today(self, instance_ids: list[UUID], now: datetime) -> dict[UUID, set[str]]:
        """Map instance -> reminder types already sent since midnight UTC."""
        if not instance_ids:
            return {}

        async with self.db.session() as session:
            result = await session.execute(
                select(EventModel.inspection_instance_id, EventModel.payload).where(
                    EventModel.inspection_instance_id.in_(instance_ids),
                    EventModel.event_type == EventType.REMINDER_SENT.value,
                    EventModel.event_at >= _day_start(now),
                )
            )
            seen: dict[UUID, set[str]] = defaultdict(set)
            for instance_id, payload in result.all():
                reminder_type = (payload or {}).get("reminder_type")
                if reminder_type:
                    seen[instance_id].add(reminder_type)
            return seen

    async def _deliver(self, candidate: _Candidate, now: datetime) -> tuple[PushResult, bool]:
        title, body = REMINDER_TITLES[candidate.reminder_type]
        body = body.format(task=candidate.task, location=candidate.location_name or "your location")

        push = PushResult()
        if candidate.profile_id:
            push = await self.push.send_to_profile(
                candidate.profile_id,
                PushNotification(
                    title=title,
                    body=body,
                    url=f"/inspections/{candidate.instance_id}",
                    tag=f"{candidate.reminder_type}-{candidate.instance_id}",
                ),
            )

        queued = False
        if candidate.email:
            await self.outbox.queue(candidate.reminder_type, candidate.email, title, candidate.payload())
            queued = True

        await self.events.append_quietly(
            candidate.instance_id,
            EventType.REMINDER_SENT,
            None,
            {
                "reminder_type": candidate.reminder_type,
                "push_sent": push.sent,
                "email_queued": queued,
            },
            event_at=now,
        )
        return push, queued
