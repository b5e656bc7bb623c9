"""Append-only audit trail per instance."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from inspectra.db.connection import Database
from inspectra.db.models import EventModel
from inspectra.models import Event, EventType

logger = structlog.get_logger(__name__)


class EventLog:
    """Append and list instance events. There is no update or delete."""

    def __init__(self, db: Database):
        self.db = db

    async def append(
        self,
        instance_id: UUID,
        event_type: EventType | str,
        actor_id: UUID | None,
        payload: dict[str, Any] | None = None,
        *,
        session: AsyncSession | None = None,
        event_at: datetime | None = None,
    ) -> Event:
        """Record an event. Joins ``session`` when given, otherwise commits its own."""
        row = EventModel(
            inspection_instance_id=instance_id,
            event_type=EventType(event_type).value,
            event_at=event_at or datetime.now(timezone.utc),
            actor_profile_id=actor_id,
            payload=payload or {},
        )

        if session is not None:
            session.add(row)
            await session.flush()
        else:
            async with self.db.session() as own_session:
                own_session.add(row)
                await own_session.flush()

        return Event.model_validate(row)

    async def append_quietly(
        self,
        instance_id: UUID,
        event_type: EventType | str,
        actor_id: UUID | None,
        payload: dict[str, Any] | None = None,
        *,
        event_at: datetime | None = None,
    ) -> Event | None:
        """Best-effort ``append``: failures are logged and swallowed."""
        try:
            return await self.append(instance_id, event_type, actor_id, payload, event_at=event_at)
        except (SQLAlchemyError, ValueError) as e:
            logger.error(
                "event_append_failed",
                instance_id=str(instance_id),
                event_type=str(event_type),
                error=str(e),
            )
            return None

    async def list(self, instance_id: UUID) -> list[Event]:
        """All events for an instance, oldest first."""
        async with self.db.session() as session:
            result = await session.execute(
                select(EventModel)
                .where(EventModel.inspection_instance_id == instance_id)
                .order_by(EventModel.event_at.asc())
            )
            return [Event.model_validate(row) for row in result.scalars().all()]
