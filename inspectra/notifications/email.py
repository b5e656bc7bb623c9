"""Email notifications through a database outbox.

Producers queue rows in ``notification_outbox``; the reminder sweep drains
queued rows oldest first and hands each to an ``EmailSender``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Any, Protocol
from uuid import UUID

import aiosmtplib
import structlog
from sqlalchemy import select

from inspectra.config import EmailConfig
from inspectra.db.connection import Database
from inspectra.db.models import NotificationOutboxModel

logger = structlog.get_logger(__name__)

NOTIFICATION_TYPES = (
    "reminder",
    "overdue",
    "escalation",
    "due_today",
    "upcoming",
    "monthly_warning",
    "assignment",
)

_HEADLINES = {
    "reminder": "Inspection reminder",
    "overdue": "Inspection overdue",
    "escalation": "Unassigned overdue inspections",
    "due_today": "Inspection due today",
    "upcoming": "Upcoming inspection",
    "monthly_warning": "Inspection due this month",
    "assignment": "New inspection assignment",
}


class EmailSender(Protocol):
    async def send(self, to_email: str, subject: str, html: str) -> None: ...


class SmtpEmailSender:
    """Deliver HTML mail over SMTP with aiosmtplib."""

    def __init__(self, config: EmailConfig):
        self.config = config

    @property
    def configured(self) -> bool:
        return bool(self.config.smtp_user and self.config.smtp_password)

    async def send(self, to_email: str, subject: str, html: str) -> None:
        if not self.configured:
            logger.warning("smtp_not_configured", to_email=to_email, subject=subject)
            return

        message = MIMEMultipart("alternative")
        message["From"] = self.config.from_email
        message["To"] = to_email
        message["Subject"] = subject
        message.attach(MIMEText(html, "html"))

        await aiosmtplib.send(
            message,
            hostname=self.config.smtp_host,
            port=self.config.smtp_port,
            username=self.config.smtp_user,
            password=self.config.smtp_password,
            use_tls=self.config.smtp_port == 465,
            start_tls=self.config.smtp_port != 465,
        )
        logger.info("email_sent", to_email=to_email, subject=subject)


def render_notification(notification_type: str, payload: dict[str, Any], app_url: str) -> str:
    """Build the HTML body for an outbox row.

    Raises:
        ValueError: If the notification type is unknown
    """
    if notification_type not in _HEADLINES:
        raise ValueError(f"Unknown notification type: {notification_type}")

    task = escape(str(payload.get("task") or "Inspection"))
    due_at = escape(str(payload.get("due_at") or ""))
    location = payload.get("location_name")

    rows = [f"<p><strong>Task:</strong> {task}</p>"]
    if due_at:
        rows.append(f"<p><strong>Due:</strong> {due_at}</p>")
    if location:
        rows.append(f"<p><strong>Location:</strong> {escape(str(location))}</p>")

    by_location = payload.get("by_location") or {}
    for location_name, instances in by_location.items():
        items = "".join(
            f"<li>{escape(str(item.get('task', 'Inspection')))} (due {escape(str(item.get('due_at', '')))})</li>"
            for item in instances
        )
        rows.append(f"<h3>{escape(str(location_name))}</h3><ul>{items}</ul>")

    link = ""
    if payload.get("instance_id"):
        link = f'<p><a href="{app_url.rstrip("/")}/inspections/{payload["instance_id"]}">Open inspection</a></p>'

    return f"""
        <html>
        <body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
            <h1>{_HEADLINES[notification_type]}</h1>
            {"".join(rows)}
            {link}
        </body>
        </html>
        """


class EmailOutbox:
    """Queue and drain ``notification_outbox`` rows."""

    def __init__(self, db: Database, sender: EmailSender, app_url: str = "http://localhost:3000"):
        self.db = db
        self.sender = sender
        self.app_url = app_url

    async def queue(
        self, notification_type: str, to_email: str, subject: str, payload: dict[str, Any]
    ) -> UUID:
        if notification_type not in NOTIFICATION_TYPES:
            raise ValueError(f"Unknown notification type: {notification_type}")

        async with self.db.session() as session:
            row = NotificationOutboxModel(
                type=notification_type,
                to_email=to_email,
                subject=subject,
                payload=payload,
                status="queued",
            )
            session.add(row)
            await session.flush()
            row_id = row.id

        logger.info("notification_queued", type=notification_type, to_email=to_email)
        return row_id

    async def drain(self, limit: int = 50) -> tuple[int, int]:
        """Send up to ``limit`` queued rows, oldest first. Returns (sent, failed)."""
        async with self.db.session() as session:
            result = await session.execute(
                select(NotificationOutboxModel)
                .where(NotificationOutboxModel.status == "queued")
                .order_by(NotificationOutboxModel.created_at.asc())
                .limit(limit)
            )
            queued = [
                (row.id, row.type, row.to_email, row.subject, dict(row.payload or {}))
                for row in result.scalars().all()
            ]

        sent = 0
        failed = 0
        for row_id, notification_type, to_email, subject, payload in queued:
            try:
                html = render_notification(notification_type, payload, self.app_url)
                await self.sender.send(to_email, subject, html)
            except (ValueError, aiosmtplib.SMTPException, OSError) as e:
                failed += 1
                logger.warning("notification_send_failed", id=str(row_id), error=str(e))
                await self._mark(row_id, "failed", error=str(e))
                continue

            sent += 1
            await self._mark(row_id, "sent")

        return sent, failed

    async def _mark(self, row_id: UUID, status: str, error: str | None = None) -> None:
        async with self.db.session() as session:
            row = await session.get(NotificationOutboxModel, row_id)
            if row is None:
                return
            row.status = status
            row.error = error
            if status == "sent":
                row.sent_at = datetime.now(timezone.utc)
