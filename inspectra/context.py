"""Explicitly constructed engine context.

Everything that touches the database, object storage, push, webhooks or
email is built here once, from an ``AppConfig``, and handed to whoever needs
it: the FastAPI app, the arq worker or the CLI. Tests build one with fakes.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from inspectra.config import AppConfig
from inspectra.core.tasks import BackgroundDispatcher
from inspectra.db.connection import Database
from inspectra.lifecycle.events import EventLog
from inspectra.lifecycle.signatures import SignatureGuard
from inspectra.lifecycle.state_machine import InstanceStateMachine
from inspectra.notifications.email import EmailOutbox, EmailSender, SmtpEmailSender
from inspectra.notifications.push import PushFanout, PushTransport, WebPushTransport
from inspectra.notifications.webhooks import WebhookSender
from inspectra.scheduling.generator import InstanceGenerator
from inspectra.scheduling.reminders import ReminderSweep
from inspectra.storage import ObjectStorage, SupabaseStorage

logger = structlog.get_logger(__name__)


@dataclass
class EngineContext:
    config: AppConfig
    db: Database
    dispatcher: BackgroundDispatcher
    events: EventLog
    push: PushFanout
    webhooks: WebhookSender
    outbox: EmailOutbox
    storage: ObjectStorage | None
    lifecycle: InstanceStateMachine
    signatures: SignatureGuard
    generator: InstanceGenerator
    reminders: ReminderSweep

    @classmethod
    def build(
        cls,
        config: AppConfig,
        *,
        db: Database | None = None,
        storage: ObjectStorage | None = None,
        push_transport: PushTransport | None = None,
        webhooks: WebhookSender | None = None,
        email_sender: EmailSender | None = None,
    ) -> EngineContext:
        """Wire every component. Collaborators not passed in are built from ``config``."""
        db = db or Database.from_config(config.db)
        dispatcher = BackgroundDispatcher(timeout_seconds=config.side_effect_timeout_seconds)
        events = EventLog(db)

        if push_transport is None and config.push.enabled:
            push_transport = WebPushTransport(config.push)
        if storage is None and config.storage.url and config.storage.service_key:
            storage = SupabaseStorage(config.storage)

        push = PushFanout(db, push_transport)
        webhooks = webhooks or WebhookSender(config.webhooks)
        outbox = EmailOutbox(db, email_sender or SmtpEmailSender(config.email), config.email.app_url)

        if push_transport is None:
            logger.warning("push_disabled", reason="VAPID keys not configured")
        if storage is None:
            logger.warning("storage_disabled", reason="STORAGE_URL not configured")

        return cls(
            config=config,
            db=db,
            dispatcher=dispatcher,
            events=events,
            push=push,
            webhooks=webhooks,
            outbox=outbox,
            storage=storage,
            lifecycle=InstanceStateMachine(db, events, dispatcher, push, webhooks, outbox),
            signatures=SignatureGuard(db, storage),
            generator=InstanceGenerator(
                db, events, dispatcher, concurrency=config.scheduler.generator_concurrency
            ),
            reminders=ReminderSweep(db, events, push, outbox, config),
        )

    async def aclose(self) -> None:
        """Finish outstanding side effects, then release clients and connections."""
        await self.dispatcher.drain()
        await self.webhooks.aclose()
        if isinstance(self.storage, SupabaseStorage):
            await self.storage.aclose()
        await self.db.dispose()
