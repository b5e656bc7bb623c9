"""arq worker running the scheduled jobs.

Start with ``arq inspectra.worker.WorkerSettings``. Generation runs hourly and
the reminder sweep once a day; both can also be enqueued on demand.
"""

from __future__ import annotations

import os
from typing import Any

import structlog
from arq import cron
from arq.connections import RedisSettings

from inspectra.config import AppConfig
from inspectra.context import EngineContext
from inspectra.core.logging import bind_request_context, configure_logging

logger = structlog.get_logger(__name__)


async def startup(ctx: dict[str, Any]) -> None:
    """Initialize resources when worker starts."""
    config = AppConfig.from_env()
    configure_logging(config.log_level, config.json_logs)
    ctx["engine"] = EngineContext.build(config)
    logger.info("worker_started")


async def shutdown(ctx: dict[str, Any]) -> None:
    """Cleanup resources when worker stops."""
    engine: EngineContext | None = ctx.get("engine")
    if engine is not None:
        await engine.aclose()
    logger.info("worker_stopped")


async def generate_instances_job(ctx: dict[str, Any]) -> dict[str, Any]:
    bind_request_context(ctx.get("job_id", "cron"), job="generate_instances")
    engine: EngineContext = ctx["engine"]
    result = await engine.generator.generate_due_instances()
    await engine.dispatcher.drain()
    return result.model_dump(mode="json")


async def send_reminders_job(ctx: dict[str, Any]) -> dict[str, Any]:
    bind_request_context(ctx.get("job_id", "cron"), job="send_reminders")
    engine: EngineContext = ctx["engine"]
    result = await engine.reminders.run()
    return result.model_dump(mode="json")


class WorkerSettings:
    functions = [generate_instances_job, send_reminders_job]
    cron_jobs = [
        cron(generate_instances_job, minute=0, run_at_startup=False),
        cron(send_reminders_job, hour=8, minute=0),
    ]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = RedisSettings.from_dsn(os.getenv("REDIS_URL", "redis://redis:6379/0"))
