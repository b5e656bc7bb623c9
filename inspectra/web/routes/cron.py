"""Time-triggered endpoints for external schedulers.

Authenticated with ``Authorization: Bearer <CRON_SECRET>``.
"""

from __future__ import annotations

import hmac

import structlog
from fastapi import APIRouter, Depends, Header

from inspectra.context import EngineContext
from inspectra.core.errors import Unauthorized
from inspectra.web.dependencies import get_context

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/cron", tags=["Scheduler"])


def require_cron_secret(
    authorization: str | None = Header(default=None),
    ctx: EngineContext = Depends(get_context),
) -> None:
    """Dependency rejecting callers without the shared cron secret."""
    secret = ctx.config.scheduler.cron_secret
    if not secret:
        logger.warning("cron_secret_not_configured")
        raise Unauthorized("Unauthorized")

    expected = f"Bearer {secret}"
    if not authorization or not hmac.compare_digest(authorization.encode(), expected.encode()):
        raise Unauthorized("Unauthorized")


@router.post("/generate-instances", dependencies=[Depends(require_cron_secret)])
async def generate_instances(ctx: EngineContext = Depends(get_context)):
    """Materialize due instances for every active template."""
    result = await ctx.generator.generate_due_instances()
    return result.model_dump(mode="json")


@router.post("/reminders", dependencies=[Depends(require_cron_secret)])
async def send_reminders(ctx: EngineContext = Depends(get_context)):
    """Queue and deliver today's reminders and drain the email outbox."""
    result = await ctx.reminders.run()
    return result.model_dump(mode="json")
