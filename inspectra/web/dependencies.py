"""Shared dependencies for Inspectra web routes.

The engine context and session store are created by ``create_app`` and kept
on ``app.state``; routes receive them through FastAPI's Depends() system
instead of importing module-level clients.

Usage:
    from fastapi import Depends
    from inspectra.web.dependencies import get_context

    @router.post("/cron/generate-instances")
    async def generate(ctx: EngineContext = Depends(get_context)):
        return await ctx.generator.generate_due_instances()
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import Request

from inspectra.context import EngineContext

if TYPE_CHECKING:
    from inspectra.web.auth import SessionStore


def get_context(request: Request) -> EngineContext:
    """Engine context built at application startup."""
    return request.app.state.context


def get_session_store(request: Request) -> SessionStore:
    return request.app.state.sessions
