"""Inspectra web route modules.

Each module exports a ``router`` (APIRouter) that ``create_app`` includes.
Shared dependencies live in ``inspectra.web.dependencies`` and request
models in ``inspectra.web.models``.
"""

from inspectra.web.routes import cron, health, inbound_webhooks, instances, push, signatures

__all__ = [
    "cron",
    "health",
    "inbound_webhooks",
    "instances",
    "push",
    "signatures",
]
