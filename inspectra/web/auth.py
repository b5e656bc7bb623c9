"""Session-based actor resolution for the Inspectra API.

Sessions live in Redis under ``session:<token>`` with a TTL, falling back to
process memory when Redis is unreachable (development only). A session holds
the profile id; the profile's role and location memberships are loaded fresh
on every request and turned into an ``Actor``.
"""

from __future__ import annotations

import json
import secrets
from datetime import datetime, timedelta, timezone
from uuid import UUID

import redis.asyncio as redis
import structlog
from fastapi import Cookie, Depends, Header
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from sqlalchemy import select

from inspectra.config import SessionConfig
from inspectra.context import EngineContext
from inspectra.core.errors import Unauthorized
from inspectra.db.models import ProfileLocationModel, ProfileModel
from inspectra.models import Actor, Role
from inspectra.web.dependencies import get_context, get_session_store

logger = structlog.get_logger(__name__)

# Session expiry
SESSION_EXPIRY_HOURS = 24
SESSION_EXPIRY_SECONDS = SESSION_EXPIRY_HOURS * 3600

DEV_PROFILE_ID = UUID(int=0)


class SessionStore:
    """Token -> session payload, in Redis with an in-memory fallback."""

    def __init__(self, config: SessionConfig, client: redis.Redis | None = None):
        self.config = config
        self._client = client or redis.from_url(config.redis_url, decode_responses=True)
        self._memory: dict[str, dict] = {}

    async def create(self, profile_id: UUID) -> str:
        token = secrets.token_urlsafe(32)
        now = datetime.now(timezone.utc)
        data = {
            "profile_id": str(profile_id),
            "created_at": now.isoformat(),
            "expires_at": (now + timedelta(hours=SESSION_EXPIRY_HOURS)).isoformat(),
        }

        try:
            await self._client.setex(f"session:{token}", SESSION_EXPIRY_SECONDS, json.dumps(data))
        except (RedisConnectionError, RedisTimeoutError):
            logger.warning("session_store_fallback", reason="redis unavailable")
            self._memory[token] = data

        return token

    async def get(self, token: str | None) -> dict | None:
        if not token:
            return None

        try:
            raw = await self._client.get(f"session:{token}")
        except (RedisConnectionError, RedisTimeoutError):
            data = self._memory.get(token)
            if data is None:
                return None
            if self._expired(data):
                del self._memory[token]
                return None
            return data

        if not raw:
            return None

        try:
            data = json.loads(raw)
            # Redis TTL should handle this, but double-check
            if self._expired(data):
                await self._client.delete(f"session:{token}")
                return None
            return data
        except (json.JSONDecodeError, KeyError, ValueError):
            await self._client.delete(f"session:{token}")
            return None

    async def delete(self, token: str) -> None:
        self._memory.pop(token, None)
        try:
            await self._client.delete(f"session:{token}")
        except (RedisConnectionError, RedisTimeoutError):
            logger.warning("session_delete_skipped", reason="redis unavailable")

    async def aclose(self) -> None:
        await self._client.aclose()

    @staticmethod
    def _expired(data: dict) -> bool:
        return datetime.now(timezone.utc) > datetime.fromisoformat(data["expires_at"])


def _bearer_token(authorization: str | None) -> str | None:
    if authorization and authorization.lower().startswith("bearer "):
        return authorization[7:].strip() or None
    return None


async def load_actor(ctx: EngineContext, profile_id: UUID) -> Actor | None:
    """Build an ``Actor`` from the profile and its location memberships."""
    async with ctx.db.session() as session:
        profile = await session.get(ProfileModel, profile_id)
        if profile is None:
            return None
        result = await session.execute(
            select(ProfileLocationModel.location_id).where(
                ProfileLocationModel.profile_id == profile_id
            )
        )
        return Actor(
            profile_id=profile.id,
            role=profile.role,
            location_ids=frozenset(result.scalars().all()),
            user_id=profile.user_id,
            email=profile.email,
        )


async def get_current_actor(
    ctx: EngineContext = Depends(get_context),
    store: SessionStore = Depends(get_session_store),
    session: str | None = Cookie(default=None),
    authorization: str | None = Header(default=None),
) -> Actor:
    """Dependency resolving the calling actor.

    Raises:
        Unauthorized: Missing, expired or unknown session
    """
    if ctx.config.session.auth_disabled:
        return Actor(profile_id=DEV_PROFILE_ID, role=Role.OWNER.value, unrestricted=True)

    token = session or _bearer_token(authorization)
    data = await store.get(token)
    if not data:
        raise Unauthorized("Authentication required")

    try:
        profile_id = UUID(data["profile_id"])
    except (KeyError, ValueError):
        raise Unauthorized("Invalid session") from None

    actor = await load_actor(ctx, profile_id)
    if actor is None:
        raise Unauthorized("Profile not found")
    return actor
