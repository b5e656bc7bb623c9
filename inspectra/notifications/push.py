"""Browser push fan-out with expired-subscription pruning.

Every subscription is attempted independently and concurrently. Endpoints
answering 404 or 410 are permanently gone and are deleted; any other failure
is logged and the subscription is kept for the next attempt.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol
from uuid import UUID

import structlog
from pywebpush import WebPushException, webpush
from sqlalchemy import delete, select

from inspectra.config import PushConfig
from inspectra.db.connection import Database
from inspectra.db.models import ProfileLocationModel, ProfileModel, PushSubscriptionModel
from inspectra.models import PushNotification, PushResult

logger = structlog.get_logger(__name__)

GONE_STATUS_CODES = frozenset({404, 410})


@dataclass(frozen=True, slots=True)
class SubscriptionInfo:
    endpoint: str
    p256dh: str
    auth: str

    def as_webpush(self) -> dict:
        return {"endpoint": self.endpoint, "keys": {"p256dh": self.p256dh, "auth": self.auth}}


class PushDeliveryError(Exception):
    """Delivery failed; ``status_code`` is the push service's answer if any."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def gone(self) -> bool:
        return self.status_code in GONE_STATUS_CODES


class PushTransport(Protocol):
    async def send(self, subscription: SubscriptionInfo, payload: str) -> None: ...


class WebPushTransport:
    """VAPID web push through pywebpush, run in a worker thread with a timeout."""

    def __init__(self, config: PushConfig):
        self.config = config

    async def send(self, subscription: SubscriptionInfo, payload: str) -> None:
        try:
            await asyncio.wait_for(
                asyncio.to_thread(
                    webpush,
                    subscription_info=subscription.as_webpush(),
                    data=payload,
                    vapid_private_key=self.config.vapid_private_key,
                    vapid_claims={"sub": self.config.vapid_subject},
                    timeout=self.config.timeout_seconds,
                ),
                timeout=self.config.timeout_seconds,
            )
        except WebPushException as e:
            status_code = e.response.status_code if e.response is not None else None
            raise PushDeliveryError(str(e), status_code=status_code) from e
        except asyncio.TimeoutError as e:
            raise PushDeliveryError("push delivery timed out") from e


class PushFanout:
    """Deliver a notification to every subscription of the resolved profiles."""

    def __init__(self, db: Database, transport: PushTransport | None):
        self.db = db
        self.transport = transport

    async def send_to_profile(self, profile_id: UUID, notification: PushNotification) -> PushResult:
        return await self._send_to_profiles([profile_id], notification)

    async def send_to_location(self, location_id: UUID, notification: PushNotification) -> PushResult:
        async with self.db.session() as session:
            result = await session.execute(
                select(ProfileLocationModel.profile_id).where(
                    ProfileLocationModel.location_id == location_id
                )
            )
            profile_ids = list(result.scalars().all())
        return await self._send_to_profiles(profile_ids, notification)

    async def send_to_roles_in_location(
        self, location_id: UUID, roles: list[str], notification: PushNotification
    ) -> PushResult:
        async with self.db.session() as session:
            result = await session.execute(
                select(ProfileModel.id)
                .join(ProfileLocationModel, ProfileLocationModel.profile_id == ProfileModel.id)
                .where(ProfileLocationModel.location_id == location_id, ProfileModel.role.in_(roles))
            )
            profile_ids = list(result.scalars().all())
        return await self._send_to_profiles(profile_ids, notification)

    async def subscribe(
        self,
        profile_id: UUID,
        endpoint: str,
        p256dh: str,
        auth: str,
        user_agent: str | None = None,
    ) -> None:
        """Register or refresh a subscription, keyed on (profile, endpoint)."""
        async with self.db.session() as session:
            result = await session.execute(
                select(PushSubscriptionModel).where(
                    PushSubscriptionModel.profile_id == profile_id,
                    PushSubscriptionModel.endpoint == endpoint,
                )
            )
            subscription = result.scalar_one_or_none()
            if subscription is None:
                subscription = PushSubscriptionModel(profile_id=profile_id, endpoint=endpoint)
                session.add(subscription)

            subscription.p256dh = p256dh
            subscription.auth = auth
            subscription.user_agent = user_agent
            subscription.last_seen_at = datetime.now(timezone.utc)

        logger.info("push_subscribed", profile_id=str(profile_id))

    async def unsubscribe(self, profile_id: UUID, endpoint: str) -> int:
        async with self.db.session() as session:
            result = await session.execute(
                delete(PushSubscriptionModel).where(
                    PushSubscriptionModel.profile_id == profile_id,
                    PushSubscriptionModel.endpoint == endpoint,
                )
            )
        logger.info("push_unsubscribed", profile_id=str(profile_id), removed=result.rowcount)
        return result.rowcount

    async def _send_to_profiles(
        self, profile_ids: list[UUID], notification: PushNotification
    ) -> PushResult:
        if not profile_ids:
            return PushResult()

        async with self.db.session() as session:
            result = await session.execute(
                select(PushSubscriptionModel).where(PushSubscriptionModel.profile_id.in_(profile_ids))
            )
            subscriptions = [
                SubscriptionInfo(endpoint=row.endpoint, p256dh=row.p256dh, auth=row.auth)
                for row in result.scalars().all()
            ]

        if not subscriptions:
            return PushResult()

        if self.transport is None:
            logger.warning("push_not_configured", subscriptions=len(subscriptions))
            return PushResult(failed=len(subscriptions))

        payload = notification.model_dump_json(exclude_none=True)
        outcomes = await asyncio.gather(
            *(self.transport.send(sub, payload) for sub in subscriptions),
            return_exceptions=True,
        )

        sent = 0
        failed = 0
        expired: list[str] = []
        for sub, outcome in zip(subscriptions, outcomes):
            if not isinstance(outcome, BaseException):
                sent += 1
                continue
            failed += 1
            if isinstance(outcome, PushDeliveryError) and outcome.gone:
                expired.append(sub.endpoint)
            else:
                logger.warning("push_delivery_failed", error=str(outcome))

        if expired:
            await self._prune(expired)

        logger.info("push_fanout_complete", sent=sent, failed=failed, pruned=len(expired))
        return PushResult(sent=sent, failed=failed)

    async def _prune(self, endpoints: list[str]) -> None:
        async with self.db.session() as session:
            await session.execute(
                delete(PushSubscriptionModel).where(PushSubscriptionModel.endpoint.in_(endpoints))
            )
        logger.info("push_subscriptions_pruned", count=len(endpoints))
