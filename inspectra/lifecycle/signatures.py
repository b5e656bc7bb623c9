"""Signature capture with at-most-one signature per (instance, signer)."""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from inspectra.core.errors import AlreadySigned, InternalError, NotFound, ValidationError
from inspectra.db.connection import Database
from inspectra.db.models import InstanceModel, SignatureModel
from inspectra.models import Signature
from inspectra.storage import ObjectStorage

logger = structlog.get_logger(__name__)

MIN_URL_EXPIRY = 300
MAX_URL_EXPIRY = 3600


def signature_key(instance_id: UUID, actor_id: UUID, epoch_ms: int | None = None) -> str:
    """Storage key for a signature image, namespaced by instance and signer."""
    if epoch_ms is None:
        epoch_ms = int(time.time() * 1000)
    return f"{instance_id}/{actor_id}-{epoch_ms}.png"


class SignatureGuard:
    """Persist signature images and rows; never overwrites an existing signature."""

    def __init__(self, db: Database, storage: ObjectStorage | None):
        self.db = db
        self.storage = storage

    def _require_storage(self) -> ObjectStorage:
        if self.storage is None:
            raise InternalError("Object storage is not configured")
        return self.storage

    async def sign(
        self,
        instance_id: UUID,
        actor_id: UUID,
        image_bytes: bytes,
        points: list[Any] | dict[str, Any] | None = None,
        device_meta: dict[str, Any] | None = None,
    ) -> Signature:
        """Store the image and record the signature.

        Raises:
            ValidationError: Empty image
            NotFound: Unknown instance
            AlreadySigned: This actor has already signed this instance
        """
        if not image_bytes:
            raise ValidationError("Signature image is required")
        storage = self._require_storage()

        async with self.db.session() as session:
            if await session.get(InstanceModel, instance_id) is None:
                raise NotFound("Inspection not found")
            existing = await session.scalar(
                select(SignatureModel.id).where(
                    SignatureModel.inspection_instance_id == instance_id,
                    SignatureModel.signed_by_profile_id == actor_id,
                )
            )
            if existing is not None:
                raise AlreadySigned("You have already signed this inspection")

        key = await storage.upload(signature_key(instance_id, actor_id), image_bytes, "image/png")

        try:
            async with self.db.session() as session:
                row = SignatureModel(
                    inspection_instance_id=instance_id,
                    signed_by_profile_id=actor_id,
                    signed_at=datetime.now(timezone.utc),
                    signature_image_path=key,
                    signature_points=points,
                    device_meta=device_meta,
                )
                session.add(row)
                await session.flush()
                signature = Signature.model_validate(row)
        except IntegrityError as e:
            # Lost a race against a concurrent submission by the same signer
            logger.warning("signature_race_rejected", instance_id=str(instance_id), key=key)
            raise AlreadySigned("You have already signed this inspection") from e

        logger.info("signature_recorded", instance_id=str(instance_id), signature_id=str(signature.id))
        return signature

    async def list(self, instance_id: UUID) -> list[Signature]:
        async with self.db.session() as session:
            result = await session.execute(
                select(SignatureModel)
                .where(SignatureModel.inspection_instance_id == instance_id)
                .order_by(SignatureModel.signed_at.asc())
            )
            return [Signature.model_validate(row) for row in result.scalars().all()]

    async def image_url(self, instance_id: UUID, signature_id: UUID, expires_in: int = MAX_URL_EXPIRY) -> str:
        """Mint a short-lived URL for a stored signature image."""
        if not MIN_URL_EXPIRY <= expires_in <= MAX_URL_EXPIRY:
            raise ValidationError(
                f"expires_in must be between {MIN_URL_EXPIRY} and {MAX_URL_EXPIRY} seconds"
            )
        storage = self._require_storage()

        async with self.db.session() as session:
            row = await session.get(SignatureModel, signature_id)
            if row is None or row.inspection_instance_id != instance_id:
                raise NotFound("Signature not found")
            key = row.signature_image_path

        return await storage.signed_url(key, expires_in)
