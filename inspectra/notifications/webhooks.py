"""HMAC-signed webhook envelope, outbound and inbound.

The signature is ``hex(HMAC-SHA256(secret, raw_body))`` carried in the
``X-Inspectra-Signature`` header. Outbound bodies are serialized exactly once
and those bytes are both signed and transmitted.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from datetime import datetime, timezone
from typing import Any

import httpx
import structlog

from inspectra.config import WebhookConfig

logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "X-Inspectra-Signature"
EVENT_HEADER = "X-Inspectra-Event"
USER_AGENT = "Inspectra-Webhook/1.0"


def sign_payload(body: bytes, secret: str) -> str:
    """Return the hex HMAC-SHA256 of ``body`` under ``secret``."""
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: str | None, secret: str | None) -> bool:
    """Constant-time check of ``signature`` against the expected digest of ``body``.

    Absent signatures, a missing secret and signatures of the wrong length
    all verify false.
    """
    if not secret or not signature:
        return False

    expected = sign_payload(body, secret)
    if len(signature) != len(expected):
        return False

    return hmac.compare_digest(signature.encode(), expected.encode())


def encode_payload(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":"), default=str).encode()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class WebhookSender:
    """Fire-and-forget signed POSTs to the orchestration endpoint.

    Failures are logged and dropped; retry policy belongs to the receiver.
    """

    def __init__(self, config: WebhookConfig, client: httpx.AsyncClient | None = None):
        self.config = config
        self._client = client or httpx.AsyncClient(timeout=config.timeout_seconds)

    @property
    def enabled(self) -> bool:
        return bool(self.config.secret)

    async def send(self, path: str, payload: dict[str, Any]) -> bool:
        """POST ``payload`` to ``base_url + path``. Returns True on a 2xx answer."""
        if not self.enabled:
            logger.debug("webhook_skipped_no_secret", path=path)
            return False

        body = encode_payload(payload)
        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: sign_payload(body, self.config.secret),
            "User-Agent": USER_AGENT,
        }
        if "event" in payload:
            headers[EVENT_HEADER] = str(payload["event"])

        url = f"{self.config.base_url.rstrip('/')}{path}"
        try:
            response = await self._client.post(
                url, content=body, headers=headers, timeout=self.config.timeout_seconds
            )
        except httpx.HTTPError as e:
            logger.warning("webhook_delivery_failed", url=url, error=str(e))
            return False

        if response.is_success:
            logger.info("webhook_delivered", url=url, status_code=response.status_code)
            return True

        logger.warning("webhook_rejected", url=url, status_code=response.status_code)
        return False

    async def assignment_changed(
        self,
        *,
        instance_id: str,
        template_task: str | None,
        location_id: str,
        new_assignee_profile_id: str | None,
        new_assignee_email: str | None,
        old_assignee_profile_id: str | None,
    ) -> bool:
        return await self.send(
            self.config.assignment_changed_path,
            {
                "event": "assignment_changed",
                "timestamp": _now_iso(),
                "instance_id": instance_id,
                "template_task": template_task or "Inspection",
                "new_assignee_profile_id": new_assignee_profile_id,
                "new_assignee_email": new_assignee_email,
                "old_assignee_profile_id": old_assignee_profile_id,
                "location_id": location_id,
            },
        )

    async def inspection_completed(
        self,
        *,
        instance_id: str,
        template_task: str | None,
        location_id: str,
        status: str,
        completed_by_profile_id: str,
    ) -> bool:
        return await self.send(
            self.config.inspection_completed_path,
            {
                "event": "inspection_completed",
                "timestamp": _now_iso(),
                "instance_id": instance_id,
                "template_task": template_task or "Inspection",
                "status": status,
                "completed_by_profile_id": completed_by_profile_id,
                "location_id": location_id,
            },
        )

    async def aclose(self) -> None:
        await self._client.aclose()
