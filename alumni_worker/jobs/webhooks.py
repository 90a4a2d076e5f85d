"""Outbound webhook delivery to tenant-configured subscribers."""

import hashlib
import hmac
import json
import logging
import time
from typing import Optional

import httpx

from alumni_worker.queue.errors import BackendError
from alumni_worker.queue.models import ExecutionContext, ExecutionResult, PermanentFailure, Success, TransientFailure
from .backend import BackendClient
from .base import failure_from, require, skipped, utc_now_iso

logger = logging.getLogger(__name__)

DELIVER_WEBHOOK = "webhooks.deliver"

USER_AGENT = "AlumniPlatform-Webhook/1.0"
DEFAULT_TIMEOUT = 30.0


def sign_payload(payload: dict, secret: str) -> str:
    """``sha256=<hex hmac>`` over the compact JSON body."""
    body = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
    digest = hmac.new(secret.encode(), body.encode(), hashlib.sha256).hexdigest()
    return f"sha256={digest}"


class DeliverWebhookHandler:
    """POST one event to one subscriber.

    Payload: ``{"webhook_id", "delivery_id", "event_type", "data"}``.
    2xx is delivered, 410 Gone means the subscriber is gone for good,
    anything else is retried on the webhook schedule (1 min, 5 min, 30 min).
    """

    def __init__(self, backend: BackendClient, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.backend = backend
        self._transport = transport

    async def handle(self, payload: dict, ctx: ExecutionContext) -> ExecutionResult:
        require(payload, "webhook_id", "delivery_id", "event_type")
        webhook_id = payload["webhook_id"]
        delivery_id = payload["delivery_id"]

        try:
            webhook = await self.backend.get_entity(f"/api/webhooks/{webhook_id}")
        except BackendError as e:
            return failure_from(e, ctx)
        if webhook is None:
            return skipped("webhook_not_found", webhook_id=webhook_id)
        if webhook.get("status", "active") != "active":
            return skipped("webhook_inactive", webhook_id=webhook_id)

        body = {"event": payload["event_type"], "data": payload.get("data") or {}, "delivery_id": delivery_id}
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            "X-Webhook-ID": str(webhook_id),
            "X-Event-Type": payload["event_type"],
            "X-Delivery-ID": str(delivery_id),
            "X-Retry-Count": str(ctx.attempt - 1),
            "X-Timestamp": str(int(time.time())),
            **(webhook.get("headers") or {}),
        }
        if webhook.get("secret"):
            headers["X-Signature"] = sign_payload(body, webhook["secret"])

        started = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=webhook.get("timeout") or DEFAULT_TIMEOUT,
                                         transport=self._transport) as client:
                response = await client.post(
                    webhook["url"],
                    content=json.dumps(body, separators=(",", ":"), ensure_ascii=False),
                    headers=headers,
                )
        except httpx.HTTPError as e:
            await self._record(delivery_id, "failed", error_message=str(e), retry_count=ctx.attempt - 1)
            return TransientFailure(f"Webhook request failed: {e}", attempt=ctx.attempt)
        response_ms = round((time.monotonic() - started) * 1000, 1)

        status = "delivered" if response.is_success else "failed"
        await self._record(
            delivery_id,
            status,
            response_code=response.status_code,
            response_body=response.text[:1000],
            response_time=response_ms,
            retry_count=ctx.attempt - 1,
        )

        if response.is_success:
            return Success({"delivery_id": delivery_id, "response_code": response.status_code})
        if response.status_code == 410:
            return PermanentFailure(f"Subscriber returned 410 Gone for webhook {webhook_id}", ctx.attempt)
        return TransientFailure(f"Subscriber returned {response.status_code}", attempt=ctx.attempt)

    async def _record(self, delivery_id, status: str, **fields) -> None:
        """Best-effort delivery bookkeeping; never decides the task outcome."""
        try:
            await self.backend.patch(f"/api/webhook-deliveries/{delivery_id}", {
                "status": status, "delivered_at": utc_now_iso(), **fields,
            })
        except BackendError as e:
            logger.warning(f"Could not record webhook delivery {delivery_id}: {e}")

    async def on_permanent_failure(self, payload: dict, error: str, ctx: ExecutionContext) -> None:
        await self.backend.patch(f"/api/webhook-deliveries/{payload['delivery_id']}", {
            "status": "failed",
            "error_message": f"Gave up after {ctx.attempt} attempt(s): {error[:300]}",
        })
