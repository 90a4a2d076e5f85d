"""Email-sequence delivery."""

import logging

from alumni_worker.queue.errors import BackendError
from alumni_worker.queue.idempotency import IdempotencyGuard, idempotency_key
from alumni_worker.queue.models import ExecutionContext, ExecutionResult, Success
from .backend import BackendClient
from .base import failure_from, release_marker, require, skipped, utc_now_iso

logger = logging.getLogger(__name__)

SEND_SEQUENCE_STEP = "email.send_sequence_step"


def sequence_send_key(sequence_id, recipient_id, step) -> str:
    return idempotency_key("sequence", sequence_id, "recipient", recipient_id, "step", step)


class SendSequenceStepHandler:
    """Send one step of a marketing email sequence to one recipient.

    Payload: ``{"sequence_id", "recipient_id", "step"}``. The idempotency
    marker is taken before sending and dropped again only when the send
    definitely failed. A send that timed out or was cancelled mid-flight keeps
    it, so a redelivered task sends at most once per TTL window.
    """

    def __init__(self, backend: BackendClient, guard: IdempotencyGuard, ttl: int = 3600):
        self.backend = backend
        self.guard = guard
        self.ttl = ttl

    async def handle(self, payload: dict, ctx: ExecutionContext) -> ExecutionResult:
        require(payload, "sequence_id", "recipient_id")
        sequence_id = payload["sequence_id"]
        recipient_id = payload["recipient_id"]
        step = payload.get("step", 0)
        base = f"/api/email-sequences/{sequence_id}"

        try:
            enrollment = await self.backend.get_entity(f"{base}/enrollments/{recipient_id}")
            if enrollment is None:
                return skipped("enrollment_not_found", sequence_id=sequence_id, recipient_id=recipient_id)
            if enrollment.get("status") != "active":
                return skipped("enrollment_inactive", sequence_id=sequence_id, recipient_id=recipient_id)
            if enrollment.get("unsubscribed"):
                return skipped("unsubscribed", sequence_id=sequence_id, recipient_id=recipient_id)
        except BackendError as e:
            return failure_from(e, ctx)

        key = sequence_send_key(sequence_id, recipient_id, step)
        if not await self.guard.acquire(key, ttl=self.ttl):
            return skipped("duplicate_send", sequence_id=sequence_id, recipient_id=recipient_id)

        try:
            message = await self.backend.post("/api/mail/send", {
                "template": "sequence_step",
                "sequence_id": sequence_id,
                "recipient_id": recipient_id,
                "step": step,
            })
        except BackendError as e:
            await release_marker(self.guard, key, e)
            return failure_from(e, ctx)

        try:
            await self.backend.post(f"{base}/enrollments/{recipient_id}/sends", {
                "step": step,
                "message_id": message.get("message_id"),
                "sent_at": utc_now_iso(),
            })
        except BackendError as e:
            # The mail went out; only the bookkeeping write failed
            logger.error(f"Send for {key} succeeded but recording it failed: {e}")

        return Success({"sequence_id": sequence_id, "recipient_id": recipient_id, "step": step,
                        "message_id": message.get("message_id")})

    async def on_permanent_failure(self, payload: dict, error: str, ctx: ExecutionContext) -> None:
        await self.backend.patch(
            f"/api/email-sequences/{payload['sequence_id']}/enrollments/{payload['recipient_id']}",
            {"last_error": f"Step {payload.get('step', 0)} not delivered: {error[:300]}", "status": "failed"},
        )
