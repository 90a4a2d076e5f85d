"""Recurring-donation processing and receipt delivery."""

import logging

from alumni_worker.queue.batch import for_each_item
from alumni_worker.queue.errors import BackendError, BatchAbortedError
from alumni_worker.queue.idempotency import IdempotencyGuard, idempotency_key
from alumni_worker.queue.job_queue import QUEUE_EMAIL
from alumni_worker.queue.models import ExecutionContext, ExecutionResult, Success
from alumni_worker.queue.retry import EMAIL
from .backend import BackendClient
from .base import batch_aborted, failure_from, release_marker, require, skipped, utc_now_iso

logger = logging.getLogger(__name__)

PROCESS_RECURRING = "donations.process_recurring"
SEND_RECEIPT = "donations.send_receipt"

DONATION_CHUNK_SIZE = 25
CHARGE_MARKER_TTL = 86400


class ProcessRecurringDonationsHandler:
    """Charge every recurring donation that is due, then queue its receipt.

    Each charge is guarded per donation and billing date so a re-run of the
    batch on the same day cannot double-charge. The receipt task is only
    enqueued after the charge succeeded.
    """

    def __init__(self, backend: BackendClient, guard: IdempotencyGuard, failure_threshold: float = 1.0,
                 progress_every: int = 100):
        self.backend = backend
        self.guard = guard
        self.failure_threshold = failure_threshold
        self.progress_every = progress_every

    async def handle(self, payload: dict, ctx: ExecutionContext) -> ExecutionResult:
        charged = 0

        async def charge(recurring: dict) -> None:
            nonlocal charged
            recurring_id = recurring["id"]
            key = idempotency_key("recurring", recurring_id, recurring.get("next_payment_date", "due"))
            if not await self.guard.acquire(key, ttl=CHARGE_MARKER_TTL):
                return
            try:
                donation = await self.backend.post(f"/api/recurring-donations/{recurring_id}/charge", {
                    "amount": recurring.get("amount"),
                    "currency": recurring.get("currency"),
                })
            except BackendError as e:
                # A declined charge may be retried by a later run; an unanswered one may not
                await release_marker(self.guard, key, e)
                raise
            charged += 1
            await ctx.enqueue(
                QUEUE_EMAIL, SEND_RECEIPT, {"donation_id": donation["donation_id"]},
                policy=EMAIL, tags=[f"donation:{donation['donation_id']}", f"recurring:{recurring_id}"],
            )

        # Charged donations drop out of the due set, so page by id
        pager = self.backend.keyset_fetcher(
            "/api/recurring-donations", {"due": 1, "status": "active"}, start_after=payload.get("after_id"),
        )
        try:
            cursor = await for_each_item(
                pager,
                payload.get("chunk_size", DONATION_CHUNK_SIZE),
                charge,
                source="recurring donations",
                progress_every=self.progress_every,
            )
        except BatchAbortedError as e:
            return batch_aborted(e, ctx, after_id=pager.position)
        result = cursor.to_result(self.failure_threshold)
        if isinstance(result, Success):
            return Success({**result.output, "charged": charged})
        return result


class SendReceiptHandler:
    """Email the tax receipt for one donation, once."""

    def __init__(self, backend: BackendClient, guard: IdempotencyGuard, ttl: int = 3600):
        self.backend = backend
        self.guard = guard
        self.ttl = ttl

    async def handle(self, payload: dict, ctx: ExecutionContext) -> ExecutionResult:
        require(payload, "donation_id")
        donation_id = payload["donation_id"]

        try:
            donation = await self.backend.get_entity(f"/api/donations/{donation_id}")
        except BackendError as e:
            return failure_from(e, ctx)
        if donation is None:
            return skipped("donation_not_found", donation_id=donation_id)
        if donation.get("receipt_sent_at"):
            return skipped("receipt_already_sent", donation_id=donation_id)

        key = idempotency_key("receipt", donation_id)
        if not await self.guard.acquire(key, ttl=self.ttl):
            return skipped("duplicate_send", donation_id=donation_id)

        try:
            await self.backend.post("/api/mail/send", {"template": "donation_receipt", "donation_id": donation_id})
        except BackendError as e:
            await release_marker(self.guard, key, e)
            return failure_from(e, ctx)

        try:
            await self.backend.patch(f"/api/donations/{donation_id}", {"receipt_sent_at": utc_now_iso()})
        except BackendError as e:
            logger.error(f"Receipt for donation {donation_id} sent but not recorded: {e}")
        return Success({"donation_id": donation_id})

    async def on_permanent_failure(self, payload: dict, error: str, ctx: ExecutionContext) -> None:
        await self.backend.patch(f"/api/donations/{payload['donation_id']}", {
            "receipt_status": "failed",
            "note": f"Receipt not delivered after {ctx.attempt} attempt(s): {error[:300]}",
        })
