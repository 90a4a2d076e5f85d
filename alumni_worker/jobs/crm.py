"""CRM lead routing and recovery jobs."""

import logging

from alumni_worker.queue.batch import for_each_item
from alumni_worker.queue.errors import BackendError, BatchAbortedError
from alumni_worker.queue.idempotency import IdempotencyGuard, idempotency_key
from alumni_worker.queue.job_queue import QUEUE_LEAD_ROUTING
from alumni_worker.queue.models import ExecutionContext, ExecutionResult, Success
from alumni_worker.queue.retry import CRM_SYNC
from .backend import BackendClient
from .base import batch_aborted, failure_from, parse_timestamp, require, skipped, utc_now_iso

logger = logging.getLogger(__name__)

SYNC_LEAD = "crm.sync_lead"
RECOVER_LEADS = "crm.recover_leads"

RECOVERY_CHUNK_SIZE = 50


def is_already_synced(lead: dict) -> bool:
    """
    Freshness check: another process synced this lead after its last change.

    A lead is fresh when it is marked synced and its ``crm_synced_at`` is not
    older than ``updated_at``.
    """
    if lead.get("crm_sync_status") != "synced":
        return False
    synced_at = parse_timestamp(lead.get("crm_synced_at"))
    if synced_at is None:
        return False
    updated_at = parse_timestamp(lead.get("updated_at"))
    return updated_at is None or synced_at >= updated_at


class SyncLeadHandler:
    """Push one lead to its tenant's CRM.

    Payload: ``{"lead_id": ...}``. A permanent failure marks the lead
    ``routing_status=failed`` with a note for the admin lead screen.
    """

    def __init__(self, backend: BackendClient):
        self.backend = backend

    async def handle(self, payload: dict, ctx: ExecutionContext) -> ExecutionResult:
        require(payload, "lead_id")
        lead_id = payload["lead_id"]

        try:
            lead = await self.backend.get_entity(f"/api/leads/{lead_id}")
            if lead is None:
                return skipped("lead_not_found", lead_id=lead_id)
            if is_already_synced(lead):
                return skipped("already_synced", lead_id=lead_id)

            response = await self.backend.post(f"/api/leads/{lead_id}/crm/push", {
                "provider": payload.get("provider") or lead.get("crm_provider"),
                "attempt": ctx.attempt,
            })
            await self.backend.patch(f"/api/leads/{lead_id}", {
                "routing_status": "routed",
                "crm_sync_status": "synced",
                "crm_id": response.get("crm_id"),
                "crm_synced_at": utc_now_iso(),
            })
        except BackendError as e:
            logger.warning(f"CRM sync for lead {lead_id} failed on attempt {ctx.attempt}: {e}")
            return failure_from(e, ctx)

        return Success({"lead_id": lead_id, "crm_id": response.get("crm_id")})

    async def on_permanent_failure(self, payload: dict, error: str, ctx: ExecutionContext) -> None:
        await self.backend.patch(f"/api/leads/{payload['lead_id']}", {
            "routing_status": "failed",
            "crm_sync_status": "failed",
            "note": f"CRM sync failed after {ctx.attempt} attempt(s): {error[:300]}",
        })


class RecoverLeadsHandler:
    """Fan out one sync task per lead stuck in ``routing_status=failed``.

    The recovery marker stops overlapping recovery passes from queueing the
    same lead twice while its sync task is pending.
    """

    def __init__(self, backend: BackendClient, guard: IdempotencyGuard, failure_threshold: float = 1.0,
                 marker_ttl: int = 3600):
        self.backend = backend
        self.guard = guard
        self.failure_threshold = failure_threshold
        self.marker_ttl = marker_ttl

    async def handle(self, payload: dict, ctx: ExecutionContext) -> ExecutionResult:
        params = {"routing_status": "failed"}
        if payload.get("provider"):
            params["crm_provider"] = payload["provider"]
        queued = 0

        async def requeue(lead: dict) -> None:
            nonlocal queued
            lead_id = lead["id"]
            if not await self.guard.acquire(idempotency_key("crm-recover", lead_id), ttl=self.marker_ttl):
                return
            await ctx.enqueue(
                QUEUE_LEAD_ROUTING, SYNC_LEAD, {"lead_id": lead_id},
                policy=CRM_SYNC, tags=[f"lead:{lead_id}", "recovery"],
            )
            queued += 1

        # Requeued leads may leave the failed set while this pass runs
        pager = self.backend.keyset_fetcher("/api/leads", params, start_after=payload.get("after_id"))
        try:
            cursor = await for_each_item(
                pager,
                payload.get("chunk_size", RECOVERY_CHUNK_SIZE),
                requeue,
                source="failed leads",
            )
        except BatchAbortedError as e:
            return batch_aborted(e, ctx, after_id=pager.position)
        result = cursor.to_result(self.failure_threshold)
        if isinstance(result, Success):
            return Success({**result.output, "queued": queued})
        return result
