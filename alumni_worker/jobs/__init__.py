"""Platform jobs and their registration.

Each job is registered under its handler_ref with the queue it runs on and
the retry policy its side effects call for.
"""

from typing import Optional

from alumni_worker.config import Settings, get_settings
from alumni_worker.queue.idempotency import IdempotencyGuard
from alumni_worker.queue.job_queue import (
    QUEUE_CRM_RETRY,
    QUEUE_DEFAULT,
    QUEUE_EMAIL,
    QUEUE_LEAD_ROUTING,
    QUEUE_WEBHOOK,
)
from alumni_worker.queue.registry import HandlerRegistry
from alumni_worker.queue.retry import CRM_RECOVERY, CRM_SYNC, EMAIL, FAST_API, WEBHOOK, RetryPolicy
from .backend import BackendClient
from .crm import RECOVER_LEADS, SYNC_LEAD, RecoverLeadsHandler, SyncLeadHandler
from .donations import PROCESS_RECURRING, SEND_RECEIPT, ProcessRecurringDonationsHandler, SendReceiptHandler
from .email import SEND_SEQUENCE_STEP, SendSequenceStepHandler
from .matching import RECALCULATE_MATCHES, RecalculateMatchesHandler
from .webhooks import DELIVER_WEBHOOK, DeliverWebhookHandler

# Batch passes are long; one retry after a pause is enough
BATCH_POLICY = RetryPolicy(max_attempts=2, backoff_schedule=(600,))

HANDLER_REFS = [
    SYNC_LEAD,
    RECOVER_LEADS,
    SEND_SEQUENCE_STEP,
    RECALCULATE_MATCHES,
    DELIVER_WEBHOOK,
    PROCESS_RECURRING,
    SEND_RECEIPT,
]


def build_registry(
    backend: BackendClient,
    guard: IdempotencyGuard,
    settings: Optional[Settings] = None,
) -> HandlerRegistry:
    """Create the registry with every platform job bound to its dependencies."""
    settings = settings or get_settings()
    threshold = settings.batch_failure_threshold
    ttl = settings.idempotency_ttl_seconds

    registry = HandlerRegistry()
    registry.register(SYNC_LEAD, SyncLeadHandler(backend), queue=QUEUE_LEAD_ROUTING, policy=CRM_SYNC)
    registry.register(
        RECOVER_LEADS,
        RecoverLeadsHandler(backend, guard, failure_threshold=threshold, marker_ttl=ttl),
        queue=QUEUE_CRM_RETRY,
        policy=CRM_RECOVERY,
    )
    registry.register(
        SEND_SEQUENCE_STEP,
        SendSequenceStepHandler(backend, guard, ttl=ttl),
        queue=QUEUE_EMAIL,
        policy=EMAIL,
    )
    registry.register(
        RECALCULATE_MATCHES,
        RecalculateMatchesHandler(backend, failure_threshold=threshold, progress_every=settings.batch_progress_every),
        queue=QUEUE_DEFAULT,
        policy=BATCH_POLICY,
    )
    registry.register(DELIVER_WEBHOOK, DeliverWebhookHandler(backend), queue=QUEUE_WEBHOOK, policy=WEBHOOK)
    registry.register(
        PROCESS_RECURRING,
        ProcessRecurringDonationsHandler(
            backend, guard, failure_threshold=threshold, progress_every=settings.batch_progress_every,
        ),
        queue=QUEUE_DEFAULT,
        policy=BATCH_POLICY,
    )
    registry.register(SEND_RECEIPT, SendReceiptHandler(backend, guard, ttl=ttl), queue=QUEUE_EMAIL, policy=FAST_API)
    return registry


__all__ = [
    "BackendClient",
    "HANDLER_REFS",
    "build_registry",
]
