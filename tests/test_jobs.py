"""Tests for the platform jobs against a mocked backend API."""

import json

import httpx
import pytest

from alumni_worker.jobs import HANDLER_REFS, build_registry
from alumni_worker.jobs.crm import RecoverLeadsHandler, SyncLeadHandler, is_already_synced
from alumni_worker.jobs.donations import SEND_RECEIPT, ProcessRecurringDonationsHandler, SendReceiptHandler
from alumni_worker.jobs.email import SendSequenceStepHandler, sequence_send_key
from alumni_worker.jobs.matching import RecalculateMatchesHandler, connection_score, match_score
from alumni_worker.jobs.webhooks import DeliverWebhookHandler, sign_payload
from alumni_worker.queue.context import bind_tenant_scope
from alumni_worker.queue.errors import DoNotRetry
from alumni_worker.queue.job_queue import QUEUE_EMAIL, QUEUE_LEAD_ROUTING
from alumni_worker.queue.models import ExecutionContext, PermanentFailure, Success, TransientFailure


def _ctx(attempt: int = 1, enqueued=None, tenant_id=None) -> ExecutionContext:
    async def enqueue(queue_name, handler_ref, payload, **options):
        enqueued.append((queue_name, handler_ref, payload, options))

    return ExecutionContext(
        task_id="t1", queue_name="default", handler_ref="test", attempt=attempt, max_attempts=3,
        tenant_id=tenant_id, trace_id="trace-1", _enqueue=enqueue if enqueued is not None else None,
    )


def _page(items):
    def respond(request):
        offset = int(request.url.params["offset"])
        limit = int(request.url.params["limit"])
        return httpx.Response(200, json={"data": items[offset:offset + limit]})
    return respond


def _keyset(items):
    """Serve ``after_id`` pages ordered by id; ``items`` may be a callable returning the current rows."""
    def respond(request):
        params = request.url.params
        rows = sorted(items() if callable(items) else items, key=lambda r: r["id"])
        if "after_id" in params:
            rows = [r for r in rows if r["id"] > type(r["id"])(params["after_id"])]
        return httpx.Response(200, json={"data": rows[:int(params["limit"])]})
    return respond


# ==================== CRM ====================

def test_freshness_check():
    assert is_already_synced({"crm_sync_status": "synced", "crm_synced_at": "2024-05-02T10:00:00Z",
                              "updated_at": "2024-05-01T09:00:00Z"})
    assert not is_already_synced({"crm_sync_status": "synced", "crm_synced_at": "2024-05-01T08:00:00Z",
                                  "updated_at": "2024-05-01T09:00:00Z"})
    assert not is_already_synced({"crm_sync_status": "pending"})


@pytest.mark.asyncio
async def test_sync_lead_deleted_entity_is_noop(backend, platform_api):
    result = await SyncLeadHandler(backend).handle({"lead_id": 7}, _ctx())

    assert isinstance(result, Success)
    assert result.output["skipped"] == "lead_not_found"
    assert [r.method for r in platform_api.requests] == ["GET"]


@pytest.mark.asyncio
async def test_sync_lead_already_synced_skips_crm(backend, platform_api):
    platform_api.route("GET", "/api/leads/7", {"data": {
        "id": 7, "crm_sync_status": "synced",
        "crm_synced_at": "2024-05-02T10:00:00Z", "updated_at": "2024-05-01T09:00:00Z",
    }})

    result = await SyncLeadHandler(backend).handle({"lead_id": 7}, _ctx())

    assert result.output["skipped"] == "already_synced"
    assert not platform_api.calls("POST", "/api/leads/7/crm/push")


@pytest.mark.asyncio
async def test_sync_lead_edited_since_last_sync_is_pushed_again(backend, platform_api):
    """Marked synced but changed afterwards: the freshness check must not skip it."""
    platform_api.route("GET", "/api/leads/7", {"data": {
        "id": 7, "crm_sync_status": "synced",
        "crm_synced_at": "2024-05-01T08:00:00Z", "updated_at": "2024-05-01T09:00:00Z",
    }})
    platform_api.route("POST", "/api/leads/7/crm/push", {"crm_id": "hs-99"})
    platform_api.route("PATCH", "/api/leads/7", {})

    result = await SyncLeadHandler(backend).handle({"lead_id": 7}, _ctx())

    assert result == Success({"lead_id": 7, "crm_id": "hs-99"})
    assert len(platform_api.calls("POST", "/api/leads/7/crm/push")) == 1


@pytest.mark.asyncio
async def test_sync_lead_pushes_and_marks_routed(backend, platform_api):
    platform_api.route("GET", "/api/leads/7", {"data": {"id": 7, "crm_provider": "hubspot"}})
    platform_api.route("POST", "/api/leads/7/crm/push", {"crm_id": "hs-99"})
    platform_api.route("PATCH", "/api/leads/7", {})

    async with bind_tenant_scope(_ctx(tenant_id="acme")):
        result = await SyncLeadHandler(backend).handle({"lead_id": 7}, _ctx())

    assert result == Success({"lead_id": 7, "crm_id": "hs-99"})
    push = platform_api.calls("POST", "/api/leads/7/crm/push")[0]
    assert platform_api.body(push)["provider"] == "hubspot"
    assert push.headers["X-Tenant-ID"] == "acme"
    assert push.headers["Authorization"] == "Bearer test-token"
    patch = platform_api.body(platform_api.calls("PATCH", "/api/leads/7")[0])
    assert patch["routing_status"] == "routed" and patch["crm_id"] == "hs-99"


@pytest.mark.asyncio
@pytest.mark.parametrize("status,expected", [(503, TransientFailure), (429, TransientFailure),
                                             (422, PermanentFailure)])
async def test_sync_lead_crm_errors(backend, platform_api, status, expected):
    platform_api.route("GET", "/api/leads/7", {"data": {"id": 7}})
    platform_api.route("POST", "/api/leads/7/crm/push", (status, {"error": "crm"}))

    result = await SyncLeadHandler(backend).handle({"lead_id": 7}, _ctx(attempt=2))

    assert isinstance(result, expected)


@pytest.mark.asyncio
async def test_sync_lead_missing_lead_id_is_not_retried(backend):
    with pytest.raises(DoNotRetry):
        await SyncLeadHandler(backend).handle({}, _ctx())


@pytest.mark.asyncio
async def test_sync_lead_permanent_failure_marks_lead(backend, platform_api):
    platform_api.route("PATCH", "/api/leads/7", {})

    await SyncLeadHandler(backend).on_permanent_failure({"lead_id": 7}, "CRM returned 503", _ctx(attempt=3))

    body = platform_api.body(platform_api.calls("PATCH", "/api/leads/7")[0])
    assert body["routing_status"] == "failed"
    assert "3 attempt(s)" in body["note"]


@pytest.mark.asyncio
async def test_recover_leads_fans_out_once_per_lead(backend, platform_api, guard):
    platform_api.route("GET", "/api/leads", _keyset([{"id": 1}, {"id": 2}, {"id": 3}]))
    enqueued = []
    handler = RecoverLeadsHandler(backend, guard)

    first = await handler.handle({"chunk_size": 2}, _ctx(enqueued=enqueued))
    second = await handler.handle({"chunk_size": 2}, _ctx(enqueued=enqueued))

    assert first.output["queued"] == 3
    assert second.output["queued"] == 0
    assert [(q, ref, p) for q, ref, p, _ in enqueued] == [
        (QUEUE_LEAD_ROUTING, "crm.sync_lead", {"lead_id": n}) for n in (1, 2, 3)
    ]
    assert platform_api.calls("GET", "/api/leads")[0].url.params["routing_status"] == "failed"


@pytest.mark.asyncio
async def test_recover_leads_aborted_listing_can_resume(backend, platform_api, guard):
    """A failed page fetch reports where to resume; a pass started there picks up the rest."""
    leads = [{"id": n} for n in range(1, 6)]
    serve = _keyset(leads)

    def unstable(request):
        if request.url.params.get("after_id") == "2":
            return httpx.Response(503, json={"error": "db"})
        return serve(request)

    platform_api.route("GET", "/api/leads", unstable)
    enqueued = []
    handler = RecoverLeadsHandler(backend, guard)

    aborted = await handler.handle({"chunk_size": 2}, _ctx(enqueued=enqueued))

    assert isinstance(aborted, TransientFailure)
    assert "after_id=2" in aborted.error

    platform_api.route("GET", "/api/leads", _keyset(leads))
    resumed = await handler.handle({"chunk_size": 2, "after_id": 2}, _ctx(enqueued=enqueued))

    assert resumed.output["queued"] == 3
    assert [p["lead_id"] for _, _, p, _ in enqueued] == [1, 2, 3, 4, 5]
    assert platform_api.calls("GET", "/api/leads")[-2].url.params["after_id"] == "2"


# ==================== Email sequences ====================

def _enrollment(platform_api, **fields):
    platform_api.route("GET", "/api/email-sequences/4/enrollments/9", {"data": {"status": "active", **fields}})
    platform_api.route("POST", "/api/mail/send", {"message_id": "m-1"})
    platform_api.route("POST", "/api/email-sequences/4/enrollments/9/sends", {})


@pytest.mark.asyncio
async def test_sequence_step_sent_once_within_ttl(backend, platform_api, guard):
    """Two deliveries of the same step: only the first one sends."""
    _enrollment(platform_api)
    handler = SendSequenceStepHandler(backend, guard)
    payload = {"sequence_id": 4, "recipient_id": 9, "step": 1}

    first = await handler.handle(payload, _ctx())
    second = await handler.handle(payload, _ctx())

    assert first.output["message_id"] == "m-1"
    assert second.output["skipped"] == "duplicate_send"
    assert len(platform_api.calls("POST", "/api/mail/send")) == 1
    assert await guard.exists(sequence_send_key(4, 9, 1))


@pytest.mark.asyncio
async def test_sequence_step_skips_unsubscribed(backend, platform_api, guard):
    _enrollment(platform_api, unsubscribed=True)

    result = await SendSequenceStepHandler(backend, guard).handle(
        {"sequence_id": 4, "recipient_id": 9, "step": 1}, _ctx())

    assert result.output["skipped"] == "unsubscribed"
    assert not platform_api.calls("POST", "/api/mail/send")


@pytest.mark.asyncio
async def test_sequence_step_failed_send_releases_marker(backend, platform_api, guard):
    _enrollment(platform_api)
    platform_api.route("POST", "/api/mail/send", (503, {"error": "smtp"}))

    result = await SendSequenceStepHandler(backend, guard).handle(
        {"sequence_id": 4, "recipient_id": 9, "step": 1}, _ctx())

    assert isinstance(result, TransientFailure)
    assert not await guard.exists(sequence_send_key(4, 9, 1))


def _read_timeout(request):
    raise httpx.ReadTimeout("read timed out", request=request)


@pytest.mark.asyncio
async def test_sequence_step_timed_out_send_keeps_marker(backend, platform_api, guard):
    """The mail API may have sent before the timeout: the retry must not send again."""
    _enrollment(platform_api)
    platform_api.route("POST", "/api/mail/send", _read_timeout)
    handler = SendSequenceStepHandler(backend, guard)
    payload = {"sequence_id": 4, "recipient_id": 9, "step": 1}

    first = await handler.handle(payload, _ctx())
    second = await handler.handle(payload, _ctx(attempt=2))

    assert isinstance(first, TransientFailure)
    assert second.output["skipped"] == "duplicate_send"
    assert len(platform_api.calls("POST", "/api/mail/send")) == 1


@pytest.mark.asyncio
async def test_sequence_step_refused_connection_releases_marker(backend, platform_api, guard):
    _enrollment(platform_api)

    def refused(request):
        raise httpx.ConnectError("connection refused", request=request)

    platform_api.route("POST", "/api/mail/send", refused)

    result = await SendSequenceStepHandler(backend, guard).handle(
        {"sequence_id": 4, "recipient_id": 9, "step": 1}, _ctx())

    assert isinstance(result, TransientFailure)
    assert not await guard.exists(sequence_send_key(4, 9, 1))


# ==================== Webhooks ====================

def _webhook(platform_api, subscriber_response):
    platform_api.route("GET", "/api/webhooks/w1", {"data": {
        "id": "w1", "url": "https://hooks.example.com/in", "secret": "s3cret", "status": "active",
    }})
    platform_api.route("PATCH", "/api/webhook-deliveries/d1", {})
    platform_api.route("POST", "/in", subscriber_response)


WEBHOOK_PAYLOAD = {"webhook_id": "w1", "delivery_id": "d1", "event_type": "lead.created", "data": {"lead_id": 7}}


@pytest.mark.asyncio
async def test_webhook_delivery_is_signed(backend, platform_api):
    _webhook(platform_api, {"ok": True})
    handler = DeliverWebhookHandler(backend, transport=httpx.MockTransport(platform_api))

    result = await handler.handle(WEBHOOK_PAYLOAD, _ctx(attempt=2))

    assert isinstance(result, Success)
    request = platform_api.calls("POST", "/in")[0]
    body = json.loads(request.content)
    assert body == {"event": "lead.created", "data": {"lead_id": 7}, "delivery_id": "d1"}
    assert request.headers["X-Signature"] == sign_payload(body, "s3cret")
    assert request.headers["X-Retry-Count"] == "1"
    assert request.headers["X-Event-Type"] == "lead.created"
    record = platform_api.body(platform_api.calls("PATCH", "/api/webhook-deliveries/d1")[0])
    assert record["status"] == "delivered" and record["response_code"] == 200


@pytest.mark.asyncio
@pytest.mark.parametrize("status,expected", [(410, PermanentFailure), (500, TransientFailure)])
async def test_webhook_subscriber_errors(backend, platform_api, status, expected):
    _webhook(platform_api, (status, {}))
    handler = DeliverWebhookHandler(backend, transport=httpx.MockTransport(platform_api))

    assert isinstance(await handler.handle(WEBHOOK_PAYLOAD, _ctx()), expected)


@pytest.mark.asyncio
async def test_webhook_removed_is_noop(backend, platform_api):
    result = await DeliverWebhookHandler(backend).handle(WEBHOOK_PAYLOAD, _ctx())
    assert result.output["skipped"] == "webhook_not_found"


def test_signature_format():
    assert sign_payload({"a": 1}, "k").startswith("sha256=")
    assert sign_payload({"a": 1}, "k") != sign_payload({"a": 2}, "k")


# ==================== Job matching ====================

def test_match_score_components():
    user = {
        "mutual_connections": [{"title": "Senior Engineer"}, {"title": "Recruiter"}],
        "skills": ["Python", "SQL"],
        "circle_overlap": 1,
    }
    job = {"skills_required": ["python", "go"], "title": "Engineer"}

    assert connection_score(user) == 50.0
    result = match_score(job, user)
    assert result["skills_score"] == 50.0
    assert result["education_score"] == 30.0
    assert result["score"] == round(50 * 0.35 + 50 * 0.25 + 30 * 0.20 + 20 * 0.20, 2)


@pytest.mark.asyncio
async def test_recalculate_matches_posts_scores(backend, platform_api):
    platform_api.route("GET", "/api/jobs", _page([{"id": "j1", "skills_required": ["python"]}]))
    platform_api.route("GET", "/api/jobs/j1/candidates", _page([{"id": 1, "skills": ["python"]}, {"id": 2}]))
    platform_api.route("POST", "/api/jobs/j1/matches", {})

    result = await RecalculateMatchesHandler(backend).handle({}, _ctx())

    assert isinstance(result, Success)
    assert result.output["processed"] == 2
    assert result.output["stored"] == 2
    posted = [platform_api.body(r)["user_id"] for r in platform_api.calls("POST", "/api/jobs/j1/matches")]
    assert posted == [1, 2]


@pytest.mark.asyncio
async def test_recalculate_matches_starts_at_offset(backend, platform_api):
    platform_api.route("GET", "/api/jobs", _page([{"id": "j1"}, {"id": "j2"}]))
    for job_id in ("j1", "j2"):
        platform_api.route("GET", f"/api/jobs/{job_id}/candidates", _page([{"id": 1}]))
        platform_api.route("POST", f"/api/jobs/{job_id}/matches", {})

    result = await RecalculateMatchesHandler(backend).handle({"start_offset": 1}, _ctx())

    assert result.output["stored"] == 1
    assert not platform_api.calls("GET", "/api/jobs/j1/candidates")
    assert platform_api.calls("GET", "/api/jobs")[0].url.params["offset"] == "1"


@pytest.mark.asyncio
async def test_recalculate_matches_listing_failure_reports_offset(backend, platform_api):
    platform_api.route("GET", "/api/jobs", (503, {"error": "db"}))

    result = await RecalculateMatchesHandler(backend).handle({"start_offset": 40}, _ctx())

    assert isinstance(result, TransientFailure)
    assert "start_offset=40" in result.error


# ==================== Donations ====================

@pytest.mark.asyncio
async def test_recurring_donations_charge_then_queue_receipt(backend, platform_api, guard):
    platform_api.route("GET", "/api/recurring-donations", _keyset([
        {"id": "r1", "amount": 25, "currency": "USD", "next_payment_date": "2024-06-01"},
        {"id": "r2", "amount": 10, "currency": "USD", "next_payment_date": "2024-06-01"},
    ]))
    platform_api.route("POST", "/api/recurring-donations/r1/charge", {"donation_id": "d-100"})
    platform_api.route("POST", "/api/recurring-donations/r2/charge", (402, {"error": "card declined"}))
    enqueued = []
    handler = ProcessRecurringDonationsHandler(backend, guard)

    result = await handler.handle({}, _ctx(enqueued=enqueued))

    assert isinstance(result, Success)
    assert result.output["charged"] == 1
    assert result.output["errors"] == 1
    assert [(q, ref, p) for q, ref, p, _ in enqueued] == [(QUEUE_EMAIL, SEND_RECEIPT, {"donation_id": "d-100"})]

    # Same billing date again: r1 is not charged twice, r2 is retried
    await handler.handle({}, _ctx(enqueued=enqueued))
    assert len(platform_api.calls("POST", "/api/recurring-donations/r1/charge")) == 1
    assert len(platform_api.calls("POST", "/api/recurring-donations/r2/charge")) == 2


@pytest.mark.asyncio
async def test_receipt_sent_once(backend, platform_api, guard):
    platform_api.route("GET", "/api/donations/d-100", {"data": {"id": "d-100"}})
    platform_api.route("POST", "/api/mail/send", {"message_id": "m-2"})
    platform_api.route("PATCH", "/api/donations/d-100", {})
    handler = SendReceiptHandler(backend, guard)

    first = await handler.handle({"donation_id": "d-100"}, _ctx())
    second = await handler.handle({"donation_id": "d-100"}, _ctx())

    assert first == Success({"donation_id": "d-100"})
    assert second.output["skipped"] == "duplicate_send"
    assert len(platform_api.calls("POST", "/api/mail/send")) == 1


@pytest.mark.asyncio
async def test_recurring_donations_reach_items_behind_charged_ones(backend, platform_api, guard):
    """Charged donations leave the due set mid-pass; every due donation is still charged once."""
    due = {
        f"r{n:02d}": {"id": f"r{n:02d}", "amount": 10, "currency": "USD", "next_payment_date": "2024-06-01"}
        for n in range(50)
    }
    platform_api.route("GET", "/api/recurring-donations", _keyset(lambda: list(due.values())))

    def charge(request):
        recurring_id = request.url.path.split("/")[3]
        del due[recurring_id]
        return httpx.Response(200, json={"donation_id": f"d-{recurring_id}"})

    for recurring_id in list(due):
        platform_api.route("POST", f"/api/recurring-donations/{recurring_id}/charge", charge)
    enqueued = []

    result = await ProcessRecurringDonationsHandler(backend, guard).handle(
        {"chunk_size": 25}, _ctx(enqueued=enqueued))

    assert result.output["charged"] == 50
    assert due == {}
    assert len(enqueued) == 50


@pytest.mark.asyncio
async def test_recurring_charge_timeout_is_not_charged_again(backend, platform_api, guard):
    """No response to a charge: it may have gone through, so the next run leaves it alone."""
    platform_api.route("GET", "/api/recurring-donations", _keyset([
        {"id": "r1", "amount": 25, "currency": "USD", "next_payment_date": "2024-06-01"},
    ]))
    platform_api.route("POST", "/api/recurring-donations/r1/charge", _read_timeout)
    handler = ProcessRecurringDonationsHandler(backend, guard)

    first = await handler.handle({}, _ctx(enqueued=[]))
    second = await handler.handle({}, _ctx(enqueued=[]))

    assert isinstance(first, PermanentFailure)
    assert second.output["charged"] == 0
    assert len(platform_api.calls("POST", "/api/recurring-donations/r1/charge")) == 1


@pytest.mark.asyncio
async def test_receipt_timed_out_send_keeps_marker(backend, platform_api, guard):
    platform_api.route("GET", "/api/donations/d-100", {"data": {"id": "d-100"}})
    platform_api.route("POST", "/api/mail/send", _read_timeout)
    handler = SendReceiptHandler(backend, guard)

    first = await handler.handle({"donation_id": "d-100"}, _ctx())
    second = await handler.handle({"donation_id": "d-100"}, _ctx(attempt=2))

    assert isinstance(first, TransientFailure)
    assert second.output["skipped"] == "duplicate_send"
    assert len(platform_api.calls("POST", "/api/mail/send")) == 1


# ==================== Registry ====================

def test_build_registry_registers_every_job(backend, guard, settings):
    registry = build_registry(backend, guard, settings)

    assert registry.handler_refs == sorted(HANDLER_REFS)
    assert registry.queue_for("crm.sync_lead") == "lead-routing"
    assert registry.queue_for("webhooks.deliver") == "webhook-processing"
    assert registry.policy_for("crm.recover_leads").max_attempts == 5
    assert set(settings.queue_names) >= registry.queues
