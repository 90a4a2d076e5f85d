"""Tests for structured logging and PII redaction."""

import json
import logging

from alumni_worker.lib.json_logger import JSONFormatter, get_structured_logger, task_logger
from alumni_worker.lib.pii_redactor import PIIRedactor
from alumni_worker.queue.models import Task


def _record(msg: str, **extra) -> logging.LogRecord:
    record = logging.LogRecord("alumni_worker.tasks", logging.INFO, __file__, 1, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_formatter_promotes_task_fields():
    line = JSONFormatter().format(_record(
        "Task t1 succeeded", task_id="t1", queue="lead-routing", attempt=2,
        outcome="success", duration_ms=12.5, tags=["lead:7"],
    ))
    data = json.loads(line)

    assert data["level"] == "INFO"
    assert data["task_id"] == "t1"
    assert data["queue"] == "lead-routing"
    assert data["attempt"] == 2
    assert data["outcome"] == "success"
    assert data["tags"] == ["lead:7"]
    assert data["timestamp"].endswith("Z")


def test_formatter_redacts_pii_in_message_and_payload():
    line = JSONFormatter().format(_record(
        "Send to jane.doe@example.org failed",
        payload={"email": "jane.doe@example.org", "recipient_id": 9, "note": "call +1 555 123 4567"},
    ))
    data = json.loads(line)

    assert "jane.doe@example.org" not in line
    assert "[EMAIL_REDACTED]" in data["message"]
    assert data["payload"]["email"] == "[REDACTED]"
    assert data["payload"]["recipient_id"] == 9


def test_formatter_without_redaction():
    data = json.loads(JSONFormatter(redact_pii=False).format(_record("mail jane@example.org")))
    assert data["message"] == "mail jane@example.org"


def test_task_logger_binds_task_context(caplog):
    task = Task(id="t9", queue_name="email-sending", handler_ref="email.send_sequence_step",
                attempt=1, tags=["sequence:4"], tenant_id="acme")

    with caplog.at_level(logging.INFO, logger="alumni_worker.tasks"):
        task_logger(task).info("working", extra={"outcome": "success"})

    record = caplog.records[-1]
    assert record.task_id == "t9"
    assert record.queue == "email-sending"
    assert record.tenant_id == "acme"
    assert record.outcome == "success"


def test_with_context_extends_adapter():
    adapter = get_structured_logger("alumni_worker.test", queue="default").with_context(task_id="t1")
    assert adapter.extra == {"queue": "default", "task_id": "t1"}


def test_pii_redactor():
    assert PIIRedactor.contains_pii("card 4111 1111 1111 1111")
    assert "[CREDIT_CARD_REDACTED]" in PIIRedactor.redact("card 4111 1111 1111 1111")
    assert PIIRedactor.redact(None) == ""
    assert not PIIRedactor.contains_pii("lead 42 routed")
    assert PIIRedactor.redact_mapping({"token": "abc", "nested": {"phone": "1"}}) == {
        "token": "[REDACTED]", "nested": {"phone": "[REDACTED]"},
    }
