import csv
import json
import logging

import pytest

from telemetry import metrics
from telemetry.logging_utils import JsonFormatter
from telemetry.pii import sanitize_log_payload, scrub_text
from telemetry.retry import is_retryable_http_error, retry_async_with_backoff


def test_scrub_text_hashes_emails_and_phones():
    text = scrub_text("Contacto: ana@example.com, tel +52 442 123 4567")
    assert "ana@example.com" not in text
    assert "442 123 4567" not in text
    assert "[EMAIL_" in text and "[PHONE_" in text


def test_sanitize_payload_redacts_lead_fields_and_summarizes_lists():
    cleaned = sanitize_log_payload(
        {
            "email": "ana@example.com",
            "contacts": [{"name": "Ana"}, {"name": "Luis"}],
            "access_token": "abc",
            "tokens_in": 120,
            "endpoint": "contacts",
        }
    )
    assert cleaned["email"].startswith("[HASH:")
    assert cleaned["contacts"] == {"redacted": True, "items": 2}
    assert cleaned["access_token"].startswith("[HASH:")
    assert cleaned["tokens_in"] == 120
    assert cleaned["endpoint"] == "contacts"


def test_json_formatter_keeps_timestamp_and_scrubs_extra():
    record = logging.makeLogRecord(
        {"name": "test", "levelname": "INFO", "msg": "lead_created", "phone": "4421234567", "page": 2}
    )
    payload = json.loads(JsonFormatter().format(record))
    assert payload["message"] == "lead_created"
    assert payload["page"] == 2
    assert payload["phone"].startswith("[HASH:")
    assert "T" in payload["timestamp"] and not payload["timestamp"].startswith("[")


def test_log_metric_writes_csv_row_with_cost():
    row = metrics.log_metric("ads", "generate_ad_ideas", status="openai", tokens_in=1000, tokens_out=1000, model="gpt-4o-mini")
    assert row["cost_usd"] == pytest.approx(0.00075)
    with metrics.metrics_csv_path().open(encoding="utf-8") as f:
        rows = list(csv.DictReader(f))
    assert rows[-1]["component"] == "ads"
    assert rows[-1]["status"] == "openai"


def test_summarize_metrics_groups_by_component():
    metrics.log_metric("easybroker", "properties", status="exhausted", latency_ms=100, pages=2, items=40)
    metrics.log_metric("easybroker", "contacts", status="unavailable", latency_ms=300)
    summary = metrics.summarize_metrics(metrics.fetch_metrics())
    assert summary["average_latency_ms"]["easybroker"] == 200
    assert summary["errors"] == {"easybroker": 1}
    assert summary["sample_size"] == 2


def test_timed_operation_logs_on_exit():
    with metrics.timed_operation("sync", "properties") as timer:
        timer.fields["items"] = 3
    rows = metrics.fetch_metrics()
    assert rows[0]["operation"] == "properties"
    assert rows[0]["items"] == "3"


def test_fetch_metrics_from_csv_returns_newest_first():
    for idx in range(5):
        metrics.log_metric("easybroker", f"op-{idx}")
    rows = metrics.fetch_metrics(limit=3)
    assert [row["operation"] for row in rows] == ["op-4", "op-3", "op-2"]


class _StatusError(Exception):
    def __init__(self, status_code):
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code


def test_retryable_errors():
    assert is_retryable_http_error(_StatusError(503))
    assert is_retryable_http_error(_StatusError(429))
    assert not is_retryable_http_error(_StatusError(404))
    assert not is_retryable_http_error(ValueError("x"))


@pytest.mark.asyncio
async def test_retry_stops_on_non_retryable_error():
    calls = {"n": 0}

    async def fail():
        calls["n"] += 1
        raise _StatusError(404)

    with pytest.raises(_StatusError):
        await retry_async_with_backoff(fail, retries=3, base_delay=0, jitter=0, should_retry=is_retryable_http_error)
    assert calls["n"] == 1


@pytest.mark.asyncio
async def test_retry_eventually_succeeds():
    calls = {"n": 0}

    async def flaky():
        calls["n"] += 1
        if calls["n"] < 3:
            raise _StatusError(502)
        return "ok"

    assert await retry_async_with_backoff(flaky, retries=3, base_delay=0, jitter=0) == "ok"
    assert calls["n"] == 3
