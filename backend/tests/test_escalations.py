from __future__ import annotations

import json
import urllib.error
from datetime import date, datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest

from delivery_reminders.escalations import (
    EscalationPostResult,
    EscalationRequest,
    Escalator,
    HttpEscalationClient,
    StubEscalationClient,
    create_escalation_client,
)
from delivery_reminders.job_store import InMemoryJobStore
from delivery_reminders.order_view import InMemoryOrderView, OrderRecord
from delivery_reminders.phases import get_policy

NOW = datetime(2026, 5, 20, 18, 0, tzinfo=timezone.utc)


def _request() -> EscalationRequest:
    return EscalationRequest(
        order_id="ord-001",
        order_nbr="SO-1001",
        phase_id="t14",
        delivery_date=date(2026, 5, 30),
        contact_channel="buyer@example.com",
        day_offset=10,
        attempt_count=2,
        reason="late-window",
    )


def _mock_response(body: dict[str, object]) -> MagicMock:
    response = MagicMock()
    response.read.return_value = json.dumps(body).encode("utf-8")
    response.__enter__ = MagicMock(return_value=response)
    response.__exit__ = MagicMock(return_value=False)
    return response


def _setup():
    jobs = InMemoryJobStore()
    orders = InMemoryOrderView()
    orders.upsert_order(
        OrderRecord(
            order_id="ord-001",
            order_nbr="SO-1001",
            customer_name="Acme Builders",
            delivery_date=date(2026, 5, 30),
            is_active=True,
            contact_channel="buyer@example.com",
        )
    )
    order = orders.get_order("ord-001", "t14")
    job = jobs.ensure_job("ord-001", "t14", snapshot=order.delivery_date, now=NOW)
    return jobs, orders, order, job


@patch("delivery_reminders.escalations.urllib.request.urlopen")
def test_http_client_posts_payload_with_idempotency_key(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response({"ok": True, "external_id": "ERP-991"})
    client = HttpEscalationClient(base_url="https://erp.test/", api_key="erp-key")

    result = client.post_escalation(_request())

    assert result.ok is True
    assert result.external_id == "ERP-991"
    request_arg = mock_urlopen.call_args[0][0]
    assert request_arg.full_url == "https://erp.test/v1/escalations"
    assert request_arg.get_header("Authorization") == "Bearer erp-key"
    assert request_arg.get_header("Idempotency-key") == "t14:ord-001"
    body = json.loads(request_arg.data.decode("utf-8"))
    assert body["reason"] == "late-window"
    assert body["day_offset"] == 10
    assert body["delivery_date"] == "2026-05-30"


@patch("delivery_reminders.escalations.urllib.request.urlopen")
def test_http_client_reports_explicit_rejection(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response({"ok": False, "note": "order locked"})

    result = HttpEscalationClient(base_url="https://erp.test", api_key="erp-key").post_escalation(_request())

    assert result.ok is False
    assert result.note == "order locked"


@patch("delivery_reminders.escalations.urllib.request.urlopen")
def test_http_client_maps_http_errors(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.HTTPError(
        url="https://erp.test/v1/escalations",
        code=502,
        msg="Bad Gateway",
        hdrs={},  # type: ignore[arg-type]
        fp=None,
    )

    result = HttpEscalationClient(base_url="https://erp.test", api_key="erp-key").post_escalation(_request())

    assert result.ok is False
    assert "502" in (result.note or "")


def test_http_client_requires_credentials() -> None:
    with pytest.raises(ValueError, match="base_url must not be empty"):
        HttpEscalationClient(base_url=" ", api_key="erp-key")
    with pytest.raises(ValueError, match="api_key must not be empty"):
        HttpEscalationClient(base_url="https://erp.test", api_key="")


def test_escalator_success_records_and_blocks() -> None:
    jobs, orders, order, job = _setup()
    escalator = Escalator(job_store=jobs, order_view=orders, client=StubEscalationClient())

    outcome = escalator.escalate(order, get_policy("t14"), job, day_offset=10, reason="late-window", now=NOW)

    assert outcome.claimed is True
    assert outcome.ok is True
    assert jobs.get_job("ord-001", "t14").status == "escalated"
    assert orders.get_order("ord-001", "t14").blocked is True
    assert orders.get_order("ord-001", "t42").blocked is False


def test_escalator_lost_claim_does_not_post() -> None:
    jobs, orders, order, job = _setup()
    client = MagicMock()
    jobs.claim_escalation(job.job_id, now=NOW)

    outcome = Escalator(job_store=jobs, order_view=orders, client=client).escalate(
        order, get_policy("t14"), job, day_offset=10, reason="late-window", now=NOW
    )

    assert outcome.claimed is False
    client.post_escalation.assert_not_called()


def test_escalator_failed_post_keeps_claim() -> None:
    jobs, orders, order, job = _setup()
    client = MagicMock()
    client.post_escalation.return_value = EscalationPostResult(ok=False, note="HTTP 503: Service Unavailable")

    outcome = Escalator(job_store=jobs, order_view=orders, client=client).escalate(
        order, get_policy("t14"), job, day_offset=10, reason="late-window", now=NOW
    )

    assert outcome.claimed is True
    assert outcome.ok is False
    stored = jobs.get_job("ord-001", "t14")
    assert stored.status == "escalated"
    assert stored.escalation_posted_at == NOW
    assert stored.escalation_external_id is None
    assert orders.get_order("ord-001", "t14").blocked is False


def test_escalator_reposts_pending_claim_on_a_later_pass() -> None:
    jobs, orders, order, job = _setup()
    client = MagicMock()
    client.post_escalation.side_effect = [
        EscalationPostResult(ok=False, note="HTTP 502: Bad Gateway"),
        EscalationPostResult(ok=True, external_id="ERP-12"),
    ]
    escalator = Escalator(job_store=jobs, order_view=orders, client=client)
    policy = get_policy("t14")
    escalator.escalate(order, policy, job, day_offset=10, reason="late-window", now=NOW)
    pending = jobs.get_job("ord-001", "t14")
    later = NOW + timedelta(days=1)

    outcome = escalator.escalate(order, policy, pending, day_offset=9, reason="late-window", now=later)

    assert outcome.claimed is True
    assert outcome.ok is True
    assert client.post_escalation.call_count == 2
    stored = jobs.get_job("ord-001", "t14")
    assert stored.escalation_posted_at == later
    assert stored.escalation_recorded_at == later
    assert stored.escalation_external_id == "ERP-12"
    assert orders.get_order("ord-001", "t14").blocked is True


def test_escalator_stale_pending_snapshot_does_not_repost() -> None:
    jobs, orders, order, job = _setup()
    jobs.claim_escalation(job.job_id, now=NOW)
    pending = jobs.get_job("ord-001", "t14")
    later = NOW + timedelta(days=1)
    jobs.reclaim_escalation(job.job_id, previous_claim=NOW, now=later)
    client = MagicMock()

    outcome = Escalator(job_store=jobs, order_view=orders, client=client).escalate(
        order, get_policy("t14"), pending, day_offset=9, reason="late-window", now=later + timedelta(minutes=1)
    )

    assert outcome.claimed is False
    client.post_escalation.assert_not_called()


def test_create_escalation_client_selects_client() -> None:
    http_client = create_escalation_client(client_type="http", base_url="https://erp.test", api_key="k", timeout_seconds=5)
    stub_client = create_escalation_client(client_type="stub", base_url="", api_key="", timeout_seconds=5)

    assert isinstance(http_client, HttpEscalationClient)
    assert isinstance(stub_client, StubEscalationClient)
