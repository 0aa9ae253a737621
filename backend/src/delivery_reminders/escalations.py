"""Escalation of unconfirmed orders to the ERP.

The job is claimed before anything leaves this process. Only the caller that
wins ``claim_escalation`` posts to the ERP, and a failed post does not give
the claim back. The job stays escalated without ``escalation_recorded_at``
and a later pass re-posts it after winning ``reclaim_escalation``; the ERP
deduplicates on the ``{phase}:{order}`` idempotency key.
"""

from __future__ import annotations

import json
import logging
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import date, datetime
from typing import Protocol

from .job_store import JobStore, NotificationJobRecord
from .models import EscalationReason
from .notifier import mask_contact_target
from .order_view import OrderSnapshot, OrderView
from .phases import PhasePolicy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EscalationRequest:
    order_id: str
    order_nbr: str
    phase_id: str
    delivery_date: date | None
    contact_channel: str | None
    day_offset: int
    attempt_count: int
    reason: EscalationReason

    @property
    def idempotency_key(self) -> str:
        return f"{self.phase_id}:{self.order_id}"

    def as_payload(self) -> dict[str, object]:
        return {
            "order_id": self.order_id,
            "order_nbr": self.order_nbr,
            "phase_id": self.phase_id,
            "delivery_date": self.delivery_date.isoformat() if self.delivery_date is not None else None,
            "contact_channel": self.contact_channel,
            "day_offset": self.day_offset,
            "attempt_count": self.attempt_count,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class EscalationPostResult:
    ok: bool
    external_id: str | None = None
    note: str | None = None


@dataclass(frozen=True)
class EscalationOutcome:
    claimed: bool
    ok: bool
    external_id: str | None = None
    note: str | None = None


class EscalationClient(Protocol):
    def post_escalation(self, request: EscalationRequest) -> EscalationPostResult: ...


class StubEscalationClient:
    """Accepts every escalation without an ERP round trip."""

    def post_escalation(self, request: EscalationRequest) -> EscalationPostResult:
        logger.info(
            "stub escalation accepted for order=%s phase=%s day_offset=%s reason=%s",
            request.order_id,
            request.phase_id,
            request.day_offset,
            request.reason,
        )
        return EscalationPostResult(ok=True, external_id=None, note="stub escalation accepted")


class HttpEscalationClient:
    def __init__(self, *, base_url: str, api_key: str, timeout_seconds: int = 30) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_key = api_key.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_key:
            raise ValueError("api_key must not be empty")
        self._base_url = stripped_url
        self._api_key = stripped_key
        self._timeout_seconds = timeout_seconds

    def post_escalation(self, request: EscalationRequest) -> EscalationPostResult:
        http_request = urllib.request.Request(
            f"{self._base_url}/v1/escalations",
            data=json.dumps(request.as_payload()).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
                "Idempotency-Key": request.idempotency_key,
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(http_request, timeout=self._timeout_seconds) as response:
                body = json.loads(response.read().decode("utf-8") or "{}")
        except urllib.error.HTTPError as exc:
            return EscalationPostResult(ok=False, note=f"HTTP {exc.code}: {exc.reason}")
        except urllib.error.URLError as exc:
            return EscalationPostResult(ok=False, note=f"Connection error: {exc.reason}")
        except (socket.timeout, TimeoutError) as exc:
            return EscalationPostResult(ok=False, note=f"Request timed out: {exc}")
        except json.JSONDecodeError:
            return EscalationPostResult(ok=False, note="Response body was not valid JSON")

        if not isinstance(body, dict):
            return EscalationPostResult(ok=False, note="Response body was not a JSON object")
        external_id = body.get("external_id") or body.get("id")
        return EscalationPostResult(
            ok=body.get("ok", True) is not False,
            external_id=str(external_id) if external_id else None,
            note=body.get("note") if isinstance(body.get("note"), str) else None,
        )


class Escalator:
    def __init__(self, *, job_store: JobStore, order_view: OrderView, client: EscalationClient) -> None:
        self._job_store = job_store
        self._order_view = order_view
        self._client = client

    def escalate(
        self,
        order: OrderSnapshot,
        policy: PhasePolicy,
        job: NotificationJobRecord,
        *,
        day_offset: int,
        reason: EscalationReason,
        now: datetime,
    ) -> EscalationOutcome:
        if job.escalation_pending and job.escalation_posted_at is not None:
            claimed = self._job_store.reclaim_escalation(job.job_id, previous_claim=job.escalation_posted_at, now=now)
        else:
            claimed = self._job_store.claim_escalation(job.job_id, now=now)
        if not claimed:
            return EscalationOutcome(claimed=False, ok=False, note="escalation already claimed")

        request = EscalationRequest(
            order_id=order.order_id,
            order_nbr=order.order_nbr,
            phase_id=policy.phase_id,
            delivery_date=order.delivery_date,
            contact_channel=order.contact_target,
            day_offset=day_offset,
            attempt_count=job.attempt_count,
            reason=reason,
        )
        try:
            result = self._client.post_escalation(request)
        except Exception:
            logger.exception(
                "escalation post raised for order=%s phase=%s; job %s stays escalated",
                order.order_id,
                policy.phase_id,
                job.job_id,
            )
            return EscalationOutcome(claimed=True, ok=False, note="escalation client raised")

        if not result.ok:
            logger.warning(
                "escalation post failed for order=%s phase=%s recipient=%s: %s",
                order.order_id,
                policy.phase_id,
                mask_contact_target(order.contact_target or ""),
                result.note,
            )
            return EscalationOutcome(claimed=True, ok=False, note=result.note)

        self._job_store.record_escalation(job.job_id, external_id=result.external_id, now=now)
        self._order_view.mark_blocked(order.order_id, policy.phase_id)
        return EscalationOutcome(claimed=True, ok=True, external_id=result.external_id, note=result.note)


def create_escalation_client(
    *,
    client_type: str,
    base_url: str,
    api_key: str,
    timeout_seconds: int,
) -> EscalationClient:
    if client_type.strip().lower() == "http":
        return HttpEscalationClient(base_url=base_url, api_key=api_key, timeout_seconds=timeout_seconds)
    return StubEscalationClient()
