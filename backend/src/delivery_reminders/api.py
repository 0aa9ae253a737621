from __future__ import annotations

import hmac
import logging
from collections import Counter
from datetime import datetime, timezone

from fastapi import APIRouter, HTTPException, Request

from .business_calendar import resolve_timezone, start_of_business_day
from .config import Settings, get_settings
from .escalations import EscalationClient, Escalator, create_escalation_client
from .job_store import JobStore, NotificationJobRecord, create_job_store
from .models import (
    JobRollup,
    NotificationJobItem,
    PhaseInfoResponse,
    PhaseRunItem,
    PhaseRunRequest,
    PhaseRunResponse,
    PhaseStatusResponse,
)
from .notifier import Notifier, create_notifier
from .order_view import OrderView, create_order_view
from .phase_runs import PhaseRunRecord, PhaseRunner, PhaseRunRepository, create_phase_run_repository
from .phases import PhasePolicy, UnknownPhaseError, get_policy

logger = logging.getLogger(__name__)

STATUS_JOB_LIMIT = 200

_settings = get_settings()
router = APIRouter(prefix=f"{_settings.api_prefix}/cron", tags=["cron"])


def _create_notifier(settings: Settings) -> Notifier:
    return create_notifier(
        sender_type=settings.notifier_sender_type,
        enabled=settings.notifier_enabled,
        channel=settings.notifier_channel,
        base_url=settings.notifier_api_base_url,
        api_key=settings.notifier_api_key,
        timeout_seconds=settings.notifier_timeout_seconds,
        business_timezone=settings.business_timezone,
    )


def _create_escalation_client(settings: Settings) -> EscalationClient:
    return create_escalation_client(
        client_type=settings.escalation_client_type,
        base_url=settings.erp_escalation_base_url,
        api_key=settings.erp_escalation_api_key,
        timeout_seconds=settings.erp_escalation_timeout_seconds,
    )


job_store: JobStore = create_job_store(backend=_settings.job_store_backend, database_url=_settings.database_url)
order_view: OrderView = create_order_view(backend=_settings.order_view_backend, database_url=_settings.database_url)
run_repo: PhaseRunRepository = create_phase_run_repository(
    backend=_settings.phase_run_store_backend,
    database_url=_settings.database_url,
)
notifier: Notifier = _create_notifier(_settings)
escalation_client: EscalationClient = _create_escalation_client(_settings)


def _build_runner() -> PhaseRunner:
    # Collaborators are looked up at call time so tests can swap the module globals.
    return PhaseRunner(
        job_store=job_store,
        order_view=order_view,
        notifier=notifier,
        escalator=Escalator(job_store=job_store, order_view=order_view, client=escalation_client),
        runs=run_repo,
        business_timezone=_settings.business_timezone,
        max_workers=_settings.phase_worker_count,
    )


def reset_runtime_state_for_tests() -> None:
    job_store.reset()
    order_view.reset()
    run_repo.reset()


def _require_cron_secret(request: Request) -> None:
    header = request.headers.get("Authorization", "")
    if not header.startswith("Bearer "):
        raise HTTPException(401, "cron token required")
    token = header.removeprefix("Bearer ").strip()
    expected = _settings.cron_secret
    if not expected or not token or not hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(401, "invalid cron token")


def _resolve_policy(phase_id: str) -> PhasePolicy:
    try:
        return get_policy(phase_id)
    except UnknownPhaseError as exc:
        raise HTTPException(status_code=404, detail=f"phase not found: {phase_id}") from exc


def _job_item(record: NotificationJobRecord) -> NotificationJobItem:
    return NotificationJobItem(
        job_id=record.job_id,
        order_id=record.order_id,
        phase=record.phase_id,
        status=record.status,
        attempt_count=record.attempt_count,
        last_attempt_at=record.last_attempt_at,
        escalation_posted_at=record.escalation_posted_at,
        escalation_external_id=record.escalation_external_id,
        escalation_recorded_at=record.escalation_recorded_at,
        last_delivery_date_snapshot=record.last_delivery_date_snapshot,
        scheduled_at=record.scheduled_at,
        closed_at=record.closed_at,
        updated_at=record.updated_at,
    )


def _run_item(record: PhaseRunRecord) -> PhaseRunItem:
    return PhaseRunItem(
        run_id=record.run_id,
        phase=record.phase_id,
        triggered_by=record.triggered_by,
        status=record.status,
        run_at=record.run_at,
        finished_at=record.finished_at,
        summary=record.summary(),
    )


@router.get("/{phase_id}", response_model=PhaseInfoResponse)
def get_phase_info(phase_id: str) -> PhaseInfoResponse:
    policy = _resolve_policy(phase_id)
    return PhaseInfoResponse(
        phase=policy.phase_id,
        label=policy.label,
        target_day_offset=policy.target_day_offset,
        attempt_window=sorted(policy.attempt_window, reverse=True),
        escalate_below_offset=policy.escalate_below_offset,
        reset_above_offset=policy.reset_above_offset,
        max_attempts=policy.max_attempts,
        escalate_on_ceiling=policy.escalate_on_ceiling,
        message=f"POST with a cron bearer token to run the {policy.phase_id} reminder pass",
    )


@router.post("/{phase_id}", response_model=PhaseRunResponse)
def run_phase(phase_id: str, request: Request, payload: PhaseRunRequest | None = None) -> PhaseRunResponse:
    _require_cron_secret(request)
    policy = _resolve_policy(phase_id)
    if not _settings.notifs_enabled:
        raise HTTPException(503, "NOTIFS_DISABLED")

    now = None
    if payload is not None and payload.now_override is not None:
        if _settings.cron_allow_now_override:
            now = payload.now_override
        else:
            logger.warning("[%s] ignoring now_override; CRON_ALLOW_NOW_OVERRIDE is off", policy.phase_id)

    return _build_runner().run_phase(policy.phase_id, now=now, triggered_by="cron")


@router.get("/{phase_id}/status", response_model=PhaseStatusResponse)
def get_phase_status(phase_id: str, request: Request) -> PhaseStatusResponse:
    _require_cron_secret(request)
    policy = _resolve_policy(phase_id)

    day_start = start_of_business_day(datetime.now(timezone.utc), resolve_timezone(_settings.business_timezone))
    jobs = job_store.list_jobs(policy.phase_id, updated_since=day_start, limit=STATUS_JOB_LIMIT)
    counts = Counter(job.status for job in jobs)
    latest = run_repo.get_latest_run(policy.phase_id)

    return PhaseStatusResponse(
        phase=policy.phase_id,
        day_start=day_start,
        rollup=JobRollup(
            total=len(jobs),
            open=counts["open"],
            escalated=counts["escalated"],
            closed=counts["closed"],
        ),
        jobs=[_job_item(job) for job in jobs],
        latest_run=_run_item(latest) if latest is not None else None,
    )
