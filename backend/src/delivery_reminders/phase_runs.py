from __future__ import annotations

import logging
import secrets
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Protocol

from sqlalchemy import DateTime, String, Text, create_engine, select
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .business_calendar import business_day, day_offset, resolve_timezone, same_business_day, start_of_business_day
from .escalations import Escalator
from .job_store import JobStore, NotificationJobRecord
from .models import EscalationReason, ExecutionSummary, PhaseRunResponse
from .notifier import Notifier
from .order_view import OrderSnapshot, OrderView
from .phases import PhasePolicy, get_policy

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class PhaseRunRecord:
    run_id: str
    phase_id: str
    triggered_by: str
    status: str
    run_at: datetime
    summary_json: str
    created_at: datetime
    finished_at: datetime | None

    def summary(self) -> ExecutionSummary:
        return ExecutionSummary.model_validate_json(self.summary_json)


class PhaseRunRepository(Protocol):
    def reset(self) -> None: ...

    def start_run(self, *, phase_id: str, triggered_by: str, run_at: datetime) -> str: ...

    def finalize_run(self, run_id: str, *, status: str, summary: ExecutionSummary, finished_at: datetime) -> None: ...

    def get_run(self, run_id: str) -> PhaseRunRecord | None: ...

    def get_latest_run(self, phase_id: str) -> PhaseRunRecord | None: ...


class InMemoryPhaseRunRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._run_counter = 1
        self._runs: dict[str, PhaseRunRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._run_counter = 1
            self._runs.clear()

    def start_run(self, *, phase_id: str, triggered_by: str, run_at: datetime) -> str:
        with self._lock:
            run_id = f"prun_{self._run_counter:06d}"
            self._run_counter += 1
            self._runs[run_id] = PhaseRunRecord(
                run_id=run_id,
                phase_id=phase_id,
                triggered_by=triggered_by,
                status="running",
                run_at=_coerce_utc(run_at),
                summary_json=ExecutionSummary().model_dump_json(),
                created_at=_now_utc(),
                finished_at=None,
            )
            return run_id

    def finalize_run(self, run_id: str, *, status: str, summary: ExecutionSummary, finished_at: datetime) -> None:
        with self._lock:
            row = self._runs[run_id]
            self._runs[run_id] = PhaseRunRecord(
                **{
                    **row.__dict__,
                    "status": status,
                    "summary_json": summary.model_dump_json(),
                    "finished_at": _coerce_utc(finished_at),
                }
            )

    def get_run(self, run_id: str) -> PhaseRunRecord | None:
        with self._lock:
            return self._runs.get(run_id)

    def get_latest_run(self, phase_id: str) -> PhaseRunRecord | None:
        with self._lock:
            candidates = [value for value in self._runs.values() if value.phase_id == phase_id]
        if not candidates:
            return None
        return max(candidates, key=lambda value: (value.run_at, value.created_at))


class PhaseRunsBase(DeclarativeBase):
    pass


class _PhaseRunRow(PhaseRunsBase):
    __tablename__ = "phase_runs"

    run_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    phase_id: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    triggered_by: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    run_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    summary_json: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


def _run_from_row(row: _PhaseRunRow) -> PhaseRunRecord:
    return PhaseRunRecord(
        run_id=row.run_id,
        phase_id=row.phase_id,
        triggered_by=row.triggered_by,
        status=row.status,
        run_at=_coerce_utc(row.run_at),
        summary_json=row.summary_json,
        created_at=_coerce_utc(row.created_at),
        finished_at=_coerce_utc(row.finished_at) if row.finished_at is not None else None,
    )


class SqlAlchemyPhaseRunRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for PHASE_RUN_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            PhaseRunsBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_PhaseRunRow).delete()

    def start_run(self, *, phase_id: str, triggered_by: str, run_at: datetime) -> str:
        run_id = f"prun_{secrets.token_hex(8)}"
        with self._session() as session:
            with session.begin():
                session.add(
                    _PhaseRunRow(
                        run_id=run_id,
                        phase_id=phase_id,
                        triggered_by=triggered_by,
                        status="running",
                        run_at=_coerce_utc(run_at),
                        summary_json=ExecutionSummary().model_dump_json(),
                        created_at=_now_utc(),
                    )
                )
        return run_id

    def finalize_run(self, run_id: str, *, status: str, summary: ExecutionSummary, finished_at: datetime) -> None:
        with self._session() as session:
            with session.begin():
                row = session.get(_PhaseRunRow, run_id)
                if row is None:
                    return
                row.status = status
                row.summary_json = summary.model_dump_json()
                row.finished_at = _coerce_utc(finished_at)

    def get_run(self, run_id: str) -> PhaseRunRecord | None:
        with self._session() as session:
            row = session.get(_PhaseRunRow, run_id)
            return _run_from_row(row) if row is not None else None

    def get_latest_run(self, phase_id: str) -> PhaseRunRecord | None:
        with self._session() as session:
            row = session.execute(
                select(_PhaseRunRow)
                .where(_PhaseRunRow.phase_id == phase_id)
                .order_by(_PhaseRunRow.run_at.desc(), _PhaseRunRow.created_at.desc())
                .limit(1)
            ).scalar_one_or_none()
            return _run_from_row(row) if row is not None else None


def create_phase_run_repository(*, backend: str, database_url: str) -> PhaseRunRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyPhaseRunRepository(database_url)
    if normalized == "inmemory":
        return InMemoryPhaseRunRepository()
    raise RuntimeError(f"unsupported PHASE_RUN_STORE_BACKEND: {backend}")


class PhaseRunner:
    """Runs one pass of a reminder phase over every candidate order.

    Orders are independent: each one only touches its own ``(order, phase)``
    job through the store's atomic primitives, so they are fanned out over a
    bounded worker pool and the per-order outcomes are summed afterwards.
    """

    def __init__(
        self,
        *,
        job_store: JobStore,
        order_view: OrderView,
        notifier: Notifier,
        escalator: Escalator,
        runs: PhaseRunRepository,
        business_timezone: str = "America/Denver",
        max_workers: int = 4,
    ) -> None:
        self._job_store = job_store
        self._order_view = order_view
        self._notifier = notifier
        self._escalator = escalator
        self._runs = runs
        self._tz = resolve_timezone(business_timezone)
        self._max_workers = max(1, max_workers)

    def run_phase(
        self,
        phase_id: str,
        *,
        now: datetime | None = None,
        triggered_by: str = "cron",
    ) -> PhaseRunResponse:
        policy = get_policy(phase_id)
        run_at = _coerce_utc(now) if now is not None else _now_utc()
        run_id = self._runs.start_run(phase_id=policy.phase_id, triggered_by=triggered_by, run_at=run_at)

        try:
            orders = self._order_view.list_candidates(policy.phase_id, today=business_day(run_at, self._tz))
            totals: Counter[str] = Counter()
            with ThreadPoolExecutor(
                max_workers=self._max_workers,
                thread_name_prefix=f"phase-{policy.phase_id}",
            ) as pool:
                for outcome in pool.map(lambda order: self._evaluate_guarded(policy, order, run_at), orders):
                    totals.update(outcome)
        except Exception:
            self._runs.finalize_run(run_id, status="failed", summary=ExecutionSummary(), finished_at=_now_utc())
            raise

        summary = ExecutionSummary(evaluated=len(orders), **totals)
        self._runs.finalize_run(run_id, status="completed", summary=summary, finished_at=_now_utc())
        logger.info("[%s] run %s summary: %s", policy.phase_id, run_id, summary.model_dump_json())
        return PhaseRunResponse(phase=policy.phase_id, run_id=run_id, run_at=run_at, summary=summary)

    def _evaluate_guarded(self, policy: PhasePolicy, order: OrderSnapshot, now: datetime) -> Counter[str]:
        try:
            return self.evaluate_order(policy, order, now)
        except Exception:
            logger.exception("[%s] order %s failed; continuing with the pass", policy.phase_id, order.order_id)
            return Counter(errors=1)

    def evaluate_order(self, policy: PhasePolicy, order: OrderSnapshot, now: datetime) -> Counter[str]:
        if order.confirmed:
            job = self._job_store.get_job(order.order_id, policy.phase_id)
            if job is not None and job.status != "closed" and self._job_store.close_job(job.job_id, now=now):
                return Counter(closed=1)
            return Counter(skipped=1)

        # Held until the external collaborator clears the flag.
        if order.blocked:
            return Counter(skipped=1)

        offset = day_offset(order.delivery_date, now, self._tz)
        if offset is None:
            return Counter(skipped=1)

        if policy.in_reset_range(offset):
            return self._reset_if_started(policy, order, now)

        if policy.in_escalation_range(offset):
            job = self._job_store.ensure_job(order.order_id, policy.phase_id, snapshot=order.delivery_date, now=now)
            if job.status == "open" or job.escalation_pending:
                return self._escalate(policy, order, job, offset, "late-window", now)
            return Counter(skipped=1)

        if policy.in_attempt_window(offset):
            job = self._job_store.ensure_job(order.order_id, policy.phase_id, snapshot=order.delivery_date, now=now)
            if job.escalation_pending:
                return self._escalate(policy, order, job, offset, "attempt-ceiling", now)
            if job.status != "open":
                return Counter(skipped=1)
            return self._attempt(policy, order, job, offset, now)

        return Counter(skipped=1)

    def _reset_if_started(self, policy: PhasePolicy, order: OrderSnapshot, now: datetime) -> Counter[str]:
        job = self._job_store.get_job(order.order_id, policy.phase_id)
        if job is None or job.status == "closed":
            return Counter(skipped=1)
        if job.attempt_count == 0 and job.escalation_posted_at is None:
            return Counter(skipped=1)
        if self._job_store.reset_job(job.job_id, snapshot=order.delivery_date, now=now) is None:
            return Counter(skipped=1)
        return Counter(resets=1)

    def _attempt(
        self,
        policy: PhasePolicy,
        order: OrderSnapshot,
        job: NotificationJobRecord,
        offset: int,
        now: datetime,
    ) -> Counter[str]:
        counted_today = same_business_day(job.last_attempt_at, now, self._tz)
        if job.attempt_count < policy.max_attempts and not counted_today:
            incremented = self._job_store.increment_attempt(
                job.job_id,
                now=now,
                max_attempts=policy.max_attempts,
                day_start=start_of_business_day(now, self._tz),
            )
            if incremented is None:
                return Counter(skipped=1)

            # The attempt stands whether or not the send goes through.
            outcome: Counter[str] = Counter(attempts=1)
            if order.contact_target is not None:
                if self._notifier.notify(order, policy).ok:
                    outcome["sent"] += 1
                else:
                    outcome["send_errors"] += 1
            return outcome

        if job.attempt_count >= policy.max_attempts and policy.escalate_on_ceiling:
            return self._escalate(policy, order, job, offset, "attempt-ceiling", now)

        return Counter(skipped=1)

    def _escalate(
        self,
        policy: PhasePolicy,
        order: OrderSnapshot,
        job: NotificationJobRecord,
        offset: int,
        reason: EscalationReason,
        now: datetime,
    ) -> Counter[str]:
        outcome = self._escalator.escalate(order, policy, job, day_offset=offset, reason=reason, now=now)
        if not outcome.claimed:
            return Counter(skipped=1)
        if outcome.ok:
            return Counter(escalations=1)
        return Counter(escalation_errors=1)
