from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from itertools import count
from threading import Lock
from typing import Protocol

from sqlalchemy import (
    BigInteger,
    Date,
    DateTime,
    Integer,
    String,
    UniqueConstraint,
    create_engine,
    or_,
    select,
    update,
)
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _coerce_optional_utc(value: datetime | None) -> datetime | None:
    return _coerce_utc(value) if value is not None else None


@dataclass(frozen=True)
class NotificationJobRecord:
    job_id: int
    order_id: str
    phase_id: str
    status: str
    attempt_count: int
    last_attempt_at: datetime | None
    escalation_posted_at: datetime | None
    escalation_external_id: str | None
    escalation_recorded_at: datetime | None
    last_delivery_date_snapshot: date | None
    scheduled_at: datetime
    closed_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @property
    def escalation_pending(self) -> bool:
        """Claimed for escalation but the ERP has not accepted the post yet."""
        return self.status == "escalated" and self.escalation_recorded_at is None


class JobStore(Protocol):
    def reset(self) -> None: ...

    def get_job(self, order_id: str, phase_id: str) -> NotificationJobRecord | None: ...

    def ensure_job(
        self,
        order_id: str,
        phase_id: str,
        *,
        snapshot: date | None,
        now: datetime,
    ) -> NotificationJobRecord: ...

    def increment_attempt(
        self,
        job_id: int,
        *,
        now: datetime,
        max_attempts: int,
        day_start: datetime,
    ) -> NotificationJobRecord | None: ...

    def reset_job(self, job_id: int, *, snapshot: date | None, now: datetime) -> NotificationJobRecord | None: ...

    def claim_escalation(self, job_id: int, *, now: datetime) -> bool: ...

    def reclaim_escalation(self, job_id: int, *, previous_claim: datetime, now: datetime) -> bool: ...

    def record_escalation(self, job_id: int, *, external_id: str | None, now: datetime) -> None: ...

    def close_job(self, job_id: int, *, now: datetime) -> bool: ...

    def list_jobs(self, phase_id: str, *, updated_since: datetime, limit: int) -> list[NotificationJobRecord]: ...


class InMemoryJobStore:
    """Lock-guarded store; every primitive is a single critical section."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._counter = count(1)
        self._jobs: dict[int, NotificationJobRecord] = {}
        self._key_index: dict[tuple[str, str], int] = {}

    def reset(self) -> None:
        with self._lock:
            self._counter = count(1)
            self._jobs.clear()
            self._key_index.clear()

    def get_job(self, order_id: str, phase_id: str) -> NotificationJobRecord | None:
        with self._lock:
            job_id = self._key_index.get((order_id, phase_id))
            if job_id is None:
                return None
            return self._jobs[job_id]

    def ensure_job(
        self,
        order_id: str,
        phase_id: str,
        *,
        snapshot: date | None,
        now: datetime,
    ) -> NotificationJobRecord:
        now = _coerce_utc(now)
        with self._lock:
            job_id = self._key_index.get((order_id, phase_id))
            if job_id is not None:
                row = self._jobs[job_id]
                changes: dict[str, object] = {"updated_at": now}
                if snapshot is not None:
                    changes["last_delivery_date_snapshot"] = snapshot
                updated = NotificationJobRecord(**{**row.__dict__, **changes})
                self._jobs[job_id] = updated
                return updated

            job_id = next(self._counter)
            created = NotificationJobRecord(
                job_id=job_id,
                order_id=order_id,
                phase_id=phase_id,
                status="open",
                attempt_count=0,
                last_attempt_at=None,
                escalation_posted_at=None,
                escalation_external_id=None,
                escalation_recorded_at=None,
                last_delivery_date_snapshot=snapshot,
                scheduled_at=now,
                closed_at=None,
                created_at=now,
                updated_at=now,
            )
            self._jobs[job_id] = created
            self._key_index[(order_id, phase_id)] = job_id
            return created

    def increment_attempt(
        self,
        job_id: int,
        *,
        now: datetime,
        max_attempts: int,
        day_start: datetime,
    ) -> NotificationJobRecord | None:
        now = _coerce_utc(now)
        day_start = _coerce_utc(day_start)
        with self._lock:
            row = self._jobs.get(job_id)
            if row is None or row.status != "open":
                return None
            if row.attempt_count >= max_attempts:
                return None
            if row.last_attempt_at is not None and row.last_attempt_at >= day_start:
                return None
            updated = NotificationJobRecord(
                **{
                    **row.__dict__,
                    "attempt_count": row.attempt_count + 1,
                    "last_attempt_at": now,
                    "updated_at": now,
                }
            )
            self._jobs[job_id] = updated
            return updated

    def reset_job(self, job_id: int, *, snapshot: date | None, now: datetime) -> NotificationJobRecord | None:
        now = _coerce_utc(now)
        with self._lock:
            row = self._jobs.get(job_id)
            if row is None or row.status == "closed":
                return None
            updated = NotificationJobRecord(
                **{
                    **row.__dict__,
                    "status": "open",
                    "attempt_count": 0,
                    "escalation_posted_at": None,
                    "escalation_external_id": None,
                    "escalation_recorded_at": None,
                    "last_delivery_date_snapshot": snapshot if snapshot is not None else row.last_delivery_date_snapshot,
                    "updated_at": now,
                }
            )
            self._jobs[job_id] = updated
            return updated

    def claim_escalation(self, job_id: int, *, now: datetime) -> bool:
        now = _coerce_utc(now)
        with self._lock:
            row = self._jobs.get(job_id)
            if row is None or row.status == "closed" or row.escalation_posted_at is not None:
                return False
            self._jobs[job_id] = NotificationJobRecord(
                **{
                    **row.__dict__,
                    "status": "escalated",
                    "escalation_posted_at": now,
                    "updated_at": now,
                }
            )
            return True

    def reclaim_escalation(self, job_id: int, *, previous_claim: datetime, now: datetime) -> bool:
        now = _coerce_utc(now)
        previous_claim = _coerce_utc(previous_claim)
        if now <= previous_claim:
            return False
        with self._lock:
            row = self._jobs.get(job_id)
            if row is None or not row.escalation_pending or row.escalation_posted_at != previous_claim:
                return False
            self._jobs[job_id] = NotificationJobRecord(
                **{
                    **row.__dict__,
                    "escalation_posted_at": now,
                    "updated_at": now,
                }
            )
            return True

    def record_escalation(self, job_id: int, *, external_id: str | None, now: datetime) -> None:
        now = _coerce_utc(now)
        with self._lock:
            row = self._jobs.get(job_id)
            if row is None:
                return
            self._jobs[job_id] = NotificationJobRecord(
                **{
                    **row.__dict__,
                    "attempt_count": 0,
                    "escalation_external_id": external_id,
                    "escalation_recorded_at": now,
                    "updated_at": now,
                }
            )

    def close_job(self, job_id: int, *, now: datetime) -> bool:
        now = _coerce_utc(now)
        with self._lock:
            row = self._jobs.get(job_id)
            if row is None or row.status == "closed":
                return False
            self._jobs[job_id] = NotificationJobRecord(
                **{
                    **row.__dict__,
                    "status": "closed",
                    "closed_at": now,
                    "updated_at": now,
                }
            )
            return True

    def list_jobs(self, phase_id: str, *, updated_since: datetime, limit: int) -> list[NotificationJobRecord]:
        updated_since = _coerce_utc(updated_since)
        with self._lock:
            rows = [
                row
                for row in self._jobs.values()
                if row.phase_id == phase_id and row.updated_at >= updated_since
            ]
        rows.sort(key=lambda value: (value.updated_at, value.job_id), reverse=True)
        return rows[:limit]


class JobStoreBase(DeclarativeBase):
    pass


class _NotificationJobRow(JobStoreBase):
    __tablename__ = "notification_jobs"
    __table_args__ = (UniqueConstraint("order_id", "phase_id", name="uq_notification_jobs_order_phase"),)

    job_id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer(), "sqlite"), primary_key=True, autoincrement=True
    )
    order_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    phase_id: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="open", index=True)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    escalation_posted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    escalation_external_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    escalation_recorded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_delivery_date_snapshot: Mapped[date | None] = mapped_column(Date, nullable=True)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


def _record_from_row(row: _NotificationJobRow) -> NotificationJobRecord:
    return NotificationJobRecord(
        job_id=row.job_id,
        order_id=row.order_id,
        phase_id=row.phase_id,
        status=row.status,
        attempt_count=row.attempt_count,
        last_attempt_at=_coerce_optional_utc(row.last_attempt_at),
        escalation_posted_at=_coerce_optional_utc(row.escalation_posted_at),
        escalation_external_id=row.escalation_external_id,
        escalation_recorded_at=_coerce_optional_utc(row.escalation_recorded_at),
        last_delivery_date_snapshot=row.last_delivery_date_snapshot,
        scheduled_at=_coerce_utc(row.scheduled_at),
        closed_at=_coerce_optional_utc(row.closed_at),
        created_at=_coerce_utc(row.created_at),
        updated_at=_coerce_utc(row.updated_at),
    )


class SqlAlchemyJobStore:
    """Job rows guarded by the database: every primitive is one conditional statement."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for JOB_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            JobStoreBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def _conditional_update(self, job_id: int, *criteria, **values) -> NotificationJobRecord | None:
        with self._session() as session:
            with session.begin():
                stmt = (
                    update(_NotificationJobRow)
                    .where(_NotificationJobRow.job_id == job_id, *criteria)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                result = session.execute(stmt)
                if result.rowcount != 1:
                    return None
                row = session.get(_NotificationJobRow, job_id)
                return _record_from_row(row) if row is not None else None

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_NotificationJobRow).delete()

    def get_job(self, order_id: str, phase_id: str) -> NotificationJobRecord | None:
        with self._session() as session:
            row = session.execute(
                select(_NotificationJobRow)
                .where(_NotificationJobRow.order_id == order_id)
                .where(_NotificationJobRow.phase_id == phase_id)
            ).scalar_one_or_none()
            return _record_from_row(row) if row is not None else None

    def ensure_job(
        self,
        order_id: str,
        phase_id: str,
        *,
        snapshot: date | None,
        now: datetime,
    ) -> NotificationJobRecord:
        now = _coerce_utc(now)
        values = {
            "order_id": order_id,
            "phase_id": phase_id,
            "status": "open",
            "attempt_count": 0,
            "last_delivery_date_snapshot": snapshot,
            "scheduled_at": now,
            "created_at": now,
            "updated_at": now,
        }
        dialect = self._engine.dialect.name
        with self._session() as session:
            with session.begin():
                if dialect in {"postgresql", "sqlite"}:
                    insert_factory = postgresql_insert if dialect == "postgresql" else sqlite_insert
                    stmt = insert_factory(_NotificationJobRow).values(**values)
                    on_conflict: dict[str, object] = {"updated_at": stmt.excluded.updated_at}
                    if snapshot is not None:
                        on_conflict["last_delivery_date_snapshot"] = stmt.excluded.last_delivery_date_snapshot
                    session.execute(
                        stmt.on_conflict_do_update(
                            index_elements=["order_id", "phase_id"],
                            set_=on_conflict,
                        )
                    )
                else:
                    try:
                        with session.begin_nested():
                            session.add(_NotificationJobRow(**values))
                    except IntegrityError:
                        changes: dict[str, object] = {"updated_at": now}
                        if snapshot is not None:
                            changes["last_delivery_date_snapshot"] = snapshot
                        session.execute(
                            update(_NotificationJobRow)
                            .where(_NotificationJobRow.order_id == order_id)
                            .where(_NotificationJobRow.phase_id == phase_id)
                            .values(**changes)
                            .execution_options(synchronize_session=False)
                        )
                row = session.execute(
                    select(_NotificationJobRow)
                    .where(_NotificationJobRow.order_id == order_id)
                    .where(_NotificationJobRow.phase_id == phase_id)
                    .execution_options(populate_existing=True)
                ).scalar_one()
                return _record_from_row(row)

    def increment_attempt(
        self,
        job_id: int,
        *,
        now: datetime,
        max_attempts: int,
        day_start: datetime,
    ) -> NotificationJobRecord | None:
        now = _coerce_utc(now)
        return self._conditional_update(
            job_id,
            _NotificationJobRow.status == "open",
            _NotificationJobRow.attempt_count < max_attempts,
            or_(
                _NotificationJobRow.last_attempt_at.is_(None),
                _NotificationJobRow.last_attempt_at < _coerce_utc(day_start),
            ),
            attempt_count=_NotificationJobRow.attempt_count + 1,
            last_attempt_at=now,
            updated_at=now,
        )

    def reset_job(self, job_id: int, *, snapshot: date | None, now: datetime) -> NotificationJobRecord | None:
        now = _coerce_utc(now)
        values: dict[str, object] = {
            "status": "open",
            "attempt_count": 0,
            "escalation_posted_at": None,
            "escalation_external_id": None,
            "escalation_recorded_at": None,
            "updated_at": now,
        }
        if snapshot is not None:
            values["last_delivery_date_snapshot"] = snapshot
        return self._conditional_update(job_id, _NotificationJobRow.status != "closed", **values)

    def claim_escalation(self, job_id: int, *, now: datetime) -> bool:
        now = _coerce_utc(now)
        claimed = self._conditional_update(
            job_id,
            _NotificationJobRow.escalation_posted_at.is_(None),
            _NotificationJobRow.status != "closed",
            status="escalated",
            escalation_posted_at=now,
            updated_at=now,
        )
        return claimed is not None

    def reclaim_escalation(self, job_id: int, *, previous_claim: datetime, now: datetime) -> bool:
        now = _coerce_utc(now)
        previous_claim = _coerce_utc(previous_claim)
        if now <= previous_claim:
            return False
        reclaimed = self._conditional_update(
            job_id,
            _NotificationJobRow.status == "escalated",
            _NotificationJobRow.escalation_recorded_at.is_(None),
            _NotificationJobRow.escalation_posted_at == previous_claim,
            escalation_posted_at=now,
            updated_at=now,
        )
        return reclaimed is not None

    def record_escalation(self, job_id: int, *, external_id: str | None, now: datetime) -> None:
        now = _coerce_utc(now)
        self._conditional_update(
            job_id,
            attempt_count=0,
            escalation_external_id=external_id,
            escalation_recorded_at=now,
            updated_at=now,
        )

    def close_job(self, job_id: int, *, now: datetime) -> bool:
        now = _coerce_utc(now)
        closed = self._conditional_update(
            job_id,
            _NotificationJobRow.status != "closed",
            status="closed",
            closed_at=now,
            updated_at=now,
        )
        return closed is not None

    def list_jobs(self, phase_id: str, *, updated_since: datetime, limit: int) -> list[NotificationJobRecord]:
        with self._session() as session:
            rows = session.execute(
                select(_NotificationJobRow)
                .where(_NotificationJobRow.phase_id == phase_id)
                .where(_NotificationJobRow.updated_at >= _coerce_utc(updated_since))
                .order_by(_NotificationJobRow.updated_at.desc(), _NotificationJobRow.job_id.desc())
                .limit(limit)
            ).scalars()
            return [_record_from_row(row) for row in rows]


def create_job_store(*, backend: str, database_url: str) -> JobStore:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyJobStore(database_url)
    if normalized == "inmemory":
        return InMemoryJobStore()
    raise RuntimeError(f"unsupported JOB_STORE_BACKEND: {backend}")
