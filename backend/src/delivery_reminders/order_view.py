from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from threading import Lock
from typing import Protocol

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, String, and_, create_engine, or_, select
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _is_empty(value: str | None) -> bool:
    return value is None or not value.strip()


@dataclass(frozen=True)
class OrderRecord:
    order_id: str
    order_nbr: str
    customer_name: str
    delivery_date: date | None
    is_active: bool
    confirmed_via: str | None = None
    confirmed_with: str | None = None
    contact_channel: str | None = None

    @property
    def confirmed(self) -> bool:
        return not _is_empty(self.confirmed_via) or not _is_empty(self.confirmed_with)

    @property
    def contact_target(self) -> str | None:
        if _is_empty(self.contact_channel):
            return None
        return self.contact_channel.strip()  # type: ignore[union-attr]


@dataclass(frozen=True)
class OrderSnapshot(OrderRecord):
    """An order as seen by one phase: ``blocked`` is phase-scoped."""

    blocked: bool = False


class OrderView(Protocol):
    def reset(self) -> None: ...

    def list_candidates(self, phase_id: str, *, today: date) -> list[OrderSnapshot]: ...

    def mark_blocked(self, order_id: str, phase_id: str) -> None: ...


class InMemoryOrderView:
    def __init__(self) -> None:
        self._lock = Lock()
        self._orders: dict[str, OrderRecord] = {}
        self._blocked: set[tuple[str, str]] = set()

    def reset(self) -> None:
        with self._lock:
            self._orders.clear()
            self._blocked.clear()

    def upsert_order(self, record: OrderRecord) -> None:
        with self._lock:
            self._orders[record.order_id] = record

    def get_order(self, order_id: str, phase_id: str) -> OrderSnapshot | None:
        with self._lock:
            record = self._orders.get(order_id)
            if record is None:
                return None
            return OrderSnapshot(**record.__dict__, blocked=(order_id, phase_id) in self._blocked)

    def clear_blocked(self, order_id: str, phase_id: str) -> None:
        with self._lock:
            self._blocked.discard((order_id, phase_id))

    def list_candidates(self, phase_id: str, *, today: date) -> list[OrderSnapshot]:
        with self._lock:
            result: list[OrderSnapshot] = []
            for record in self._orders.values():
                if not record.is_active:
                    continue
                if record.delivery_date is None or record.delivery_date < today:
                    continue
                if (record.order_id, phase_id) in self._blocked:
                    continue
                result.append(OrderSnapshot(**record.__dict__, blocked=False))
            return sorted(result, key=lambda value: (value.delivery_date, value.order_id))

    def mark_blocked(self, order_id: str, phase_id: str) -> None:
        with self._lock:
            self._blocked.add((order_id, phase_id))


class OrderViewBase(DeclarativeBase):
    pass


class _OrderRow(OrderViewBase):
    __tablename__ = "orders"

    order_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    order_nbr: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    customer_name: Mapped[str] = mapped_column(String(256), nullable=False, default="")
    delivery_date: Mapped[date | None] = mapped_column(Date, nullable=True, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    confirmed_via: Mapped[str | None] = mapped_column(String(128), nullable=True)
    confirmed_with: Mapped[str | None] = mapped_column(String(256), nullable=True)
    contact_channel: Mapped[str | None] = mapped_column(String(256), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _OrderPhaseFlagRow(OrderViewBase):
    __tablename__ = "order_phase_flags"

    order_id: Mapped[str] = mapped_column(String(128), ForeignKey("orders.order_id"), primary_key=True)
    phase_id: Mapped[str] = mapped_column(String(16), primary_key=True)
    blocked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _record_from_row(row: _OrderRow) -> OrderRecord:
    return OrderRecord(
        order_id=row.order_id,
        order_nbr=row.order_nbr,
        customer_name=row.customer_name,
        delivery_date=row.delivery_date,
        is_active=row.is_active,
        confirmed_via=row.confirmed_via,
        confirmed_with=row.confirmed_with,
        contact_channel=row.contact_channel,
    )


class SqlAlchemyOrderView:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for ORDER_VIEW_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            OrderViewBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_OrderPhaseFlagRow).delete()
                session.query(_OrderRow).delete()

    def upsert_order(self, record: OrderRecord) -> None:
        with self._session() as session:
            with session.begin():
                row = session.get(_OrderRow, record.order_id)
                if row is None:
                    row = _OrderRow(order_id=record.order_id)
                    session.add(row)
                row.order_nbr = record.order_nbr
                row.customer_name = record.customer_name
                row.delivery_date = record.delivery_date
                row.is_active = record.is_active
                row.confirmed_via = record.confirmed_via
                row.confirmed_with = record.confirmed_with
                row.contact_channel = record.contact_channel
                row.updated_at = _now_utc()

    def get_order(self, order_id: str, phase_id: str) -> OrderSnapshot | None:
        with self._session() as session:
            row = session.get(_OrderRow, order_id)
            if row is None:
                return None
            flag = session.get(_OrderPhaseFlagRow, (order_id, phase_id))
            blocked = bool(flag is not None and flag.blocked)
            return OrderSnapshot(**_record_from_row(row).__dict__, blocked=blocked)

    def clear_blocked(self, order_id: str, phase_id: str) -> None:
        self._set_blocked(order_id, phase_id, blocked=False)

    def list_candidates(self, phase_id: str, *, today: date) -> list[OrderSnapshot]:
        with self._session() as session:
            query = (
                select(_OrderRow)
                .outerjoin(
                    _OrderPhaseFlagRow,
                    and_(
                        _OrderPhaseFlagRow.order_id == _OrderRow.order_id,
                        _OrderPhaseFlagRow.phase_id == phase_id,
                    ),
                )
                .where(_OrderRow.is_active.is_(True))
                .where(_OrderRow.delivery_date.is_not(None))
                .where(_OrderRow.delivery_date >= today)
                .where(or_(_OrderPhaseFlagRow.blocked.is_(None), _OrderPhaseFlagRow.blocked.is_(False)))
                .order_by(_OrderRow.delivery_date.asc(), _OrderRow.order_id.asc())
            )
            rows = session.execute(query).scalars().all()
            return [OrderSnapshot(**_record_from_row(row).__dict__, blocked=False) for row in rows]

    def mark_blocked(self, order_id: str, phase_id: str) -> None:
        self._set_blocked(order_id, phase_id, blocked=True)

    def _set_blocked(self, order_id: str, phase_id: str, *, blocked: bool) -> None:
        with self._session() as session:
            with session.begin():
                flag = session.get(_OrderPhaseFlagRow, (order_id, phase_id))
                if flag is None:
                    session.add(
                        _OrderPhaseFlagRow(
                            order_id=order_id,
                            phase_id=phase_id,
                            blocked=blocked,
                            updated_at=_now_utc(),
                        )
                    )
                    return
                flag.blocked = blocked
                flag.updated_at = _now_utc()


def create_order_view(*, backend: str, database_url: str) -> InMemoryOrderView | SqlAlchemyOrderView:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyOrderView(database_url)
    if normalized == "inmemory":
        return InMemoryOrderView()
    raise RuntimeError(f"unsupported ORDER_VIEW_BACKEND: {backend}")
