from __future__ import annotations

import threading
from datetime import date, datetime, timedelta, timezone

import pytest

from delivery_reminders.job_store import InMemoryJobStore, SqlAlchemyJobStore, create_job_store

NOW = datetime(2026, 4, 20, 18, 0, tzinfo=timezone.utc)
DAY_START = datetime(2026, 4, 20, 6, 0, tzinfo=timezone.utc)


@pytest.fixture(params=["inmemory", "sqlite"])
def store(request, tmp_path):
    if request.param == "sqlite":
        return SqlAlchemyJobStore(f"sqlite+pysqlite:///{tmp_path / 'jobs.db'}")
    return InMemoryJobStore()


def test_ensure_job_creates_once_per_order_and_phase(store) -> None:
    first = store.ensure_job("ord-1", "t42", snapshot=date(2026, 6, 1), now=NOW)
    second = store.ensure_job("ord-1", "t42", snapshot=date(2026, 6, 2), now=NOW + timedelta(hours=1))
    other_phase = store.ensure_job("ord-1", "t14", snapshot=date(2026, 6, 1), now=NOW)

    assert first.job_id == second.job_id
    assert other_phase.job_id != first.job_id
    assert first.status == "open"
    assert first.attempt_count == 0
    assert second.last_delivery_date_snapshot == date(2026, 6, 2)
    assert second.scheduled_at == NOW
    assert second.updated_at == NOW + timedelta(hours=1)


def test_get_job_returns_none_for_unknown_key(store) -> None:
    assert store.get_job("ord-missing", "t42") is None


def test_increment_attempt_is_once_per_business_day(store) -> None:
    job = store.ensure_job("ord-1", "t42", snapshot=None, now=NOW)

    first = store.increment_attempt(job.job_id, now=NOW, max_attempts=3, day_start=DAY_START)
    again = store.increment_attempt(job.job_id, now=NOW + timedelta(hours=2), max_attempts=3, day_start=DAY_START)
    next_day = store.increment_attempt(
        job.job_id,
        now=NOW + timedelta(days=1),
        max_attempts=3,
        day_start=DAY_START + timedelta(days=1),
    )

    assert first is not None
    assert first.attempt_count == 1
    assert first.last_attempt_at == NOW
    assert again is None
    assert next_day is not None
    assert next_day.attempt_count == 2


def test_increment_attempt_respects_ceiling(store) -> None:
    job = store.ensure_job("ord-1", "t3", snapshot=None, now=NOW)

    assert store.increment_attempt(job.job_id, now=NOW, max_attempts=1, day_start=DAY_START) is not None
    later = NOW + timedelta(days=1)
    assert store.increment_attempt(job.job_id, now=later, max_attempts=1, day_start=later) is None
    assert store.get_job("ord-1", "t3").attempt_count == 1


def test_claim_escalation_wins_once(store) -> None:
    job = store.ensure_job("ord-1", "t14", snapshot=None, now=NOW)

    assert store.claim_escalation(job.job_id, now=NOW) is True
    assert store.claim_escalation(job.job_id, now=NOW + timedelta(minutes=1)) is False

    claimed = store.get_job("ord-1", "t14")
    assert claimed.status == "escalated"
    assert claimed.escalation_posted_at == NOW


def test_record_escalation_zeroes_attempts_and_keeps_claim(store) -> None:
    job = store.ensure_job("ord-1", "t42", snapshot=None, now=NOW)
    store.increment_attempt(job.job_id, now=NOW, max_attempts=3, day_start=DAY_START)
    store.claim_escalation(job.job_id, now=NOW)

    store.record_escalation(job.job_id, external_id="erp-77", now=NOW)

    recorded = store.get_job("ord-1", "t42")
    assert recorded.attempt_count == 0
    assert recorded.escalation_external_id == "erp-77"
    assert recorded.status == "escalated"


def test_record_escalation_marks_claim_complete(store) -> None:
    job = store.ensure_job("ord-1", "t14", snapshot=None, now=NOW)
    store.claim_escalation(job.job_id, now=NOW)

    assert store.get_job("ord-1", "t14").escalation_pending is True

    store.record_escalation(job.job_id, external_id=None, now=NOW + timedelta(seconds=5))

    recorded = store.get_job("ord-1", "t14")
    assert recorded.escalation_pending is False
    assert recorded.escalation_recorded_at == NOW + timedelta(seconds=5)


def test_reclaim_escalation_moves_the_claim_forward(store) -> None:
    job = store.ensure_job("ord-1", "t14", snapshot=None, now=NOW)
    store.claim_escalation(job.job_id, now=NOW)
    later = NOW + timedelta(days=1)

    assert store.reclaim_escalation(job.job_id, previous_claim=NOW, now=later) is True
    assert store.reclaim_escalation(job.job_id, previous_claim=NOW, now=later + timedelta(minutes=1)) is False

    reclaimed = store.get_job("ord-1", "t14")
    assert reclaimed.status == "escalated"
    assert reclaimed.escalation_posted_at == later
    assert reclaimed.escalation_recorded_at is None


def test_reclaim_escalation_refuses_same_instant(store) -> None:
    job = store.ensure_job("ord-1", "t14", snapshot=None, now=NOW)
    store.claim_escalation(job.job_id, now=NOW)

    assert store.reclaim_escalation(job.job_id, previous_claim=NOW, now=NOW) is False
    assert store.get_job("ord-1", "t14").escalation_posted_at == NOW


def test_reclaim_escalation_refuses_recorded_or_open_jobs(store) -> None:
    recorded = store.ensure_job("ord-1", "t14", snapshot=None, now=NOW)
    store.claim_escalation(recorded.job_id, now=NOW)
    store.record_escalation(recorded.job_id, external_id="erp-1", now=NOW)
    untouched = store.ensure_job("ord-2", "t14", snapshot=None, now=NOW)
    later = NOW + timedelta(days=1)

    assert store.reclaim_escalation(recorded.job_id, previous_claim=NOW, now=later) is False
    assert store.reclaim_escalation(untouched.job_id, previous_claim=NOW, now=later) is False
    assert store.get_job("ord-2", "t14").status == "open"


def test_increment_is_refused_once_escalated(store) -> None:
    job = store.ensure_job("ord-1", "t42", snapshot=None, now=NOW)
    store.claim_escalation(job.job_id, now=NOW)

    assert store.increment_attempt(job.job_id, now=NOW, max_attempts=3, day_start=DAY_START) is None


def test_reset_job_clears_attempts_and_escalation(store) -> None:
    job = store.ensure_job("ord-1", "t42", snapshot=date(2026, 6, 1), now=NOW)
    store.increment_attempt(job.job_id, now=NOW, max_attempts=3, day_start=DAY_START)
    store.claim_escalation(job.job_id, now=NOW)
    store.record_escalation(job.job_id, external_id="erp-1", now=NOW)

    reset = store.reset_job(job.job_id, snapshot=date(2026, 7, 1), now=NOW + timedelta(days=1))

    assert reset is not None
    assert reset.status == "open"
    assert reset.attempt_count == 0
    assert reset.escalation_posted_at is None
    assert reset.escalation_external_id is None
    assert reset.last_delivery_date_snapshot == date(2026, 7, 1)


def test_closed_job_is_terminal(store) -> None:
    job = store.ensure_job("ord-1", "t42", snapshot=None, now=NOW)

    assert store.close_job(job.job_id, now=NOW) is True
    assert store.close_job(job.job_id, now=NOW) is False
    assert store.reset_job(job.job_id, snapshot=None, now=NOW) is None
    assert store.claim_escalation(job.job_id, now=NOW) is False
    assert store.increment_attempt(job.job_id, now=NOW, max_attempts=3, day_start=DAY_START) is None

    reopened = store.ensure_job("ord-1", "t42", snapshot=None, now=NOW + timedelta(hours=1))
    assert reopened.status == "closed"
    assert reopened.closed_at == NOW


def test_list_jobs_filters_by_phase_and_update_time(store) -> None:
    store.ensure_job("ord-old", "t42", snapshot=None, now=NOW - timedelta(days=2))
    store.ensure_job("ord-1", "t42", snapshot=None, now=NOW)
    store.ensure_job("ord-2", "t42", snapshot=None, now=NOW + timedelta(minutes=5))
    store.ensure_job("ord-3", "t14", snapshot=None, now=NOW)

    jobs = store.list_jobs("t42", updated_since=DAY_START, limit=10)
    limited = store.list_jobs("t42", updated_since=DAY_START, limit=1)

    assert [job.order_id for job in jobs] == ["ord-2", "ord-1"]
    assert [job.order_id for job in limited] == ["ord-2"]


def test_reset_clears_all_jobs(store) -> None:
    store.ensure_job("ord-1", "t42", snapshot=None, now=NOW)

    store.reset()

    assert store.get_job("ord-1", "t42") is None


@pytest.mark.parametrize("backend", ["inmemory", "sqlite"])
def test_concurrent_claims_have_a_single_winner(backend, tmp_path) -> None:
    if backend == "sqlite":
        database_url = f"sqlite+pysqlite:///{tmp_path / 'jobs.db'}"
        stores = [SqlAlchemyJobStore(database_url) for _ in range(4)]
    else:
        shared = InMemoryJobStore()
        stores = [shared] * 4
    job = stores[0].ensure_job("ord-1", "t14", snapshot=None, now=NOW)
    barrier = threading.Barrier(len(stores))
    results: list[bool] = []
    results_lock = threading.Lock()

    def claim(store) -> None:
        barrier.wait()
        won = store.claim_escalation(job.job_id, now=NOW)
        with results_lock:
            results.append(won)

    threads = [threading.Thread(target=claim, args=(store,)) for store in stores]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results.count(True) == 1
    assert results.count(False) == len(stores) - 1
    assert stores[-1].get_job("ord-1", "t14").status == "escalated"


def test_sqlite_store_persists_across_instances(tmp_path) -> None:
    database_url = f"sqlite+pysqlite:///{tmp_path / 'jobs.db'}"
    first = SqlAlchemyJobStore(database_url)
    job = first.ensure_job("ord-1", "t42", snapshot=date(2026, 6, 1), now=NOW)
    first.increment_attempt(job.job_id, now=NOW, max_attempts=3, day_start=DAY_START)

    second = SqlAlchemyJobStore(database_url)
    loaded = second.get_job("ord-1", "t42")

    assert loaded is not None
    assert loaded.attempt_count == 1
    assert loaded.last_attempt_at == NOW
    assert loaded.last_attempt_at.tzinfo is not None


def test_create_job_store_rejects_unknown_backend() -> None:
    with pytest.raises(RuntimeError, match="unsupported JOB_STORE_BACKEND"):
        create_job_store(backend="redis", database_url="")


def test_postgres_backend_requires_database_url() -> None:
    with pytest.raises(RuntimeError, match="DATABASE_URL is required"):
        create_job_store(backend="postgres", database_url="")
