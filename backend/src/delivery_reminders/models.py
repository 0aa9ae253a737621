from __future__ import annotations

from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator

JobStatus = Literal["open", "escalated", "closed"]
PhaseRunStatus = Literal["running", "completed", "failed"]
EscalationReason = Literal["late-window", "attempt-ceiling"]


class ExecutionSummary(BaseModel):
    evaluated: int = 0
    attempts: int = 0
    sent: int = 0
    send_errors: int = 0
    resets: int = 0
    escalations: int = 0
    escalation_errors: int = 0
    closed: int = 0
    skipped: int = 0
    errors: int = 0


class PhaseRunRequest(BaseModel):
    now_override: datetime | None = None

    @field_validator("now_override")
    @classmethod
    def _require_timezone(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            raise ValueError("now_override must include a timezone offset")
        return value


class PhaseRunResponse(BaseModel):
    ok: bool = True
    phase: str
    run_id: str
    run_at: datetime
    summary: ExecutionSummary


class PhaseInfoResponse(BaseModel):
    ok: bool = True
    phase: str
    label: str
    target_day_offset: int
    attempt_window: list[int]
    escalate_below_offset: int | None = None
    reset_above_offset: int
    max_attempts: int
    escalate_on_ceiling: bool
    message: str


class NotificationJobItem(BaseModel):
    job_id: int
    order_id: str
    phase: str
    status: JobStatus
    attempt_count: int
    last_attempt_at: datetime | None = None
    escalation_posted_at: datetime | None = None
    escalation_external_id: str | None = None
    escalation_recorded_at: datetime | None = None
    last_delivery_date_snapshot: date | None = None
    scheduled_at: datetime
    closed_at: datetime | None = None
    updated_at: datetime


class JobRollup(BaseModel):
    total: int = 0
    open: int = 0
    escalated: int = 0
    closed: int = 0


class PhaseRunItem(BaseModel):
    run_id: str
    phase: str
    triggered_by: str
    status: PhaseRunStatus
    run_at: datetime
    finished_at: datetime | None = None
    summary: ExecutionSummary


class PhaseStatusResponse(BaseModel):
    ok: bool = True
    phase: str
    day_start: datetime
    rollup: JobRollup
    jobs: list[NotificationJobItem] = Field(default_factory=list)
    latest_run: PhaseRunItem | None = None
