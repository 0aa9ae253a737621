from __future__ import annotations

from dataclasses import dataclass


class UnknownPhaseError(KeyError):
    """Raised when a phase id has no registered policy."""


@dataclass(frozen=True)
class PhasePolicy:
    phase_id: str
    label: str
    target_day_offset: int
    attempt_window: frozenset[int]
    escalate_below_offset: int | None
    reset_above_offset: int
    max_attempts: int
    escalate_on_ceiling: bool = True

    def __post_init__(self) -> None:
        if not self.attempt_window:
            raise ValueError("attempt_window must not be empty")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.target_day_offset not in self.attempt_window:
            raise ValueError("target_day_offset must be inside attempt_window")
        if max(self.attempt_window) > self.reset_above_offset:
            raise ValueError("attempt_window must not extend past reset_above_offset")
        if self.escalate_below_offset is not None and min(self.attempt_window) < self.escalate_below_offset:
            raise ValueError("attempt_window must not extend below escalate_below_offset")

    @property
    def escalates(self) -> bool:
        return self.escalate_below_offset is not None or self.escalate_on_ceiling

    def in_reset_range(self, offset: int) -> bool:
        return offset > self.reset_above_offset

    def in_escalation_range(self, offset: int) -> bool:
        return self.escalate_below_offset is not None and offset < self.escalate_below_offset

    def in_attempt_window(self, offset: int) -> bool:
        return offset in self.attempt_window


T42 = PhasePolicy(
    phase_id="t42",
    label="about six weeks",
    target_day_offset=42,
    attempt_window=frozenset({42, 41, 40, 39}),
    escalate_below_offset=39,
    reset_above_offset=42,
    max_attempts=3,
)

T14 = PhasePolicy(
    phase_id="t14",
    label="about two weeks",
    target_day_offset=14,
    attempt_window=frozenset({14, 13, 12, 11}),
    escalate_below_offset=11,
    reset_above_offset=14,
    max_attempts=3,
)

# Near-delivery reminder is a single courtesy send; it never reaches the ERP.
T3 = PhasePolicy(
    phase_id="t3",
    label="in the coming days",
    target_day_offset=3,
    attempt_window=frozenset({4, 3, 2}),
    escalate_below_offset=None,
    reset_above_offset=4,
    max_attempts=1,
    escalate_on_ceiling=False,
)

PHASE_POLICIES: dict[str, PhasePolicy] = {policy.phase_id: policy for policy in (T42, T14, T3)}


def get_policy(phase_id: str) -> PhasePolicy:
    normalized = phase_id.strip().lower()
    policy = PHASE_POLICIES.get(normalized)
    if policy is None:
        raise UnknownPhaseError(phase_id)
    return policy
