from __future__ import annotations

import pytest

from delivery_reminders.phases import PHASE_POLICIES, PhasePolicy, UnknownPhaseError, get_policy


def test_registered_phases() -> None:
    assert set(PHASE_POLICIES) == {"t42", "t14", "t3"}


@pytest.mark.parametrize(
    ("phase_id", "window", "escalate_below", "reset_above", "max_attempts"),
    [
        ("t42", {39, 40, 41, 42}, 39, 42, 3),
        ("t14", {11, 12, 13, 14}, 11, 14, 3),
        ("t3", {2, 3, 4}, None, 4, 1),
    ],
)
def test_phase_windows(phase_id, window, escalate_below, reset_above, max_attempts) -> None:
    policy = get_policy(phase_id)

    assert set(policy.attempt_window) == window
    assert policy.escalate_below_offset == escalate_below
    assert policy.reset_above_offset == reset_above
    assert policy.max_attempts == max_attempts


def test_ranges_partition_offsets_for_escalating_phase() -> None:
    policy = get_policy("t14")

    assert policy.in_reset_range(15) is True
    assert policy.in_reset_range(14) is False
    assert policy.in_attempt_window(14) is True
    assert policy.in_attempt_window(11) is True
    assert policy.in_escalation_range(11) is False
    assert policy.in_escalation_range(10) is True
    assert policy.escalates is True


def test_t3_never_escalates() -> None:
    policy = get_policy("t3")

    assert policy.escalates is False
    assert policy.in_escalation_range(-5) is False
    assert policy.in_escalation_range(1) is False


def test_get_policy_normalizes_phase_id() -> None:
    assert get_policy(" T42 ").phase_id == "t42"


def test_get_policy_unknown_phase() -> None:
    with pytest.raises(UnknownPhaseError):
        get_policy("t7")


def test_policy_rejects_window_outside_reset_bound() -> None:
    with pytest.raises(ValueError, match="reset_above_offset"):
        PhasePolicy(
            phase_id="bad",
            label="bad",
            target_day_offset=10,
            attempt_window=frozenset({10, 11}),
            escalate_below_offset=9,
            reset_above_offset=10,
            max_attempts=2,
        )


def test_policy_rejects_target_outside_window() -> None:
    with pytest.raises(ValueError, match="target_day_offset"):
        PhasePolicy(
            phase_id="bad",
            label="bad",
            target_day_offset=20,
            attempt_window=frozenset({10, 11}),
            escalate_below_offset=9,
            reset_above_offset=11,
            max_attempts=2,
        )
