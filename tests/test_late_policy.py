from datetime import datetime

import pytest

from late_policy import classify_late_logging, gate_dose_status, minutes_between
from schemas import DoseStatus, LatePolicy


@pytest.mark.parametrize("minutes_late,policy,taken_late", [
    (0, LatePolicy.ALLOW, False),
    (60, LatePolicy.ALLOW, False),
    (61, LatePolicy.WARN_LATE, True),
    (240, LatePolicy.WARN_LATE, True),
    (241, LatePolicy.FORCE_MISSED, False),
])
def test_default_window_boundaries(minutes_late, policy, taken_late):
    decision = classify_late_logging(minutes_late, 240)

    assert decision.policy == policy
    assert decision.taken_late is taken_late
    assert decision.minutes_late == minutes_late


def test_rejection_only_allows_missed():
    decision = classify_late_logging(300, 240)

    assert decision.rejected
    assert decision.allowed_statuses == [DoseStatus.MISSED]


def test_early_logging_is_allowed():
    decision = classify_late_logging(-10)

    assert decision.policy == LatePolicy.ALLOW
    assert decision.minutes_late == 0


def test_short_window_rejects_before_on_time_check():
    assert classify_late_logging(45, window_minutes=30).policy == LatePolicy.FORCE_MISSED


def test_missing_arguments_raise():
    with pytest.raises(TypeError):
        classify_late_logging(None, 240)


def test_minutes_between_floors():
    scheduled = datetime(2024, 6, 15, 8, 0)

    assert minutes_between(scheduled, datetime(2024, 6, 15, 8, 0, 59)) == 0
    assert minutes_between(scheduled, datetime(2024, 6, 15, 9, 5)) == 65
    assert minutes_between(scheduled, datetime(2024, 6, 15, 7, 59, 30)) == -1


def test_gate_only_applies_to_taken():
    scheduled = datetime(2024, 6, 15, 8, 0)
    now = datetime(2024, 6, 15, 14, 0)

    assert gate_dose_status(DoseStatus.SKIPPED, scheduled, now) is None
    assert gate_dose_status("missed", scheduled, now) is None
    assert gate_dose_status(DoseStatus.TAKEN, scheduled, now).policy == LatePolicy.FORCE_MISSED
    assert gate_dose_status(DoseStatus.TAKEN, scheduled, now, window_minutes=480).policy == LatePolicy.WARN_LATE
