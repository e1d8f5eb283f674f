"""
Late-logging policy gate.

Decides whether a dose logged after its scheduled time may still be recorded
as taken. Nothing here persists anything; the dose-logging endpoint acts on
the returned decision.
"""
import math
from datetime import datetime
from typing import Optional

from schemas import DoseStatus, LateLoggingDecision, LatePolicy

DEFAULT_ON_TIME_MINUTES = 60
DEFAULT_LATE_WINDOW_MINUTES = 240


def minutes_between(scheduled: datetime, at: datetime) -> int:
    """Whole minutes from ``scheduled`` to ``at``, floored (negative when early)."""
    return math.floor((at - scheduled).total_seconds() / 60)


def classify_late_logging(
    minutes_late: int,
    window_minutes: int = DEFAULT_LATE_WINDOW_MINUTES,
    on_time_minutes: int = DEFAULT_ON_TIME_MINUTES,
) -> LateLoggingDecision:
    if minutes_late is None or window_minutes is None:
        raise TypeError("minutes_late and window_minutes are required")

    # The window check runs first so a window shorter than on_time_minutes still rejects.
    if minutes_late > window_minutes:
        return LateLoggingDecision(
            policy=LatePolicy.FORCE_MISSED,
            minutes_late=minutes_late,
            taken_late=False,
            allowed_statuses=[DoseStatus.MISSED],
        )
    if minutes_late <= on_time_minutes:
        return LateLoggingDecision(
            policy=LatePolicy.ALLOW,
            minutes_late=max(0, minutes_late),
            taken_late=False,
            allowed_statuses=[DoseStatus.TAKEN, DoseStatus.MISSED, DoseStatus.SKIPPED],
        )
    return LateLoggingDecision(
        policy=LatePolicy.WARN_LATE,
        minutes_late=minutes_late,
        taken_late=True,
        allowed_statuses=[DoseStatus.TAKEN, DoseStatus.MISSED, DoseStatus.SKIPPED],
    )


def gate_dose_status(
    status: DoseStatus,
    scheduled_time: datetime,
    now: datetime,
    window_minutes: int = DEFAULT_LATE_WINDOW_MINUTES,
    on_time_minutes: int = DEFAULT_ON_TIME_MINUTES,
) -> Optional[LateLoggingDecision]:
    """Run the gate for a logging attempt. Skipped and missed doses bypass it."""
    if DoseStatus(status) != DoseStatus.TAKEN:
        return None
    minutes_late = minutes_between(scheduled_time, now)
    return classify_late_logging(minutes_late, window_minutes, on_time_minutes)
