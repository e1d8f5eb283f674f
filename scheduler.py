"""
Dose schedule generation and reconciliation.

Given regimens, the dose logs already persisted for a day and an explicit
``now``, build the day's dose slots: one per regimen and time of day, with a
matching log taking the place of the virtual pending slot. Everything here is
a pure function of its arguments; callers fetch regimens and logs and pass
them in on every call.
"""
import logging
import math
from datetime import date as dt_date, datetime, time, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from pydantic import ValidationError

from config import ScheduleConfig
from schemas import (
    FREQUENCY_TIMES,
    DoseLog,
    DoseSlot,
    DoseStatus,
    Regimen,
    ScheduleResult,
    ScheduleStats,
    ScheduleWarning,
    SlotStatus,
    WarningCode,
)

logger = logging.getLogger(__name__)

RegimenLike = Union[Regimen, Dict[str, Any]]
DoseLogLike = Union[DoseLog, Dict[str, Any]]

PARITY_PERIODS = {"every_other_day": 2, "weekly": 7}
FALLBACK_FREQUENCY = "once_daily"


class InvalidRegimenData(ValueError):
    """A regimen or dose log document failed shape validation."""


def align_to(value: datetime, reference: datetime) -> datetime:
    """Express ``value`` in the same naive/aware form as ``reference``.

    Naive values are read as wall-clock time in the reference's zone. A naive
    reference stands for local time, as returned by ``datetime.now()``.
    """
    if reference.tzinfo is None:
        if value.tzinfo is None:
            return value
        return value.astimezone().replace(tzinfo=None)
    if value.tzinfo is None:
        return value.replace(tzinfo=reference.tzinfo)
    return value.astimezone(reference.tzinfo)


def coerce_regimen(raw: RegimenLike) -> Regimen:
    if isinstance(raw, Regimen):
        return raw
    try:
        return Regimen.model_validate(_with_id(raw))
    except (ValidationError, TypeError, ValueError) as e:
        raise InvalidRegimenData(str(e)) from e


def coerce_dose_log(raw: DoseLogLike) -> DoseLog:
    if isinstance(raw, DoseLog):
        return raw
    try:
        return DoseLog.model_validate(_with_id(raw))
    except (ValidationError, TypeError, ValueError) as e:
        raise InvalidRegimenData(str(e)) from e


def _with_id(raw):
    if isinstance(raw, dict) and "id" not in raw and "_id" in raw:
        raw = dict(raw)
        raw["id"] = str(raw.pop("_id"))
    return raw


def _raw_id(raw) -> Optional[str]:
    if isinstance(raw, dict):
        value = raw.get("id", raw.get("_id"))
        return str(value) if value is not None else None
    return None


def _warn(warnings: List[ScheduleWarning], code: WarningCode, message: str,
          regimen_id: Optional[str] = None, log_ids: Optional[List[str]] = None):
    logger.warning("%s: %s", code.value, message)
    warnings.append(ScheduleWarning(code=code, message=message, regimen_id=regimen_id,
                                    log_ids=log_ids or []))


def is_regimen_active_on(regimen: Regimen, day: dt_date) -> bool:
    if not regimen.is_active:
        return False
    if day < regimen.start_date:
        return False
    return regimen.end_date is None or day <= regimen.end_date


def resolve_times(regimen: Regimen, day: dt_date,
                  warnings: Optional[List[ScheduleWarning]] = None) -> List[Tuple[str, Optional[str]]]:
    """Times of day ``(HH:MM, label)`` a regimen is due on ``day``.

    Unknown frequencies fall back to the once-daily time. Upstream validation
    should keep them out, but persisted data is not trusted to be clean.
    """
    frequency = regimen.frequency
    if frequency == "custom":
        entries = []
        seen = set()
        for entry in regimen.custom_schedule:
            if entry.time in seen:
                continue
            seen.add(entry.time)
            entries.append((entry.time, entry.label))
        return entries

    if frequency not in FREQUENCY_TIMES:
        if warnings is not None:
            _warn(warnings, WarningCode.UNKNOWN_FREQUENCY,
                  f"regimen {regimen.id} has unknown frequency {frequency!r}; "
                  f"using {FALLBACK_FREQUENCY}", regimen_id=regimen.id)
        frequency = FALLBACK_FREQUENCY

    period = PARITY_PERIODS.get(frequency)
    if period is not None:
        days_diff = (day - regimen.start_date).days
        if days_diff % period != 0:
            return []
    return [(t, None) for t in FREQUENCY_TIMES[frequency]]


def _candidate_time(day: dt_date, hhmm: str, now: datetime) -> datetime:
    hours, minutes = hhmm.split(":")
    return datetime.combine(day, time(int(hours), int(minutes)), tzinfo=now.tzinfo)


def _minutes_late(scheduled: datetime, at: datetime) -> int:
    return max(0, math.floor((at - scheduled).total_seconds() / 60))


def _slot_from_log(log: DoseLog, now: datetime, config: ScheduleConfig,
                   label: Optional[str] = None, regimen: Optional[Regimen] = None,
                   time_label: Optional[str] = None) -> DoseSlot:
    scheduled = align_to(log.scheduled_time, now)
    minutes_late = 0
    if log.status == DoseStatus.TAKEN:
        if log.actual_time is not None:
            minutes_late = _minutes_late(scheduled, align_to(log.actual_time, now))
        else:
            minutes_late = log.minutes_late
    if log.taken_late is not None:
        taken_late = log.taken_late and log.status == DoseStatus.TAKEN
    else:
        taken_late = (log.status == DoseStatus.TAKEN
                      and minutes_late > config.taken_late_threshold_minutes)
    return DoseSlot(
        id=log.id,
        regimen_id=log.regimen_id,
        medication_id=log.medication_id or (regimen.medication_id if regimen else None),
        log_id=log.id,
        scheduled_time=scheduled,
        time_label=time_label or scheduled.strftime("%H:%M"),
        label=label,
        status=SlotStatus(log.status.value),
        is_overdue=False,
        minutes_late=minutes_late,
        taken_late=taken_late,
        dosage=regimen.dosage if regimen else None,
    )


def _pending_slot(regimen: Regimen, hhmm: str, label: Optional[str],
                  scheduled: datetime, now: datetime) -> DoseSlot:
    overdue = scheduled < now
    return DoseSlot(
        id=f"pending-{regimen.id}-{hhmm}",
        regimen_id=regimen.id,
        medication_id=regimen.medication_id,
        scheduled_time=scheduled,
        time_label=hhmm,
        label=label,
        status=SlotStatus.PENDING,
        is_overdue=overdue,
        minutes_late=_minutes_late(scheduled, now) if overdue else 0,
        dosage=regimen.dosage,
    )


def _assign_logs(regimen_id: str, candidates: List[datetime], logs: List[DoseLog],
                 claimed: set, now: datetime, tolerance: timedelta,
                 warnings: List[ScheduleWarning]) -> Dict[int, int]:
    """Map candidate index -> index of the log backing it.

    Each log goes to its nearest candidate within ``tolerance``. When several
    logs land on one candidate the closest wins and the rest are suppressed.
    """
    buckets: Dict[int, List[Tuple[timedelta, int]]] = {}
    for idx, log in enumerate(logs):
        if idx in claimed or log.regimen_id != regimen_id:
            continue
        scheduled = align_to(log.scheduled_time, now)
        nearest = None
        for ci, candidate in enumerate(candidates):
            distance = abs(scheduled - candidate)
            if distance < tolerance and (nearest is None or distance < nearest[0]):
                nearest = (distance, ci)
        if nearest is not None:
            buckets.setdefault(nearest[1], []).append((nearest[0], idx))

    assigned = {}
    for ci in sorted(buckets):
        matches = buckets[ci]
        # min() keeps the first of equal distances, i.e. input order
        best = min(matches, key=lambda m: m[0])[1]
        if len(matches) > 1:
            _warn(warnings, WarningCode.AMBIGUOUS_LOG_MATCH,
                  f"{len(matches)} logs match regimen {regimen_id} at "
                  f"{candidates[ci].strftime('%Y-%m-%d %H:%M')}; keeping {logs[best].id}",
                  regimen_id=regimen_id, log_ids=[logs[idx].id for _, idx in matches])
        claimed.update(idx for _, idx in matches)
        assigned[ci] = best
    return assigned


def generate_schedule(
    regimens: Iterable[RegimenLike],
    logged_doses: Iterable[DoseLogLike],
    now: datetime,
    target_date: Optional[dt_date] = None,
    config: Optional[ScheduleConfig] = None,
) -> ScheduleResult:
    """Reconcile the day's scheduled slots with the supplied dose logs."""
    if not isinstance(now, datetime):
        raise TypeError("now must be a datetime")
    if target_date is None:
        target_date = now.date()
    elif isinstance(target_date, datetime) or not isinstance(target_date, dt_date):
        raise TypeError("target_date must be a date")
    config = config or ScheduleConfig()
    tolerance = timedelta(minutes=config.match_tolerance_minutes)

    warnings: List[ScheduleWarning] = []
    logs: List[DoseLog] = []
    for raw in logged_doses or []:
        try:
            logs.append(coerce_dose_log(raw))
        except InvalidRegimenData as e:
            _warn(warnings, WarningCode.INVALID_DOSE_LOG, f"skipping dose log: {e}",
                  log_ids=[i for i in [_raw_id(raw)] if i])

    known: Dict[str, Regimen] = {}
    slots: List[DoseSlot] = []
    claimed: set = set()
    for raw in regimens or []:
        try:
            regimen = coerce_regimen(raw)
        except InvalidRegimenData as e:
            _warn(warnings, WarningCode.INVALID_REGIMEN_DATA, f"skipping regimen: {e}",
                  regimen_id=_raw_id(raw))
            continue
        if regimen.id in known:
            _warn(warnings, WarningCode.DUPLICATE_REGIMEN,
                  f"regimen {regimen.id} appears more than once; keeping the first",
                  regimen_id=regimen.id)
            continue
        known[regimen.id] = regimen
        if not is_regimen_active_on(regimen, target_date):
            continue
        times = resolve_times(regimen, target_date, warnings)
        candidates = [_candidate_time(target_date, hhmm, now) for hhmm, _ in times]
        assigned = _assign_logs(regimen.id, candidates, logs, claimed, now, tolerance, warnings)
        for ci, (hhmm, label) in enumerate(times):
            candidate = candidates[ci]
            idx = assigned.get(ci)
            if idx is not None:
                slots.append(_slot_from_log(logs[idx], now, config, label=label,
                                            regimen=regimen, time_label=hhmm))
            else:
                slots.append(_pending_slot(regimen, hhmm, label, candidate, now))

    for idx, log in enumerate(logs):
        if idx not in claimed:
            slots.append(_slot_from_log(log, now, config, regimen=known.get(log.regimen_id)))

    slots.sort(key=lambda s: s.scheduled_time)
    return ScheduleResult(date=target_date, slots=slots, warnings=warnings)


def generate_schedule_range(
    regimens: Iterable[RegimenLike],
    logged_doses: Iterable[DoseLogLike],
    now: datetime,
    start: dt_date,
    days: int,
    config: Optional[ScheduleConfig] = None,
) -> List[ScheduleResult]:
    """One ScheduleResult per day from ``start``; logs go to the day they were scheduled on."""
    if days < 1:
        raise ValueError("days must be at least 1")
    regimens = list(regimens or [])
    by_day: Dict[dt_date, list] = {}
    invalid = []
    for raw in logged_doses or []:
        try:
            log = coerce_dose_log(raw)
        except InvalidRegimenData:
            invalid.append(raw)
            continue
        by_day.setdefault(align_to(log.scheduled_time, now).date(), []).append(log)

    results = []
    for offset in range(days):
        day = start + timedelta(days=offset)
        # invalid logs are reported once, on the first day
        day_logs = by_day.get(day, []) + (invalid if offset == 0 else [])
        results.append(generate_schedule(regimens, day_logs, now, day, config))
    return results


def schedule_stats(slots: Iterable[DoseSlot]) -> ScheduleStats:
    stats = ScheduleStats()
    for slot in slots:
        stats.total += 1
        if slot.status == SlotStatus.TAKEN:
            stats.taken += 1
            if slot.taken_late:
                stats.taken_late += 1
        elif slot.status == SlotStatus.MISSED:
            stats.missed += 1
        elif slot.status == SlotStatus.SKIPPED:
            stats.skipped += 1
        elif slot.is_overdue:
            # overdue pending doses count as missed
            stats.missed += 1
        else:
            stats.pending += 1
    if stats.total:
        stats.adherence_rate = round(stats.taken * 100 / stats.total, 1)
    return stats


def slots_past_late_window(slots: Iterable[DoseSlot], window_minutes: int) -> List[DoseSlot]:
    """Pending slots too late to be logged as taken any more."""
    return [
        s for s in slots
        if s.status == SlotStatus.PENDING and s.is_overdue and s.minutes_late > window_minutes
    ]


def next_dose_time(regimen: RegimenLike, now: datetime) -> Optional[datetime]:
    """The first scheduled time strictly after ``now``, looking ahead one week."""
    try:
        regimen = coerce_regimen(regimen)
    except InvalidRegimenData as e:
        logger.warning("next_dose_time: %s", e)
        return None
    for offset in range(8):
        day = now.date() + timedelta(days=offset)
        if not is_regimen_active_on(regimen, day):
            if regimen.end_date is not None and day > regimen.end_date:
                return None
            continue
        times = sorted(t for t, _ in resolve_times(regimen, day))
        for hhmm in times:
            candidate = _candidate_time(day, hhmm, now)
            if candidate > now:
                return candidate
    return None
