"""
Database Schemas for the Dose Schedule service

Regimen and DoseLog map to MongoDB collections. The collection name is the
lowercase class name (e.g., Regimen -> "regimen", DoseLog -> "doselog").
DoseSlot, ScheduleWarning and ScheduleResult are never persisted; they are the
output of the schedule engine.
"""
import re
from datetime import date as dt_date, datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")

FREQUENCY_TIMES = {
    "once_daily": ("08:00",),
    "twice_daily": ("08:00", "20:00"),
    "three_times_daily": ("08:00", "14:00", "20:00"),
    "four_times_daily": ("08:00", "12:00", "16:00", "20:00"),
    # gated by start_date parity
    "every_other_day": ("08:00",),
    "weekly": ("08:00",),
    "as_needed": (),
}

FREQUENCIES = tuple(FREQUENCY_TIMES) + ("custom",)


class DoseStatus(str, Enum):
    TAKEN = "taken"
    MISSED = "missed"
    SKIPPED = "skipped"


class SlotStatus(str, Enum):
    PENDING = "pending"
    TAKEN = "taken"
    MISSED = "missed"
    SKIPPED = "skipped"


class WarningCode(str, Enum):
    INVALID_REGIMEN_DATA = "invalid_regimen_data"
    INVALID_DOSE_LOG = "invalid_dose_log"
    UNKNOWN_FREQUENCY = "unknown_frequency"
    AMBIGUOUS_LOG_MATCH = "ambiguous_log_match"
    DUPLICATE_REGIMEN = "duplicate_regimen"


def _to_date(value):
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, str) and "T" in value:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).date()
    return value


class Dosage(BaseModel):
    amount: float = Field(..., gt=0, description="Amount per dose")
    unit: str = Field(..., description="Dosage unit, e.g. 'tablet' or 'ml'")


class CustomScheduleEntry(BaseModel):
    time: str = Field(..., description="Time of day in HH:MM 24h format")
    label: Optional[str] = Field(None, description="e.g. 'Morning' or 'Bedtime'")

    @field_validator("time")
    @classmethod
    def _check_time(cls, v: str) -> str:
        if not TIME_PATTERN.match(v):
            raise ValueError(f"time must be HH:MM, got {v!r}")
        return v


class Regimen(BaseModel):
    """A prescribed medication schedule.
    Collection: regimen
    """
    id: str = Field(..., description="Regimen identifier")
    medication_id: str = Field(..., description="ID of the medication document")
    frequency: str = Field(..., description="One of: " + ", ".join(FREQUENCIES))
    custom_schedule: List[CustomScheduleEntry] = Field(
        default_factory=list, description="Times used only when frequency is 'custom'"
    )
    start_date: dt_date = Field(..., description="First calendar day the regimen is active")
    end_date: Optional[dt_date] = Field(None, description="Last active day; open-ended when missing")
    is_active: bool = Field(True, description="Inactive regimens never generate slots")
    dosage: Optional[Dosage] = None
    category: str = Field("General", description="User-defined grouping")
    purpose: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("start_date", "end_date", mode="before")
    @classmethod
    def _coerce_dates(cls, v):
        return _to_date(v)

    @model_validator(mode="after")
    def _check_date_range(self):
        if self.end_date is not None and self.start_date > self.end_date:
            raise ValueError("end_date must not be before start_date")
        return self

    @property
    def fixed_times(self) -> List[str]:
        return list(FREQUENCY_TIMES.get(self.frequency, ()))


class RegimenCreate(Regimen):
    """Incoming regimen; stricter than Regimen, which also has to read old documents."""
    id: Optional[str] = None

    @field_validator("frequency")
    @classmethod
    def _check_frequency(cls, v: str) -> str:
        if v not in FREQUENCIES:
            raise ValueError(f"frequency must be one of: {', '.join(FREQUENCIES)}")
        return v

    @model_validator(mode="after")
    def _check_custom_schedule(self):
        if self.frequency == "custom" and not self.custom_schedule:
            raise ValueError("custom frequency needs at least one custom_schedule entry")
        return self


class DoseLog(BaseModel):
    """Record of an actual dose event.
    Collection: doselog
    """
    id: str = Field(..., description="Dose log identifier")
    regimen_id: str = Field(..., description="ID of the regimen document")
    medication_id: Optional[str] = None
    scheduled_time: datetime = Field(..., description="Slot the dose corresponds to")
    actual_time: Optional[datetime] = Field(None, description="When the dose was taken")
    status: DoseStatus
    notes: Optional[str] = Field(None, max_length=500)
    side_effects: List[str] = Field(default_factory=list)
    mood: Optional[str] = None
    effectiveness: Optional[int] = Field(None, ge=1, le=5)
    with_food: Optional[bool] = None
    taken_late: Optional[bool] = None
    minutes_late: int = Field(0, ge=0)


class DoseLogCreate(BaseModel):
    regimen_id: str
    scheduled_time: datetime
    status: DoseStatus
    actual_time: Optional[datetime] = None
    notes: Optional[str] = Field(None, max_length=500)
    side_effects: List[str] = Field(default_factory=list)
    mood: Optional[str] = None
    effectiveness: Optional[int] = Field(None, ge=1, le=5)
    with_food: Optional[bool] = None


class DoseSlot(BaseModel):
    """A single expected or logged dose at a specific time."""
    id: str
    regimen_id: str
    medication_id: Optional[str] = None
    log_id: Optional[str] = Field(None, description="Set when the slot is backed by a dose log")
    scheduled_time: datetime
    time_label: str = Field(..., description="HH:MM of scheduled_time")
    label: Optional[str] = None
    status: SlotStatus
    is_overdue: bool = False
    minutes_late: int = Field(0, ge=0)
    taken_late: bool = False
    dosage: Optional[Dosage] = None


class ScheduleWarning(BaseModel):
    code: WarningCode
    message: str
    regimen_id: Optional[str] = None
    log_ids: List[str] = Field(default_factory=list)


class ScheduleResult(BaseModel):
    date: dt_date
    slots: List[DoseSlot] = Field(default_factory=list)
    warnings: List[ScheduleWarning] = Field(default_factory=list)


class ScheduleStats(BaseModel):
    taken: int = 0
    taken_late: int = 0
    missed: int = 0
    skipped: int = 0
    pending: int = 0
    total: int = 0
    adherence_rate: float = 0.0


class LatePolicy(str, Enum):
    ALLOW = "allow"
    WARN_LATE = "warn_late"
    FORCE_MISSED = "force_missed"


class LateLoggingDecision(BaseModel):
    policy: LatePolicy
    minutes_late: int
    taken_late: bool = False
    allowed_statuses: List[DoseStatus]

    @property
    def rejected(self) -> bool:
        return self.policy == LatePolicy.FORCE_MISSED
