import logging
import os

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class ScheduleConfig(BaseModel):
    """Policy knobs for slot matching and late logging, in minutes."""
    match_tolerance_minutes: int = Field(30, gt=0, description="Log-to-slot matching window")
    on_time_minutes: int = Field(60, ge=0, description="Lateness logged as taken without a warning")
    late_window_minutes: int = Field(240, ge=0, description="Latest a dose may still be logged as taken")
    taken_late_threshold_minutes: int = Field(30, ge=0, description="Lateness that flags a taken dose as late")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Ignoring %s=%r: not an integer, using %d", name, raw, default)
        return default
    if value < 0:
        logger.warning("Ignoring %s=%r: negative, using %d", name, raw, default)
        return default
    return value


def load_config() -> ScheduleConfig:
    defaults = ScheduleConfig()
    tolerance = _env_int("SCHEDULE_MATCH_TOLERANCE_MINUTES", defaults.match_tolerance_minutes)
    return ScheduleConfig(
        match_tolerance_minutes=tolerance or defaults.match_tolerance_minutes,
        on_time_minutes=_env_int("ON_TIME_LOGGING_MINUTES", defaults.on_time_minutes),
        late_window_minutes=_env_int("LATE_LOGGING_WINDOW_MINUTES", defaults.late_window_minutes),
        taken_late_threshold_minutes=_env_int(
            "TAKEN_LATE_THRESHOLD_MINUTES", defaults.taken_late_threshold_minutes
        ),
    )


LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
