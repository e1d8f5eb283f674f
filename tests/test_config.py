from datetime import date

import pytest
from pydantic import ValidationError

from config import load_config
from schemas import Regimen


def test_defaults(monkeypatch):
    for name in ("SCHEDULE_MATCH_TOLERANCE_MINUTES", "ON_TIME_LOGGING_MINUTES",
                 "LATE_LOGGING_WINDOW_MINUTES", "TAKEN_LATE_THRESHOLD_MINUTES"):
        monkeypatch.delenv(name, raising=False)
    config = load_config()

    assert config.match_tolerance_minutes == 30
    assert config.on_time_minutes == 60
    assert config.late_window_minutes == 240
    assert config.taken_late_threshold_minutes == 30


def test_env_overrides_and_bad_values(monkeypatch):
    monkeypatch.setenv("LATE_LOGGING_WINDOW_MINUTES", "120")
    monkeypatch.setenv("ON_TIME_LOGGING_MINUTES", "soon")
    monkeypatch.setenv("SCHEDULE_MATCH_TOLERANCE_MINUTES", "0")
    monkeypatch.setenv("TAKEN_LATE_THRESHOLD_MINUTES", "-5")
    config = load_config()

    assert config.late_window_minutes == 120
    assert config.on_time_minutes == 60
    assert config.match_tolerance_minutes == 30
    assert config.taken_late_threshold_minutes == 30


def test_regimen_dates_accept_iso_datetimes():
    reg = Regimen(id="r", medication_id="m", frequency="once_daily",
                  start_date="2024-01-01T00:00:00Z", end_date="2024-02-01")

    assert reg.start_date == date(2024, 1, 1)
    assert reg.end_date == date(2024, 2, 1)


def test_regimen_rejects_inverted_range():
    with pytest.raises(ValidationError):
        Regimen(id="r", medication_id="m", frequency="once_daily",
                start_date=date(2024, 2, 1), end_date=date(2024, 1, 1))
