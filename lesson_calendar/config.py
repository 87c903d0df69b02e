"""Environment-driven settings for the lesson calendar."""

from __future__ import annotations

import os
from datetime import tzinfo

from dateutil import tz
from pydantic import BaseModel, Field, field_validator

from lesson_calendar.domain.models import Weekday

_ENV_PREFIX = "LESSON_CALENDAR_"


class Settings(BaseModel):
    week_start: Weekday = Weekday.MO
    timezone: str = "UTC"
    # Hard cap for series without an end condition (or with a far one).
    max_occurrences: int = Field(default=500, ge=1)
    max_series_days: int = Field(default=730, ge=1)
    log_level: str = "INFO"

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        if tz.gettz(value) is None:
            raise ValueError(f"unknown timezone {value!r}")
        return value

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()

    @property
    def tzinfo(self) -> tzinfo:
        return tz.gettz(self.timezone)


def load_settings(environ: dict[str, str] | None = None) -> Settings:
    """Build ``Settings`` from ``LESSON_CALENDAR_*`` environment variables."""
    environ = os.environ if environ is None else environ
    values = {
        name: environ[_ENV_PREFIX + name.upper()]
        for name in Settings.model_fields
        if _ENV_PREFIX + name.upper() in environ
    }
    return Settings(**values)
