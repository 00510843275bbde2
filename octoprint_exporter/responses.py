"""Typed views of the OctoPrint job and printer status payloads."""
from typing import Any, Dict, Optional
import math

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _optional_number(value: Any) -> Optional[float]:
    """Missing or non-numeric fields are absent, not a parse failure."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


class JobProgress(BaseModel):
    """The ``progress`` section of ``GET /api/job``."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    completion: Optional[float] = None
    print_time: Optional[float] = Field(default=None, alias="printTime")
    print_time_left: Optional[float] = Field(default=None, alias="printTimeLeft")

    @field_validator("completion", "print_time", "print_time_left", mode="before")
    @classmethod
    def coerce_number(cls, v):
        return _optional_number(v)


class JobStatus(BaseModel):
    """Response of ``GET /api/job``."""
    model_config = ConfigDict(extra="ignore")

    progress: Optional[JobProgress] = None

    @field_validator("progress", mode="before")
    @classmethod
    def drop_malformed_progress(cls, v):
        return v if isinstance(v, dict) else None


class TemperatureReading(BaseModel):
    """One sensor (``tool0``, ``bed``, ...) of the temperature section."""
    model_config = ConfigDict(extra="ignore")

    actual: Optional[float] = None
    offset: Optional[float] = None
    target: Optional[float] = None

    @field_validator("actual", "offset", "target", mode="before")
    @classmethod
    def coerce_number(cls, v):
        return _optional_number(v)


class PrinterStatus(BaseModel):
    """Response of ``GET /api/printer``."""
    model_config = ConfigDict(extra="ignore")

    temperature: Optional[Dict[str, TemperatureReading]] = None

    @field_validator("temperature", mode="before")
    @classmethod
    def keep_sensor_objects(cls, v):
        # history lists and other non-sensor entries are skipped
        if not isinstance(v, dict):
            return None
        return {name: reading for name, reading in v.items() if isinstance(reading, dict)}
