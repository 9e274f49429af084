"""Runtime configuration for the allocation engine and the API."""

from __future__ import annotations

import logging
import os
from enum import Enum
from typing import Mapping, Optional

from pydantic import BaseModel, Field, field_validator

DEFAULT_DATABASE_URL = "sqlite:///./transport.db"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class TruckSelection(str, Enum):
    """Tie-break used when several trucks are AVAILABLE at a source office."""

    LOWEST_ID = "lowest_id"
    SMALLEST_SUFFICIENT = "smallest_sufficient"
    LARGEST_CAPACITY = "largest_capacity"


class AllocationSettings(BaseModel):
    volume_trigger: float = Field(500.0, gt=0)
    base_rate: float = Field(100.0, ge=0)
    truck_selection: TruckSelection = TruckSelection.LOWEST_ID
    tracking_prefix: str = Field("CN", min_length=1, max_length=8)

    @field_validator("tracking_prefix", mode="before")
    @classmethod
    def _normalize_prefix(cls, value: Optional[str]) -> str:
        if value is None:
            return "CN"
        return str(value).strip().upper()


# Environment variable -> settings field.
_ENV_FIELDS: Mapping[str, str] = {
    "TRANSPORT_VOLUME_TRIGGER": "volume_trigger",
    "TRANSPORT_BASE_RATE": "base_rate",
    "TRANSPORT_TRUCK_SELECTION": "truck_selection",
    "TRANSPORT_TRACKING_PREFIX": "tracking_prefix",
}


def load_settings(environ: Optional[Mapping[str, str]] = None) -> AllocationSettings:
    """Build settings from environment variables, falling back to defaults.

    Invalid values raise ``pydantic.ValidationError`` so a misconfigured
    deployment fails at start-up rather than on the first intake.
    """
    env = os.environ if environ is None else environ
    values = {
        field: env[name].strip()
        for name, field in _ENV_FIELDS.items()
        if env.get(name, "").strip()
    }
    return AllocationSettings(**values)


def database_url() -> str:
    return os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL)


def configure_logging(level: Optional[str] = None) -> logging.Logger:
    """Attach a single stream handler to the package logger."""
    logger = logging.getLogger("transport_backend")
    resolved = (level or os.environ.get("LOG_LEVEL", "INFO")).upper()
    logger.setLevel(resolved)
    if not any(getattr(handler, "_transport_handler", False) for handler in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._transport_handler = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
    return logger


__all__ = [
    "AllocationSettings",
    "TruckSelection",
    "configure_logging",
    "database_url",
    "load_settings",
]
