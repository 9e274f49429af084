"""Utility helpers shared across the allocation engine."""

from __future__ import annotations

import random
import string
from datetime import datetime, timezone
from typing import Optional, Union

from .errors import ValidationError
from .models import AllocationStatus

_TRACKING_ALPHABET = string.ascii_uppercase + string.digits


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def calculate_charge(
    volume: float,
    source_office_id: Optional[int] = None,
    destination_office_id: Optional[int] = None,
    *,
    base_rate: float = 100.0,
) -> float:
    """Return the transport charge for a consignment.

    The route is accepted so the signature can grow a distance component, but
    the current tariff is flat: ``volume * base_rate``.
    """
    if volume < 0:
        raise ValidationError("Volume cannot be negative", entity="Consignment", field="volume")
    return round(volume * base_rate, 2)


def generate_tracking_number(prefix: str = "CN", *, now: Optional[datetime] = None) -> str:
    """Return a tracking code like ``CN-483920-7KQ2M``.

    The middle block is the last six digits of the epoch milliseconds and the
    suffix is five random characters; uniqueness is enforced by the column.
    """
    stamp = str(int((now or utc_now()).timestamp() * 1000))[-6:]
    suffix = "".join(random.choices(_TRACKING_ALPHABET, k=5))
    return f"{prefix}-{stamp}-{suffix}"


def normalize_allocation_status(value: Union[str, AllocationStatus, None]) -> AllocationStatus:
    """Return a canonical allocation status.

    Accepts enum members and case-insensitive strings such as ``"in_progress"``
    or ``"In Progress"``. Anything else is a validation error.
    """
    if isinstance(value, AllocationStatus):
        return value
    normalized = (value or "").strip().upper().replace(" ", "_").replace("-", "_")
    try:
        return AllocationStatus(normalized)
    except ValueError:
        raise ValidationError(
            f"Unknown allocation status '{value}'",
            entity="TruckAllocation",
            field="status",
        ) from None


__all__ = [
    "calculate_charge",
    "generate_tracking_number",
    "normalize_allocation_status",
    "utc_now",
]
