from __future__ import annotations

import re
from datetime import datetime, timezone

import pytest
from pydantic import ValidationError as SettingsError

from transport_backend.config import AllocationSettings, TruckSelection, load_settings
from transport_backend.errors import ValidationError
from transport_backend.models import AllocationStatus
from transport_backend.utils import calculate_charge, generate_tracking_number, normalize_allocation_status


def test_charge_is_volume_times_base_rate() -> None:
    assert calculate_charge(5.5, 1, 2) == pytest.approx(550.0)
    assert calculate_charge(5.5, 1, 2, base_rate=20) == pytest.approx(110.0)
    assert calculate_charge(5.5, 1, 2) == calculate_charge(5.5, 3, 9)


def test_charge_rejects_negative_volume() -> None:
    with pytest.raises(ValidationError):
        calculate_charge(-1.0)


def test_tracking_number_format() -> None:
    stamp = datetime(2024, 3, 1, 12, 0, 0, 123000, tzinfo=timezone.utc)
    tracking = generate_tracking_number("CN", now=stamp)

    expected_digits = str(int(stamp.timestamp() * 1000))[-6:]
    assert re.fullmatch(rf"CN-{expected_digits}-[A-Z0-9]{{5}}", tracking)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("planned", AllocationStatus.PLANNED),
        ("In Progress", AllocationStatus.IN_PROGRESS),
        ("in-progress", AllocationStatus.IN_PROGRESS),
        (" COMPLETED ", AllocationStatus.COMPLETED),
        (AllocationStatus.CANCELLED, AllocationStatus.CANCELLED),
    ],
)
def test_normalize_allocation_status(raw, expected) -> None:
    assert normalize_allocation_status(raw) == expected


@pytest.mark.parametrize("raw", [None, "", "shipped"])
def test_normalize_allocation_status_rejects_unknown(raw) -> None:
    with pytest.raises(ValidationError):
        normalize_allocation_status(raw)


def test_settings_defaults() -> None:
    settings = load_settings({})

    assert settings.volume_trigger == 500.0
    assert settings.base_rate == 100.0
    assert settings.truck_selection == TruckSelection.LOWEST_ID
    assert settings.tracking_prefix == "CN"


def test_settings_from_environment() -> None:
    settings = load_settings(
        {
            "TRANSPORT_VOLUME_TRIGGER": "750",
            "TRANSPORT_BASE_RATE": "85.5",
            "TRANSPORT_TRUCK_SELECTION": "smallest_sufficient",
            "TRANSPORT_TRACKING_PREFIX": "tx",
            "TRANSPORT_UNRELATED": "ignored",
        }
    )

    assert settings.volume_trigger == 750.0
    assert settings.base_rate == 85.5
    assert settings.truck_selection == TruckSelection.SMALLEST_SUFFICIENT
    assert settings.tracking_prefix == "TX"


@pytest.mark.parametrize(
    "environ",
    [
        {"TRANSPORT_VOLUME_TRIGGER": "0"},
        {"TRANSPORT_VOLUME_TRIGGER": "lots"},
        {"TRANSPORT_BASE_RATE": "-1"},
        {"TRANSPORT_TRUCK_SELECTION": "random"},
    ],
)
def test_invalid_settings_fail_fast(environ) -> None:
    with pytest.raises(SettingsError):
        load_settings(environ)


def test_settings_reject_non_positive_trigger() -> None:
    with pytest.raises(SettingsError):
        AllocationSettings(volume_trigger=-10)
