from __future__ import annotations

from datetime import datetime, timezone

import pytest

from transport_backend.allocation import cancel_allocation, complete_allocation, dispatch_allocation
from transport_backend.errors import NotFoundError, ValidationError
from transport_backend.fleet import create_truck, delete_truck, update_truck
from transport_backend.models import Truck, TruckStatus
from transport_backend.schemas import TruckCreate, TruckUpdate


@pytest.fixture()
def loading_truck(route, make_truck, intake):
    source, destination = route
    truck = make_truck("MH-01-AB-1234", source)
    intake(source, destination, 300)
    allocation = intake(source, destination, 250).allocation
    return truck, allocation


def test_create_truck_normalizes_registration(db, route) -> None:
    source, _ = route

    truck = create_truck(
        db, TruckCreate(registration_number=" mh-04-zz-0001 ", capacity=650, current_office_id=source.id)
    )

    assert truck.registration_number == "MH-04-ZZ-0001"
    assert truck.status == TruckStatus.AVAILABLE
    with pytest.raises(ValidationError) as excinfo:
        create_truck(
            db, TruckCreate(registration_number="MH-04-ZZ-0001", capacity=100, current_office_id=source.id)
        )
    assert excinfo.value.field == "registration_number"


def test_create_truck_unknown_office(db) -> None:
    with pytest.raises(NotFoundError):
        create_truck(db, TruckCreate(registration_number="X-1", capacity=100, current_office_id=42))


def test_idle_truck_status_is_editable(db, route, make_truck, make_office) -> None:
    source, _ = route
    truck = make_truck("MH-01-AB-1234", source)
    pune = make_office("Pune")

    update_truck(db, truck.id, TruckUpdate(status=TruckStatus.MAINTENANCE, current_office_id=pune.id))

    assert truck.status == TruckStatus.MAINTENANCE
    assert truck.current_office_id == pune.id


@pytest.mark.parametrize(
    "update",
    [
        TruckUpdate(status=TruckStatus.AVAILABLE),
        TruckUpdate(status=TruckStatus.MAINTENANCE),
    ],
)
def test_engine_owned_fields_locked_while_planned(db, loading_truck, update) -> None:
    truck, allocation = loading_truck

    with pytest.raises(ValidationError) as excinfo:
        update_truck(db, truck.id, update)

    assert excinfo.value.field == "status"
    assert truck.status == TruckStatus.LOADING


def test_location_locked_while_in_transit(db, loading_truck, make_office) -> None:
    truck, allocation = loading_truck
    dispatch_allocation(db, allocation.id)

    with pytest.raises(ValidationError) as excinfo:
        update_truck(db, truck.id, TruckUpdate(current_office_id=make_office("Pune").id))

    assert excinfo.value.field == "current_office_id"


def test_unchanged_status_and_maintenance_date_are_allowed(db, loading_truck) -> None:
    truck, _ = loading_truck
    serviced = datetime(2024, 5, 4, 9, 30, tzinfo=timezone.utc)

    update_truck(
        db,
        truck.id,
        TruckUpdate(status=TruckStatus.LOADING, last_maintenance=serviced, truck_model="Tata Prima"),
    )

    assert truck.truck_model == "Tata Prima"
    assert truck.last_maintenance.replace(tzinfo=timezone.utc) == serviced
    assert truck.status == TruckStatus.LOADING


def test_status_editable_again_after_trip(db, loading_truck) -> None:
    truck, allocation = loading_truck
    dispatch_allocation(db, allocation.id)
    complete_allocation(db, allocation.id)

    update_truck(db, truck.id, TruckUpdate(status=TruckStatus.MAINTENANCE))

    assert truck.status == TruckStatus.MAINTENANCE


def test_delete_truck_guards(db, loading_truck, route, make_truck) -> None:
    truck, allocation = loading_truck

    with pytest.raises(ValidationError):
        delete_truck(db, truck.id)

    cancel_allocation(db, allocation.id)
    with pytest.raises(ValidationError):
        delete_truck(db, truck.id)

    spare = make_truck("SPARE-1", route[0])
    spare_id = spare.id
    delete_truck(db, spare_id)
    assert db.get(Truck, spare_id) is None

    with pytest.raises(NotFoundError):
        delete_truck(db, spare_id)
