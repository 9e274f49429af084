"""Truck records as edited by fleet operators.

Status and location belong to the allocation engine while a PLANNED or
IN_PROGRESS allocation holds the truck; other fields stay editable.
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.orm import Session

from .database import atomic
from .errors import NotFoundError, ValidationError
from .models import ACTIVE_ALLOCATION_STATUSES, Office, Truck, TruckAllocation
from .schemas import TruckCreate, TruckUpdate

logger = logging.getLogger(__name__)


def get_truck(db: Session, truck_id: int) -> Truck:
    truck = db.get(Truck, truck_id)
    if truck is None:
        raise NotFoundError("Truck", truck_id)
    return truck


def active_allocation_for(db: Session, truck_id: int) -> Optional[TruckAllocation]:
    return (
        db.query(TruckAllocation)
        .filter(
            TruckAllocation.truck_id == truck_id,
            TruckAllocation.status.in_(sorted(ACTIVE_ALLOCATION_STATUSES)),
        )
        .order_by(TruckAllocation.id.desc())
        .first()
    )


def create_truck(db: Session, payload: TruckCreate) -> Truck:
    if db.get(Office, payload.current_office_id) is None:
        raise NotFoundError("Office", payload.current_office_id)
    existing = (
        db.query(Truck)
        .filter(Truck.registration_number == payload.registration_number)
        .one_or_none()
    )
    if existing:
        raise ValidationError(
            f"Truck {payload.registration_number} already registered",
            entity="Truck",
            entity_id=existing.id,
            field="registration_number",
        )

    values = payload.model_dump(exclude_none=True)
    truck = Truck(**values)
    with atomic(db):
        db.add(truck)
    logger.info(
        "Registered truck %s (capacity %.2f) at office %s",
        truck.registration_number,
        truck.capacity,
        truck.current_office_id,
    )
    return truck


def update_truck(db: Session, truck_id: int, update: TruckUpdate) -> Truck:
    truck = get_truck(db, truck_id)
    changes = update.model_dump(exclude_unset=True, exclude_none=True)

    engine_owned = {
        key
        for key in ("status", "current_office_id")
        if key in changes and changes[key] != getattr(truck, key)
    }
    if engine_owned:
        allocation = active_allocation_for(db, truck.id)
        if allocation is not None:
            field = sorted(engine_owned)[0]
            raise ValidationError(
                f"Truck {truck.registration_number} is held by {allocation.status.value} "
                f"allocation {allocation.id}; {field} cannot be edited",
                entity="Truck",
                entity_id=truck.id,
                field=field,
            )
    if "current_office_id" in changes and db.get(Office, changes["current_office_id"]) is None:
        raise NotFoundError("Office", changes["current_office_id"])

    with atomic(db):
        for key, value in changes.items():
            setattr(truck, key, value)
    if engine_owned:
        logger.info("Truck %s edited by operator: %s", truck.id, ", ".join(sorted(engine_owned)))
    return truck


def delete_truck(db: Session, truck_id: int) -> None:
    truck = get_truck(db, truck_id)
    allocation = active_allocation_for(db, truck.id)
    if allocation is not None:
        raise ValidationError(
            f"Truck {truck.registration_number} is held by allocation {allocation.id}",
            entity="Truck",
            entity_id=truck.id,
            field="status",
        )
    referenced = db.query(TruckAllocation.id).filter(TruckAllocation.truck_id == truck.id).first()
    if referenced is not None:
        raise ValidationError(
            f"Truck {truck.registration_number} has allocation history and cannot be deleted",
            entity="Truck",
            entity_id=truck.id,
        )
    with atomic(db):
        db.delete(truck)


__all__ = ["active_allocation_for", "create_truck", "delete_truck", "get_truck", "update_truck"]
