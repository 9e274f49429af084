"""Consignment intake: persist a new consignment, then run the route decision."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .allocation import evaluate_route
from .config import AllocationSettings, load_settings
from .database import atomic
from .errors import ConcurrencyConflictError, NotFoundError, StoreError, TransportError, ValidationError
from .models import Consignment, ConsignmentStatus, Office, TruckAllocation
from .schemas import ConsignmentCreate
from .utils import calculate_charge, generate_tracking_number, utc_now

logger = logging.getLogger(__name__)


@dataclass
class IntakeResult:
    consignment: Consignment
    allocation: Optional[TruckAllocation] = None
    allocation_error: Optional[TransportError] = None


def intake_consignment(
    db: Session,
    payload: ConsignmentCreate,
    settings: Optional[AllocationSettings] = None,
) -> IntakeResult:
    """Record a RECEIVED consignment and allocate its route if the backlog is full.

    The consignment is committed before the route is evaluated. If the
    evaluation fails (a lost claim race or a store failure) the call still
    returns the saved consignment, with the error in ``allocation_error``.
    """
    settings = settings or load_settings()
    for office_id in (payload.source_office_id, payload.destination_office_id):
        if db.get(Office, office_id) is None:
            raise NotFoundError("Office", office_id)

    now = utc_now()
    consignment = Consignment(
        tracking_number=generate_tracking_number(settings.tracking_prefix, now=now),
        volume=payload.volume,
        charge=calculate_charge(
            payload.volume,
            payload.source_office_id,
            payload.destination_office_id,
            base_rate=settings.base_rate,
        ),
        source_office_id=payload.source_office_id,
        destination_office_id=payload.destination_office_id,
        status=ConsignmentStatus.RECEIVED,
        truck_id=None,
        sender_name=payload.sender.name,
        sender_contact=payload.sender.contact,
        sender_address=payload.sender.address,
        receiver_name=payload.receiver.name,
        receiver_contact=payload.receiver.contact,
        receiver_address=payload.receiver.address,
        received_date=now,
    )
    with atomic(db):
        db.add(consignment)
    logger.info(
        "Received consignment %s (%.2f volume) on route %s->%s",
        consignment.tracking_number,
        consignment.volume,
        payload.source_office_id,
        payload.destination_office_id,
    )

    try:
        allocation = evaluate_route(
            db, payload.source_office_id, payload.destination_office_id, settings
        )
    except SQLAlchemyError as exc:
        db.rollback()
        error = StoreError(f"Route evaluation failed: {exc}", entity="Consignment", entity_id=consignment.id)
        error.__cause__ = exc
        return _evaluation_failed(consignment, payload, error)
    except TransportError as exc:
        return _evaluation_failed(consignment, payload, exc)
    return IntakeResult(consignment=consignment, allocation=allocation)


def _evaluation_failed(
    consignment: Consignment, payload: ConsignmentCreate, error: TransportError
) -> IntakeResult:
    # The consignment is already committed; report the failed decision
    # instead of raising so a retry does not record it twice.
    if isinstance(error, ConcurrencyConflictError):
        logger.warning(
            "Route %s->%s lost a claim race after intake of %s: %s",
            payload.source_office_id,
            payload.destination_office_id,
            consignment.tracking_number,
            error,
        )
    else:
        logger.error(
            "Route %s->%s could not be evaluated after intake of %s: %s",
            payload.source_office_id,
            payload.destination_office_id,
            consignment.tracking_number,
            error,
        )
    return IntakeResult(consignment=consignment, allocation=None, allocation_error=error)


def cancel_consignment(db: Session, consignment_id: int) -> Consignment:
    """Withdraw a RECEIVED consignment that no truck has claimed.

    Cancelled consignments leave the route backlog. Once an allocation holds
    a consignment it can only be released by cancelling that allocation.
    """
    consignment = db.get(Consignment, consignment_id)
    if consignment is None:
        raise NotFoundError("Consignment", consignment_id)
    if consignment.status != ConsignmentStatus.RECEIVED or consignment.truck_id is not None:
        raise ValidationError(
            f"Consignment {consignment.tracking_number} is {consignment.status.value}; "
            "only unallocated RECEIVED consignments can be cancelled",
            entity="Consignment",
            entity_id=consignment.id,
            field="status",
        )

    with atomic(db):
        cancelled = (
            db.query(Consignment)
            .filter(
                Consignment.id == consignment.id,
                Consignment.status == ConsignmentStatus.RECEIVED,
                Consignment.truck_id.is_(None),
            )
            .update({Consignment.status: ConsignmentStatus.CANCELLED}, synchronize_session=False)
        )
        if cancelled != 1:
            raise ConcurrencyConflictError(
                f"Consignment {consignment.tracking_number} was claimed by an allocation",
                entity="Consignment",
                entity_id=consignment.id,
                field="truck_id",
            )
    logger.info("Cancelled consignment %s", consignment.tracking_number)
    return consignment


def get_consignment_by_tracking(db: Session, tracking_number: str) -> Consignment:
    consignment = (
        db.query(Consignment)
        .filter(Consignment.tracking_number == tracking_number.strip().upper())
        .one_or_none()
    )
    if consignment is None:
        raise NotFoundError("Consignment", tracking_number)
    return consignment


def list_consignments(
    db: Session,
    *,
    status: Optional[ConsignmentStatus] = None,
    source_office_id: Optional[int] = None,
    destination_office_id: Optional[int] = None,
) -> List[Consignment]:
    query = db.query(Consignment)
    if status is not None:
        query = query.filter(Consignment.status == status)
    if source_office_id is not None:
        query = query.filter(Consignment.source_office_id == source_office_id)
    if destination_office_id is not None:
        query = query.filter(Consignment.destination_office_id == destination_office_id)
    return query.order_by(Consignment.received_date.desc(), Consignment.id.desc()).all()


__all__ = [
    "IntakeResult",
    "cancel_consignment",
    "get_consignment_by_tracking",
    "intake_consignment",
    "list_consignments",
]
