"""
Truck allocation engine.

Allocations are created by the route decision (backlog reached the volume
trigger) or manually by an operator, and are then driven through

    PLANNED -> IN_PROGRESS -> COMPLETED
    PLANNED -> CANCELLED

Every step rewrites the allocation, its truck and all of its consignments in
one transaction. Each write is conditional on the state the step expects
(``WHERE status = ...``), so a concurrent operation that got there first
turns into a ConcurrencyConflictError and a rollback, never a mixed state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple, Union

from sqlalchemy import select
from sqlalchemy.orm import Session

from .backlog import RouteBacklog, route_backlog
from .config import AllocationSettings, TruckSelection
from .database import atomic
from .errors import ConcurrencyConflictError, InvalidTransitionError, NotFoundError, ValidationError
from .models import (
    ACTIVE_ALLOCATION_STATUSES,
    AllocationStatus,
    Consignment,
    ConsignmentStatus,
    Office,
    Truck,
    TruckAllocation,
    TruckStatus,
    allocation_consignments,
)
from .schemas import AllocationCreateRequest, AllocationUpdate
from .utils import normalize_allocation_status, utc_now

logger = logging.getLogger(__name__)

MANUAL_CLAIMABLE_STATUSES: FrozenSet[ConsignmentStatus] = frozenset(
    {ConsignmentStatus.RECEIVED, ConsignmentStatus.WAITING}
)


@dataclass(frozen=True)
class TransitionEffect:
    """What one allocation transition does to the truck and consignments."""

    name: str
    source: AllocationStatus
    target: AllocationStatus
    truck_from: TruckStatus
    truck_to: TruckStatus
    consignment_from: ConsignmentStatus
    consignment_to: ConsignmentStatus
    release_consignments: bool = False
    relocate_truck: bool = False
    stamp_field: Optional[str] = None
    closes: bool = False


DISPATCH = TransitionEffect(
    name="dispatch",
    source=AllocationStatus.PLANNED,
    target=AllocationStatus.IN_PROGRESS,
    truck_from=TruckStatus.LOADING,
    truck_to=TruckStatus.IN_TRANSIT,
    consignment_from=ConsignmentStatus.WAITING,
    consignment_to=ConsignmentStatus.IN_TRANSIT,
    stamp_field="dispatch_date",
)
COMPLETE = TransitionEffect(
    name="complete",
    source=AllocationStatus.IN_PROGRESS,
    target=AllocationStatus.COMPLETED,
    truck_from=TruckStatus.IN_TRANSIT,
    truck_to=TruckStatus.AVAILABLE,
    consignment_from=ConsignmentStatus.IN_TRANSIT,
    consignment_to=ConsignmentStatus.DELIVERED,
    relocate_truck=True,
    stamp_field="delivery_date",
    closes=True,
)
CANCEL = TransitionEffect(
    name="cancel",
    source=AllocationStatus.PLANNED,
    target=AllocationStatus.CANCELLED,
    truck_from=TruckStatus.LOADING,
    truck_to=TruckStatus.AVAILABLE,
    consignment_from=ConsignmentStatus.WAITING,
    consignment_to=ConsignmentStatus.RECEIVED,
    release_consignments=True,
)

TRANSITIONS: Dict[Tuple[AllocationStatus, AllocationStatus], TransitionEffect] = {
    (effect.source, effect.target): effect for effect in (DISPATCH, COMPLETE, CANCEL)
}


def resolve_transition(
    current: AllocationStatus,
    requested: AllocationStatus,
    *,
    allocation_id: Optional[int] = None,
) -> TransitionEffect:
    """Return the effect for ``current -> requested`` or raise InvalidTransitionError.

    Defined for every pair of statuses: pairs outside the table are rejected.
    """
    effect = TRANSITIONS.get((current, requested))
    if effect is None:
        raise InvalidTransitionError(allocation_id, current.value, requested.value)
    return effect


def _claimed_by_live_allocation():
    """Ids of consignments bound to a PLANNED or IN_PROGRESS allocation."""
    return (
        select(allocation_consignments.c.consignment_id)
        .join(TruckAllocation, TruckAllocation.id == allocation_consignments.c.allocation_id)
        .where(TruckAllocation.status.in_(sorted(ACTIVE_ALLOCATION_STATUSES)))
    )


def _require(db: Session, model, entity_id: int, entity: str):
    record = db.get(model, entity_id)
    if record is None:
        raise NotFoundError(entity, entity_id)
    return record


def get_allocation(db: Session, allocation_id: int) -> TruckAllocation:
    return _require(db, TruckAllocation, allocation_id, "TruckAllocation")


def list_allocations(
    db: Session,
    *,
    status: Union[str, AllocationStatus, None] = None,
    source_office_id: Optional[int] = None,
    destination_office_id: Optional[int] = None,
    truck_id: Optional[int] = None,
) -> List[TruckAllocation]:
    query = db.query(TruckAllocation)
    if status is not None:
        query = query.filter(TruckAllocation.status == normalize_allocation_status(status))
    if source_office_id is not None:
        query = query.filter(TruckAllocation.source_office_id == source_office_id)
    if destination_office_id is not None:
        query = query.filter(TruckAllocation.destination_office_id == destination_office_id)
    if truck_id is not None:
        query = query.filter(TruckAllocation.truck_id == truck_id)
    return query.order_by(TruckAllocation.start_date.desc(), TruckAllocation.id.desc()).all()


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------


def select_truck(
    db: Session,
    office_id: int,
    volume: float,
    policy: TruckSelection = TruckSelection.LOWEST_ID,
) -> Optional[Truck]:
    """Pick an AVAILABLE truck at *office_id* for *volume*.

    Trucks able to carry the whole volume come first, ordered by *policy*.
    When none is big enough the largest one is returned and the caller
    loads what fits.
    """
    available = db.query(Truck).filter(
        Truck.current_office_id == office_id,
        Truck.status == TruckStatus.AVAILABLE,
    )
    query = available.filter(Truck.capacity >= volume)
    if policy == TruckSelection.SMALLEST_SUFFICIENT:
        query = query.order_by(Truck.capacity.asc(), Truck.id.asc())
    elif policy == TruckSelection.LARGEST_CAPACITY:
        query = query.order_by(Truck.capacity.desc(), Truck.id.asc())
    else:
        query = query.order_by(Truck.id.asc())
    truck = query.first()
    if truck is None:
        truck = available.order_by(Truck.capacity.desc(), Truck.id.asc()).first()
    return truck


def _create_allocation(
    db: Session,
    *,
    truck_id: int,
    source_office_id: int,
    destination_office_id: int,
    consignment_ids: Sequence[int],
    total_volume: float,
    consignment_filters: Iterable,
    waiting_time: float = 0.0,
    notes: str = "",
) -> TruckAllocation:
    """Claim the truck and consignments and insert a PLANNED allocation.

    Must run inside ``atomic``. Both claims are conditional updates; if either
    matches fewer rows than requested another operation won the race and the
    caller's transaction is rolled back.
    """
    claimed_truck = (
        db.query(Truck)
        .filter(Truck.id == truck_id, Truck.status == TruckStatus.AVAILABLE)
        .update({Truck.status: TruckStatus.LOADING}, synchronize_session=False)
    )
    if claimed_truck != 1:
        raise ConcurrencyConflictError(
            f"Truck {truck_id} is no longer available",
            entity="Truck",
            entity_id=truck_id,
            field="status",
        )

    ids = list(consignment_ids)
    claimed = (
        db.query(Consignment)
        .filter(
            Consignment.id.in_(ids),
            Consignment.source_office_id == source_office_id,
            Consignment.destination_office_id == destination_office_id,
            *consignment_filters,
        )
        .update(
            {Consignment.status: ConsignmentStatus.WAITING, Consignment.truck_id: truck_id},
            synchronize_session=False,
        )
    )
    if claimed != len(ids):
        raise ConcurrencyConflictError(
            f"Only {claimed} of {len(ids)} consignments could be claimed; "
            "another allocation already holds the rest",
            entity="Consignment",
            field="truck_id",
        )

    allocation = TruckAllocation(
        truck_id=truck_id,
        source_office_id=source_office_id,
        destination_office_id=destination_office_id,
        start_date=utc_now(),
        end_date=None,
        total_volume=total_volume,
        status=AllocationStatus.PLANNED,
        idle_time=0.0,
        waiting_time=waiting_time,
        notes=notes,
    )
    allocation.consignments = db.query(Consignment).filter(Consignment.id.in_(ids)).all()
    db.add(allocation)
    db.flush()
    return allocation


def commit_backlog_allocation(db: Session, backlog: RouteBacklog, truck_id: int) -> TruckAllocation:
    """Bind exactly the consignments of *backlog* to *truck_id*.

    The claim only matches consignments that are still RECEIVED with no
    truck, so two evaluations of the same backlog can never both succeed.
    """
    if backlog.is_empty:
        raise ValidationError("Backlog is empty", entity="Consignment", field="consignment_ids")
    with atomic(db):
        allocation = _create_allocation(
            db,
            truck_id=truck_id,
            source_office_id=backlog.source_office_id,
            destination_office_id=backlog.destination_office_id,
            consignment_ids=backlog.consignment_ids,
            total_volume=backlog.total_volume,
            consignment_filters=(
                Consignment.status == ConsignmentStatus.RECEIVED,
                Consignment.truck_id.is_(None),
            ),
        )
    logger.info(
        "Allocated truck %s to route %s->%s: allocation %s, %d consignments, %.2f volume",
        truck_id,
        backlog.source_office_id,
        backlog.destination_office_id,
        allocation.id,
        len(backlog.consignment_ids),
        backlog.total_volume,
    )
    return allocation


def evaluate_route(
    db: Session,
    source_office_id: int,
    destination_office_id: int,
    settings: AllocationSettings,
) -> Optional[TruckAllocation]:
    """Commit a truck to the route if its backlog reached the trigger.

    Returns None when the backlog is below the trigger or no truck waits at
    the source office; the backlog is then picked up again by the next intake
    on the same route. A backlog larger than every waiting truck is split:
    the chosen truck takes the oldest consignments that fit and the rest
    stays in the backlog.
    """
    backlog = route_backlog(db, source_office_id, destination_office_id)
    if not backlog.reaches(settings.volume_trigger):
        logger.debug(
            "Route %s->%s backlog %.2f below trigger %.2f",
            source_office_id,
            destination_office_id,
            backlog.total_volume,
            settings.volume_trigger,
        )
        return None

    truck = select_truck(db, source_office_id, backlog.total_volume, settings.truck_selection)
    if truck is None:
        logger.info(
            "Route %s->%s backlog %.2f reached trigger but no truck is available",
            source_office_id,
            destination_office_id,
            backlog.total_volume,
        )
        return None

    load = backlog.load_for(truck.capacity)
    if load.is_empty:
        logger.info(
            "Route %s->%s: every consignment is larger than truck %s (capacity %.2f)",
            source_office_id,
            destination_office_id,
            truck.id,
            truck.capacity,
        )
        return None
    if load is not backlog:
        logger.info(
            "Route %s->%s backlog %.2f exceeds truck %s capacity %.2f; loading %.2f",
            source_office_id,
            destination_office_id,
            backlog.total_volume,
            truck.id,
            truck.capacity,
            load.total_volume,
        )
    return commit_backlog_allocation(db, load, truck.id)


def allocate_manually(db: Session, request: AllocationCreateRequest) -> TruckAllocation:
    """Create an allocation for an operator-chosen truck and consignment set."""
    truck = _require(db, Truck, request.truck_id, "Truck")
    _require(db, Office, request.source_office_id, "Office")
    _require(db, Office, request.destination_office_id, "Office")

    if truck.status != TruckStatus.AVAILABLE:
        raise ValidationError(
            f"Truck is not available, current status: {truck.status.value}",
            entity="Truck",
            entity_id=truck.id,
            field="status",
        )

    consignments = db.query(Consignment).filter(Consignment.id.in_(request.consignment_ids)).all()
    found = {c.id: c for c in consignments}
    for consignment_id in request.consignment_ids:
        if consignment_id not in found:
            raise NotFoundError("Consignment", consignment_id)

    live = set(db.execute(_claimed_by_live_allocation()).scalars())
    for consignment in consignments:
        if consignment.route != (request.source_office_id, request.destination_office_id):
            raise ValidationError(
                f"Consignment {consignment.tracking_number} does not travel "
                f"{request.source_office_id}->{request.destination_office_id}",
                entity="Consignment",
                entity_id=consignment.id,
                field="source_office_id",
            )
        if consignment.status not in MANUAL_CLAIMABLE_STATUSES:
            raise ValidationError(
                f"Consignment {consignment.tracking_number} is {consignment.status.value}",
                entity="Consignment",
                entity_id=consignment.id,
                field="status",
            )
        if consignment.id in live:
            raise ValidationError(
                f"Consignment {consignment.tracking_number} is already allocated",
                entity="Consignment",
                entity_id=consignment.id,
                field="truck_id",
            )

    total_volume = round(sum(c.volume for c in consignments), 6)
    if not truck.can_carry(total_volume):
        raise ValidationError(
            f"Total volume ({total_volume}) exceeds truck capacity ({truck.capacity})",
            entity="Truck",
            entity_id=truck.id,
            field="capacity",
        )

    with atomic(db):
        allocation = _create_allocation(
            db,
            truck_id=truck.id,
            source_office_id=request.source_office_id,
            destination_office_id=request.destination_office_id,
            consignment_ids=request.consignment_ids,
            total_volume=total_volume,
            consignment_filters=(
                Consignment.status.in_(sorted(MANUAL_CLAIMABLE_STATUSES)),
                Consignment.id.not_in(_claimed_by_live_allocation()),
            ),
            waiting_time=request.waiting_time,
            notes=request.notes,
        )
    logger.info(
        "Manual allocation %s: truck %s, %d consignments, %.2f volume",
        allocation.id,
        truck.id,
        len(request.consignment_ids),
        total_volume,
    )
    return allocation


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


def _apply_effect(db: Session, allocation: TruckAllocation, effect: TransitionEffect, now: datetime) -> None:
    allocation_values = {TruckAllocation.status: effect.target}
    if effect.closes:
        allocation_values[TruckAllocation.end_date] = now
    moved = (
        db.query(TruckAllocation)
        .filter(TruckAllocation.id == allocation.id, TruckAllocation.status == effect.source)
        .update(allocation_values, synchronize_session=False)
    )
    if moved != 1:
        raise ConcurrencyConflictError(
            f"Allocation {allocation.id} is no longer {effect.source.value}",
            entity="TruckAllocation",
            entity_id=allocation.id,
            field="status",
        )

    truck_values = {Truck.status: effect.truck_to}
    if effect.relocate_truck:
        truck_values[Truck.current_office_id] = allocation.destination_office_id
    truck_moved = (
        db.query(Truck)
        .filter(Truck.id == allocation.truck_id, Truck.status == effect.truck_from)
        .update(truck_values, synchronize_session=False)
    )
    if truck_moved != 1:
        raise ConcurrencyConflictError(
            f"Truck {allocation.truck_id} is not {effect.truck_from.value}",
            entity="Truck",
            entity_id=allocation.truck_id,
            field="status",
        )

    ids = allocation.consignment_ids
    if not ids:
        return
    consignment_values = {Consignment.status: effect.consignment_to}
    if effect.release_consignments:
        consignment_values[Consignment.truck_id] = None
    filters = [
        Consignment.id.in_(ids),
        Consignment.status == effect.consignment_from,
        Consignment.truck_id == allocation.truck_id,
    ]
    if effect.stamp_field:
        column = getattr(Consignment, effect.stamp_field)
        consignment_values[column] = now
        filters.append(column.is_(None))
    updated = db.query(Consignment).filter(*filters).update(consignment_values, synchronize_session=False)
    if updated != len(ids):
        raise ConcurrencyConflictError(
            f"{len(ids) - updated} consignment(s) of allocation {allocation.id} "
            f"are not {effect.consignment_from.value} on truck {allocation.truck_id}",
            entity="TruckAllocation",
            entity_id=allocation.id,
            field="consignments",
        )


def update_allocation(db: Session, allocation_id: int, update: AllocationUpdate) -> TruckAllocation:
    """Apply an operator request: an optional status change plus annotations.

    Everything is validated before the first write, so a rejected request
    leaves the allocation, truck and consignments exactly as they were.
    """
    allocation = get_allocation(db, allocation_id)
    effect: Optional[TransitionEffect] = None
    if update.status is not None:
        requested = normalize_allocation_status(update.status)
        try:
            effect = resolve_transition(allocation.status, requested, allocation_id=allocation.id)
        except InvalidTransitionError:
            logger.warning(
                "Rejected transition of allocation %s: %s -> %s",
                allocation.id,
                allocation.status.value,
                requested.value,
            )
            raise

    previous = allocation.status
    with atomic(db):
        if effect is not None:
            _apply_effect(db, allocation, effect, utc_now())
        if update.notes is not None:
            allocation.notes = update.notes
        if update.idle_time is not None:
            allocation.idle_time = update.idle_time
        if update.waiting_time is not None:
            allocation.waiting_time = update.waiting_time

    if effect is not None:
        logger.info(
            "Allocation %s %s: %s -> %s (truck %s, %d consignments)",
            allocation.id,
            effect.name,
            previous.value,
            effect.target.value,
            allocation.truck_id,
            len(allocation.consignment_ids),
        )
    return allocation


def transition_allocation(
    db: Session, allocation_id: int, requested: Union[str, AllocationStatus]
) -> TruckAllocation:
    status = normalize_allocation_status(requested)
    return update_allocation(db, allocation_id, AllocationUpdate(status=status.value))


def dispatch_allocation(db: Session, allocation_id: int) -> TruckAllocation:
    return transition_allocation(db, allocation_id, AllocationStatus.IN_PROGRESS)


def complete_allocation(db: Session, allocation_id: int) -> TruckAllocation:
    return transition_allocation(db, allocation_id, AllocationStatus.COMPLETED)


def cancel_allocation(db: Session, allocation_id: int) -> TruckAllocation:
    return transition_allocation(db, allocation_id, AllocationStatus.CANCELLED)


def delete_allocation(db: Session, allocation_id: int) -> None:
    """Remove a PLANNED allocation, releasing its truck and consignments."""
    allocation = get_allocation(db, allocation_id)
    if allocation.status != AllocationStatus.PLANNED:
        logger.warning("Rejected delete of %s allocation %s", allocation.status.value, allocation.id)
        raise InvalidTransitionError(allocation.id, allocation.status.value, "DELETED")

    truck_id = allocation.truck_id
    with atomic(db):
        _apply_effect(db, allocation, CANCEL, utc_now())
        db.delete(allocation)
    logger.info("Deleted allocation %s, truck %s released", allocation_id, truck_id)


__all__ = [
    "CANCEL",
    "COMPLETE",
    "DISPATCH",
    "TRANSITIONS",
    "TransitionEffect",
    "allocate_manually",
    "cancel_allocation",
    "commit_backlog_allocation",
    "complete_allocation",
    "delete_allocation",
    "dispatch_allocation",
    "evaluate_route",
    "get_allocation",
    "list_allocations",
    "resolve_transition",
    "select_truck",
    "transition_allocation",
    "update_allocation",
]
