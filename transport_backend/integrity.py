"""Cross-entity consistency checks between trucks, consignments and allocations."""

from __future__ import annotations

from collections import defaultdict
from typing import Dict, List

from sqlalchemy.orm import Session

from .models import (
    ACTIVE_ALLOCATION_STATUSES,
    BOUND_CONSIGNMENT_STATUSES,
    Consignment,
    ConsignmentStatus,
    TruckAllocation,
)

_IN_MOTION = (ConsignmentStatus.WAITING, ConsignmentStatus.IN_TRANSIT)


def find_inconsistencies(db: Session) -> List[str]:
    """Return a description of every violated invariant; empty when consistent.

    - a consignment has a truck exactly when it is WAITING, IN_TRANSIT or DELIVERED;
    - every consignment in motion belongs to exactly one live allocation on its truck;
    - every consignment of a live allocation is in motion on that allocation's truck.
    """
    problems: List[str] = []
    live: Dict[int, List[TruckAllocation]] = defaultdict(list)
    allocations = (
        db.query(TruckAllocation)
        .filter(TruckAllocation.status.in_(sorted(ACTIVE_ALLOCATION_STATUSES)))
        .all()
    )
    for allocation in allocations:
        for consignment in allocation.consignments:
            live[consignment.id].append(allocation)
            if consignment.truck_id != allocation.truck_id or consignment.status not in _IN_MOTION:
                problems.append(
                    f"allocation {allocation.id} ({allocation.status.value}) holds consignment "
                    f"{consignment.id} with truck={consignment.truck_id} status={consignment.status.value}"
                )

    for consignment in db.query(Consignment).order_by(Consignment.id).all():
        bound = consignment.status in BOUND_CONSIGNMENT_STATUSES
        if bound != (consignment.truck_id is not None):
            problems.append(
                f"consignment {consignment.id} is {consignment.status.value} with truck={consignment.truck_id}"
            )
        if consignment.status in _IN_MOTION:
            holders = [a for a in live.get(consignment.id, []) if a.truck_id == consignment.truck_id]
            if len(holders) != 1:
                problems.append(
                    f"consignment {consignment.id} on truck {consignment.truck_id} "
                    f"is held by {len(holders)} live allocations"
                )
    return problems


__all__ = ["find_inconsistencies"]
