"""Route backlog: RECEIVED consignments on a route that no truck has claimed yet."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Tuple

from sqlalchemy.orm import Session

from .models import Consignment, ConsignmentStatus


@dataclass(frozen=True)
class RouteBacklog:
    source_office_id: int
    destination_office_id: int
    consignment_ids: Tuple[int, ...]
    total_volume: float
    volumes: Tuple[float, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.consignment_ids

    def reaches(self, trigger: float) -> bool:
        return not self.is_empty and self.total_volume >= trigger

    def load_for(self, capacity: float) -> "RouteBacklog":
        """The part of this backlog one truck of *capacity* takes, oldest first.

        A consignment that no longer fits is skipped and later, smaller ones
        may still be loaded. Returns the whole backlog when it fits.
        """
        if self.total_volume <= capacity:
            return self
        ids: List[int] = []
        volumes: List[float] = []
        loaded = 0.0
        for consignment_id, volume in zip(self.consignment_ids, self.volumes):
            if loaded + volume <= capacity:
                ids.append(consignment_id)
                volumes.append(volume)
                loaded += volume
        return RouteBacklog(
            source_office_id=self.source_office_id,
            destination_office_id=self.destination_office_id,
            consignment_ids=tuple(ids),
            total_volume=round(loaded, 6),
            volumes=tuple(volumes),
        )


def route_backlog(db: Session, source_office_id: int, destination_office_id: int) -> RouteBacklog:
    """Return the unclaimed backlog for a route; read only.

    Consignments already bound to a truck are excluded even if their status
    still reads RECEIVED, so no volume is ever counted towards two trucks.
    """
    consignments = (
        db.query(Consignment)
        .filter(
            Consignment.source_office_id == source_office_id,
            Consignment.destination_office_id == destination_office_id,
            Consignment.status == ConsignmentStatus.RECEIVED,
            Consignment.truck_id.is_(None),
        )
        .order_by(Consignment.received_date.asc(), Consignment.id.asc())
        .all()
    )
    return RouteBacklog(
        source_office_id=source_office_id,
        destination_office_id=destination_office_id,
        consignment_ids=tuple(c.id for c in consignments),
        total_volume=round(sum(c.volume for c in consignments), 6),
        volumes=tuple(c.volume for c in consignments),
    )


__all__ = ["RouteBacklog", "route_backlog"]
