"""
Error taxonomy for the allocation engine.

Every operation either returns a confirmed new state or raises one of these.
Each error carries enough structure (kind plus the offending entity, id or
field) for the calling layer to render a user-facing message.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class TransportError(Exception):
    """Base exception for all allocation engine errors"""

    kind = "transport_error"

    def __init__(
        self,
        message: str,
        *,
        entity: Optional[str] = None,
        entity_id: Any = None,
        field: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.entity = entity
        self.entity_id = entity_id
        self.field = field

    def to_dict(self) -> Dict[str, Any]:
        return {
            "detail": self.message,
            "kind": self.kind,
            "entity": self.entity,
            "id": self.entity_id,
            "field": self.field,
        }


class ValidationError(TransportError):
    """Raised when a request is malformed or violates a business rule (e.g. capacity)"""

    kind = "validation_error"


class NotFoundError(TransportError):
    """Raised when a referenced office, truck, consignment or allocation does not exist"""

    kind = "not_found"

    def __init__(self, entity: str, entity_id: Any) -> None:
        super().__init__(f"{entity} {entity_id} not found", entity=entity, entity_id=entity_id)


class InvalidTransitionError(TransportError):
    """Raised when a status transition is not in the allocation transition table"""

    kind = "invalid_transition"

    def __init__(self, allocation_id: Optional[int], current: str, requested: str) -> None:
        super().__init__(
            f"Invalid status transition from {current} to {requested}",
            entity="TruckAllocation",
            entity_id=allocation_id,
            field="status",
        )
        self.current = current
        self.requested = requested

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload.update({"current": self.current, "requested": self.requested})
        return payload


class ConcurrencyConflictError(TransportError):
    """Raised when a conditional claim lost a race to another operation (e.g. double booking)"""

    kind = "concurrency_conflict"


class StoreError(TransportError):
    """Raised when the underlying database fails; never retried here"""

    kind = "store_error"


__all__ = [
    "ConcurrencyConflictError",
    "InvalidTransitionError",
    "NotFoundError",
    "StoreError",
    "TransportError",
    "ValidationError",
]
