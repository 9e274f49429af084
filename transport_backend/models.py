from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Table,
    Text,
)
from sqlalchemy.orm import declarative_base, relationship, validates

from .errors import ValidationError

Base = declarative_base()


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class OfficeType(str, enum.Enum):
    HEAD_OFFICE = "HEAD_OFFICE"
    BRANCH_OFFICE = "BRANCH_OFFICE"


class TruckStatus(str, enum.Enum):
    AVAILABLE = "AVAILABLE"
    LOADING = "LOADING"
    IN_TRANSIT = "IN_TRANSIT"
    MAINTENANCE = "MAINTENANCE"
    OUT_OF_SERVICE = "OUT_OF_SERVICE"


class ConsignmentStatus(str, enum.Enum):
    RECEIVED = "RECEIVED"
    WAITING = "WAITING"
    IN_TRANSIT = "IN_TRANSIT"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class AllocationStatus(str, enum.Enum):
    PLANNED = "PLANNED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


# Consignment statuses that require a bound truck, and allocation statuses that hold one.
BOUND_CONSIGNMENT_STATUSES = frozenset(
    {ConsignmentStatus.WAITING, ConsignmentStatus.IN_TRANSIT, ConsignmentStatus.DELIVERED}
)
ACTIVE_ALLOCATION_STATUSES = frozenset({AllocationStatus.PLANNED, AllocationStatus.IN_PROGRESS})


def _status_column(enum_cls, default):
    return Column(
        Enum(enum_cls, native_enum=False, validate_strings=True, length=16),
        nullable=False,
        default=default,
        index=True,
    )


allocation_consignments = Table(
    "allocation_consignments",
    Base.metadata,
    Column("allocation_id", Integer, ForeignKey("truck_allocations.id", ondelete="CASCADE"), primary_key=True),
    Column("consignment_id", Integer, ForeignKey("consignments.id"), primary_key=True),
)


class Office(Base):
    __tablename__ = "offices"

    id: int = Column(Integer, primary_key=True, index=True)
    name: str = Column(String, nullable=False, unique=True)
    office_type: OfficeType = Column(
        Enum(OfficeType, native_enum=False, length=16),
        nullable=False,
        default=OfficeType.BRANCH_OFFICE,
    )
    street: str = Column(String, nullable=False, default="")
    city: str = Column(String, nullable=False, default="")
    state: str = Column(String, nullable=False, default="")
    country: str = Column(String, nullable=False, default="")
    postal_code: str = Column(String, nullable=False, default="")
    phone_number: str = Column(String, nullable=False, default="")
    email: str = Column(String, nullable=False, default="")
    created_at: datetime = Column(DateTime(timezone=True), default=_utc_now)


class Truck(Base):
    __tablename__ = "trucks"

    id: int = Column(Integer, primary_key=True, index=True)
    registration_number: str = Column(String, nullable=False, unique=True)
    truck_model: str = Column(String, nullable=False, default="")
    capacity: float = Column(Float, nullable=False)
    current_office_id: int = Column(Integer, ForeignKey("offices.id"), nullable=False, index=True)
    status: TruckStatus = _status_column(TruckStatus, TruckStatus.AVAILABLE)
    last_maintenance: datetime = Column(DateTime(timezone=True), default=_utc_now)
    created_at: datetime = Column(DateTime(timezone=True), default=_utc_now)
    updated_at: datetime = Column(DateTime(timezone=True), default=_utc_now, onupdate=_utc_now)

    current_office = relationship("Office")

    def can_carry(self, volume: float) -> bool:
        return volume <= self.capacity


class Consignment(Base):
    __tablename__ = "consignments"

    id: int = Column(Integer, primary_key=True, index=True)
    tracking_number: str = Column(String, nullable=False, unique=True)
    volume: float = Column(Float, nullable=False)
    charge: float = Column(Float, nullable=False)
    source_office_id: int = Column(Integer, ForeignKey("offices.id"), nullable=False, index=True)
    destination_office_id: int = Column(Integer, ForeignKey("offices.id"), nullable=False, index=True)
    status: ConsignmentStatus = _status_column(ConsignmentStatus, ConsignmentStatus.RECEIVED)
    truck_id: int = Column(Integer, ForeignKey("trucks.id"), nullable=True, index=True)
    sender_name: str = Column(String, nullable=False)
    sender_contact: str = Column(String, nullable=False)
    sender_address: str = Column(String, nullable=False, default="")
    receiver_name: str = Column(String, nullable=False)
    receiver_contact: str = Column(String, nullable=False)
    receiver_address: str = Column(String, nullable=False, default="")
    received_date: datetime = Column(DateTime(timezone=True), nullable=False, default=_utc_now)
    dispatch_date: datetime = Column(DateTime(timezone=True), nullable=True)
    delivery_date: datetime = Column(DateTime(timezone=True), nullable=True)
    created_at: datetime = Column(DateTime(timezone=True), default=_utc_now)

    source_office = relationship("Office", foreign_keys=[source_office_id])
    destination_office = relationship("Office", foreign_keys=[destination_office_id])
    truck = relationship("Truck")

    @validates("charge", "source_office_id", "destination_office_id")
    def _freeze_once_set(self, key, value):
        current = getattr(self, key)
        if current is not None and value != current:
            raise ValidationError(
                f"Consignment {key} cannot be changed after creation",
                entity="Consignment",
                entity_id=self.id,
                field=key,
            )
        return value

    @property
    def route(self) -> tuple:
        return (self.source_office_id, self.destination_office_id)


class TruckAllocation(Base):
    __tablename__ = "truck_allocations"

    id: int = Column(Integer, primary_key=True, index=True)
    truck_id: int = Column(Integer, ForeignKey("trucks.id"), nullable=False, index=True)
    source_office_id: int = Column(Integer, ForeignKey("offices.id"), nullable=False)
    destination_office_id: int = Column(Integer, ForeignKey("offices.id"), nullable=False)
    start_date: datetime = Column(DateTime(timezone=True), nullable=False, default=_utc_now)
    end_date: datetime = Column(DateTime(timezone=True), nullable=True)
    total_volume: float = Column(Float, nullable=False)
    status: AllocationStatus = _status_column(AllocationStatus, AllocationStatus.PLANNED)
    idle_time: float = Column(Float, nullable=False, default=0.0)  # hours
    waiting_time: float = Column(Float, nullable=False, default=0.0)  # days
    notes: str = Column(Text, nullable=False, default="")
    created_at: datetime = Column(DateTime(timezone=True), default=_utc_now)
    updated_at: datetime = Column(DateTime(timezone=True), default=_utc_now, onupdate=_utc_now)

    truck = relationship("Truck")
    source_office = relationship("Office", foreign_keys=[source_office_id])
    destination_office = relationship("Office", foreign_keys=[destination_office_id])
    consignments = relationship(
        "Consignment",
        secondary=allocation_consignments,
        order_by="Consignment.id",
    )

    @property
    def consignment_ids(self) -> list:
        return [consignment.id for consignment in self.consignments]
