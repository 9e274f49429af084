from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .models import AllocationStatus, ConsignmentStatus, OfficeType, TruckStatus


class OfficeCreate(BaseModel):
    name: str = Field(..., min_length=1)
    office_type: OfficeType = OfficeType.BRANCH_OFFICE
    street: str = ""
    city: str = ""
    state: str = ""
    country: str = ""
    postal_code: str = ""
    phone_number: str = ""
    email: str = ""


class OfficeRead(OfficeCreate):
    id: int

    model_config = ConfigDict(from_attributes=True)


class TruckCreate(BaseModel):
    registration_number: str = Field(..., min_length=1)
    truck_model: str = ""
    capacity: float = Field(..., gt=0)
    current_office_id: int = Field(..., ge=1)
    status: TruckStatus = TruckStatus.AVAILABLE
    last_maintenance: Optional[datetime] = None

    @field_validator("registration_number")
    @classmethod
    def _strip_registration(cls, value: str) -> str:
        return value.strip().upper()


class TruckUpdate(BaseModel):
    truck_model: Optional[str] = None
    status: Optional[TruckStatus] = None
    current_office_id: Optional[int] = Field(default=None, ge=1)
    last_maintenance: Optional[datetime] = None


class TruckRead(BaseModel):
    id: int
    registration_number: str
    truck_model: str
    capacity: float
    current_office_id: int
    status: TruckStatus
    last_maintenance: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class Party(BaseModel):
    name: str = Field(..., min_length=1)
    contact: str = Field(..., min_length=1)
    address: str = ""

    @field_validator("name", "contact", "address")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()


class ConsignmentCreate(BaseModel):
    """Validated intake payload handed to the allocation engine."""

    volume: float = Field(..., ge=0.1)
    sender: Party
    receiver: Party
    source_office_id: int = Field(..., ge=1)
    destination_office_id: int = Field(..., ge=1)

    @model_validator(mode="after")
    def _check_route(self) -> "ConsignmentCreate":
        if self.source_office_id == self.destination_office_id:
            raise ValueError("source_office_id and destination_office_id must differ")
        return self


class ConsignmentRead(BaseModel):
    id: int
    tracking_number: str
    volume: float
    charge: float
    source_office_id: int
    destination_office_id: int
    status: ConsignmentStatus
    truck_id: Optional[int] = None
    sender_name: str
    sender_contact: str
    receiver_name: str
    receiver_contact: str
    received_date: datetime
    dispatch_date: Optional[datetime] = None
    delivery_date: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class AllocationCreateRequest(BaseModel):
    """Manual allocation: an operator picks the truck and consignments."""

    truck_id: int = Field(..., ge=1)
    source_office_id: int = Field(..., ge=1)
    destination_office_id: int = Field(..., ge=1)
    consignment_ids: List[int] = Field(..., min_length=1)
    waiting_time: float = Field(0.0, ge=0)
    notes: str = ""

    @field_validator("consignment_ids")
    @classmethod
    def _unique_ids(cls, value: List[int]) -> List[int]:
        if len(set(value)) != len(value):
            raise ValueError("consignment_ids must not contain duplicates")
        return value


class AllocationUpdate(BaseModel):
    """Operator request against an existing allocation."""

    status: Optional[str] = None
    notes: Optional[str] = None
    idle_time: Optional[float] = Field(default=None, ge=0)
    waiting_time: Optional[float] = Field(default=None, ge=0)


class AllocationRead(BaseModel):
    id: int
    status: AllocationStatus
    total_volume: float
    start_date: datetime
    end_date: Optional[datetime] = None
    idle_time: float
    waiting_time: float
    notes: str
    truck: TruckRead
    source_office: OfficeRead
    destination_office: OfficeRead
    consignments: List[ConsignmentRead] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class IntakeResponse(BaseModel):
    consignment: ConsignmentRead
    allocation: Optional[AllocationRead] = None
    allocation_error: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(from_attributes=True)
