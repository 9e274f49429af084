from __future__ import annotations

from typing import Callable, Generator

import pytest
from sqlalchemy.orm import Session, sessionmaker

from transport_backend.config import AllocationSettings
from transport_backend.database import init_db, make_engine, make_session_factory
from transport_backend.intake import IntakeResult, intake_consignment
from transport_backend.models import Consignment, Office, Truck, TruckAllocation, TruckStatus
from transport_backend.schemas import ConsignmentCreate


@pytest.fixture()
def session_factory(tmp_path) -> Generator[sessionmaker, None, None]:
    """Session factory over an isolated, file-backed SQLite database."""
    engine = make_engine(f"sqlite:///{tmp_path / 'transport_test.db'}")
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture()
def db(session_factory: sessionmaker) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def settings() -> AllocationSettings:
    return AllocationSettings(volume_trigger=500.0, base_rate=100.0)


@pytest.fixture()
def make_office(db: Session) -> Callable[..., Office]:
    def _make(name: str) -> Office:
        office = Office(name=name, city=name)
        db.add(office)
        db.commit()
        return office

    return _make


@pytest.fixture()
def make_truck(db: Session) -> Callable[..., Truck]:
    def _make(
        registration: str,
        office: Office,
        capacity: float = 800.0,
        status: TruckStatus = TruckStatus.AVAILABLE,
    ) -> Truck:
        truck = Truck(
            registration_number=registration,
            truck_model="Tata Signa",
            capacity=capacity,
            current_office_id=office.id,
            status=status,
        )
        db.add(truck)
        db.commit()
        return truck

    return _make


@pytest.fixture()
def route(make_office):
    return make_office("Mumbai"), make_office("Delhi")


@pytest.fixture()
def intake(db: Session, settings: AllocationSettings) -> Callable[..., IntakeResult]:
    def _intake(source: Office, destination: Office, volume: float, session: Session = None) -> IntakeResult:
        payload = ConsignmentCreate(
            volume=volume,
            sender={"name": "Acme Textiles", "contact": "+91 98200 11111"},
            receiver={"name": "Northern Retail", "contact": "+91 98110 22222"},
            source_office_id=source.id,
            destination_office_id=destination.id,
        )
        return intake_consignment(session or db, payload, settings)

    return _intake


def _snapshot(db: Session) -> tuple:
    """Every column of every truck, consignment and allocation, as plain tuples."""
    db.expire_all()

    def rows(model):
        columns = [column.key for column in model.__table__.columns]
        return [
            tuple(getattr(record, column) for column in columns)
            for record in db.query(model).order_by(model.id).all()
        ]

    allocations = rows(TruckAllocation)
    links = [tuple(a.consignment_ids) for a in db.query(TruckAllocation).order_by(TruckAllocation.id)]
    return rows(Truck), rows(Consignment), allocations, links


@pytest.fixture()
def snapshot(db: Session) -> Callable[[], tuple]:
    return lambda: _snapshot(db)
