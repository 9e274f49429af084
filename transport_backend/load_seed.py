"""
Load offices, trucks and consignments from a JSON file into the database.

Consignments are fed through the normal intake path, so loading a seed file
also triggers any truck allocations the backlog justifies.

Usage:
    python -m transport_backend.load_seed              # loads data/seed_data.json
    python -m transport_backend.load_seed --file path  # load a specific file
    python -m transport_backend.load_seed --reset      # clear existing records before importing
"""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Dict, Optional, Sequence

from sqlalchemy.orm import Session

from .config import AllocationSettings, configure_logging, load_settings
from .database import SessionLocal, atomic, init_db
from .fleet import create_truck
from .intake import intake_consignment
from .models import Consignment, Office, Truck, TruckAllocation, allocation_consignments
from .schemas import ConsignmentCreate, OfficeCreate, TruckCreate

logger = logging.getLogger(__name__)

DATA_DIR = Path(__file__).parent / "data"
DEFAULT_JSON = DATA_DIR / "seed_data.json"


def get_or_create_office(db: Session, payload: OfficeCreate) -> Office:
    """Return an existing office by name or create it if missing."""
    office = db.query(Office).filter(Office.name == payload.name).one_or_none()
    if office:
        return office
    office = Office(**payload.model_dump())
    with atomic(db):
        db.add(office)
    return office


def get_or_create_truck(db: Session, payload: TruckCreate) -> Truck:
    truck = (
        db.query(Truck)
        .filter(Truck.registration_number == payload.registration_number)
        .one_or_none()
    )
    if truck:
        return truck
    return create_truck(db, payload)


def reset_records(db: Session) -> None:
    with atomic(db):
        db.execute(allocation_consignments.delete())
        db.query(TruckAllocation).delete()
        db.query(Consignment).delete()
        db.query(Truck).delete()
        db.query(Office).delete()


def load_seed(
    data: dict,
    *,
    reset: bool = False,
    db: Optional[Session] = None,
    settings: Optional[AllocationSettings] = None,
) -> Dict[str, int]:
    """Persist a seed document and return counts of what was loaded."""
    settings = settings or load_settings()
    owns_session = db is None
    if owns_session:
        init_db()
        db = SessionLocal()

    try:
        if reset:
            reset_records(db)

        offices: Dict[str, Office] = {}
        for entry in data.get("offices", []):
            office = get_or_create_office(db, OfficeCreate(**entry))
            offices[office.name] = office

        def office_id(name: str) -> int:
            if name not in offices:
                office = db.query(Office).filter(Office.name == name).one_or_none()
                if office is None:
                    raise KeyError(f"Unknown office '{name}' in seed data")
                offices[name] = office
            return offices[name].id

        trucks = 0
        for entry in data.get("trucks", []):
            fields = {key: value for key, value in entry.items() if key != "office"}
            get_or_create_truck(db, TruckCreate(current_office_id=office_id(entry["office"]), **fields))
            trucks += 1

        consignments = 0
        allocations = 0
        for entry in data.get("consignments", []):
            payload = ConsignmentCreate(
                volume=float(entry["volume"]),
                sender=entry["sender"],
                receiver=entry["receiver"],
                source_office_id=office_id(entry["source"]),
                destination_office_id=office_id(entry["destination"]),
            )
            result = intake_consignment(db, payload, settings)
            consignments += 1
            if result.allocation is not None:
                allocations += 1

        counts = {
            "offices": len(offices),
            "trucks": trucks,
            "consignments": consignments,
            "allocations": allocations,
        }
        logger.info(
            "Seed loaded: %(offices)d offices, %(trucks)d trucks, "
            "%(consignments)d consignments, %(allocations)d allocations",
            counts,
        )
        return counts
    finally:
        if owns_session:
            db.close()


def load_json_document(path: Path) -> dict:
    if not path.exists():
        raise FileNotFoundError(f"Seed file not found: {path}")
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def parse_cli_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Load offices, trucks and consignments into the transport database."
    )
    parser.add_argument(
        "--file",
        "-f",
        type=Path,
        default=DEFAULT_JSON,
        help=f"Path to the seed JSON file (default: {DEFAULT_JSON})",
    )
    parser.add_argument(
        "--reset",
        action="store_true",
        help="Delete existing records before importing.",
    )
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_cli_args(argv)
    configure_logging()
    document = load_json_document(args.file)
    load_seed(document, reset=args.reset)


if __name__ == "__main__":
    main()
