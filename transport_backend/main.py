from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Generator, List, Optional

from fastapi import Depends, FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from .allocation import (
    allocate_manually,
    delete_allocation,
    evaluate_route,
    get_allocation,
    list_allocations,
    update_allocation,
)
from .backlog import route_backlog
from .config import AllocationSettings, configure_logging, load_settings
from .database import SessionLocal, init_db
from .errors import (
    ConcurrencyConflictError,
    InvalidTransitionError,
    NotFoundError,
    StoreError,
    TransportError,
    ValidationError,
)
from .fleet import create_truck, delete_truck, update_truck
from .intake import (
    cancel_consignment,
    get_consignment_by_tracking,
    intake_consignment,
    list_consignments,
)
from .models import AllocationStatus, ConsignmentStatus
from .schemas import (
    AllocationCreateRequest,
    AllocationRead,
    AllocationUpdate,
    ConsignmentCreate,
    ConsignmentRead,
    IntakeResponse,
    TruckCreate,
    TruckRead,
    TruckUpdate,
)

ERROR_STATUS_CODES = {
    ValidationError: 400,
    NotFoundError: 404,
    InvalidTransitionError: 409,
    ConcurrencyConflictError: 409,
    StoreError: 503,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    init_db()
    yield


app = FastAPI(
    title="Transport Operations API",
    description="Consignment intake and truck allocation for the transport operations tracker.",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@lru_cache(maxsize=1)
def get_settings() -> AllocationSettings:
    return load_settings()


@app.exception_handler(TransportError)
async def transport_error_handler(request: Request, exc: TransportError) -> JSONResponse:
    status_code = next(
        (code for cls, code in ERROR_STATUS_CODES.items() if isinstance(exc, cls)),
        500,
    )
    return JSONResponse(status_code=status_code, content=exc.to_dict())


@app.get("/api/health")
def health_check():
    return {"status": "running"}


@app.post("/api/consignments", response_model=IntakeResponse, status_code=201)
def create_consignment(
    payload: ConsignmentCreate,
    db: Session = Depends(get_db),
    settings: AllocationSettings = Depends(get_settings),
) -> IntakeResponse:
    """Intake a consignment; the response carries the allocation it triggered, if any.

    A failed route decision does not undo the intake: the response is still 201
    and ``allocation_error`` describes what went wrong.
    """
    result = intake_consignment(db, payload, settings)
    return IntakeResponse(
        consignment=ConsignmentRead.model_validate(result.consignment),
        allocation=AllocationRead.model_validate(result.allocation) if result.allocation else None,
        allocation_error=result.allocation_error.to_dict() if result.allocation_error else None,
    )


@app.get("/api/consignments", response_model=List[ConsignmentRead])
def get_consignments(
    status: Optional[ConsignmentStatus] = None,
    source_office_id: Optional[int] = None,
    destination_office_id: Optional[int] = None,
    db: Session = Depends(get_db),
) -> List[ConsignmentRead]:
    return list_consignments(
        db,
        status=status,
        source_office_id=source_office_id,
        destination_office_id=destination_office_id,
    )


@app.get("/api/consignments/{tracking_number}", response_model=ConsignmentRead)
def get_consignment(tracking_number: str, db: Session = Depends(get_db)) -> ConsignmentRead:
    return get_consignment_by_tracking(db, tracking_number)


@app.post("/api/consignments/{consignment_id}/cancel", response_model=ConsignmentRead)
def withdraw_consignment(consignment_id: int, db: Session = Depends(get_db)) -> ConsignmentRead:
    return cancel_consignment(db, consignment_id)


@app.get("/api/backlog")
def get_backlog(
    source_office_id: int,
    destination_office_id: int,
    db: Session = Depends(get_db),
    settings: AllocationSettings = Depends(get_settings),
) -> dict:
    backlog = route_backlog(db, source_office_id, destination_office_id)
    return {
        "source_office_id": backlog.source_office_id,
        "destination_office_id": backlog.destination_office_id,
        "consignment_ids": list(backlog.consignment_ids),
        "total_volume": backlog.total_volume,
        "volume_trigger": settings.volume_trigger,
    }


@app.post("/api/backlog/evaluate", response_model=Optional[AllocationRead])
def evaluate_backlog(
    source_office_id: int,
    destination_office_id: int,
    db: Session = Depends(get_db),
    settings: AllocationSettings = Depends(get_settings),
) -> Optional[AllocationRead]:
    """Re-run the route decision, e.g. after an intake reported a lost claim race."""
    return evaluate_route(db, source_office_id, destination_office_id, settings)


@app.get("/api/allocations", response_model=List[AllocationRead])
def get_allocations(
    status: Optional[AllocationStatus] = None,
    source_office_id: Optional[int] = None,
    destination_office_id: Optional[int] = None,
    truck_id: Optional[int] = None,
    db: Session = Depends(get_db),
) -> List[AllocationRead]:
    return list_allocations(
        db,
        status=status,
        source_office_id=source_office_id,
        destination_office_id=destination_office_id,
        truck_id=truck_id,
    )


@app.post("/api/allocations", response_model=AllocationRead, status_code=201)
def create_allocation(
    payload: AllocationCreateRequest,
    db: Session = Depends(get_db),
) -> AllocationRead:
    """Manually bind a truck to a set of consignments."""
    return allocate_manually(db, payload)


@app.get("/api/allocations/{allocation_id}", response_model=AllocationRead)
def read_allocation(allocation_id: int, db: Session = Depends(get_db)) -> AllocationRead:
    return get_allocation(db, allocation_id)


@app.patch("/api/allocations/{allocation_id}", response_model=AllocationRead)
def patch_allocation(
    allocation_id: int,
    payload: AllocationUpdate,
    db: Session = Depends(get_db),
) -> AllocationRead:
    """Dispatch, complete or cancel an allocation and/or edit its notes."""
    return update_allocation(db, allocation_id, payload)


@app.delete("/api/allocations/{allocation_id}", status_code=204)
def remove_allocation(allocation_id: int, db: Session = Depends(get_db)) -> Response:
    delete_allocation(db, allocation_id)
    return Response(status_code=204)


@app.post("/api/trucks", response_model=TruckRead, status_code=201)
def register_truck(payload: TruckCreate, db: Session = Depends(get_db)) -> TruckRead:
    return create_truck(db, payload)


@app.patch("/api/trucks/{truck_id}", response_model=TruckRead)
def patch_truck(truck_id: int, payload: TruckUpdate, db: Session = Depends(get_db)) -> TruckRead:
    return update_truck(db, truck_id, payload)


@app.delete("/api/trucks/{truck_id}", status_code=204)
def remove_truck(truck_id: int, db: Session = Depends(get_db)) -> Response:
    delete_truck(db, truck_id)
    return Response(status_code=204)
