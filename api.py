import logging
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from config import settings
from circulation.database import get_db_connection
from circulation.desk import CirculationDesk
from circulation.errors import CirculationError
from circulation.models import CopyCondition, DamageStatus, ShipmentStatus
from circulation.seed import seed_sample_consortium
from circulation.services.http_client import cleanup_http_client
from circulation.validators import ValueValidator

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

_desk: Optional[CirculationDesk] = None


def get_desk() -> CirculationDesk:
    """Shared desk, built on first use against the configured database."""
    global _desk
    if _desk is None:
        _desk = CirculationDesk()
    return _desk


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        yield
    finally:
        global _desk
        if _desk is not None:
            _desk.close()
            _desk = None
        cleanup_http_client()


app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(CirculationError)
async def circulation_error_handler(request: Request, exc: CirculationError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key")


def get_api_key(api_key: str = Security(api_key_header)):
    """Staff endpoints require the configured API key."""
    if api_key == settings.api_key:
        return api_key
    raise HTTPException(status_code=403, detail="Could not validate credentials")


# --- Models ---
class BorrowRequest(BaseModel):
    user_id: str
    copy_id: str
    library_id: str
    on_behalf_of: Optional[str] = Field(default=None, description="Child account the loan is for")


class ReturnRequest(BaseModel):
    user_id: str
    return_to_library_id: Optional[str] = Field(default=None, description="Defaults to the lending library")
    condition: Optional[CopyCondition] = None
    notes: Optional[str] = None


class ReservationRequest(BaseModel):
    user_id: str
    edition_id: str
    preferred_library_id: Optional[str] = None


class CancelReservationRequest(BaseModel):
    user_id: str


class ShipmentStatusUpdate(BaseModel):
    status: ShipmentStatus
    actor_id: str


class FinePolicyCreate(BaseModel):
    rate_per_day: float = Field(ge=0)
    effective_from: date
    created_by: Optional[str] = None


class DamageReportCreate(BaseModel):
    copy_id: str
    reported_by: str
    description: str


class DamageStatusUpdate(BaseModel):
    status: DamageStatus
    actor_id: str


class RebalanceRequest(BaseModel):
    triggered_by: str = "staff"


class HealthModel(BaseModel):
    status: str
    timestamp: str
    db: bool
    version: str


# --- Health ---
@app.get("/health", response_model=HealthModel)
def health():
    db_ok = True
    try:
        conn = get_db_connection()
        conn.execute("SELECT 1")
        conn.close()
    except Exception:
        logger.exception("Health check could not reach the database")
        db_ok = False
    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": datetime.utcnow().isoformat() + "Z",
        "db": db_ok,
        "version": settings.app_version,
    }


@app.post("/seed", dependencies=[Depends(get_api_key)])
def seed(desk: CirculationDesk = Depends(get_desk)) -> Dict[str, int]:
    """Load the sample consortium when the database has no libraries yet."""
    return seed_sample_consortium(desk.directory, clock=desk.clock)


# --- Borrowing ---
@app.post("/borrows", status_code=201)
def borrow_copy(payload: BorrowRequest, desk: CirculationDesk = Depends(get_desk)) -> Dict[str, Any]:
    borrow = desk.circulation.borrow(payload.user_id, payload.copy_id, payload.library_id, payload.on_behalf_of)
    return borrow.to_dict(desk.clock())


@app.post("/borrows/{borrow_id}/return")
def return_copy(borrow_id: int, payload: ReturnRequest, desk: CirculationDesk = Depends(get_desk)) -> Dict[str, Any]:
    outcome = desk.circulation.return_copy(
        borrow_id,
        payload.user_id,
        return_to_library_id=payload.return_to_library_id,
        condition=payload.condition,
        notes=payload.notes,
    )
    return outcome.to_dict()


@app.get("/users/{user_id}/borrows")
def list_borrows(user_id: str, desk: CirculationDesk = Depends(get_desk)) -> List[Dict[str, Any]]:
    desk.directory.get_user(user_id)
    return desk.circulation.current_loans(user_id)


@app.get("/users/{user_id}/history")
def reading_history(user_id: str, desk: CirculationDesk = Depends(get_desk)) -> List[Dict[str, Any]]:
    desk.directory.get_user(user_id)
    return [b.to_dict() for b in desk.circulation.reading_history(user_id)]


# --- Reservations ---
@app.post("/reservations", status_code=201)
def create_reservation(payload: ReservationRequest, desk: CirculationDesk = Depends(get_desk)) -> Dict[str, Any]:
    reservation = desk.reservations.create_reservation(
        payload.user_id, payload.edition_id, payload.preferred_library_id
    )
    return reservation.to_dict()


@app.post("/reservations/{reservation_id}/cancel")
def cancel_reservation(
    reservation_id: int, payload: CancelReservationRequest, desk: CirculationDesk = Depends(get_desk)
) -> Dict[str, Any]:
    return desk.reservations.cancel(reservation_id, payload.user_id).to_dict()


@app.get("/users/{user_id}/reservations")
def list_reservations(user_id: str, desk: CirculationDesk = Depends(get_desk)) -> List[Dict[str, Any]]:
    return [r.to_dict() for r in desk.reservations.list_for_user(user_id)]


@app.get("/editions/{edition_id}/queue")
def edition_queue(edition_id: str, desk: CirculationDesk = Depends(get_desk)) -> List[Dict[str, Any]]:
    desk.directory.get_edition(edition_id)
    return [r.to_dict() for r in desk.reservations.pending_queue(edition_id)]


@app.post("/reservations/recalculate", dependencies=[Depends(get_api_key)])
def recalculate_priorities(desk: CirculationDesk = Depends(get_desk)) -> Dict[str, int]:
    return desk.reservations.recalculate_priorities()


# --- Rebalancing & shipments ---
@app.post("/rebalance", dependencies=[Depends(get_api_key)])
def trigger_rebalance(
    payload: Optional[RebalanceRequest] = None, desk: CirculationDesk = Depends(get_desk)
) -> Dict[str, Any]:
    triggered_by = payload.triggered_by if payload else "staff"
    results = desk.rebalancer.run(triggered_by=triggered_by)
    return {
        "editions": results,
        "shipments_created": sum(r["shipments_created"] for r in results),
    }


@app.get("/shipments")
def list_shipments(
    status: Optional[ShipmentStatus] = Query(None),
    library_id: Optional[str] = Query(None),
    desk: CirculationDesk = Depends(get_desk),
) -> List[Dict[str, Any]]:
    return [s.to_dict() for s in desk.shipments.list_shipments(status=status, library_id=library_id)]


@app.patch("/shipments/{shipment_id}", dependencies=[Depends(get_api_key)])
def update_shipment(
    shipment_id: int, payload: ShipmentStatusUpdate, desk: CirculationDesk = Depends(get_desk)
) -> Dict[str, Any]:
    return desk.shipments.update_status(shipment_id, payload.status, payload.actor_id).to_dict()


# --- Fine policies ---
@app.get("/libraries/{library_id}/fine-policies")
def get_fine_policies(library_id: str, desk: CirculationDesk = Depends(get_desk)) -> List[Dict[str, Any]]:
    return [p.to_dict() for p in desk.ledger.get_policies(library_id)]


@app.post("/libraries/{library_id}/fine-policies", status_code=201, dependencies=[Depends(get_api_key)])
def create_fine_policy(
    library_id: str, payload: FinePolicyCreate, desk: CirculationDesk = Depends(get_desk)
) -> Dict[str, Any]:
    policy = desk.ledger.create_policy(library_id, payload.rate_per_day, payload.effective_from, payload.created_by)
    return policy.to_dict()


@app.get("/libraries/{library_id}/fine-quote")
def quote_fine(
    library_id: str,
    due: str = Query(..., description="Due instant, ISO 8601"),
    end: Optional[str] = Query(None, description="Closing instant, defaults to now"),
    desk: CirculationDesk = Depends(get_desk),
) -> Dict[str, Any]:
    due_at = ValueValidator.instant(due, "due")
    end_at = ValueValidator.instant(end, "end") if end else None
    return desk.ledger.quote_fine(library_id, due_at, end_at).to_dict()


# --- Damage reports ---
@app.get("/damage-reports", dependencies=[Depends(get_api_key)])
def list_damage_reports(
    status: Optional[DamageStatus] = Query(None), desk: CirculationDesk = Depends(get_desk)
) -> List[Dict[str, Any]]:
    return [r.to_dict() for r in desk.circulation.list_damage_reports(status)]


@app.post("/damage-reports", status_code=201, dependencies=[Depends(get_api_key)])
def create_damage_report(payload: DamageReportCreate, desk: CirculationDesk = Depends(get_desk)) -> Dict[str, Any]:
    return desk.circulation.report_damage(payload.copy_id, payload.reported_by, payload.description).to_dict()


@app.patch("/damage-reports/{report_id}", dependencies=[Depends(get_api_key)])
def update_damage_report(
    report_id: int, payload: DamageStatusUpdate, desk: CirculationDesk = Depends(get_desk)
) -> Dict[str, Any]:
    return desk.circulation.update_damage_status(report_id, payload.status, payload.actor_id).to_dict()


# --- Notifications ---
@app.get("/users/{user_id}/notifications")
def list_notifications(
    user_id: str, unread_only: bool = Query(False), desk: CirculationDesk = Depends(get_desk)
) -> List[Dict[str, Any]]:
    return [n.to_dict() for n in desk.notifier.list_for_user(user_id, unread_only=unread_only)]


@app.get("/users/{user_id}/notifications/unread-count")
def unread_count(user_id: str, desk: CirculationDesk = Depends(get_desk)) -> Dict[str, int]:
    return {"unread": desk.notifier.unread_count(user_id)}


@app.post("/users/{user_id}/notifications/{notification_id}/read")
def mark_notification_read(
    user_id: str, notification_id: int, desk: CirculationDesk = Depends(get_desk)
) -> Dict[str, Any]:
    return desk.notifier.mark_read(notification_id, user_id).to_dict()


@app.post("/users/{user_id}/notifications/read-all")
def mark_all_notifications_read(user_id: str, desk: CirculationDesk = Depends(get_desk)) -> Dict[str, int]:
    return {"updated": desk.notifier.mark_all_read(user_id)}


# --- Jobs ---
@app.post("/jobs/reminders", dependencies=[Depends(get_api_key)])
def run_reminders(desk: CirculationDesk = Depends(get_desk)) -> Dict[str, int]:
    return desk.reminders.run()
