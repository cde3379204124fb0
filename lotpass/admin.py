import uuid
from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select

from .db import transaction
from .deps import Services, get_services
from .models import AuditLog, Event, User, Vehicle
from .schemas import (
    CreateEventReq,
    CreateUserReq,
    CreateVehicleReq,
    EventOut,
    OccupancyOut,
    SweepOut,
    UserOut,
    VehicleOut,
)

router = APIRouter(prefix="/admin", tags=["admin"])


# -------------------------
# Helpers
# -------------------------
def _gen_event_id() -> str:
    return f"evt_{uuid.uuid4().hex[:8]}"


def _gen_vehicle_id() -> str:
    return f"veh_{uuid.uuid4().hex[:8]}"


# -------------------------
# Events
# -------------------------
@router.post("/events", status_code=201, response_model=EventOut)
def create_event(req: CreateEventReq, services: Services = Depends(get_services)):
    date = req.date
    if date.tzinfo is None:
        raise HTTPException(status_code=422, detail="date must include a timezone")
    if date <= services.clock.now():
        raise HTTPException(status_code=422, detail="event date must be in the future")

    with transaction(services.sessions) as db:
        event = Event(
            id=_gen_event_id(),
            org_id=req.org_id,
            name=req.name,
            location=req.location,
            date=date,
            capacity=req.capacity,
            vendor_price=req.vendor_price,
            admission_version=0,
            created_at=services.clock.now(),
        )
        db.add(event)
    return event


@router.get("/events", response_model=list[EventOut])
def list_events(org_id: Optional[str] = None, services: Services = Depends(get_services)):
    with transaction(services.sessions) as db:
        q = select(Event).order_by(Event.date)
        if org_id:
            q = q.where(Event.org_id == org_id)
        return list(db.execute(q).scalars())


@router.get("/events/{event_id}/occupancy", response_model=OccupancyOut)
def get_occupancy(event_id: str, services: Services = Depends(get_services)):
    admission = services.capacity.occupancy(event_id)
    return OccupancyOut(
        event_id=event_id,
        capacity=admission.event.capacity,
        occupancy=admission.occupancy,
        remaining=admission.remaining,
    )


@router.get("/events/{event_id}/checkin-sheet")
def get_checkin_sheet(event_id: str, services: Services = Depends(get_services)):
    sheet = services.checkin.sheet(event_id)
    return {
        "event_name": sheet.event.name,
        "event_date": sheet.event.date,
        "rows": [asdict(row) for row in sheet.rows],
    }


# -------------------------
# Vehicles
# -------------------------
@router.post("/vehicles", status_code=201, response_model=VehicleOut)
def create_vehicle(req: CreateVehicleReq, services: Services = Depends(get_services)):
    with transaction(services.sessions) as db:
        vehicle = Vehicle(
            id=_gen_vehicle_id(),
            user_id=req.user_id,
            title=req.title,
            make=req.make,
            model=req.model,
            year=req.year,
            vin=req.vin,
            created_at=services.clock.now(),
        )
        db.add(vehicle)
    return vehicle


# -------------------------
# Users (confirmation recipients)
# -------------------------
@router.post("/users", status_code=201, response_model=UserOut)
def upsert_user(req: CreateUserReq, services: Services = Depends(get_services)):
    with transaction(services.sessions) as db:
        user = db.get(User, req.id)
        if user is None:
            user = User(id=req.id, created_at=services.clock.now())
            db.add(user)
        user.email = req.email
        user.name = req.name
    return user


# -------------------------
# Expiration sweep (manual trigger)
# -------------------------
@router.post("/sweep", response_model=SweepOut)
def run_sweep(services: Services = Depends(get_services)):
    report = services.sweeper.sweep()
    return SweepOut(reclaimed=report.reclaimed, scanned=report.scanned, errors=report.errors)


# -------------------------
# Logs
# -------------------------
@router.get("/audit")
def get_audit(limit: int = 80, event_id: Optional[str] = None, services: Services = Depends(get_services)):
    with transaction(services.sessions) as db:
        q = select(AuditLog, Event).join(Event, Event.id == AuditLog.event_id, isouter=True)
        if event_id:
            q = q.where(AuditLog.event_id == event_id)
        rows = db.execute(q.order_by(AuditLog.id.desc()).limit(limit)).all()

        out = []
        for log, ev in rows:
            out.append({
                "created_at": str(log.created_at),
                "registration_id": log.registration_id,
                "event_id": log.event_id,
                "event_name": ev.name if ev else None,
                "status": log.status,
                "reason_code": log.reason_code,
                "decision_id": log.decision_id,
            })
        return out
