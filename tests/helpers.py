import uuid
from datetime import datetime, timedelta, timezone

import httpx

from lotpass.clock import Clock
from lotpass.db import transaction
from lotpass.models import Event, User, Vehicle
from lotpass.security import sign_payment_notification

START = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


class SettableClock(Clock):
    def __init__(self, start: datetime) -> None:
        super().__init__()
        self.current = start

    def _read(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


def make_event(sessions, clock, capacity=2, days_out=7, vendor_price=2500) -> str:
    event_id = f"evt_{uuid.uuid4().hex[:8]}"
    with transaction(sessions) as db:
        db.add(Event(
            id=event_id,
            org_id="org_1",
            name="Sunday Car Show",
            location="Fairgrounds",
            date=clock.now() + timedelta(days=days_out),
            capacity=capacity,
            vendor_price=vendor_price,
            admission_version=0,
            created_at=clock.now(),
        ))
    return event_id


def make_vehicle(sessions, user_id="user_a", title="1969 Camaro SS") -> str:
    vehicle_id = f"veh_{uuid.uuid4().hex[:8]}"
    with transaction(sessions) as db:
        db.add(Vehicle(id=vehicle_id, user_id=user_id, title=title, make="Chevrolet", model="Camaro", year=1969))
    return vehicle_id


def make_user(sessions, user_id="user_a", email="seller@example.com", name="Pat Seller") -> str:
    with transaction(sessions) as db:
        db.add(User(id=user_id, email=email, name=name))
    return user_id

def get_vehicle(sessions, vehicle_id) -> Vehicle:
    with transaction(sessions) as db:
        return db.get(Vehicle, vehicle_id)


async def create_event(client: httpx.AsyncClient, clock, name="Test Event", capacity=2, vendor_price=2500) -> str:
    r = await client.post("/admin/events", json={
        "name": name,
        "capacity": capacity,
        "vendor_price": vendor_price,
        "date": (clock.now() + timedelta(days=7)).isoformat(),
    })
    r.raise_for_status()
    return r.json()["id"]


async def create_vehicle(client: httpx.AsyncClient, user_id: str, title="1967 Mustang") -> str:
    r = await client.post("/admin/vehicles", json={"user_id": user_id, "title": title, "year": 1967})
    r.raise_for_status()
    return r.json()["id"]


async def reserve(client: httpx.AsyncClient, event_id: str, vehicle_id: str, user_id: str) -> httpx.Response:
    return await client.post("/registrations", json={
        "event_id": event_id, "vehicle_id": vehicle_id, "user_id": user_id,
    })


async def send_payment_outcome(client: httpx.AsyncClient, secret: str, registration_id: str,
                               outcome="succeeded", delivery_id=None, payment_id=None) -> httpx.Response:
    body, signature = sign_payment_notification({
        "id": delivery_id or f"evt_{uuid.uuid4().hex}",
        "type": f"payment.{outcome}",
        "registration_id": registration_id,
        "payment_id": payment_id or f"pi_{uuid.uuid4().hex[:12]}",
    }, secret)
    return await client.post(
        "/webhooks/payments",
        content=body,
        headers={"Content-Type": "application/json", "Processor-Signature": signature},
    )
