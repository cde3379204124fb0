"""Registration store: lookups and conditional writes over one session.

Every mutating method is a compare-and-swap: it names the state it expects
and reports whether the row was still in that state. Callers own the
transaction and decide what a lost swap means.
"""

from datetime import datetime

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from .models import (
    PAYMENT_COMPLETED,
    PAYMENT_FAILED,
    PAYMENT_PENDING,
    Event,
    Registration,
)


def _counts_against_capacity(now: datetime):
    return (
        Registration.payment_status.in_((PAYMENT_PENDING, PAYMENT_COMPLETED)),
        or_(Registration.expires_at.is_(None), Registration.expires_at > now),
    )


class RegistrationStore:
    def __init__(self, db: Session) -> None:
        self.db = db

    # --- reads ---

    def get(self, registration_id: str) -> Registration | None:
        return self.db.get(Registration, registration_id, populate_existing=True)

    def by_payment_reference(self, stripe_payment_id: str) -> Registration | None:
        return self.db.execute(
            select(Registration).where(Registration.stripe_payment_id == stripe_payment_id)
        ).scalars().first()

    def by_token(self, qr_code_data: str) -> Registration | None:
        return self.db.execute(
            select(Registration).where(Registration.qr_code_data == qr_code_data)
        ).scalar_one_or_none()

    def for_event(self, event_id: str) -> list[Registration]:
        return list(self.db.execute(
            select(Registration)
            .where(Registration.event_id == event_id)
            .order_by(Registration.created_at)
        ).scalars())

    def for_user(self, user_id: str) -> list[Registration]:
        return list(self.db.execute(
            select(Registration)
            .where(Registration.user_id == user_id)
            .order_by(Registration.created_at.desc())
        ).scalars())

    def for_vehicle(self, vehicle_id: str) -> list[Registration]:
        return list(self.db.execute(
            select(Registration)
            .where(Registration.vehicle_id == vehicle_id)
            .order_by(Registration.created_at.desc())
        ).scalars())

    def active_for_vehicle(self, event_id: str, vehicle_id: str, now: datetime) -> Registration | None:
        return self.db.execute(
            select(Registration)
            .where(
                Registration.event_id == event_id,
                Registration.vehicle_id == vehicle_id,
                *_counts_against_capacity(now),
            )
            .order_by(Registration.created_at.desc())
        ).scalars().first()

    def occupancy(self, event_id: str, now: datetime) -> int:
        return self.db.execute(
            select(func.count())
            .select_from(Registration)
            .where(Registration.event_id == event_id, *_counts_against_capacity(now))
        ).scalar_one()

    def expired_pending_ids(self, now: datetime, event_id: str | None = None) -> list[str]:
        q = select(Registration.id).where(
            Registration.payment_status == PAYMENT_PENDING,
            Registration.expires_at <= now,
        )
        if event_id is not None:
            q = q.where(Registration.event_id == event_id)
        return list(self.db.execute(q).scalars())

    def token_in_use(self, qr_code_data: str) -> bool:
        return self.db.execute(
            select(Registration.id).where(Registration.qr_code_data == qr_code_data)
        ).first() is not None

    # --- writes ---

    def add(self, registration: Registration) -> Registration:
        self.db.add(registration)
        self.db.flush()
        return registration

    def _swap(self, registration_id: str, expected, values: dict) -> bool:
        result = self.db.execute(
            update(Registration)
            .where(Registration.id == registration_id, *expected)
            .values(version=Registration.version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def complete(self, registration: Registration, stripe_payment_id: str | None, qr_code_data: str) -> bool:
        values = {
            "payment_status": PAYMENT_COMPLETED,
            "expires_at": None,
            "qr_code_data": qr_code_data,
        }
        if stripe_payment_id:
            values["stripe_payment_id"] = stripe_payment_id
        return self._swap(
            registration.id,
            (
                Registration.payment_status == PAYMENT_PENDING,
                Registration.version == registration.version,
            ),
            values,
        )

    def fail(self, registration: Registration) -> bool:
        return self._swap(
            registration.id,
            (
                Registration.payment_status == PAYMENT_PENDING,
                Registration.version == registration.version,
            ),
            {"payment_status": PAYMENT_FAILED, "expires_at": None},
        )

    def attach_payment(self, registration: Registration, stripe_payment_id: str) -> bool:
        return self._swap(
            registration.id,
            (
                Registration.payment_status == PAYMENT_PENDING,
                Registration.version == registration.version,
            ),
            {"stripe_payment_id": stripe_payment_id},
        )

    def reclaim(self, registration_id: str, now: datetime) -> bool:
        return self._swap(
            registration_id,
            (
                Registration.payment_status == PAYMENT_PENDING,
                Registration.expires_at <= now,
            ),
            {"payment_status": PAYMENT_FAILED, "expires_at": None},
        )

    def check_in(self, registration_id: str, by_user_id: str, at: datetime) -> bool:
        return self._swap(
            registration_id,
            (
                Registration.payment_status == PAYMENT_COMPLETED,
                Registration.checked_in.is_(False),
            ),
            {"checked_in": True, "checked_in_at": at, "checked_in_by": by_user_id},
        )

    def bump_admission(self, event: Event) -> bool:
        result = self.db.execute(
            update(Event)
            .where(Event.id == event.id, Event.admission_version == event.admission_version)
            .values(admission_version=Event.admission_version + 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
