"""Check-in validator: one-time redemption of a paid registration's token."""

import logging
from dataclasses import dataclass, field

from sqlalchemy.orm import sessionmaker

from .clock import Clock
from .db import transaction
from .errors import AlreadyCheckedInError, NotEligibleError, NotFoundError
from .models import PAYMENT_COMPLETED, Event, Registration, Vehicle
from .store import RegistrationStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckInPreview:
    registration: Registration
    event: Event | None
    vehicle: Vehicle | None

    @property
    def already_checked_in(self) -> bool:
        return self.registration.checked_in


@dataclass(frozen=True)
class SheetRow:
    registration_id: str
    user_id: str
    vehicle_id: str
    vehicle_title: str
    vehicle_year: int
    vehicle_make: str
    vehicle_model: str
    vin: str
    checked_in: bool
    qr_code_data: str


@dataclass(frozen=True)
class CheckInSheet:
    event: Event
    rows: list[SheetRow] = field(default_factory=list)


class CheckInValidator:
    def __init__(self, sessions: sessionmaker, clock: Clock) -> None:
        self._sessions = sessions
        self._clock = clock

    def check_in(self, qr_code_data: str, by_user_id: str) -> Registration:
        """Redeem a token exactly once.

        Raises:
            NotFoundError: no registration carries the token.
            NotEligibleError: the registration is not paid.
            AlreadyCheckedInError: the token was already redeemed, including
                by a concurrent scan that won the conditional write.
        """
        with transaction(self._sessions) as db:
            store = RegistrationStore(db)
            registration = store.by_token(qr_code_data)
            if registration is None:
                raise NotFoundError("Registration")
            if registration.payment_status != PAYMENT_COMPLETED:
                raise NotEligibleError()
            if registration.checked_in:
                raise AlreadyCheckedInError()

            # completed is terminal, so a lost swap can only mean another scan won
            if not store.check_in(registration.id, by_user_id, self._clock.now()):
                logger.warning("concurrent check-in lost for registration %s", registration.id)
                raise AlreadyCheckedInError()

            logger.info("registration %s checked in by %s", registration.id, by_user_id)
            return store.get(registration.id)

    def preview(self, qr_code_data: str) -> CheckInPreview:
        with transaction(self._sessions) as db:
            registration = RegistrationStore(db).by_token(qr_code_data)
            if registration is None or registration.payment_status != PAYMENT_COMPLETED:
                raise NotFoundError("Registration")
            return CheckInPreview(
                registration=registration,
                event=db.get(Event, registration.event_id),
                vehicle=db.get(Vehicle, registration.vehicle_id),
            )

    def sheet(self, event_id: str) -> CheckInSheet:
        with transaction(self._sessions) as db:
            event = db.get(Event, event_id)
            if event is None:
                raise NotFoundError("Event")

            rows = []
            for reg in RegistrationStore(db).for_event(event_id):
                if reg.payment_status != PAYMENT_COMPLETED:
                    continue
                vehicle = db.get(Vehicle, reg.vehicle_id)
                rows.append(SheetRow(
                    registration_id=reg.id,
                    user_id=reg.user_id,
                    vehicle_id=reg.vehicle_id,
                    vehicle_title=vehicle.title if vehicle else "",
                    vehicle_year=vehicle.year if vehicle else 0,
                    vehicle_make=vehicle.make if vehicle else "",
                    vehicle_model=vehicle.model if vehicle else "",
                    vin=(vehicle.vin or "") if vehicle else "",
                    checked_in=reg.checked_in,
                    qr_code_data=reg.qr_code_data or "",
                ))
            return CheckInSheet(event=event, rows=rows)
