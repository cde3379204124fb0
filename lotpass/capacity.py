"""Capacity reconciler: admission of pending registrations against event capacity.

Capacity is a hard limit. Every successful admission bumps
``events.admission_version`` with a compare-and-swap, so two admissions that
counted occupancy from the same version cannot both commit; the loser reruns
and sees the winner's row. Expired holds on the event are failed inside the
admitting transaction before occupancy is counted.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.orm import Session, sessionmaker

from .clock import Clock
from .db import SwapLost, run_unit_of_work, transaction
from .errors import (
    AlreadyRegisteredError,
    CapacityExceededError,
    EventNotUpcomingError,
    NotFoundError,
)
from .models import PAYMENT_COMPLETED, PAYMENT_PENDING, Event, Registration, Vehicle, new_id
from .store import RegistrationStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Admission:
    event: Event
    occupancy: int

    @property
    def remaining(self) -> int:
        return max(self.event.capacity - self.occupancy, 0)


class CapacityReconciler:
    def __init__(
        self,
        sessions: sessionmaker,
        clock: Clock,
        hold_duration: timedelta,
        max_retries: int = 5,
    ) -> None:
        self._sessions = sessions
        self._clock = clock
        self._hold = hold_duration
        self._max_retries = max_retries

    def _load_upcoming_event(self, db: Session, event_id: str, now: datetime) -> Event:
        event = db.get(Event, event_id, populate_existing=True)
        if event is None:
            raise NotFoundError("Event")
        if event.date <= now:
            raise EventNotUpcomingError()
        return event

    def _admit(self, db: Session, event_id: str, now: datetime) -> Admission:
        # event (and its admission_version) must be read before counting
        event = self._load_upcoming_event(db, event_id, now)
        occupancy = RegistrationStore(db).occupancy(event_id, now)
        if occupancy >= event.capacity:
            raise CapacityExceededError()
        return Admission(event=event, occupancy=occupancy)

    def admit(self, event_id: str, vehicle_id: str) -> Admission:
        """Check whether a new reservation for ``vehicle_id`` would be admitted now."""
        with transaction(self._sessions) as db:
            now = self._clock.now()
            self._load_upcoming_event(db, event_id, now)
            existing = RegistrationStore(db).active_for_vehicle(event_id, vehicle_id, now)
            if existing is not None and existing.payment_status == PAYMENT_COMPLETED:
                raise AlreadyRegisteredError()
            return self._admit(db, event_id, now)

    def reserve(self, event_id: str, vehicle_id: str, user_id: str) -> Registration:
        """Admit and insert a pending registration as one unit of work.

        A vehicle that already holds an unexpired pending reservation for the
        event gets that reservation back unchanged.
        """

        def work(db: Session) -> Registration:
            store = RegistrationStore(db)
            now = self._clock.now()
            vehicle = db.get(Vehicle, vehicle_id)
            if vehicle is None or vehicle.user_id != user_id:
                raise NotFoundError("Vehicle")
            self._load_upcoming_event(db, event_id, now)

            # a seat freed by expiry is handed out only after its hold is failed,
            # so a late payment for that hold cannot complete on top of the new one
            for expired_id in store.expired_pending_ids(now, event_id):
                if store.reclaim(expired_id, now):
                    logger.info("reclaimed expired registration %s before admission", expired_id)

            existing = store.active_for_vehicle(event_id, vehicle_id, now)
            if existing is not None:
                if existing.payment_status == PAYMENT_COMPLETED:
                    raise AlreadyRegisteredError()
                logger.info("reusing pending registration %s for vehicle %s", existing.id, vehicle_id)
                return existing

            admission = self._admit(db, event_id, now)
            registration = store.add(Registration(
                id=new_id("reg"),
                event_id=event_id,
                vehicle_id=vehicle_id,
                user_id=user_id,
                payment_status=PAYMENT_PENDING,
                checked_in=False,
                expires_at=now + self._hold,
                created_at=now,
                version=0,
            ))
            if not store.bump_admission(admission.event):
                raise SwapLost()
            logger.info(
                "reserved %s on event %s (%d/%d)",
                registration.id, event_id, admission.occupancy + 1, admission.event.capacity,
            )
            return registration

        return run_unit_of_work(self._sessions, work, self._max_retries)

    def occupancy(self, event_id: str) -> Admission:
        with transaction(self._sessions) as db:
            event = db.get(Event, event_id)
            if event is None:
                raise NotFoundError("Event")
            return Admission(event=event, occupancy=RegistrationStore(db).occupancy(event_id, self._clock.now()))
