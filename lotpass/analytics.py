"""Per-vehicle view and share counters."""

from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from .db import run_unit_of_work, transaction
from .models import VehicleAnalytics

COUNTERS = ("views", "shares")


class AnalyticsCounter:
    def __init__(self, sessions: sessionmaker, max_retries: int = 5) -> None:
        self._sessions = sessions
        self._max_retries = max_retries

    def increment(self, vehicle_id: str, counter: str) -> None:
        """Add one to ``counter`` without a read-modify-write round trip.

        The row is created on first use; if two first increments race, the
        loser hits the unique vehicle_id and reruns as an UPDATE.
        """
        if counter not in COUNTERS:
            raise ValueError(f"unknown counter {counter!r}")
        column = getattr(VehicleAnalytics, counter)

        def work(db: Session) -> None:
            result = db.execute(
                update(VehicleAnalytics)
                .where(VehicleAnalytics.vehicle_id == vehicle_id)
                .values({column: column + 1})
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                row = VehicleAnalytics(vehicle_id=vehicle_id, views=0, shares=0)
                setattr(row, counter, 1)
                db.add(row)
                db.flush()

        run_unit_of_work(self._sessions, work, self._max_retries, retry_integrity=True)

    def get(self, vehicle_id: str) -> dict:
        with transaction(self._sessions) as db:
            row = db.execute(
                select(VehicleAnalytics).where(VehicleAnalytics.vehicle_id == vehicle_id)
            ).scalar_one_or_none()
            if row is None:
                return {"views": 0, "shares": 0}
            return {"views": row.views, "shares": row.shares}
