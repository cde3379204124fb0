"""Vehicle listing collaborator used by the payment bridge."""

import logging

from sqlalchemy import update
from sqlalchemy.orm import Session

from .errors import NotFoundError
from .models import Vehicle

logger = logging.getLogger(__name__)


class VehicleGateway:
    """Writes listing status on the caller's session, inside its transaction."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def get(self, vehicle_id: str) -> Vehicle:
        vehicle = self.db.get(Vehicle, vehicle_id, populate_existing=True)
        if vehicle is None:
            raise NotFoundError("Vehicle")
        return vehicle

    def _set(self, vehicle_id: str, **values) -> None:
        result = self.db.execute(
            update(Vehicle)
            .where(Vehicle.id == vehicle_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise NotFoundError("Vehicle")

    def update_sale_status(self, vehicle_id: str, status: str) -> None:
        self._set(vehicle_id, sale_status=status)
        logger.info("vehicle %s sale_status=%s", vehicle_id, status)

    def update_payment_status(self, vehicle_id: str, status: str) -> None:
        self._set(vehicle_id, payment_status=status)
        logger.info("vehicle %s payment_status=%s", vehicle_id, status)
