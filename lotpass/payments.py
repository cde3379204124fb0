"""Payment bridge: applies processor outcomes to registrations.

Processors retry notifications, so outcomes are applied at-least-once. The
first transition out of ``pending`` wins, whether it came from here or from
the expiration sweeper; later notifications never move a settled row.
"""

import logging
from dataclasses import dataclass

from sqlalchemy.orm import Session, sessionmaker

from .clock import Clock
from .db import SwapLost, run_unit_of_work, transaction
from .errors import (
    AlreadyResolvedError,
    InvalidAmountError,
    NotEligibleError,
    NotFoundError,
)
from .models import (
    PAYMENT_COMPLETED,
    PAYMENT_FAILED,
    PAYMENT_PENDING,
    SALE_AVAILABLE,
    Event,
    Registration,
)
from .notifications import ConfirmationNotifier
from .processor import PaymentIntent, PaymentProcessorClient
from .security import mint_checkin_token
from .store import RegistrationStore
from .vehicles import VehicleGateway

logger = logging.getLogger(__name__)

SUCCEEDED = "succeeded"
FAILED = "failed"
OUTCOME_STATUS = {SUCCEEDED: PAYMENT_COMPLETED, FAILED: PAYMENT_FAILED}

APPLIED = "applied"
NOOP = "noop"
ALREADY_RESOLVED = "already_resolved"

TOKEN_ATTEMPTS = 5


@dataclass(frozen=True)
class OutcomeResult:
    registration: Registration
    result: str
    detail: str | None = None


class PaymentBridge:
    def __init__(
        self,
        sessions: sessionmaker,
        clock: Clock,
        token_secret: str,
        processor: PaymentProcessorClient | None = None,
        max_retries: int = 5,
        notifier: ConfirmationNotifier | None = None,
    ) -> None:
        self._sessions = sessions
        self._clock = clock
        self._token_secret = token_secret
        self._processor = processor
        self._max_retries = max_retries
        self._notifier = notifier

    @staticmethod
    def _find(store: RegistrationStore, registration_id: str | None, stripe_payment_id: str | None) -> Registration:
        registration = None
        if registration_id:
            registration = store.get(registration_id)
        elif stripe_payment_id:
            registration = store.by_payment_reference(stripe_payment_id)
        if registration is None:
            raise NotFoundError("Registration")
        return registration

    def _new_token(self, store: RegistrationStore, registration: Registration) -> str:
        for _ in range(TOKEN_ATTEMPTS):
            token = mint_checkin_token(
                registration.id, registration.event_id, registration.vehicle_id, self._token_secret
            )
            if not store.token_in_use(token):
                return token
        # the unique constraint still guards the write; rerun the unit of work
        raise SwapLost()

    def _complete(self, db: Session, store: RegistrationStore, registration: Registration, stripe_payment_id: str | None) -> None:
        token = registration.qr_code_data or self._new_token(store, registration)
        if not store.complete(registration, stripe_payment_id, token):
            raise SwapLost()

        vehicles = VehicleGateway(db)
        try:
            vehicle = vehicles.get(registration.vehicle_id)
        except NotFoundError:
            logger.error(
                "registration %s paid but vehicle %s is missing; listing not updated",
                registration.id, registration.vehicle_id,
            )
            return
        vehicles.update_payment_status(vehicle.id, PAYMENT_COMPLETED)
        if vehicle.sale_status is None:
            vehicles.update_sale_status(vehicle.id, SALE_AVAILABLE)

    def apply_outcome(
        self,
        outcome: str,
        registration_id: str | None = None,
        stripe_payment_id: str | None = None,
    ) -> OutcomeResult:
        if outcome not in OUTCOME_STATUS:
            raise ValueError(f"unknown payment outcome {outcome!r}")
        target = OUTCOME_STATUS[outcome]

        def work(db: Session) -> OutcomeResult:
            store = RegistrationStore(db)
            registration = self._find(store, registration_id, stripe_payment_id)

            if registration.payment_status != PAYMENT_PENDING:
                if registration.payment_status == target:
                    logger.info("duplicate %s notification for %s, skipping", outcome, registration.id)
                    return OutcomeResult(registration, NOOP)
                anomaly = AlreadyResolvedError(registration.payment_status)
                logger.warning("%s (registration=%s, outcome=%s)", anomaly, registration.id, outcome)
                return OutcomeResult(registration, ALREADY_RESOLVED, anomaly.message)

            if outcome == SUCCEEDED:
                self._complete(db, store, registration, stripe_payment_id)
            elif not store.fail(registration):
                raise SwapLost()

            logger.info("registration %s payment %s", registration.id, target)
            return OutcomeResult(store.get(registration.id), APPLIED)

        result = run_unit_of_work(self._sessions, work, self._max_retries, retry_integrity=True)
        if outcome == SUCCEEDED and result.result == APPLIED:
            self._confirm(result.registration.id)
        return result

    def _confirm(self, registration_id: str) -> None:
        # runs after the completion committed; delivery problems never undo it
        if self._notifier is None:
            return
        try:
            if not self._notifier.send_confirmation(registration_id):
                logger.warning("confirmation for %s was not delivered", registration_id)
        except Exception:
            logger.exception("confirmation for %s failed", registration_id)

    def start_payment(self, registration_id: str, user_id: str, amount: int) -> tuple[Registration, PaymentIntent]:
        """Create a processor intent for a pending registration and record its reference."""
        if self._processor is None:
            raise RuntimeError("no payment processor configured")

        with transaction(self._sessions) as db:
            registration = RegistrationStore(db).get(registration_id)
            if registration is None or registration.user_id != user_id:
                raise NotFoundError("Registration")
            if registration.payment_status != PAYMENT_PENDING:
                raise NotEligibleError("Registration is already paid or failed")
            if registration.expires_at <= self._clock.now():
                raise NotEligibleError("Registration hold has expired")
            event = db.get(Event, registration.event_id)
            if event is None:
                raise NotFoundError("Event")
            if amount != event.vendor_price:
                raise InvalidAmountError()

        intent = self._processor.create_intent(
            amount,
            metadata={
                "registration_id": registration.id,
                "event_id": registration.event_id,
                "vehicle_id": registration.vehicle_id,
                "user_id": registration.user_id,
            },
            idempotency_key=f"registration:{registration.id}",
        )

        def work(db: Session) -> Registration:
            store = RegistrationStore(db)
            current = store.get(registration_id)
            if current is None or current.payment_status != PAYMENT_PENDING:
                raise NotEligibleError("Registration is already paid or failed")
            if not store.attach_payment(current, intent.id):
                raise SwapLost()
            return store.get(registration_id)

        updated = run_unit_of_work(self._sessions, work, self._max_retries)
        logger.info("payment %s started for registration %s", intent.id, registration_id)
        return updated, intent
