from dataclasses import dataclass
from datetime import timedelta

from fastapi import Request
from sqlalchemy.orm import sessionmaker

from .analytics import AnalyticsCounter
from .capacity import CapacityReconciler
from .checkin import CheckInValidator
from .clock import Clock
from .config import Settings
from .notifications import ConfirmationNotifier, EmailSender
from .payments import PaymentBridge
from .processor import PaymentProcessorClient
from .sweeper import ExpirationSweeper


@dataclass
class Services:
    settings: Settings
    sessions: sessionmaker
    clock: Clock
    processor: PaymentProcessorClient
    notifier: ConfirmationNotifier
    capacity: CapacityReconciler
    payments: PaymentBridge
    sweeper: ExpirationSweeper
    checkin: CheckInValidator
    analytics: AnalyticsCounter

    def close(self) -> None:
        self.processor.close()


def build_services(
    sessions: sessionmaker,
    settings: Settings,
    clock: Clock | None = None,
    processor: PaymentProcessorClient | None = None,
    sender: EmailSender | None = None,
) -> Services:
    clock = clock or Clock()
    if processor is None:
        processor = PaymentProcessorClient(
            settings.PROCESSOR_URL,
            settings.PROCESSOR_API_KEY,
            currency=settings.CURRENCY,
            timeout=settings.PROCESSOR_TIMEOUT_SECONDS,
        )
    notifier = ConfirmationNotifier(sessions, sender or EmailSender(settings))
    retries = settings.MAX_WRITE_RETRIES
    return Services(
        settings=settings,
        sessions=sessions,
        clock=clock,
        processor=processor,
        notifier=notifier,
        capacity=CapacityReconciler(sessions, clock, timedelta(minutes=settings.HOLD_MINUTES), retries),
        payments=PaymentBridge(sessions, clock, settings.CHECKIN_SIGNING_SECRET, processor, retries, notifier),
        sweeper=ExpirationSweeper(sessions, clock),
        checkin=CheckInValidator(sessions, clock),
        analytics=AnalyticsCounter(sessions, retries),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_redis(request: Request):
    return request.app.state.redis
