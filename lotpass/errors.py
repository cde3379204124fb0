"""Domain error codes for the registration lifecycle."""

from dataclasses import dataclass
from enum import Enum


class ErrorCode(Enum):
    """Domain error codes."""

    NOT_FOUND = "NOT_FOUND"
    EVENT_NOT_UPCOMING = "EVENT_NOT_UPCOMING"
    CAPACITY_EXCEEDED = "CAPACITY_EXCEEDED"
    ALREADY_REGISTERED = "ALREADY_REGISTERED"
    ALREADY_RESOLVED = "ALREADY_RESOLVED"
    ALREADY_CHECKED_IN = "ALREADY_CHECKED_IN"
    NOT_ELIGIBLE = "NOT_ELIGIBLE"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    CONCURRENCY_CONFLICT = "CONCURRENCY_CONFLICT"
    PAYMENT_PROCESSOR_ERROR = "PAYMENT_PROCESSOR_ERROR"


@dataclass(frozen=True)
class DomainError(Exception):
    """Base domain error with code and user-safe message."""

    code: ErrorCode
    message: str

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class NotFoundError(DomainError):
    """Raised when a referenced entity does not exist."""

    def __init__(self, entity: str) -> None:
        super().__init__(code=ErrorCode.NOT_FOUND, message=f"{entity} not found")


class EventNotUpcomingError(DomainError):
    def __init__(self) -> None:
        super().__init__(
            code=ErrorCode.EVENT_NOT_UPCOMING,
            message="Cannot register for past events",
        )


class CapacityExceededError(DomainError):
    def __init__(self) -> None:
        super().__init__(code=ErrorCode.CAPACITY_EXCEEDED, message="Event is full")


class AlreadyRegisteredError(DomainError):
    def __init__(self) -> None:
        super().__init__(
            code=ErrorCode.ALREADY_REGISTERED,
            message="Vehicle is already registered for this event",
        )


class AlreadyResolvedError(DomainError):
    """A payment outcome contradicts the registration's settled status."""

    def __init__(self, status: str) -> None:
        super().__init__(
            code=ErrorCode.ALREADY_RESOLVED,
            message=f"Registration payment already {status}",
        )


class AlreadyCheckedInError(DomainError):
    def __init__(self) -> None:
        super().__init__(
            code=ErrorCode.ALREADY_CHECKED_IN,
            message="Registration is already checked in",
        )


class NotEligibleError(DomainError):
    def __init__(self, message: str = "Registration is not paid") -> None:
        super().__init__(code=ErrorCode.NOT_ELIGIBLE, message=message)


class InvalidAmountError(DomainError):
    def __init__(self) -> None:
        super().__init__(
            code=ErrorCode.INVALID_AMOUNT,
            message="Amount does not match event vendor price",
        )


class InvalidSignatureError(DomainError):
    def __init__(self) -> None:
        super().__init__(
            code=ErrorCode.INVALID_SIGNATURE,
            message="Notification signature could not be verified",
        )


class ConcurrencyConflictError(DomainError):
    """Raised when a conditional write keeps losing to concurrent writers."""

    def __init__(self) -> None:
        super().__init__(
            code=ErrorCode.CONCURRENCY_CONFLICT,
            message="Concurrent update, retry the request",
        )


class PaymentProcessorError(DomainError):
    def __init__(self, message: str = "Payment processor request failed") -> None:
        super().__init__(code=ErrorCode.PAYMENT_PROCESSOR_ERROR, message=message)
