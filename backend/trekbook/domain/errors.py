"""Domain error codes for slot admission, vouchers and the booking lifecycle."""

from enum import Enum


class ErrorCode(Enum):
    """Domain error codes."""

    SLOT_UNAVAILABLE = "SLOT_UNAVAILABLE"
    SLOT_NOT_FOUND = "SLOT_NOT_FOUND"
    CAPACITY_EXCEEDED = "CAPACITY_EXCEEDED"
    INVALID_PARTICIPANTS = "INVALID_PARTICIPANTS"
    VOUCHER_INVALID = "VOUCHER_INVALID"
    VOUCHER_ALREADY_CONSUMED = "VOUCHER_ALREADY_CONSUMED"
    PERSISTENCE_FAILURE = "PERSISTENCE_FAILURE"
    SUB_RECORD_WRITE_FAILURE = "SUB_RECORD_WRITE_FAILURE"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    BOOKING_NOT_FOUND = "BOOKING_NOT_FOUND"
    BOOKING_CANCELLED = "BOOKING_CANCELLED"
    VOUCHER_NOT_FOUND = "VOUCHER_NOT_FOUND"
    TREK_NOT_FOUND = "TREK_NOT_FOUND"
    VERSION_CONFLICT = "VERSION_CONFLICT"
    PERMISSION_DENIED = "PERMISSION_DENIED"


class DomainError(Exception):
    """Base domain error with code and user-safe message."""

    code: ErrorCode = ErrorCode.PERSISTENCE_FAILURE

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class SlotUnavailableError(DomainError):
    """Raised when no open slot exists for a trek and date."""

    code = ErrorCode.SLOT_UNAVAILABLE


class SlotNotFoundError(DomainError):
    code = ErrorCode.SLOT_NOT_FOUND


class CapacityExceededError(DomainError):
    """Raised when reconciliation refused the booking's seats."""

    code = ErrorCode.CAPACITY_EXCEEDED


class InvalidParticipantsError(DomainError):
    code = ErrorCode.INVALID_PARTICIPANTS


class VoucherInvalidError(DomainError):
    """A voucher failed validation. Booking creation continues at full price."""

    code = ErrorCode.VOUCHER_INVALID


class VoucherAlreadyConsumedError(DomainError):
    """The conditional consume lost against another booking."""

    code = ErrorCode.VOUCHER_ALREADY_CONSUMED


class PersistenceFailureError(DomainError):
    code = ErrorCode.PERSISTENCE_FAILURE


class SubRecordWriteFailure(DomainError):
    """Participant rows could not be written. Logged; the booking stands."""

    code = ErrorCode.SUB_RECORD_WRITE_FAILURE


class InvalidTransitionError(DomainError):
    code = ErrorCode.INVALID_TRANSITION


class BookingNotFoundError(DomainError):
    code = ErrorCode.BOOKING_NOT_FOUND


class BookingCancelledError(DomainError):
    """The booking was cancelled by another actor before creation finished."""

    code = ErrorCode.BOOKING_CANCELLED


class TrekNotFoundError(DomainError):
    code = ErrorCode.TREK_NOT_FOUND


class VoucherNotFoundError(DomainError):
    code = ErrorCode.VOUCHER_NOT_FOUND


class VersionConflictError(DomainError):
    code = ErrorCode.VERSION_CONFLICT


class PermissionDeniedError(DomainError):
    code = ErrorCode.PERMISSION_DENIED
