from fastapi import HTTPException, status

from ..domain.errors import DomainError, ErrorCode

_STATUS_BY_CODE = {
    ErrorCode.SLOT_UNAVAILABLE: status.HTTP_404_NOT_FOUND,
    ErrorCode.SLOT_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.BOOKING_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.TREK_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.VOUCHER_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.CAPACITY_EXCEEDED: status.HTTP_409_CONFLICT,
    ErrorCode.VOUCHER_ALREADY_CONSUMED: status.HTTP_409_CONFLICT,
    ErrorCode.INVALID_TRANSITION: status.HTTP_409_CONFLICT,
    ErrorCode.VERSION_CONFLICT: status.HTTP_409_CONFLICT,
    ErrorCode.BOOKING_CANCELLED: status.HTTP_409_CONFLICT,
    ErrorCode.INVALID_PARTICIPANTS: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.VOUCHER_INVALID: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.PERMISSION_DENIED: status.HTTP_403_FORBIDDEN,
    ErrorCode.PERSISTENCE_FAILURE: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def to_http_exception(exc: DomainError) -> HTTPException:
    """Map a domain error to its HTTP status with a structured detail body."""
    return HTTPException(
        status_code=_STATUS_BY_CODE.get(exc.code, status.HTTP_500_INTERNAL_SERVER_ERROR),
        detail={"code": exc.code.value, "message": exc.message},
    )
