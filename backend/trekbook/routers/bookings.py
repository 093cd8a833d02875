import re
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import get_settings
from ..deps import get_admin_role, get_current_user_id, get_notification_sink, get_session
from ..domain.errors import DomainError
from ..infrastructure.repositories import SqlAlchemyBookingRepository, SqlAlchemyUnitOfWork
from ..models import BookingStatus, UserRole
from ..notifications import NotificationSink
from ..schemas import BookingCreate, BookingRead, BookingTransition, PaymentStatusUpdate, SubRecordGapRead
from ..usecases import bookings as booking_usecase
from .errors import to_http_exception

router = APIRouter(prefix="", tags=["bookings"])

_ETAG_RE = re.compile(r'^(?:W/)?"(\d+)"$')


def _extract_version(if_match: Optional[str], payload: Optional[BookingTransition]) -> int:
    """Take the expected version from If-Match, falling back to the body."""
    if if_match is not None:
        match = _ETAG_RE.match(if_match.strip())
        if match is None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid If-Match header")
        version = int(match.group(1))
    elif payload is not None and payload.version is not None:
        version = payload.version
    else:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="version required")
    if version < 1:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="version must be >= 1")
    return version


@router.post("/bookings", response_model=BookingRead, status_code=status.HTTP_201_CREATED)
async def create_booking(
    payload: BookingCreate,
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
    sink: NotificationSink = Depends(get_notification_sink),
) -> BookingRead:
    uow = SqlAlchemyUnitOfWork(session)
    try:
        booking = await booking_usecase.create_booking(
            uow,
            sink,
            request=payload,
            user_id=user_id,
            gst_rate_percent=get_settings().gst_rate_percent,
        )
    except DomainError as exc:
        raise to_http_exception(exc) from exc
    return BookingRead.from_db(booking=booking)


@router.get("/me/bookings", response_model=List[BookingRead])
async def list_my_bookings(
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
) -> list[BookingRead]:
    repo = SqlAlchemyBookingRepository(session)
    rows = await booking_usecase.list_user_bookings(repo, user_id=user_id)
    return [BookingRead.from_db(booking=booking) for booking in rows]


@router.get("/me/bookings/{booking_id}", response_model=BookingRead)
async def get_my_booking(
    booking_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
) -> BookingRead:
    repo = SqlAlchemyBookingRepository(session)
    booking = await booking_usecase.get_user_booking(repo, booking_id=booking_id, user_id=user_id)
    if booking is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="booking not found")
    return BookingRead.from_db(booking=booking)


@router.post("/me/bookings/{booking_id}/cancel", response_model=BookingRead)
async def cancel_my_booking(
    booking_id: int = Path(..., ge=1),
    payload: Optional[BookingTransition] = None,
    if_match: Optional[str] = Header(default=None),
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
    sink: NotificationSink = Depends(get_notification_sink),
) -> BookingRead:
    version = _extract_version(if_match, payload)
    try:
        booking = await booking_usecase.cancel_own_booking(
            SqlAlchemyUnitOfWork(session),
            sink,
            booking_id=booking_id,
            user_id=user_id,
            version=version,
        )
    except DomainError as exc:
        raise to_http_exception(exc) from exc
    return BookingRead.from_db(booking=booking)


@router.get("/admin/bookings", response_model=List[BookingRead])
async def list_bookings(
    status_filter: Optional[BookingStatus] = Query(default=None, alias="status"),
    session: AsyncSession = Depends(get_session),
    _: UserRole = Depends(get_admin_role),
) -> list[BookingRead]:
    repo = SqlAlchemyBookingRepository(session)
    rows = await booking_usecase.list_bookings(repo, status=status_filter)
    return [BookingRead.from_db(booking=booking) for booking in rows]


@router.get("/admin/bookings/{booking_id}", response_model=BookingRead)
async def get_booking(
    booking_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
    _: UserRole = Depends(get_admin_role),
) -> BookingRead:
    try:
        booking = await booking_usecase.get_booking(SqlAlchemyBookingRepository(session), booking_id=booking_id)
    except DomainError as exc:
        raise to_http_exception(exc) from exc
    return BookingRead.from_db(booking=booking)


async def _admin_transition(
    action: str,
    *,
    booking_id: int,
    version: int,
    session: AsyncSession,
    role: UserRole,
    sink: NotificationSink,
) -> BookingRead:
    handler = {
        "approve": booking_usecase.approve_booking,
        "reject": booking_usecase.reject_booking,
        "cancel": booking_usecase.cancel_booking,
        "complete": booking_usecase.complete_booking,
    }[action]
    try:
        booking = await handler(
            SqlAlchemyUnitOfWork(session),
            sink,
            booking_id=booking_id,
            actor_role=role,
            version=version,
        )
    except DomainError as exc:
        raise to_http_exception(exc) from exc
    return BookingRead.from_db(booking=booking)


@router.post("/admin/bookings/{booking_id}/payment", response_model=BookingRead)
async def update_payment(
    payload: PaymentStatusUpdate,
    booking_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
    role: UserRole = Depends(get_admin_role),
    sink: NotificationSink = Depends(get_notification_sink),
) -> BookingRead:
    try:
        booking = await booking_usecase.update_payment_status(
            SqlAlchemyUnitOfWork(session),
            sink,
            booking_id=booking_id,
            payment_status=payload.payment_status,
            actor_role=role,
            version=payload.version,
        )
    except DomainError as exc:
        raise to_http_exception(exc) from exc
    return BookingRead.from_db(booking=booking)


@router.post("/admin/bookings/repair", response_model=List[SubRecordGapRead])
async def repair_sub_records(
    session: AsyncSession = Depends(get_session),
    _: UserRole = Depends(get_admin_role),
) -> list[SubRecordGapRead]:
    gaps = await booking_usecase.repair_sub_records(SqlAlchemyUnitOfWork(session))
    return [
        SubRecordGapRead(
            booking_id=gap.booking_id,
            expected_records=gap.expected_records,
            actual_records=gap.actual_records,
            repaired=gap.repaired,
        )
        for gap in gaps
    ]


@router.post("/admin/bookings/{booking_id}/{action}", response_model=BookingRead)
async def transition_booking(
    action: str = Path(..., pattern="^(approve|reject|cancel|complete)$"),
    booking_id: int = Path(..., ge=1),
    payload: Optional[BookingTransition] = None,
    if_match: Optional[str] = Header(default=None),
    session: AsyncSession = Depends(get_session),
    role: UserRole = Depends(get_admin_role),
    sink: NotificationSink = Depends(get_notification_sink),
) -> BookingRead:
    version = _extract_version(if_match, payload)
    return await _admin_transition(
        action,
        booking_id=booking_id,
        version=version,
        session=session,
        role=role,
        sink=sink,
    )
