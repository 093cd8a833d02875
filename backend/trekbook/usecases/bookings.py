from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from ..domain.errors import (
    BookingCancelledError,
    BookingNotFoundError,
    CapacityExceededError,
    DomainError,
    InvalidTransitionError,
    PermissionDeniedError,
    PersistenceFailureError,
    SlotUnavailableError,
    SubRecordWriteFailure,
    TrekNotFoundError,
    VersionConflictError,
    VoucherAlreadyConsumedError,
    VoucherInvalidError,
)
from ..domain.pricing import Pricing, VoucherQuote, compute_pricing
from ..domain.repositories import BookingRepository, UnitOfWork
from ..domain.services import (
    SlotSnapshot,
    ensure_payment_transition,
    ensure_transition,
    validate_admission,
    validate_participants,
)
from ..models import (
    Booking,
    BookingParticipant,
    BookingStatus,
    CancellationReason,
    PaymentStatus,
    Slot,
    UserRole,
    Voucher,
)
from ..notifications import BookingEvent, BookingEventType, NotificationSink, publish
from ..schemas import BookingCreate, ParticipantDetail
from ..utils.audit_log import AuditInitiator, emit_audit_log
from ..utils.time import age_on, today_ist, utc_now_naive
from . import slots as slot_usecase
from . import vouchers as voucher_usecase

logger = logging.getLogger(__name__)

# Reasons reconcile itself records when it refuses a provisional booking.
_ADMISSION_REASONS = frozenset({CancellationReason.CAPACITY_EXCEEDED, CancellationReason.SLOT_CLOSED})
# Leaving the seat-holding statuses requires a recount of the slot.
_SEAT_RELEASING_STATUSES = frozenset({BookingStatus.CANCELLED, BookingStatus.COMPLETED})


@dataclass(frozen=True)
class SubRecordGap:
    booking_id: int
    expected_records: int
    actual_records: int
    repaired: bool


def _new_booking(request: BookingCreate, *, user_id: int, slot: Slot, pricing: Pricing, now: datetime) -> Booking:
    primary: Optional[ParticipantDetail] = request.participants_details[0] if request.participants_details else None
    health = request.health_fitness
    travel = request.travel_preferences
    return Booking(
        user_id=user_id,
        slot_id=slot.id,
        trek_slug=slot.trek_slug,
        booking_date=slot.departure_date,
        participants=request.participants,
        base_amount=pricing.base_amount,
        gst_amount=pricing.gst_amount,
        voucher_discount=pricing.voucher_discount,
        total_amount=pricing.total_amount,
        voucher_id=None,
        status=BookingStatus.PENDING_APPROVAL,
        payment_status=PaymentStatus.NOT_REQUIRED,
        cancellation_reason=None,
        admitted_at=None,
        sub_records_complete=True,
        expected_participant_records=len(request.participants_details),
        version=1,
        customer_name=primary.full_name if primary else None,
        customer_email=primary.email_address if primary else None,
        customer_phone=primary.contact_number if primary else None,
        emergency_contact_name=health.emergency_contact_name,
        emergency_contact_phone=health.emergency_contact_phone,
        medical_conditions=health.medical_conditions,
        current_medications=health.current_medications,
        trekking_experience=health.trekking_experience,
        fitness_consent=health.fitness_consent,
        needs_transportation=travel.needs_transportation,
        pickup_point=travel.pickup_point,
        special_requirements=request.special_requirements or travel.special_requirements,
        terms_accepted=request.legal_consent.terms_accepted,
        liability_waiver_accepted=request.legal_consent.liability_waiver_accepted,
        trek_gear_rental=request.optional_addons.trek_gear_rental,
        porter_services=request.optional_addons.porter_services,
        created_at=now,
        updated_at=now,
    )


def _participant_records(booking_id: int, details: List[ParticipantDetail]) -> List[BookingParticipant]:
    today = today_ist()
    return [
        BookingParticipant(
            booking_id=booking_id,
            full_name=detail.full_name,
            age=age_on(detail.date_of_birth, today) if detail.date_of_birth else None,
            gender=detail.gender,
            contact_number=detail.contact_number,
            email_address=detail.email_address,
        )
        for detail in details
    ]


async def _cancel_and_reconcile(uow: UnitOfWork, booking_id: int, reason: CancellationReason) -> Optional[Booking]:
    async with uow.transaction():
        booking = await uow.bookings.get(booking_id)
        if booking is None:
            return None
        await uow.slots.get_for_update(booking.slot_id)
        booking = await uow.bookings.get_for_update(booking_id)
        if booking is None:
            return None
        if booking.status != BookingStatus.CANCELLED:
            booking.status = BookingStatus.CANCELLED
            booking.cancellation_reason = reason
            booking.version += 1
            booking.updated_at = utc_now_naive()
            await uow.bookings.save(booking)
        await slot_usecase.reconcile_locked(uow, booking.slot_id)
    return booking


def _cancellation_error(booking: Booking) -> DomainError:
    reason = booking.cancellation_reason
    if reason == CancellationReason.CAPACITY_EXCEEDED:
        return CapacityExceededError("not enough seats left on this departure")
    if reason == CancellationReason.SLOT_CLOSED:
        return SlotUnavailableError("selected date is no longer available for booking")
    if reason == CancellationReason.VOUCHER_ALREADY_CONSUMED:
        return VoucherAlreadyConsumedError("this voucher has already been used")
    detail = reason.value if reason is not None else "cancelled"
    return BookingCancelledError(f"booking {booking.id} was cancelled ({detail})")


async def _quote(
    uow: UnitOfWork, *, code: str, amount: int, user_id: int, booking_id: int
) -> Optional[tuple[Voucher, VoucherQuote]]:
    try:
        async with uow.transaction():
            return await voucher_usecase.apply_voucher(
                uow.vouchers, code=code, amount=amount, user_id=user_id, now=utc_now_naive()
            )
    except VoucherInvalidError as exc:
        # Invalid codes degrade to a full-price booking.
        logger.warning("voucher %s declined for booking %s: %s", code, booking_id, exc.message)
        emit_audit_log(
            action="booking.voucher_declined",
            initiator="system",
            booking_id=booking_id,
            user_id=user_id,
            message=exc.message,
            extra={"voucher_code": code},
        )
        return None


async def _finalize(
    uow: UnitOfWork,
    *,
    booking_id: int,
    request: BookingCreate,
    user_id: int,
    voucher: Optional[tuple[Voucher, VoucherQuote]],
    rate_percent: int,
) -> Booking:
    """Consume the voucher, write final pricing and participant rows in one transaction."""
    async with uow.transaction():
        booking = await uow.bookings.get_for_update(booking_id)
        if booking is None:
            raise BookingNotFoundError(f"booking {booking_id} not found")
        if booking.status == BookingStatus.CANCELLED:
            raise _cancellation_error(booking)
        now = utc_now_naive()
        if voucher is not None:
            record, quote = voucher
            await voucher_usecase.consume_voucher(
                uow.vouchers, record, user_id=user_id, booking_id=booking.id, now=now
            )
            pricing = compute_pricing(booking.base_amount, rate_percent=rate_percent, discount=quote.discount_amount)
            booking.voucher_id = record.id
            booking.voucher_discount = pricing.voucher_discount
            booking.total_amount = pricing.total_amount

        records = _participant_records(booking.id, request.participants_details)
        if records:
            try:
                async with uow.savepoint():
                    await uow.bookings.add_participants(records)
            except SQLAlchemyError as exc:
                failure = SubRecordWriteFailure(f"participant records for booking {booking.id} not written")
                logger.warning("%s: %s", failure, exc)
                booking.sub_records_complete = False

        booking.updated_at = now
        await uow.bookings.save(booking)
    return booking


async def create_booking(
    uow: UnitOfWork,
    sink: NotificationSink,
    *,
    request: BookingCreate,
    user_id: int,
    gst_rate_percent: int = 5,
) -> Booking:
    """
    Admit a booking request against its slot.

    The booking row is inserted as provisional ``pending_approval`` without
    any lock, then the slot is reconciled: reconciliation decides provisional
    rows in arrival order under the slot row lock, so concurrent requests can
    never admit more seats than the slot holds. A rejected request surfaces as
    CapacityExceededError after its row has been cancelled.
    """
    validate_participants(request.participants)
    booking_id: Optional[int] = None
    try:
        async with uow.transaction():
            slot = await slot_usecase.get_open_slot(
                uow.slots, trek_slug=request.trek_slug, departure_date=request.booking_date
            )
            validate_admission(
                SlotSnapshot(status=slot.status, capacity=slot.capacity, booked=slot.booked),
                participants=request.participants,
            )
            price = await uow.treks.get_price(request.trek_slug)
            if price is None:
                raise TrekNotFoundError(f"trek {request.trek_slug} not found")
            pricing = compute_pricing(price * request.participants, rate_percent=gst_rate_percent)
            booking = await uow.bookings.add(
                _new_booking(request, user_id=user_id, slot=slot, pricing=pricing, now=utc_now_naive())
            )
            booking_id = booking.id

        await slot_usecase.reconcile_slot(uow, slot_id=slot.id)
        async with uow.transaction():
            current = await uow.bookings.get(booking_id)
        if current is None:
            raise BookingNotFoundError(f"booking {booking_id} not found")
        if current.status == BookingStatus.CANCELLED:
            if current.cancellation_reason in _ADMISSION_REASONS:
                publish(sink, BookingEvent.for_booking(
                    BookingEventType.REJECTED, current, initiator="system", reason=current.cancellation_reason
                ))
            raise _cancellation_error(current)

        voucher = None
        if request.voucher_code:
            voucher = await _quote(
                uow,
                code=request.voucher_code,
                amount=pricing.gross_amount,
                user_id=user_id,
                booking_id=booking_id,
            )
        try:
            booking = await _finalize(
                uow,
                booking_id=booking_id,
                request=request,
                user_id=user_id,
                voucher=voucher,
                rate_percent=gst_rate_percent,
            )
        except VoucherAlreadyConsumedError:
            rejected = await _cancel_and_reconcile(uow, booking_id, CancellationReason.VOUCHER_ALREADY_CONSUMED)
            if rejected is not None:
                publish(sink, BookingEvent.for_booking(
                    BookingEventType.REJECTED, rejected, initiator="system", reason=rejected.cancellation_reason
                ))
            raise
    except SQLAlchemyError as exc:
        logger.error("booking creation failed for user %s on %s: %s", user_id, request.trek_slug, exc)
        if booking_id is not None:
            await _abandon(uow, booking_id)
        raise PersistenceFailureError("booking could not be saved") from exc

    publish(sink, BookingEvent.for_booking(
        BookingEventType.CREATED,
        booking,
        initiator="user",
        total_amount=booking.total_amount,
        voucher_discount=booking.voucher_discount,
    ))
    return booking


async def _abandon(uow: UnitOfWork, booking_id: int) -> None:
    try:
        await _cancel_and_reconcile(uow, booking_id, CancellationReason.PERSISTENCE_FAILURE)
    except SQLAlchemyError as exc:
        # The next reconcile sweep still accounts for the row.
        logger.error("could not cancel booking %s after failure: %s", booking_id, exc)


def _require_admin(actor_role: UserRole) -> None:
    if actor_role != UserRole.ADMIN:
        raise PermissionDeniedError("administrator role required")


async def _transition(
    uow: UnitOfWork,
    sink: NotificationSink,
    *,
    booking_id: int,
    target: BookingStatus,
    event_type: BookingEventType,
    version: Optional[int],
    reason: Optional[CancellationReason] = None,
    allowed_from: Optional[BookingStatus] = None,
    owner_id: Optional[int] = None,
    initiator: AuditInitiator = "admin",
) -> Booking:
    async with uow.transaction():
        booking = await uow.bookings.get(booking_id)
        if booking is None or (owner_id is not None and booking.user_id != owner_id):
            raise BookingNotFoundError(f"booking {booking_id} not found")
        releases_seats = target in _SEAT_RELEASING_STATUSES
        if releases_seats:
            # Lock order is slot then booking, same as reconcile.
            await uow.slots.get_for_update(booking.slot_id)
        booking = await uow.bookings.get_for_update(booking_id)
        if booking is None:
            raise BookingNotFoundError(f"booking {booking_id} not found")
        if target == BookingStatus.CANCELLED and booking.status == BookingStatus.CANCELLED:
            return booking
        if version is not None and booking.version != version:
            raise VersionConflictError("version mismatch")
        previous = booking.status
        if allowed_from is not None and previous != allowed_from:
            raise InvalidTransitionError(f"booking must be {allowed_from.value}, not {previous.value}")
        ensure_transition(previous, target)
        if target == BookingStatus.CONFIRMED and booking.admitted_at is None:
            raise InvalidTransitionError("booking has not been admitted yet")
        if target == BookingStatus.COMPLETED and today_ist() < booking.booking_date:
            raise InvalidTransitionError("booking cannot be completed before its departure date")

        booking.status = target
        if reason is not None:
            booking.cancellation_reason = reason
        booking.version += 1
        booking.updated_at = utc_now_naive()
        await uow.bookings.save(booking)
        if releases_seats:
            await slot_usecase.reconcile_locked(uow, booking.slot_id)

    publish(sink, BookingEvent.for_booking(event_type, booking, initiator=initiator, status_from=previous))
    return booking


async def approve_booking(
    uow: UnitOfWork,
    sink: NotificationSink,
    *,
    booking_id: int,
    actor_role: UserRole,
    version: Optional[int] = None,
) -> Booking:
    _require_admin(actor_role)
    return await _transition(
        uow,
        sink,
        booking_id=booking_id,
        target=BookingStatus.CONFIRMED,
        event_type=BookingEventType.CONFIRMED,
        version=version,
    )


async def reject_booking(
    uow: UnitOfWork,
    sink: NotificationSink,
    *,
    booking_id: int,
    actor_role: UserRole,
    version: Optional[int] = None,
) -> Booking:
    """Refuse a request still awaiting approval."""
    _require_admin(actor_role)
    return await _transition(
        uow,
        sink,
        booking_id=booking_id,
        target=BookingStatus.CANCELLED,
        event_type=BookingEventType.CANCELLED,
        version=version,
        reason=CancellationReason.ADMIN_REJECTED,
        allowed_from=BookingStatus.PENDING_APPROVAL,
    )


async def cancel_booking(
    uow: UnitOfWork,
    sink: NotificationSink,
    *,
    booking_id: int,
    actor_role: UserRole,
    version: Optional[int] = None,
) -> Booking:
    _require_admin(actor_role)
    return await _transition(
        uow,
        sink,
        booking_id=booking_id,
        target=BookingStatus.CANCELLED,
        event_type=BookingEventType.CANCELLED,
        version=version,
        reason=CancellationReason.ADMIN_CANCELLED,
    )


async def cancel_own_booking(
    uow: UnitOfWork,
    sink: NotificationSink,
    *,
    booking_id: int,
    user_id: int,
    version: Optional[int] = None,
) -> Booking:
    """Cancel a booking on behalf of its owner; other users' bookings read as missing."""
    return await _transition(
        uow,
        sink,
        booking_id=booking_id,
        target=BookingStatus.CANCELLED,
        event_type=BookingEventType.CANCELLED,
        version=version,
        reason=CancellationReason.USER_CANCELLED,
        owner_id=user_id,
        initiator="user",
    )


async def complete_booking(
    uow: UnitOfWork,
    sink: NotificationSink,
    *,
    booking_id: int,
    actor_role: UserRole,
    version: Optional[int] = None,
) -> Booking:
    _require_admin(actor_role)
    return await _transition(
        uow,
        sink,
        booking_id=booking_id,
        target=BookingStatus.COMPLETED,
        event_type=BookingEventType.COMPLETED,
        version=version,
    )


async def update_payment_status(
    uow: UnitOfWork,
    sink: NotificationSink,
    *,
    booking_id: int,
    payment_status: PaymentStatus,
    actor_role: UserRole,
    version: Optional[int] = None,
) -> Booking:
    _require_admin(actor_role)
    async with uow.transaction():
        booking = await uow.bookings.get_for_update(booking_id)
        if booking is None:
            raise BookingNotFoundError(f"booking {booking_id} not found")
        if version is not None and booking.version != version:
            raise VersionConflictError("version mismatch")
        previous = booking.payment_status
        ensure_payment_transition(previous, payment_status)
        booking.payment_status = payment_status
        booking.version += 1
        booking.updated_at = utc_now_naive()
        await uow.bookings.save(booking)

    publish(sink, BookingEvent.for_booking(
        BookingEventType.PAYMENT_UPDATED,
        booking,
        initiator="admin",
        payment_from=previous,
        payment_to=payment_status,
    ))
    return booking


async def get_user_booking(booking_repo: BookingRepository, *, booking_id: int, user_id: int) -> Optional[Booking]:
    return await booking_repo.get_for_user(booking_id, user_id)


async def get_booking(booking_repo: BookingRepository, *, booking_id: int) -> Booking:
    booking = await booking_repo.get(booking_id)
    if booking is None:
        raise BookingNotFoundError(f"booking {booking_id} not found")
    return booking


async def list_user_bookings(booking_repo: BookingRepository, *, user_id: int) -> List[Booking]:
    return await booking_repo.list_by_user(user_id)


async def list_bookings(booking_repo: BookingRepository, *, status: Optional[BookingStatus] = None) -> List[Booking]:
    return await booking_repo.list_all(status)


async def repair_sub_records(uow: UnitOfWork) -> List[SubRecordGap]:
    """
    Sweep bookings whose participant rows failed to write.

    A booking is marked complete again once its participant rows match what
    the request supplied; the rest are reported for follow-up.
    """
    gaps: List[SubRecordGap] = []
    async with uow.transaction():
        for booking, actual in await uow.bookings.list_sub_record_gaps():
            repaired = actual >= booking.expected_participant_records
            if repaired:
                booking.sub_records_complete = True
                booking.updated_at = utc_now_naive()
                await uow.bookings.save(booking)
            else:
                logger.warning(
                    "booking %s has %s of %s participant records",
                    booking.id,
                    actual,
                    booking.expected_participant_records,
                )
            gaps.append(
                SubRecordGap(
                    booking_id=booking.id,
                    expected_records=booking.expected_participant_records,
                    actual_records=actual,
                    repaired=repaired,
                )
            )
    return gaps
