from dataclasses import dataclass, field
from typing import Sequence

from ..models import BookingStatus, PaymentStatus, SlotStatus
from .errors import InvalidParticipantsError, InvalidTransitionError, SlotUnavailableError

MIN_PARTICIPANTS = 1
MAX_PARTICIPANTS = 20

BOOKING_TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    BookingStatus.PENDING_APPROVAL: frozenset({BookingStatus.CONFIRMED, BookingStatus.CANCELLED}),
    BookingStatus.CONFIRMED: frozenset({BookingStatus.CANCELLED, BookingStatus.COMPLETED}),
    BookingStatus.CANCELLED: frozenset(),
    BookingStatus.COMPLETED: frozenset(),
}

PAYMENT_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.NOT_REQUIRED: frozenset({PaymentStatus.PENDING, PaymentStatus.PAID, PaymentStatus.FAILED}),
    PaymentStatus.PENDING: frozenset({PaymentStatus.PAID, PaymentStatus.FAILED}),
    PaymentStatus.FAILED: frozenset({PaymentStatus.PENDING}),
    PaymentStatus.PAID: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.REFUNDED: frozenset(),
}


@dataclass(frozen=True)
class SlotSnapshot:
    status: SlotStatus
    capacity: int
    booked: int


@dataclass(frozen=True)
class ProvisionalBooking:
    booking_id: int
    participants: int


@dataclass(frozen=True)
class AdmissionDecision:
    admitted: list[int] = field(default_factory=list)
    rejected: list[int] = field(default_factory=list)
    booked: int = 0


def validate_participants(participants: int) -> None:
    if not MIN_PARTICIPANTS <= participants <= MAX_PARTICIPANTS:
        raise InvalidParticipantsError(
            f"participants must be between {MIN_PARTICIPANTS} and {MAX_PARTICIPANTS}"
        )


def validate_admission(snapshot: SlotSnapshot, *, participants: int) -> None:
    """
    Pre-insert checks: participant bounds and an open slot.
    Capacity is not checked here; reconcile decides it against committed rows.
    """
    validate_participants(participants)
    if snapshot.status != SlotStatus.OPEN:
        raise SlotUnavailableError("selected date is not available for booking")


def decide_admissions(
    *,
    capacity: int,
    admitted_seats: int,
    provisional: Sequence[ProvisionalBooking],
    slot_closed: bool = False,
) -> AdmissionDecision:
    """
    Grant seats to provisional bookings in arrival order while they fit.

    ``admitted_seats`` is the participant sum already held by admitted,
    non-cancelled bookings. Returns the ids to admit, the ids to reject and
    the resulting booked count.
    """
    admitted: list[int] = []
    rejected: list[int] = []
    booked = admitted_seats
    for item in provisional:
        if not slot_closed and booked + item.participants <= capacity:
            admitted.append(item.booking_id)
            booked += item.participants
        else:
            rejected.append(item.booking_id)
    return AdmissionDecision(admitted=admitted, rejected=rejected, booked=booked)


def derive_slot_status(*, capacity: int, booked: int, current: SlotStatus) -> SlotStatus:
    if current == SlotStatus.CLOSED:
        return SlotStatus.CLOSED
    return SlotStatus.FULL if booked >= capacity else SlotStatus.OPEN


def ensure_transition(current: BookingStatus, target: BookingStatus) -> None:
    if target not in BOOKING_TRANSITIONS[current]:
        raise InvalidTransitionError(f"cannot move booking from {current.value} to {target.value}")


def ensure_payment_transition(current: PaymentStatus, target: PaymentStatus) -> None:
    if target not in PAYMENT_TRANSITIONS[current]:
        raise InvalidTransitionError(f"cannot move payment from {current.value} to {target.value}")
