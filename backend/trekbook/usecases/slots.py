from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from ..domain.errors import SlotNotFoundError, SlotUnavailableError, TrekNotFoundError
from ..domain.repositories import SlotRepository, UnitOfWork
from ..domain.services import ProvisionalBooking, decide_admissions, derive_slot_status
from ..models import BookingStatus, CancellationReason, Slot, SlotStatus
from ..utils.audit_log import emit_audit_log
from ..utils.time import utc_now_naive

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconcileResult:
    slot_id: int
    previous_booked: int
    booked: int
    capacity: int
    status: SlotStatus
    admitted: List[int] = field(default_factory=list)
    rejected: List[int] = field(default_factory=list)

    @property
    def over_capacity(self) -> bool:
        return self.booked > self.capacity


@dataclass(frozen=True)
class SweepEntry:
    slot_id: int
    result: Optional[ReconcileResult] = None
    error: Optional[str] = None


async def get_open_slot(slot_repo: SlotRepository, *, trek_slug: str, departure_date: date) -> Slot:
    slot = await slot_repo.get_by_trek_and_date(trek_slug, departure_date)
    if slot is None or slot.status != SlotStatus.OPEN:
        raise SlotUnavailableError("selected date is not available for booking")
    return slot


async def reconcile_locked(uow: UnitOfWork, slot_id: int) -> ReconcileResult:
    """
    Decide provisional bookings and recompute ``booked`` for one slot.

    Must run inside a transaction. The slot row lock serializes admission
    decisions per slot; ``booked`` is always derived from the booking rows,
    never adjusted by a delta.
    """
    slot = await uow.slots.get_for_update(slot_id)
    if slot is None:
        raise SlotNotFoundError(f"slot {slot_id} not found")

    admitted_seats = await uow.bookings.sum_admitted(slot_id)
    provisional = await uow.bookings.list_provisional(slot_id)
    decision = decide_admissions(
        capacity=slot.capacity,
        admitted_seats=admitted_seats,
        provisional=[ProvisionalBooking(b.id, b.participants) for b in provisional],
        slot_closed=slot.status == SlotStatus.CLOSED,
    )

    now = utc_now_naive()
    rejected_reason = (
        CancellationReason.SLOT_CLOSED if slot.status == SlotStatus.CLOSED else CancellationReason.CAPACITY_EXCEEDED
    )
    admitted_ids = set(decision.admitted)
    for booking in provisional:
        if booking.id in admitted_ids:
            booking.admitted_at = now
        else:
            booking.status = BookingStatus.CANCELLED
            booking.cancellation_reason = rejected_reason
            booking.version += 1
        booking.updated_at = now
        await uow.bookings.save(booking)

    previous = slot.booked
    if decision.booked > slot.capacity:
        logger.warning(
            "slot %s holds %s seats over capacity %s; writing true count",
            slot_id,
            decision.booked,
            slot.capacity,
        )
        emit_audit_log(
            action="slot.capacity_exceeded",
            initiator="system",
            slot_id=slot_id,
            trek_slug=slot.trek_slug,
            extra={"booked": decision.booked, "capacity": slot.capacity},
        )
    slot.booked = decision.booked
    slot.status = derive_slot_status(capacity=slot.capacity, booked=decision.booked, current=slot.status)
    slot.updated_at = now
    await uow.slots.save(slot)

    if previous != slot.booked or decision.rejected:
        logger.info(
            "reconciled slot %s: booked %s -> %s, admitted=%s rejected=%s",
            slot_id,
            previous,
            slot.booked,
            decision.admitted,
            decision.rejected,
        )
    return ReconcileResult(
        slot_id=slot_id,
        previous_booked=previous,
        booked=slot.booked,
        capacity=slot.capacity,
        status=slot.status,
        admitted=list(decision.admitted),
        rejected=list(decision.rejected),
    )


async def reconcile_slot(uow: UnitOfWork, *, slot_id: int) -> ReconcileResult:
    async with uow.transaction():
        return await reconcile_locked(uow, slot_id)


async def _sweep(uow: UnitOfWork, slot_ids: List[int]) -> List[SweepEntry]:
    entries: List[SweepEntry] = []
    for slot_id in slot_ids:
        try:
            result = await reconcile_slot(uow, slot_id=slot_id)
        except (SlotNotFoundError, SQLAlchemyError) as exc:
            logger.error("reconcile failed for slot %s: %s", slot_id, exc)
            entries.append(SweepEntry(slot_id=slot_id, error=str(exc)))
            continue
        entries.append(SweepEntry(slot_id=slot_id, result=result))
    return entries


async def reconcile_trek(uow: UnitOfWork, *, trek_slug: str) -> List[SweepEntry]:
    async with uow.transaction():
        slot_ids = [slot.id for slot in await uow.slots.list_for_trek(trek_slug)]
    return await _sweep(uow, slot_ids)


async def reconcile_all(uow: UnitOfWork) -> List[SweepEntry]:
    async with uow.transaction():
        slot_ids = await uow.slots.list_ids()
    return await _sweep(uow, slot_ids)


async def list_availability(
    slot_repo: SlotRepository,
    *,
    trek_slug: str,
    start: date | None,
    end: date | None,
) -> List[Dict[str, Any]]:
    slots = await slot_repo.list_for_trek(trek_slug, start=start, end=end)
    items: List[Dict[str, Any]] = []
    for slot in slots:
        if slot.status == SlotStatus.CLOSED:
            continue
        items.append({"slot": slot, "available": max(slot.capacity - slot.booked, 0)})
    return items


async def create_slot(
    uow: UnitOfWork,
    *,
    trek_slug: str,
    departure_date: date,
    capacity: int,
    status: SlotStatus,
) -> Slot:
    if capacity < 1:
        raise ValueError("capacity must be >= 1")
    if status == SlotStatus.FULL:
        raise ValueError("a new slot cannot start full")
    async with uow.transaction():
        if await uow.treks.get_price(trek_slug) is None:
            raise TrekNotFoundError(f"trek {trek_slug} not found")
        return await uow.slots.create(
            trek_slug=trek_slug,
            departure_date=departure_date,
            capacity=capacity,
            status=status,
        )


async def close_slot(uow: UnitOfWork, *, slot_id: int) -> Slot:
    """Close a departure; admitted bookings keep their seats."""
    async with uow.transaction():
        slot = await uow.slots.get_for_update(slot_id)
        if slot is None:
            raise SlotNotFoundError(f"slot {slot_id} not found")
        slot.status = SlotStatus.CLOSED
        slot.updated_at = utc_now_naive()
        await uow.slots.save(slot)
    return slot
