import asyncio
import itertools
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta, timezone
from typing import AsyncIterator, Callable, Iterable, Optional

import pytest
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from trekbook.models import (
    ACTIVE_BOOKING_STATUSES,
    Booking,
    BookingParticipant,
    BookingStatus,
    PaymentStatus,
    Slot,
    SlotStatus,
    Voucher,
)
from trekbook.notifications import BookingEvent


def _utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class InMemoryStore:
    """Shared state standing in for the database across concurrent requests."""

    def __init__(self) -> None:
        self.prices: dict[str, int] = {}
        self.slots: dict[int, Slot] = {}
        self.bookings: dict[int, Booking] = {}
        self.participants: list[BookingParticipant] = []
        self.vouchers: dict[int, Voucher] = {}
        self.redemptions: set[tuple[int, int]] = set()
        self.slot_locks: dict[int, asyncio.Lock] = defaultdict(asyncio.Lock)
        self.fail_participants = False
        self.failures: dict[str, int] = {}
        self._ids = itertools.count(1)

    def next_id(self) -> int:
        return next(self._ids)

    def maybe_fail(self, operation: str) -> None:
        remaining = self.failures.get(operation, 0)
        if remaining:
            self.failures[operation] = remaining - 1
            raise SQLAlchemyError(f"{operation} failed")

    def add_trek(self, slug: str, price: int) -> None:
        self.prices[slug] = price

    def add_slot(
        self,
        trek_slug: str = "kedarkantha",
        departure_date: date = date(2030, 1, 15),
        *,
        capacity: int = 10,
        status: SlotStatus = SlotStatus.OPEN,
    ) -> Slot:
        now = _utc_now_naive()
        slot = Slot(
            id=self.next_id(),
            trek_slug=trek_slug,
            departure_date=departure_date,
            capacity=capacity,
            booked=0,
            status=status,
            created_at=now,
            updated_at=now,
        )
        self.slots[slot.id] = slot
        return slot

    def add_booking(
        self,
        slot: Slot,
        *,
        participants: int,
        status: BookingStatus = BookingStatus.CONFIRMED,
        admitted: bool = True,
        user_id: int = 99,
    ) -> Booking:
        """Seed an existing booking and keep the slot counter consistent with it."""
        now = _utc_now_naive()
        base = 1000 * participants
        booking = Booking(
            id=self.next_id(),
            user_id=user_id,
            slot_id=slot.id,
            trek_slug=slot.trek_slug,
            booking_date=slot.departure_date,
            participants=participants,
            base_amount=base,
            gst_amount=base // 20,
            voucher_discount=0,
            total_amount=base + base // 20,
            voucher_id=None,
            status=status,
            payment_status=PaymentStatus.NOT_REQUIRED,
            cancellation_reason=None,
            admitted_at=now if admitted else None,
            sub_records_complete=True,
            expected_participant_records=0,
            version=1,
            created_at=now,
            updated_at=now,
        )
        self.bookings[booking.id] = booking
        if admitted and status in ACTIVE_BOOKING_STATUSES:
            slot.booked += participants
            if slot.booked >= slot.capacity and slot.status == SlotStatus.OPEN:
                slot.status = SlotStatus.FULL
        return booking

    def add_voucher(
        self,
        code: str,
        *,
        discount_percent: Optional[int] = 10,
        discount_amount: Optional[int] = None,
        single_use: bool = True,
        is_used: bool = False,
        is_active: bool = True,
        user_id: Optional[int] = None,
        minimum_amount: Optional[int] = None,
        maximum_discount: Optional[int] = None,
        valid_until: Optional[datetime] = None,
    ) -> Voucher:
        voucher = Voucher(
            id=self.next_id(),
            code=code.upper(),
            discount_percent=discount_percent,
            discount_amount=discount_amount,
            valid_until=valid_until if valid_until is not None else _utc_now_naive() + timedelta(days=30),
            is_active=is_active,
            single_use=single_use,
            is_used=is_used,
            user_id=user_id,
            minimum_amount=minimum_amount,
            maximum_discount=maximum_discount,
            used_at=None,
            used_by=None,
            booking_id=None,
            created_at=_utc_now_naive(),
        )
        self.vouchers[voucher.id] = voucher
        return voucher

    def active_bookings(self, slot_id: int) -> list[Booking]:
        return [
            b for b in self.bookings.values() if b.slot_id == slot_id and b.status in ACTIVE_BOOKING_STATUSES
        ]


class FakeSlotRepo:
    def __init__(self, store: InMemoryStore, uow: "FakeUnitOfWork") -> None:
        self.store = store
        self.uow = uow

    async def get_for_update(self, slot_id: int) -> Slot | None:
        await asyncio.sleep(0)
        if slot_id not in self.store.slots:
            return None
        if slot_id not in self.uow.held:
            await self.store.slot_locks[slot_id].acquire()
            self.uow.held.add(slot_id)
        return self.store.slots[slot_id]

    async def get_by_trek_and_date(self, trek_slug: str, departure_date: date) -> Slot | None:
        await asyncio.sleep(0)
        for slot in self.store.slots.values():
            if slot.trek_slug == trek_slug and slot.departure_date == departure_date:
                return slot
        return None

    async def create(self, *, trek_slug: str, departure_date: date, capacity: int, status: SlotStatus) -> Slot:
        if await self.get_by_trek_and_date(trek_slug, departure_date) is not None:
            raise IntegrityError("insert trek_slots", None, Exception("uq_slots_trek_date"))
        return self.store.add_slot(trek_slug, departure_date, capacity=capacity, status=status)

    async def save(self, slot: Slot) -> Slot:
        await asyncio.sleep(0)
        return slot

    async def list_for_trek(
        self, trek_slug: str, start: date | None = None, end: date | None = None
    ) -> list[Slot]:
        await asyncio.sleep(0)
        rows = [
            s
            for s in self.store.slots.values()
            if s.trek_slug == trek_slug
            and (start is None or s.departure_date >= start)
            and (end is None or s.departure_date <= end)
        ]
        return sorted(rows, key=lambda s: s.departure_date)

    async def list_ids(self) -> list[int]:
        await asyncio.sleep(0)
        return sorted(self.store.slots)


class FakeBookingRepo:
    def __init__(self, store: InMemoryStore) -> None:
        self.store = store

    async def add(self, booking: Booking) -> Booking:
        await asyncio.sleep(0)
        self.store.maybe_fail("add_booking")
        booking.id = self.store.next_id()
        self.store.bookings[booking.id] = booking
        return booking

    async def get(self, booking_id: int) -> Booking | None:
        await asyncio.sleep(0)
        return self.store.bookings.get(booking_id)

    async def get_for_update(self, booking_id: int) -> Booking | None:
        return await self.get(booking_id)

    async def get_for_user(self, booking_id: int, user_id: int) -> Booking | None:
        booking = await self.get(booking_id)
        return booking if booking is not None and booking.user_id == user_id else None

    async def list_by_user(self, user_id: int) -> list[Booking]:
        await asyncio.sleep(0)
        return [b for b in self.store.bookings.values() if b.user_id == user_id]

    async def list_all(self, status: BookingStatus | None = None) -> list[Booking]:
        await asyncio.sleep(0)
        return [b for b in self.store.bookings.values() if status is None or b.status == status]

    async def list_provisional(self, slot_id: int) -> list[Booking]:
        await asyncio.sleep(0)
        rows = [b for b in self.store.active_bookings(slot_id) if b.admitted_at is None]
        return sorted(rows, key=lambda b: (b.created_at, b.id))

    async def sum_admitted(self, slot_id: int) -> int:
        await asyncio.sleep(0)
        self.store.maybe_fail("sum_admitted")
        return sum(b.participants for b in self.store.active_bookings(slot_id) if b.admitted_at is not None)

    async def save(self, booking: Booking) -> Booking:
        await asyncio.sleep(0)
        return booking

    async def add_participants(self, records: Iterable[BookingParticipant]) -> None:
        await asyncio.sleep(0)
        if self.store.fail_participants:
            raise SQLAlchemyError("booking_participants insert failed")
        self.store.participants.extend(records)

    async def list_sub_record_gaps(self) -> list[tuple[Booking, int]]:
        await asyncio.sleep(0)
        gaps = []
        for booking in self.store.bookings.values():
            if booking.sub_records_complete:
                continue
            count = sum(1 for p in self.store.participants if p.booking_id == booking.id)
            gaps.append((booking, count))
        return gaps


class FakeVoucherRepo:
    def __init__(self, store: InMemoryStore) -> None:
        self.store = store

    async def add(self, voucher: Voucher) -> Voucher:
        await asyncio.sleep(0)
        if any(v.code == voucher.code for v in self.store.vouchers.values()):
            raise IntegrityError("insert vouchers", None, Exception("uq_vouchers_code"))
        voucher.id = self.store.next_id()
        self.store.vouchers[voucher.id] = voucher
        return voucher

    async def get_for_update(self, voucher_id: int) -> Voucher | None:
        await asyncio.sleep(0)
        return self.store.vouchers.get(voucher_id)

    async def save(self, voucher: Voucher) -> Voucher:
        await asyncio.sleep(0)
        return voucher

    async def list_all(self) -> list[Voucher]:
        await asyncio.sleep(0)
        return sorted(self.store.vouchers.values(), key=lambda v: (v.created_at, v.id), reverse=True)

    async def list_for_user(self, user_id: int) -> list[Voucher]:
        return [v for v in await self.list_all() if v.user_id == user_id]

    async def get_by_code(self, code: str) -> Voucher | None:
        await asyncio.sleep(0)
        for voucher in self.store.vouchers.values():
            if voucher.code == code.strip().upper():
                return voucher
        return None

    async def has_redeemed(self, voucher_id: int, user_id: int) -> bool:
        await asyncio.sleep(0)
        return (voucher_id, user_id) in self.store.redemptions

    async def mark_used(self, voucher_id: int, *, user_id: int, booking_id: int, used_at: datetime) -> bool:
        await asyncio.sleep(0)
        voucher = self.store.vouchers[voucher_id]
        # Check and set with no await in between: the conditional UPDATE.
        if voucher.is_used:
            return False
        voucher.is_used = True
        voucher.used_at = used_at
        voucher.used_by = user_id
        voucher.booking_id = booking_id
        return True

    async def add_redemption(self, voucher_id: int, *, user_id: int, booking_id: int, redeemed_at: datetime) -> bool:
        await asyncio.sleep(0)
        key = (voucher_id, user_id)
        if key in self.store.redemptions:
            return False
        self.store.redemptions.add(key)
        return True


class FakeTrekRepo:
    def __init__(self, store: InMemoryStore) -> None:
        self.store = store

    async def get_price(self, trek_slug: str) -> int | None:
        await asyncio.sleep(0)
        return self.store.prices.get(trek_slug)


class FakeUnitOfWork:
    def __init__(self, store: InMemoryStore) -> None:
        self.store = store
        self.held: set[int] = set()
        self.slots = FakeSlotRepo(store, self)
        self.bookings = FakeBookingRepo(store)
        self.vouchers = FakeVoucherRepo(store)
        self.treks = FakeTrekRepo(store)
        self.transactions = 0

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["FakeUnitOfWork"]:
        self.transactions += 1
        try:
            yield self
        finally:
            for slot_id in self.held:
                self.store.slot_locks[slot_id].release()
            self.held.clear()

    @asynccontextmanager
    async def savepoint(self) -> AsyncIterator["FakeUnitOfWork"]:
        yield self


class RecordingSink:
    def __init__(self) -> None:
        self.events: list[BookingEvent] = []

    def notify(self, event: BookingEvent) -> None:
        self.events.append(event)


@pytest.fixture
def store() -> InMemoryStore:
    s = InMemoryStore()
    s.add_trek("kedarkantha", 5000)
    return s


@pytest.fixture
def uow(store: InMemoryStore) -> FakeUnitOfWork:
    return FakeUnitOfWork(store)


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def make_uow(store: InMemoryStore) -> Callable[[], FakeUnitOfWork]:
    """Each call is a separate request with its own session."""
    return lambda: FakeUnitOfWork(store)
