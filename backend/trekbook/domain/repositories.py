from __future__ import annotations

from datetime import date, datetime
from typing import AsyncContextManager, Iterable, Protocol

from ..models import Booking, BookingParticipant, BookingStatus, Slot, SlotStatus, Voucher


class SlotRepository(Protocol):
    async def get_for_update(self, slot_id: int) -> Slot | None: ...

    async def get_by_trek_and_date(self, trek_slug: str, departure_date: date) -> Slot | None: ...

    async def create(
        self,
        *,
        trek_slug: str,
        departure_date: date,
        capacity: int,
        status: SlotStatus,
    ) -> Slot: ...

    async def save(self, slot: Slot) -> Slot: ...

    async def list_for_trek(
        self,
        trek_slug: str,
        start: date | None = None,
        end: date | None = None,
    ) -> list[Slot]: ...

    async def list_ids(self) -> list[int]: ...


class BookingRepository(Protocol):
    async def add(self, booking: Booking) -> Booking: ...

    async def get(self, booking_id: int) -> Booking | None: ...

    async def get_for_update(self, booking_id: int) -> Booking | None: ...

    async def get_for_user(self, booking_id: int, user_id: int) -> Booking | None: ...

    async def list_by_user(self, user_id: int) -> list[Booking]: ...

    async def list_all(self, status: BookingStatus | None = None) -> list[Booking]: ...

    async def list_provisional(self, slot_id: int) -> list[Booking]: ...

    async def sum_admitted(self, slot_id: int) -> int: ...

    async def save(self, booking: Booking) -> Booking: ...

    async def add_participants(self, records: Iterable[BookingParticipant]) -> None: ...

    async def list_sub_record_gaps(self) -> list[tuple[Booking, int]]: ...


class VoucherRepository(Protocol):
    async def add(self, voucher: Voucher) -> Voucher: ...

    async def get_for_update(self, voucher_id: int) -> Voucher | None: ...

    async def save(self, voucher: Voucher) -> Voucher: ...

    async def list_all(self) -> list[Voucher]: ...

    async def list_for_user(self, user_id: int) -> list[Voucher]: ...

    async def get_by_code(self, code: str) -> Voucher | None: ...

    async def has_redeemed(self, voucher_id: int, user_id: int) -> bool: ...

    async def mark_used(self, voucher_id: int, *, user_id: int, booking_id: int, used_at: datetime) -> bool: ...

    async def add_redemption(
        self, voucher_id: int, *, user_id: int, booking_id: int, redeemed_at: datetime
    ) -> bool: ...


class TrekRepository(Protocol):
    async def get_price(self, trek_slug: str) -> int | None: ...


class UnitOfWork(Protocol):
    """Repositories sharing one session, plus its transaction boundaries."""

    slots: SlotRepository
    bookings: BookingRepository
    vouchers: VoucherRepository
    treks: TrekRepository

    def transaction(self) -> AsyncContextManager[object]: ...

    def savepoint(self) -> AsyncContextManager[object]: ...
