from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import AsyncIterator, Iterable, List, Optional, Tuple

from sqlalchemy import Select, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..domain.repositories import BookingRepository, SlotRepository, TrekRepository, VoucherRepository
from ..models import (
    ACTIVE_BOOKING_STATUSES,
    Booking,
    BookingParticipant,
    BookingStatus,
    Slot,
    SlotStatus,
    Trek,
    Voucher,
    VoucherRedemption,
)


class SqlAlchemySlotRepository(SlotRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_for_update(self, slot_id: int) -> Slot | None:
        stmt = (
            select(Slot)
            .where(Slot.id == slot_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.session.scalar(stmt)
        return result if isinstance(result, Slot) else None

    async def get_by_trek_and_date(self, trek_slug: str, departure_date: date) -> Slot | None:
        stmt = (
            select(Slot)
            .where(Slot.trek_slug == trek_slug, Slot.departure_date == departure_date)
            .execution_options(populate_existing=True)
        )
        return await self.session.scalar(stmt)

    async def create(
        self,
        *,
        trek_slug: str,
        departure_date: date,
        capacity: int,
        status: SlotStatus,
    ) -> Slot:
        now = datetime.now(timezone.utc).replace(tzinfo=None)
        slot = Slot(
            trek_slug=trek_slug,
            departure_date=departure_date,
            capacity=capacity,
            booked=0,
            status=status,
            created_at=now,
            updated_at=now,
        )
        self.session.add(slot)
        await self.session.flush()
        return slot

    async def save(self, slot: Slot) -> Slot:
        self.session.add(slot)
        await self.session.flush()
        return slot

    async def list_for_trek(
        self,
        trek_slug: str,
        start: date | None = None,
        end: date | None = None,
    ) -> List[Slot]:
        stmt: Select[Tuple[Slot]] = select(Slot).where(Slot.trek_slug == trek_slug)
        if start is not None:
            stmt = stmt.where(Slot.departure_date >= start)
        if end is not None:
            stmt = stmt.where(Slot.departure_date <= end)
        rows = await self.session.scalars(stmt.order_by(Slot.departure_date))
        return list(rows.all())

    async def list_ids(self) -> List[int]:
        rows = await self.session.scalars(select(Slot.id).order_by(Slot.id))
        return list(rows.all())


class SqlAlchemyBookingRepository(BookingRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def add(self, booking: Booking) -> Booking:
        self.session.add(booking)
        await self.session.flush()
        return booking

    async def get(self, booking_id: int) -> Booking | None:
        stmt = select(Booking).where(Booking.id == booking_id).execution_options(populate_existing=True)
        return await self.session.scalar(stmt)

    async def get_for_update(self, booking_id: int) -> Booking | None:
        stmt = (
            select(Booking)
            .where(Booking.id == booking_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return await self.session.scalar(stmt)

    async def get_for_user(self, booking_id: int, user_id: int) -> Optional[Booking]:
        stmt = select(Booking).where(Booking.id == booking_id, Booking.user_id == user_id)
        return await self.session.scalar(stmt)

    async def list_by_user(self, user_id: int) -> List[Booking]:
        stmt = select(Booking).where(Booking.user_id == user_id).order_by(Booking.created_at.desc())
        rows = await self.session.scalars(stmt)
        return list(rows.all())

    async def list_all(self, status: BookingStatus | None = None) -> List[Booking]:
        stmt: Select[Tuple[Booking]] = select(Booking)
        if status is not None:
            stmt = stmt.where(Booking.status == status)
        rows = await self.session.scalars(stmt.order_by(Booking.created_at.desc()))
        return list(rows.all())

    async def list_provisional(self, slot_id: int) -> List[Booking]:
        stmt = (
            select(Booking)
            .where(
                Booking.slot_id == slot_id,
                Booking.status.in_(ACTIVE_BOOKING_STATUSES),
                Booking.admitted_at.is_(None),
            )
            .order_by(Booking.created_at, Booking.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        rows = await self.session.scalars(stmt)
        return list(rows.all())

    async def sum_admitted(self, slot_id: int) -> int:
        stmt = select(func.coalesce(func.sum(Booking.participants), 0)).where(
            Booking.slot_id == slot_id,
            Booking.status.in_(ACTIVE_BOOKING_STATUSES),
            Booking.admitted_at.is_not(None),
        )
        return int(await self.session.scalar(stmt) or 0)

    async def save(self, booking: Booking) -> Booking:
        self.session.add(booking)
        await self.session.flush()
        return booking

    async def add_participants(self, records: Iterable[BookingParticipant]) -> None:
        self.session.add_all(list(records))
        await self.session.flush()

    async def list_sub_record_gaps(self) -> List[Tuple[Booking, int]]:
        stmt = (
            select(Booking, func.count(BookingParticipant.id).label("records"))
            .outerjoin(BookingParticipant, BookingParticipant.booking_id == Booking.id)
            .where(Booking.sub_records_complete.is_(False))
            .group_by(Booking.id)
            .order_by(Booking.id)
        )
        rows = await self.session.execute(stmt)
        return [(booking, int(records)) for booking, records in rows.all()]


class SqlAlchemyVoucherRepository(VoucherRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def add(self, voucher: Voucher) -> Voucher:
        self.session.add(voucher)
        await self.session.flush()
        return voucher

    async def get_for_update(self, voucher_id: int) -> Voucher | None:
        stmt = (
            select(Voucher)
            .where(Voucher.id == voucher_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return await self.session.scalar(stmt)

    async def save(self, voucher: Voucher) -> Voucher:
        self.session.add(voucher)
        await self.session.flush()
        return voucher

    async def list_all(self) -> List[Voucher]:
        rows = await self.session.scalars(select(Voucher).order_by(Voucher.created_at.desc(), Voucher.id.desc()))
        return list(rows.all())

    async def list_for_user(self, user_id: int) -> List[Voucher]:
        stmt = (
            select(Voucher)
            .where(Voucher.user_id == user_id)
            .order_by(Voucher.created_at.desc(), Voucher.id.desc())
        )
        rows = await self.session.scalars(stmt)
        return list(rows.all())

    async def get_by_code(self, code: str) -> Voucher | None:
        stmt = select(Voucher).where(Voucher.code == code.strip().upper()).execution_options(populate_existing=True)
        return await self.session.scalar(stmt)

    async def has_redeemed(self, voucher_id: int, user_id: int) -> bool:
        stmt = select(VoucherRedemption.id).where(
            VoucherRedemption.voucher_id == voucher_id,
            VoucherRedemption.user_id == user_id,
        )
        return await self.session.scalar(stmt) is not None

    async def mark_used(self, voucher_id: int, *, user_id: int, booking_id: int, used_at: datetime) -> bool:
        stmt = (
            update(Voucher)
            .where(Voucher.id == voucher_id, Voucher.is_used.is_(False))
            .values(is_used=True, used_at=used_at, used_by=user_id, booking_id=booking_id)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def add_redemption(
        self, voucher_id: int, *, user_id: int, booking_id: int, redeemed_at: datetime
    ) -> bool:
        redemption = VoucherRedemption(
            voucher_id=voucher_id,
            user_id=user_id,
            booking_id=booking_id,
            redeemed_at=redeemed_at,
        )
        try:
            async with self.session.begin_nested():
                self.session.add(redemption)
        except IntegrityError:
            return False
        return True


class SqlAlchemyTrekRepository(TrekRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_price(self, trek_slug: str) -> int | None:
        stmt = select(Trek.price_per_participant).where(Trek.slug == trek_slug)
        return await self.session.scalar(stmt)


class SqlAlchemyUnitOfWork:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.slots = SqlAlchemySlotRepository(session)
        self.bookings = SqlAlchemyBookingRepository(session)
        self.vouchers = SqlAlchemyVoucherRepository(session)
        self.treks = SqlAlchemyTrekRepository(session)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        if self.session.in_transaction():
            # Commit the implicit read transaction left by autobegin.
            await self.session.commit()
        async with self.session.begin():
            yield self.session

    @asynccontextmanager
    async def savepoint(self) -> AsyncIterator[AsyncSession]:
        async with self.session.begin_nested():
            yield self.session
