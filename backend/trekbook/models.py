from __future__ import annotations

from datetime import date, datetime
from enum import StrEnum
from typing import Optional

from sqlalchemy import Boolean, CheckConstraint, Enum, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql.sqltypes import BigInteger, Date, DateTime, Integer, String, Text


class Base(DeclarativeBase):
    pass


class SlotStatus(StrEnum):
    OPEN = "open"
    FULL = "full"
    CLOSED = "closed"


class BookingStatus(StrEnum):
    PENDING_APPROVAL = "pending_approval"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class PaymentStatus(StrEnum):
    NOT_REQUIRED = "not_required"
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class CancellationReason(StrEnum):
    CAPACITY_EXCEEDED = "capacity_exceeded"
    SLOT_CLOSED = "slot_closed"
    VOUCHER_ALREADY_CONSUMED = "voucher_already_consumed"
    PERSISTENCE_FAILURE = "persistence_failure"
    ADMIN_REJECTED = "admin_rejected"
    ADMIN_CANCELLED = "admin_cancelled"
    USER_CANCELLED = "user_cancelled"


class UserRole(StrEnum):
    USER = "user"
    ADMIN = "admin"


# Bookings that hold seats once admitted.
ACTIVE_BOOKING_STATUSES = (BookingStatus.PENDING_APPROVAL, BookingStatus.CONFIRMED)


def _enum(enum_cls: type[StrEnum]) -> Enum:
    return Enum(
        enum_cls,
        values_callable=lambda cls: [e.value for e in cls],
        native_enum=False,
    )


class User(Base):
    __tablename__ = "users"
    __table_args__ = (UniqueConstraint("email", name="uq_users_email"),)

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[UserRole] = mapped_column(_enum(UserRole), nullable=False, default=UserRole.USER)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)


class Trek(Base):
    __tablename__ = "treks"
    __table_args__ = (
        UniqueConstraint("slug", name="uq_treks_slug"),
        CheckConstraint("price_per_participant >= 0", name="chk_treks_price"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    slug: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    price_per_participant: Mapped[int] = mapped_column(Integer, nullable=False)

    slots: Mapped[list["Slot"]] = relationship(back_populates="trek")


class Slot(Base):
    __tablename__ = "trek_slots"
    __table_args__ = (
        CheckConstraint("capacity >= 1", name="chk_slots_capacity"),
        CheckConstraint("booked >= 0", name="chk_slots_booked"),
        UniqueConstraint("trek_slug", "date", name="uq_slots_trek_date"),
        Index("idx_slots_trek", "trek_slug"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    trek_slug: Mapped[str] = mapped_column(ForeignKey("treks.slug"), nullable=False)
    departure_date: Mapped[date] = mapped_column("date", Date, nullable=False)
    capacity: Mapped[int] = mapped_column(Integer, nullable=False)
    booked: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[SlotStatus] = mapped_column(_enum(SlotStatus), nullable=False, default=SlotStatus.OPEN)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)

    trek: Mapped["Trek"] = relationship(back_populates="slots")
    bookings: Mapped[list["Booking"]] = relationship(back_populates="slot")


class Voucher(Base):
    __tablename__ = "vouchers"
    __table_args__ = (
        UniqueConstraint("code", name="uq_vouchers_code"),
        CheckConstraint(
            "(discount_percent IS NULL) <> (discount_amount IS NULL)",
            name="chk_vouchers_discount_kind",
        ),
        CheckConstraint("discount_percent BETWEEN 1 AND 100", name="chk_vouchers_percent"),
        CheckConstraint("discount_amount >= 0", name="chk_vouchers_amount"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(64), nullable=False)
    discount_percent: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    discount_amount: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    valid_until: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    single_use: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    user_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    minimum_amount: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    maximum_discount: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    used_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    used_by: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    booking_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)


class VoucherRedemption(Base):
    """One redemption of a multi-use voucher; a user redeems a code once."""

    __tablename__ = "voucher_redemptions"
    __table_args__ = (UniqueConstraint("voucher_id", "user_id", name="uq_redemptions_voucher_user"),)

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    voucher_id: Mapped[int] = mapped_column(ForeignKey("vouchers.id"), nullable=False)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    booking_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    redeemed_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (
        CheckConstraint("participants BETWEEN 1 AND 20", name="chk_bookings_participants"),
        CheckConstraint("voucher_discount >= 0", name="chk_bookings_discount"),
        CheckConstraint(
            "total_amount = base_amount + gst_amount - voucher_discount",
            name="chk_bookings_total",
        ),
        Index("idx_bookings_slot_status", "slot_id", "status"),
        Index("idx_bookings_user", "user_id"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    slot_id: Mapped[int] = mapped_column(ForeignKey("trek_slots.id"), nullable=False)
    trek_slug: Mapped[str] = mapped_column(String(255), nullable=False)
    booking_date: Mapped[date] = mapped_column(Date, nullable=False)
    participants: Mapped[int] = mapped_column(Integer, nullable=False)

    base_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    gst_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    voucher_discount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    voucher_id: Mapped[Optional[int]] = mapped_column(ForeignKey("vouchers.id"), nullable=True)

    status: Mapped[BookingStatus] = mapped_column(
        _enum(BookingStatus), nullable=False, default=BookingStatus.PENDING_APPROVAL
    )
    payment_status: Mapped[PaymentStatus] = mapped_column(
        _enum(PaymentStatus), nullable=False, default=PaymentStatus.NOT_REQUIRED
    )
    cancellation_reason: Mapped[Optional[CancellationReason]] = mapped_column(
        _enum(CancellationReason), nullable=True
    )
    # NULL while provisional: inserted but not yet granted seats by reconcile.
    admitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    sub_records_complete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    expected_participant_records: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    customer_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    customer_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    customer_phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    emergency_contact_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    emergency_contact_phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    medical_conditions: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    current_medications: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    trekking_experience: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    fitness_consent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    needs_transportation: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    pickup_point: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    special_requirements: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    terms_accepted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    liability_waiver_accepted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    trek_gear_rental: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    porter_services: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)

    slot: Mapped["Slot"] = relationship(back_populates="bookings")
    participant_records: Mapped[list["BookingParticipant"]] = relationship(
        back_populates="booking", cascade="all, delete-orphan"
    )


class BookingParticipant(Base):
    __tablename__ = "booking_participants"
    __table_args__ = (Index("idx_participants_booking", "booking_id"),)

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    booking_id: Mapped[int] = mapped_column(ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    age: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    gender: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    contact_number: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    email_address: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    booking: Mapped["Booking"] = relationship(back_populates="participant_records")
