from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from .domain.services import MAX_PARTICIPANTS, MIN_PARTICIPANTS
from .models import Booking, BookingStatus, CancellationReason, PaymentStatus, Slot, SlotStatus, Voucher
from .utils.time import to_utc_naive


class ParticipantDetail(BaseModel):
    full_name: str = Field(min_length=1, max_length=255)
    date_of_birth: Optional[date] = None
    gender: Optional[str] = Field(default=None, max_length=32)
    contact_number: Optional[str] = Field(default=None, max_length=50)
    email_address: Optional[str] = Field(default=None, max_length=255)


class HealthFitness(BaseModel):
    emergency_contact_name: Optional[str] = None
    emergency_contact_phone: Optional[str] = None
    medical_conditions: Optional[str] = None
    current_medications: Optional[str] = None
    trekking_experience: Optional[str] = None
    fitness_consent: bool = False


class TravelPreferences(BaseModel):
    needs_transportation: bool = False
    pickup_point: Optional[str] = None
    special_requirements: Optional[str] = None


class LegalConsent(BaseModel):
    terms_accepted: bool = False
    liability_waiver_accepted: bool = False


class OptionalAddons(BaseModel):
    trek_gear_rental: bool = False
    porter_services: bool = False


class BookingCreate(BaseModel):
    trek_slug: str = Field(min_length=1, max_length=255)
    booking_date: date
    participants: int = Field(ge=MIN_PARTICIPANTS, le=MAX_PARTICIPANTS)
    participants_details: List[ParticipantDetail] = Field(default_factory=list)
    health_fitness: HealthFitness = Field(default_factory=HealthFitness)
    travel_preferences: TravelPreferences = Field(default_factory=TravelPreferences)
    legal_consent: LegalConsent = Field(default_factory=LegalConsent)
    optional_addons: OptionalAddons = Field(default_factory=OptionalAddons)
    special_requirements: Optional[str] = None
    voucher_code: Optional[str] = Field(default=None, max_length=64)

    @field_validator("voucher_code")
    @classmethod
    def _normalize_code(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip().upper()
        return value or None

    @model_validator(mode="after")
    def _details_fit_party(self) -> "BookingCreate":
        if len(self.participants_details) > self.participants:
            raise ValueError("more participant details than participants")
        return self


class BookingRead(BaseModel):
    booking_id: int
    slot_id: int
    trek_slug: str
    booking_date: date
    participants: int
    base_amount: int
    gst_amount: int
    voucher_discount: int
    total_amount: int
    status: BookingStatus
    payment_status: PaymentStatus
    cancellation_reason: Optional[CancellationReason] = None
    version: int

    @classmethod
    def from_db(cls, *, booking: Booking) -> "BookingRead":
        return cls(
            booking_id=booking.id,
            slot_id=booking.slot_id,
            trek_slug=booking.trek_slug,
            booking_date=booking.booking_date,
            participants=booking.participants,
            base_amount=booking.base_amount,
            gst_amount=booking.gst_amount,
            voucher_discount=booking.voucher_discount,
            total_amount=booking.total_amount,
            status=booking.status,
            payment_status=booking.payment_status,
            cancellation_reason=booking.cancellation_reason,
            version=booking.version,
        )


class BookingTransition(BaseModel):
    version: Optional[int] = Field(default=None, ge=1)


class PaymentStatusUpdate(BaseModel):
    payment_status: PaymentStatus
    version: Optional[int] = Field(default=None, ge=1)


class SlotCreate(BaseModel):
    departure_date: date
    capacity: int = Field(ge=1)
    status: SlotStatus = SlotStatus.OPEN


class SlotRead(BaseModel):
    slot_id: int
    trek_slug: str
    departure_date: date
    capacity: int
    booked: int
    status: SlotStatus

    @classmethod
    def from_db(cls, *, slot: Slot) -> "SlotRead":
        return cls(
            slot_id=slot.id,
            trek_slug=slot.trek_slug,
            departure_date=slot.departure_date,
            capacity=slot.capacity,
            booked=slot.booked,
            status=slot.status,
        )


class SlotAvailability(SlotRead):
    available: int


class SlotSyncRequest(BaseModel):
    slot_id: Optional[int] = Field(default=None, ge=1)
    trek_slug: Optional[str] = None
    sync_all: bool = False

    @model_validator(mode="after")
    def _one_target(self) -> "SlotSyncRequest":
        targets = [self.slot_id is not None, self.trek_slug is not None, self.sync_all]
        if sum(targets) != 1:
            raise ValueError("specify exactly one of slot_id, trek_slug or sync_all")
        return self


class ReconcileRead(BaseModel):
    slot_id: int
    previous_booked: Optional[int] = None
    booked: Optional[int] = None
    capacity: Optional[int] = None
    status: Optional[SlotStatus] = None
    over_capacity: bool = False
    rejected_booking_ids: List[int] = Field(default_factory=list)
    error: Optional[str] = None


class VoucherValidate(BaseModel):
    code: str = Field(min_length=1, max_length=64)
    amount: int = Field(ge=1)


class VoucherQuoteRead(BaseModel):
    valid: bool
    voucher_id: Optional[int] = None
    discount_amount: Optional[int] = None
    final_amount: Optional[int] = None
    error: Optional[str] = None


class VoucherCheckRead(BaseModel):
    valid: bool
    code: Optional[str] = None
    discount_percent: Optional[int] = None
    discount_amount: Optional[int] = None
    valid_until: Optional[datetime] = None
    error: Optional[str] = None


class VoucherCreate(BaseModel):
    code: str = Field(min_length=1, max_length=64)
    discount_percent: Optional[int] = Field(default=None, ge=1, le=100)
    discount_amount: Optional[int] = Field(default=None, ge=1)
    valid_until: Optional[datetime] = None
    single_use: bool = True
    user_id: Optional[int] = None
    minimum_amount: Optional[int] = Field(default=None, ge=0)
    maximum_discount: Optional[int] = Field(default=None, ge=0)
    is_active: bool = True

    @field_validator("code")
    @classmethod
    def _normalize_code(cls, value: str) -> str:
        return value.strip().upper()

    @field_validator("valid_until")
    @classmethod
    def _stored_as_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return to_utc_naive(value) if value is not None else None

    @model_validator(mode="after")
    def _one_discount_kind(self) -> "VoucherCreate":
        if (self.discount_percent is None) == (self.discount_amount is None):
            raise ValueError("exactly one of discount_percent or discount_amount is required")
        return self


class VoucherRead(BaseModel):
    voucher_id: int
    code: str
    discount_percent: Optional[int] = None
    discount_amount: Optional[int] = None
    valid_until: Optional[datetime] = None
    is_active: bool
    single_use: bool
    is_used: bool
    user_id: Optional[int] = None
    minimum_amount: Optional[int] = None
    maximum_discount: Optional[int] = None
    created_at: datetime

    @classmethod
    def from_db(cls, *, voucher: Voucher) -> "VoucherRead":
        return cls(
            voucher_id=voucher.id,
            code=voucher.code,
            discount_percent=voucher.discount_percent,
            discount_amount=voucher.discount_amount,
            valid_until=voucher.valid_until,
            is_active=voucher.is_active,
            single_use=voucher.single_use,
            is_used=voucher.is_used,
            user_id=voucher.user_id,
            minimum_amount=voucher.minimum_amount,
            maximum_discount=voucher.maximum_discount,
            created_at=voucher.created_at,
        )


class SubRecordGapRead(BaseModel):
    booking_id: int
    expected_records: int
    actual_records: int
    repaired: bool
