"""Booking lifecycle events and the sink that receives them."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Optional, Protocol

from .models import Booking
from .utils.audit_log import AuditInitiator, emit_audit_log

logger = logging.getLogger(__name__)


class BookingEventType(StrEnum):
    CREATED = "booking.created"
    REJECTED = "booking.rejected"
    CONFIRMED = "booking.confirmed"
    CANCELLED = "booking.cancelled"
    COMPLETED = "booking.completed"
    PAYMENT_UPDATED = "booking.payment_updated"


@dataclass(frozen=True)
class BookingEvent:
    type: BookingEventType
    booking_id: int
    slot_id: int
    trek_slug: str
    user_id: int
    participants: int
    initiator: AuditInitiator
    status_from: Optional[str] = None
    status_to: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def for_booking(
        cls,
        event_type: BookingEventType,
        booking: Booking,
        *,
        initiator: AuditInitiator,
        status_from: Optional[str] = None,
        **extra: Any,
    ) -> "BookingEvent":
        return cls(
            type=event_type,
            booking_id=booking.id,
            slot_id=booking.slot_id,
            trek_slug=booking.trek_slug,
            user_id=booking.user_id,
            participants=booking.participants,
            initiator=initiator,
            status_from=status_from,
            status_to=booking.status,
            extra=extra,
        )


class NotificationSink(Protocol):
    def notify(self, event: BookingEvent) -> None: ...


class AuditLogNotificationSink:
    """Writes every lifecycle event to the audit log; email delivery reads from there."""

    def notify(self, event: BookingEvent) -> None:
        emit_audit_log(
            action=event.type.value,  # type: ignore[arg-type]
            initiator=event.initiator,
            booking_id=event.booking_id,
            slot_id=event.slot_id,
            trek_slug=event.trek_slug,
            user_id=event.user_id,
            participants=event.participants,
            status_from=event.status_from,
            status_to=event.status_to,
            extra=event.extra or None,
        )


def publish(sink: NotificationSink, event: BookingEvent) -> None:
    """Fire-and-forget: a failing sink never fails the booking operation."""
    try:
        sink.notify(event)
    except Exception:
        logger.exception("notification sink failed for %s on booking %s", event.type.value, event.booking_id)
