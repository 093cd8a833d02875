from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Literal, Optional

from .request_id import get_request_id

AuditAction = Literal[
    "booking.created",
    "booking.rejected",
    "booking.confirmed",
    "booking.cancelled",
    "booking.completed",
    "booking.payment_updated",
    "booking.voucher_declined",
    "slot.reconciled",
    "slot.capacity_exceeded",
    "voucher.created",
    "voucher.deactivated",
]
AuditInitiator = Literal["user", "system", "admin"]

_audit_logger = logging.getLogger("audit")
_audit_logger.setLevel(logging.INFO)
if not _audit_logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(message)s"))
    _audit_logger.addHandler(handler)
_audit_logger.propagate = False


def _enum_to_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(getattr(value, "value", value))


def emit_audit_log(
    *,
    action: AuditAction,
    initiator: AuditInitiator,
    booking_id: Optional[int] = None,
    slot_id: Optional[int] = None,
    trek_slug: Optional[str] = None,
    voucher_id: Optional[int] = None,
    user_id: Optional[int] = None,
    participants: Optional[int] = None,
    status_from: Any = None,
    status_to: Any = None,
    message: Optional[str] = None,
    extra: Optional[dict[str, Any]] = None,
) -> None:
    """Emit structured JSON audit log. Raises RuntimeError if logging fails."""
    payload: dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "level": "info",
        "action": action,
        "initiator": initiator,
        "request_id": get_request_id(),
        "booking_id": booking_id,
        "slot_id": slot_id,
        "trek_slug": trek_slug,
        "voucher_id": voucher_id,
        "user_id": user_id,
        "participants": participants,
        "status_from": _enum_to_str(status_from),
        "status_to": _enum_to_str(status_to),
    }
    if message is not None:
        payload["message"] = message
    if extra:
        payload.update({k: _enum_to_str(v) if hasattr(v, "value") else v for k, v in extra.items()})

    compact_payload = {k: v for k, v in payload.items() if v is not None}
    try:
        _audit_logger.info(json.dumps(compact_payload, ensure_ascii=True, default=str))
    except Exception as exc:  # pragma: no cover
        raise RuntimeError("failed to emit audit log") from exc
