from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from ..models import Voucher
from .errors import VoucherInvalidError


@dataclass(frozen=True)
class Pricing:
    base_amount: int
    gst_amount: int
    voucher_discount: int
    total_amount: int

    @property
    def gross_amount(self) -> int:
        return self.base_amount + self.gst_amount


@dataclass(frozen=True)
class VoucherQuote:
    voucher_id: int
    discount_amount: int
    final_amount: int


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def compute_gst(base_amount: int, *, rate_percent: int = 5) -> int:
    return round_half_up(Decimal(base_amount) * Decimal(rate_percent) / Decimal(100))


def compute_pricing(base_amount: int, *, rate_percent: int = 5, discount: int = 0) -> Pricing:
    """Total is base plus GST less the discount clamped to [0, base + GST]."""
    if base_amount < 0:
        raise ValueError("base_amount must be non-negative")
    gst_amount = compute_gst(base_amount, rate_percent=rate_percent)
    gross = base_amount + gst_amount
    clamped = min(max(discount, 0), gross)
    return Pricing(
        base_amount=base_amount,
        gst_amount=gst_amount,
        voucher_discount=clamped,
        total_amount=gross - clamped,
    )


def validate_voucher(
    voucher: Optional[Voucher],
    *,
    user_id: int,
    now: datetime,
    already_redeemed: bool = False,
) -> Voucher:
    """Eligibility checks that do not depend on the order amount."""
    if voucher is None or not voucher.is_active:
        raise VoucherInvalidError("invalid voucher code")
    if voucher.valid_until is not None and voucher.valid_until <= now:
        raise VoucherInvalidError("this voucher has expired")
    if voucher.single_use and voucher.is_used:
        raise VoucherInvalidError("this voucher has already been used")
    if not voucher.single_use and already_redeemed:
        raise VoucherInvalidError("you have already used this voucher")
    if voucher.user_id is not None and voucher.user_id != user_id:
        raise VoucherInvalidError("this voucher is not valid for your account")
    return voucher


def quote_voucher(
    voucher: Optional[Voucher],
    *,
    amount: int,
    user_id: int,
    now: datetime,
    already_redeemed: bool = False,
) -> VoucherQuote:
    """
    Validate a voucher for ``amount`` and compute its discount.

    Checks run in order: exists and active, not expired, not consumed,
    personal scope, minimum amount. Raises VoucherInvalidError on the first
    failure. Percentage discounts round half up, then clamp to
    ``maximum_discount`` and to the amount itself.
    """
    voucher = validate_voucher(voucher, user_id=user_id, now=now, already_redeemed=already_redeemed)
    if voucher.minimum_amount and amount < voucher.minimum_amount:
        raise VoucherInvalidError(f"minimum order amount of {voucher.minimum_amount} required for this voucher")

    if voucher.discount_percent is not None:
        raw = round_half_up(Decimal(amount) * Decimal(voucher.discount_percent) / Decimal(100))
    else:
        raw = voucher.discount_amount or 0
    cap = voucher.maximum_discount if voucher.maximum_discount else amount
    discount = max(0, min(raw, cap, amount))
    return VoucherQuote(voucher_id=voucher.id, discount_amount=discount, final_amount=amount - discount)
