from datetime import datetime, timedelta
from typing import Any

import pytest
from trekbook.domain.errors import VoucherInvalidError
from trekbook.domain.pricing import compute_gst, compute_pricing, quote_voucher, validate_voucher
from trekbook.models import Voucher

NOW = datetime(2030, 1, 1, 12, 0, 0)


def _voucher(**overrides: Any) -> Voucher:
    fields: dict[str, Any] = {
        "id": 1,
        "code": "WELCOME20",
        "discount_percent": 20,
        "discount_amount": None,
        "valid_until": NOW + timedelta(days=1),
        "is_active": True,
        "single_use": True,
        "is_used": False,
        "user_id": None,
        "minimum_amount": None,
        "maximum_discount": None,
    }
    fields.update(overrides)
    return Voucher(**fields)


@pytest.mark.parametrize(("base", "gst"), [(0, 0), (9, 0), (10, 1), (30, 2), (10000, 500), (4999, 250)])
def test_gst_rounds_half_up(base: int, gst: int) -> None:
    assert compute_gst(base) == gst


@pytest.mark.parametrize("base", [0, 1, 999, 5000, 123457])
@pytest.mark.parametrize("discount", [0, 100, 10**9])
def test_total_is_base_plus_gst_less_clamped_discount(base: int, discount: int) -> None:
    pricing = compute_pricing(base, discount=discount)
    assert pricing.total_amount == pricing.base_amount + pricing.gst_amount - pricing.voucher_discount
    assert 0 <= pricing.voucher_discount <= pricing.gross_amount
    assert pricing.total_amount >= 0


def test_negative_base_is_rejected() -> None:
    with pytest.raises(ValueError):
        compute_pricing(-1)


def test_percentage_voucher_capped_by_maximum_discount() -> None:
    pricing = compute_pricing(10000)
    quote = quote_voucher(
        _voucher(discount_percent=20, maximum_discount=1500),
        amount=pricing.gross_amount,
        user_id=5,
        now=NOW,
    )
    assert pricing.gst_amount == 500
    assert quote.discount_amount == 1500
    final = compute_pricing(10000, discount=quote.discount_amount)
    assert final.gst_amount == 500
    assert final.voucher_discount == 1500
    assert final.total_amount == 9000


def test_percentage_voucher_rounds_half_up() -> None:
    quote = quote_voucher(_voucher(discount_percent=10), amount=1005, user_id=5, now=NOW)
    assert quote.discount_amount == 101
    assert quote.final_amount == 904


def test_flat_voucher_never_exceeds_amount() -> None:
    quote = quote_voucher(_voucher(discount_percent=None, discount_amount=800), amount=500, user_id=5, now=NOW)
    assert quote.discount_amount == 500
    assert quote.final_amount == 0


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"is_active": False}, "invalid voucher code"),
        ({"valid_until": NOW}, "this voucher has expired"),
        ({"is_used": True}, "this voucher has already been used"),
        ({"user_id": 77}, "this voucher is not valid for your account"),
    ],
)
def test_voucher_rejections(overrides: dict[str, Any], message: str) -> None:
    with pytest.raises(VoucherInvalidError) as excinfo:
        validate_voucher(_voucher(**overrides), user_id=5, now=NOW)
    assert excinfo.value.message == message


def test_missing_voucher_is_invalid() -> None:
    with pytest.raises(VoucherInvalidError):
        validate_voucher(None, user_id=5, now=NOW)


def test_inactive_checked_before_expiry() -> None:
    with pytest.raises(VoucherInvalidError) as excinfo:
        validate_voucher(_voucher(is_active=False, valid_until=NOW - timedelta(days=1)), user_id=5, now=NOW)
    assert excinfo.value.message == "invalid voucher code"


def test_multi_use_voucher_once_per_user() -> None:
    voucher = _voucher(single_use=False)
    validate_voucher(voucher, user_id=5, now=NOW, already_redeemed=False)
    with pytest.raises(VoucherInvalidError):
        validate_voucher(voucher, user_id=5, now=NOW, already_redeemed=True)


def test_personal_voucher_accepted_for_owner() -> None:
    validate_voucher(_voucher(user_id=5), user_id=5, now=NOW)


def test_minimum_amount_enforced_on_quote() -> None:
    with pytest.raises(VoucherInvalidError):
        quote_voucher(_voucher(minimum_amount=2000), amount=1999, user_id=5, now=NOW)
    quote = quote_voucher(_voucher(minimum_amount=2000), amount=2000, user_id=5, now=NOW)
    assert quote.discount_amount == 400
