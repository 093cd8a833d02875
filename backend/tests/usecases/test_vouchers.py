from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from sqlalchemy.exc import IntegrityError
from trekbook.domain.errors import VoucherAlreadyConsumedError, VoucherInvalidError, VoucherNotFoundError
from trekbook.usecases import vouchers as uc


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


@pytest.mark.asyncio
async def test_apply_voucher_quotes_without_consuming(store: Any, uow: Any) -> None:
    voucher = store.add_voucher("monsoon15", discount_percent=15)

    found, quote = await uc.apply_voucher(uow.vouchers, code="MONSOON15", amount=4000, user_id=1, now=_now())

    assert found is voucher
    assert quote.discount_amount == 600
    assert quote.final_amount == 3400
    assert not voucher.is_used


@pytest.mark.asyncio
async def test_apply_unknown_code(uow: Any) -> None:
    with pytest.raises(VoucherInvalidError):
        await uc.apply_voucher(uow.vouchers, code="NOPE", amount=4000, user_id=1, now=_now())


@pytest.mark.asyncio
async def test_check_ignores_minimum_amount(store: Any, uow: Any) -> None:
    store.add_voucher("BIGSPEND", minimum_amount=50000)

    voucher = await uc.check_voucher(uow.vouchers, code="bigspend", user_id=1, now=_now())

    assert voucher.code == "BIGSPEND"
    with pytest.raises(VoucherInvalidError):
        await uc.apply_voucher(uow.vouchers, code="BIGSPEND", amount=1000, user_id=1, now=_now())


@pytest.mark.asyncio
async def test_check_rejects_expired(store: Any, uow: Any) -> None:
    store.add_voucher("GONE", valid_until=_now() - timedelta(minutes=1))
    with pytest.raises(VoucherInvalidError):
        await uc.check_voucher(uow.vouchers, code="GONE", user_id=1, now=_now())


@pytest.mark.asyncio
async def test_single_use_voucher_consumed_once(store: Any, uow: Any) -> None:
    voucher = store.add_voucher("ONCE")

    await uc.consume_voucher(uow.vouchers, voucher, user_id=1, booking_id=10, now=_now())
    with pytest.raises(VoucherAlreadyConsumedError):
        await uc.consume_voucher(uow.vouchers, voucher, user_id=2, booking_id=11, now=_now())

    assert voucher.is_used
    assert voucher.used_by == 1
    assert voucher.booking_id == 10


@pytest.mark.asyncio
async def test_multi_use_voucher_consumed_once_per_user(store: Any, uow: Any) -> None:
    voucher = store.add_voucher("CREW", single_use=False)

    await uc.consume_voucher(uow.vouchers, voucher, user_id=1, booking_id=10, now=_now())
    await uc.consume_voucher(uow.vouchers, voucher, user_id=2, booking_id=11, now=_now())
    with pytest.raises(VoucherAlreadyConsumedError):
        await uc.consume_voucher(uow.vouchers, voucher, user_id=1, booking_id=12, now=_now())

    assert not voucher.is_used
    with pytest.raises(VoucherInvalidError):
        await uc.check_voucher(uow.vouchers, code="CREW", user_id=1, now=_now())


@pytest.mark.asyncio
async def test_create_voucher_normalizes_code(store: Any, uow: Any) -> None:
    voucher = await uc.create_voucher(
        uow, code=" summit20 ", discount_percent=20, maximum_discount=1500, now=_now()
    )

    assert voucher.code == "SUMMIT20"
    assert store.vouchers[voucher.id] is voucher
    assert voucher.is_active and not voucher.is_used
    found, quote = await uc.apply_voucher(uow.vouchers, code="summit20", amount=10500, user_id=1, now=_now())
    assert found is voucher
    assert quote.discount_amount == 1500


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "kwargs",
    [
        {"discount_percent": 0},
        {"discount_percent": 101},
        {"discount_amount": 0},
        {"discount_percent": 10, "discount_amount": 500},
        {},
        {"discount_percent": 10, "valid_until": datetime(2000, 1, 1)},
        {"discount_percent": 10, "minimum_amount": -1},
    ],
)
async def test_create_voucher_rejects_invalid_terms(store: Any, uow: Any, kwargs: dict[str, Any]) -> None:
    with pytest.raises(ValueError):
        await uc.create_voucher(uow, code="BAD", now=_now(), **kwargs)
    assert store.vouchers == {}


@pytest.mark.asyncio
async def test_create_voucher_duplicate_code(store: Any, uow: Any) -> None:
    store.add_voucher("TWICE")

    with pytest.raises(IntegrityError):
        await uc.create_voucher(uow, code="twice", discount_amount=500, now=_now())
    assert len(store.vouchers) == 1


@pytest.mark.asyncio
async def test_deactivated_voucher_no_longer_applies(store: Any, uow: Any) -> None:
    voucher = store.add_voucher("RETIRED")

    result = await uc.deactivate_voucher(uow, voucher_id=voucher.id)
    again = await uc.deactivate_voucher(uow, voucher_id=voucher.id)

    assert result is again is voucher
    assert not voucher.is_active
    with pytest.raises(VoucherInvalidError):
        await uc.check_voucher(uow.vouchers, code="RETIRED", user_id=1, now=_now())


@pytest.mark.asyncio
async def test_deactivate_missing_voucher(uow: Any) -> None:
    with pytest.raises(VoucherNotFoundError):
        await uc.deactivate_voucher(uow, voucher_id=404)


@pytest.mark.asyncio
async def test_list_vouchers_and_personal_vouchers(store: Any, uow: Any) -> None:
    public = store.add_voucher("EVERYONE")
    mine = store.add_voucher("JUSTME", user_id=7)
    other = store.add_voucher("NOTYOURS", user_id=8)

    assert {v.id for v in await uc.list_vouchers(uow.vouchers)} == {public.id, mine.id, other.id}
    assert [v.id for v in await uc.list_user_vouchers(uow.vouchers, user_id=7)] == [mine.id]
