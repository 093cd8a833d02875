from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional

from ..domain.errors import VoucherAlreadyConsumedError, VoucherInvalidError, VoucherNotFoundError
from ..domain.pricing import VoucherQuote, quote_voucher, validate_voucher
from ..domain.repositories import UnitOfWork, VoucherRepository
from ..models import Voucher
from ..utils.audit_log import emit_audit_log

logger = logging.getLogger(__name__)


async def _redeemed(voucher_repo: VoucherRepository, voucher: Voucher | None, user_id: int) -> bool:
    if voucher is None or voucher.single_use:
        return False
    return await voucher_repo.has_redeemed(voucher.id, user_id)


async def apply_voucher(
    voucher_repo: VoucherRepository,
    *,
    code: str,
    amount: int,
    user_id: int,
    now: datetime,
) -> tuple[Voucher, VoucherQuote]:
    """Quote ``code`` against ``amount``. Raises VoucherInvalidError; writes nothing."""
    voucher = await voucher_repo.get_by_code(code)
    quote = quote_voucher(
        voucher,
        amount=amount,
        user_id=user_id,
        now=now,
        already_redeemed=await _redeemed(voucher_repo, voucher, user_id),
    )
    if voucher is None:
        raise VoucherInvalidError("invalid voucher code")
    return voucher, quote


async def check_voucher(
    voucher_repo: VoucherRepository,
    *,
    code: str,
    user_id: int,
    now: datetime,
) -> Voucher:
    """Validity check without an order amount; the minimum amount is not evaluated."""
    voucher = await voucher_repo.get_by_code(code)
    return validate_voucher(
        voucher,
        user_id=user_id,
        now=now,
        already_redeemed=await _redeemed(voucher_repo, voucher, user_id),
    )


async def consume_voucher(
    voucher_repo: VoucherRepository,
    voucher: Voucher,
    *,
    user_id: int,
    booking_id: int,
    now: datetime,
) -> None:
    """
    Claim the voucher for ``booking_id`` inside the caller's transaction.

    Single-use vouchers flip ``is_used`` with a conditional update keyed on the
    unconsumed state; multi-use vouchers insert a per-user redemption row.
    Either losing a race raises VoucherAlreadyConsumedError.
    """
    if voucher.single_use:
        claimed = await voucher_repo.mark_used(voucher.id, user_id=user_id, booking_id=booking_id, used_at=now)
    else:
        claimed = await voucher_repo.add_redemption(voucher.id, user_id=user_id, booking_id=booking_id, redeemed_at=now)
    if not claimed:
        logger.warning("voucher %s already consumed; booking %s lost the claim", voucher.code, booking_id)
        raise VoucherAlreadyConsumedError("this voucher has already been used")


def _validate_new_voucher(
    *,
    code: str,
    discount_percent: Optional[int],
    discount_amount: Optional[int],
    valid_until: Optional[datetime],
    minimum_amount: Optional[int],
    maximum_discount: Optional[int],
    now: datetime,
) -> None:
    if not code:
        raise ValueError("voucher code is required")
    if (discount_percent is None) == (discount_amount is None):
        raise ValueError("exactly one of discount_percent or discount_amount is required")
    if discount_percent is not None and not 1 <= discount_percent <= 100:
        raise ValueError("discount percentage must be between 1 and 100")
    if discount_amount is not None and discount_amount < 1:
        raise ValueError("discount amount must be >= 1")
    if valid_until is not None and valid_until <= now:
        raise ValueError("valid_until must be in the future")
    for name, value in (("minimum_amount", minimum_amount), ("maximum_discount", maximum_discount)):
        if value is not None and value < 0:
            raise ValueError(f"{name} must be >= 0")


async def create_voucher(
    uow: UnitOfWork,
    *,
    code: str,
    now: datetime,
    discount_percent: Optional[int] = None,
    discount_amount: Optional[int] = None,
    valid_until: Optional[datetime] = None,
    single_use: bool = True,
    user_id: Optional[int] = None,
    minimum_amount: Optional[int] = None,
    maximum_discount: Optional[int] = None,
    is_active: bool = True,
) -> Voucher:
    """
    Issue a voucher. Codes are stored upper-cased; a duplicate code surfaces as
    the store's IntegrityError.
    """
    code = code.strip().upper()
    _validate_new_voucher(
        code=code,
        discount_percent=discount_percent,
        discount_amount=discount_amount,
        valid_until=valid_until,
        minimum_amount=minimum_amount,
        maximum_discount=maximum_discount,
        now=now,
    )
    async with uow.transaction():
        voucher = await uow.vouchers.add(
            Voucher(
                code=code,
                discount_percent=discount_percent,
                discount_amount=discount_amount,
                valid_until=valid_until,
                is_active=is_active,
                single_use=single_use,
                is_used=False,
                user_id=user_id,
                minimum_amount=minimum_amount,
                maximum_discount=maximum_discount,
                created_at=now,
            )
        )
    logger.info("voucher %s issued", voucher.code)
    emit_audit_log(
        action="voucher.created",
        initiator="admin",
        voucher_id=voucher.id,
        user_id=user_id,
        extra={"voucher_code": voucher.code, "single_use": single_use},
    )
    return voucher


async def deactivate_voucher(uow: UnitOfWork, *, voucher_id: int) -> Voucher:
    """Withdraw a voucher. The row is kept; deactivating twice is a no-op."""
    async with uow.transaction():
        voucher = await uow.vouchers.get_for_update(voucher_id)
        if voucher is None:
            raise VoucherNotFoundError(f"voucher {voucher_id} not found")
        if not voucher.is_active:
            return voucher
        voucher.is_active = False
        await uow.vouchers.save(voucher)
    emit_audit_log(
        action="voucher.deactivated",
        initiator="admin",
        voucher_id=voucher.id,
        extra={"voucher_code": voucher.code},
    )
    return voucher


async def list_vouchers(voucher_repo: VoucherRepository) -> List[Voucher]:
    return await voucher_repo.list_all()


async def list_user_vouchers(voucher_repo: VoucherRepository, *, user_id: int) -> List[Voucher]:
    """Personal vouchers issued to ``user_id``, newest first."""
    return await voucher_repo.list_for_user(user_id)
