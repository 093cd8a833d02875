from typing import List

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..deps import get_admin_role, get_current_user_id, get_session
from ..domain.errors import DomainError, VoucherInvalidError
from ..infrastructure.repositories import SqlAlchemyUnitOfWork, SqlAlchemyVoucherRepository
from ..models import UserRole
from ..schemas import VoucherCheckRead, VoucherCreate, VoucherQuoteRead, VoucherRead, VoucherValidate
from ..usecases import vouchers as voucher_usecase
from ..utils.time import utc_now_naive
from .errors import to_http_exception

router = APIRouter(prefix="/vouchers", tags=["vouchers"], dependencies=[Depends(get_current_user_id)])
admin_router = APIRouter(prefix="/admin/vouchers", tags=["vouchers"], dependencies=[Depends(get_current_user_id)])


@router.post("/validate", response_model=VoucherQuoteRead)
async def validate_voucher(
    payload: VoucherValidate,
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
) -> VoucherQuoteRead:
    """Quote a voucher for an amount; nothing is consumed until a booking claims it."""
    repo = SqlAlchemyVoucherRepository(session)
    try:
        _, quote = await voucher_usecase.apply_voucher(
            repo,
            code=payload.code,
            amount=payload.amount,
            user_id=user_id,
            now=utc_now_naive(),
        )
    except VoucherInvalidError as exc:
        return VoucherQuoteRead(valid=False, error=exc.message)
    return VoucherQuoteRead(
        valid=True,
        voucher_id=quote.voucher_id,
        discount_amount=quote.discount_amount,
        final_amount=quote.final_amount,
    )


@router.get("/check", response_model=VoucherCheckRead)
async def check_voucher(
    code: str = Query(..., min_length=1, max_length=64),
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
) -> VoucherCheckRead:
    repo = SqlAlchemyVoucherRepository(session)
    try:
        voucher = await voucher_usecase.check_voucher(repo, code=code, user_id=user_id, now=utc_now_naive())
    except VoucherInvalidError as exc:
        return VoucherCheckRead(valid=False, error=exc.message)
    return VoucherCheckRead(
        valid=True,
        code=voucher.code,
        discount_percent=voucher.discount_percent,
        discount_amount=voucher.discount_amount,
        valid_until=voucher.valid_until,
    )


@router.get("/mine", response_model=List[VoucherRead])
async def list_my_vouchers(
    session: AsyncSession = Depends(get_session),
    user_id: int = Depends(get_current_user_id),
) -> list[VoucherRead]:
    rows = await voucher_usecase.list_user_vouchers(SqlAlchemyVoucherRepository(session), user_id=user_id)
    return [VoucherRead.from_db(voucher=voucher) for voucher in rows]


@admin_router.get("", response_model=List[VoucherRead])
async def list_vouchers(
    session: AsyncSession = Depends(get_session),
    _: UserRole = Depends(get_admin_role),
) -> list[VoucherRead]:
    rows = await voucher_usecase.list_vouchers(SqlAlchemyVoucherRepository(session))
    return [VoucherRead.from_db(voucher=voucher) for voucher in rows]


@admin_router.post("", response_model=VoucherRead, status_code=status.HTTP_201_CREATED)
async def create_voucher(
    payload: VoucherCreate,
    session: AsyncSession = Depends(get_session),
    _: UserRole = Depends(get_admin_role),
) -> VoucherRead:
    try:
        voucher = await voucher_usecase.create_voucher(
            SqlAlchemyUnitOfWork(session),
            now=utc_now_naive(),
            **payload.model_dump(),
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except IntegrityError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="voucher code already exists") from exc
    return VoucherRead.from_db(voucher=voucher)


@admin_router.post("/{voucher_id}/deactivate", response_model=VoucherRead)
async def deactivate_voucher(
    voucher_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
    _: UserRole = Depends(get_admin_role),
) -> VoucherRead:
    try:
        voucher = await voucher_usecase.deactivate_voucher(SqlAlchemyUnitOfWork(session), voucher_id=voucher_id)
    except DomainError as exc:
        raise to_http_exception(exc) from exc
    return VoucherRead.from_db(voucher=voucher)
