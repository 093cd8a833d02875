from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..deps import get_admin_role, get_current_user_id, get_session
from ..domain.errors import DomainError
from ..infrastructure.repositories import SqlAlchemySlotRepository, SqlAlchemyUnitOfWork
from ..models import UserRole
from ..schemas import ReconcileRead, SlotAvailability, SlotCreate, SlotRead, SlotSyncRequest
from ..usecases import slots as slot_usecase
from ..usecases.slots import ReconcileResult, SweepEntry
from ..utils.time import today_ist
from .errors import to_http_exception

router = APIRouter(prefix="", tags=["slots"], dependencies=[Depends(get_current_user_id)])


def _reconcile_read(slot_id: int, result: Optional[ReconcileResult], error: Optional[str] = None) -> ReconcileRead:
    if result is None:
        return ReconcileRead(slot_id=slot_id, error=error)
    return ReconcileRead(
        slot_id=result.slot_id,
        previous_booked=result.previous_booked,
        booked=result.booked,
        capacity=result.capacity,
        status=result.status,
        over_capacity=result.over_capacity,
        rejected_booking_ids=result.rejected,
    )


def _sweep_read(entries: List[SweepEntry]) -> list[ReconcileRead]:
    return [_reconcile_read(entry.slot_id, entry.result, entry.error) for entry in entries]


@router.get("/treks/{trek_slug}/slots/availability", response_model=List[SlotAvailability])
async def list_availability(
    trek_slug: str,
    start: Optional[date] = Query(default=None, description="first departure date, defaults to today (IST)"),
    end: Optional[date] = Query(default=None, description="last departure date"),
    session: AsyncSession = Depends(get_session),
) -> list[SlotAvailability]:
    start = start or today_ist()
    if end is not None and end < start:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="end must not be before start")
    slot_repo = SqlAlchemySlotRepository(session)
    rows = await slot_usecase.list_availability(slot_repo, trek_slug=trek_slug, start=start, end=end)
    return [
        SlotAvailability(**SlotRead.from_db(slot=entry["slot"]).model_dump(), available=entry["available"])
        for entry in rows
    ]


@router.post("/treks/{trek_slug}/slots", response_model=SlotRead, status_code=status.HTTP_201_CREATED)
async def create_slot(
    trek_slug: str,
    payload: SlotCreate,
    session: AsyncSession = Depends(get_session),
    _: UserRole = Depends(get_admin_role),
) -> SlotRead:
    try:
        slot = await slot_usecase.create_slot(
            SqlAlchemyUnitOfWork(session),
            trek_slug=trek_slug,
            departure_date=payload.departure_date,
            capacity=payload.capacity,
            status=payload.status,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except IntegrityError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="slot already exists for this date") from exc
    except DomainError as exc:
        raise to_http_exception(exc) from exc
    return SlotRead.from_db(slot=slot)


@router.post("/admin/slots/{slot_id}/close", response_model=SlotRead)
async def close_slot(
    slot_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
    _: UserRole = Depends(get_admin_role),
) -> SlotRead:
    try:
        slot = await slot_usecase.close_slot(SqlAlchemyUnitOfWork(session), slot_id=slot_id)
    except DomainError as exc:
        raise to_http_exception(exc) from exc
    return SlotRead.from_db(slot=slot)


@router.post("/admin/slots/sync", response_model=List[ReconcileRead])
async def sync_slots(
    payload: SlotSyncRequest,
    session: AsyncSession = Depends(get_session),
    _: UserRole = Depends(get_admin_role),
) -> list[ReconcileRead]:
    """Repair sweep: recompute booked counts for one slot, one trek or everything."""
    uow = SqlAlchemyUnitOfWork(session)
    if payload.slot_id is not None:
        try:
            result = await slot_usecase.reconcile_slot(uow, slot_id=payload.slot_id)
        except DomainError as exc:
            raise to_http_exception(exc) from exc
        return [_reconcile_read(payload.slot_id, result)]
    if payload.trek_slug is not None:
        return _sweep_read(await slot_usecase.reconcile_trek(uow, trek_slug=payload.trek_slug))
    return _sweep_read(await slot_usecase.reconcile_all(uow))
