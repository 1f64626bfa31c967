from collections.abc import Callable
from datetime import date
from typing import TypeVar

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from stockledger.api.deps import get_actor, get_ledger_service
from stockledger.core.errors import (
    InsufficientStockError,
    LedgerConflictError,
    LedgerError,
    NotFoundError,
    StockConsumedError,
)
from stockledger.models.ledger import EntryKind
from stockledger.schemas.ledger import (
    AdditionCreateRequest,
    AdjustmentCreateRequest,
    BalanceOut,
    BatchOut,
    EntryUpdateRequest,
    ExpireDueRequest,
    LedgerEntryOut,
    MonthlyLedgerOut,
    MonthlySummaryOut,
    MonthlyViewOut,
    ReturnCreateRequest,
    SaleCreateRequest,
    StockAlertOut,
    WriteOffCreateRequest,
)
from stockledger.services.ledger_service import LedgerService

router = APIRouter(prefix="/stock", tags=["Stock Ledger"])

T = TypeVar("T")


def _http_error(exc: LedgerError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, (StockConsumedError, LedgerConflictError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, InsufficientStockError):
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": str(exc), "requested": exc.requested, "allocatable": exc.allocatable},
        )
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


def _call(operation: Callable[..., T], *args, **kwargs) -> T:
    try:
        return operation(*args, **kwargs)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@router.get("/alerts", response_model=list[StockAlertOut])
def list_alerts(
    venue_id: str | None = None,
    product_id: str | None = None,
    active_only: bool = True,
    service: LedgerService = Depends(get_ledger_service),
):
    return service.list_alerts(venue_id, product_id, active_only=active_only)


@router.post("/alerts/{alert_id}/resolve", response_model=StockAlertOut)
def resolve_alert(
    alert_id: int,
    actor: str | None = Depends(get_actor),
    service: LedgerService = Depends(get_ledger_service),
):
    return _call(service.resolve_alert, alert_id, actor=actor)


@router.post("/{venue_id}/{product_id}/additions", response_model=LedgerEntryOut, status_code=status.HTTP_201_CREATED)
def record_addition(
    venue_id: str,
    product_id: str,
    payload: AdditionCreateRequest,
    actor: str | None = Depends(get_actor),
    service: LedgerService = Depends(get_ledger_service),
):
    return _call(
        service.record_addition,
        venue_id,
        product_id,
        payload.quantity,
        unit_cost=payload.unit_cost,
        batch_number=payload.batch_number,
        expire_date=payload.expire_date,
        entry_date=payload.entry_date,
        notes=payload.notes,
        actor=actor,
    )


@router.post("/{venue_id}/{product_id}/sales", response_model=LedgerEntryOut, status_code=status.HTTP_201_CREATED)
def record_sale(
    venue_id: str,
    product_id: str,
    payload: SaleCreateRequest,
    actor: str | None = Depends(get_actor),
    service: LedgerService = Depends(get_ledger_service),
):
    return _call(
        service.record_sale,
        venue_id,
        product_id,
        payload.quantity,
        entry_date=payload.entry_date,
        notes=payload.notes,
        actor=actor,
    )


@router.post("/{venue_id}/{product_id}/expiries", response_model=LedgerEntryOut, status_code=status.HTTP_201_CREATED)
def record_expiry(
    venue_id: str,
    product_id: str,
    payload: WriteOffCreateRequest,
    actor: str | None = Depends(get_actor),
    service: LedgerService = Depends(get_ledger_service),
):
    return _call(
        service.record_expiry,
        venue_id,
        product_id,
        payload.quantity,
        batch_number=payload.batch_number,
        entry_date=payload.entry_date,
        notes=payload.notes,
        actor=actor,
    )


@router.post("/{venue_id}/{product_id}/damages", response_model=LedgerEntryOut, status_code=status.HTTP_201_CREATED)
def record_damage(
    venue_id: str,
    product_id: str,
    payload: WriteOffCreateRequest,
    actor: str | None = Depends(get_actor),
    service: LedgerService = Depends(get_ledger_service),
):
    return _call(
        service.record_damage,
        venue_id,
        product_id,
        payload.quantity,
        batch_number=payload.batch_number,
        entry_date=payload.entry_date,
        notes=payload.notes,
        actor=actor,
    )


@router.post("/{venue_id}/{product_id}/returns", response_model=LedgerEntryOut, status_code=status.HTTP_201_CREATED)
def record_return(
    venue_id: str,
    product_id: str,
    payload: ReturnCreateRequest,
    actor: str | None = Depends(get_actor),
    service: LedgerService = Depends(get_ledger_service),
):
    return _call(
        service.record_return,
        venue_id,
        product_id,
        payload.quantity,
        unit_cost=payload.unit_cost,
        batch_number=payload.batch_number,
        expire_date=payload.expire_date,
        entry_date=payload.entry_date,
        notes=payload.notes,
        actor=actor,
    )


@router.post("/{venue_id}/{product_id}/adjustments", response_model=LedgerEntryOut, status_code=status.HTTP_201_CREATED)
def record_adjustment(
    venue_id: str,
    product_id: str,
    payload: AdjustmentCreateRequest,
    actor: str | None = Depends(get_actor),
    service: LedgerService = Depends(get_ledger_service),
):
    return _call(
        service.record_adjustment,
        venue_id,
        product_id,
        payload.quantity,
        entry_date=payload.entry_date,
        reason=payload.reason,
        unit_cost=payload.unit_cost,
        batch_number=payload.batch_number,
        expire_date=payload.expire_date,
        actor=actor,
    )


@router.post("/{venue_id}/{product_id}/expire-due", response_model=list[LedgerEntryOut])
def expire_due_batches(
    venue_id: str,
    product_id: str,
    payload: ExpireDueRequest,
    actor: str | None = Depends(get_actor),
    service: LedgerService = Depends(get_ledger_service),
):
    return _call(service.expire_due_batches, venue_id, product_id, payload.as_of, actor=actor)


@router.get("/{venue_id}/{product_id}/balance", response_model=BalanceOut)
def get_current_balance(
    venue_id: str,
    product_id: str,
    service: LedgerService = Depends(get_ledger_service),
):
    return _call(service.get_current_balance, venue_id, product_id)


@router.get("/{venue_id}/{product_id}/months/{year}/{month}", response_model=MonthlyViewOut)
def get_monthly_view(
    venue_id: str,
    product_id: str,
    year: int,
    month: int,
    service: LedgerService = Depends(get_ledger_service),
):
    return _call(service.get_monthly_view, venue_id, product_id, year, month)


@router.get("/{venue_id}/{product_id}/months/{year}/{month}/summary", response_model=MonthlySummaryOut)
def get_monthly_summary(
    venue_id: str,
    product_id: str,
    year: int,
    month: int,
    service: LedgerService = Depends(get_ledger_service),
):
    summary = _call(service.get_monthly_summary, venue_id, product_id, year, month)
    if not summary:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Monthly summary not found")
    return summary


@router.get("/{venue_id}/{product_id}/history", response_model=list[LedgerEntryOut])
def get_history(
    venue_id: str,
    product_id: str,
    date_from: date | None = Query(default=None),
    date_to: date | None = Query(default=None),
    kind: list[EntryKind] | None = Query(default=None),
    service: LedgerService = Depends(get_ledger_service),
):
    return _call(service.get_history, venue_id, product_id, date_from, date_to, kind)


@router.get("/{venue_id}/{product_id}/batches", response_model=list[BatchOut])
def get_batches(
    venue_id: str,
    product_id: str,
    on_date: date | None = Query(default=None),
    include_exhausted: bool = False,
    service: LedgerService = Depends(get_ledger_service),
):
    return _call(
        service.get_batches,
        venue_id,
        product_id,
        on_date=on_date,
        include_exhausted=include_exhausted,
    )


@router.patch("/{venue_id}/{product_id}/entries/{entry_id}", response_model=LedgerEntryOut)
def update_entry(
    venue_id: str,
    product_id: str,
    entry_id: int,
    payload: EntryUpdateRequest,
    actor: str | None = Depends(get_actor),
    service: LedgerService = Depends(get_ledger_service),
):
    return _call(
        service.update_entry,
        venue_id,
        product_id,
        entry_id,
        actor=actor,
        **payload.model_dump(exclude_unset=True),
    )


@router.delete("/{venue_id}/{product_id}/entries/{entry_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_entry(
    venue_id: str,
    product_id: str,
    entry_id: int,
    actor: str | None = Depends(get_actor),
    service: LedgerService = Depends(get_ledger_service),
):
    _call(service.delete_entry, venue_id, product_id, entry_id, actor=actor)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{venue_id}/{product_id}/recalculate", response_model=list[MonthlyLedgerOut])
def recalculate(
    venue_id: str,
    product_id: str,
    year: int | None = None,
    month: int | None = None,
    actor: str | None = Depends(get_actor),
    service: LedgerService = Depends(get_ledger_service),
):
    return _call(service.recalculate, venue_id, product_id, year, month, actor=actor)
