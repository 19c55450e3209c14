from __future__ import annotations

from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.orm import Session

from dentalstock.app.api.deps import get_actor, get_db
from dentalstock.app.db.models.models_v1 import StockLot, StockMovement
from dentalstock.app.schemas.stock_lot import StockLotRead, StockMovementRead
from dentalstock.services import commands, ledger
from dentalstock.services.commands import AdjustStock, ReceivePurchaseOrder

router = APIRouter()


class AdjustPayload(BaseModel):
    delta: int
    reason: str | None = None


@router.get("/stock-lots", response_model=list[StockLotRead])
def list_stock_lots(
    product_id: int | None = None,
    available_only: bool = False,
    db: Session = Depends(get_db),
):
    """
    Lots (READ ONLY)
    - qty_available est dérivé, jamais modifiable
    - tri FEFO : péremption la plus proche d'abord, lots sans date à la fin
    """
    stmt = select(StockLot).order_by(
        StockLot.product_id,
        StockLot.expiry_date.is_(None),
        StockLot.expiry_date,
        StockLot.id,
    )
    if product_id is not None:
        stmt = stmt.where(StockLot.product_id == product_id)
    if available_only:
        stmt = stmt.where(StockLot.qty_available > 0)
    return db.execute(stmt).scalars().all()


@router.get("/stock-lots/{lot_id}", response_model=StockLotRead)
def get_stock_lot(lot_id: int, db: Session = Depends(get_db)):
    return ledger.get_lot(db, lot_id)


@router.get("/stock-lots/{lot_id}/movements", response_model=list[StockMovementRead])
def list_movements(lot_id: int, db: Session = Depends(get_db)):
    ledger.get_lot(db, lot_id)
    rows = db.execute(
        select(StockMovement)
        .where(StockMovement.stock_lot_id == lot_id)
        .order_by(StockMovement.happened_at, StockMovement.id)
    ).scalars().all()
    return rows


@router.post("/stock-lots/{lot_id}/adjust", response_model=StockMovementRead, status_code=201)
def adjust_stock_lot(
    lot_id: int,
    payload: AdjustPayload,
    db: Session = Depends(get_db),
    actor: str | None = Depends(get_actor),
):
    cmd = AdjustStock(lot_id=lot_id, delta=payload.delta, reason=payload.reason)
    return commands.adjust_stock(db, cmd, actor=actor)


@router.post("/receipts", status_code=201)
def receive_stock(
    payload: ReceivePurchaseOrder,
    db: Session = Depends(get_db),
    actor: str | None = Depends(get_actor),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    if idempotency_key and idempotency_key.strip() and not payload.idempotency_key:
        payload = payload.model_copy(update={"idempotency_key": idempotency_key.strip()})

    result = commands.receive_stock(db, payload, actor=actor)
    return {
        "lot": StockLotRead.model_validate(result.lot),
        "replayed": result.replayed,
        "linked_reservation_ids": result.linked_reservation_ids,
        "readiness": {str(k): v.value for k, v in result.readiness.items()},
    }
