from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict


class StockLotRead(BaseModel):
    id: int
    product_id: int
    lot_number: str
    expiry_date: date | None

    qty_on_hand: int
    qty_reserved: int
    qty_available: int  # READ ONLY : dérivé, jamais écrit
    unit_cost: Decimal
    received_date: date

    model_config = ConfigDict(from_attributes=True)


class StockMovementRead(BaseModel):
    id: int
    stock_lot_id: int
    product_id: int
    movement_type: str
    quantity: int
    reference_type: str | None
    reference_id: int | None
    reason: str | None
    happened_at: datetime
    created_by: str | None

    model_config = ConfigDict(from_attributes=True)
