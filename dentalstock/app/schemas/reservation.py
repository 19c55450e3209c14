from datetime import datetime

from pydantic import BaseModel, ConfigDict

from dentalstock.app.db.models.core_types import ReservationStatus


class ReservationRead(BaseModel):
    id: int
    case_id: int
    product_id: int
    stock_lot_id: int | None
    quantity: int
    used_quantity: int | None
    status: ReservationStatus
    is_out_of_stock: bool
    requested_ref: str | None
    requested_lot: str | None
    evidence_refs: list[str]
    notes: str | None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
