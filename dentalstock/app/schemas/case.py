from pydantic import BaseModel

from dentalstock.app.db.models.core_types import ReadinessState


class ReadinessRead(BaseModel):
    case_id: int
    readiness: ReadinessState
    total: int
    pending: int
    confirmed: int
    prepared: int
    used: int
    cancelled: int
    out_of_stock: int


class CloseResultRead(BaseModel):
    case_id: int
    used_reservation_ids: list[int]
    released_reservation_ids: list[int]
    pieces_used: int
    pieces_released: int


class CloseCasePayload(BaseModel):
    notes: str | None = None


class CancelCasePayload(BaseModel):
    reason: str | None = None
