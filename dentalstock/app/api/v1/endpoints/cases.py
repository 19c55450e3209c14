from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from dentalstock.app.api.deps import get_actor, get_db
from dentalstock.app.schemas.case import CancelCasePayload, CloseCasePayload, CloseResultRead, ReadinessRead
from dentalstock.services import commands
from dentalstock.services.readiness import evaluate_case, load_reservations, summarize

router = APIRouter(prefix="/cases")


@router.get("/{case_id}/readiness", response_model=ReadinessRead)
def get_readiness(case_id: int, db: Session = Depends(get_db)):
    readiness = evaluate_case(db, case_id)
    summary = summarize(load_reservations(db, case_id))
    return ReadinessRead(
        case_id=case_id,
        readiness=readiness,
        total=summary.total,
        pending=summary.pending,
        confirmed=summary.confirmed,
        prepared=summary.prepared,
        used=summary.used,
        cancelled=summary.cancelled,
        out_of_stock=summary.out_of_stock,
    )


@router.post("/{case_id}/close", response_model=CloseResultRead)
def close_case(
    case_id: int,
    payload: CloseCasePayload | None = None,
    db: Session = Depends(get_db),
    actor: str | None = Depends(get_actor),
):
    result = commands.close_case(db, case_id, actor=actor, notes=payload.notes if payload else None)
    return CloseResultRead(**asdict(result))


@router.post("/{case_id}/cancel", response_model=CloseResultRead)
def cancel_case(
    case_id: int,
    payload: CancelCasePayload | None = None,
    db: Session = Depends(get_db),
    actor: str | None = Depends(get_actor),
):
    result = commands.cancel_case(db, case_id, actor=actor, reason=payload.reason if payload else None)
    return CloseResultRead(**asdict(result))
