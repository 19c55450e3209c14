from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.orm import Session

from dentalstock.app.api.deps import get_actor, get_db
from dentalstock.app.db.models.models_v1 import Reservation
from dentalstock.app.schemas.reservation import ReservationRead
from dentalstock.services import commands
from dentalstock.services.commands import AddUsedMaterial, CreateReservation, MarkUsed

router = APIRouter(prefix="/reservations")


class CancelPayload(BaseModel):
    notes: str | None = None


@router.get("", response_model=list[ReservationRead])
def list_reservations(
    case_id: int | None = None,
    product_id: int | None = None,
    db: Session = Depends(get_db),
):
    stmt = select(Reservation).order_by(Reservation.id)
    if case_id is not None:
        stmt = stmt.where(Reservation.case_id == case_id)
    if product_id is not None:
        stmt = stmt.where(Reservation.product_id == product_id)
    return db.execute(stmt).scalars().all()


@router.post("", response_model=ReservationRead, status_code=201)
def create_reservation(
    payload: CreateReservation,
    db: Session = Depends(get_db),
    actor: str | None = Depends(get_actor),
):
    return commands.create_reservation(db, payload, actor=actor)


@router.post("/batch", response_model=list[ReservationRead], status_code=201)
def create_reservations(
    payload: list[CreateReservation],
    db: Session = Depends(get_db),
    actor: str | None = Depends(get_actor),
):
    return commands.create_reservations(db, payload, actor=actor)


@router.post("/used-material", response_model=ReservationRead, status_code=201)
def add_used_material(
    payload: AddUsedMaterial,
    db: Session = Depends(get_db),
    actor: str | None = Depends(get_actor),
):
    return commands.add_used_material(db, payload, actor=actor)


@router.post("/{reservation_id}/confirm", response_model=ReservationRead)
def confirm_reservation(
    reservation_id: int,
    db: Session = Depends(get_db),
    actor: str | None = Depends(get_actor),
):
    return commands.confirm_reservation(db, reservation_id, actor=actor)


@router.post("/{reservation_id}/prepare", response_model=ReservationRead)
def mark_prepared(
    reservation_id: int,
    db: Session = Depends(get_db),
    actor: str | None = Depends(get_actor),
):
    return commands.mark_prepared(db, reservation_id, actor=actor)


@router.post("/{reservation_id}/use", response_model=ReservationRead)
def mark_used(
    reservation_id: int,
    payload: MarkUsed | None = None,
    db: Session = Depends(get_db),
    actor: str | None = Depends(get_actor),
):
    return commands.mark_used(db, reservation_id, payload, actor=actor)


@router.post("/{reservation_id}/cancel", response_model=ReservationRead)
def cancel_reservation(
    reservation_id: int,
    payload: CancelPayload | None = None,
    db: Session = Depends(get_db),
    actor: str | None = Depends(get_actor),
):
    notes = payload.notes if payload else None
    return commands.cancel_reservation(db, reservation_id, actor=actor, notes=notes)
