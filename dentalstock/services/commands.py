"""
Command handlers.

Points d'entrée fins appelés par l'UI / l'API : une commande = une
transaction. Commit en cas de succès puis publication des événements ;
rollback complet sinon (aucun état partiel visible). Aucun retry interne :
ConcurrentModification remonte à l'appelant qui rejoue la commande entière.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import date
from decimal import Decimal
from typing import Iterator

from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from dentalstock.app.db.models.core_types import ReservationStatus
from dentalstock.app.db.models.models_v1 import Reservation
from dentalstock.services import case_closer, events, ledger, procurement, reservations
from dentalstock.services.errors import ConcurrentModification, InvariantViolation, LedgerError

logger = logging.getLogger(__name__)

# lock timeout, serialization failure, deadlock (Postgres)
_RETRYABLE_PGCODES = {"55P03", "40001", "40P01"}


# ---------- Commands ----------
class CreateReservation(BaseModel):
    case_id: int
    product_id: int
    quantity: int = Field(gt=0)
    lot_id: int | None = None
    requested_ref: str | None = Field(default=None, max_length=128)
    requested_lot: str | None = Field(default=None, max_length=128)
    notes: str | None = None


class MarkUsed(BaseModel):
    used_quantity: int | None = Field(default=None, gt=0)
    evidence_refs: list[str] = Field(default_factory=list)
    notes: str | None = None


class AddUsedMaterial(BaseModel):
    case_id: int
    product_id: int
    lot_id: int
    quantity: int = Field(gt=0)
    evidence_refs: list[str] = Field(default_factory=list)
    notes: str | None = None


class ReceivePurchaseOrder(BaseModel):
    product_id: int
    quantity: int = Field(gt=0)
    unit_cost: Decimal = Field(default=Decimal("0"), ge=0)
    lot_id: int | None = None
    lot_number: str | None = Field(default=None, max_length=64)
    expiry_date: date | None = None
    po_id: int | None = None
    idempotency_key: str | None = Field(default=None, max_length=64)


class AdjustStock(BaseModel):
    lot_id: int
    delta: int
    reason: str | None = Field(default=None, max_length=255)


# ---------- Transaction scope ----------
def _is_retryable(exc: OperationalError) -> bool:
    pgcode = getattr(exc.orig, "sqlstate", None) or getattr(exc.orig, "pgcode", None)
    if pgcode in _RETRYABLE_PGCODES:
        return True
    return "database is locked" in str(exc.orig)


@contextmanager
def unit_of_work(db: Session, bus: events.EventBus | None = None) -> Iterator[Session]:
    try:
        yield db
        db.commit()
    except LedgerError as e:
        db.rollback()
        events.drain(db)
        logger.warning("command rejected: %s", e.message)
        raise
    except StaleDataError as e:
        db.rollback()
        events.drain(db)
        raise ConcurrentModification("Reservation was modified concurrently, retry the command") from e
    except IntegrityError as e:
        db.rollback()
        events.drain(db)
        if "unique" in str(e.orig).lower():
            raise ConcurrentModification("Concurrent insert detected, retry the command") from e
        logger.error("integrity error: %s", e.orig)
        raise InvariantViolation(f"Database constraint rejected the change: {e.orig}") from e
    except OperationalError as e:
        db.rollback()
        events.drain(db)
        if _is_retryable(e):
            raise ConcurrentModification("Lock not acquired, retry the command") from e
        raise
    except Exception:
        db.rollback()
        events.drain(db)
        raise

    (bus or events.bus).publish(events.drain(db))


# ---------- Handlers ----------
def create_reservation(db: Session, cmd: CreateReservation, *, actor: str | None = None) -> Reservation:
    with unit_of_work(db):
        r = reservations.create_reservation(
            db,
            cmd.case_id,
            cmd.product_id,
            cmd.quantity,
            cmd.lot_id,
            actor=actor,
            requested_ref=cmd.requested_ref,
            requested_lot=cmd.requested_lot,
            notes=cmd.notes,
        )
    return r


def create_reservations(db: Session, cmds: list[CreateReservation], *, actor: str | None = None) -> list[Reservation]:
    """Panier complet : tout passe ou rien."""
    created = []
    with unit_of_work(db):
        for cmd in cmds:
            created.append(
                reservations.create_reservation(
                    db,
                    cmd.case_id,
                    cmd.product_id,
                    cmd.quantity,
                    cmd.lot_id,
                    actor=actor,
                    requested_ref=cmd.requested_ref,
                    requested_lot=cmd.requested_lot,
                    notes=cmd.notes,
                )
            )
    return created


def confirm_reservation(db: Session, reservation_id: int, *, actor: str | None = None) -> Reservation:
    with unit_of_work(db):
        r = reservations.transition(db, reservation_id, ReservationStatus.confirmed, actor=actor)
    return r


def mark_prepared(db: Session, reservation_id: int, *, actor: str | None = None) -> Reservation:
    with unit_of_work(db):
        r = reservations.transition(db, reservation_id, ReservationStatus.prepared, actor=actor)
    return r


def mark_used(
    db: Session,
    reservation_id: int,
    cmd: MarkUsed | None = None,
    *,
    actor: str | None = None,
) -> Reservation:
    cmd = cmd or MarkUsed()
    with unit_of_work(db):
        r = reservations.transition(
            db,
            reservation_id,
            ReservationStatus.used,
            actor=actor,
            used_quantity=cmd.used_quantity,
            evidence_refs=cmd.evidence_refs,
            notes=cmd.notes,
        )
    return r


def add_used_material(db: Session, cmd: AddUsedMaterial, *, actor: str | None = None) -> Reservation:
    with unit_of_work(db):
        r = reservations.add_used_material(
            db,
            cmd.case_id,
            cmd.product_id,
            cmd.lot_id,
            cmd.quantity,
            actor=actor,
            evidence_refs=cmd.evidence_refs,
            notes=cmd.notes,
        )
    return r


def cancel_reservation(
    db: Session,
    reservation_id: int,
    *,
    actor: str | None = None,
    notes: str | None = None,
) -> Reservation:
    with unit_of_work(db):
        r = reservations.cancel(db, reservation_id, actor=actor, notes=notes)
    return r


def receive_stock(
    db: Session,
    cmd: ReceivePurchaseOrder,
    *,
    actor: str | None = None,
) -> procurement.ReconcileResult:
    with unit_of_work(db):
        result = procurement.receive_stock(
            db,
            cmd.product_id,
            cmd.quantity,
            unit_cost=cmd.unit_cost,
            lot_id=cmd.lot_id,
            lot_number=cmd.lot_number,
            expiry_date=cmd.expiry_date,
            actor=actor,
            po_id=cmd.po_id,
            idempotency_key=cmd.idempotency_key,
        )
    return result


def receive_purchase_order(
    db: Session,
    po_id: int,
    *,
    actor: str | None = None,
) -> list[procurement.ReconcileResult]:
    with unit_of_work(db):
        results = procurement.receive_purchase_order(db, po_id, actor=actor)
    return results


def adjust_stock(db: Session, cmd: AdjustStock, *, actor: str | None = None):
    with unit_of_work(db):
        mv = ledger.adjust(db, cmd.lot_id, cmd.delta, actor=actor, reason=cmd.reason)
    return mv


def close_case(
    db: Session,
    case_id: int,
    *,
    actor: str | None = None,
    notes: str | None = None,
) -> case_closer.CloseResult:
    with unit_of_work(db):
        result = case_closer.close_case(db, case_id, actor=actor, notes=notes)
    return result


def cancel_case(
    db: Session,
    case_id: int,
    *,
    actor: str | None = None,
    reason: str | None = None,
) -> case_closer.CloseResult:
    with unit_of_work(db):
        result = case_closer.cancel_case(db, case_id, actor=actor, reason=reason)
    return result
