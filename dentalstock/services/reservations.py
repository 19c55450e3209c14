"""
Reservation manager.

Machine à états :

    pending -> confirmed -> prepared -> used
               confirmed -------------> used
    pending | confirmed | prepared -> cancelled

used / cancelled sont terminaux. `pending -> used` n'existe pas : le matériel
ajouté en cours d'intervention passe par `add_used_material`, qui crée la
réservation directement à l'état used (arête initiale explicite).

Chaque transition appelle explicitement l'opération ledger correspondante ;
aucun trigger passif. Ordre de verrouillage : cas (FOR UPDATE) puis lot.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Iterable

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from dentalstock.app.db.models.core_types import (
    ReadinessState,
    ReferenceType,
    ReservationStatus,
    TERMINAL_READINESS,
)
from dentalstock.app.db.models.models_v1 import Case, Product, Reservation, StockLot, utcnow
from dentalstock.services import events, ledger
from dentalstock.services.audit import write_audit
from dentalstock.services.errors import AlreadyClosed, InvalidTransition, InvariantViolation, NotFound
from dentalstock.services.readiness import evaluate_case

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[ReservationStatus, frozenset[ReservationStatus]] = {
    ReservationStatus.pending: frozenset({ReservationStatus.confirmed, ReservationStatus.cancelled}),
    ReservationStatus.confirmed: frozenset(
        {ReservationStatus.prepared, ReservationStatus.used, ReservationStatus.cancelled}
    ),
    ReservationStatus.prepared: frozenset({ReservationStatus.used, ReservationStatus.cancelled}),
    ReservationStatus.used: frozenset(),
    ReservationStatus.cancelled: frozenset(),
}

ADDED_DURING_PROCEDURE_TAG = "[added during procedure]"


# ---------- Helpers ----------
def lock_case(db: Session, case_id: int) -> Case:
    """Verrou logique sur l'ensemble des réservations du cas."""
    case = db.execute(
        select(Case)
        .where(Case.id == case_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if case is None:
        raise NotFound("Case", case_id)
    return case


def ensure_open(case: Case) -> None:
    if case.readiness in TERMINAL_READINESS:
        raise AlreadyClosed(case.id, case.readiness.value)


def get_reservation(db: Session, reservation_id: int) -> Reservation:
    r = db.get(Reservation, reservation_id, populate_existing=True)
    if r is None:
        raise NotFound("Reservation", reservation_id)
    return r


def _lot_for_product(db: Session, lot_id: int, product_id: int) -> StockLot:
    lot = ledger.get_lot(db, lot_id)
    if lot.product_id != product_id:
        raise InvariantViolation(
            f"Lot {lot_id} belongs to product {lot.product_id}, not {product_id}",
            lot_id=lot_id,
            product_id=product_id,
        )
    return lot


def _set_status(db: Session, r: Reservation, status: ReservationStatus, actor: str | None) -> None:
    previous = r.status
    r.status = status
    db.flush()
    events.record(
        db,
        events.ReservationStatusChanged(
            reservation_id=r.id,
            case_id=r.case_id,
            previous=previous,
            current=status,
            actor=actor,
        ),
    )


def sync_case_readiness(db: Session, case_id: int) -> ReadinessState:
    """Recalcule et met en cache la readiness du cas (no-op si terminal)."""
    case = db.get(Case, case_id)
    if case is None:
        raise NotFound("Case", case_id)
    if case.readiness in TERMINAL_READINESS:
        return case.readiness

    db.flush()
    current = evaluate_case(db, case_id)
    if current != case.readiness:
        previous = case.readiness
        case.readiness = current
        db.flush()
        logger.info("case=%s readiness %s -> %s", case_id, previous.value, current.value)
        events.record(db, events.ReadinessChanged(case_id=case_id, previous=previous, current=current))
    return current


def consume_reservation(db: Session, r: Reservation, qty: int, *, held: int, actor: str | None) -> None:
    if r.consumed_at is not None:
        # déjà sorti du stock : jamais de double déduction
        return
    ledger.consume(
        db,
        r.stock_lot_id,
        qty,
        held=held,
        reference=(ReferenceType.reservation, r.id),
        actor=actor,
        reason=f"CASE {r.case_id}",
    )
    r.consumed_at = utcnow()
    r.used_quantity = qty
    db.flush()


# ---------- Lot selection ----------
def select_lot(db: Session, product_id: int, qty: int, *, today: date | None = None) -> StockLot | None:
    """
    FEFO avec repli :
    1) lot à la péremption la plus proche (non nulle) avec available >= qty
    2) sinon le lot au plus grand available parmi ceux >= qty
    3) sinon None -> rupture
    Les lots périmés sont ignorés.
    """
    today = today or date.today()
    lots = (
        db.execute(
            select(StockLot)
            .where(StockLot.product_id == product_id)
            .where(StockLot.qty_available >= qty)
            .where(or_(StockLot.expiry_date.is_(None), StockLot.expiry_date >= today))
            .execution_options(populate_existing=True)
        )
        .scalars()
        .all()
    )

    dated = [lot for lot in lots if lot.expiry_date is not None]
    if dated:
        return min(dated, key=lambda lot: (lot.expiry_date, -lot.qty_available, lot.id))
    if lots:
        return max(lots, key=lambda lot: (lot.qty_available, -lot.id))
    return None


# ---------- Operations ----------
def create_reservation(
    db: Session,
    case_id: int,
    product_id: int,
    quantity: int,
    lot_id: int | None = None,
    *,
    actor: str | None = None,
    requested_ref: str | None = None,
    requested_lot: str | None = None,
    notes: str | None = None,
) -> Reservation:
    """
    Avec un lot : retenue immédiate sur le ledger (InsufficientAvailable sinon).
    Sans lot : demande en rupture (is_out_of_stock), aucun effet ledger.
    """
    if quantity is None or quantity <= 0:
        raise ValueError(f"quantity must be a positive integer (got {quantity!r})")

    case = lock_case(db, case_id)
    ensure_open(case)
    if db.get(Product, product_id) is None:
        raise NotFound("Product", product_id)

    if lot_id is not None:
        _lot_for_product(db, lot_id, product_id)
        ledger.reserve(db, lot_id, quantity)

    r = Reservation(
        case_id=case_id,
        product_id=product_id,
        stock_lot_id=lot_id,
        quantity=quantity,
        status=ReservationStatus.pending,
        is_out_of_stock=lot_id is None,
        requested_ref=requested_ref,
        requested_lot=requested_lot,
        evidence_refs=[],
        notes=notes,
        reserved_by=actor,
    )
    db.add(r)
    db.flush()

    events.record(
        db,
        events.ReservationStatusChanged(
            reservation_id=r.id,
            case_id=case_id,
            previous=None,
            current=ReservationStatus.pending,
            actor=actor,
        ),
    )
    logger.info(
        "reservation=%s case=%s product=%s qty=%s lot=%s out_of_stock=%s",
        r.id,
        case_id,
        product_id,
        quantity,
        lot_id,
        r.is_out_of_stock,
    )
    sync_case_readiness(db, case_id)
    return r


def transition(
    db: Session,
    reservation_id: int,
    new_status: ReservationStatus,
    *,
    actor: str | None = None,
    used_quantity: int | None = None,
    evidence_refs: Iterable[str] = (),
    notes: str | None = None,
    resync: bool = True,
) -> Reservation:
    r = get_reservation(db, reservation_id)
    lock_case(db, r.case_id)
    r = get_reservation(db, reservation_id)

    new_status = ReservationStatus(new_status)
    if new_status not in ALLOWED_TRANSITIONS[r.status]:
        raise InvalidTransition(reservation_id, r.status.value, new_status.value)

    if new_status == ReservationStatus.confirmed:
        if r.stock_lot_id is None or r.is_out_of_stock:
            raise InvalidTransition(
                reservation_id, r.status.value, new_status.value, reason="no stock lot attached"
            )

    elif new_status == ReservationStatus.prepared:
        r.prepared_by = actor
        r.prepared_at = utcnow()

    elif new_status == ReservationStatus.used:
        if r.stock_lot_id is None or r.is_out_of_stock:
            raise InvalidTransition(
                reservation_id, r.status.value, new_status.value, reason="no stock lot attached"
            )
        qty = r.quantity if used_quantity is None else used_quantity
        if qty <= 0:
            raise ValueError(f"used quantity must be positive (got {qty!r}); cancel the reservation instead")

        consume_reservation(db, r, qty, held=r.quantity, actor=actor)
        evidence = list(evidence_refs)
        r.evidence_refs = evidence
        r.used_by = actor
        r.used_at = utcnow()
        write_audit(
            db,
            actor=actor,
            action="MATERIAL_USED",
            entity_type="case_reservations",
            entity_id=r.id,
            case_id=r.case_id,
            lot_id=r.stock_lot_id,
            used_quantity=qty,
            photo_count=len(evidence),
        )

    elif new_status == ReservationStatus.cancelled:
        if r.stock_lot_id is not None and not r.is_out_of_stock and r.consumed_at is None:
            ledger.release(db, r.stock_lot_id, r.quantity)

    if notes:
        r.notes = f"{r.notes} {notes}" if r.notes else notes

    _set_status(db, r, new_status, actor)
    logger.info("reservation=%s -> %s by %s", r.id, new_status.value, actor)
    if resync:
        sync_case_readiness(db, r.case_id)
    return r


def cancel(db: Session, reservation_id: int, *, actor: str | None = None, notes: str | None = None) -> Reservation:
    return transition(db, reservation_id, ReservationStatus.cancelled, actor=actor, notes=notes)


def add_used_material(
    db: Session,
    case_id: int,
    product_id: int,
    lot_id: int,
    quantity: int,
    *,
    actor: str | None = None,
    evidence_refs: Iterable[str] = (),
    notes: str | None = None,
) -> Reservation:
    """
    Matériel ajouté pendant l'intervention : réservation créée directement
    à l'état used, sortie du stock sur le disponible du lot.
    """
    if quantity is None or quantity <= 0:
        raise ValueError(f"quantity must be a positive integer (got {quantity!r})")

    case = lock_case(db, case_id)
    ensure_open(case)
    if db.get(Product, product_id) is None:
        raise NotFound("Product", product_id)
    _lot_for_product(db, lot_id, product_id)

    evidence = list(evidence_refs)
    r = Reservation(
        case_id=case_id,
        product_id=product_id,
        stock_lot_id=lot_id,
        quantity=quantity,
        status=ReservationStatus.used,
        is_out_of_stock=False,
        evidence_refs=evidence,
        notes=f"{ADDED_DURING_PROCEDURE_TAG} {notes}" if notes else ADDED_DURING_PROCEDURE_TAG,
        reserved_by=actor,
        used_by=actor,
        used_at=utcnow(),
    )
    db.add(r)
    db.flush()

    # rien n'était retenu : tout vient du disponible
    consume_reservation(db, r, quantity, held=0, actor=actor)

    events.record(
        db,
        events.ReservationStatusChanged(
            reservation_id=r.id,
            case_id=case_id,
            previous=None,
            current=ReservationStatus.used,
            actor=actor,
        ),
    )
    write_audit(
        db,
        actor=actor,
        action="MATERIAL_ADDED_DURING_PROCEDURE",
        entity_type="case_reservations",
        entity_id=r.id,
        case_id=case_id,
        product_id=product_id,
        lot_id=lot_id,
        quantity=quantity,
        photo_count=len(evidence),
    )
    sync_case_readiness(db, case_id)
    return r


def attach_lot(db: Session, r: Reservation, lot_id: int, *, actor: str | None = None) -> Reservation:
    """
    Rattache un lot reçu à une demande en rupture : retenue + confirmed.

    L'appelant tient déjà le verrou du cas (procurement.lock_backorder_cases).
    """
    if not r.is_out_of_stock or r.status not in (ReservationStatus.pending, ReservationStatus.confirmed):
        raise InvalidTransition(r.id, r.status.value, ReservationStatus.confirmed.value, reason="not backordered")

    _lot_for_product(db, lot_id, r.product_id)
    ledger.reserve(db, lot_id, r.quantity)

    r.stock_lot_id = lot_id
    r.is_out_of_stock = False
    if r.status != ReservationStatus.confirmed:
        _set_status(db, r, ReservationStatus.confirmed, actor)
    else:
        db.flush()
    logger.info("reservation=%s attached to lot=%s", r.id, lot_id)
    return r
