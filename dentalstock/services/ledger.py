"""
Stock ledger.

Seul module autorisé à écrire qty_on_hand / qty_reserved.

Règles :
- chaque opération = UN seul UPDATE conditionnel par lot (pas de lecture
  puis écriture : deux réservations concurrentes ne peuvent pas passer
  toutes les deux sous `available`)
- on ne commit jamais ici : la transaction appartient à l'appelant
- une réservation est une retenue, pas un mouvement physique : reserve /
  release n'écrivent aucun StockMovement
- tout changement de qty_on_hand ajoute un StockMovement (append-only)
"""

from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from typing import NamedTuple

from sqlalchemy import case, func, select, update
from sqlalchemy.orm import Session

from dentalstock.app.db.models.core_types import MovementType, ReferenceType
from dentalstock.app.db.models.models_v1 import Product, StockLot, StockMovement, utcnow
from dentalstock.services import events
from dentalstock.services.errors import InsufficientAvailable, InvariantViolation, NotFound

logger = logging.getLogger(__name__)


class Receipt(NamedTuple):
    lot: StockLot
    movement: StockMovement
    replayed: bool


def _require_positive(qty: int) -> None:
    if qty is None or int(qty) <= 0:
        raise ValueError(f"quantity must be a positive integer (got {qty!r})")


def get_lot(db: Session, lot_id: int, *, refresh: bool = True) -> StockLot:
    lot = db.get(StockLot, lot_id, populate_existing=refresh)
    if lot is None:
        raise NotFound("StockLot", lot_id)
    return lot


def _apply(db: Session, stmt) -> int:
    # les objets en attente doivent être en base avant l'UPDATE direct
    db.flush()
    result = db.execute(stmt.execution_options(synchronize_session=False))
    return result.rowcount


def _append_movement(
    db: Session,
    lot: StockLot,
    movement_type: MovementType,
    delta: int,
    *,
    reference: tuple[ReferenceType, int] | None = None,
    actor: str | None = None,
    reason: str | None = None,
    idempotency_key: str | None = None,
) -> StockMovement:
    mv = StockMovement(
        stock_lot_id=lot.id,
        product_id=lot.product_id,
        movement_type=movement_type,
        quantity=delta,
        reference_type=reference[0].value if reference else None,
        reference_id=reference[1] if reference else None,
        reason=reason,
        happened_at=utcnow(),
        created_by=actor,
        idempotency_key=idempotency_key,
    )
    db.add(mv)
    db.flush()

    events.record(
        db,
        events.StockMoved(
            movement_id=mv.id,
            stock_lot_id=lot.id,
            product_id=lot.product_id,
            movement_type=movement_type,
            quantity=delta,
        ),
    )
    return mv


# ---------- HOLDS ----------
def reserve(db: Session, lot_id: int, qty: int) -> StockLot:
    """Retient `qty` sur le lot ; InsufficientAvailable si qty > available."""
    _require_positive(qty)

    updated = _apply(
        db,
        update(StockLot)
        .where(StockLot.id == lot_id)
        .where(StockLot.qty_on_hand - StockLot.qty_reserved >= qty)
        .values(qty_reserved=StockLot.qty_reserved + qty, updated_at=utcnow()),
    )
    if not updated:
        lot = get_lot(db, lot_id)
        raise InsufficientAvailable(lot_id, qty, lot.qty_available)

    logger.debug("reserve lot=%s qty=%s", lot_id, qty)
    return get_lot(db, lot_id)


def release(db: Session, lot_id: int, qty: int) -> StockLot:
    """Libère une retenue, bornée à 0."""
    _require_positive(qty)

    # verrou de ligne : la valeur lue sert uniquement au log
    reserved_before = db.execute(
        select(StockLot.qty_reserved).where(StockLot.id == lot_id).with_for_update()
    ).scalar_one_or_none()
    if reserved_before is None:
        raise NotFound("StockLot", lot_id)
    if reserved_before < qty:
        logger.warning(
            "release lot=%s qty=%s exceeds reserved=%s, clamping to 0",
            lot_id,
            qty,
            reserved_before,
        )

    # un seul UPDATE, borné à 0 dans la même instruction
    _apply(
        db,
        update(StockLot)
        .where(StockLot.id == lot_id)
        .values(
            qty_reserved=case(
                (StockLot.qty_reserved >= qty, StockLot.qty_reserved - qty),
                else_=0,
            ),
            updated_at=utcnow(),
        ),
    )

    logger.debug("release lot=%s qty=%s", lot_id, qty)
    return get_lot(db, lot_id)


# ---------- PHYSICAL CHANGES ----------
def consume(
    db: Session,
    lot_id: int,
    qty: int,
    *,
    held: int | None = None,
    reference: tuple[ReferenceType, int] | None = None,
    actor: str | None = None,
    reason: str | None = None,
) -> StockMovement:
    """
    Sortie physique : qty_on_hand -= qty, qty_reserved -= held (borné à 0).

    `held` = ce que le demandeur retenait sur ce lot (par défaut qty). Une
    consommation supérieure à la retenue prend le surplus sur `available`,
    jamais sur la retenue d'une autre réservation.
    """
    _require_positive(qty)
    held = qty if held is None else held
    if held < 0:
        raise ValueError(f"held must be >= 0 (got {held!r})")

    new_reserved = case(
        (StockLot.qty_reserved >= held, StockLot.qty_reserved - held),
        else_=0,
    )
    updated = _apply(
        db,
        update(StockLot)
        .where(StockLot.id == lot_id)
        .where(StockLot.qty_on_hand >= qty)
        .where(StockLot.qty_on_hand - qty >= new_reserved)
        .values(
            qty_on_hand=StockLot.qty_on_hand - qty,
            qty_reserved=new_reserved,
            updated_at=utcnow(),
        ),
    )
    lot = get_lot(db, lot_id)
    if not updated:
        if held == 0:
            raise InsufficientAvailable(lot_id, qty, lot.qty_available)
        logger.error(
            "consume lot=%s qty=%s held=%s would break reserved <= on_hand (on_hand=%s, reserved=%s)",
            lot_id,
            qty,
            held,
            lot.qty_on_hand,
            lot.qty_reserved,
        )
        raise InvariantViolation(
            f"Consuming {qty} from lot {lot_id} would leave reserved above on hand",
            lot_id=lot_id,
            qty=qty,
            on_hand=lot.qty_on_hand,
            reserved=lot.qty_reserved,
        )

    logger.debug("consume lot=%s qty=%s held=%s", lot_id, qty, held)
    return _append_movement(
        db,
        lot,
        MovementType.use,
        -qty,
        reference=reference,
        actor=actor,
        reason=reason,
    )


def receive(
    db: Session,
    product_id: int,
    qty: int,
    *,
    lot_id: int | None = None,
    lot_number: str | None = None,
    unit_cost: Decimal | float = 0,
    expiry_date: date | None = None,
    received_date: date | None = None,
    actor: str | None = None,
    reference: tuple[ReferenceType, int] | None = None,
    idempotency_key: str | None = None,
) -> Receipt:
    """
    Entrée en stock : crée le lot ou complète un lot existant.

    Recherche du lot : `lot_id` explicite, sinon (produit, lot_number).
    Avec une idempotency_key déjà vue, renvoie la réception d'origine sans
    rien réappliquer.
    """
    _require_positive(qty)

    if idempotency_key:
        existing = db.execute(
            select(StockMovement).where(StockMovement.idempotency_key == idempotency_key)
        ).scalar_one_or_none()
        if existing:
            logger.info("receive replay idempotency_key=%s movement=%s", idempotency_key, existing.id)
            return Receipt(get_lot(db, existing.stock_lot_id), existing, True)

    if db.get(Product, product_id) is None:
        raise NotFound("Product", product_id)

    lot: StockLot | None = None
    if lot_id is not None:
        lot = get_lot(db, lot_id)
        if lot.product_id != product_id:
            raise InvariantViolation(
                f"Lot {lot_id} belongs to product {lot.product_id}, not {product_id}",
                lot_id=lot_id,
                product_id=product_id,
            )
    elif lot_number:
        lot = db.execute(
            select(StockLot)
            .where(StockLot.product_id == product_id)
            .where(StockLot.lot_number == lot_number)
        ).scalar_one_or_none()

    if lot is None:
        lot = StockLot(
            product_id=product_id,
            lot_number=lot_number or f"LOT-{utcnow():%Y%m%d%H%M%S%f}",
            expiry_date=expiry_date,
            qty_on_hand=qty,
            qty_reserved=0,
            qty_initial=qty,
            unit_cost=unit_cost,
            received_date=received_date or date.today(),
        )
        db.add(lot)
        db.flush()
        logger.debug("receive new lot=%s product=%s qty=%s", lot.id, product_id, qty)
    else:
        _apply(
            db,
            update(StockLot)
            .where(StockLot.id == lot.id)
            .values(qty_on_hand=StockLot.qty_on_hand + qty, updated_at=utcnow()),
        )
        lot = get_lot(db, lot.id)
        logger.debug("receive top-up lot=%s product=%s qty=%s", lot.id, product_id, qty)

    mv = _append_movement(
        db,
        lot,
        MovementType.receive,
        qty,
        reference=reference,
        actor=actor,
        reason="RECEIPT",
        idempotency_key=idempotency_key,
    )
    return Receipt(lot, mv, False)


def adjust(
    db: Session,
    lot_id: int,
    delta: int,
    *,
    actor: str | None = None,
    reason: str | None = None,
) -> StockMovement:
    """Correction d'inventaire (comptage) ; ne peut pas passer sous la retenue."""
    if not delta:
        raise ValueError("adjustment delta must be non-zero")

    updated = _apply(
        db,
        update(StockLot)
        .where(StockLot.id == lot_id)
        .where(StockLot.qty_on_hand + delta >= StockLot.qty_reserved)
        .values(qty_on_hand=StockLot.qty_on_hand + delta, updated_at=utcnow()),
    )
    lot = get_lot(db, lot_id)
    if not updated:
        logger.error(
            "adjust lot=%s delta=%s would break reserved <= on_hand (on_hand=%s, reserved=%s)",
            lot_id,
            delta,
            lot.qty_on_hand,
            lot.qty_reserved,
        )
        raise InvariantViolation(
            f"Adjusting lot {lot_id} by {delta} would leave reserved above on hand",
            lot_id=lot_id,
            delta=delta,
            on_hand=lot.qty_on_hand,
            reserved=lot.qty_reserved,
        )

    return _append_movement(db, lot, MovementType.adjust, delta, actor=actor, reason=reason)


# ---------- AUDIT ----------
def movement_total(db: Session, lot_id: int) -> int:
    return int(
        db.execute(
            select(func.coalesce(func.sum(StockMovement.quantity), 0)).where(StockMovement.stock_lot_id == lot_id)
        ).scalar_one()
    )


def verify_lot(db: Session, lot_id: int) -> int:
    """
    Audit : Σ mouvements == qty_on_hand (la réception initiale est elle-même
    un mouvement, donc on_hand - qty_initial == Σ des mouvements suivants).
    """
    lot = get_lot(db, lot_id)
    total = movement_total(db, lot_id)
    if total != lot.qty_on_hand or not (0 <= lot.qty_reserved <= lot.qty_on_hand):
        logger.error(
            "lot=%s ledger mismatch: movements=%s on_hand=%s reserved=%s",
            lot_id,
            total,
            lot.qty_on_hand,
            lot.qty_reserved,
        )
        raise InvariantViolation(
            f"Lot {lot_id} ledger mismatch",
            lot_id=lot_id,
            movement_total=total,
            on_hand=lot.qty_on_hand,
            reserved=lot.qty_reserved,
        )
    return total
