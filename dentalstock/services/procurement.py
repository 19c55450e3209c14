"""
Procurement reconciler.

Réception d'un achat -> entrée ledger -> rattachement des demandes en
rupture du produit, plus anciennes d'abord (premier demandé, premier servi).
Une réception partielle peut laisser les demandes suivantes en rupture.

Rien n'est commité ici : réception + rapprochement forment une seule
transaction, portée par dentalstock.services.commands.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from dentalstock.app.db.models.core_types import POStatus, ReadinessState, ReferenceType
from dentalstock.app.db.models.models_v1 import PurchaseOrder, Reservation, StockLot, utcnow
from dentalstock.services import ledger
from dentalstock.services.audit import write_audit
from dentalstock.services.errors import InvalidTransition, NotFound
from dentalstock.services.readiness import BACKORDER_STATUSES
from dentalstock.services.reservations import attach_lot, lock_case, sync_case_readiness

logger = logging.getLogger(__name__)

# PO réellement engagés : seuls ceux-là peuvent être réceptionnés
RECEIVABLE_PO_STATUSES = {
    POStatus.approved,
    POStatus.ordered,
    POStatus.shipped,
}


@dataclass
class ReconcileResult:
    lot: StockLot
    replayed: bool = False
    linked_reservation_ids: list[int] = field(default_factory=list)
    readiness: dict[int, ReadinessState] = field(default_factory=dict)


def backordered_reservations(db: Session, product_id: int) -> list[Reservation]:
    return list(
        db.execute(
            select(Reservation)
            .where(Reservation.product_id == product_id)
            .where(Reservation.is_out_of_stock.is_(True))
            .where(Reservation.status.in_(BACKORDER_STATUSES))
            .order_by(Reservation.created_at.asc(), Reservation.id.asc())
            .execution_options(populate_existing=True)
        ).scalars()
    )


def lock_backorder_cases(db: Session, product_ids) -> list[int]:
    """
    Verrouille (FOR UPDATE, id croissant) les cas ayant une demande en rupture
    sur ces produits. À prendre avant toute écriture de lot : même ordre
    cas puis lot que close_case / transition.
    """
    case_ids = sorted(
        {r.case_id for product_id in set(product_ids) for r in backordered_reservations(db, product_id)}
    )
    for case_id in case_ids:
        lock_case(db, case_id)
    return case_ids


def receive_stock(
    db: Session,
    product_id: int,
    quantity: int,
    *,
    unit_cost: Decimal | float = 0,
    lot_id: int | None = None,
    lot_number: str | None = None,
    expiry_date: date | None = None,
    actor: str | None = None,
    po_id: int | None = None,
    idempotency_key: str | None = None,
    locked_cases: list[int] | None = None,
) -> ReconcileResult:
    if locked_cases is None:
        locked_cases = lock_backorder_cases(db, [product_id])

    receipt = ledger.receive(
        db,
        product_id,
        quantity,
        lot_id=lot_id,
        lot_number=lot_number,
        unit_cost=unit_cost,
        expiry_date=expiry_date,
        actor=actor,
        reference=(ReferenceType.purchase_order, po_id) if po_id is not None else None,
        idempotency_key=idempotency_key,
    )
    result = ReconcileResult(lot=receipt.lot, replayed=receipt.replayed)
    if receipt.replayed:
        # déjà rapproché lors de la première réception
        return result

    remaining = quantity
    affected_cases: list[int] = []
    for r in backordered_reservations(db, product_id):
        if r.case_id not in locked_cases:
            # demande apparue après la prise des verrous : servie à la prochaine réception
            continue
        if r.quantity > remaining:
            break
        attach_lot(db, r, receipt.lot.id, actor=actor)
        remaining -= r.quantity
        result.linked_reservation_ids.append(r.id)
        if r.case_id not in affected_cases:
            affected_cases.append(r.case_id)

    for case_id in affected_cases:
        result.readiness[case_id] = sync_case_readiness(db, case_id)

    result.lot = ledger.get_lot(db, receipt.lot.id)
    logger.info(
        "received product=%s qty=%s lot=%s linked=%s",
        product_id,
        quantity,
        result.lot.id,
        result.linked_reservation_ids,
    )
    return result


def receive_purchase_order(db: Session, po_id: int, *, actor: str | None = None) -> list[ReconcileResult]:
    """Réceptionne toutes les lignes d'un PO engagé, dans la même transaction."""
    po = db.execute(
        select(PurchaseOrder).where(PurchaseOrder.id == po_id).with_for_update()
    ).scalar_one_or_none()
    if po is None:
        raise NotFound("PurchaseOrder", po_id)
    if po.status not in RECEIVABLE_PO_STATUSES:
        raise InvalidTransition(po.po_number, po.status.value, POStatus.received.value)

    locked_cases = lock_backorder_cases(db, [line.product_id for line in po.lines])

    results = []
    for line in po.lines:
        results.append(
            receive_stock(
                db,
                line.product_id,
                line.quantity,
                unit_cost=line.unit_cost,
                lot_number=line.lot_number or f"{po.po_number}-{line.id}",
                expiry_date=line.expiry_date,
                actor=actor,
                po_id=po.id,
                locked_cases=locked_cases,
            )
        )

    po.status = POStatus.received
    po.received_at = utcnow()
    po.received_by = actor
    write_audit(
        db,
        actor=actor,
        action="PO_RECEIVED",
        entity_type="purchase_orders",
        entity_id=po.id,
        po_number=po.po_number,
        items_count=len(po.lines),
        linked_reservations=sum(len(r.linked_reservation_ids) for r in results),
    )
    db.flush()
    return results
