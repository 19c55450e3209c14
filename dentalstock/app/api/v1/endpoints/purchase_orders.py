from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from dentalstock.app.api.deps import get_actor, get_db
from dentalstock.app.db.models.models_v1 import PurchaseOrder
from dentalstock.services import commands
from dentalstock.services.errors import NotFound

router = APIRouter(prefix="/purchase-orders")


@router.get("/{po_id}")
def get_po(po_id: int, db: Session = Depends(get_db)):
    po = db.get(PurchaseOrder, po_id)
    if not po:
        raise NotFound("PurchaseOrder", po_id)

    return {
        "id": po.id,
        "po_number": po.po_number,
        "status": po.status,
        "created_at": po.created_at,
        "received_at": po.received_at,
        "lines": [
            {
                "product_id": l.product_id,
                "quantity": l.quantity,
                "unit_cost": float(l.unit_cost),
                "lot_number": l.lot_number,
                "expiry_date": l.expiry_date,
            }
            for l in po.lines
        ],
    }


@router.post("/{po_id}/receive")
def receive_po(
    po_id: int,
    db: Session = Depends(get_db),
    actor: str | None = Depends(get_actor),
):
    results = commands.receive_purchase_order(db, po_id, actor=actor)
    return {
        "po_id": po_id,
        "lots": [r.lot.id for r in results],
        "linked_reservation_ids": [rid for r in results for rid in r.linked_reservation_ids],
    }
