"""
Material request builder.

Le "panier" de l'UI n'est pas un état persistant : c'est un builder qui
produit un lot de commandes CreateReservation. Le choix du lot suit
`reservations.select_lot` (FEFO avec repli) ; sans lot suffisant la ligne
part en rupture avec la référence demandée.

Le scoring des templates reprend la règle de l'écran de réservation :
+100 par article en stock, +50 si le lot choisi périme sous 90 jours,
+25 si le lot couvre au moins deux fois la quantité.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Iterable

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from dentalstock.app.db.models.models_v1 import Product, StockLot
from dentalstock.services.commands import CreateReservation
from dentalstock.services.errors import NotFound
from dentalstock.services.reservations import select_lot

IN_STOCK_SCORE = 100
EXPIRING_SOON_SCORE = 50
DEEP_STOCK_SCORE = 25
EXPIRING_SOON_DAYS = 90
MAX_ALTERNATIVES = 5


@dataclass
class RequestLine:
    product_id: int
    quantity: int
    lot_id: int | None = None
    requested_ref: str | None = None
    requested_lot: str | None = None
    notes: str | None = None
    # info d'affichage, non persistée
    available: int | None = None
    expiry_date: date | None = None

    @property
    def is_out_of_stock(self) -> bool:
        return self.lot_id is None


@dataclass
class Alternative:
    product_id: int
    product_name: str
    lot_id: int
    lot_number: str
    expiry_date: date | None
    available: int


@dataclass
class TemplateScore:
    score: int
    in_stock_count: int
    total_count: int
    lines: list[RequestLine]
    alternatives: dict[int, list[Alternative]] = field(default_factory=dict)

    @property
    def all_in_stock(self) -> bool:
        return self.total_count > 0 and self.in_stock_count == self.total_count


class MaterialRequestBuilder:
    def __init__(self, db: Session, case_id: int, *, today: date | None = None):
        self.db = db
        self.case_id = case_id
        self.today = today or date.today()
        self._lines: list[RequestLine] = []

    @property
    def lines(self) -> list[RequestLine]:
        return list(self._lines)

    def add(
        self,
        product_id: int,
        quantity: int,
        lot_id: int | None = None,
        *,
        notes: str | None = None,
    ) -> RequestLine:
        if quantity <= 0:
            raise ValueError(f"quantity must be positive (got {quantity!r})")
        product = self.db.get(Product, product_id)
        if product is None:
            raise NotFound("Product", product_id)

        if lot_id is not None:
            lot = self.db.get(StockLot, lot_id)
            if lot is None:
                raise NotFound("StockLot", lot_id)
        else:
            lot = select_lot(self.db, product_id, quantity, today=self.today)

        if lot is None:
            line = RequestLine(
                product_id=product_id,
                quantity=quantity,
                requested_ref=product.ref_number or product.sku,
                notes=notes,
            )
        else:
            line = RequestLine(
                product_id=product_id,
                quantity=quantity,
                lot_id=lot.id,
                notes=notes,
                available=lot.qty_available,
                expiry_date=lot.expiry_date,
            )
        self._lines.append(line)
        return line

    def add_template(self, items: Iterable[tuple[int, int]]) -> list[RequestLine]:
        return [self.add(product_id, qty) for product_id, qty in items]

    def remove(self, index: int) -> RequestLine:
        return self._lines.pop(index)

    def clear(self) -> None:
        self._lines.clear()

    def build(self) -> list[CreateReservation]:
        return [
            CreateReservation(
                case_id=self.case_id,
                product_id=line.product_id,
                quantity=line.quantity,
                lot_id=line.lot_id,
                requested_ref=line.requested_ref,
                requested_lot=line.requested_lot,
                notes=line.notes,
            )
            for line in self._lines
        ]


def find_alternatives(
    db: Session,
    product_id: int,
    *,
    today: date | None = None,
    limit: int = MAX_ALTERNATIVES,
) -> list[Alternative]:
    """Produits actifs de la même catégorie avec du stock ; péremption proche puis plus gros stock."""
    today = today or date.today()
    product = db.get(Product, product_id)
    if product is None:
        raise NotFound("Product", product_id)
    if product.category_id is None:
        return []

    rows = db.execute(
        select(StockLot, Product)
        .join(Product, Product.id == StockLot.product_id)
        .where(Product.category_id == product.category_id)
        .where(Product.active.is_(True))
        .where(Product.id != product_id)
        .where(StockLot.qty_available > 0)
        .where(or_(StockLot.expiry_date.is_(None), StockLot.expiry_date >= today))
    ).all()

    rows.sort(key=lambda row: (row[0].expiry_date or date.max, -row[0].qty_available, row[0].id))
    return [
        Alternative(
            product_id=p.id,
            product_name=p.name,
            lot_id=lot.id,
            lot_number=lot.lot_number,
            expiry_date=lot.expiry_date,
            available=lot.qty_available,
        )
        for lot, p in rows[:limit]
    ]


def score_template(
    db: Session,
    case_id: int,
    items: Iterable[tuple[int, int]],
    *,
    today: date | None = None,
) -> TemplateScore:
    builder = MaterialRequestBuilder(db, case_id, today=today)
    lines = builder.add_template(items)

    score = 0
    in_stock = 0
    alternatives: dict[int, list[Alternative]] = {}
    for line in lines:
        if line.is_out_of_stock:
            alternatives[line.product_id] = find_alternatives(db, line.product_id, today=builder.today)
            continue
        in_stock += 1
        score += IN_STOCK_SCORE
        if line.expiry_date is not None and (line.expiry_date - builder.today).days <= EXPIRING_SOON_DAYS:
            score += EXPIRING_SOON_SCORE
        if line.available is not None and line.available >= line.quantity * 2:
            score += DEEP_STOCK_SCORE

    return TemplateScore(
        score=score,
        in_stock_count=in_stock,
        total_count=len(lines),
        lines=lines,
        alternatives=alternatives,
    )
