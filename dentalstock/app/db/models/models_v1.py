from __future__ import annotations

from datetime import datetime, date, timezone
from decimal import Decimal

from sqlalchemy import (
    JSON,
    BigInteger,
    String,
    Integer,
    DateTime,
    Date,
    Boolean,
    ForeignKey,
    Numeric,
    Text,
    Enum,
    UniqueConstraint,
    Index,
    CheckConstraint,
)
from sqlalchemy.ext.hybrid import hybrid_property
from sqlalchemy.orm import Mapped, mapped_column, relationship

from dentalstock.app.db.base import Base
from dentalstock.app.db.models.core_types import (
    BigIntPK,
    MovementType,
    POStatus,
    ReadinessState,
    ReservationStatus,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _pg_enum(enum_cls, name: str) -> Enum:
    # on persiste les valeurs ("awaiting-materials"), pas les noms Python
    return Enum(enum_cls, name=name, values_callable=lambda e: [m.value for m in e])


# ---------- MASTER DATA ----------
class ProductCategory(Base):
    __tablename__ = "product_categories"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    name: Mapped[str] = mapped_column(String(200), unique=True, nullable=False)


class Product(Base):
    __tablename__ = "products"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    sku: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    unit: Mapped[str] = mapped_column(String(32), default="unit", nullable=False)
    ref_number: Mapped[str | None] = mapped_column(String(64))
    category_id: Mapped[int | None] = mapped_column(ForeignKey("product_categories.id", ondelete="SET NULL"))
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    category: Mapped[ProductCategory | None] = relationship()


# ---------- CASES ----------
class Case(Base):
    """
    Procédure planifiée (chirurgie).

    Le CRUD du dossier est hors moteur : on ne garde ici que ce que le
    moteur lit ou écrit (readiness en cache, clôture).
    """

    __tablename__ = "cases"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    case_number: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    surgery_date: Mapped[date | None] = mapped_column(Date)
    procedure_type: Mapped[str | None] = mapped_column(String(128))

    readiness: Mapped[ReadinessState] = mapped_column(
        _pg_enum(ReadinessState, "readiness_state"),
        default=ReadinessState.unscheduled,
        nullable=False,
    )

    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_reason: Mapped[str | None] = mapped_column(Text)
    post_op_notes: Mapped[str | None] = mapped_column(Text)
    closed_by: Mapped[str | None] = mapped_column(String(64))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    reservations: Mapped[list["Reservation"]] = relationship(
        back_populates="case",
        order_by="Reservation.id",
    )


# ---------- INVENTORY ----------
class StockLot(Base):
    """
    Un lot reçu d'un produit.

    `available` est toujours dérivé (on_hand - reserved), jamais stocké.
    Seul `dentalstock.services.ledger` écrit les colonnes qty_*.
    """

    __tablename__ = "stock_lots"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    product_id: Mapped[int] = mapped_column(
        ForeignKey("products.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    lot_number: Mapped[str] = mapped_column(String(64), nullable=False)
    expiry_date: Mapped[date | None] = mapped_column(Date)

    qty_on_hand: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    qty_reserved: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    qty_initial: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    unit_cost: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=0, nullable=False)
    received_date: Mapped[date] = mapped_column(Date, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    product: Mapped[Product] = relationship()

    @hybrid_property
    def qty_available(self) -> int:
        return self.qty_on_hand - self.qty_reserved

    __table_args__ = (
        UniqueConstraint("product_id", "lot_number", name="uq_stock_lot_product_lot"),
        CheckConstraint("qty_on_hand >= 0", name="ck_stock_lot_on_hand_nonneg"),
        CheckConstraint("qty_reserved >= 0", name="ck_stock_lot_reserved_nonneg"),
        CheckConstraint("qty_reserved <= qty_on_hand", name="ck_stock_lot_reserved_le_on_hand"),
        CheckConstraint("unit_cost >= 0", name="ck_stock_lot_unit_cost_nonneg"),
    )


class Reservation(Base):
    __tablename__ = "case_reservations"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    case_id: Mapped[int] = mapped_column(
        ForeignKey("cases.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id", ondelete="RESTRICT"), nullable=False)
    stock_lot_id: Mapped[int | None] = mapped_column(ForeignKey("stock_lots.id", ondelete="RESTRICT"))

    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    used_quantity: Mapped[int | None] = mapped_column(Integer)
    status: Mapped[ReservationStatus] = mapped_column(
        _pg_enum(ReservationStatus, "reservation_status"),
        default=ReservationStatus.pending,
        nullable=False,
    )
    is_out_of_stock: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # demande libre quand aucun lot n'existe encore
    requested_ref: Mapped[str | None] = mapped_column(String(128))
    requested_lot: Mapped[str | None] = mapped_column(String(128))
    # références opaques (photos) gérées par un service externe
    evidence_refs: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text)

    reserved_by: Mapped[str | None] = mapped_column(String(64))
    prepared_by: Mapped[str | None] = mapped_column(String(64))
    prepared_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    used_by: Mapped[str | None] = mapped_column(String(64))
    used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    # point unique de consommation : posé avec ledger.consume, jamais deux fois
    consumed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    case: Mapped[Case] = relationship(back_populates="reservations")
    product: Mapped[Product] = relationship()
    stock_lot: Mapped[StockLot | None] = relationship()

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_reservation_qty_pos"),
        CheckConstraint("used_quantity IS NULL OR used_quantity >= 0", name="ck_reservation_used_qty_nonneg"),
        Index("ix_case_reservations_backorder", "product_id", "is_out_of_stock", "status"),
    )


class StockMovement(Base):
    __tablename__ = "stock_movements"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)

    stock_lot_id: Mapped[int] = mapped_column(
        ForeignKey("stock_lots.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id", ondelete="RESTRICT"), nullable=False)

    movement_type: Mapped[MovementType] = mapped_column(_pg_enum(MovementType, "movement_type"), nullable=False)
    # delta signé sur qty_on_hand
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    reference_type: Mapped[str | None] = mapped_column(String(64))
    reference_id: Mapped[int | None] = mapped_column(BigInteger)
    reason: Mapped[str | None] = mapped_column(String(255))

    happened_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    created_by: Mapped[str | None] = mapped_column(String(64))

    idempotency_key: Mapped[str | None] = mapped_column(String(64), unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("quantity <> 0", name="ck_stock_movement_qty_nonzero"),
        Index("ix_stock_movements_lot_time", "stock_lot_id", "happened_at"),
    )


# ---------- PROCUREMENT ----------
class PurchaseOrder(Base):
    __tablename__ = "purchase_orders"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    po_number: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    status: Mapped[POStatus] = mapped_column(_pg_enum(POStatus, "po_status"), default=POStatus.draft, nullable=False)

    created_by: Mapped[str | None] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    received_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    received_by: Mapped[str | None] = mapped_column(String(64))

    lines: Mapped[list["PurchaseOrderLine"]] = relationship(
        back_populates="po",
        cascade="all, delete-orphan",
        order_by="PurchaseOrderLine.id",
    )


class PurchaseOrderLine(Base):
    __tablename__ = "purchase_order_lines"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    po_id: Mapped[int] = mapped_column(ForeignKey("purchase_orders.id", ondelete="CASCADE"), nullable=False)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id", ondelete="RESTRICT"), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_cost: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    lot_number: Mapped[str | None] = mapped_column(String(64))
    expiry_date: Mapped[date | None] = mapped_column(Date)

    po: Mapped[PurchaseOrder] = relationship(back_populates="lines")
    product: Mapped[Product] = relationship()

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_po_line_qty_pos"),
        CheckConstraint("unit_cost >= 0", name="ck_po_line_unit_cost_nonneg"),
    )


# ---------- AUDIT ----------
class AuditLog(Base):
    __tablename__ = "audit_log"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    actor_id: Mapped[str | None] = mapped_column(String(64))
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    meta: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (Index("ix_audit_entity", "entity_type", "entity_id"),)
