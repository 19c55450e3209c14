"""initial ledger schema

Revision ID: 5b1f0c2a9d3e
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "5b1f0c2a9d3e"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

READINESS = sa.Enum(
    "unscheduled", "shortage", "awaiting-materials", "ready", "completed", "cancelled",
    name="readiness_state",
)
RESERVATION_STATUS = sa.Enum("pending", "confirmed", "prepared", "used", "cancelled", name="reservation_status")
MOVEMENT_TYPE = sa.Enum("receive", "reserve-release", "use", "adjust", name="movement_type")
PO_STATUS = sa.Enum(
    "draft", "pending", "approved", "ordered", "shipped", "received", "cancelled",
    name="po_status",
)


def _ts(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    # ---------- MASTER DATA ----------
    op.create_table(
        "product_categories",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("name", sa.String(200), nullable=False, unique=True),
    )
    op.create_table(
        "products",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("sku", sa.String(64), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("unit", sa.String(32), nullable=False, server_default="unit"),
        sa.Column("ref_number", sa.String(64)),
        sa.Column("category_id", sa.BigInteger(), sa.ForeignKey("product_categories.id", ondelete="SET NULL")),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
    )

    # ---------- CASES ----------
    op.create_table(
        "cases",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("case_number", sa.String(64), nullable=False, unique=True),
        sa.Column("surgery_date", sa.Date()),
        sa.Column("procedure_type", sa.String(128)),
        sa.Column("readiness", READINESS, nullable=False, server_default="unscheduled"),
        _ts("completed_at", True),
        _ts("cancelled_at", True),
        sa.Column("cancelled_reason", sa.Text()),
        sa.Column("post_op_notes", sa.Text()),
        sa.Column("closed_by", sa.String(64)),
        _ts("created_at"),
    )

    # ---------- INVENTORY ----------
    op.create_table(
        "stock_lots",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("product_id", sa.BigInteger(), sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("lot_number", sa.String(64), nullable=False),
        sa.Column("expiry_date", sa.Date()),
        sa.Column("qty_on_hand", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("qty_reserved", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("qty_initial", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("unit_cost", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("received_date", sa.Date(), nullable=False),
        _ts("created_at"),
        _ts("updated_at"),
        sa.UniqueConstraint("product_id", "lot_number", name="uq_stock_lot_product_lot"),
        sa.CheckConstraint("qty_on_hand >= 0", name="ck_stock_lot_on_hand_nonneg"),
        sa.CheckConstraint("qty_reserved >= 0", name="ck_stock_lot_reserved_nonneg"),
        sa.CheckConstraint("qty_reserved <= qty_on_hand", name="ck_stock_lot_reserved_le_on_hand"),
        sa.CheckConstraint("unit_cost >= 0", name="ck_stock_lot_unit_cost_nonneg"),
    )
    op.create_index("ix_stock_lots_product_id", "stock_lots", ["product_id"])

    op.create_table(
        "case_reservations",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("case_id", sa.BigInteger(), sa.ForeignKey("cases.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("product_id", sa.BigInteger(), sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("stock_lot_id", sa.BigInteger(), sa.ForeignKey("stock_lots.id", ondelete="RESTRICT")),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("used_quantity", sa.Integer()),
        sa.Column("status", RESERVATION_STATUS, nullable=False, server_default="pending"),
        sa.Column("is_out_of_stock", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("requested_ref", sa.String(128)),
        sa.Column("requested_lot", sa.String(128)),
        sa.Column("evidence_refs", sa.JSON(), nullable=False),
        sa.Column("notes", sa.Text()),
        sa.Column("reserved_by", sa.String(64)),
        sa.Column("prepared_by", sa.String(64)),
        _ts("prepared_at", True),
        sa.Column("used_by", sa.String(64)),
        _ts("used_at", True),
        _ts("consumed_at", True),
        sa.Column("version", sa.Integer(), nullable=False),
        _ts("created_at"),
        _ts("updated_at"),
        sa.CheckConstraint("quantity > 0", name="ck_reservation_qty_pos"),
        sa.CheckConstraint("used_quantity IS NULL OR used_quantity >= 0", name="ck_reservation_used_qty_nonneg"),
    )
    op.create_index("ix_case_reservations_case_id", "case_reservations", ["case_id"])
    op.create_index(
        "ix_case_reservations_backorder",
        "case_reservations",
        ["product_id", "is_out_of_stock", "status"],
    )

    op.create_table(
        "stock_movements",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("stock_lot_id", sa.BigInteger(), sa.ForeignKey("stock_lots.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("product_id", sa.BigInteger(), sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("movement_type", MOVEMENT_TYPE, nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("reference_type", sa.String(64)),
        sa.Column("reference_id", sa.BigInteger()),
        sa.Column("reason", sa.String(255)),
        _ts("happened_at"),
        sa.Column("created_by", sa.String(64)),
        sa.Column("idempotency_key", sa.String(64), unique=True),
        _ts("created_at"),
        sa.CheckConstraint("quantity <> 0", name="ck_stock_movement_qty_nonzero"),
    )
    op.create_index("ix_stock_movements_stock_lot_id", "stock_movements", ["stock_lot_id"])
    op.create_index("ix_stock_movements_lot_time", "stock_movements", ["stock_lot_id", "happened_at"])

    # ---------- PROCUREMENT ----------
    op.create_table(
        "purchase_orders",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("po_number", sa.String(64), nullable=False, unique=True),
        sa.Column("status", PO_STATUS, nullable=False, server_default="draft"),
        sa.Column("created_by", sa.String(64)),
        _ts("created_at"),
        _ts("received_at", True),
        sa.Column("received_by", sa.String(64)),
    )
    op.create_table(
        "purchase_order_lines",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("po_id", sa.BigInteger(), sa.ForeignKey("purchase_orders.id", ondelete="CASCADE"), nullable=False),
        sa.Column("product_id", sa.BigInteger(), sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_cost", sa.Numeric(14, 2), nullable=False),
        sa.Column("lot_number", sa.String(64)),
        sa.Column("expiry_date", sa.Date()),
        sa.CheckConstraint("quantity > 0", name="ck_po_line_qty_pos"),
        sa.CheckConstraint("unit_cost >= 0", name="ck_po_line_unit_cost_nonneg"),
    )

    # ---------- AUDIT ----------
    op.create_table(
        "audit_log",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("actor_id", sa.String(64)),
        sa.Column("action", sa.String(64), nullable=False),
        sa.Column("entity_type", sa.String(64), nullable=False),
        sa.Column("entity_id", sa.String(64), nullable=False),
        sa.Column("meta", sa.Text()),
        _ts("created_at"),
    )
    op.create_index("ix_audit_entity", "audit_log", ["entity_type", "entity_id"])


def downgrade() -> None:
    op.drop_index("ix_audit_entity", table_name="audit_log")
    op.drop_table("audit_log")
    op.drop_table("purchase_order_lines")
    op.drop_table("purchase_orders")
    op.drop_index("ix_stock_movements_lot_time", table_name="stock_movements")
    op.drop_index("ix_stock_movements_stock_lot_id", table_name="stock_movements")
    op.drop_table("stock_movements")
    op.drop_index("ix_case_reservations_backorder", table_name="case_reservations")
    op.drop_index("ix_case_reservations_case_id", table_name="case_reservations")
    op.drop_table("case_reservations")
    op.drop_index("ix_stock_lots_product_id", table_name="stock_lots")
    op.drop_table("stock_lots")
    op.drop_table("cases")
    op.drop_table("products")
    op.drop_table("product_categories")

    bind = op.get_bind()
    for enum_type in (PO_STATUS, MOVEMENT_TYPE, RESERVATION_STATUS, READINESS):
        enum_type.drop(bind, checkfirst=True)
