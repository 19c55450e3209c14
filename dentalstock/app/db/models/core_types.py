import enum

from sqlalchemy import BigInteger, Integer

# BIGINT en Postgres, INTEGER en SQLite (sinon pas d'autoincrement)
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")


class ReservationStatus(str, enum.Enum):
    pending = "pending"
    confirmed = "confirmed"
    prepared = "prepared"
    used = "used"
    cancelled = "cancelled"


class ReadinessState(str, enum.Enum):
    unscheduled = "unscheduled"
    shortage = "shortage"
    awaiting_materials = "awaiting-materials"
    ready = "ready"
    completed = "completed"
    cancelled = "cancelled"


class MovementType(str, enum.Enum):
    receive = "receive"
    reserve_release = "reserve-release"
    use = "use"
    adjust = "adjust"


class POStatus(str, enum.Enum):
    draft = "draft"
    pending = "pending"
    approved = "approved"
    ordered = "ordered"
    shipped = "shipped"
    received = "received"
    cancelled = "cancelled"


class ReferenceType(str, enum.Enum):
    reservation = "case_reservations"
    purchase_order = "purchase_orders"


# Statuts qui tiennent encore du stock (ou une demande) sans l'avoir consommé
ACTIVE_RESERVATION_STATUSES = frozenset(
    {ReservationStatus.pending, ReservationStatus.confirmed, ReservationStatus.prepared}
)
TERMINAL_RESERVATION_STATUSES = frozenset({ReservationStatus.used, ReservationStatus.cancelled})
TERMINAL_READINESS = frozenset({ReadinessState.completed, ReadinessState.cancelled})
