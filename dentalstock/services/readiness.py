"""
Readiness resolver.

Fonction pure de l'ensemble des réservations d'un cas : ne modifie rien.
Le champ `Case.readiness` n'est qu'un cache, toujours recalculable.

Priorité : shortage > awaiting-materials > ready.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from dentalstock.app.db.models.core_types import ReadinessState, ReservationStatus, TERMINAL_READINESS
from dentalstock.app.db.models.models_v1 import Case, Reservation
from dentalstock.services.errors import NotFound

# statuts où le stock est confirmé disponible (ou déjà consommé)
SECURED_STATUSES = frozenset(
    {ReservationStatus.confirmed, ReservationStatus.prepared, ReservationStatus.used}
)
BACKORDER_STATUSES = frozenset({ReservationStatus.pending, ReservationStatus.confirmed})


class ReservationLike(Protocol):
    status: ReservationStatus
    is_out_of_stock: bool


def derive_readiness(reservations: Iterable[ReservationLike]) -> ReadinessState:
    live = [r for r in reservations if r.status != ReservationStatus.cancelled]
    if not live:
        return ReadinessState.unscheduled

    if any(r.is_out_of_stock and r.status in BACKORDER_STATUSES for r in live):
        return ReadinessState.shortage

    if any(r.status not in SECURED_STATUSES for r in live):
        return ReadinessState.awaiting_materials

    return ReadinessState.ready


def load_reservations(db: Session, case_id: int) -> list[Reservation]:
    # relecture systématique : jamais de snapshot périmé après une mutation
    return list(
        db.execute(
            select(Reservation)
            .where(Reservation.case_id == case_id)
            .order_by(Reservation.id)
            .execution_options(populate_existing=True)
        ).scalars()
    )


def evaluate_case(db: Session, case_id: int) -> ReadinessState:
    """Readiness courante ; completed / cancelled sont terminaux et renvoyés tels quels."""
    case = db.get(Case, case_id)
    if case is None:
        raise NotFound("Case", case_id)
    if case.readiness in TERMINAL_READINESS:
        return case.readiness
    return derive_readiness(load_reservations(db, case_id))


@dataclass(frozen=True)
class ReadinessSummary:
    total: int
    pending: int
    confirmed: int
    prepared: int
    used: int
    cancelled: int
    out_of_stock: int
    readiness: ReadinessState


def summarize(reservations: Iterable[ReservationLike]) -> ReadinessSummary:
    items = list(reservations)

    def count(status: ReservationStatus) -> int:
        return sum(1 for r in items if r.status == status)

    return ReadinessSummary(
        total=sum(1 for r in items if r.status != ReservationStatus.cancelled),
        pending=count(ReservationStatus.pending),
        confirmed=count(ReservationStatus.confirmed),
        prepared=count(ReservationStatus.prepared),
        used=count(ReservationStatus.used),
        cancelled=count(ReservationStatus.cancelled),
        out_of_stock=sum(1 for r in items if r.is_out_of_stock and r.status in BACKORDER_STATUSES),
        readiness=derive_readiness(items),
    )
