"""
Case closer.

Clôture d'un cas, en une seule transaction (verrou sur le cas tenu du début
à la fin, aucune réservation ne peut être créée pendant la clôture) :

1. réservations `used` pas encore sorties du stock -> consume (garde-fou :
   `used` est déjà le point unique de consommation, normalement rien à faire)
2. réservations pending / confirmed / prepared -> cancelled + release
3. readiness -> completed
4. un enregistrement d'audit CASE_CLOSED

Une seconde clôture lève AlreadyClosed sans aucun effet.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from dentalstock.app.db.models.core_types import (
    ACTIVE_RESERVATION_STATUSES,
    ReadinessState,
    ReservationStatus,
)
from dentalstock.app.db.models.models_v1 import Case, utcnow
from dentalstock.services import events
from dentalstock.services.audit import write_audit
from dentalstock.services.readiness import load_reservations
from dentalstock.services.reservations import consume_reservation, ensure_open, lock_case, transition

logger = logging.getLogger(__name__)

CANCELLED_AT_CLOSE_NOTE = "[cancelled at case close]"
CANCELLED_WITH_CASE_NOTE = "[cancelled with case]"


@dataclass
class CloseResult:
    case_id: int
    used_reservation_ids: list[int] = field(default_factory=list)
    released_reservation_ids: list[int] = field(default_factory=list)
    pieces_used: int = 0
    pieces_released: int = 0


def _finish(db: Session, case: Case, target: ReadinessState) -> None:
    previous = case.readiness
    case.readiness = target
    db.flush()
    events.record(db, events.ReadinessChanged(case_id=case.id, previous=previous, current=target))


def _release_active(db: Session, case_id: int, result: CloseResult, *, actor: str | None, note: str) -> None:
    for r in load_reservations(db, case_id):
        if r.status in ACTIVE_RESERVATION_STATUSES:
            transition(
                db,
                r.id,
                ReservationStatus.cancelled,
                actor=actor,
                notes=note,
                resync=False,
            )
            result.released_reservation_ids.append(r.id)
            result.pieces_released += r.quantity


def close_case(db: Session, case_id: int, *, actor: str | None = None, notes: str | None = None) -> CloseResult:
    case = lock_case(db, case_id)
    ensure_open(case)

    result = CloseResult(case_id=case_id)

    for r in load_reservations(db, case_id):
        if r.status != ReservationStatus.used:
            continue
        if r.consumed_at is None and r.stock_lot_id is not None:
            logger.warning("case=%s reservation=%s was used but never consumed, consuming at close", case_id, r.id)
            consume_reservation(db, r, r.used_quantity or r.quantity, held=r.quantity, actor=actor)
        result.used_reservation_ids.append(r.id)
        result.pieces_used += r.used_quantity or r.quantity

    _release_active(db, case_id, result, actor=actor, note=CANCELLED_AT_CLOSE_NOTE)

    case.completed_at = utcnow()
    case.post_op_notes = notes
    case.closed_by = actor
    _finish(db, case, ReadinessState.completed)

    write_audit(
        db,
        actor=actor,
        action="CASE_CLOSED",
        entity_type="cases",
        entity_id=case.id,
        case_number=case.case_number,
        materials_used=len(result.used_reservation_ids),
        materials_returned=len(result.released_reservation_ids),
        pieces_used=result.pieces_used,
        pieces_returned=result.pieces_released,
        notes=notes,
    )
    db.flush()
    logger.info(
        "case=%s closed by %s: used=%s released=%s",
        case_id,
        actor,
        result.used_reservation_ids,
        result.released_reservation_ids,
    )
    return result


def cancel_case(db: Session, case_id: int, *, actor: str | None = None, reason: str | None = None) -> CloseResult:
    """Annulation explicite du cas : toutes les retenues actives sont libérées."""
    case = lock_case(db, case_id)
    ensure_open(case)

    result = CloseResult(case_id=case_id)
    _release_active(db, case_id, result, actor=actor, note=CANCELLED_WITH_CASE_NOTE)

    case.cancelled_at = utcnow()
    case.cancelled_reason = reason
    case.closed_by = actor
    _finish(db, case, ReadinessState.cancelled)

    write_audit(
        db,
        actor=actor,
        action="CASE_CANCELLED",
        entity_type="cases",
        entity_id=case.id,
        case_number=case.case_number,
        materials_returned=len(result.released_reservation_ids),
        reason=reason,
    )
    db.flush()
    logger.info("case=%s cancelled by %s", case_id, actor)
    return result
