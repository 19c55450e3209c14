import json

import pytest
from sqlalchemy import func, select

from dentalstock.app.db.models.core_types import MovementType, ReadinessState, ReservationStatus
from dentalstock.app.db.models.models_v1 import AuditLog, StockMovement
from dentalstock.services import commands, ledger, reservations
from dentalstock.services.commands import CreateReservation
from dentalstock.services.errors import AlreadyClosed, InvariantViolation


def _reserve(db, case, product, qty, lot=None):
    return commands.create_reservation(
        db,
        CreateReservation(case_id=case.id, product_id=product.id, quantity=qty, lot_id=lot.id if lot else None),
    )


def _use_count(db):
    return db.execute(
        select(func.count(StockMovement.id)).where(StockMovement.movement_type == MovementType.use)
    ).scalar_one()


def test_close_case_keeps_used_and_releases_pending(db_session, make_product, make_case, make_lot):
    p = make_product()
    case = make_case()
    lot = make_lot(p, 10)

    used = _reserve(db_session, case, p, 3, lot)
    commands.confirm_reservation(db_session, used.id)
    commands.mark_used(db_session, used.id)
    pending = _reserve(db_session, case, p, 2, lot)
    used_before = reservations.get_reservation(db_session, used.id)
    version_before = used_before.version

    result = commands.close_case(db_session, case.id, actor="dr-a", notes="uneventful")

    used_after = reservations.get_reservation(db_session, used.id)
    assert used_after.status == ReservationStatus.used
    assert used_after.version == version_before
    assert reservations.get_reservation(db_session, pending.id).status == ReservationStatus.cancelled

    lot_now = ledger.get_lot(db_session, lot.id)
    assert (lot_now.qty_on_hand, lot_now.qty_reserved) == (7, 0)
    assert _use_count(db_session) == 1

    db_session.refresh(case)
    assert case.readiness == ReadinessState.completed
    assert case.completed_at is not None
    assert case.post_op_notes == "uneventful"

    assert result.used_reservation_ids == [used.id]
    assert result.released_reservation_ids == [pending.id]

    audit = db_session.execute(select(AuditLog).where(AuditLog.action == "CASE_CLOSED")).scalar_one()
    meta = json.loads(audit.meta)
    assert audit.actor_id == "dr-a"
    assert (meta["materials_used"], meta["materials_returned"]) == (1, 1)


def test_close_releases_backorders_without_ledger_effect(db_session, make_product, make_case):
    p = make_product()
    case = make_case()
    r = _reserve(db_session, case, p, 2)

    result = commands.close_case(db_session, case.id)

    assert result.released_reservation_ids == [r.id]
    assert reservations.get_reservation(db_session, r.id).status == ReservationStatus.cancelled


def test_close_twice_is_rejected_without_side_effect(db_session, make_product, make_case, make_lot):
    p = make_product()
    case = make_case()
    lot = make_lot(p, 5)
    _reserve(db_session, case, p, 2, lot)
    commands.close_case(db_session, case.id)
    audits_before = db_session.execute(select(func.count(AuditLog.id))).scalar_one()

    with pytest.raises(AlreadyClosed):
        commands.close_case(db_session, case.id)

    assert db_session.execute(select(func.count(AuditLog.id))).scalar_one() == audits_before
    assert ledger.get_lot(db_session, lot.id).qty_reserved == 0
    assert ledger.verify_lot(db_session, lot.id) == 5


def test_close_consumes_used_reservation_never_consumed(db_session, make_product, make_case, make_lot):
    """Ligne `used` importée sans sortie de stock : consommée une seule fois à la clôture."""
    p = make_product()
    case = make_case()
    lot = make_lot(p, 10)
    r = _reserve(db_session, case, p, 4, lot)
    r.status = ReservationStatus.used
    db_session.commit()

    commands.close_case(db_session, case.id)

    lot_now = ledger.get_lot(db_session, lot.id)
    assert (lot_now.qty_on_hand, lot_now.qty_reserved) == (6, 0)
    assert reservations.get_reservation(db_session, r.id).consumed_at is not None
    assert _use_count(db_session) == 1


def test_failed_close_rolls_back_everything(db_session, make_product, make_case, make_lot):
    p = make_product()
    case = make_case()
    lot = make_lot(p, 4)
    pending = _reserve(db_session, case, p, 1, lot)
    broken = _reserve(db_session, case, p, 3, lot)
    broken.status = ReservationStatus.used
    broken.used_quantity = 9
    db_session.commit()

    with pytest.raises(InvariantViolation):
        commands.close_case(db_session, case.id)

    db_session.refresh(case)
    assert case.readiness != ReadinessState.completed
    assert reservations.get_reservation(db_session, pending.id).status == ReservationStatus.pending
    lot_now = ledger.get_lot(db_session, lot.id)
    assert (lot_now.qty_on_hand, lot_now.qty_reserved) == (4, 4)


def test_cancel_case_releases_holds(db_session, make_product, make_case, make_lot):
    p = make_product()
    case = make_case()
    lot = make_lot(p, 5)
    _reserve(db_session, case, p, 3, lot)

    commands.cancel_case(db_session, case.id, actor="desk", reason="patient no-show")

    db_session.refresh(case)
    assert case.readiness == ReadinessState.cancelled
    assert case.cancelled_reason == "patient no-show"
    assert ledger.get_lot(db_session, lot.id).qty_reserved == 0
    with pytest.raises(AlreadyClosed):
        commands.close_case(db_session, case.id)
