from datetime import date

import pytest
from sqlalchemy import event, select

from dentalstock.app.db.models.core_types import MovementType
from dentalstock.app.db.models.models_v1 import StockMovement
from dentalstock.services import ledger
from dentalstock.services.errors import InsufficientAvailable, InvariantViolation, NotFound


def _movements(db, lot_id):
    return db.execute(
        select(StockMovement).where(StockMovement.stock_lot_id == lot_id).order_by(StockMovement.id)
    ).scalars().all()


def test_receive_creates_lot_with_initial_movement(db_session, make_product):
    p = make_product()

    receipt = ledger.receive(db_session, p.id, 10, lot_number="A-1", expiry_date=date(2027, 1, 1), unit_cost=12.5)
    db_session.commit()

    lot = receipt.lot
    assert receipt.replayed is False
    assert (lot.qty_on_hand, lot.qty_reserved, lot.qty_initial) == (10, 0, 10)
    assert lot.qty_available == 10

    mvs = _movements(db_session, lot.id)
    assert [(m.movement_type, m.quantity) for m in mvs] == [(MovementType.receive, 10)]
    assert ledger.verify_lot(db_session, lot.id) == 10


def test_receive_generates_lot_number_when_missing(db_session, make_product):
    p = make_product()
    lot = ledger.receive(db_session, p.id, 3).lot
    assert lot.lot_number.startswith("LOT-")


def test_receive_tops_up_existing_lot(db_session, make_product, make_lot):
    p = make_product()
    lot = make_lot(p, 4, lot_number="A-1")

    receipt = ledger.receive(db_session, p.id, 6, lot_number="A-1")
    db_session.commit()

    assert receipt.lot.id == lot.id
    assert receipt.lot.qty_on_hand == 10
    assert receipt.lot.qty_initial == 4
    assert ledger.verify_lot(db_session, lot.id) == 10


def test_receive_replays_idempotency_key(db_session, make_product):
    p = make_product()

    first = ledger.receive(db_session, p.id, 5, idempotency_key="gr-42")
    db_session.commit()
    second = ledger.receive(db_session, p.id, 5, idempotency_key="gr-42")
    db_session.commit()

    assert second.replayed is True
    assert second.movement.id == first.movement.id
    assert second.lot.qty_on_hand == 5


def test_receive_rejects_lot_of_other_product(db_session, make_product, make_lot):
    p1, p2 = make_product(), make_product()
    lot = make_lot(p1, 5)

    with pytest.raises(InvariantViolation):
        ledger.receive(db_session, p2.id, 1, lot_id=lot.id)


def test_receive_unknown_product(db_session):
    with pytest.raises(NotFound):
        ledger.receive(db_session, 999, 1)


def test_reserve_and_release_write_no_movement(db_session, make_product, make_lot):
    p = make_product()
    lot = make_lot(p, 10)

    lot = ledger.reserve(db_session, lot.id, 4)
    assert (lot.qty_on_hand, lot.qty_reserved, lot.qty_available) == (10, 4, 6)

    lot = ledger.release(db_session, lot.id, 4)
    assert (lot.qty_reserved, lot.qty_available) == (0, 10)

    assert len(_movements(db_session, lot.id)) == 1


def test_reserve_more_than_available(db_session, make_product, make_lot):
    p = make_product()
    lot = make_lot(p, 5)
    ledger.reserve(db_session, lot.id, 3)

    with pytest.raises(InsufficientAvailable) as exc:
        ledger.reserve(db_session, lot.id, 3)

    assert exc.value.details["available"] == 2
    assert ledger.get_lot(db_session, lot.id).qty_reserved == 3


def test_release_clamps_to_zero(db_session, make_product, make_lot):
    p = make_product()
    lot = make_lot(p, 5)
    ledger.reserve(db_session, lot.id, 2)

    lot = ledger.release(db_session, lot.id, 4)
    assert lot.qty_reserved == 0


def test_release_clamp_is_a_single_update(db_session, make_product, make_lot):
    """
    GIVEN reserved=2
    WHEN release(5)
    THEN un seul UPDATE sur stock_lots, aucune remise à zéro séparée
    """
    p = make_product()
    lot = make_lot(p, 5)
    ledger.reserve(db_session, lot.id, 2)
    db_session.commit()

    statements = []

    def capture(conn, cursor, statement, parameters, context, executemany):
        if statement.lstrip().upper().startswith("UPDATE STOCK_LOTS"):
            statements.append(statement)

    bind = db_session.get_bind()
    event.listen(bind, "before_cursor_execute", capture)
    try:
        lot = ledger.release(db_session, lot.id, 5)
    finally:
        event.remove(bind, "before_cursor_execute", capture)

    assert lot.qty_reserved == 0
    assert len(statements) == 1
    assert "CASE" in statements[0].upper()


def test_release_unknown_lot(db_session):
    with pytest.raises(NotFound):
        ledger.release(db_session, 404, 1)


@pytest.mark.parametrize("qty", [0, -1])
def test_non_positive_quantities_rejected(db_session, make_product, make_lot, qty):
    p = make_product()
    lot = make_lot(p, 5)

    with pytest.raises(ValueError):
        ledger.reserve(db_session, lot.id, qty)
    with pytest.raises(ValueError):
        ledger.release(db_session, lot.id, qty)
    with pytest.raises(ValueError):
        ledger.consume(db_session, lot.id, qty)


def test_consume_held_quantity(db_session, make_product, make_lot):
    p = make_product()
    lot = make_lot(p, 10)
    ledger.reserve(db_session, lot.id, 4)

    mv = ledger.consume(db_session, lot.id, 4)

    lot = ledger.get_lot(db_session, lot.id)
    assert (lot.qty_on_hand, lot.qty_reserved) == (6, 0)
    assert mv.movement_type == MovementType.use
    assert mv.quantity == -4
    assert ledger.verify_lot(db_session, lot.id) == 6


def test_consume_less_than_held_releases_the_whole_hold(db_session, make_product, make_lot):
    p = make_product()
    lot = make_lot(p, 10)
    ledger.reserve(db_session, lot.id, 4)

    ledger.consume(db_session, lot.id, 2, held=4)

    lot = ledger.get_lot(db_session, lot.id)
    assert (lot.qty_on_hand, lot.qty_reserved, lot.qty_available) == (8, 0, 8)


def test_consume_never_eats_other_holds(db_session, make_product, make_lot):
    p = make_product()
    lot = make_lot(p, 5)
    ledger.reserve(db_session, lot.id, 3)

    # rien retenu par l'appelant : seuls les 2 disponibles peuvent sortir
    with pytest.raises(InsufficientAvailable):
        ledger.consume(db_session, lot.id, 3, held=0)

    ledger.consume(db_session, lot.id, 2, held=0)
    lot = ledger.get_lot(db_session, lot.id)
    assert (lot.qty_on_hand, lot.qty_reserved) == (3, 3)


def test_consume_beyond_on_hand_is_invariant_violation(db_session, make_product, make_lot):
    p = make_product()
    lot = make_lot(p, 3)
    ledger.reserve(db_session, lot.id, 3)

    with pytest.raises(InvariantViolation):
        ledger.consume(db_session, lot.id, 4, held=3)


def test_adjust_appends_signed_movement(db_session, make_product, make_lot):
    p = make_product()
    lot = make_lot(p, 10)

    ledger.adjust(db_session, lot.id, -3, reason="inventory count")
    ledger.adjust(db_session, lot.id, 1, reason="found one")

    assert ledger.get_lot(db_session, lot.id).qty_on_hand == 8
    assert [m.quantity for m in _movements(db_session, lot.id)] == [10, -3, 1]
    assert ledger.verify_lot(db_session, lot.id) == 8


def test_adjust_cannot_go_below_reserved(db_session, make_product, make_lot):
    p = make_product()
    lot = make_lot(p, 5)
    ledger.reserve(db_session, lot.id, 4)

    with pytest.raises(InvariantViolation):
        ledger.adjust(db_session, lot.id, -2)
    with pytest.raises(ValueError):
        ledger.adjust(db_session, lot.id, 0)


def test_verify_lot_detects_drift(db_session, make_product, make_lot):
    p = make_product()
    lot = make_lot(p, 5)

    lot.qty_on_hand = 7
    db_session.flush()

    with pytest.raises(InvariantViolation):
        ledger.verify_lot(db_session, lot.id)
