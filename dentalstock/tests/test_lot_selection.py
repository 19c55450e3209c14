from datetime import date

from dentalstock.services import ledger
from dentalstock.services.reservations import select_lot

TODAY = date(2026, 10, 19)


def test_nearest_expiry_with_enough_available(db_session, make_product, make_lot):
    p = make_product()
    make_lot(p, 10, expiry_date=date(2027, 6, 1), lot_number="LATE")
    soon = make_lot(p, 5, expiry_date=date(2026, 12, 1), lot_number="SOON")
    make_lot(p, 50, lot_number="NO-EXPIRY")

    assert select_lot(db_session, p.id, 3, today=TODAY).id == soon.id


def test_skips_lots_without_enough_available(db_session, make_product, make_lot):
    p = make_product()
    soon = make_lot(p, 5, expiry_date=date(2026, 12, 1))
    late = make_lot(p, 10, expiry_date=date(2027, 6, 1))
    ledger.reserve(db_session, soon.id, 4)
    db_session.commit()

    assert select_lot(db_session, p.id, 3, today=TODAY).id == late.id


def test_falls_back_to_largest_available(db_session, make_product, make_lot):
    p = make_product()
    make_lot(p, 4, lot_number="SMALL")
    big = make_lot(p, 9, lot_number="BIG")

    assert select_lot(db_session, p.id, 3, today=TODAY).id == big.id


def test_expired_lots_are_ignored(db_session, make_product, make_lot):
    p = make_product()
    make_lot(p, 10, expiry_date=date(2026, 10, 1))

    assert select_lot(db_session, p.id, 1, today=TODAY) is None


def test_none_when_no_lot_has_enough(db_session, make_product, make_lot):
    p = make_product()
    make_lot(p, 2)
    make_lot(p, 2)

    assert select_lot(db_session, p.id, 3, today=TODAY) is None
