import os
import threading

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from dentalstock.app.db.models.core_types import ReservationStatus
from dentalstock.app.db.models.models_v1 import Base, Case, Product, Reservation
from dentalstock.services import commands, ledger
from dentalstock.services.commands import CreateReservation
from dentalstock.services.errors import ConcurrentModification, InsufficientAvailable


@pytest.fixture
def shared_engine(tmp_path):
    """Base partagée entre connexions (fichier SQLite, ou TEST_DATABASE_URL réel)."""
    url = os.getenv("TEST_DATABASE_URL", "sqlite+pysqlite:///:memory:")
    if url.startswith("sqlite"):
        eng = create_engine(
            f"sqlite+pysqlite:///{tmp_path / 'ledger.db'}",
            connect_args={"check_same_thread": False, "timeout": 5},
        )
    else:
        eng = create_engine(url, pool_pre_ping=True)
    Base.metadata.create_all(bind=eng)
    try:
        yield eng
    finally:
        Base.metadata.drop_all(bind=eng)
        eng.dispose()


@pytest.fixture
def five_available(shared_engine):
    Session = sessionmaker(bind=shared_engine, autoflush=False, expire_on_commit=False)
    with Session() as db:
        p = Product(sku="CONC-1", name="Healing abutment", active=True)
        c1 = Case(case_number="CONC-C1")
        c2 = Case(case_number="CONC-C2")
        db.add_all([p, c1, c2])
        db.commit()
        lot = ledger.receive(db, p.id, 5).lot
        db.commit()
        return Session, p.id, lot.id, (c1.id, c2.id)


def test_stale_snapshot_cannot_overbook(five_available):
    """Deux sessions lisent available=5 ; la seconde réservation de 3 doit échouer."""
    Session, product_id, lot_id, (c1, c2) = five_available
    a, b = Session(), Session()
    try:
        assert ledger.get_lot(a, lot_id).qty_available == 5
        assert ledger.get_lot(b, lot_id).qty_available == 5
        a.rollback()
        b.rollback()

        commands.create_reservation(a, CreateReservation(case_id=c1, product_id=product_id, quantity=3, lot_id=lot_id))
        with pytest.raises(InsufficientAvailable):
            commands.create_reservation(
                b, CreateReservation(case_id=c2, product_id=product_id, quantity=3, lot_id=lot_id)
            )
    finally:
        a.close()
        b.close()

    with Session() as db:
        lot = ledger.get_lot(db, lot_id)
        assert (lot.qty_reserved, lot.qty_available) == (3, 2)


def test_parallel_reservations_never_both_succeed(five_available):
    Session, product_id, lot_id, case_ids = five_available
    barrier = threading.Barrier(2)
    outcomes = []

    def worker(case_id):
        with Session() as db:
            barrier.wait()
            try:
                commands.create_reservation(
                    db, CreateReservation(case_id=case_id, product_id=product_id, quantity=3, lot_id=lot_id)
                )
                outcomes.append("ok")
            except (InsufficientAvailable, ConcurrentModification) as e:
                outcomes.append(type(e).__name__)

    threads = [threading.Thread(target=worker, args=(cid,)) for cid in case_ids]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert outcomes.count("ok") == 1
    with Session() as db:
        lot = ledger.get_lot(db, lot_id)
        assert lot.qty_reserved == 3
        assert lot.qty_reserved <= lot.qty_on_hand


@pytest.fixture
def held_reservation(five_available):
    Session, product_id, lot_id, (c1, _) = five_available
    with Session() as db:
        r = commands.create_reservation(
            db, CreateReservation(case_id=c1, product_id=product_id, quantity=3, lot_id=lot_id)
        )
        return Session, lot_id, r.id


def test_stale_reservation_version_is_rejected(held_reservation, published):
    """
    GIVEN A lit la réservation (version 1), B l'annule et commit (version 2)
    WHEN A écrit sur sa copie périmée
    THEN ConcurrentModification, rien n'est écrit par A
    """
    Session, lot_id, rid = held_reservation
    a = Session()
    try:
        stale = a.get(Reservation, rid)
        assert stale.status == ReservationStatus.pending

        with Session() as b:
            commands.cancel_reservation(b, rid, actor="nurse-b")

        published.clear()
        with pytest.raises(ConcurrentModification):
            with commands.unit_of_work(a):
                stale.notes = "late edit"
                a.flush()
        assert published == []
    finally:
        a.close()

    with Session() as db:
        r = db.get(Reservation, rid)
        assert r.status == ReservationStatus.cancelled
        assert r.notes is None
        assert ledger.get_lot(db, lot_id).qty_reserved == 0


@pytest.mark.skipif(
    not os.getenv("TEST_DATABASE_URL", "sqlite").startswith("sqlite"),
    reason="relies on SQLite busy timeout instead of a server lock_timeout",
)
def test_locked_row_maps_to_concurrent_modification(held_reservation):
    """A tient le verrou d'écriture ; la commande de B échoue proprement et n'écrit rien."""
    Session, lot_id, rid = held_reservation
    a = Session()
    try:
        r = a.get(Reservation, rid)
        r.notes = "picking in progress"
        a.flush()

        with Session() as b:
            with pytest.raises(ConcurrentModification):
                commands.cancel_reservation(b, rid, actor="nurse-b")
    finally:
        a.rollback()
        a.close()

    with Session() as db:
        assert db.get(Reservation, rid).status == ReservationStatus.pending
        assert ledger.get_lot(db, lot_id).qty_reserved == 3
