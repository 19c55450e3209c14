import itertools
import os
from datetime import date

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from dentalstock.app.api.deps import get_db
from dentalstock.app.db.models.models_v1 import Base, Case, Product, ProductCategory
from dentalstock.app.main import app
from dentalstock.services import events, ledger

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "sqlite+pysqlite:///:memory:")


def make_engine(url: str):
    if url.startswith("sqlite") and ":memory:" in url:
        # une seule connexion partagée, sinon chaque session voit une base vide
        return create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False, "timeout": 5})
    return create_engine(url, pool_pre_ping=True)


@pytest.fixture(scope="function")
def engine():
    """Schéma neuf par test."""
    eng = make_engine(TEST_DATABASE_URL)
    Base.metadata.create_all(bind=eng)
    try:
        yield eng
    finally:
        Base.metadata.drop_all(bind=eng)
        eng.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


@pytest.fixture(scope="function")
def db_session(session_factory) -> Session:
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def published(monkeypatch):
    """Bus neuf par test ; renvoie la liste des événements publiés."""
    bus = events.EventBus()
    received = []
    bus.subscribe(received.append)
    monkeypatch.setattr(events, "bus", bus)
    return received


@pytest.fixture
def client(session_factory):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


# ---------- FACTORIES ----------
@pytest.fixture
def make_category(db_session):
    counter = itertools.count(1)

    def _make(name: str | None = None) -> ProductCategory:
        cat = ProductCategory(name=name or f"Category {next(counter)}")
        db_session.add(cat)
        db_session.commit()
        return cat

    return _make


@pytest.fixture
def make_product(db_session):
    counter = itertools.count(1)

    def _make(name: str | None = None, *, category: ProductCategory | None = None, ref_number: str | None = None):
        n = next(counter)
        p = Product(
            sku=f"TEST-SKU-{n}",
            name=name or f"TEST-PROD-{n}",
            ref_number=ref_number,
            category_id=category.id if category else None,
            active=True,
        )
        db_session.add(p)
        db_session.commit()
        return p

    return _make


@pytest.fixture
def make_case(db_session):
    counter = itertools.count(1)

    def _make(surgery_date: date | None = None) -> Case:
        c = Case(case_number=f"TEST-CASE-{next(counter)}", surgery_date=surgery_date or date(2026, 11, 2))
        db_session.add(c)
        db_session.commit()
        return c

    return _make


@pytest.fixture
def make_lot(db_session):
    """Lot créé par une vraie réception ledger (le mouvement initial existe)."""

    def _make(product: Product, qty: int, *, expiry_date: date | None = None, lot_number: str | None = None):
        receipt = ledger.receive(
            db_session,
            product.id,
            qty,
            lot_number=lot_number,
            expiry_date=expiry_date,
            unit_cost=10,
        )
        db_session.commit()
        events.drain(db_session)
        return receipt.lot

    return _make
