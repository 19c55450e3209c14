from __future__ import annotations

from typing import Generator

from fastapi import Header

from dentalstock.app.db.session import SessionLocal


def get_db() -> Generator:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_actor(actor_id: str | None = Header(default=None, alias="X-Actor-Id")) -> str | None:
    # acteur déjà authentifié par l'appelant : le moteur lui fait confiance
    return actor_id.strip() if actor_id and actor_id.strip() else None
