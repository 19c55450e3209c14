"""
Événements émis par le moteur.

Les services les empilent sur la session (`record`) pendant la transaction ;
`dentalstock.services.commands` les publie uniquement après commit, et les
jette sur rollback. Aucun abonné ne voit donc un état partiel.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Union

from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from dentalstock.app.db.models.core_types import MovementType, ReadinessState, ReservationStatus

logger = logging.getLogger(__name__)

_PENDING_KEY = "dentalstock.pending_events"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ReadinessChanged(BaseModel):
    case_id: int
    previous: ReadinessState
    current: ReadinessState
    timestamp: datetime = Field(default_factory=_now)


class ReservationStatusChanged(BaseModel):
    reservation_id: int
    case_id: int
    previous: ReservationStatus | None
    current: ReservationStatus
    actor: str | None = None
    timestamp: datetime = Field(default_factory=_now)


class StockMoved(BaseModel):
    movement_id: int
    stock_lot_id: int
    product_id: int
    movement_type: MovementType
    quantity: int
    timestamp: datetime = Field(default_factory=_now)


EngineEvent = Union[ReadinessChanged, ReservationStatusChanged, StockMoved]
Subscriber = Callable[[EngineEvent], None]


def record(db: Session, event: EngineEvent) -> None:
    db.info.setdefault(_PENDING_KEY, []).append(event)


def drain(db: Session) -> list[EngineEvent]:
    return db.info.pop(_PENDING_KEY, [])


class EventBus:
    """Diffusion synchrone vers les collaborateurs (notifications, UI, audit)."""

    def __init__(self) -> None:
        self._subscribers: list[tuple[type | None, Subscriber]] = []

    def subscribe(self, handler: Subscriber, event_type: type | None = None) -> None:
        self._subscribers.append((event_type, handler))

    def publish(self, events: list[EngineEvent]) -> None:
        for event in events:
            for event_type, handler in self._subscribers:
                if event_type is not None and not isinstance(event, event_type):
                    continue
                try:
                    handler(event)
                except Exception:
                    # la transaction est déjà commitée : un abonné en échec ne la défait pas
                    logger.exception("Event subscriber failed for %s", type(event).__name__)


bus = EventBus()
