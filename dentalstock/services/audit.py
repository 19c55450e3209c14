from __future__ import annotations

import json

from sqlalchemy.orm import Session

from dentalstock.app.db.models.models_v1 import AuditLog


def write_audit(
    db: Session,
    *,
    actor: str | None,
    action: str,
    entity_type: str,
    entity_id,
    **meta,
) -> AuditLog:
    entry = AuditLog(
        actor_id=actor,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id),
        meta=json.dumps(meta, default=str, sort_keys=True) if meta else None,
    )
    db.add(entry)
    return entry
