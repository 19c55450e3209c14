"""
Erreurs métier du moteur de réservation.

Chaque erreur porte un `code` stable (lu par l'UI) et le status HTTP
correspondant. Rien n'est retenté par le moteur : c'est à l'appelant de
décider retry vs abandon.
"""

from __future__ import annotations


class LedgerError(Exception):
    code = "ledger_error"
    status_code = 400

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        return {"code": self.code, "detail": self.message, **self.details}


class NotFound(LedgerError):
    code = "not_found"
    status_code = 404

    def __init__(self, entity: str, entity_id):
        super().__init__(f"{entity} {entity_id} not found", entity=entity, entity_id=entity_id)


class InsufficientAvailable(LedgerError):
    code = "insufficient_available"
    status_code = 409

    def __init__(self, lot_id: int, requested: int, available: int):
        super().__init__(
            f"Insufficient available stock on lot {lot_id} (requested={requested}, available={available})",
            lot_id=lot_id,
            requested=requested,
            available=available,
        )


class InvalidTransition(LedgerError):
    code = "invalid_transition"
    status_code = 409

    def __init__(self, entity_id, current: str, target: str, reason: str | None = None):
        message = f"Cannot move {entity_id} from {current} to {target}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, entity_id=entity_id, current=current, target=target)


class InvariantViolation(LedgerError):
    code = "invariant_violation"
    status_code = 409


class AlreadyClosed(LedgerError):
    code = "already_closed"
    status_code = 409

    def __init__(self, case_id: int, readiness: str):
        super().__init__(f"Case {case_id} is already {readiness}", case_id=case_id, readiness=readiness)


class ConcurrentModification(LedgerError):
    code = "concurrent_modification"
    status_code = 409
