"""
Errori di dominio.

Ogni errore porta un ``code`` leggibile dalle macchine e lo ``status_code`` HTTP
con cui l'API lo espone; il messaggio è pensato per l'utente finale.
"""
from __future__ import annotations


class DomainError(Exception):
    code = "DOMAIN_ERROR"
    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, object]:
        return {"ok": False, "messaggio": self.message, "codice": self.code}


class ValidationError(DomainError):
    code = "VALIDATION_ERROR"


class WorkingHoursViolation(DomainError):
    code = "WORKING_HOURS"


class OverlapConflict(DomainError):
    code = "SLOT_UNAVAILABLE"


class ModificationWindowViolation(DomainError):
    code = "MODIFICATION_WINDOW"


class TerminalStateViolation(DomainError):
    code = "TERMINAL_STATE"


class Forbidden(DomainError):
    code = "FORBIDDEN"
    status_code = 403


class NotFound(DomainError):
    code = "NOT_FOUND"
    status_code = 404


class DuplicateActiveTicket(DomainError):
    code = "DUPLICATE_QUEUE"
    status_code = 409


class QueueCapacityExceeded(DomainError):
    code = "QUEUE_FULL"
    status_code = 409


class ConcurrentQueueUpdate(DomainError):
    code = "QUEUE_CONFLICT"
    status_code = 409


class UnexpectedStoreError(DomainError):
    code = "SERVER_ERROR"
    status_code = 500

    def __init__(self, message: str = "Errore interno, riprova più tardi.") -> None:
        super().__init__(message)
