"""
Coda walk-in per medico (FIFO) con posizione, "chiama il prossimo" e annullamento.

Nessuno stato condiviso in memoria: ogni operazione rilegge il DB prima di decidere.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterator

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .config import Settings, get_settings
from .db import SessionLocal, db_session
from .errors import (
    ConcurrentQueueUpdate,
    DomainError,
    DuplicateActiveTicket,
    NotFound,
    QueueCapacityExceeded,
    TerminalStateViolation,
    UnexpectedStoreError,
    ValidationError,
)
from .models import ACTIVE_TICKET_STATUSES, QueueTicket, TicketStatus, check_transition

logger = logging.getLogger(__name__)

DUPLICATE_TICKET_MSG = "Il paziente è già in coda per questo medico."
CONCURRENT_CALL_MSG = "Un'altra chiamata per questo medico è in corso, riprova."


# =========================
# DTO
# =========================
@dataclass(frozen=True)
class JoinResult:
    ticket: QueueTicket
    position: int | None


@dataclass(frozen=True)
class WaitingEntry:
    ticket: QueueTicket
    position: int


@dataclass(frozen=True)
class CancelResult:
    cancelled: QueueTicket
    waiting: list[WaitingEntry]


def require_id(value: object, name: str) -> int:
    """Converte un identificativo in int positivo o solleva ValidationError."""
    if value is None or (isinstance(value, str) and not value.strip()) or isinstance(value, bool):
        raise ValidationError(f"{name} è obbligatorio.")
    try:
        parsed = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise ValidationError(f"{name} non valido.") from None
    if parsed <= 0:
        raise ValidationError(f"{name} non valido.")
    return parsed


@contextmanager
def store_errors(on_integrity: DomainError | None = None) -> Iterator[None]:
    """
    Traduce gli errori del DB in errori di dominio.
    Le violazioni di vincolo riconosciute diventano l'errore richiesto dal chiamante,
    il resto diventa un errore generico senza dettagli interni.
    """
    try:
        yield
    except IntegrityError as exc:
        if on_integrity is None:
            logger.exception("Violazione di vincolo non prevista")
            raise UnexpectedStoreError() from exc
        logger.warning("Vincolo violato: %s", on_integrity.code)
        raise on_integrity from exc
    except SQLAlchemyError as exc:
        logger.exception("Errore del database")
        raise UnexpectedStoreError() from exc


class QueueEngine:
    def __init__(
        self,
        session_factory: sessionmaker[Session] | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._session_factory = session_factory or SessionLocal
        self.settings = settings or get_settings()
        self._clock = clock

    def _session(self):
        return db_session(self._session_factory)

    # =========================
    # Query interne
    # =========================
    @staticmethod
    def _position(s: Session, ticket: QueueTicket) -> int | None:
        if ticket.status is not TicketStatus.WAITING:
            return None
        ahead = s.scalar(
            select(func.count())
            .select_from(QueueTicket)
            .where(
                QueueTicket.doctor_id == ticket.doctor_id,
                QueueTicket.status == TicketStatus.WAITING,
                or_(
                    QueueTicket.created_at < ticket.created_at,
                    and_(QueueTicket.created_at == ticket.created_at, QueueTicket.id < ticket.id),
                ),
            )
        )
        return int(ahead or 0) + 1

    @staticmethod
    def _waiting_query(doctor_id: int):
        return (
            select(QueueTicket)
            .where(QueueTicket.doctor_id == doctor_id, QueueTicket.status == TicketStatus.WAITING)
            .order_by(QueueTicket.created_at.asc(), QueueTicket.id.asc())
        )

    def _waiting_entries(self, s: Session, doctor_id: int) -> list[WaitingEntry]:
        tickets = s.scalars(self._waiting_query(doctor_id)).all()
        return [WaitingEntry(ticket=t, position=i) for i, t in enumerate(tickets, start=1)]

    def _oldest_waiting(self, s: Session, doctor_id: int) -> QueueTicket | None:
        return s.scalars(self._waiting_query(doctor_id).limit(1)).first()

    def _active_ticket(self, s: Session, doctor_id: int, patient_id: int) -> QueueTicket | None:
        return s.scalars(
            select(QueueTicket)
            .where(
                QueueTicket.doctor_id == doctor_id,
                QueueTicket.patient_id == patient_id,
                QueueTicket.status.in_(ACTIVE_TICKET_STATUSES),
            )
            .limit(1)
        ).first()

    @staticmethod
    def _mark_called(s: Session, ticket_id: int, now: datetime) -> bool:
        """Update condizionato: passa a CALLED solo se il ticket è ancora WAITING."""
        result = s.execute(
            update(QueueTicket)
            .where(QueueTicket.id == ticket_id, QueueTicket.status == TicketStatus.WAITING)
            .values(status=TicketStatus.CALLED, called_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    def _load(s: Session, ticket_id: int) -> QueueTicket:
        ticket = s.get(QueueTicket, ticket_id)
        if ticket is None:
            raise NotFound("Ticket non trovato.")
        return ticket

    # =========================
    # Operazioni
    # =========================
    def join(self, doctor_id: object, patient_id: object) -> JoinResult:
        """
        Inserisce il paziente nella coda del medico.
        - rifiuta se il paziente ha già un ticket attivo (WAITING/CALLED) con lo stesso medico
        - rifiuta se la coda ha già raggiunto la capienza
        """
        doctor = require_id(doctor_id, "doctorId")
        patient = require_id(patient_id, "patientId")
        capacity = self.settings.queue_capacity

        with store_errors(DuplicateActiveTicket(DUPLICATE_TICKET_MSG)), self._session() as s:
            if self._active_ticket(s, doctor, patient) is not None:
                raise DuplicateActiveTicket(DUPLICATE_TICKET_MSG)

            waiting = s.scalar(
                select(func.count())
                .select_from(QueueTicket)
                .where(QueueTicket.doctor_id == doctor, QueueTicket.status == TicketStatus.WAITING)
            )
            if (waiting or 0) >= capacity:
                raise QueueCapacityExceeded(f"La coda del medico è piena ({capacity} pazienti in attesa).")

            ticket = QueueTicket(
                doctor_id=doctor,
                patient_id=patient,
                status=TicketStatus.WAITING,
                created_at=self._clock(),
            )
            s.add(ticket)
            s.flush()
            position = self._position(s, ticket)

        logger.info("Ticket %s creato: medico=%s paziente=%s posizione=%s", ticket.id, doctor, patient, position)
        return JoinResult(ticket=ticket, position=position)

    def call_next(self, doctor_id: object) -> QueueTicket | None:
        """
        Chiama il prossimo paziente del medico.

        Tutto in una transazione:
        1. chiude (COMPLETED) l'eventuale ticket già CALLED
        2. seleziona il WAITING più vecchio
        3. lo porta a CALLED con update condizionato; se un'altra richiesta
           l'ha preso prima, riseleziona e riprova una sola volta

        Ritorna None se non c'è nessuno in attesa.
        """
        doctor = require_id(doctor_id, "doctorId")

        called: QueueTicket | None = None
        with store_errors(ConcurrentQueueUpdate(CONCURRENT_CALL_MSG)), self._session() as s:
            now = self._clock()
            closed = s.execute(
                update(QueueTicket)
                .where(QueueTicket.doctor_id == doctor, QueueTicket.status == TicketStatus.CALLED)
                .values(status=TicketStatus.COMPLETED, completed_at=now)
                .execution_options(synchronize_session=False)
            ).rowcount
            if closed:
                logger.info("Medico %s: visita precedente chiusa automaticamente", doctor)

            for attempt in range(2):
                candidate = self._oldest_waiting(s, doctor)
                if candidate is None:
                    break
                if self._mark_called(s, candidate.id, now):
                    called = s.get(QueueTicket, candidate.id, populate_existing=True)
                    break
                logger.warning(
                    "Medico %s: ticket %s preso da un'altra richiesta (tentativo %s)", doctor, candidate.id, attempt + 1
                )

        if called is None:
            logger.info("Medico %s: nessun paziente in attesa", doctor)
        else:
            logger.info("Medico %s: chiamato ticket %s (paziente %s)", doctor, called.id, called.patient_id)
        return called

    def complete(self, ticket_id: object) -> QueueTicket:
        tid = require_id(ticket_id, "ticketId")
        with store_errors(), self._session() as s:
            ticket = self._load(s, tid)
            esito = check_transition(ticket.status, TicketStatus.COMPLETED)
            if not esito.ok:
                raise TerminalStateViolation(esito.reason)
            ticket.status = TicketStatus.COMPLETED
            ticket.completed_at = self._clock()

        logger.info("Ticket %s completato", tid)
        return ticket

    def cancel(self, ticket_id: object) -> CancelResult:
        """
        Annulla un ticket e restituisce la coda residua del medico con le posizioni ricalcolate.
        """
        tid = require_id(ticket_id, "ticketId")
        with store_errors(), self._session() as s:
            ticket = self._load(s, tid)
            esito = check_transition(ticket.status, TicketStatus.CANCELLED)
            if not esito.ok:
                if ticket.status is TicketStatus.COMPLETED:
                    raise TerminalStateViolation("Impossibile annullare un ticket già completato.")
                raise TerminalStateViolation(esito.reason)
            ticket.status = TicketStatus.CANCELLED
            ticket.cancelled_at = self._clock()
            s.flush()
            waiting = self._waiting_entries(s, ticket.doctor_id)

        logger.info("Ticket %s annullato, %s pazienti ancora in coda", tid, len(waiting))
        return CancelResult(cancelled=ticket, waiting=waiting)

    def position(self, ticket: QueueTicket) -> int | None:
        """Posizione 1-based di un ticket WAITING, None per gli altri stati (stato riletto dal DB)."""
        with store_errors(), self._session() as s:
            return self._position(s, self._load(s, ticket.id))

    def ticket_position(self, ticket_id: object) -> JoinResult:
        tid = require_id(ticket_id, "ticketId")
        with store_errors(), self._session() as s:
            ticket = self._load(s, tid)
            return JoinResult(ticket=ticket, position=self._position(s, ticket))

    def get_ticket(self, ticket_id: object) -> QueueTicket:
        tid = require_id(ticket_id, "ticketId")
        with store_errors(), self._session() as s:
            return self._load(s, tid)

    def current(self, doctor_id: object) -> QueueTicket | None:
        doctor = require_id(doctor_id, "doctorId")
        with store_errors(), self._session() as s:
            return s.scalars(
                select(QueueTicket)
                .where(QueueTicket.doctor_id == doctor, QueueTicket.status == TicketStatus.CALLED)
                .order_by(QueueTicket.called_at.desc())
                .limit(1)
            ).first()

    def waiting(self, doctor_id: object) -> list[WaitingEntry]:
        doctor = require_id(doctor_id, "doctorId")
        with store_errors(), self._session() as s:
            return self._waiting_entries(s, doctor)
