from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import DateTime, Enum, Index, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from .db import Base


class TicketStatus(enum.Enum):
    WAITING = "WAITING"
    CALLED = "CALLED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (TicketStatus.COMPLETED, TicketStatus.CANCELLED)


ACTIVE_TICKET_STATUSES = (TicketStatus.WAITING, TicketStatus.CALLED)

_TICKET_TRANSITIONS: dict[TicketStatus, frozenset[TicketStatus]] = {
    TicketStatus.WAITING: frozenset({TicketStatus.CALLED, TicketStatus.COMPLETED, TicketStatus.CANCELLED}),
    TicketStatus.CALLED: frozenset({TicketStatus.COMPLETED, TicketStatus.CANCELLED}),
    TicketStatus.COMPLETED: frozenset(),
    TicketStatus.CANCELLED: frozenset(),
}


@dataclass(frozen=True)
class TransitionResult:
    ok: bool
    current: TicketStatus
    target: TicketStatus
    reason: str = ""


def check_transition(current: TicketStatus, target: TicketStatus) -> TransitionResult:
    """Esito della transizione ``current -> target`` secondo la macchina a stati del ticket."""
    if target in _TICKET_TRANSITIONS[current]:
        return TransitionResult(True, current, target)
    if current is TicketStatus.COMPLETED:
        reason = "Il ticket è già completato."
    elif current is TicketStatus.CANCELLED:
        reason = "Il ticket è già annullato."
    else:
        reason = f"Transizione non consentita: {current.value} -> {target.value}."
    return TransitionResult(False, current, target, reason)


class AppointmentStatus(enum.Enum):
    PENDIENTE = "PENDIENTE"
    CONFIRMADA = "CONFIRMADA"
    CANCELADA = "CANCELADA"
    COMPLETADA = "COMPLETADA"


class NotificationKind(enum.Enum):
    CREATED = "created"
    UPDATED = "updated"
    CANCELLED = "cancelled"


class QueueTicket(Base):
    __tablename__ = "queue_tickets"
    __table_args__ = (
        # Un solo ticket attivo per coppia medico/paziente
        Index(
            "uq_ticket_doctor_patient_active",
            "doctor_id",
            "patient_id",
            unique=True,
            sqlite_where=text("status IN ('WAITING', 'CALLED')"),
            postgresql_where=text("status IN ('WAITING', 'CALLED')"),
        ),
        # Un solo paziente "in visita" per medico
        Index(
            "uq_ticket_doctor_called",
            "doctor_id",
            unique=True,
            sqlite_where=text("status = 'CALLED'"),
            postgresql_where=text("status = 'CALLED'"),
        ),
        Index("ix_ticket_doctor_status_created", "doctor_id", "status", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    doctor_id: Mapped[int] = mapped_column(Integer, nullable=False)
    patient_id: Mapped[int] = mapped_column(Integer, nullable=False)

    status: Mapped[TicketStatus] = mapped_column(
        Enum(TicketStatus, native_enum=False, length=16), default=TicketStatus.WAITING, nullable=False
    )

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    called_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    def __repr__(self) -> str:
        return f"QueueTicket(#{self.id}, medico={self.doctor_id}, paziente={self.patient_id}, {self.status.value})"


class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = (
        # Evita doppie prenotazioni sullo stesso inizio (ultima difesa contro le corse)
        Index(
            "uq_appointment_doctor_start",
            "doctor_id",
            "date",
            unique=True,
            sqlite_where=text("status != 'CANCELADA'"),
            postgresql_where=text("status != 'CANCELADA'"),
        ),
        Index("ix_appointment_doctor_date", "doctor_id", "date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    doctor_id: Mapped[int] = mapped_column(Integer, nullable=False)

    # solo l'inizio: la fine si ricava dalla durata standard dello slot
    date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)

    status: Mapped[AppointmentStatus] = mapped_column(
        Enum(AppointmentStatus, native_enum=False, length=16), default=AppointmentStatus.PENDIENTE, nullable=False
    )

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, onupdate=datetime.now, nullable=False)

    def end(self, slot_minutes: int) -> datetime:
        return self.date + timedelta(minutes=slot_minutes)

    def __repr__(self) -> str:
        return f"Appointment(#{self.id}, medico={self.doctor_id}, {self.date:%Y-%m-%d %H:%M}, {self.status.value})"


class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[NotificationKind] = mapped_column(Enum(NotificationKind, native_enum=False, length=16), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    recipient: Mapped[str | None] = mapped_column(String(120), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, nullable=False)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # opzionale: notifica riferita a un appuntamento
    appointment_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
