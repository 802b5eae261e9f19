"""
Notifiche sugli appuntamenti (collaboratore esterno, best-effort).

- OutboxNotifier : salva le notifiche in tabella, un sistema esterno le legge e le invia
- LogNotifier    : modalità "mock", scrive solo nel log
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from .config import Settings, get_settings
from .db import db_session
from .models import Appointment, Notification, NotificationKind

logger = logging.getLogger(__name__)

NotificationEvent = NotificationKind

_ACTION_LABEL = {
    NotificationKind.CREATED: "creato",
    NotificationKind.UPDATED: "aggiornato",
    NotificationKind.CANCELLED: "annullato",
}


@dataclass(frozen=True)
class NotifyResult:
    success: bool
    detail: str = ""


class Notifier(Protocol):
    def notify(self, kind: NotificationEvent, appointment_id: int) -> NotifyResult: ...


def build_message(kind: NotificationKind, appointment: Appointment) -> str:
    return (
        f"Appuntamento {_ACTION_LABEL[kind]} per {appointment.date.strftime('%d/%m/%Y %H:%M')}. "
        f"Motivo: {appointment.reason or ''}"
    )


class OutboxNotifier:
    """Accoda una notifica per il paziente e una per il medico."""

    def __init__(
        self,
        session_factory: sessionmaker[Session] | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    def notify(self, kind: NotificationKind, appointment_id: int) -> NotifyResult:
        with db_session(self._session_factory) as s:
            appointment = s.get(Appointment, appointment_id)
            if appointment is None:
                return NotifyResult(False, "Appuntamento non trovato.")

            message = build_message(kind, appointment)
            now = self._clock()
            recipients = (f"paziente:{appointment.user_id}", f"medico:{appointment.doctor_id}")
            for recipient in recipients:
                s.add(
                    Notification(
                        kind=kind,
                        message=message,
                        recipient=recipient,
                        appointment_id=appointment.id,
                        created_at=now,
                    )
                )
        return NotifyResult(True, f"{len(recipients)} notifiche in coda.")


class LogNotifier:
    def notify(self, kind: NotificationKind, appointment_id: int) -> NotifyResult:
        logger.info("[MOCK] appuntamento %s %s", appointment_id, _ACTION_LABEL[kind])
        return NotifyResult(True, "mock")


def build_notifier(
    settings: Settings | None = None,
    session_factory: sessionmaker[Session] | None = None,
) -> Notifier:
    settings = settings or get_settings()
    if settings.notifications_mode == "mock":
        return LogNotifier()
    if settings.notifications_mode != "outbox":
        logger.warning("NOTIFICATIONS_MODE=%s sconosciuta, uso outbox", settings.notifications_mode)
    return OutboxNotifier(session_factory=session_factory)


# =========================
# Outbox (lettura da sistema esterno)
# =========================
def pending_notifications(limit: int = 50, session_factory: sessionmaker[Session] | None = None) -> list[Notification]:
    """Ritorna notifiche non ancora 'inviate' (sent_at è NULL)."""
    with db_session(session_factory) as s:
        q = (
            select(Notification)
            .where(Notification.sent_at.is_(None))
            .order_by(Notification.created_at.asc(), Notification.id.asc())
            .limit(limit)
        )
        return list(s.scalars(q))


def mark_notification_sent(
    notification_id: int,
    session_factory: sessionmaker[Session] | None = None,
    clock: Callable[[], datetime] = datetime.now,
) -> bool:
    with db_session(session_factory) as s:
        n = s.get(Notification, notification_id)
        if not n or n.sent_at is not None:
            return False
        n.sent_at = clock()
        return True
