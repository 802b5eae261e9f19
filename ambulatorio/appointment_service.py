"""
Prenotazione appuntamenti: orario di lavoro, sovrapposizioni, finestra di modifica.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Callable

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from .config import Settings, get_settings
from .db import SessionLocal, db_session
from .errors import (
    ModificationWindowViolation,
    NotFound,
    OverlapConflict,
    ValidationError,
    WorkingHoursViolation,
)
from .models import Appointment, AppointmentStatus, NotificationKind
from .notifications import Notifier, build_notifier
from .queue_service import require_id, store_errors

logger = logging.getLogger(__name__)

OVERLAP_MSG = "Il medico non è disponibile in quell'orario (sovrapposizione)."


@dataclass(frozen=True)
class AgendaEntry:
    appointment: Appointment
    end: datetime


def to_local_naive(value: datetime) -> datetime:
    """Le date con fuso vengono portate all'ora locale del server (l'orario di lavoro è locale)."""
    if value.tzinfo is None:
        return value
    return value.astimezone().replace(tzinfo=None)


def parse_datetime(value: object, name: str = "date") -> datetime:
    if isinstance(value, datetime):
        return to_local_naive(value)
    if isinstance(value, str) and value.strip():
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            return to_local_naive(datetime.fromisoformat(raw))
        except ValueError:
            raise ValidationError(f"{name} non valida: {value!r}.") from None
    raise ValidationError(f"{name} non valida.")


def parse_status(value: object) -> AppointmentStatus:
    if isinstance(value, AppointmentStatus):
        return value
    try:
        return AppointmentStatus(str(value).strip().upper())
    except ValueError:
        raise ValidationError("Stato dell'appuntamento non valido.") from None


class AppointmentScheduler:
    def __init__(
        self,
        session_factory: sessionmaker[Session] | None = None,
        settings: Settings | None = None,
        notifier: Notifier | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._session_factory = session_factory or SessionLocal
        self.settings = settings or get_settings()
        self.notifier = notifier or build_notifier(self.settings, self._session_factory)
        self._clock = clock

    def _session(self):
        return db_session(self._session_factory)

    # =========================
    # Regole
    # =========================
    @staticmethod
    def get_allowed_statuses() -> dict[str, str]:
        return {s.name: s.value for s in AppointmentStatus}

    def _duration(self, duration_minutes: object) -> int:
        if duration_minutes is None:
            return self.settings.default_slot_minutes
        if isinstance(duration_minutes, bool):
            raise ValidationError("durationMinutes non valido.")
        try:
            minutes = int(duration_minutes)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            raise ValidationError("durationMinutes non valido.") from None
        if minutes <= 0:
            raise ValidationError("durationMinutes deve essere positivo.")
        return minutes

    def compute_end(self, start: datetime, duration_minutes: object = None) -> datetime:
        """Calcola la fine in base alla durata (default: slot standard)."""
        return start + timedelta(minutes=self._duration(duration_minutes))

    def check_working_hours(self, start: datetime, end: datetime) -> None:
        st = self.settings
        msg = (
            f"L'appuntamento deve rientrare nell'orario di lavoro "
            f"({st.work_start_hour:02d}:00 - {st.work_end_hour:02d}:00)."
        )
        # niente appuntamenti a cavallo di due giorni
        if start.date() != end.date():
            raise WorkingHoursViolation(msg)

        def hours(dt: datetime) -> float:
            return dt.hour + dt.minute / 60 + dt.second / 3600

        if not (hours(start) >= st.work_start_hour and hours(end) <= st.work_end_hour and end > start):
            raise WorkingHoursViolation(msg)

    def _has_overlap(
        self,
        s: Session,
        doctor_id: int,
        start: datetime,
        end: datetime,
        ignore_id: int | None = None,
    ) -> bool:
        """
        Sovrapposizione [start, end) con gli appuntamenti non annullati del medico nello stesso giorno.
        Il DB salva solo l'inizio: per quelli esistenti si assume lo slot standard.
        """
        day_start = datetime.combine(start.date(), time.min)
        day_end = day_start + timedelta(days=1)
        slot = timedelta(minutes=self.settings.default_slot_minutes)

        q = select(Appointment.id, Appointment.date).where(
            Appointment.doctor_id == doctor_id,
            Appointment.date >= day_start,
            Appointment.date < day_end,
            Appointment.status != AppointmentStatus.CANCELADA,
        )
        for row in s.execute(q):
            if ignore_id is not None and row.id == ignore_id:
                continue
            if start < row.date + slot and end > row.date:
                return True
        return False

    def _check_cutoff(self, appointment: Appointment) -> None:
        remaining = appointment.date - self._clock()
        if remaining < timedelta(hours=self.settings.modification_cutoff_hours):
            raise ModificationWindowViolation(
                f"Gli appuntamenti possono essere modificati solo fino a "
                f"{self.settings.modification_cutoff_hours} ore prima."
            )

    def _notify(self, kind: NotificationKind, appointment_id: int) -> None:
        """Best-effort: un errore di notifica non deve mai far fallire l'operazione."""
        if not self.settings.notifications_auto:
            return
        try:
            result = self.notifier.notify(kind, appointment_id)
        except Exception:
            logger.warning("Notifica %s fallita per appuntamento %s", kind.value, appointment_id, exc_info=True)
            return
        if not result.success:
            logger.warning("Notifica %s non inviata per appuntamento %s: %s", kind.value, appointment_id, result.detail)

    @staticmethod
    def _load(s: Session, appointment_id: int) -> Appointment:
        appointment = s.get(Appointment, appointment_id)
        if appointment is None:
            raise NotFound("Appuntamento non trovato.")
        return appointment

    # =========================
    # Use case
    # =========================
    def create_appointment(
        self,
        user_id: object = None,
        doctor_id: object = None,
        date: object = None,
        duration_minutes: object = None,
        reason: str | None = None,
        status: object = None,
    ) -> Appointment:
        """
        Use case: Prenotare appuntamento.
        - verifica campi obbligatori e orario di lavoro
        - verifica che il medico sia libero (nessuna sovrapposizione)
        - salva con stato PENDIENTE se non indicato
        - notifica (best-effort)
        """
        if user_id in (None, "") or doctor_id in (None, "") or date in (None, "") or not (reason or "").strip():
            raise ValidationError("userId, doctorId, date e reason sono obbligatori.")
        user = require_id(user_id, "userId")
        doctor = require_id(doctor_id, "doctorId")

        start = parse_datetime(date)
        end = self.compute_end(start, duration_minutes)
        self.check_working_hours(start, end)

        new_status = parse_status(status) if status not in (None, "") else AppointmentStatus.PENDIENTE

        with store_errors(OverlapConflict(OVERLAP_MSG)), self._session() as s:
            if self._has_overlap(s, doctor, start, end):
                raise OverlapConflict(OVERLAP_MSG)

            now = self._clock()
            appointment = Appointment(
                user_id=user,
                doctor_id=doctor,
                date=start,
                reason=reason.strip(),
                status=new_status,
                created_at=now,
                updated_at=now,
            )
            s.add(appointment)
            s.flush()

        logger.info("Appuntamento %s creato: medico=%s inizio=%s", appointment.id, doctor, start.isoformat())
        self._notify(NotificationKind.CREATED, appointment.id)
        return appointment

    def update_appointment(
        self,
        appointment_id: object,
        date: object = None,
        duration_minutes: object = None,
        reason: str | None = None,
        status: object = None,
        doctor_id: object = None,
    ) -> Appointment:
        """
        Modifica parziale (solo i campi passati).
        Bloccata se mancano meno di N ore all'inizio *attuale*; se cambiano data, durata
        o medico rifà i controlli di orario e sovrapposizione escludendo sé stesso.
        """
        aid = require_id(appointment_id, "id")
        new_start = parse_datetime(date) if date not in (None, "") else None
        new_doctor = require_id(doctor_id, "doctorId") if doctor_id not in (None, "") else None
        new_status = parse_status(status) if status not in (None, "") else None
        if duration_minutes is not None:
            self._duration(duration_minutes)
        if reason is not None and not reason.strip():
            raise ValidationError("reason non può essere vuoto.")

        with store_errors(OverlapConflict(OVERLAP_MSG)), self._session() as s:
            appointment = self._load(s, aid)
            self._check_cutoff(appointment)

            reactivated = (
                appointment.status is AppointmentStatus.CANCELADA
                and new_status is not None
                and new_status is not AppointmentStatus.CANCELADA
            )
            slot_changed = new_start is not None or new_doctor is not None or duration_minutes is not None
            if slot_changed or reactivated:
                start = new_start or appointment.date
                end = self.compute_end(start, duration_minutes)
                self.check_working_hours(start, end)
                target_doctor = new_doctor or appointment.doctor_id
                if self._has_overlap(s, target_doctor, start, end, ignore_id=appointment.id):
                    raise OverlapConflict(OVERLAP_MSG)

            if new_start is not None:
                appointment.date = new_start
            if new_doctor is not None:
                appointment.doctor_id = new_doctor
            if reason is not None:
                appointment.reason = reason.strip()
            if new_status is not None:
                appointment.status = new_status
            appointment.updated_at = self._clock()
            s.flush()

        logger.info("Appuntamento %s aggiornato", aid)
        self._notify(NotificationKind.UPDATED, aid)
        return appointment

    def cancel_appointment(self, appointment_id: object) -> Appointment:
        """
        Use case: Annullare appuntamento.
        - stessa finestra di modifica dell'update
        - imposta stato CANCELADA e notifica
        """
        aid = require_id(appointment_id, "id")
        with store_errors(), self._session() as s:
            appointment = self._load(s, aid)
            self._check_cutoff(appointment)
            if appointment.status is AppointmentStatus.CANCELADA:
                return appointment
            appointment.status = AppointmentStatus.CANCELADA
            appointment.updated_at = self._clock()

        logger.info("Appuntamento %s annullato", aid)
        self._notify(NotificationKind.CANCELLED, aid)
        return appointment

    def get_appointment(self, appointment_id: object) -> Appointment:
        aid = require_id(appointment_id, "id")
        with store_errors(), self._session() as s:
            return self._load(s, aid)

    def day_agenda(self, doctor_id: object, day: date) -> list[AgendaEntry]:
        doctor = require_id(doctor_id, "doctorId")
        day_start = datetime.combine(day, time.min)
        day_end = day_start + timedelta(days=1)
        slot = self.settings.default_slot_minutes

        with store_errors(), self._session() as s:
            q = (
                select(Appointment)
                .where(
                    Appointment.doctor_id == doctor,
                    Appointment.date >= day_start,
                    Appointment.date < day_end,
                    Appointment.status != AppointmentStatus.CANCELADA,
                )
                .order_by(Appointment.date.asc())
            )
            return [AgendaEntry(appointment=a, end=a.end(slot)) for a in s.scalars(q)]
