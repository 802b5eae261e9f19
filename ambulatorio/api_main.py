from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session, sessionmaker
from starlette.exceptions import HTTPException as StarletteHTTPException

from .appointment_service import AgendaEntry, AppointmentScheduler
from .auth_security import ADMINISTRADOR, MEDICO, PACIENTE, Actor, actor_from_token
from .config import configure_logging
from .db import SessionLocal, init_db
from .errors import DomainError, Forbidden
from .models import Appointment, Notification, QueueTicket
from .notifications import pending_notifications
from .queue_service import QueueEngine, WaitingEntry

logger = logging.getLogger(__name__)

# Authorization: Bearer <token>
bearer_scheme = HTTPBearer(auto_error=False)

app = FastAPI(title="Ambulatorio API", version="1.0.0")



# Startup

@app.on_event("startup")
def startup() -> None:
    configure_logging()
    init_db()



# Errori -> envelope { ok, messaggio, codice }

@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "ok": False,
            "messaggio": "Richiesta non valida.",
            "codice": "VALIDATION_ERROR",
            "dettagli": jsonable_encoder(exc.errors()),
        },
    )


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"ok": False, "messaggio": str(exc.detail), "codice": "HTTP_ERROR"},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Errore non gestito su %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"ok": False, "messaggio": "Errore interno, riprova più tardi.", "codice": "SERVER_ERROR"},
    )



# Schemi

class _CamelIn(BaseModel):
    # accetta sia doctorId che doctor_id
    model_config = ConfigDict(populate_by_name=True)


class AppointmentCreateIn(_CamelIn):
    user_id: int | None = Field(None, alias="userId")
    doctor_id: int | None = Field(None, alias="doctorId")
    date: datetime | None = None
    duration_minutes: int | None = Field(None, alias="durationMinutes")
    reason: str | None = None
    status: str | None = None


class AppointmentUpdateIn(_CamelIn):
    date: datetime | None = None
    duration_minutes: int | None = Field(None, alias="durationMinutes")
    reason: str | None = None
    status: str | None = None
    doctor_id: int | None = Field(None, alias="doctorId")


class QueueJoinIn(_CamelIn):
    doctor_id: int | None = Field(None, alias="doctorId")
    patient_id: int | None = Field(None, alias="patientId")


class CallNextIn(_CamelIn):
    doctor_id: int | None = Field(None, alias="doctorId")



# Serializzazione "flat"

def _dt(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def ticket_out(t: QueueTicket | None) -> dict[str, Any] | None:
    if t is None:
        return None
    return {
        "id": t.id,
        "doctorId": t.doctor_id,
        "patientId": t.patient_id,
        "status": t.status.value,
        "createdAt": _dt(t.created_at),
        "calledAt": _dt(t.called_at),
        "completedAt": _dt(t.completed_at),
        "cancelledAt": _dt(t.cancelled_at),
    }


def waiting_out(entries: list[WaitingEntry]) -> list[dict[str, Any]]:
    return [{**ticket_out(e.ticket), "position": e.position} for e in entries]


def appointment_out(a: Appointment, end: datetime | None = None) -> dict[str, Any]:
    data = {
        "id": a.id,
        "userId": a.user_id,
        "doctorId": a.doctor_id,
        "date": _dt(a.date),
        "reason": a.reason,
        "status": a.status.value,
        "createdAt": _dt(a.created_at),
        "updatedAt": _dt(a.updated_at),
    }
    if end is not None:
        data["end"] = _dt(end)
    return data


def agenda_out(entries: list[AgendaEntry]) -> list[dict[str, Any]]:
    return [appointment_out(e.appointment, end=e.end) for e in entries]


def notification_out(n: Notification) -> dict[str, Any]:
    return {
        "id": n.id,
        "tipo": n.kind.value,
        "messaggio": n.message,
        "destinatario": n.recipient,
        "appuntamentoId": n.appointment_id,
        "creataIl": _dt(n.created_at),
    }


def envelope(messaggio: str, dati: Any = None) -> dict[str, Any]:
    return {"ok": True, "messaggio": messaggio, "dati": dati}



# Dipendenze (sovrascrivibili nei test)

_queue_engine: QueueEngine | None = None
_scheduler: AppointmentScheduler | None = None


def get_queue_engine() -> QueueEngine:
    global _queue_engine
    if _queue_engine is None:
        _queue_engine = QueueEngine()
    return _queue_engine


def get_scheduler() -> AppointmentScheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = AppointmentScheduler()
    return _scheduler


def get_session_factory() -> sessionmaker[Session]:
    return SessionLocal


def get_current_actor(credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme)) -> Actor:
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token richiesto",
            headers={"WWW-Authenticate": "Bearer"},
        )
    # protezione extra: elimina spazi / virgolette accidentali
    token = credentials.credentials.strip().strip('"').strip("'")

    actor = actor_from_token(token)
    if actor is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token non valido",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return actor


def require_role(*roles: str):
    def dependency(actor: Actor = Depends(get_current_actor)) -> Actor:
        if not actor.has_role(*roles):
            raise Forbidden("Non hai i permessi per questa azione.")
        return actor

    return dependency


STAFF = (MEDICO, ADMINISTRADOR)


def ensure_own_doctor(actor: Actor, doctor_id: int | None) -> None:
    """Un MEDICO può operare solo sulla propria coda/agenda."""
    if actor.role == MEDICO and doctor_id is not None and int(doctor_id) != actor.id:
        raise Forbidden("Non autorizzato a operare su un altro medico.")



# APPUNTAMENTI

@app.get("/api/appointments/meta/statuses")
def api_appointment_statuses(
    actor: Actor = Depends(get_current_actor),
    scheduler: AppointmentScheduler = Depends(get_scheduler),
) -> dict[str, Any]:
    return envelope("Stati consentiti", scheduler.get_allowed_statuses())


@app.get("/api/appointments/agenda")
def api_agenda(
    doctor_id: int = Query(...),
    day: date = Query(...),
    actor: Actor = Depends(require_role(*STAFF)),
    scheduler: AppointmentScheduler = Depends(get_scheduler),
) -> dict[str, Any]:
    ensure_own_doctor(actor, doctor_id)
    return envelope("Agenda del giorno", agenda_out(scheduler.day_agenda(doctor_id, day)))


@app.post("/api/appointments", status_code=status.HTTP_201_CREATED)
def api_create_appointment(
    payload: AppointmentCreateIn,
    actor: Actor = Depends(require_role(*STAFF)),
    scheduler: AppointmentScheduler = Depends(get_scheduler),
) -> dict[str, Any]:
    created = scheduler.create_appointment(
        user_id=payload.user_id,
        doctor_id=payload.doctor_id,
        date=payload.date,
        duration_minutes=payload.duration_minutes,
        reason=payload.reason,
        status=payload.status,
    )
    return envelope("Appuntamento creato", appointment_out(created))


@app.get("/api/appointments/{appointment_id}")
def api_get_appointment(
    appointment_id: int,
    actor: Actor = Depends(get_current_actor),
    scheduler: AppointmentScheduler = Depends(get_scheduler),
) -> dict[str, Any]:
    appointment = scheduler.get_appointment(appointment_id)
    if actor.role == PACIENTE and appointment.user_id != actor.id:
        raise Forbidden("Non autorizzato a consultare questo appuntamento.")
    return envelope("Appuntamento", appointment_out(appointment))


@app.put("/api/appointments/{appointment_id}")
def api_update_appointment(
    appointment_id: int,
    payload: AppointmentUpdateIn,
    actor: Actor = Depends(require_role(*STAFF)),
    scheduler: AppointmentScheduler = Depends(get_scheduler),
) -> dict[str, Any]:
    updated = scheduler.update_appointment(
        appointment_id,
        date=payload.date,
        duration_minutes=payload.duration_minutes,
        reason=payload.reason,
        status=payload.status,
        doctor_id=payload.doctor_id,
    )
    return envelope("Appuntamento aggiornato", appointment_out(updated))


@app.patch("/api/appointments/{appointment_id}/cancel")
def api_cancel_appointment(
    appointment_id: int,
    actor: Actor = Depends(require_role(MEDICO, ADMINISTRADOR, PACIENTE)),
    scheduler: AppointmentScheduler = Depends(get_scheduler),
) -> dict[str, Any]:
    if actor.role == PACIENTE:
        appointment = scheduler.get_appointment(appointment_id)
        if appointment.user_id != actor.id:
            raise Forbidden("Puoi annullare solo i tuoi appuntamenti.")
    cancelled = scheduler.cancel_appointment(appointment_id)
    return envelope("Appuntamento annullato", appointment_out(cancelled))



# CODA

@app.post("/api/queue/join", status_code=status.HTTP_201_CREATED)
def api_queue_join(
    payload: QueueJoinIn,
    actor: Actor = Depends(get_current_actor),
    engine: QueueEngine = Depends(get_queue_engine),
) -> dict[str, Any]:
    # paziente di default: l'utente autenticato
    patient_id = payload.patient_id or actor.id
    if actor.role == PACIENTE and patient_id != actor.id:
        raise Forbidden("Un paziente può mettersi in coda solo per sé stesso.")
    result = engine.join(payload.doctor_id, patient_id)
    return envelope("Sei entrato in coda", {"ticket": ticket_out(result.ticket), "position": result.position})


@app.get("/api/queue/doctor/{doctor_id}/current")
def api_queue_current(
    doctor_id: int,
    actor: Actor = Depends(get_current_actor),
    engine: QueueEngine = Depends(get_queue_engine),
) -> dict[str, Any]:
    ensure_own_doctor(actor, doctor_id)
    return envelope("Paziente in visita", ticket_out(engine.current(doctor_id)))


@app.get("/api/queue/doctor/{doctor_id}/waiting")
def api_queue_waiting(
    doctor_id: int,
    actor: Actor = Depends(require_role(*STAFF)),
    engine: QueueEngine = Depends(get_queue_engine),
) -> dict[str, Any]:
    ensure_own_doctor(actor, doctor_id)
    return envelope("Pazienti in attesa", waiting_out(engine.waiting(doctor_id)))


@app.post("/api/queue/call-next")
def api_queue_call_next(
    payload: CallNextIn,
    actor: Actor = Depends(require_role(*STAFF)),
    engine: QueueEngine = Depends(get_queue_engine),
) -> dict[str, Any]:
    ensure_own_doctor(actor, payload.doctor_id)
    called = engine.call_next(payload.doctor_id)
    return envelope("Prossimo paziente chiamato" if called else "Nessun paziente in attesa", ticket_out(called))


@app.put("/api/queue/ticket/{ticket_id}/complete")
def api_queue_complete(
    ticket_id: int,
    actor: Actor = Depends(require_role(*STAFF)),
    engine: QueueEngine = Depends(get_queue_engine),
) -> dict[str, Any]:
    ensure_own_doctor(actor, engine.get_ticket(ticket_id).doctor_id)
    return envelope("Ticket completato", ticket_out(engine.complete(ticket_id)))


@app.patch("/api/queue/ticket/{ticket_id}/cancel")
def api_queue_cancel(
    ticket_id: int,
    actor: Actor = Depends(get_current_actor),
    engine: QueueEngine = Depends(get_queue_engine),
) -> dict[str, Any]:
    ticket = engine.get_ticket(ticket_id)
    if actor.role == PACIENTE and ticket.patient_id != actor.id:
        raise Forbidden("Puoi annullare solo il tuo ticket.")
    ensure_own_doctor(actor, ticket.doctor_id)

    result = engine.cancel(ticket_id)
    return envelope(
        "Ticket annullato",
        {"cancelled": ticket_out(result.cancelled), "waiting": waiting_out(result.waiting)},
    )


@app.get("/api/queue/ticket/{ticket_id}/position")
def api_queue_position(
    ticket_id: int,
    actor: Actor = Depends(get_current_actor),
    engine: QueueEngine = Depends(get_queue_engine),
) -> dict[str, Any]:
    result = engine.ticket_position(ticket_id)
    if actor.role == PACIENTE and result.ticket.patient_id != actor.id:
        raise Forbidden("Non autorizzato a consultare questo ticket.")
    return envelope("Posizione in coda", {"ticket": ticket_out(result.ticket), "position": result.position})



# NOTIFICHE

@app.get("/api/notifications/pending")
def api_pending_notifications(
    limit: int = Query(200, ge=1, le=1000),
    actor: Actor = Depends(require_role(ADMINISTRADOR)),
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
) -> dict[str, Any]:
    pendenti = pending_notifications(limit=limit, session_factory=session_factory)
    return envelope("Notifiche pendenti", [notification_out(n) for n in pendenti])
