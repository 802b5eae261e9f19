from __future__ import annotations

import argparse
import sys
from datetime import date

from .appointment_service import AppointmentScheduler
from .auth_security import create_access_token
from .config import configure_logging
from .db import init_db
from .errors import DomainError
from .notifications import mark_notification_sent, pending_notifications
from .queue_service import QueueEngine


def _fmt_ticket(t) -> str:
    return f"#{t.id} | medico {t.doctor_id} | paziente {t.patient_id} | {t.status.value} | {t.created_at:%H:%M:%S}"


def cmd_init(args: argparse.Namespace) -> None:
    init_db()
    print("DB inizializzato.")


def cmd_token(args: argparse.Namespace) -> None:
    # solo sviluppo: l'emissione reale dei token è compito del servizio di autenticazione
    print(create_access_token(subject=args.user_id, role=args.role))


def cmd_join(args: argparse.Namespace) -> None:
    res = QueueEngine().join(args.doctor_id, args.patient_id)
    print(f"Ticket {res.ticket.id} creato. Posizione: {res.position}")


def cmd_call_next(args: argparse.Namespace) -> None:
    t = QueueEngine().call_next(args.doctor_id)
    print(f"Chiamato: {_fmt_ticket(t)}" if t else "Nessun paziente in attesa.")


def cmd_complete(args: argparse.Namespace) -> None:
    t = QueueEngine().complete(args.ticket_id)
    print(f"Completato: {_fmt_ticket(t)}")


def cmd_cancel_ticket(args: argparse.Namespace) -> None:
    res = QueueEngine().cancel(args.ticket_id)
    print(f"Annullato: {_fmt_ticket(res.cancelled)}")
    for e in res.waiting:
        print(f"  {e.position}. {_fmt_ticket(e.ticket)}")


def cmd_waiting(args: argparse.Namespace) -> None:
    entries = QueueEngine().waiting(args.doctor_id)
    if not entries:
        print("Nessun paziente in attesa.")
    for e in entries:
        print(f"{e.position}. {_fmt_ticket(e.ticket)}")


def cmd_book(args: argparse.Namespace) -> None:
    app = AppointmentScheduler().create_appointment(
        user_id=args.user_id,
        doctor_id=args.doctor_id,
        date=args.start,  # formato: 2026-01-14T10:30
        duration_minutes=args.duration,
        reason=args.reason,
        status=args.status,
    )
    print(f"Appuntamento creato: {app.id} ({app.status.value})")


def cmd_reschedule(args: argparse.Namespace) -> None:
    app = AppointmentScheduler().update_appointment(
        args.appointment_id,
        date=args.start,
        duration_minutes=args.duration,
        reason=args.reason,
        status=args.status,
        doctor_id=args.doctor_id,
    )
    print(f"Appuntamento aggiornato: {app.id} | {app.date:%d/%m/%Y %H:%M} | {app.status.value}")


def cmd_cancel(args: argparse.Namespace) -> None:
    app = AppointmentScheduler().cancel_appointment(args.appointment_id)
    print(f"Annullato: {app.id}")


def cmd_agenda(args: argparse.Namespace) -> None:
    giorno = date.fromisoformat(args.day) if args.day else date.today()
    entries = AppointmentScheduler().day_agenda(args.doctor_id, giorno)
    if not entries:
        print("Nessun appuntamento per questo giorno.")
    for e in entries:
        a = e.appointment
        print(f"{a.date:%H:%M} - {e.end:%H:%M} | #{a.id} | paziente {a.user_id} | {a.status.value} | {a.reason}")


def cmd_notifications(args: argparse.Namespace) -> None:
    """
    Simula un “Sistema Notifiche” esterno:
    - legge notifiche pendenti
    - le stampa su console
    - le marca come inviate
    """
    pendenti = pending_notifications(limit=args.limit)
    if not pendenti:
        print("Nessuna notifica pendente.")
        return

    for n in pendenti:
        print(f"[{n.id}] {n.kind.value} | {n.recipient or '-'} | {n.created_at.isoformat()} | {n.message}")
        if args.mark_sent:
            mark_notification_sent(n.id)

    if args.mark_sent:
        print("Notifiche marcate come inviate.")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="ambulatorio", description="CLI Ambulatorio (coda walk-in e appuntamenti)")
    sub = p.add_subparsers(required=True)

    p_init = sub.add_parser("init", help="Crea le tabelle")
    p_init.set_defaults(func=cmd_init)

    p_tok = sub.add_parser("token", help="Genera un token di sviluppo")
    p_tok.add_argument("--user-id", type=int, required=True)
    p_tok.add_argument("--role", required=True, help="PACIENTE | MEDICO | ADMINISTRADOR")
    p_tok.set_defaults(func=cmd_token)

    p_join = sub.add_parser("join", help="Mette un paziente in coda")
    p_join.add_argument("--doctor-id", type=int, required=True)
    p_join.add_argument("--patient-id", type=int, required=True)
    p_join.set_defaults(func=cmd_join)

    p_next = sub.add_parser("call-next", help="Chiama il prossimo paziente")
    p_next.add_argument("--doctor-id", type=int, required=True)
    p_next.set_defaults(func=cmd_call_next)

    p_done = sub.add_parser("complete", help="Completa un ticket")
    p_done.add_argument("--ticket-id", type=int, required=True)
    p_done.set_defaults(func=cmd_complete)

    p_tcancel = sub.add_parser("cancel-ticket", help="Annulla un ticket")
    p_tcancel.add_argument("--ticket-id", type=int, required=True)
    p_tcancel.set_defaults(func=cmd_cancel_ticket)

    p_wait = sub.add_parser("waiting", help="Pazienti in attesa per un medico")
    p_wait.add_argument("--doctor-id", type=int, required=True)
    p_wait.set_defaults(func=cmd_waiting)

    p_book = sub.add_parser("book", help="Prenota appuntamento")
    p_book.add_argument("--user-id", type=int, required=True)
    p_book.add_argument("--doctor-id", type=int, required=True)
    p_book.add_argument("--start", required=True, help="ISO datetime es: 2026-01-14T10:30")
    p_book.add_argument("--duration", type=int, default=None, help="Durata in minuti")
    p_book.add_argument("--reason", required=True)
    p_book.add_argument("--status", default=None)
    p_book.set_defaults(func=cmd_book)

    p_res = sub.add_parser("reschedule", help="Modifica appuntamento")
    p_res.add_argument("--appointment-id", type=int, required=True)
    p_res.add_argument("--start", default=None)
    p_res.add_argument("--duration", type=int, default=None)
    p_res.add_argument("--doctor-id", type=int, default=None)
    p_res.add_argument("--reason", default=None)
    p_res.add_argument("--status", default=None)
    p_res.set_defaults(func=cmd_reschedule)

    p_cancel = sub.add_parser("cancel", help="Annulla appuntamento")
    p_cancel.add_argument("--appointment-id", type=int, required=True)
    p_cancel.set_defaults(func=cmd_cancel)

    p_ag = sub.add_parser("agenda", help="Agenda giornaliera di un medico")
    p_ag.add_argument("--doctor-id", type=int, required=True)
    p_ag.add_argument("--day", default=None, help="YYYY-MM-DD (default: oggi)")
    p_ag.set_defaults(func=cmd_agenda)

    p_not = sub.add_parser("notifications", help="Legge e invia notifiche pendenti (simulazione)")
    p_not.add_argument("--limit", type=int, default=50)
    p_not.add_argument("--mark-sent", action="store_true", help="Marca come inviate dopo averle stampate")
    p_not.set_defaults(func=cmd_notifications)

    return p


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging()
    init_db()  # garantisce tabelle
    try:
        args.func(args)
    except DomainError as e:
        print(f"Errore: {e.message}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
