"""
Test della coda walk-in: ingresso, posizioni FIFO, "chiama il prossimo",
completamento e annullamento, più gli scenari di concorrenza.
"""
from __future__ import annotations

import threading

import pytest
from sqlalchemy import func, select, update

from ambulatorio.config import Settings
from ambulatorio.db import db_session
from ambulatorio.errors import (
    ConcurrentQueueUpdate,
    DuplicateActiveTicket,
    NotFound,
    QueueCapacityExceeded,
    TerminalStateViolation,
    ValidationError,
)
from ambulatorio.models import QueueTicket, TicketStatus
from ambulatorio.queue_service import QueueEngine


def count_tickets(session_factory, **filters) -> int:
    with db_session(session_factory) as s:
        q = select(func.count()).select_from(QueueTicket)
        for field, value in filters.items():
            q = q.where(getattr(QueueTicket, field) == value)
        return s.scalar(q)


def called_count(session_factory, doctor_id: int) -> int:
    return count_tickets(session_factory, doctor_id=doctor_id, status=TicketStatus.CALLED)


# =========================
# join / position
# =========================
def test_join_assigns_increasing_positions(queue, clock):
    positions = []
    for patient in (1, 2, 3):
        positions.append(queue.join(7, patient).position)
        clock.advance(minutes=1)
    assert positions == [1, 2, 3]


def test_join_returns_waiting_ticket(queue, clock):
    res = queue.join(7, 42)
    assert res.ticket.status is TicketStatus.WAITING
    assert res.ticket.doctor_id == 7
    assert res.ticket.patient_id == 42
    assert res.ticket.created_at == clock.now
    assert res.ticket.called_at is None


@pytest.mark.parametrize("doctor_id, patient_id", [(None, 1), ("", 1), (7, None), (7, ""), (0, 1), ("abc", 1)])
def test_join_requires_both_ids(queue, session_factory, doctor_id, patient_id):
    with pytest.raises(ValidationError):
        queue.join(doctor_id, patient_id)
    assert count_tickets(session_factory) == 0


def test_join_rejects_duplicate_waiting_ticket(queue, session_factory):
    queue.join(7, 42)
    with pytest.raises(DuplicateActiveTicket) as exc:
        queue.join(7, 42)
    assert exc.value.code == "DUPLICATE_QUEUE"
    assert exc.value.status_code == 409
    assert count_tickets(session_factory) == 1


def test_join_rejects_duplicate_while_called(queue):
    queue.join(7, 42)
    queue.call_next(7)
    with pytest.raises(DuplicateActiveTicket):
        queue.join(7, 42)


def test_same_patient_can_queue_for_different_doctors(queue):
    assert queue.join(7, 42).position == 1
    assert queue.join(8, 42).position == 1


def test_patient_can_rejoin_after_completion(queue):
    first = queue.join(7, 42).ticket
    queue.complete(first.id)
    again = queue.join(7, 42)
    assert again.ticket.id != first.id
    assert again.position == 1


def test_join_rejects_when_queue_full(queue, session_factory):
    for patient in range(1, 6):
        queue.join(7, patient)
    with pytest.raises(QueueCapacityExceeded) as exc:
        queue.join(7, 99)
    assert exc.value.code == "QUEUE_FULL"
    assert count_tickets(session_factory, doctor_id=7) == 5


def test_capacity_counts_only_waiting_tickets(queue):
    for patient in range(1, 6):
        queue.join(7, patient)
    queue.call_next(7)
    assert queue.join(7, 99).position == 5


def test_capacity_is_configurable(session_factory, clock):
    tight = QueueEngine(session_factory=session_factory, settings=Settings(queue_capacity=1), clock=clock)
    tight.join(7, 1)
    with pytest.raises(QueueCapacityExceeded):
        tight.join(7, 2)


def test_position_follows_creation_time(queue, clock):
    a = queue.join(7, 1).ticket
    clock.advance(seconds=30)
    b = queue.join(7, 2).ticket
    clock.advance(seconds=30)
    c = queue.join(7, 3).ticket
    assert [queue.position(t) for t in (a, b, c)] == [1, 2, 3]


def test_position_ties_are_broken_by_id(queue):
    # stesso istante di creazione: vale l'ordine degli id
    tickets = [queue.join(7, p).ticket for p in (1, 2, 3)]
    assert [queue.position(t) for t in tickets] == [1, 2, 3]


def test_position_is_none_once_not_waiting(queue):
    ticket = queue.join(7, 1).ticket
    called = queue.call_next(7)
    assert called.id == ticket.id
    assert queue.position(called) is None
    assert queue.ticket_position(ticket.id).position is None


def test_position_rereads_state_of_stale_ticket(queue):
    ticket = queue.join(7, 1).ticket
    queue.call_next(7)
    # l'oggetto restituito da join dice ancora WAITING
    assert ticket.status is TicketStatus.WAITING
    assert queue.position(ticket) is None


def test_position_of_cancelled_ticket_is_none(queue):
    first = queue.join(7, 1).ticket
    second = queue.join(7, 2).ticket
    queue.cancel(first.id)
    assert queue.position(first) is None
    assert queue.position(second) == 1


def test_positions_ignore_other_doctors(queue, clock):
    queue.join(8, 1)
    clock.advance(seconds=1)
    assert queue.join(7, 2).position == 1


def test_ticket_position_not_found(queue):
    with pytest.raises(NotFound):
        queue.ticket_position(999)


# =========================
# call_next
# =========================
def test_call_next_calls_oldest_waiting(queue, clock):
    first = queue.join(7, 1).ticket
    clock.advance(minutes=1)
    queue.join(7, 2)
    clock.advance(minutes=1)

    called = queue.call_next(7)
    assert called.id == first.id
    assert called.status is TicketStatus.CALLED
    assert called.called_at == clock.now


def test_call_next_without_waiting_returns_none(queue):
    assert queue.call_next(7) is None


def test_call_next_auto_completes_previous(queue, clock):
    first = queue.join(7, 1).ticket
    second = queue.join(7, 2).ticket

    queue.call_next(7)
    clock.advance(minutes=10)
    called = queue.call_next(7)

    assert called.id == second.id
    previous = queue.get_ticket(first.id)
    assert previous.status is TicketStatus.COMPLETED
    assert previous.completed_at == clock.now


def test_call_next_closes_current_even_when_queue_is_empty(queue, session_factory):
    ticket = queue.join(7, 1).ticket
    queue.call_next(7)
    assert queue.call_next(7) is None
    assert queue.get_ticket(ticket.id).status is TicketStatus.COMPLETED
    assert called_count(session_factory, 7) == 0


def test_at_most_one_called_ticket_per_doctor(queue, session_factory):
    for patient in range(1, 5):
        queue.join(7, patient)
    for _ in range(5):
        queue.call_next(7)
        assert called_count(session_factory, 7) <= 1


def test_call_next_does_not_touch_other_doctors(queue):
    queue.join(7, 1)
    other = queue.join(8, 2).ticket
    queue.call_next(8)
    queue.call_next(7)
    assert queue.current(8).id == other.id


def test_current_returns_called_ticket(queue):
    assert queue.current(7) is None
    ticket = queue.join(7, 1).ticket
    queue.call_next(7)
    assert queue.current(7).id == ticket.id


def test_call_next_retries_once_when_ticket_is_taken(queue, monkeypatch):
    first = queue.join(7, 1).ticket
    second = queue.join(7, 2).ticket

    original = QueueEngine._oldest_waiting
    seen = []

    def racing(self, s, doctor_id):
        candidate = original(self, s, doctor_id)
        seen.append(candidate.id if candidate else None)
        if len(seen) == 1:
            # un'altra richiesta si prende il ticket tra la select e l'update
            s.execute(
                update(QueueTicket)
                .where(QueueTicket.id == candidate.id)
                .values(status=TicketStatus.CANCELLED)
                .execution_options(synchronize_session=False)
            )
        return candidate

    monkeypatch.setattr(QueueEngine, "_oldest_waiting", racing)

    called = queue.call_next(7)
    assert called.id == second.id
    assert seen == [first.id, second.id]


def test_call_next_gives_up_after_one_retry(queue, monkeypatch):
    tickets = [queue.join(7, p).ticket for p in (1, 2, 3)]
    original = QueueEngine._oldest_waiting
    seen = []

    def always_lose(self, s, doctor_id):
        candidate = original(self, s, doctor_id)
        seen.append(candidate.id)
        s.execute(
            update(QueueTicket)
            .where(QueueTicket.id == candidate.id)
            .values(status=TicketStatus.CANCELLED)
            .execution_options(synchronize_session=False)
        )
        return candidate

    monkeypatch.setattr(QueueEngine, "_oldest_waiting", always_lose)

    assert queue.call_next(7) is None
    assert seen == [tickets[0].id, tickets[1].id]


def test_call_next_reports_conflict_when_another_call_wins(queue, monkeypatch, session_factory):
    first = queue.join(7, 1).ticket
    queue.join(7, 2)
    original = QueueEngine._oldest_waiting

    def other_call_wins(self, s, doctor_id):
        candidate = original(self, s, doctor_id)
        if candidate is not None and candidate.id == first.id:
            s.execute(
                update(QueueTicket)
                .where(QueueTicket.id == candidate.id)
                .values(status=TicketStatus.CALLED)
                .execution_options(synchronize_session=False)
            )
        return candidate

    monkeypatch.setattr(QueueEngine, "_oldest_waiting", other_call_wins)

    with pytest.raises(ConcurrentQueueUpdate):
        queue.call_next(7)
    # rollback: niente di applicato
    assert called_count(session_factory, 7) == 0
    assert queue.get_ticket(first.id).status is TicketStatus.WAITING


def test_concurrent_call_next_single_winner(queue):
    ticket = queue.join(7, 1).ticket
    barrier = threading.Barrier(2)
    results, errors = [], []

    def worker():
        barrier.wait()
        try:
            results.append(queue.call_next(7))
        except Exception as e:  # pragma: no cover - visibile nell'assert
            errors.append(e)

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    winners = [r for r in results if r is not None]
    assert len(winners) == 1
    assert winners[0].id == ticket.id
    assert results.count(None) == 1


def test_concurrent_join_single_winner(queue, session_factory):
    barrier = threading.Barrier(2)
    outcomes = []

    def worker():
        barrier.wait()
        try:
            queue.join(7, 42)
            outcomes.append("ok")
        except DuplicateActiveTicket:
            outcomes.append("duplicate")

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(outcomes) == ["duplicate", "ok"]
    assert count_tickets(session_factory, doctor_id=7, patient_id=42) == 1


def test_unique_index_rejects_duplicate_as_domain_error(queue, session_factory, monkeypatch):
    queue.join(7, 42)
    # un'altra richiesta ha superato il controllo applicativo: decide l'indice unico
    monkeypatch.setattr(QueueEngine, "_active_ticket", lambda self, s, doctor_id, patient_id: None)
    with pytest.raises(DuplicateActiveTicket) as exc:
        queue.join(7, 42)
    assert exc.value.code == "DUPLICATE_QUEUE"
    assert count_tickets(session_factory, doctor_id=7, patient_id=42) == 1


# =========================
# complete / cancel
# =========================
def test_complete_called_ticket(queue, clock):
    queue.join(7, 1)
    called = queue.call_next(7)
    clock.advance(minutes=15)
    done = queue.complete(called.id)
    assert done.status is TicketStatus.COMPLETED
    assert done.completed_at == clock.now
    assert queue.current(7) is None


def test_complete_waiting_ticket_out_of_band(queue):
    ticket = queue.join(7, 1).ticket
    assert queue.complete(ticket.id).status is TicketStatus.COMPLETED


def test_complete_missing_ticket(queue):
    with pytest.raises(NotFound):
        queue.complete(12345)


def test_complete_cancelled_ticket_is_rejected(queue):
    ticket = queue.join(7, 1).ticket
    queue.cancel(ticket.id)
    with pytest.raises(TerminalStateViolation):
        queue.complete(ticket.id)


def test_cancel_recomputes_positions(queue, clock):
    tickets = []
    for patient in (1, 2, 3, 4):
        tickets.append(queue.join(7, patient).ticket)
        clock.advance(minutes=1)

    res = queue.cancel(tickets[1].id)

    assert res.cancelled.id == tickets[1].id
    assert res.cancelled.status is TicketStatus.CANCELLED
    assert res.cancelled.cancelled_at is not None
    assert [e.ticket.id for e in res.waiting] == [tickets[0].id, tickets[2].id, tickets[3].id]
    assert [e.position for e in res.waiting] == [1, 2, 3]
    assert queue.position(tickets[2]) == 2


def test_cancel_called_ticket(queue):
    queue.join(7, 1)
    waiting = queue.join(7, 2).ticket
    called = queue.call_next(7)

    res = queue.cancel(called.id)
    assert res.cancelled.status is TicketStatus.CANCELLED
    assert [(e.ticket.id, e.position) for e in res.waiting] == [(waiting.id, 1)]
    assert queue.current(7) is None


def test_cancel_missing_ticket_is_not_found(queue):
    with pytest.raises(NotFound) as exc:
        queue.cancel(9999)
    assert exc.value.status_code == 404


def test_cancel_completed_ticket_is_rejected(queue):
    ticket = queue.join(7, 1).ticket
    queue.complete(ticket.id)
    with pytest.raises(TerminalStateViolation) as exc:
        queue.cancel(ticket.id)
    assert exc.value.status_code == 400
    assert "completato" in exc.value.message


def test_cancel_twice_is_rejected(queue):
    ticket = queue.join(7, 1).ticket
    queue.cancel(ticket.id)
    with pytest.raises(TerminalStateViolation):
        queue.cancel(ticket.id)


def test_waiting_lists_positions_without_gaps(queue, clock):
    for patient in (1, 2, 3):
        queue.join(7, patient)
        clock.advance(seconds=5)
    queue.call_next(7)
    entries = queue.waiting(7)
    assert [e.position for e in entries] == [1, 2]
    assert [e.ticket.patient_id for e in entries] == [2, 3]
