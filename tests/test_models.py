from ambulatorio.models import TicketStatus, check_transition


def test_waiting_can_be_called_completed_or_cancelled():
    for target in (TicketStatus.CALLED, TicketStatus.COMPLETED, TicketStatus.CANCELLED):
        assert check_transition(TicketStatus.WAITING, target).ok


def test_called_can_be_completed_or_cancelled_but_not_reset():
    assert check_transition(TicketStatus.CALLED, TicketStatus.COMPLETED).ok
    assert check_transition(TicketStatus.CALLED, TicketStatus.CANCELLED).ok
    assert not check_transition(TicketStatus.CALLED, TicketStatus.WAITING).ok


def test_terminal_states_reject_every_transition():
    for current in (TicketStatus.COMPLETED, TicketStatus.CANCELLED):
        assert current.is_terminal
        for target in TicketStatus:
            result = check_transition(current, target)
            assert not result.ok
            assert result.reason


def test_rejected_transition_keeps_both_states():
    result = check_transition(TicketStatus.COMPLETED, TicketStatus.CANCELLED)
    assert result.current is TicketStatus.COMPLETED
    assert result.target is TicketStatus.CANCELLED
    assert "completato" in result.reason
