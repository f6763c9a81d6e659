import pytest

from whatsdesk.services.state_machine import (
    InvalidTransitionError,
    TicketStatus,
    can_transition,
    close,
    is_active,
    is_terminal,
    park,
    resolve,
    take,
    transition,
)


class TestValidTransitions:
    def test_pendente_to_em_atendimento(self):
        result = transition(TicketStatus.PENDENTE, TicketStatus.EM_ATENDIMENTO)
        assert result == TicketStatus.EM_ATENDIMENTO

    def test_pendente_to_aguardando(self):
        assert transition(TicketStatus.PENDENTE, TicketStatus.AGUARDANDO) == TicketStatus.AGUARDANDO

    def test_aguardando_to_em_atendimento(self):
        assert transition(TicketStatus.AGUARDANDO, TicketStatus.EM_ATENDIMENTO) == TicketStatus.EM_ATENDIMENTO

    def test_em_atendimento_to_aguardando(self):
        assert transition(TicketStatus.EM_ATENDIMENTO, TicketStatus.AGUARDANDO) == TicketStatus.AGUARDANDO

    @pytest.mark.parametrize("current", [TicketStatus.PENDENTE, TicketStatus.AGUARDANDO, TicketStatus.EM_ATENDIMENTO])
    def test_any_active_status_can_be_closed(self, current):
        assert transition(current, TicketStatus.RESOLVIDO) == TicketStatus.RESOLVIDO
        assert transition(current, TicketStatus.ENCERRADO) == TicketStatus.ENCERRADO


class TestInvalidTransitions:
    @pytest.mark.parametrize(
        "current", [TicketStatus.AGUARDANDO, TicketStatus.EM_ATENDIMENTO, TicketStatus.RESOLVIDO, TicketStatus.ENCERRADO]
    )
    def test_nothing_goes_back_to_pendente(self, current):
        with pytest.raises(InvalidTransitionError):
            transition(current, TicketStatus.PENDENTE)

    @pytest.mark.parametrize("target", list(TicketStatus))
    def test_closed_tickets_are_immutable(self, target):
        assert can_transition(TicketStatus.RESOLVIDO, target) is False
        assert can_transition(TicketStatus.ENCERRADO, target) is False

    def test_same_state(self):
        with pytest.raises(InvalidTransitionError):
            transition(TicketStatus.AGUARDANDO, TicketStatus.AGUARDANDO)

    def test_error_message_names_both_statuses(self):
        with pytest.raises(InvalidTransitionError) as exc:
            transition(TicketStatus.RESOLVIDO, TicketStatus.EM_ATENDIMENTO)
        assert "resolvido -> em_atendimento" in str(exc.value)


class TestHelperFunctions:
    def test_take(self):
        assert take(TicketStatus.PENDENTE) == TicketStatus.EM_ATENDIMENTO

    def test_park_from_pendente(self):
        assert park(TicketStatus.PENDENTE) == TicketStatus.AGUARDANDO

    def test_resolve(self):
        assert resolve(TicketStatus.EM_ATENDIMENTO) == TicketStatus.RESOLVIDO

    def test_close_closed_ticket_fails(self):
        with pytest.raises(InvalidTransitionError):
            close(TicketStatus.RESOLVIDO)

    def test_active_and_terminal_sets(self):
        assert is_active("pendente") and is_active("aguardando") and is_active("em_atendimento")
        assert not is_active("resolvido")
        assert is_terminal("encerrado")
        assert not is_terminal("pendente")
