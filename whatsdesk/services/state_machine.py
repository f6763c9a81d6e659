from enum import Enum


class TicketStatus(str, Enum):
    PENDENTE = "pendente"
    AGUARDANDO = "aguardando"
    EM_ATENDIMENTO = "em_atendimento"
    RESOLVIDO = "resolvido"
    ENCERRADO = "encerrado"


ACTIVE_STATUSES = (TicketStatus.PENDENTE, TicketStatus.AGUARDANDO, TicketStatus.EM_ATENDIMENTO)
TERMINAL_STATUSES = (TicketStatus.RESOLVIDO, TicketStatus.ENCERRADO)

ACTIVE_STATUS_VALUES = tuple(status.value for status in ACTIVE_STATUSES)
TERMINAL_STATUS_VALUES = tuple(status.value for status in TERMINAL_STATUSES)

# Closed tickets have no outgoing transitions: a new inbound message opens a new ticket.
VALID_TRANSITIONS = {
    TicketStatus.PENDENTE: [
        TicketStatus.EM_ATENDIMENTO,
        TicketStatus.AGUARDANDO,
        TicketStatus.RESOLVIDO,
        TicketStatus.ENCERRADO,
    ],
    TicketStatus.AGUARDANDO: [TicketStatus.EM_ATENDIMENTO, TicketStatus.RESOLVIDO, TicketStatus.ENCERRADO],
    TicketStatus.EM_ATENDIMENTO: [TicketStatus.AGUARDANDO, TicketStatus.RESOLVIDO, TicketStatus.ENCERRADO],
    TicketStatus.RESOLVIDO: [],
    TicketStatus.ENCERRADO: [],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_status: TicketStatus, to_status: TicketStatus):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Invalid transition: {from_status.value} -> {to_status.value}")


def is_active(status: str) -> bool:
    return status in ACTIVE_STATUS_VALUES


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUS_VALUES


def can_transition(from_status: TicketStatus, to_status: TicketStatus) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(from_status, [])
    return to_status in allowed


def transition(from_status: TicketStatus, to_status: TicketStatus) -> TicketStatus:
    """Perform status transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_status, to_status):
        raise InvalidTransitionError(from_status, to_status)
    return to_status


def take(current: TicketStatus) -> TicketStatus:
    """Agent starts handling the ticket."""
    return transition(current, TicketStatus.EM_ATENDIMENTO)


def park(current: TicketStatus) -> TicketStatus:
    """Ticket goes back to the waiting queue."""
    return transition(current, TicketStatus.AGUARDANDO)


def resolve(current: TicketStatus) -> TicketStatus:
    return transition(current, TicketStatus.RESOLVIDO)


def close(current: TicketStatus) -> TicketStatus:
    return transition(current, TicketStatus.ENCERRADO)
