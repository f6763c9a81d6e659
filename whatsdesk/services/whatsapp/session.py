import dataclasses
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from whatsdesk.services.whatsapp.base import ProviderSession


class ConnectionState(str, Enum):
    STARTING = "starting"
    CONNECTING = "connecting"
    QR = "qr"
    OPEN = "open"
    CLOSE = "close"


@dataclass
class Session:
    """Connection state owned by the supervisor.

    A fresh instance replaces the previous one on every connect attempt;
    handlers compare identity with the supervisor's current session and drop
    events of superseded instances.
    """

    state: ConnectionState = ConnectionState.STARTING
    socket: Optional[ProviderSession] = None
    qr: Optional[str] = None
    qr_at: Optional[float] = None
    reconnect_attempts: int = 0
    reconnect_at: Optional[float] = None
    consecutive_conflicts: int = 0
    heartbeat_failures: int = 0
    last_connected_at: Optional[float] = None
    last_disconnected_at: Optional[float] = None
    last_disconnect_code: Optional[int | str] = None
    last_disconnect_reason: Optional[str] = None
    last_event_at: float = dataclasses.field(default_factory=time.monotonic)

    def successor(self, state: ConnectionState = ConnectionState.CONNECTING) -> "Session":
        """New session carrying counters and history, without socket or QR."""
        return dataclasses.replace(
            self,
            state=state,
            socket=None,
            qr=None,
            qr_at=None,
            heartbeat_failures=0,
            last_event_at=time.monotonic(),
        )

    def touch(self) -> None:
        self.last_event_at = time.monotonic()

    @property
    def is_open(self) -> bool:
        return self.state == ConnectionState.OPEN and self.socket is not None
