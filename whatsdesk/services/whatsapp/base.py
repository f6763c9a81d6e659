from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Optional

# Provider event kinds, delivered in order per session.
CREDENTIALS_UPDATE = "credentials.update"
CONNECTION_UPDATE = "connection.update"
MESSAGES_UPSERT = "messages.upsert"


@dataclass
class DisconnectInfo:
    status_code: Optional[int] = None
    reason: Optional[str] = None


@dataclass
class ConnectionUpdate:
    connection: Optional[str] = None  # connecting, open, close
    qr: Optional[str] = None
    disconnect: Optional[DisconnectInfo] = None


@dataclass
class ProviderEvent:
    kind: str
    payload: Any = None


@dataclass
class AuthState:
    """Credential bundle handed to the provider: file stem -> parsed JSON."""

    path: str
    files: dict[str, Any] = field(default_factory=dict)

    @property
    def creds(self) -> Optional[dict]:
        return self.files.get("creds")


class ProviderSession(ABC):
    """One live connection to the messaging network."""

    user: Optional[dict] = None

    @abstractmethod
    def events(self) -> AsyncIterator[ProviderEvent]:
        """Iterate provider events in delivery order until the transport ends."""

    @abstractmethod
    async def send_message(self, jid: str, content: dict, options: Optional[dict] = None) -> Optional[dict]:
        """Send content; returns the sent message envelope (with its key) when available."""

    @abstractmethod
    async def download_media(self, message: dict) -> bytes:
        pass

    @abstractmethod
    def is_ready(self) -> bool:
        """Readiness probe of the underlying transport."""

    @abstractmethod
    async def close_transport(self) -> None:
        pass

    async def logout(self) -> None:
        await self.close_transport()


class ProviderClient(ABC):
    """Factory for provider sessions (the wire protocol lives in the client library)."""

    async def fetch_latest_version(self) -> Optional[tuple]:
        return None

    @abstractmethod
    async def connect(self, auth_state: AuthState, version: Optional[tuple], options: dict) -> ProviderSession:
        pass
