import asyncio
import time
from unittest.mock import Mock

import pytest
from sqlalchemy.orm import sessionmaker

from whatsdesk.config import Settings
from whatsdesk.database import build_engine, init_db
from whatsdesk.services.whatsapp.backoff import ReconnectBackoff
from whatsdesk.services.whatsapp.base import (
    CONNECTION_UPDATE,
    ConnectionUpdate,
    DisconnectInfo,
    ProviderClient,
    ProviderEvent,
    ProviderSession,
)


@pytest.fixture
def db_session():
    """Mock database session."""
    return Mock()


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite database with all tables."""
    engine = build_engine(f"sqlite:///{tmp_path / 'whatsdesk-test.db'}")
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


async def _wait_until(predicate, timeout: float = 2.0, interval: float = 0.005) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


class FakeSocket(ProviderSession):
    """Provider session driven by the test through `push`."""

    def __init__(self):
        self.user = {"id": "5511900000000:3@s.whatsapp.net"}
        self.events_queue: asyncio.Queue = asyncio.Queue()
        self.sent: list = []
        self.ready = True
        self.closed = False
        self.logged_out = False
        self.media = b"\x89PNG fake"
        self.send_error: Exception | None = None

    async def events(self):
        while True:
            event = await self.events_queue.get()
            if event is None:
                return
            yield event

    def push(self, kind: str, payload=None) -> None:
        self.events_queue.put_nowait(ProviderEvent(kind, payload))

    def open(self) -> None:
        self.push(CONNECTION_UPDATE, ConnectionUpdate(connection="open"))

    def qr(self, code: str = "QR-CODE") -> None:
        self.push(CONNECTION_UPDATE, ConnectionUpdate(qr=code))

    def close(self, status_code=None, reason=None) -> None:
        self.push(
            CONNECTION_UPDATE,
            ConnectionUpdate(connection="close", disconnect=DisconnectInfo(status_code=status_code, reason=reason)),
        )

    async def send_message(self, jid, content, options=None):
        if self.send_error:
            raise self.send_error
        self.sent.append((jid, content, options))
        return {
            "key": {"remoteJid": jid, "fromMe": True, "id": f"OUT{len(self.sent)}"},
            "message": {"conversation": content.get("text")},
        }

    async def download_media(self, message):
        return self.media

    def is_ready(self) -> bool:
        return self.ready

    async def close_transport(self) -> None:
        self.closed = True

    async def logout(self) -> None:
        self.logged_out = True


class FakeClient(ProviderClient):
    def __init__(self):
        self.sockets: list[FakeSocket] = []
        self.failures = 0
        self.hangs = 0
        self.version_hangs = False
        self.connect_calls = 0

    async def fetch_latest_version(self):
        if self.version_hangs:
            await asyncio.Event().wait()
        return None

    async def connect(self, auth_state, version, options):
        self.connect_calls += 1
        if self.hangs:
            self.hangs -= 1
            await asyncio.Event().wait()
        if self.failures:
            self.failures -= 1
            raise ConnectionError("connection refused")
        socket = FakeSocket()
        self.sockets.append(socket)
        return socket

    @property
    def current(self) -> FakeSocket:
        return self.sockets[-1]


@pytest.fixture
def fake_client():
    return FakeClient()


@pytest.fixture
def fast_settings(tmp_path):
    return Settings(
        auth_dir=str(tmp_path / "auth"),
        legacy_auth_dir=str(tmp_path / "auth_legacy"),
        media_dir=str(tmp_path / "media"),
        connect_timeout_seconds=5.0,
        heartbeat_interval_seconds=5.0,
        heartbeat_max_failures=2,
        watchdog_interval_seconds=60.0,
        watchdog_stale_seconds=1.0,
        max_consecutive_conflicts=3,
        inbound_queue_size=10,
    )


@pytest.fixture
def fast_backoff():
    return ReconnectBackoff(initial_delay=0.01, factor=2.0, max_delay=0.05, max_attempts=10, rng=lambda: 0.5)


@pytest.fixture
def wait_until():
    """Poll a predicate until it holds or the timeout elapses."""
    return _wait_until
