"""Connection supervisor: one resilient session to the messaging provider.

State machine: starting -> connecting -> (qr) -> open -> close -> connecting ...

Every connect attempt runs against a fresh ``Session``. Provider events are
consumed by one reader task per session, in delivery order, and dropped once
that session is no longer the supervisor's current one. Inbound message
batches go through a bounded queue to a single pipeline worker so provider
I/O never waits on storage transactions.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Coroutine, Optional

from whatsdesk.config import settings as default_settings
from whatsdesk.logging_config import get_logger
from whatsdesk.services import alert_service
from whatsdesk.services.event_service import EventBus
from whatsdesk.services.result import Result
from whatsdesk.services.task_service import TaskTracker
from whatsdesk.services.whatsapp.auth_state import AuthStateStore
from whatsdesk.services.whatsapp.backoff import ReconnectBackoff
from whatsdesk.services.whatsapp.base import (
    CONNECTION_UPDATE,
    CREDENTIALS_UPDATE,
    MESSAGES_UPSERT,
    ConnectionUpdate,
    DisconnectInfo,
    ProviderClient,
    ProviderEvent,
    ProviderSession,
)
from whatsdesk.services.whatsapp.session import ConnectionState, Session

logger = get_logger("whatsapp.supervisor")

# Logged out, bad session, multi-device mismatch, method not allowed.
AUTH_INVALID_CODES = {401, 405, 411, 500}
CONFLICT_CODE = 440
STABLE_CONNECTION_SECONDS = 15
FORCED_RECONNECT_DELAY_SECONDS = 1.0

MessageHandler = Callable[[dict], Awaitable[None]]


class NotConnectedError(RuntimeError):
    """Raised when an operation needs an open provider session."""


def is_auth_invalid(info: DisconnectInfo) -> bool:
    return info.status_code in AUTH_INVALID_CODES


def is_conflict(info: DisconnectInfo) -> bool:
    if info.status_code == CONFLICT_CODE:
        return True
    return "conflict" in (info.reason or "").lower()


def phone_to_jid(phone: str) -> str:
    if "@" in phone:
        return phone
    return f"{phone}@s.whatsapp.net"


class ConnectionSupervisor:
    def __init__(
        self,
        client: ProviderClient,
        auth_store: AuthStateStore,
        message_handler: Optional[MessageHandler] = None,
        event_bus: Optional[EventBus] = None,
        tasks: Optional[TaskTracker] = None,
        backoff: Optional[ReconnectBackoff] = None,
        config=None,
    ):
        self.config = config or default_settings
        self.client = client
        self.auth_store = auth_store
        self.message_handler = message_handler
        self.event_bus = event_bus
        self.tasks = tasks or TaskTracker(self.config.max_background_tasks)
        self.backoff = backoff or ReconnectBackoff.from_settings(self.config)

        self._session = Session()
        self._timers: dict[str, asyncio.Task] = {}
        self._start_lock = asyncio.Lock()
        self._reader: Optional[asyncio.Task] = None
        self._reader_session: Optional[Session] = None
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=self.config.inbound_queue_size)
        self._worker: Optional[asyncio.Task] = None
        self._running = False

    @property
    def session(self) -> Session:
        return self._session

    @property
    def running(self) -> bool:
        return self._running

    # Lifecycle

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._worker = asyncio.create_task(self._pipeline_worker(), name="whatsapp-pipeline")
        self._replace_timer("watchdog", self._watchdog())
        logger.info("WhatsApp supervisor started")
        await self._start_session()

    async def stop(self) -> None:
        """Stop timers and the reader, close the transport and drain background tasks."""
        self._running = False
        for name in list(self._timers):
            self._cancel_timer(name)
        await self._detach(self._session)
        self._session.state = ConnectionState.CLOSE

        if self._worker:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

        await self.tasks.drain()
        logger.info("WhatsApp supervisor stopped")

    # Timers

    def _replace_timer(self, name: str, coro: Coroutine) -> asyncio.Task:
        self._cancel_timer(name)
        task = asyncio.create_task(coro, name=f"whatsapp-{name}")
        self._timers[name] = task
        return task

    def _cancel_timer(self, name: str) -> None:
        task = self._timers.pop(name, None)
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _forget_timer(self, name: str) -> None:
        if self._timers.get(name) is asyncio.current_task():
            self._timers.pop(name, None)

    def has_timer(self, name: str) -> bool:
        task = self._timers.get(name)
        return task is not None and not task.done()

    # Session start / teardown

    def _connect_options(self) -> dict:
        return {
            "browser": tuple(part.strip() for part in self.config.whatsapp_browser.split(",")),
            "sync_full_history": False,
            "mark_online_on_connect": False,
        }

    async def _start_session(self) -> None:
        if not self._running:
            return
        if self._start_lock.locked():
            logger.debug("Session start already in progress")
            return

        async with self._start_lock:
            self._cancel_timer("reconnect")
            self._cancel_timer("heartbeat")
            self._cancel_timer("connect_timeout")
            await self._detach(self._session)

            session = self._session.successor(ConnectionState.CONNECTING)
            session.reconnect_at = None
            self._session = session
            self._emit_status()

            timeout = self.config.connect_timeout_seconds
            try:
                version = await asyncio.wait_for(self.client.fetch_latest_version(), timeout)
            except asyncio.TimeoutError:
                logger.warning("Provider version fetch timed out, using default")
                version = None
            except Exception as e:
                logger.warning(f"Could not fetch provider version, using default: {e}")
                version = None

            try:
                auth_state = self.auth_store.load()
                socket = await asyncio.wait_for(
                    self.client.connect(auth_state, version, self._connect_options()), timeout
                )
            except asyncio.TimeoutError:
                logger.error(f"WhatsApp connect timed out after {timeout}s")
                self._fail_attempt(session, "connect timeout")
                return
            except Exception as e:
                logger.error(f"WhatsApp connect failed: {e}", exc_info=True)
                self._fail_attempt(session, f"connect failed: {e}")
                return

            if session is not self._session or not self._running:
                await self._close_socket(socket)
                return

            session.socket = socket
            self._reader_session = session
            self._reader = asyncio.create_task(self._read_events(session, socket), name="whatsapp-reader")
            self._replace_timer("connect_timeout", self._connect_timeout(session))
            logger.info(f"WhatsApp connecting (attempt {session.reconnect_attempts})")

    def _fail_attempt(self, session: Session, reason: str) -> None:
        session.state = ConnectionState.CLOSE
        session.last_disconnected_at = time.time()
        session.last_disconnect_reason = reason
        self._emit_status()
        self._schedule_reconnect(session)

    def _stop_reader(self, session: Session) -> None:
        if self._reader_session is not session:
            return
        reader = self._reader
        self._reader = None
        self._reader_session = None
        if reader and not reader.done() and reader is not asyncio.current_task():
            reader.cancel()

    async def _close_socket(self, socket: Optional[ProviderSession]) -> None:
        if socket is None:
            return
        try:
            await socket.close_transport()
        except Exception as e:
            logger.debug(f"Ignoring transport close error: {e}")

    async def _detach(self, session: Session) -> None:
        """Stop consuming events of `session` and close its transport."""
        self._stop_reader(session)
        socket = session.socket
        session.socket = None
        await self._close_socket(socket)

    # Event handling

    async def _read_events(self, session: Session, socket: ProviderSession) -> None:
        try:
            async for event in socket.events():
                if session is not self._session:
                    logger.debug("Dropping event from superseded session")
                    return
                await self._dispatch(session, event)
                if session.socket is not socket:
                    return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Provider event stream failed: {e}", exc_info=True)
            if session is self._session:
                await self._handle_close(session, DisconnectInfo(reason=f"stream error: {e}"))
            return

        if session is self._session and session.state != ConnectionState.CLOSE:
            await self._handle_close(session, DisconnectInfo(reason="stream ended"))

    async def _dispatch(self, session: Session, event: ProviderEvent) -> None:
        if event.kind == CREDENTIALS_UPDATE:
            self._save_credentials(event.payload)
        elif event.kind == CONNECTION_UPDATE:
            await self._handle_connection_update(session, event.payload)
        elif event.kind == MESSAGES_UPSERT:
            await self._enqueue(event.payload)
        else:
            logger.debug(f"Ignoring provider event {event.kind}")

    def _save_credentials(self, payload: Any) -> None:
        if not payload:
            return
        try:
            self.auth_store.save("creds", payload)
        except OSError as e:
            logger.error(f"Failed to persist WhatsApp credentials: {e}")

    async def _enqueue(self, payload: Any) -> None:
        if isinstance(payload, dict):
            if payload.get("type") not in (None, "notify"):
                return
            messages = payload.get("messages") or []
        else:
            messages = list(payload or [])
        if messages:
            await self._queue.put(messages)

    async def _pipeline_worker(self) -> None:
        while True:
            batch = await self._queue.get()
            try:
                for envelope in batch:
                    if self.message_handler is None:
                        continue
                    try:
                        await self.message_handler(envelope)
                    except Exception as e:
                        msg_id = ((envelope or {}).get("key") or {}).get("id")
                        logger.error(
                            f"Inbound message processing failed: {e}",
                            exc_info=True,
                            extra={"context": {"message_id": msg_id}},
                        )
            finally:
                self._queue.task_done()

    async def _handle_connection_update(self, session: Session, update: ConnectionUpdate) -> None:
        session.touch()

        if update.qr:
            session.state = ConnectionState.QR
            session.qr = update.qr
            session.qr_at = time.time()
            self._cancel_timer("connect_timeout")
            logger.info("WhatsApp QR challenge received")
            self._emit_status()

        if update.connection == "open":
            self._handle_open(session)
        elif update.connection == "close":
            await self._handle_close(session, update.disconnect or DisconnectInfo())
        elif update.connection == "connecting" and session.state == ConnectionState.STARTING:
            session.state = ConnectionState.CONNECTING
            self._emit_status()

    def _handle_open(self, session: Session) -> None:
        session.state = ConnectionState.OPEN
        session.qr = None
        session.qr_at = None
        session.reconnect_attempts = 0
        session.reconnect_at = None
        session.consecutive_conflicts = 0
        session.heartbeat_failures = 0
        session.last_connected_at = time.time()

        self._cancel_timer("connect_timeout")
        self._cancel_timer("reconnect")
        self._replace_timer("heartbeat", self._heartbeat(session))

        user = getattr(session.socket, "user", None) or {}
        logger.info("WhatsApp connection open", extra={"context": {"user": user.get("id")}})
        self._emit_status()

    async def _handle_close(self, session: Session, info: DisconnectInfo) -> None:
        if session is not self._session:
            return
        if session.state == ConnectionState.CLOSE and session.socket is None:
            return

        session.state = ConnectionState.CLOSE
        session.qr = None
        session.last_disconnected_at = time.time()
        session.last_disconnect_code = info.status_code
        session.last_disconnect_reason = info.reason
        self._cancel_timer("heartbeat")
        self._cancel_timer("connect_timeout")
        await self._detach(session)

        logger.warning(
            "WhatsApp connection closed",
            extra={"context": {"code": info.status_code, "reason": info.reason}},
        )
        self._emit_status()

        if is_auth_invalid(info):
            await self._wipe_credentials(f"auth invalid ({info.status_code})")
            session.reconnect_attempts = 0
            session.consecutive_conflicts = 0
            self._schedule_reconnect(session, delay=self.backoff.initial_delay)
            return

        if is_conflict(info):
            session.consecutive_conflicts += 1
            logger.warning(f"WhatsApp session conflict #{session.consecutive_conflicts}")
            if session.consecutive_conflicts >= self.config.max_consecutive_conflicts:
                await self._wipe_credentials(f"{session.consecutive_conflicts} consecutive conflicts")
                session.consecutive_conflicts = 0
                session.reconnect_attempts = 0
        else:
            session.consecutive_conflicts = 0

        self._schedule_reconnect(session)

    async def _wipe_credentials(self, reason: str, alert: bool = True) -> None:
        try:
            self.auth_store.wipe()
        except OSError as e:
            logger.error(f"Credential wipe failed: {e}")
        if alert:
            self.tasks.spawn(
                asyncio.to_thread(alert_service.alert_credentials_wiped, reason),
                name="alert_credentials_wiped",
            )

    # Reconnect / health timers

    def _schedule_reconnect(self, session: Session, delay: Optional[float] = None) -> None:
        if not self._running or session is not self._session:
            return
        if delay is None:
            delay = self.backoff.delay(session.reconnect_attempts)
            session.reconnect_attempts = self.backoff.next_attempt(session.reconnect_attempts)
        session.reconnect_at = time.time() + delay
        logger.info(f"WhatsApp reconnect in {delay:.1f}s")
        self._replace_timer("reconnect", self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._forget_timer("reconnect")
        await self._start_session()

    async def _connect_timeout(self, session: Session) -> None:
        await asyncio.sleep(self.config.connect_timeout_seconds)
        self._forget_timer("connect_timeout")
        if session is self._session and session.state in (ConnectionState.STARTING, ConnectionState.CONNECTING):
            logger.warning("WhatsApp connect attempt timed out")
            await self._handle_close(session, DisconnectInfo(reason="connect timeout"))

    async def _heartbeat(self, session: Session) -> None:
        while session is self._session and session.state == ConnectionState.OPEN:
            await asyncio.sleep(self.config.heartbeat_interval_seconds)
            if session is not self._session or session.state != ConnectionState.OPEN:
                return
            try:
                ready = bool(session.socket and session.socket.is_ready())
            except Exception as e:
                logger.debug(f"Readiness probe failed: {e}")
                ready = False

            if ready:
                session.heartbeat_failures = 0
                continue

            session.heartbeat_failures += 1
            logger.warning(f"WhatsApp heartbeat failed ({session.heartbeat_failures})")
            if session.heartbeat_failures >= self.config.heartbeat_max_failures:
                self._forget_timer("heartbeat")
                await self._handle_close(session, DisconnectInfo(reason="heartbeat timeout"))
                return

    async def _watchdog(self) -> None:
        while self._running:
            await asyncio.sleep(self.config.watchdog_interval_seconds)
            try:
                await self.check_stale()
            except Exception as e:
                logger.error(f"Watchdog check failed: {e}", exc_info=True)

    async def check_stale(self) -> bool:
        """Force a reconnect when the state machine has been idle too long outside `open`."""
        session = self._session
        if not self._running or session.state == ConnectionState.OPEN:
            return False
        if self.has_timer("reconnect") or self._start_lock.locked():
            return False
        idle = time.monotonic() - session.last_event_at
        if idle <= self.config.watchdog_stale_seconds:
            return False
        logger.warning(f"WhatsApp state '{session.state.value}' stale for {idle:.0f}s, forcing reconnect")
        await self._start_session()
        return True

    # Public operations

    def status(self) -> dict:
        session = self._session
        now = time.time()
        recently_connected = (
            session.last_connected_at is not None and now - session.last_connected_at < STABLE_CONNECTION_SECONDS
        )
        return {
            "qr": session.qr,
            "qr_at": session.qr_at,
            "connection_state": session.state.value,
            "connected": session.is_open,
            "stable_connected": session.is_open or recently_connected,
            "last_connected_at": session.last_connected_at,
            "last_disconnected_at": session.last_disconnected_at,
            "last_disconnect_code": session.last_disconnect_code,
            "last_disconnect_reason": session.last_disconnect_reason,
            "reconnect_attempts": session.reconnect_attempts,
            "reconnect_at": session.reconnect_at,
            "consecutive_conflicts": session.consecutive_conflicts,
        }

    def _emit_status(self) -> None:
        if self.event_bus is not None:
            self.event_bus.emit("connection", self.status())

    async def force_new_qr(self, allow_when_connected: bool = False) -> Result[dict]:
        """Drop the current login and restart from a fresh QR challenge."""
        session = self._session
        if session.is_open and not allow_when_connected:
            return Result.failure("WhatsApp is connected", "connected")

        for name in ("reconnect", "heartbeat", "connect_timeout"):
            self._cancel_timer(name)
        self._stop_reader(session)

        socket = session.socket
        session.socket = None
        if socket is not None:
            try:
                await socket.logout()
            except Exception as e:
                logger.debug(f"Ignoring logout error: {e}")
            await self._close_socket(socket)
        await self._wipe_credentials("force_new_qr", alert=False)

        replacement = session.successor(ConnectionState.CLOSE)
        replacement.reconnect_attempts = 0
        replacement.consecutive_conflicts = 0
        replacement.last_disconnected_at = time.time()
        replacement.last_disconnect_code = "forced"
        replacement.last_disconnect_reason = "force_new_qr"
        self._session = replacement
        logger.warning("WhatsApp credentials reset, new QR requested")
        self._emit_status()

        self._schedule_reconnect(replacement, delay=FORCED_RECONNECT_DELAY_SECONDS)
        return Result.success(self.status())

    def _require_socket(self) -> ProviderSession:
        session = self._session
        if not session.is_open:
            raise NotConnectedError("WhatsApp is not connected")
        return session.socket

    async def send_message(self, jid: str, content: dict, options: Optional[dict] = None) -> Optional[dict]:
        socket = self._require_socket()
        return await socket.send_message(jid, content, options)

    async def download_media(self, message: dict) -> bytes:
        socket = self._require_socket()
        return await socket.download_media(message)
