"""
Transport session lifecycle.

State machine:

    Disconnected --start()------------> Connecting
    Connecting   --PairingRequired----> AwaitingPairing
    Connecting   --Connected----------> Connected
    AwaitingPairing --Connected-------> Connected
    Connected    --Disconnected-------> Connecting (reconnect with stored credentials)
    any          --stop()-------------> Disconnected

At most one connect loop runs at a time; start() is a no-op unless the
session is Disconnected. Reconnects back off exponentially up to a cap and
retry without an attempt limit.
"""

import asyncio
import contextlib
import logging
from typing import Awaitable, Callable, Optional

from replydesk.credentials import CredentialStore
from replydesk.errors import NotConnectedError, TransportError
from replydesk.metrics import set_session_state
from replydesk.schemas import SessionState, SessionStatus
from replydesk.transport import (
    Connected,
    CredentialsUpdated,
    Disconnected,
    InboundMessage,
    MessagesReceived,
    PairingRequired,
    Transport,
    TransportEvent,
)

logger = logging.getLogger(__name__)

BatchHandler = Callable[[list[InboundMessage]], None]


class SessionManager:
    def __init__(
        self,
        transport: Optional[Transport],
        credentials: CredentialStore,
        default_address: str = "server",
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.transport = transport
        self.credentials = credentials
        self.default_address = default_address
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep

        self.state = SessionState.DISCONNECTED
        self.pairing_code: Optional[str] = None
        self.self_address = default_address
        self._subscribers: list[BatchHandler] = []
        self._connect_task: Optional[asyncio.Task] = None
        self._attempts = 0
        self._retry_requested = False
        self._stopping = False
        set_session_state(self.state)

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self.state == SessionState.CONNECTED

    def status(self) -> SessionStatus:
        return SessionStatus(
            connected=self.is_connected, pairing_code=self.pairing_code, state=self.state
        )

    def subscribe(self, handler: BatchHandler) -> None:
        """Register a callback for inbound message batches, called in delivery order."""
        self._subscribers.append(handler)

    async def start(self) -> None:
        if self.state != SessionState.DISCONNECTED:
            logger.debug("start() ignored, session already active", extra={"state": self.state.value})
            return
        if self.transport is None:
            logger.warning("No transport configured, session stays disconnected")
            return
        self._stopping = False
        self._attempts = 0
        self._set_state(SessionState.CONNECTING)
        self._connect_task = asyncio.create_task(self._connect_loop(), name="session-connect")

    async def stop(self) -> None:
        self._stopping = True
        task = self._connect_task
        self._connect_task = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if self.transport is not None:
            try:
                await self.transport.disconnect()
            except Exception:
                logger.exception("Transport disconnect failed")
        self.pairing_code = None
        self._set_state(SessionState.DISCONNECTED)

    async def send(self, address: str, text: str) -> None:
        """Send text through the live transport. Raises NotConnectedError or TransportError."""
        if not self.is_connected or self.transport is None:
            raise NotConnectedError("not-connected")
        try:
            await self.transport.send_text(address, text)
        except TransportError:
            raise
        except Exception as e:
            raise TransportError(f"dispatch failed: {e}") from e

    # -------------------------------------------------------------------------
    # Connection handling
    # -------------------------------------------------------------------------

    def _backoff(self, attempt: int) -> float:
        return min(self.base_delay * (2 ** max(attempt - 1, 0)), self.max_delay)

    async def _connect_loop(self) -> None:
        while not self._stopping:
            if self._attempts:
                delay = self._backoff(self._attempts)
                logger.info(f"Reconnecting in {delay:.1f}s", extra={"attempt": self._attempts})
                await self._sleep(delay)
                # stop() or another path may have settled things while we slept
                if self._stopping or self.is_connected:
                    return
            self._retry_requested = False
            try:
                await self.transport.connect(self.credentials.load(), self._handle_event)
            except Exception as e:
                self._attempts += 1
                logger.warning(f"Transport connect failed, will retry: {e}", extra={"attempt": self._attempts})
                continue
            if not self._retry_requested:
                return
            self._attempts += 1

    def _schedule_reconnect(self) -> None:
        if self._connect_task is not None and not self._connect_task.done():
            # The running loop picks this up after its current attempt
            self._retry_requested = True
            return
        self._attempts = max(self._attempts, 1)
        self._connect_task = asyncio.create_task(self._connect_loop(), name="session-reconnect")

    async def _handle_event(self, event: TransportEvent) -> None:
        if self._stopping:
            return
        if isinstance(event, PairingRequired):
            if self.state in (SessionState.CONNECTING, SessionState.AWAITING_PAIRING):
                self.pairing_code = event.code
                self._set_state(SessionState.AWAITING_PAIRING)
                logger.info("Pairing required, scan the pairing code to link this session")
            else:
                logger.warning("Pairing code ignored", extra={"state": self.state.value})
        elif isinstance(event, Connected):
            self.pairing_code = None
            self._attempts = 0
            self.self_address = event.address or self.default_address
            self._set_state(SessionState.CONNECTED)
        elif isinstance(event, CredentialsUpdated):
            # Persisted before returning, the transport treats the return as the ack
            self.credentials.save(event.credentials)
        elif isinstance(event, Disconnected):
            logger.warning(f"Transport disconnected: {event.reason}", extra={"logged_out": event.logged_out})
            if event.logged_out:
                self.credentials.clear()
            self.pairing_code = None
            self._set_state(SessionState.CONNECTING)
            self._schedule_reconnect()
        elif isinstance(event, MessagesReceived):
            for handler in self._subscribers:
                handler(event.messages)

    def _set_state(self, state: SessionState) -> None:
        if state != self.state:
            logger.info(f"Session {self.state.value} -> {state.value}", extra={"state": state.value})
        self.state = state
        set_session_state(state)
