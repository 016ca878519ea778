"""WhatsApp transport using neonize (whatsmeow Python bindings)."""

import asyncio
import contextlib
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from neonize.aioze import client as neonize_client
from neonize.aioze import events as neonize_events
from neonize.aioze.client import NewAClient
from neonize.events import (
    ConnectedEv,
    ConnectFailureEv,
    DisconnectedEv,
    LoggedOutEv,
    MessageEv,
    PairStatusEv,
)
from neonize.utils.jid import Jid2String, build_jid

from replydesk.errors import TransportError
from replydesk.transport import (
    Connected,
    CredentialsUpdated,
    Disconnected,
    EventHandler,
    InboundMessage,
    MessagesReceived,
    PairingRequired,
)

logger = logging.getLogger(__name__)


class NeonizeTransport:
    """
    Transport over a neonize client.

    neonize keeps its device keys in its own SQLite file. The credential blob
    records where that file lives and which account it belongs to. A fresh
    store announces its blob before the client connects, so the device keys
    written during pairing are never orphaned by a crash. The device store is
    only discarded after the account logged out.
    """

    def __init__(self, sessions_dir: Path):
        self.sessions_dir = Path(sessions_dir)
        self._client: Optional[NewAClient] = None
        self._idle_task: Optional[asyncio.Task] = None
        self._on_event: Optional[EventHandler] = None
        self._auth_db: Optional[Path] = None
        self._logged_out = False

    async def connect(self, credentials: Optional[dict[str, Any]], on_event: EventHandler) -> None:
        # neonize creates its own event loop at import time; point both modules at ours
        loop = asyncio.get_running_loop()
        neonize_events.event_global_loop = loop
        neonize_client.event_global_loop = loop

        self.sessions_dir.mkdir(parents=True, exist_ok=True)
        default_db = self.sessions_dir / "neonize.db"
        auth_db = Path(credentials["auth_db"]) if credentials and "auth_db" in credentials else default_db
        self._on_event = on_event

        await self._teardown()
        if self._logged_out and auth_db.exists():
            logger.info("Account logged out, discarding device store")
            auth_db.unlink()
        self._logged_out = False
        self._auth_db = auth_db
        if credentials is None:
            try:
                await on_event(CredentialsUpdated(credentials={"auth_db": str(auth_db)}))
            except Exception as e:
                raise TransportError(f"could not record device store location: {e}") from e

        self._client = NewAClient(str(auth_db))
        self._register_events(self._client)
        try:
            await self._client.connect()
        except Exception as e:
            raise TransportError(f"neonize connect failed: {e}") from e
        # idle() keeps the loop receiving events
        self._idle_task = asyncio.ensure_future(self._client.idle())

    def _register_events(self, client: NewAClient) -> None:
        @client.event.qr
        async def on_qr(_client: NewAClient, qr_data: bytes) -> None:
            code = qr_data.decode() if isinstance(qr_data, bytes) else str(qr_data)
            await self._emit(PairingRequired(code=code))

        @client.event(PairStatusEv)
        async def on_pair_status(_client: NewAClient, ev: PairStatusEv) -> None:
            logger.info("WhatsApp paired", extra={"user": ev.ID.User})
            await self._emit(
                CredentialsUpdated(credentials={"auth_db": str(self._auth_db), "jid": Jid2String(ev.ID)})
            )

        @client.event(ConnectedEv)
        async def on_connected(_client: NewAClient, _ev: ConnectedEv) -> None:
            address = None
            device = client.me
            if device is not None and getattr(device, "JID", None) is not None:
                address = Jid2String(device.JID)
            await self._emit(Connected(address=address))

        @client.event(DisconnectedEv)
        async def on_disconnected(_client: NewAClient, _ev: DisconnectedEv) -> None:
            await self._emit(Disconnected(reason="disconnected"))

        @client.event(ConnectFailureEv)
        async def on_connect_failure(_client: NewAClient, _ev: ConnectFailureEv) -> None:
            await self._emit(Disconnected(reason="connect failure"))

        @client.event(LoggedOutEv)
        async def on_logged_out(_client: NewAClient, _ev: LoggedOutEv) -> None:
            self._logged_out = True
            await self._emit(Disconnected(reason="logged out", logged_out=True))

        @client.event(MessageEv)
        async def on_message(_client: NewAClient, message: MessageEv) -> None:
            inbound = self._to_inbound(message)
            if inbound is not None:
                await self._emit(MessagesReceived(messages=[inbound]))

    async def _emit(self, event) -> None:
        if self._on_event is None:
            return
        try:
            await self._on_event(event)
        except Exception:
            logger.exception(f"Event handler failed for {type(event).__name__}")

    @staticmethod
    def _to_inbound(message: MessageEv) -> Optional[InboundMessage]:
        info = message.Info
        source = info.MessageSource
        chat = Jid2String(source.Chat)
        if not chat or chat == "status@broadcast" or source.IsFromMe:
            return None

        ts = info.Timestamp
        if ts > 1e10:  # milliseconds -> seconds
            ts = ts / 1000
        timestamp = datetime.fromtimestamp(ts, tz=timezone.utc)

        msg = message.Message
        text = msg.conversation or msg.extendedTextMessage.text or ""
        return InboundMessage(
            id=info.ID,
            sender=chat,
            text=text,
            push_name=info.Pushname or None,
            timestamp=timestamp,
            raw={
                "id": info.ID,
                "chat": chat,
                "sender": Jid2String(source.Sender),
                "push_name": info.Pushname,
                "timestamp": timestamp.isoformat(),
            },
        )

    async def send_text(self, address: str, text: str) -> None:
        if self._client is None:
            raise TransportError("transport not connected")
        if "@" in address:
            user, server = address.split("@", 1)
            target = build_jid(user, server)
        else:
            target = build_jid(address)
        try:
            await self._client.send_message(target, text)
        except Exception as e:
            raise TransportError(f"send failed: {e}") from e

    async def _teardown(self) -> None:
        if self._idle_task is not None:
            self._idle_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._idle_task
            self._idle_task = None
        if self._client is not None:
            with contextlib.suppress(Exception):
                await self._client.disconnect()
            self._client = None

    async def disconnect(self) -> None:
        self._on_event = None
        await self._teardown()
