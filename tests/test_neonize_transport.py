"""
Tests for the neonize WhatsApp transport.

neonize is an optional extra, so these tests install stand-in neonize modules
into sys.modules before importing the transport.

Tests cover:
- Device store handling across restarts and logouts
- Mapping client events to transport events
- Inbound message filtering and text extraction
- JID building and error wrapping on send
"""

import asyncio
import importlib
import sys
import types
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from replydesk.config import Settings
from replydesk.errors import TransportError
from replydesk.transport import (
    Connected,
    CredentialsUpdated,
    Disconnected,
    MessagesReceived,
    PairingRequired,
    build_transport,
)


def jid(user, server="s.whatsapp.net"):
    return SimpleNamespace(User=user, Server=server)


class EventRegistry:
    def __init__(self, handlers):
        self.handlers = handlers

    def __call__(self, event_type):
        def register(fn):
            self.handlers[event_type] = fn
            return fn
        return register

    def qr(self, fn):
        self.handlers["qr"] = fn
        return fn


class StubClient:
    instances = []

    def __init__(self, name):
        self.name = name
        self.handlers = {}
        self.event = EventRegistry(self.handlers)
        self.me = None
        self.connected = False
        self.disconnected = False
        self.sent = []
        self.send_error = None
        StubClient.instances.append(self)

    async def connect(self):
        self.connected = True

    async def idle(self):
        await asyncio.Event().wait()

    async def disconnect(self):
        self.disconnected = True

    async def send_message(self, target, text):
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((target, text))


def _module(name, **attrs):
    module = types.ModuleType(name)
    module.__dict__.update(attrs)
    return module


@pytest.fixture
def neonize(monkeypatch):
    """Install stand-in neonize modules and import the transport against them."""
    StubClient.instances = []
    event_types = {
        name: type(name, (), {})
        for name in ("ConnectedEv", "ConnectFailureEv", "DisconnectedEv", "LoggedOutEv", "MessageEv", "PairStatusEv")
    }
    client_module = _module("neonize.aioze.client", NewAClient=StubClient, event_global_loop=None)
    modules = {
        "neonize": _module("neonize"),
        "neonize.aioze": _module("neonize.aioze", client=client_module),
        "neonize.aioze.client": client_module,
        "neonize.aioze.events": _module("neonize.aioze.events", event_global_loop=None),
        "neonize.events": _module("neonize.events", **event_types),
        "neonize.utils": _module("neonize.utils"),
        "neonize.utils.jid": _module(
            "neonize.utils.jid",
            Jid2String=lambda j: f"{j.User}@{j.Server}" if j.User else "",
            build_jid=lambda user, server="s.whatsapp.net": jid(user, server),
        ),
    }
    modules["neonize.aioze"].events = modules["neonize.aioze.events"]
    for name, module in modules.items():
        monkeypatch.setitem(sys.modules, name, module)
    monkeypatch.delitem(sys.modules, "replydesk.neonize_transport", raising=False)
    transport_module = importlib.import_module("replydesk.neonize_transport")
    yield SimpleNamespace(module=transport_module, events=SimpleNamespace(**event_types))
    sys.modules.pop("replydesk.neonize_transport", None)


@pytest.fixture
def sessions(tmp_path):
    return tmp_path / "sessions"


class Recorder:
    def __init__(self, fail_on=None):
        self.events = []
        self.fail_on = fail_on

    async def __call__(self, event):
        if self.fail_on is not None and isinstance(event, self.fail_on):
            raise OSError("disk full")
        self.events.append(event)


def message_event(chat="15551234@s.whatsapp.net", conversation="hi", extended="", from_me=False,
                  timestamp=1790000000, push_name="Ana"):
    user, server = chat.split("@", 1)
    return SimpleNamespace(
        Info=SimpleNamespace(
            ID="3EB0ABC",
            Timestamp=timestamp,
            Pushname=push_name,
            MessageSource=SimpleNamespace(Chat=jid(user, server), Sender=jid(user, server), IsFromMe=from_me),
        ),
        Message=SimpleNamespace(conversation=conversation, extendedTextMessage=SimpleNamespace(text=extended)),
    )


class TestDeviceStore:
    """Test where device keys live and when they are discarded."""

    @pytest.mark.asyncio
    async def test_fresh_start_keeps_existing_device_store(self, neonize, sessions):
        sessions.mkdir()
        device_store = sessions / "neonize.db"
        device_store.write_bytes(b"paired device keys")
        recorder = Recorder()
        transport = neonize.module.NeonizeTransport(sessions)

        await transport.connect(None, recorder)

        assert device_store.read_bytes() == b"paired device keys"
        assert StubClient.instances[-1].name == str(device_store)
        await transport.disconnect()

    @pytest.mark.asyncio
    async def test_fresh_start_records_store_location_before_connecting(self, neonize, sessions):
        recorded = []

        async def on_event(event):
            recorded.append((event, len(StubClient.instances)))

        transport = neonize.module.NeonizeTransport(sessions)
        await transport.connect(None, on_event)

        expected = CredentialsUpdated(credentials={"auth_db": str(sessions / "neonize.db")})
        assert recorded == [(expected, 0)]
        assert StubClient.instances[-1].connected
        await transport.disconnect()

    @pytest.mark.asyncio
    async def test_stored_credentials_reuse_their_store(self, neonize, sessions, tmp_path):
        custom = tmp_path / "elsewhere.db"
        recorder = Recorder()
        transport = neonize.module.NeonizeTransport(sessions)

        await transport.connect({"auth_db": str(custom), "jid": "15550001@s.whatsapp.net"}, recorder)

        assert StubClient.instances[-1].name == str(custom)
        assert recorder.events == []
        await transport.disconnect()

    @pytest.mark.asyncio
    async def test_recording_failure_aborts_connect(self, neonize, sessions):
        transport = neonize.module.NeonizeTransport(sessions)

        with pytest.raises(TransportError):
            await transport.connect(None, Recorder(fail_on=CredentialsUpdated))

        assert StubClient.instances == []

    @pytest.mark.asyncio
    async def test_logout_discards_store_on_next_connect(self, neonize, sessions):
        transport = neonize.module.NeonizeTransport(sessions)
        recorder = Recorder()
        await transport.connect(None, recorder)
        device_store = sessions / "neonize.db"
        device_store.write_bytes(b"keys")
        client = StubClient.instances[-1]

        await client.handlers[neonize.events.LoggedOutEv](client, neonize.events.LoggedOutEv())
        assert recorder.events[-1] == Disconnected(reason="logged out", logged_out=True)

        await transport.connect(None, recorder)

        assert not device_store.exists()
        assert client.disconnected
        await transport.disconnect()


class TestEventMapping:
    """Test client events turning into transport events."""

    @pytest.mark.asyncio
    async def test_qr_becomes_pairing_required(self, neonize, sessions):
        transport = neonize.module.NeonizeTransport(sessions)
        recorder = Recorder()
        await transport.connect({"auth_db": str(sessions / "neonize.db")}, recorder)
        client = StubClient.instances[-1]

        await client.handlers["qr"](client, b"2@abc,def")

        assert recorder.events == [PairingRequired(code="2@abc,def")]
        await transport.disconnect()

    @pytest.mark.asyncio
    async def test_pair_status_becomes_credentials_update(self, neonize, sessions):
        transport = neonize.module.NeonizeTransport(sessions)
        recorder = Recorder()
        await transport.connect({"auth_db": str(sessions / "neonize.db")}, recorder)
        client = StubClient.instances[-1]
        event = neonize.events.PairStatusEv()
        event.ID = jid("15550001")

        await client.handlers[neonize.events.PairStatusEv](client, event)

        assert recorder.events == [CredentialsUpdated(credentials={
            "auth_db": str(sessions / "neonize.db"), "jid": "15550001@s.whatsapp.net",
        })]
        await transport.disconnect()

    @pytest.mark.asyncio
    async def test_connected_reports_own_address(self, neonize, sessions):
        transport = neonize.module.NeonizeTransport(sessions)
        recorder = Recorder()
        await transport.connect({"auth_db": str(sessions / "neonize.db")}, recorder)
        client = StubClient.instances[-1]
        client.me = SimpleNamespace(JID=jid("15550001"))

        await client.handlers[neonize.events.ConnectedEv](client, neonize.events.ConnectedEv())
        await client.handlers[neonize.events.DisconnectedEv](client, neonize.events.DisconnectedEv())

        assert recorder.events == [
            Connected(address="15550001@s.whatsapp.net"),
            Disconnected(reason="disconnected"),
        ]
        await transport.disconnect()

    @pytest.mark.asyncio
    async def test_text_message_becomes_batch(self, neonize, sessions):
        transport = neonize.module.NeonizeTransport(sessions)
        recorder = Recorder()
        await transport.connect({"auth_db": str(sessions / "neonize.db")}, recorder)
        client = StubClient.instances[-1]

        await client.handlers[neonize.events.MessageEv](client, message_event(conversation="hours?"))
        await client.handlers[neonize.events.MessageEv](client, message_event(from_me=True))

        [batch] = recorder.events
        assert isinstance(batch, MessagesReceived)
        [inbound] = batch.messages
        assert inbound.sender == "15551234@s.whatsapp.net"
        assert inbound.text == "hours?"
        assert inbound.push_name == "Ana"
        await transport.disconnect()


class TestInboundConversion:
    """Test filtering and text extraction for inbound messages."""

    def test_conversation_text(self, neonize):
        inbound = neonize.module.NeonizeTransport._to_inbound(message_event(conversation="order please"))

        assert inbound.text == "order please"
        assert inbound.id == "3EB0ABC"
        assert inbound.raw["chat"] == "15551234@s.whatsapp.net"
        assert inbound.timestamp == datetime.fromtimestamp(1790000000, tz=timezone.utc)

    def test_extended_text(self, neonize):
        inbound = neonize.module.NeonizeTransport._to_inbound(
            message_event(conversation="", extended="reply with quote")
        )
        assert inbound.text == "reply with quote"

    def test_media_without_text(self, neonize):
        inbound = neonize.module.NeonizeTransport._to_inbound(message_event(conversation=""))
        assert inbound.text == ""

    def test_millisecond_timestamps(self, neonize):
        inbound = neonize.module.NeonizeTransport._to_inbound(message_event(timestamp=1790000000000))
        assert inbound.timestamp == datetime.fromtimestamp(1790000000, tz=timezone.utc)

    def test_missing_push_name(self, neonize):
        inbound = neonize.module.NeonizeTransport._to_inbound(message_event(push_name=""))
        assert inbound.push_name is None

    @pytest.mark.parametrize("event", [
        message_event(chat="status@broadcast"),
        message_event(from_me=True),
    ])
    def test_skipped_messages(self, neonize, event):
        assert neonize.module.NeonizeTransport._to_inbound(event) is None


class TestSend:
    """Test outbound text dispatch."""

    @pytest.mark.asyncio
    async def test_send_before_connect(self, neonize, sessions):
        with pytest.raises(TransportError):
            await neonize.module.NeonizeTransport(sessions).send_text("15551234", "hi")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("address, user, server", [
        ("15551234@s.whatsapp.net", "15551234", "s.whatsapp.net"),
        ("120363@g.us", "120363", "g.us"),
        ("15551234", "15551234", "s.whatsapp.net"),
    ])
    async def test_send_builds_jid(self, neonize, sessions, address, user, server):
        transport = neonize.module.NeonizeTransport(sessions)
        await transport.connect({"auth_db": str(sessions / "neonize.db")}, Recorder())
        client = StubClient.instances[-1]

        await transport.send_text(address, "hello")

        [(target, text)] = client.sent
        assert (target.User, target.Server, text) == (user, server, "hello")
        await transport.disconnect()

    @pytest.mark.asyncio
    async def test_send_failure_is_wrapped(self, neonize, sessions):
        transport = neonize.module.NeonizeTransport(sessions)
        await transport.connect({"auth_db": str(sessions / "neonize.db")}, Recorder())
        StubClient.instances[-1].send_error = RuntimeError("websocket closed")

        with pytest.raises(TransportError):
            await transport.send_text("15551234", "hello")
        await transport.disconnect()


class TestBuildTransport:
    """Test transport selection from settings."""

    def test_default_install_runs_without_transport(self, monkeypatch, sessions):
        monkeypatch.delenv("TRANSPORT", raising=False)
        settings = Settings(_env_file=None)

        assert settings.TRANSPORT == "none"
        assert build_transport(settings.TRANSPORT, sessions) is None

    def test_neonize_selected(self, neonize, sessions):
        transport = build_transport("neonize", sessions)
        assert isinstance(transport, neonize.module.NeonizeTransport)

    def test_unknown_transport(self, sessions):
        with pytest.raises(ValueError):
            build_transport("carrier-pigeon", sessions)
