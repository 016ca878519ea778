"""
Pytest configuration and shared fixtures.

Environment variables are pinned here so settings never pick up a developer
.env; the settings cache is cleared before any app imports.
"""

import os
import time
from datetime import datetime, timedelta, timezone

import pytest

os.environ["TRANSPORT"] = "none"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ.pop("OPENAI_API_KEY", None)
os.environ.pop("SUPABASE_URL", None)
os.environ.pop("API_TOKEN", None)

from replydesk.config import Settings, get_settings  # noqa: E402
get_settings.cache_clear()

from replydesk.errors import TransportError  # noqa: E402
from replydesk.storage import SqlStorage  # noqa: E402
from replydesk.transport import Connected, PairingRequired  # noqa: E402

SELF_JID = "14155550100@s.whatsapp.net"


class FakeTransport:
    """In-memory transport implementing the Transport protocol."""

    def __init__(self, address=SELF_JID, pairing_code=None, fail_connects=0, auto_connect=True):
        self.address = address
        self.pairing_code = pairing_code
        self.fail_connects = fail_connects
        self.auto_connect = auto_connect
        self.send_error = None
        self.connect_calls = []
        self.sent = []
        self.disconnects = 0
        self.on_event = None

    async def connect(self, credentials, on_event):
        self.connect_calls.append(credentials)
        self.on_event = on_event
        if self.fail_connects > 0:
            self.fail_connects -= 1
            raise TransportError("connection refused")
        if self.pairing_code and credentials is None:
            await on_event(PairingRequired(code=self.pairing_code))
            return
        if self.auto_connect:
            await on_event(Connected(address=self.address))

    async def emit(self, event):
        await self.on_event(event)

    async def send_text(self, address, text):
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((address, text))

    async def disconnect(self):
        self.disconnects += 1


class StepClock:
    """Clock advancing a fixed step on every call."""

    def __init__(self, start=None, step=timedelta(seconds=1)):
        self.now = start or datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)
        self.step = step

    def __call__(self):
        current = self.now
        self.now = self.now + self.step
        return current


def wait_for(predicate, timeout: float = 2.0) -> None:
    """Poll until predicate() is truthy or fail the test."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.01)
    raise AssertionError("condition not met before timeout")


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        DATABASE_URL=f"sqlite:///{tmp_path / 'test.db'}",
        SESSIONS_DIR=str(tmp_path / "sessions"),
        TRANSPORT="none",
        LOG_LEVEL="WARNING",
    )


@pytest.fixture
def storage(tmp_path):
    store = SqlStorage(f"sqlite:///{tmp_path / 'store.db'}")
    store.init()
    yield store
    store.close()


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()
