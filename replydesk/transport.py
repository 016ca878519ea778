"""
Messaging transport capability.

A transport connects with an optional credential blob, reports lifecycle and
inbound traffic as typed events, and sends text to an address. The session
manager is the only caller; it awaits every event callback, so a transport
that awaits on_event() gets ordered, acknowledged delivery.
"""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Protocol, Union


@dataclass(frozen=True)
class InboundMessage:
    id: str
    sender: str
    text: str = ""
    push_name: Optional[str] = None
    timestamp: Optional[datetime] = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Connected:
    address: Optional[str] = None


@dataclass(frozen=True)
class PairingRequired:
    code: str


@dataclass(frozen=True)
class Disconnected:
    reason: str = ""
    logged_out: bool = False


@dataclass(frozen=True)
class MessagesReceived:
    messages: list[InboundMessage]


@dataclass(frozen=True)
class CredentialsUpdated:
    credentials: dict[str, Any]


TransportEvent = Union[Connected, PairingRequired, Disconnected, MessagesReceived, CredentialsUpdated]
EventHandler = Callable[[TransportEvent], Awaitable[None]]


class Transport(Protocol):
    async def connect(self, credentials: Optional[dict[str, Any]], on_event: EventHandler) -> None:
        """Open the connection. Raises TransportError if it cannot be started."""
        ...

    async def send_text(self, address: str, text: str) -> None:
        """Send a text message. Raises TransportError on failure."""
        ...

    async def disconnect(self) -> None:
        ...


def build_transport(name: str, sessions_dir: Path) -> Optional[Transport]:
    """Create the configured transport; "none" runs the service without one."""
    name = (name or "none").lower()
    if name == "none":
        return None
    if name == "neonize":
        from replydesk.neonize_transport import NeonizeTransport

        return NeonizeTransport(sessions_dir)
    raise ValueError(f"Unknown transport: {name}")
