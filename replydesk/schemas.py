"""
Pydantic schemas for domain records and API request/response validation.

This module contains:
- Domain records exchanged with the storage adapter
- Request models for incoming API data
- Response models for API responses
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


# =============================================================================
# Domain Records
# =============================================================================

class Direction(str, Enum):
    """Message direction relative to the server's own address."""
    IN = "in"
    OUT = "out"


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AWAITING_PAIRING = "awaiting_pairing"
    CONNECTED = "connected"


class MessageRecord(BaseModel):
    """
    A message about to be appended to the store.

    The storage backend assigns id and created_at.
    """
    sender: str = Field(..., min_length=1, description="Sender address")
    recipient: str = Field(..., min_length=1, description="Recipient address")
    direction: Direction
    text: str
    meta: dict[str, Any] = Field(default_factory=dict, description="Arbitrary metadata blob")


class Message(BaseModel):
    """A persisted message as returned by the storage adapter."""
    id: int
    sender: str
    recipient: str
    direction: Direction
    text: Optional[str] = None
    meta: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    model_config = {"from_attributes": True}

    @property
    def peer(self) -> str:
        """Address of the counterparty for this message."""
        return self.sender if self.direction == Direction.IN else self.recipient


class Contact(BaseModel):
    id: int
    address: str
    name: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class DirectionTotals(BaseModel):
    """Message totals split by direction."""
    inbound: int = Field(0, ge=0, alias="in", serialization_alias="in")
    outbound: int = Field(0, ge=0, alias="out", serialization_alias="out")

    model_config = {"populate_by_name": True}


class DayCount(BaseModel):
    """Per-calendar-day message counts (UTC)."""
    date: str = Field(..., description="YYYY-MM-DD")
    inbound: int = Field(0, ge=0, alias="in", serialization_alias="in")
    outbound: int = Field(0, ge=0, alias="out", serialization_alias="out")

    model_config = {"populate_by_name": True}


class PeerCount(BaseModel):
    peer: str
    count: int = Field(..., ge=0)


# =============================================================================
# Pydantic Request Models
# =============================================================================

class SendRequest(BaseModel):
    """
    Body for POST /api/send.

    Validates:
    - to: non-empty peer address
    - text: non-empty, max 4096 characters
    """
    to: str = Field(..., min_length=1, description="Peer address")
    text: str = Field(..., min_length=1, max_length=4096, description="Message text")

    @field_validator("to", "text")
    @classmethod
    def not_blank(cls, v: str, info) -> str:
        if not v.strip():
            raise ValueError(f"{info.field_name} must not be blank")
        return v

    model_config = {
        "json_schema_extra": {
            "examples": [{"to": "15555550100@s.whatsapp.net", "text": "Hello"}]
        }
    }


# =============================================================================
# Pydantic Response Models
# =============================================================================

class SessionStatus(BaseModel):
    """Current connection status, polled by operators."""
    connected: bool
    pairing_code: Optional[str] = None
    state: SessionState


class SendResponse(BaseModel):
    success: bool = True
    id: int = Field(..., description="Id of the persisted outbound message")


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class AnalyticsOverview(BaseModel):
    totals: DirectionTotals
    by_day: list[DayCount] = Field(default_factory=list)
    top_contacts: list[PeerCount] = Field(default_factory=list)


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
