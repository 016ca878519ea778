"""
Supabase storage backend.

Talks to the Supabase REST endpoint (PostgREST) with httpx. The tables mirror
the local schema: messages(id, from_number, to_number, direction, text, meta,
created_at) and contacts(id, phone, name, created_at). Both id and created_at
are assigned by the database.

Aggregates are computed client-side from paged reads so the results match the
SQL backend exactly, including tie-breaks.
"""

import logging
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import httpx
from pydantic import TypeAdapter, ValidationError

from replydesk.errors import PersistenceError
from replydesk.schemas import (
    Contact,
    DayCount,
    Direction,
    DirectionTotals,
    Message,
    MessageRecord,
    PeerCount,
)
from replydesk.storage import StorageAdapter, utcnow

logger = logging.getLogger(__name__)

PAGE_SIZE = 1000


def _quote(value: str) -> str:
    """Quote a value for use inside a PostgREST or=(...) filter."""
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


class SupabaseStorage(StorageAdapter):
    def __init__(
        self,
        url: str,
        service_key: str,
        transport: Optional[httpx.BaseTransport] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.base_url = url.rstrip("/") + "/rest/v1"
        self._headers = {
            "apikey": service_key,
            "Authorization": f"Bearer {service_key}",
            "Content-Type": "application/json",
        }
        self._transport = transport
        self._clock = clock
        self._client: httpx.Client | None = None

    def _get_client(self) -> httpx.Client:
        if self._client is None or self._client.is_closed:
            self._client = httpx.Client(
                base_url=self.base_url,
                headers=self._headers,
                timeout=httpx.Timeout(10.0, connect=5.0),
                transport=self._transport,
            )
        return self._client

    def _request(
        self,
        method: str,
        table: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        prefer: str | None = None,
        allow: tuple[int, ...] = (),
    ) -> httpx.Response:
        headers = {"Prefer": prefer} if prefer else None
        try:
            resp = self._get_client().request(
                method, f"/{table}", params=params, json=json, headers=headers
            )
        except httpx.HTTPError as e:
            logger.error(f"Supabase {method} {table} failed: {e}")
            raise PersistenceError(f"supabase unreachable: {e}") from e
        if resp.status_code in allow:
            return resp
        if resp.is_error:
            logger.error(
                f"Supabase {method} {table} rejected",
                extra={"status": resp.status_code, "body": resp.text[:200]},
            )
            raise PersistenceError(f"supabase {method} {table} returned {resp.status_code}")
        return resp

    def _fetch_all(self, table: str, params: dict[str, Any]) -> list[dict]:
        rows: list[dict] = []
        offset = 0
        while True:
            page = self._request(
                "GET", table, params={**params, "limit": PAGE_SIZE, "offset": offset}
            ).json()
            rows.extend(page)
            if len(page) < PAGE_SIZE:
                return rows
            offset += PAGE_SIZE

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def init(self) -> None:
        self._get_client()
        logger.info(f"Supabase storage ready at {self.base_url}")

    def close(self) -> None:
        if self._client is not None:
            self._client.close()

    def ping(self) -> bool:
        try:
            self._request("GET", "messages", params={"select": "id", "limit": 1})
        except PersistenceError:
            return False
        return True

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    def save_message(self, record: MessageRecord) -> int:
        resp = self._request(
            "POST",
            "messages",
            json={
                "from_number": record.sender,
                "to_number": record.recipient,
                "direction": record.direction.value,
                "text": record.text,
                "meta": record.meta,
            },
            prefer="return=representation",
        )
        rows = resp.json()
        if not rows:
            raise PersistenceError("supabase insert returned no row")
        return int(rows[0]["id"])

    def get_messages(self, limit: int, peer: Optional[str] = None) -> list[Message]:
        params: dict[str, Any] = {
            "select": "*",
            "order": "created_at.desc,id.desc",
            "limit": limit,
        }
        if peer:
            params["or"] = f"(from_number.eq.{_quote(peer)},to_number.eq.{_quote(peer)})"
        rows = self._request("GET", "messages", params=params).json()
        return [_message_from_row(row) for row in rows]

    # -------------------------------------------------------------------------
    # Contacts
    # -------------------------------------------------------------------------

    def _find_contact(self, address: str) -> Optional[dict]:
        rows = self._request(
            "GET",
            "contacts",
            params={"select": "*", "phone": f"eq.{address}", "limit": 1},
        ).json()
        return rows[0] if rows else None

    def upsert_contact(self, address: str, name: Optional[str] = None) -> int:
        existing = self._find_contact(address)
        if existing is not None:
            return int(existing["id"])
        resp = self._request(
            "POST",
            "contacts",
            json={"phone": address, "name": name},
            prefer="return=representation",
            allow=(409,),
        )
        if resp.status_code == 409:
            # Unique violation: someone else inserted it
            existing = self._find_contact(address)
            if existing is None:
                raise PersistenceError("contact conflict but no row found")
            return int(existing["id"])
        logger.info("Contact created", extra={"peer": address})
        return int(resp.json()[0]["id"])

    def get_contact(self, address: str) -> Optional[Contact]:
        row = self._find_contact(address)
        if row is None:
            return None
        return Contact(
            id=row["id"], address=row["phone"], name=row.get("name"), created_at=row["created_at"]
        )

    # -------------------------------------------------------------------------
    # Aggregates
    # -------------------------------------------------------------------------

    def _count(self, direction: Direction) -> int:
        resp = self._request(
            "HEAD",
            "messages",
            params={"select": "id", "direction": f"eq.{direction.value}"},
            prefer="count=exact",
        )
        content_range = resp.headers.get("content-range", "*/0")
        total = content_range.rsplit("/", 1)[-1]
        return int(total) if total.isdigit() else 0

    def get_totals(self) -> DirectionTotals:
        return DirectionTotals(inbound=self._count(Direction.IN), outbound=self._count(Direction.OUT))

    def get_counts_by_day(self, days: int) -> list[DayCount]:
        cutoff = (self._clock() - timedelta(days=days)).astimezone(timezone.utc)
        rows = self._fetch_all(
            "messages",
            {
                "select": "id,direction,created_at",
                "created_at": f"gte.{cutoff.isoformat()}",
                "order": "id.asc",
            },
        )
        buckets: dict[str, list[int]] = {}
        for row in rows:
            created = _parse_ts(row["created_at"])
            counts = buckets.setdefault(created.date().isoformat(), [0, 0])
            counts[0 if row["direction"] == Direction.IN.value else 1] += 1
        return [
            DayCount(date=day, inbound=counts[0], outbound=counts[1])
            for day, counts in sorted(buckets.items())
        ]

    def get_top_peers(self, limit: int) -> list[PeerCount]:
        rows = self._fetch_all(
            "messages",
            {"select": "id,direction,from_number,to_number", "order": "id.asc"},
        )
        counter: Counter[str] = Counter()
        for row in rows:
            peer = row["from_number"] if row["direction"] == Direction.IN.value else row["to_number"]
            counter[peer] += 1
        # most_common is stable, so equal counts keep first-seen order
        return [PeerCount(peer=peer, count=count) for peer, count in counter.most_common(limit)]


_TIMESTAMP = TypeAdapter(datetime)


def _parse_ts(value: str) -> datetime:
    # PostgREST trims trailing zeros from fractional seconds
    try:
        ts = _TIMESTAMP.validate_python(value)
    except ValidationError as e:
        raise PersistenceError(f"unparseable timestamp {value!r}") from e
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def _message_from_row(row: dict) -> Message:
    meta = row.get("meta") or {}
    return Message(
        id=row["id"],
        sender=row["from_number"],
        recipient=row["to_number"],
        direction=Direction(row["direction"]),
        text=row.get("text"),
        meta=meta if isinstance(meta, dict) else {},
        created_at=_parse_ts(row["created_at"]),
    )
