"""JSON document store for messages and the scheduled queue.

One file (db.json by default) holds the whole state:

    {
      "messages": [...],           append-only log of sent messages
      "scheduledMessages": [...],  queue read by the delivery engine
      "sessions": [...]            reserved, carried through untouched
    }

Design decisions:
1. Self-healing load: a missing, empty or corrupted file is replaced with
   the empty document instead of failing the process. A valid object that
   lacks a collection gets an empty one, and the repaired form is written
   back immediately.

2. Atomic writes: the document is written to a sibling .tmp file, fsynced,
   then os.replace()d over the original. A crash mid-write leaves either
   the old or the new file, never half of one.

3. Single writer: every read-modify-write goes through transaction(),
   which holds one asyncio.Lock for the load -> mutate -> write cycle.
   Two coroutines marking different entries as sent can't clobber each
   other.

4. Legacy keys: older db.json files use chatId, error and timestamp, and
   may have scheduled entries without an id. Those are read transparently
   and written back under the current names. Unknown keys on a record are
   preserved.
"""

import asyncio
import json
import logging
import os
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator

from whatsched.errors import InvalidRequestError, StoreError

logger = logging.getLogger(__name__)

COLLECTIONS = ("messages", "scheduledMessages", "sessions")


# ── Timestamps ──────────────────────────────────────────

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Format as ISO-8601 UTC with millisecond precision and a Z suffix."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: Any) -> datetime:
    """Parse a datetime or ISO-8601 string into an aware UTC datetime.

    Naive values are taken as UTC. Raises InvalidRequestError on anything
    that isn't a recognizable timestamp.
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            raise InvalidRequestError(f"Malformed timestamp: {value!r}")
    else:
        raise InvalidRequestError(f"Malformed timestamp: {value!r}")

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    try:
        return dt.astimezone(timezone.utc)
    except (OverflowError, ValueError):
        # e.g. 0001-01-01T00:00:00+01:00 has no UTC equivalent
        raise InvalidRequestError(f"Timestamp out of range: {value!r}")


# ── Records ─────────────────────────────────────────────

@dataclass
class SentMessageRecord:
    """An outbound message as logged after the provider accepted it."""
    id: str
    conversation_id: str
    content: str
    sent_at: str
    direction: str = "outbound"
    status: str = "sent"
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.extra,
            "id": self.id,
            "conversationId": self.conversation_id,
            "content": self.content,
            "sentAt": self.sent_at,
            "direction": self.direction,
            "status": self.status,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "SentMessageRecord":
        d = dict(d)
        conversation_id = d.pop("conversationId", None)
        legacy_chat = d.pop("chatId", None)
        sent_at = d.pop("sentAt", None)
        legacy_ts = d.pop("timestamp", None)
        return cls(
            id=str(d.pop("id", "")),
            conversation_id=conversation_id or legacy_chat or "",
            content=d.pop("content", ""),
            sent_at=sent_at or legacy_ts or "",
            direction=d.pop("direction", "outbound"),
            status=d.pop("status", "sent"),
            extra=d,
        )


@dataclass
class ScheduledMessage:
    """A message queued for delivery at send_at."""
    conversation_id: str
    content: str
    send_at: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    sent: bool = False
    sent_at: str | None = None
    last_error: str | None = None
    created_at: str = field(default_factory=lambda: to_iso(utc_now()))
    extra: dict[str, Any] = field(default_factory=dict)

    def is_due(self, now: datetime) -> bool:
        """Unsent and send_at has passed. Unparseable send_at is never due."""
        if self.sent:
            return False
        try:
            return parse_timestamp(self.send_at) <= now
        except InvalidRequestError:
            return False

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.extra,
            "id": self.id,
            "conversationId": self.conversation_id,
            "content": self.content,
            "sendAt": self.send_at,
            "sent": self.sent,
            "sentAt": self.sent_at,
            "lastError": self.last_error,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "ScheduledMessage":
        d = dict(d)
        conversation_id = d.pop("conversationId", None)
        legacy_chat = d.pop("chatId", None)
        last_error = d.pop("lastError", None)
        legacy_error = d.pop("error", None)
        return cls(
            id=str(d.pop("id", None) or uuid.uuid4().hex),
            conversation_id=conversation_id or legacy_chat or "",
            content=d.pop("content", ""),
            send_at=d.pop("sendAt", ""),
            sent=bool(d.pop("sent", False)),
            sent_at=d.pop("sentAt", None),
            last_error=last_error or legacy_error,
            created_at=d.pop("createdAt", None) or "",
            extra=d,
        )


@dataclass
class PersistedDocument:
    """The whole store file."""
    messages: list[SentMessageRecord] = field(default_factory=list)
    scheduled_messages: list[ScheduledMessage] = field(default_factory=list)
    sessions: list[Any] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessions": list(self.sessions),
            "messages": [m.to_dict() for m in self.messages],
            "scheduledMessages": [s.to_dict() for s in self.scheduled_messages],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> tuple["PersistedDocument", bool]:
        """Build a document, repairing what can't be used.

        Returns (document, repaired). `repaired` is True when any
        collection was missing or malformed, or an entry was dropped.
        """
        repaired = False
        lists: dict[str, list[Any]] = {}
        for name in COLLECTIONS:
            value = data.get(name)
            if not isinstance(value, list):
                logger.warning(f"Store collection '{name}' missing or malformed, resetting to []")
                value = []
                repaired = True
            lists[name] = value

        def _objects(name: str) -> list[dict[str, Any]]:
            nonlocal repaired
            items = [item for item in lists[name] if isinstance(item, dict)]
            if len(items) != len(lists[name]):
                logger.warning(f"Dropped {len(lists[name]) - len(items)} malformed '{name}' entries")
                repaired = True
            return items

        scheduled = _objects("scheduledMessages")
        if any(not s.get("id") for s in scheduled):
            # Ids are generated on read; persist them so they stay stable
            repaired = True

        doc = cls(
            messages=[SentMessageRecord.from_dict(m) for m in _objects("messages")],
            scheduled_messages=[ScheduledMessage.from_dict(s) for s in scheduled],
            sessions=lists["sessions"],
        )
        return doc, repaired


# ── Store ───────────────────────────────────────────────

class DocumentStore:
    """Load-or-initialize JSON document store with atomic writes.

    Usage:
        store = DocumentStore(Path("db.json"))
        doc = store.load()
        async with store.transaction() as doc:
            doc.scheduled_messages.append(entry)
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = asyncio.Lock()

    def load(self) -> PersistedDocument:
        """Load the document, repairing or initializing it as needed.

        Never fails because of file contents. Raises StoreError only if
        the repaired/default document can't be written back.
        """
        raw = self._read_raw()
        if raw is None:
            doc = PersistedDocument()
            self.write(doc)
            return doc

        doc, repaired = PersistedDocument.from_dict(raw)
        if repaired:
            logger.warning(f"Repaired store file {self.path}")
            self.write(doc)
        return doc

    def write(self, doc: PersistedDocument) -> None:
        """Atomically replace the on-disk document."""
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(doc.to_dict(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except OSError as e:
            raise StoreError(f"Could not write store file {self.path}: {e}") from e

    async def snapshot(self) -> PersistedDocument:
        """Load under the writer lock, for read-only use."""
        async with self._lock:
            return self.load()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[PersistedDocument]:
        """Serialized load -> mutate -> write cycle.

        The document is written back only if the block exits cleanly.
        """
        async with self._lock:
            doc = self.load()
            yield doc
            self.write(doc)

    def _read_raw(self) -> dict[str, Any] | None:
        """Read and parse the file. None means 'start from the default'."""
        if not self.path.exists():
            logger.info(f"Creating new store file {self.path}")
            return None

        try:
            content = self.path.read_text(encoding="utf-8").strip()
        except (OSError, UnicodeDecodeError) as e:
            logger.error(f"Unreadable store file {self.path}, reinitializing: {e}")
            return None

        if not content:
            logger.warning(f"Empty store file {self.path}, reinitializing")
            return None

        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            logger.error(f"Corrupted store file {self.path}, resetting: {e}")
            return None

        if not isinstance(data, dict):
            logger.error(f"Store file {self.path} is not a JSON object, resetting")
            return None
        return data
