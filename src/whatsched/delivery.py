"""Scheduled-delivery engine.

Clients queue messages with a send-at time; a tick every minute sends
whatever is due. Semantics:

- At-least-once. A failed send records lastError and the entry is tried
  again on every following tick, with no backoff and no attempt cap.
  A send that succeeds but whose bookkeeping can't be persisted will also
  be sent again.
- Sequential. Due entries go out one by one in queue order; the WhatsApp
  session is a single shared resource.
- sent=true is terminal. The engine never touches a sent entry again,
  and never deletes anything (the queue doubles as an audit trail).
- Outcomes of a tick are applied to a freshly loaded document in a single
  store transaction, so entries scheduled while the tick was sending are
  kept.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from whatsched.broadcast import Broadcaster
from whatsched.errors import InvalidRequestError, SessionNotReadyError
from whatsched.session import SessionManager
from whatsched.store import (
    DocumentStore,
    ScheduledMessage,
    parse_timestamp,
    to_iso,
    utc_now,
)

logger = logging.getLogger(__name__)


def require_text(value: Any, what: str) -> str:
    """Reject missing / blank strings."""
    if not isinstance(value, str) or not value.strip():
        raise InvalidRequestError(f"Missing {what}")
    return value


@dataclass
class DeliveryReport:
    """What one tick did."""
    skipped: bool = False
    due: int = 0
    delivered: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)  # id -> error
    deferred: int = 0  # left untouched because the session dropped mid-tick

    def to_dict(self) -> dict[str, Any]:
        return {
            "skipped": self.skipped,
            "due": self.due,
            "delivered": list(self.delivered),
            "failed": dict(self.failed),
            "deferred": self.deferred,
        }


class DeliveryEngine:
    """Durable queue + polling dispatcher for scheduled messages.

    Usage:
        engine = DeliveryEngine(store, session, hub)
        await engine.schedule("1234567890@c.us", "Happy birthday!", "2025-06-01T09:00:00Z")
        await engine.start()   # ticks every `interval` seconds
    """

    def __init__(
        self,
        store: DocumentStore,
        session: SessionManager,
        broadcaster: Broadcaster,
        interval: float = 60.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.session = session
        self.broadcaster = broadcaster
        self.interval = interval
        self._clock = clock

        self._tick_lock = asyncio.Lock()
        self._running = False
        self._loop_task: asyncio.Task | None = None

    # ── Queue ───────────────────────────────────────

    async def schedule(
        self,
        conversation_id: str,
        content: str,
        send_at: datetime | str,
    ) -> ScheduledMessage:
        """Validate and append a new unsent entry. Returns it."""
        conversation_id = require_text(conversation_id, "conversation id").strip()
        content = require_text(content, "message content")
        when = parse_timestamp(send_at)

        entry = ScheduledMessage(
            conversation_id=conversation_id,
            content=content,
            send_at=to_iso(when),
        )
        async with self.store.transaction() as doc:
            doc.scheduled_messages.append(entry)

        logger.info(f"Scheduled {entry.id} for {conversation_id} at {entry.send_at}")
        return entry

    async def list_scheduled(self, pending_only: bool = False) -> list[ScheduledMessage]:
        doc = await self.store.snapshot()
        if pending_only:
            return [e for e in doc.scheduled_messages if not e.sent]
        return list(doc.scheduled_messages)

    # ── Dispatch ────────────────────────────────────

    async def tick(self, now: datetime | None = None) -> DeliveryReport:
        """Send every due entry once. No-op unless the session is ready.

        `now` defaults to the engine clock; a naive value is taken as UTC.
        """
        if not self.session.is_ready:
            return DeliveryReport(skipped=True)
        if self._tick_lock.locked():
            logger.debug("Previous delivery tick still running, skipping")
            return DeliveryReport(skipped=True)

        async with self._tick_lock:
            return await self._deliver_due(parse_timestamp(now or self._clock()))

    async def _deliver_due(self, now: datetime) -> DeliveryReport:
        doc = await self.store.snapshot()
        due = [e for e in doc.scheduled_messages if e.is_due(now)]
        report = DeliveryReport(due=len(due))
        if not due:
            return report

        sent_at: dict[str, str] = {}
        errors: dict[str, str] = {}
        for index, entry in enumerate(due):
            try:
                await self.session.send(entry.conversation_id, entry.content)
            except SessionNotReadyError:
                report.deferred = len(due) - index
                logger.warning(f"Session lost mid-tick, {report.deferred} scheduled messages deferred")
                break
            except Exception as e:
                errors[entry.id] = str(e) or e.__class__.__name__
                logger.warning(f"Scheduled message {entry.id} failed: {errors[entry.id]}")
                continue
            sent_at[entry.id] = to_iso(self._clock())

        if not sent_at and not errors:
            return report

        delivered: list[ScheduledMessage] = []
        async with self.store.transaction() as fresh:
            for entry in fresh.scheduled_messages:
                if entry.sent:
                    continue
                if entry.id in sent_at:
                    entry.sent = True
                    entry.sent_at = sent_at[entry.id]
                    delivered.append(entry)
                elif entry.id in errors:
                    entry.last_error = errors[entry.id]

        for entry in delivered:
            report.delivered.append(entry.id)
            self.broadcaster.publish("new-message", {
                "scheduledId": entry.id,
                "conversationId": entry.conversation_id,
                "content": f"[SCHEDULED] {entry.content}",
                "fromMe": True,
                "sender": "You",
                "type": "chat",
                "timestamp": entry.sent_at,
            })
        report.failed = errors

        logger.info(
            f"Delivery tick: {len(report.delivered)} sent, {len(errors)} failed, "
            f"{report.deferred} deferred")
        return report

    # ── Background loop ─────────────────────────────

    async def start(self) -> None:
        self._running = True
        self._loop_task = asyncio.create_task(self._delivery_loop())

    async def stop(self) -> None:
        self._running = False
        if self._loop_task and not self._loop_task.done():
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass

    async def _delivery_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.interval)
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Delivery tick failed: {e}")
