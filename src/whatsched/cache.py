"""In-memory cache of recent conversations.

The chat list is derived data: every refresh replaces the whole snapshot,
never merges into it. Readers get an immutable tuple, so a refresh
landing mid-request can't hand anyone half a list.

Refresh triggers:
- the session becoming ready (fired by SessionManager)
- a timer (5 min) that only runs if a client touched the service in the
  last 10 min, so an idle deployment stops polling WhatsApp
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

from whatsched.errors import SessionNotReadyError
from whatsched.provider import ProviderConversation
from whatsched.session import SessionManager

logger = logging.getLogger(__name__)

# Pseudo-chats: status updates and broadcast lists
EXCLUDED_SERVERS = frozenset({"broadcast", "status"})


@dataclass(frozen=True)
class ConversationSummary:
    id: str
    display_name: str
    is_group: bool = False
    unread_count: int = 0

    @classmethod
    def from_provider(cls, conversation: ProviderConversation) -> "ConversationSummary":
        return cls(
            id=conversation.id,
            display_name=conversation.name or conversation.user,
            is_group=conversation.is_group,
            unread_count=max(conversation.unread_count, 0),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.display_name,
            "isGroup": self.is_group,
            "unreadCount": self.unread_count,
        }


class ConversationCache:
    """Bounded, activity-gated snapshot of the provider's chat list."""

    def __init__(
        self,
        session: SessionManager,
        limit: int = 100,
        refresh_interval: float = 300.0,
        activity_window: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.session = session
        self.limit = limit
        self.refresh_interval = refresh_interval
        self.activity_window = activity_window
        self._clock = clock

        self._snapshot: tuple[ConversationSummary, ...] = ()
        self._last_activity: float | None = None
        self.last_refreshed_at: float | None = None
        self._refresh_lock = asyncio.Lock()

        self._running = False
        self._loop_task: asyncio.Task | None = None

    # ── Activity ────────────────────────────────────

    def touch(self) -> None:
        """Record client activity."""
        self._last_activity = self._clock()

    def is_active(self) -> bool:
        if self._last_activity is None:
            return False
        return (self._clock() - self._last_activity) <= self.activity_window

    # ── Reads / refresh ─────────────────────────────

    def get(self) -> tuple[ConversationSummary, ...]:
        """Current snapshot. Never blocks, never calls the provider.

        Raises SessionNotReadyError if the session has never been ready.
        """
        if not self.session.status.ever_ready:
            raise SessionNotReadyError()
        return self._snapshot

    async def refresh(self) -> bool:
        """Replace the snapshot with the provider's current chat list.

        Returns False (cache untouched) when the session isn't ready.
        Provider errors propagate.
        """
        if not self.session.is_ready:
            return False

        async with self._refresh_lock:
            try:
                conversations = await self.session.get_conversations()
            except SessionNotReadyError:
                return False

            summaries = [
                ConversationSummary.from_provider(c)
                for c in conversations
                if c.server not in EXCLUDED_SERVERS
            ][: self.limit]
            self._snapshot = tuple(summaries)
            self.last_refreshed_at = time.time()

        logger.info(f"Cached {len(summaries)} chats")
        return True

    async def refresh_if_active(self) -> bool:
        """Timer body: refresh only if a client was recently active."""
        if not self.is_active():
            logger.debug("No recent client activity, skipping chat refresh")
            return False
        try:
            return await self.refresh()
        except Exception as e:
            logger.error(f"Chat refresh error: {e}")
            return False

    # ── Background loop ─────────────────────────────

    async def start(self) -> None:
        self._running = True
        self._loop_task = asyncio.create_task(self._refresh_loop())

    async def stop(self) -> None:
        self._running = False
        if self._loop_task and not self._loop_task.done():
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass

    async def _refresh_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.refresh_interval)
            await self.refresh_if_active()
