"""Service facade: one object the web layer and CLI talk to.

Wires the store, broadcaster, session manager, conversation cache and
delivery engine together, runs their background loops, and records
client activity (which keeps the chat cache refreshing).

Usage:
    service = WhatschedService()
    await service.start()
    await service.send_message("1234567890@c.us", "hello")
    await service.stop()
"""

import asyncio
import logging
from datetime import datetime
from typing import Any

from whatsched.broadcast import Broadcaster, WebSocketHub
from whatsched.cache import ConversationCache
from whatsched.config import Settings, get_settings
from whatsched.delivery import DeliveryEngine, require_text
from whatsched.errors import SessionNotReadyError
from whatsched.provider import GreenAPIProvider
from whatsched.session import ProviderFactory, SessionManager
from whatsched.store import (
    DocumentStore,
    ScheduledMessage,
    SentMessageRecord,
    to_iso,
    utc_now,
)

logger = logging.getLogger(__name__)


class WhatschedService:
    """The running whatsched core."""

    def __init__(
        self,
        settings: Settings | None = None,
        provider_factory: ProviderFactory | None = None,
        broadcaster: Broadcaster | None = None,
        store: DocumentStore | None = None,
    ):
        self.settings = settings or get_settings()
        self.broadcaster = broadcaster or WebSocketHub()
        self.store = store or DocumentStore(self.settings.store_path)

        factory = provider_factory or (
            lambda: GreenAPIProvider.from_config(self.settings.green_api))
        self.session = SessionManager(
            factory,
            self.broadcaster,
            reconnect_delay=self.settings.reconnect_delay_s,
        )
        self.cache = ConversationCache(
            self.session,
            limit=self.settings.conversation_limit,
            refresh_interval=self.settings.cache_refresh_interval_s,
            activity_window=self.settings.activity_window_s,
        )
        self.delivery = DeliveryEngine(
            self.store,
            self.session,
            self.broadcaster,
            interval=self.settings.delivery_interval_s,
        )
        self.session.add_ready_listener(self.cache.refresh)

        self._running = False
        self._boot_task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._running

    # ── Lifecycle ───────────────────────────────────

    async def start(self) -> None:
        """Load the store, start the loops, kick off the session.

        A store that can't be initialized raises StoreError; everything
        else (including a provider that can't connect) is non-fatal.
        """
        doc = self.store.load()
        logger.info(
            f"Store loaded from {self.store.path}: {len(doc.messages)} messages, "
            f"{len(doc.scheduled_messages)} scheduled")

        await self.cache.start()
        await self.delivery.start()
        self._boot_task = asyncio.create_task(self.session.ensure_started())
        self._running = True
        logger.info("whatsched service started")

    async def stop(self) -> None:
        self._running = False
        await self.delivery.stop()
        await self.cache.stop()
        if self._boot_task and not self._boot_task.done():
            self._boot_task.cancel()
            try:
                await self._boot_task
            except asyncio.CancelledError:
                pass
        await self.session.shutdown()
        logger.info("whatsched service stopped")

    # ── Client operations ───────────────────────────

    def health(self) -> dict[str, Any]:
        return {
            "status": "connected" if self.session.is_ready else "disconnected",
            "state": self.session.state.value,
            "hasQr": self.session.current_challenge is not None,
            "observers": getattr(self.broadcaster, "connection_count", None),
            "timestamp": to_iso(utc_now()),
        }

    def list_conversations(self) -> list[dict[str, Any]]:
        self.cache.touch()
        if not self.session.is_ready:
            raise SessionNotReadyError()
        return [c.to_dict() for c in self.cache.get()]

    async def send_message(self, conversation_id: str, content: str) -> SentMessageRecord:
        """Send now, log it, tell observers. Provider errors propagate."""
        self.cache.touch()
        conversation_id = require_text(conversation_id, "conversation id").strip()
        content = require_text(content, "message content")

        message_id = await self.session.send(conversation_id, content)
        record = SentMessageRecord(
            id=message_id,
            conversation_id=conversation_id,
            content=content,
            sent_at=to_iso(utc_now()),
        )
        async with self.store.transaction() as doc:
            doc.messages.append(record)

        self.broadcaster.publish("new-message", {
            "id": record.id,
            "conversationId": record.conversation_id,
            "content": record.content,
            "timestamp": record.sent_at,
            "fromMe": True,
            "sender": "You",
            "type": "chat",
            "status": record.status,
        })
        return record

    async def schedule_message(
        self,
        conversation_id: str,
        content: str,
        send_at: datetime | str,
    ) -> ScheduledMessage:
        self.cache.touch()
        return await self.delivery.schedule(conversation_id, content, send_at)

    async def list_scheduled(self, pending_only: bool = False) -> list[ScheduledMessage]:
        self.cache.touch()
        return await self.delivery.list_scheduled(pending_only=pending_only)

    async def restart_session(self) -> None:
        self.cache.touch()
        await self.session.restart()

    def initial_events(self) -> list[tuple[str, dict[str, Any]]]:
        """Events replayed to an observer that connects mid-session."""
        if self.session.current_challenge:
            return [("challenge-issued", {"image": self.session.current_challenge})]
        if self.session.is_ready:
            return [("ready", {"message": "WhatsApp is ready!"})]
        return []


# ── Singleton ───────────────────────────────────────────

_service: WhatschedService | None = None


def get_service() -> WhatschedService:
    """Get the global service instance."""
    global _service
    if _service is None:
        _service = WhatschedService()
    return _service
