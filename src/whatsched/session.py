"""Session lifecycle manager.

Owns the one provider handle and turns provider events into a small state
machine:

    Uninitialized ──ensure_started()──> Starting
    Starting / AwaitingChallenge ──challenge──> AwaitingChallenge
    Starting / AwaitingChallenge ──authenticated──> Authenticated
    Authenticated / Starting ──ready──> Ready
    (anything linked) ──auth-failed──> Failed        (stays there until restart())
    (anything but Failed) ──disconnected──> Disconnected ──5s──> Starting

Rules the rest of the code relies on:
- Exactly one provider handle per process. It's built lazily on the first
  start and reused for every reconnect; concurrent ensure_started() calls
  share the same in-flight start.
- Every provider call (start, list chats, send) runs under one lock, since
  the provider session isn't safe for parallel protocol operations.
- Only provider lifecycle events move the state. A failed send is the
  caller's problem, not a transition.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Coroutine

from whatsched.broadcast import Broadcaster
from whatsched.errors import SessionNotReadyError
from whatsched.provider import LifecycleEvent, ProviderConversation, SessionProvider

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    STARTING = "starting"
    AWAITING_CHALLENGE = "awaiting_challenge"
    AUTHENTICATED = "authenticated"
    READY = "ready"
    FAILED = "failed"
    DISCONNECTED = "disconnected"


_LINKING = frozenset({
    SessionState.STARTING,
    SessionState.AWAITING_CHALLENGE,
    SessionState.AUTHENTICATED,
    SessionState.READY,
})

# event -> (states it may arrive in, resulting state)
_TRANSITIONS: dict[LifecycleEvent, tuple[frozenset[SessionState], SessionState]] = {
    LifecycleEvent.CHALLENGE: (
        frozenset({SessionState.STARTING, SessionState.AWAITING_CHALLENGE}),
        SessionState.AWAITING_CHALLENGE,
    ),
    LifecycleEvent.AUTHENTICATED: (
        frozenset({SessionState.STARTING, SessionState.AWAITING_CHALLENGE}),
        SessionState.AUTHENTICATED,
    ),
    LifecycleEvent.READY: (
        frozenset({SessionState.STARTING, SessionState.AUTHENTICATED}),
        SessionState.READY,
    ),
    LifecycleEvent.AUTH_FAILED: (_LINKING, SessionState.FAILED),
    LifecycleEvent.DISCONNECTED: (
        _LINKING | {SessionState.DISCONNECTED},
        SessionState.DISCONNECTED,
    ),
}


@dataclass
class SessionStatus:
    """Process-wide session state, shared by reference with cache and engine."""
    state: SessionState = SessionState.UNINITIALIZED
    challenge: str | None = None  # data URL of the current QR code
    ever_ready: bool = False
    reason: str | None = None
    changed_at: float = field(default_factory=time.time)

    @property
    def is_ready(self) -> bool:
        return self.state == SessionState.READY

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "ready": self.is_ready,
            "hasQr": self.challenge is not None,
            "everReady": self.ever_ready,
            "reason": self.reason,
            "changedAt": self.changed_at,
        }


ProviderFactory = Callable[[], SessionProvider]
ReadyListener = Callable[[], Awaitable[Any]]


class SessionManager:
    """Single-session lifecycle owner.

    Usage:
        manager = SessionManager(lambda: GreenAPIProvider(...), hub)
        manager.add_ready_listener(cache.refresh)
        await manager.ensure_started()
        ...
        message_id = await manager.send("1234567890@c.us", "hi")
    """

    def __init__(
        self,
        provider_factory: ProviderFactory,
        broadcaster: Broadcaster,
        reconnect_delay: float = 5.0,
    ):
        self.broadcaster = broadcaster
        self.reconnect_delay = reconnect_delay
        self.status = SessionStatus()
        self.handles_created = 0

        self._provider_factory = provider_factory
        self._provider: SessionProvider | None = None
        self._provider_lock = asyncio.Lock()
        self._start_task: asyncio.Task | None = None
        self._reconnect_handle: asyncio.TimerHandle | None = None
        self._ready_listeners: list[ReadyListener] = []
        self._background: set[asyncio.Task] = set()

    # ── State accessors ─────────────────────────────

    @property
    def state(self) -> SessionState:
        return self.status.state

    @property
    def is_ready(self) -> bool:
        return self.status.is_ready

    @property
    def current_challenge(self) -> str | None:
        return self.status.challenge

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_handle is not None

    def add_ready_listener(self, listener: ReadyListener) -> None:
        """Run `listener` (fire-and-forget) every time the session becomes ready."""
        self._ready_listeners.append(listener)

    # ── Starting ────────────────────────────────────

    async def ensure_started(self) -> None:
        """Start the session unless it's already started or starting.

        A call made while a start is in flight waits on that same start.
        No-op in Failed (use restart()) and in any linked state.
        """
        if self._start_task is not None and not self._start_task.done():
            await asyncio.shield(self._start_task)
            return

        if self.status.state not in (SessionState.UNINITIALIZED, SessionState.DISCONNECTED):
            return

        await asyncio.shield(self._begin_start())

    async def restart(self) -> None:
        """Explicit restart: the only way out of Failed."""
        if self._start_task is not None and not self._start_task.done():
            await asyncio.shield(self._start_task)
            return
        logger.info(f"Restarting session from state {self.status.state.value}")
        await asyncio.shield(self._begin_start())

    def _begin_start(self) -> asyncio.Task:
        self._cancel_reconnect()
        self.status.challenge = None
        self._set_state(SessionState.STARTING)
        self._start_task = asyncio.create_task(self._start())
        return self._start_task

    async def _start(self) -> None:
        if self._provider is None:
            self._provider = self._provider_factory()
            self.handles_created += 1
            self._provider.set_event_handler(self.handle_event)

        try:
            async with self._provider_lock:
                await self._provider.start()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Session start failed: {e}")
            self.handle_event(LifecycleEvent.DISCONNECTED, {"reason": str(e)})

    # ── Event dispatch ──────────────────────────────

    def handle_event(self, event: LifecycleEvent, payload: dict[str, Any] | None = None) -> None:
        """Single entry point for provider lifecycle events."""
        payload = payload or {}
        allowed, target = _TRANSITIONS[event]
        current = self.status.state
        if current not in allowed:
            logger.warning(f"Ignoring '{event.value}' in state {current.value}")
            return

        reason = payload.get("reason")

        if event == LifecycleEvent.CHALLENGE:
            self.status.challenge = payload.get("image")
            self._set_state(target)
            logger.info("QR code generated")
            self.broadcaster.publish("challenge-issued", {"image": self.status.challenge})
            self._publish_status("Scan the QR code with WhatsApp", "info")

        elif event == LifecycleEvent.AUTHENTICATED:
            self._set_state(target)
            logger.info("Authenticated successfully")
            self._publish_status("Authentication successful", "success")

        elif event == LifecycleEvent.READY:
            self.status.challenge = None
            self.status.ever_ready = True
            self._set_state(target)
            logger.info("WhatsApp session ready")
            self.broadcaster.publish("ready", {"message": "WhatsApp is ready!"})
            for listener in self._ready_listeners:
                self._spawn(self._run_listener(listener))

        elif event == LifecycleEvent.AUTH_FAILED:
            self.status.challenge = None
            self._set_state(target, reason)
            logger.error(f"Auth failure: {reason or 'unknown'}")
            self._publish_status("Authentication failed. Please rescan the QR code.", "error")

        elif event == LifecycleEvent.DISCONNECTED:
            self.status.challenge = None
            self._set_state(target, reason)
            logger.warning(
                f"Disconnected ({reason or 'no reason given'}), "
                f"reconnecting in {self.reconnect_delay}s")
            self._publish_status("Disconnected. Reinitializing...", "warning")
            self._schedule_reconnect()

    def _set_state(self, state: SessionState, reason: str | None = None) -> None:
        self.status.state = state
        self.status.reason = reason
        self.status.changed_at = time.time()

    def _publish_status(self, message: str, type_: str) -> None:
        self.broadcaster.publish("status", {"message": message, "type": type_})

    # ── Reconnect timer ─────────────────────────────

    def _schedule_reconnect(self) -> None:
        self._cancel_reconnect()
        loop = asyncio.get_running_loop()
        self._reconnect_handle = loop.call_later(self.reconnect_delay, self._fire_reconnect)

    def _fire_reconnect(self) -> None:
        self._reconnect_handle = None
        self._spawn(self.ensure_started())

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    # ── Provider operations ─────────────────────────

    def _require_ready(self) -> SessionProvider:
        if not self.is_ready or self._provider is None:
            raise SessionNotReadyError()
        return self._provider

    async def send(self, conversation_id: str, content: str) -> str:
        """Send through the provider. Returns the provider message id.

        Raises SessionNotReadyError, or whatever ProviderError the provider
        raised.
        """
        provider = self._require_ready()
        async with self._provider_lock:
            # State may have moved while we queued for the lock
            if not self.is_ready:
                raise SessionNotReadyError()
            return await provider.send(conversation_id, content)

    async def get_conversations(self) -> list[ProviderConversation]:
        provider = self._require_ready()
        async with self._provider_lock:
            if not self.is_ready:
                raise SessionNotReadyError()
            return await provider.get_conversations()

    # ── Background tasks / shutdown ─────────────────

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Session background task failed: {task.exception()}")

    @staticmethod
    async def _run_listener(listener: ReadyListener) -> None:
        try:
            await listener()
        except Exception as e:
            logger.error(f"Ready listener failed: {e}")

    async def shutdown(self) -> None:
        """Cancel timers and pending work, then destroy the provider."""
        self._cancel_reconnect()

        pending = list(self._background)
        if self._start_task is not None and not self._start_task.done():
            pending.append(self._start_task)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        if self._provider is not None:
            try:
                await self._provider.destroy()
            except Exception as e:
                logger.error(f"Provider shutdown failed: {e}")

        self.status.challenge = None
        self._set_state(SessionState.UNINITIALIZED, "shutdown")
        logger.info("Session shut down")
