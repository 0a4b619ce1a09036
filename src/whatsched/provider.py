"""Session providers: the black box that actually talks to WhatsApp.

A provider owns the linked WhatsApp session. whatsched never speaks the
WhatsApp protocol itself; it drives a provider through four calls
(start, get_conversations, send, destroy) and listens to the lifecycle
events the provider emits:

    challenge-issued  -> a QR code to scan (payload: image)
    authenticated     -> the phone accepted the link
    ready             -> chats and sends are available
    auth-failed       -> the link is unusable, needs a human
    disconnected      -> the link dropped, worth retrying

Supports:
- WhatsApp via Green API (free tier, QR scan, plain HTTPS)

Setup:
    1. Go to https://green-api.com and create an instance
    2. Copy the Instance ID + API Token
    3. export WHATSCHED_GREEN_API_INSTANCE_ID=... WHATSCHED_GREEN_API_TOKEN=...
    4. whatsched serve, then scan the QR shown to WebSocket clients
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

import httpx

from whatsched.config import GreenAPIConfig
from whatsched.errors import (
    ProviderError,
    ProviderPermanentError,
    ProviderTransientError,
)

logger = logging.getLogger(__name__)


# ── Data Types ──────────────────────────────────────────

class LifecycleEvent(str, Enum):
    CHALLENGE = "challenge-issued"
    AUTHENTICATED = "authenticated"
    READY = "ready"
    AUTH_FAILED = "auth-failed"
    DISCONNECTED = "disconnected"


EventHandler = Callable[[LifecycleEvent, dict[str, Any]], None]


@dataclass
class ProviderConversation:
    """A chat as reported by the provider."""
    id: str                # e.g. 1234567890@c.us, 1203630...@g.us
    name: str = ""
    is_group: bool = False
    unread_count: int = 0

    @property
    def user(self) -> str:
        return self.id.split("@", 1)[0]

    @property
    def server(self) -> str:
        """Part after '@' (c.us, g.us, broadcast...)."""
        return self.id.rsplit("@", 1)[1] if "@" in self.id else ""


# ── Provider Base ───────────────────────────────────────

class SessionProvider(ABC):
    """Base class for session providers.

    Providers report lifecycle changes through the handler installed with
    set_event_handler(). Operation failures raise ProviderError.
    """

    def __init__(self) -> None:
        self._event_handler: EventHandler | None = None

    def set_event_handler(self, handler: EventHandler) -> None:
        self._event_handler = handler

    def emit(self, event: LifecycleEvent, **payload: Any) -> None:
        if self._event_handler is None:
            logger.debug(f"Dropping {event.value}: no event handler installed")
            return
        self._event_handler(event, payload)

    @abstractmethod
    async def start(self) -> None:
        """Begin (or resume) linking the session. Events follow over time."""
        ...

    @abstractmethod
    async def get_conversations(self) -> list[ProviderConversation]:
        ...

    @abstractmethod
    async def send(self, conversation_id: str, content: str) -> str:
        """Send a text message. Returns the provider's message id."""
        ...

    @abstractmethod
    async def destroy(self) -> None:
        """Release the session without logging it out."""
        ...


# ── WhatsApp (Green API) Provider ───────────────────────

def normalize_chat_id(chat_id: str) -> str:
    """Green API wants 1234567890@c.us (personal) or ...@g.us (group)."""
    if "@" in chat_id:
        return chat_id
    digits = "".join(c for c in chat_id if c.isdigit())
    return f"{digits}@c.us"


class GreenAPIProvider(SessionProvider):
    """WhatsApp session through the Green API HTTP bridge.

    How it works:
    - getStateInstance is polled every poll_interval seconds
    - while notAuthorized, the qr endpoint yields a PNG which is emitted
      as a challenge (only when it changes)
    - the first 'authorized' emits authenticated + ready
    - 'blocked' is an auth failure; losing 'authorized' or repeated
      transport errors while linked is a disconnect

    Once it has emitted disconnected or auth-failed the watcher stops;
    the session manager decides whether to call start() again.
    """

    API_BASE = "{api_url}/waInstance{instance_id}"
    MAX_POLL_FAILURES = 3

    def __init__(
        self,
        instance_id: str = "",
        api_token: str = "",
        api_url: str = "https://api.green-api.com",
        poll_interval: float = 5.0,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__()
        self.instance_id = instance_id
        self.api_token = api_token
        self.base_url = api_url.rstrip("/")
        self.poll_interval = poll_interval
        self.timeout = timeout
        self._transport = transport
        self._http: httpx.AsyncClient | None = None
        self._watch_task: asyncio.Task | None = None
        self._authorized = False
        self._last_qr: str | None = None

    @classmethod
    def from_config(cls, config: GreenAPIConfig) -> "GreenAPIProvider":
        return cls(
            instance_id=config.instance_id,
            api_token=config.api_token,
            api_url=config.api_url,
            poll_interval=config.poll_interval_s,
            timeout=config.timeout_s,
        )

    @property
    def api_url(self) -> str:
        return self.API_BASE.format(api_url=self.base_url, instance_id=self.instance_id)

    def is_configured(self) -> bool:
        return bool(self.instance_id and self.api_token)

    async def _client(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._http

    async def _api_call(self, method: str, data: dict | None = None) -> Any:
        """Make a Green API call, classifying failures."""
        client = await self._client()
        url = f"{self.api_url}/{method}/{self.api_token}"
        try:
            if data is not None:
                resp = await client.post(url, json=data)
            else:
                resp = await client.get(url)
        except httpx.TimeoutException as e:
            raise ProviderTransientError(f"Green API {method} timed out") from e
        except httpx.HTTPError as e:
            raise ProviderTransientError(f"Green API {method} failed: {e}") from e

        if resp.status_code == 429 or resp.status_code >= 500:
            raise ProviderTransientError(
                f"Green API {method} unavailable ({resp.status_code})")
        if resp.status_code >= 400:
            raise ProviderPermanentError(
                f"Green API {method} rejected ({resp.status_code}): {resp.text[:200]}")
        try:
            return resp.json()
        except ValueError as e:
            raise ProviderPermanentError(f"Green API {method} returned invalid JSON") from e

    async def get_state(self) -> str:
        """Instance state: authorized, notAuthorized, blocked, starting, sleepMode..."""
        result = await self._api_call("getStateInstance")
        if isinstance(result, dict):
            return str(result.get("stateInstance", ""))
        return ""

    async def get_qr(self) -> str | None:
        """Current pairing QR as a data URL, or None if there isn't one."""
        result = await self._api_call("qr")
        if isinstance(result, dict) and result.get("type") == "qrCode" and result.get("message"):
            return f"data:image/png;base64,{result['message']}"
        return None

    # ── Lifecycle ───────────────────────────────────

    async def start(self) -> None:
        if not self.is_configured():
            self.emit(LifecycleEvent.AUTH_FAILED,
                      reason="Green API instance id / token not configured")
            return

        await self._stop_watch()
        self._authorized = False
        self._last_qr = None

        # First check runs inline so transport errors reach the caller
        if await self._check_state():
            self._watch_task = asyncio.create_task(self._watch())

    async def _check_state(self) -> bool:
        """Poll once and emit events. Returns False when watching should stop."""
        state = await self.get_state()

        if state == "authorized":
            if not self._authorized:
                self._authorized = True
                self._last_qr = None
                self.emit(LifecycleEvent.AUTHENTICATED)
                self.emit(LifecycleEvent.READY)
            return True

        if state == "notAuthorized":
            if self._authorized:
                self._authorized = False
                self.emit(LifecycleEvent.DISCONNECTED, reason="logged out from phone")
                return False
            qr = await self.get_qr()
            if qr and qr != self._last_qr:
                self._last_qr = qr
                self.emit(LifecycleEvent.CHALLENGE, image=qr)
            return True

        if state == "blocked":
            self._authorized = False
            self.emit(LifecycleEvent.AUTH_FAILED, reason="instance blocked")
            return False

        logger.debug(f"Green API instance state: {state or 'unknown'}")
        return True

    async def _watch(self) -> None:
        consecutive_errors = 0
        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                keep_going = await self._check_state()
                consecutive_errors = 0
            except asyncio.CancelledError:
                raise
            except ProviderError as e:
                consecutive_errors += 1
                logger.warning(
                    f"Green API state poll failed ({consecutive_errors}/{self.MAX_POLL_FAILURES}): {e}")
                if self._authorized and consecutive_errors >= self.MAX_POLL_FAILURES:
                    self._authorized = False
                    self.emit(LifecycleEvent.DISCONNECTED, reason=str(e))
                    return
                continue
            if not keep_going:
                return

    async def _stop_watch(self) -> None:
        task = self._watch_task
        self._watch_task = None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    # ── Operations ──────────────────────────────────

    async def get_conversations(self) -> list[ProviderConversation]:
        result = await self._api_call("getChats")
        if not isinstance(result, list):
            raise ProviderPermanentError(f"Unexpected getChats response: {result!r}"[:200])

        conversations = []
        for chat in result:
            if not isinstance(chat, dict) or not chat.get("id"):
                continue
            chat_id = str(chat["id"])
            conversations.append(ProviderConversation(
                id=chat_id,
                name=chat.get("name") or "",
                is_group=chat_id.endswith("@g.us"),
                unread_count=int(chat.get("unreadCount") or 0),
            ))
        return conversations

    async def send(self, conversation_id: str, content: str) -> str:
        result = await self._api_call("sendMessage", {
            "chatId": normalize_chat_id(conversation_id),
            "message": content,
        })
        message_id = result.get("idMessage") if isinstance(result, dict) else None
        if not message_id:
            raise ProviderPermanentError(f"Green API did not accept the message: {result!r}"[:200])
        return str(message_id)

    async def destroy(self) -> None:
        await self._stop_watch()
        self._authorized = False
        if self._http:
            await self._http.aclose()
            self._http = None
