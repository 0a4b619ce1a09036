"""Shared fixtures: a scriptable in-memory provider and a recording broadcaster."""

import asyncio
from typing import Any, Awaitable, Callable

import pytest

from whatsched.broadcast import Broadcaster
from whatsched.config import reset_settings
from whatsched.provider import LifecycleEvent, ProviderConversation, SessionProvider


class FakeProvider(SessionProvider):
    """Provider double.

    start() emits `script` in order (default: authenticated, ready).
    send() raises the next exception queued in `send_errors`, if any;
    otherwise it records the message and then awaits `on_send`.
    """

    def __init__(self, script=None, conversations=None):
        super().__init__()
        self.script: list[tuple[LifecycleEvent, dict[str, Any]]] = (
            script if script is not None
            else [(LifecycleEvent.AUTHENTICATED, {}), (LifecycleEvent.READY, {})]
        )
        self.conversations: list[ProviderConversation] = conversations or []
        self.start_delay = 0.0
        self.start_error: Exception | None = None
        self.send_errors: list[Exception] = []
        self.on_send: Callable[[], Awaitable[Any]] | None = None

        self.start_calls = 0
        self.destroyed = False
        self.sent: list[tuple[str, str]] = []

    async def start(self) -> None:
        self.start_calls += 1
        if self.start_delay:
            await asyncio.sleep(self.start_delay)
        if self.start_error is not None:
            raise self.start_error
        for event, payload in self.script:
            self.emit(event, **payload)

    async def get_conversations(self) -> list[ProviderConversation]:
        return list(self.conversations)

    async def send(self, conversation_id: str, content: str) -> str:
        if self.send_errors:
            raise self.send_errors.pop(0)
        self.sent.append((conversation_id, content))
        message_id = f"msg-{len(self.sent)}"
        if self.on_send is not None:
            await self.on_send()
        return message_id

    async def destroy(self) -> None:
        self.destroyed = True


class RecordingBroadcaster(Broadcaster):
    """Keeps every published (event, payload) pair."""

    def __init__(self):
        self.events: list[tuple[str, dict[str, Any]]] = []

    def publish(self, event: str, payload: dict[str, Any]) -> None:
        self.events.append((event, payload))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]

    def of(self, event: str) -> list[dict[str, Any]]:
        return [payload for name, payload in self.events if name == event]


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def broadcaster():
    return RecordingBroadcaster()


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Point WHATSCHED_DATA_DIR at a temp dir so nothing touches ~/.whatsched."""
    data_dir = tmp_path / "data"
    monkeypatch.setenv("WHATSCHED_DATA_DIR", str(data_dir))
    for var in ("WHATSCHED_GREEN_API_INSTANCE_ID", "WHATSCHED_GREEN_API_TOKEN",
                "WHATSCHED_STORE_FILE", "WHATSCHED_PORT", "WHATSCHED_HOST"):
        monkeypatch.delenv(var, raising=False)
    reset_settings()
    yield data_dir
    reset_settings()


@pytest.fixture
def make_provider():
    """The FakeProvider class, for tests that need a custom script."""
    return FakeProvider
