"""Tests for the Green API provider, against an httpx.MockTransport."""

import asyncio
import json

import httpx
import pytest

from whatsched.errors import ProviderPermanentError, ProviderTransientError
from whatsched.provider import GreenAPIProvider, LifecycleEvent, normalize_chat_id

BASE = "https://api.green-api.com/waInstance1101/"


class GreenAPIStub:
    """Routes Green API calls by method name. `states` is consumed one per poll."""

    def __init__(self, states=("authorized",)):
        self.states = list(states)
        self.qr = "iVBORw0KGgo="
        self.chats = []
        self.send_response = (200, {"idMessage": "BAE5F4886F6F2D05"})
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        method = request.url.path.split("/")[2]
        if method == "getStateInstance":
            state = self.states.pop(0) if len(self.states) > 1 else self.states[0]
            if state == "error":
                return httpx.Response(503, text="unavailable")
            return httpx.Response(200, json={"stateInstance": state})
        if method == "qr":
            return httpx.Response(200, json={"type": "qrCode", "message": self.qr})
        if method == "getChats":
            return httpx.Response(200, json=self.chats)
        if method == "sendMessage":
            status, body = self.send_response
            return httpx.Response(status, json=body)
        return httpx.Response(404, json={"error": "unknown method"})


def _provider(stub, poll_interval=60.0):
    provider = GreenAPIProvider(
        instance_id="1101",
        api_token="secret-token",
        poll_interval=poll_interval,
        transport=httpx.MockTransport(stub),
    )
    events = []
    provider.set_event_handler(lambda event, payload: events.append((event, payload)))
    return provider, events


class TestStart:
    """State polling -> lifecycle events."""

    def test_authorized_emits_authenticated_then_ready(self):
        provider, events = _provider(GreenAPIStub(["authorized"]))

        async def run():
            await provider.start()
            await provider.destroy()

        asyncio.run(run())
        assert [e for e, _ in events] == [LifecycleEvent.AUTHENTICATED, LifecycleEvent.READY]

    def test_not_authorized_emits_qr_challenge(self):
        stub = GreenAPIStub(["notAuthorized"])
        provider, events = _provider(stub)

        async def run():
            await provider.start()
            await provider.destroy()

        asyncio.run(run())
        assert events == [(LifecycleEvent.CHALLENGE,
                           {"image": "data:image/png;base64,iVBORw0KGgo="})]

    def test_same_qr_is_not_reissued(self):
        stub = GreenAPIStub(["notAuthorized"])
        provider, events = _provider(stub, poll_interval=0.01)

        async def run():
            await provider.start()
            await asyncio.sleep(0.05)
            stub.qr = "bmV3LXFy"
            await asyncio.sleep(0.05)
            await provider.destroy()

        asyncio.run(run())
        images = [p["image"] for e, p in events if e == LifecycleEvent.CHALLENGE]
        assert images == ["data:image/png;base64,iVBORw0KGgo=", "data:image/png;base64,bmV3LXFy"]

    def test_scan_completes_link(self):
        stub = GreenAPIStub(["notAuthorized", "notAuthorized", "authorized"])
        provider, events = _provider(stub, poll_interval=0.01)

        async def run():
            await provider.start()
            await asyncio.sleep(0.1)
            await provider.destroy()

        asyncio.run(run())
        assert [e for e, _ in events] == [
            LifecycleEvent.CHALLENGE, LifecycleEvent.AUTHENTICATED, LifecycleEvent.READY]

    def test_blocked_is_auth_failure(self):
        provider, events = _provider(GreenAPIStub(["blocked"]))

        async def run():
            await provider.start()
            await provider.destroy()

        asyncio.run(run())
        assert events == [(LifecycleEvent.AUTH_FAILED, {"reason": "instance blocked"})]

    def test_logout_is_disconnect(self):
        stub = GreenAPIStub(["authorized", "notAuthorized"])
        provider, events = _provider(stub, poll_interval=0.01)

        async def run():
            await provider.start()
            await asyncio.sleep(0.1)
            await provider.destroy()

        asyncio.run(run())
        kinds = [e for e, _ in events]
        assert kinds == [LifecycleEvent.AUTHENTICATED, LifecycleEvent.READY,
                         LifecycleEvent.DISCONNECTED]

    def test_repeated_poll_failures_while_linked_disconnect(self):
        stub = GreenAPIStub(["authorized", "error"])
        provider, events = _provider(stub, poll_interval=0.01)

        async def run():
            await provider.start()
            await asyncio.sleep(0.15)
            await provider.destroy()

        asyncio.run(run())
        kinds = [e for e, _ in events]
        assert kinds.count(LifecycleEvent.DISCONNECTED) == 1
        assert kinds[-1] == LifecycleEvent.DISCONNECTED

    def test_unconfigured_instance_fails_auth(self):
        provider = GreenAPIProvider()
        events = []
        provider.set_event_handler(lambda event, payload: events.append(event))

        asyncio.run(provider.start())
        assert events == [LifecycleEvent.AUTH_FAILED]

    def test_first_poll_error_reaches_caller(self):
        provider, _ = _provider(GreenAPIStub(["error"]))

        async def run():
            try:
                await provider.start()
            finally:
                await provider.destroy()

        with pytest.raises(ProviderTransientError):
            asyncio.run(run())


class TestOperations:
    """sendMessage / getChats."""

    def test_send_posts_normalized_chat_id(self):
        stub = GreenAPIStub()
        provider, _ = _provider(stub)

        async def run():
            message_id = await provider.send("+1 (234) 567-890", "hello")
            await provider.destroy()
            return message_id

        assert asyncio.run(run()) == "BAE5F4886F6F2D05"
        request = stub.requests[-1]
        assert str(request.url) == BASE + "sendMessage/secret-token"
        assert json.loads(request.content) == {"chatId": "1234567890@c.us", "message": "hello"}

    @pytest.mark.parametrize("status,error", [
        (500, ProviderTransientError),
        (502, ProviderTransientError),
        (429, ProviderTransientError),
        (400, ProviderPermanentError),
        (401, ProviderPermanentError),
    ])
    def test_http_errors_are_classified(self, status, error):
        stub = GreenAPIStub()
        stub.send_response = (status, {"message": "nope"})
        provider, _ = _provider(stub)

        with pytest.raises(error):
            asyncio.run(provider.send("1@c.us", "hello"))

    def test_missing_message_id_is_permanent(self):
        stub = GreenAPIStub()
        stub.send_response = (200, {})
        provider, _ = _provider(stub)

        with pytest.raises(ProviderPermanentError):
            asyncio.run(provider.send("1@c.us", "hello"))

    def test_network_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        provider = GreenAPIProvider(
            instance_id="1101", api_token="t", transport=httpx.MockTransport(handler))

        with pytest.raises(ProviderTransientError) as exc_info:
            asyncio.run(provider.send("1@c.us", "hello"))
        assert exc_info.value.transient is True

    def test_get_conversations(self):
        stub = GreenAPIStub()
        stub.chats = [
            {"id": "1@c.us", "name": "Alice", "unreadCount": 2},
            {"id": "120363@g.us", "name": "Team"},
            {"name": "no id"},
        ]
        provider, _ = _provider(stub)

        async def run():
            chats = await provider.get_conversations()
            await provider.destroy()
            return chats

        chats = asyncio.run(run())
        assert [(c.id, c.name, c.is_group, c.unread_count) for c in chats] == [
            ("1@c.us", "Alice", False, 2),
            ("120363@g.us", "Team", True, 0),
        ]


class TestChatIds:
    def test_normalize(self):
        assert normalize_chat_id("1234567890") == "1234567890@c.us"
        assert normalize_chat_id("+49 151-234") == "49151234@c.us"
        assert normalize_chat_id("120363@g.us") == "120363@g.us"
