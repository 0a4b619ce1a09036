"""Tests for the JSON document store: self-healing load, atomic writes, legacy keys."""

import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest

from whatsched.errors import InvalidRequestError, StoreError
from whatsched.store import (
    DocumentStore,
    ScheduledMessage,
    SentMessageRecord,
    parse_timestamp,
    to_iso,
)


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "db.json"


def _read(path):
    return json.loads(path.read_text())


class TestLoad:
    """Load-or-initialize behaviour."""

    def test_missing_file_is_created(self, db_path):
        doc = DocumentStore(db_path).load()

        assert doc.messages == []
        assert doc.scheduled_messages == []
        assert _read(db_path) == {"sessions": [], "messages": [], "scheduledMessages": []}

    def test_missing_directory_is_created(self, tmp_path):
        path = tmp_path / "nested" / "dir" / "db.json"
        DocumentStore(path).load()
        assert path.exists()

    def test_missing_collection_is_repaired_and_persisted(self, db_path):
        db_path.write_text(json.dumps({
            "messages": [{"id": "m1", "conversationId": "1@c.us", "content": "hi",
                          "sentAt": "2024-01-01T00:00:00.000Z"}],
        }))

        doc = DocumentStore(db_path).load()

        assert doc.scheduled_messages == []
        assert [m.id for m in doc.messages] == ["m1"]
        on_disk = _read(db_path)
        assert on_disk["scheduledMessages"] == []
        assert on_disk["sessions"] == []
        assert on_disk["messages"][0]["id"] == "m1"

    @pytest.mark.parametrize("content", ["", "   \n", "{not json", "[1, 2, 3]", "null"])
    def test_unusable_content_is_reset(self, db_path, content):
        db_path.write_text(content)

        doc = DocumentStore(db_path).load()

        assert doc.scheduled_messages == []
        assert _read(db_path)["scheduledMessages"] == []

    def test_malformed_collection_is_reset(self, db_path):
        db_path.write_text(json.dumps({
            "messages": [], "sessions": [], "scheduledMessages": {"oops": True},
        }))
        doc = DocumentStore(db_path).load()
        assert doc.scheduled_messages == []
        assert _read(db_path)["scheduledMessages"] == []

    def test_non_object_entries_are_dropped(self, db_path):
        db_path.write_text(json.dumps({
            "messages": [], "sessions": [],
            "scheduledMessages": ["junk", {"id": "s1", "conversationId": "1@c.us",
                                           "content": "x", "sendAt": "2024-01-01T00:00:00Z"}],
        }))
        doc = DocumentStore(db_path).load()
        assert [s.id for s in doc.scheduled_messages] == ["s1"]
        assert len(_read(db_path)["scheduledMessages"]) == 1

    def test_valid_file_is_not_rewritten(self, db_path):
        original = json.dumps({"sessions": [], "messages": [], "scheduledMessages": []})
        db_path.write_text(original)

        DocumentStore(db_path).load()

        assert db_path.read_text() == original

    def test_unwritable_location_raises_store_error(self, tmp_path):
        # A directory where the file should be: unreadable, and can't be replaced
        path = tmp_path / "db.json"
        path.mkdir()
        with pytest.raises(StoreError):
            DocumentStore(path).load()


class TestLegacyRecords:
    """Files written by the previous service."""

    def test_legacy_scheduled_keys(self, db_path):
        db_path.write_text(json.dumps({
            "messages": [], "sessions": [],
            "scheduledMessages": [{"chatId": "123@c.us", "content": "hello",
                                   "sendAt": "2024-05-01T10:00:00.000Z",
                                   "sent": False, "error": "timeout"}],
        }))

        entry = DocumentStore(db_path).load().scheduled_messages[0]

        assert entry.conversation_id == "123@c.us"
        assert entry.last_error == "timeout"
        assert entry.id

    def test_generated_ids_are_stable_across_loads(self, db_path):
        db_path.write_text(json.dumps({
            "messages": [], "sessions": [],
            "scheduledMessages": [{"chatId": "123@c.us", "content": "hello",
                                   "sendAt": "2024-05-01T10:00:00.000Z"}],
        }))
        store = DocumentStore(db_path)

        first = store.load().scheduled_messages[0].id
        second = store.load().scheduled_messages[0].id

        assert first == second
        on_disk = _read(db_path)["scheduledMessages"][0]
        assert on_disk["id"] == first
        assert on_disk["conversationId"] == "123@c.us"
        assert "chatId" not in on_disk

    def test_unknown_keys_are_preserved(self):
        entry = ScheduledMessage.from_dict({
            "id": "s1", "conversationId": "1@c.us", "content": "x",
            "sendAt": "2024-01-01T00:00:00Z", "label": "birthday",
        })
        assert entry.to_dict()["label"] == "birthday"

    def test_legacy_message_keys(self):
        record = SentMessageRecord.from_dict({
            "id": "m1", "chatId": "1@c.us", "content": "x",
            "timestamp": "2024-01-01T00:00:00Z",
        })
        assert record.conversation_id == "1@c.us"
        assert record.sent_at == "2024-01-01T00:00:00Z"
        assert record.direction == "outbound"


class TestTransaction:
    """Serialized read-modify-write."""

    def test_changes_are_written(self, db_path):
        store = DocumentStore(db_path)

        async def run():
            async with store.transaction() as doc:
                doc.scheduled_messages.append(
                    ScheduledMessage("1@c.us", "hi", "2024-01-01T00:00:00.000Z"))

        asyncio.run(run())
        assert len(_read(db_path)["scheduledMessages"]) == 1

    def test_changes_are_discarded_on_error(self, db_path):
        store = DocumentStore(db_path)
        store.load()

        async def run():
            async with store.transaction() as doc:
                doc.scheduled_messages.append(
                    ScheduledMessage("1@c.us", "hi", "2024-01-01T00:00:00.000Z"))
                raise RuntimeError("abort")

        with pytest.raises(RuntimeError):
            asyncio.run(run())
        assert _read(db_path)["scheduledMessages"] == []

    def test_concurrent_appends_are_not_lost(self, db_path):
        store = DocumentStore(db_path)

        async def add(i):
            async with store.transaction() as doc:
                await asyncio.sleep(0)
                doc.scheduled_messages.append(
                    ScheduledMessage("1@c.us", f"m{i}", "2024-01-01T00:00:00.000Z"))

        async def run():
            await asyncio.gather(*(add(i) for i in range(10)))

        asyncio.run(run())
        assert len(_read(db_path)["scheduledMessages"]) == 10

    def test_no_temp_file_left_behind(self, db_path):
        DocumentStore(db_path).load()
        assert list(db_path.parent.glob("*.tmp")) == []


class TestTimestamps:
    """ISO-8601 parsing and formatting."""

    def test_z_suffix_round_trip(self):
        dt = parse_timestamp("2024-03-01T12:30:00.250Z")
        assert dt == datetime(2024, 3, 1, 12, 30, 0, 250000, tzinfo=timezone.utc)
        assert to_iso(dt) == "2024-03-01T12:30:00.250Z"

    def test_naive_is_utc(self):
        assert parse_timestamp("2024-03-01T12:30:00").tzinfo == timezone.utc

    def test_offsets_are_normalized(self):
        dt = parse_timestamp("2024-03-01T14:30:00+02:00")
        assert to_iso(dt) == "2024-03-01T12:30:00.000Z"

    @pytest.mark.parametrize("value", ["", "tomorrow", None, 12345, "0001-01-01T00:00:00+01:00"])
    def test_malformed_raises(self, value):
        with pytest.raises(InvalidRequestError):
            parse_timestamp(value)

    def test_unparseable_send_at_is_never_due(self):
        entry = ScheduledMessage("1@c.us", "x", "not-a-date")
        assert entry.is_due(datetime.now(timezone.utc)) is False

    def test_due_boundary(self):
        now = datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert ScheduledMessage("1@c.us", "x", to_iso(now)).is_due(now)
        assert not ScheduledMessage("1@c.us", "x", to_iso(now + timedelta(seconds=1))).is_due(now)
