"""Tests for the conversation read-append-trim-write cycle."""

import asyncio
import json

import pytest

from tutor_bot.context import ConversationContext, UserLocks
from tutor_bot.errors import StorageFailure
from tutor_bot.models import Conversation, Message
from tutor_bot.storage import DialogStore


def _conversation(user_id, texts):
    messages = [Message(role="user" if i % 2 == 0 else "model", text=t) for i, t in enumerate(texts)]
    return Conversation(user_id=user_id, display_name="alice", messages=messages, last_trim_at="2024-01-01T00:00:00+00:00")


def test_first_message_creates_conversation(tmp_path):
    store = DialogStore(str(tmp_path))
    ctx = ConversationContext(store)

    async def flow():
        conversation = await ctx.append_user_turn("1", "hello", "alice")
        assert store.load("1") is None  # nothing persisted yet
        ctx.append_model_turn(conversation, "hi there")
        await ctx.trim_and_persist(conversation)

    asyncio.run(flow())
    saved = store.load("1")
    assert saved.display_name == "alice"
    assert saved.messages == [Message("user", "hello"), Message("model", "hi there")]


def test_trim_keeps_most_recent_messages(tmp_path):
    store = DialogStore(str(tmp_path))
    store.save(_conversation("7", ["u1", "m1", "u2", "m2"]))
    ctx = ConversationContext(store, max_stored=4)

    async def flow():
        conversation = await ctx.append_user_turn("7", "u3")
        ctx.append_model_turn(conversation, "m3")
        return await ctx.trim_and_persist(conversation)

    trimmed = asyncio.run(flow())
    saved = store.load("7")
    assert trimmed is True
    assert [m.text for m in saved.messages] == ["u2", "m2", "u3", "m3"]
    assert saved.last_trim_at != "2024-01-01T00:00:00+00:00"


def test_persist_without_trim_keeps_trim_timestamp(tmp_path):
    store = DialogStore(str(tmp_path))
    store.save(_conversation("7", ["u1", "m1"]))
    ctx = ConversationContext(store, max_stored=10)

    async def flow():
        conversation = await ctx.append_user_turn("7", "u2")
        ctx.append_model_turn(conversation, "m2")
        return await ctx.trim_and_persist(conversation)

    assert asyncio.run(flow()) is False
    saved = store.load("7")
    assert len(saved.messages) == 4
    assert saved.last_trim_at == "2024-01-01T00:00:00+00:00"


def test_stored_length_never_exceeds_bound(tmp_path):
    store = DialogStore(str(tmp_path))
    ctx = ConversationContext(store, max_stored=5)

    async def flow():
        for i in range(12):
            conversation = await ctx.append_user_turn("9", f"u{i}")
            ctx.append_model_turn(conversation, f"m{i}")
            await ctx.trim_and_persist(conversation)
            assert len(store.load("9").messages) <= 5

    asyncio.run(flow())
    assert [m.text for m in store.load("9").messages] == ["m9", "u10", "m10", "u11", "m11"]


def test_window_for_model(tmp_path):
    ctx = ConversationContext(DialogStore(str(tmp_path)), max_context=3)
    conversation = _conversation("1", ["a", "b", "c", "d", "e"])

    assert [m.text for m in ctx.window_for_model(conversation)] == ["c", "d", "e"]
    assert [m.text for m in ctx.window_for_model(conversation, 10)] == ["a", "b", "c", "d", "e"]
    assert ctx.window_for_model(conversation, 0) == []


def test_clear_keeps_record(tmp_path):
    store = DialogStore(str(tmp_path))
    store.save(_conversation("5", ["a", "b"]))
    ctx = ConversationContext(store)

    assert asyncio.run(ctx.clear("5")) is True
    saved = store.load("5")
    assert saved is not None
    assert saved.messages == []
    assert saved.display_name == "alice"
    assert saved.last_trim_at != "2024-01-01T00:00:00+00:00"


def test_clear_unknown_user(tmp_path):
    ctx = ConversationContext(DialogStore(str(tmp_path)))
    assert asyncio.run(ctx.clear("404")) is False


def test_corrupt_dialog_raises_storage_failure(tmp_path):
    store = DialogStore(str(tmp_path))
    store.dialogs_dir.mkdir(parents=True)
    (store.dialogs_dir / "3.json").write_text("{not json", encoding="utf-8")
    ctx = ConversationContext(store)

    with pytest.raises(StorageFailure):
        asyncio.run(ctx.append_user_turn("3", "hi"))


def test_invalid_limits():
    with pytest.raises(ValueError):
        ConversationContext(DialogStore("unused"), max_context=0)


class TestUserLocks:
    """The per-user lock serialises handlers for the same user only."""

    def test_same_user_is_serialised(self):
        locks = UserLocks()
        events = []

        async def worker(name):
            async with locks.hold("u1"):
                events.append(f"{name}-in")
                await asyncio.sleep(0)
                await asyncio.sleep(0)
                events.append(f"{name}-out")

        async def main():
            await asyncio.gather(worker("a"), worker("b"))

        asyncio.run(main())
        assert events == ["a-in", "a-out", "b-in", "b-out"]
        assert len(locks) == 0

    def test_different_users_overlap(self):
        locks = UserLocks()
        events = []

        async def worker(user):
            async with locks.hold(user):
                events.append(f"{user}-in")
                await asyncio.sleep(0)
                events.append(f"{user}-out")

        async def main():
            await asyncio.gather(worker("u1"), worker("u2"))

        asyncio.run(main())
        assert events[:2] == ["u1-in", "u2-in"]


def test_saved_file_uses_dialog_format(tmp_path):
    store = DialogStore(str(tmp_path))
    store.save(_conversation("11", ["q", "a"]))
    data = json.loads((store.dialogs_dir / "11.json").read_text(encoding="utf-8"))
    assert data["userId"] == "11"
    assert data["username"] == "alice"
    assert data["messages"][1] == {"role": "model", "parts": [{"text": "a"}]}
    assert data["lastCleanup"] == "2024-01-01T00:00:00+00:00"
