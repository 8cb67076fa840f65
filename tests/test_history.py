"""
Tests for the bounded conversation history over SQLite.
"""

from itertools import count
from unittest.mock import MagicMock

import pytest

from switchboard.errors import ConversationNotFound, StorageError, StorageQuotaError
from switchboard.models import Attachment, ChatResult, Conversation, Message
from switchboard.storage.history import DEFAULT_TITLE, HistoryStore, make_title, to_markdown
from switchboard.storage.kv_store import SQLiteKeyValueStore
from switchboard.storage.policy import SESSIONS_KEY, StoragePolicy


@pytest.fixture
def kv(tmp_path):
    return SQLiteKeyValueStore(str(tmp_path / "history.db"))


@pytest.fixture
def history(kv):
    ticks = count(1000)
    return HistoryStore(kv, clock=lambda: next(ticks))


# ---------------------------------------------------------------------------
# Key/value store
# ---------------------------------------------------------------------------

def test_kv_roundtrip_and_usage(kv):
    assert kv.get("missing") is None
    kv.set("k", {"a": [1, 2]})
    assert kv.get("k") == {"a": [1, 2]}
    assert kv.used_bytes("k") == len("k") + len('{"a":[1,2]}')
    kv.delete("k")
    assert kv.get("k") is None
    assert kv.used_bytes() == 0


def test_kv_rejects_writes_over_quota(tmp_path):
    kv = SQLiteKeyValueStore(str(tmp_path / "small.db"), quota_bytes=50)
    kv.set("a", "x" * 10)
    with pytest.raises(StorageQuotaError):
        kv.set("b", "y" * 60)
    assert kv.get("b") is None
    assert kv.get("a") == "x" * 10


# ---------------------------------------------------------------------------
# Titles and saving
# ---------------------------------------------------------------------------

def test_make_title():
    assert make_title("short question") == "short question"
    assert make_title("q" * 31) == "q" * 30 + "..."
    assert make_title("") == DEFAULT_TITLE


def test_save_interaction_stores_prompt_and_reply(history):
    result = ChatResult(text="answer", thoughts="hmm", continuation_context={"conversation_id": "c1"})
    conv = history.save_interaction("question", result, [Attachment(data="QUJD", mime_type="image/png")])

    stored = history.get(conv.id)
    assert stored.title == "question"
    assert [m.role for m in stored.messages] == ["user", "assistant"]
    assert stored.messages[0].attachments == ["data:image/png;base64,QUJD"]
    assert stored.messages[1].thoughts == "hmm"
    assert stored.continuation_context == {"conversation_id": "c1"}


def test_append_moves_conversation_to_front(history):
    first = history.create("first")
    second = history.create("second")
    assert [c.id for c in history.list()] == [second.id, first.id]

    history.append_user(first.id, "follow-up")
    history.append_result(first.id, ChatResult(text="reply", continuation_context={"k": 1}))

    listed = history.list()
    assert [c.id for c in listed] == [first.id, second.id]
    assert [m.text for m in listed[0].messages] == ["follow-up", "reply"]
    assert listed[0].continuation_context == {"k": 1}


def test_truncate_last_assistant(history):
    conv = history.save_interaction("q", ChatResult(text="a"))
    removed = history.truncate_last_assistant(conv.id)
    assert removed.text == "a"
    assert [m.role for m in history.get(conv.id).messages] == ["user"]
    assert history.truncate_last_assistant(conv.id) is None


def test_missing_conversation(history):
    with pytest.raises(ConversationNotFound):
        history.get("nope")
    with pytest.raises(ConversationNotFound):
        history.append_user("nope", "hi")
    assert history.delete("nope") is False


def test_delete(history):
    conv = history.create()
    assert history.delete(conv.id) is True
    assert history.list() == []


# ---------------------------------------------------------------------------
# Eviction and quota handling
# ---------------------------------------------------------------------------

def test_writes_apply_the_policy(kv):
    ticks = count(1)
    history = HistoryStore(kv, StoragePolicy(max_conversations=10), clock=lambda: next(ticks))
    for i in range(12):
        history.save_interaction(f"q{i}", ChatResult(text="a"))
    titles = [c.title for c in history.list()]
    assert len(titles) <= 10
    assert titles[0] == "q11"


def test_quota_rejection_drops_oldest_and_retries_once():
    store = MagicMock()
    store.quota_bytes = 10 * 1024 * 1024
    store.used_bytes.return_value = 0
    store.get.return_value = [Conversation(id=f"c{i}", timestamp=i).to_dict() for i in (3, 2, 1)]
    store.set.side_effect = [StorageQuotaError("full"), None]

    HistoryStore(store).create("new")

    first, second = (call.args[1] for call in store.set.call_args_list)
    assert len(second) == len(first) - 1
    assert [c["id"] for c in second][-1] == "c2"
    assert store.set.call_args_list[1].args[0] == SESSIONS_KEY


def test_second_rejection_raises_storage_error():
    store = MagicMock()
    store.quota_bytes = 10 * 1024 * 1024
    store.used_bytes.return_value = 0
    store.get.return_value = []
    store.set.side_effect = StorageQuotaError("full")

    with pytest.raises(StorageError):
        HistoryStore(store).create("new")


def test_unknown_usage_enforces_byte_budget():
    store = MagicMock()
    store.quota_bytes = 1000
    store.used_bytes.side_effect = StorageError("no usage")
    store.get.return_value = [
        Conversation(id=f"c{i}", timestamp=i, title="t" * 300).to_dict() for i in (3, 2, 1)
    ]

    HistoryStore(store, clock=lambda: 10).create("new")

    written = store.set.call_args.args[1]
    assert [c["id"] for c in written][-1] != "c1"
    assert len(written) < 4


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------

def test_export_formats(history):
    conv = history.save_interaction("q", ChatResult(text="a", thoughts="because"))
    history.append_user(conv.id, "tool said so", is_tool_output=True)

    records = history.export(conv.id, "json")
    assert records[0]["id"] == conv.id

    jsonl = history.export(conv.id, "jsonl")
    assert jsonl == [{"messages": [{"role": "user", "content": "q"}, {"role": "assistant", "content": "a"}]}]

    md = history.export(conv.id, "markdown")
    assert md.startswith("# q\n")
    assert "**Assistant**" in md
    assert "<summary>Thinking</summary>" in md
    assert "tool said so" not in md

    with pytest.raises(ValueError):
        history.export(conv.id, "csv")


def test_markdown_marks_attached_and_generated_images():
    conv = Conversation(title="pics", timestamp=0, messages=[
        Message(role="user", text="draw", attachments=["QUJD"]),
        Message(role="assistant", text="here", generated_images=[{"url": "u1"}, {"url": "u2"}]),
    ])
    md = to_markdown(conv)
    assert md.splitlines()[0] == "# pics"
    assert "*[Image attached]*" in md
    assert "*[2 image(s) generated]*" in md
