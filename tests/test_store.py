"""Tests for the SQLite conversation store."""

import pytest

from claude_chat.config import DEFAULT_SYSTEM_DIRECTIVES
from claude_chat.core import ImageBlock, Message, TextBlock
from claude_chat.errors import ConflictError, ConversationNotFound
from claude_chat.store import SQLiteConversationStore


def _msg(role, text):
    return Message(role=role, content=[TextBlock(text=text)])


def test_initialize_seeds_default_directives(store):
    config = store.get_system_config()
    assert config == {"system_directives": DEFAULT_SYSTEM_DIRECTIVES, "cache_context": ""}


def test_initialize_is_idempotent(store):
    store.save_system_config("custom", "ctx")
    store.initialize()
    assert store.get_system_config() == {"system_directives": "custom", "cache_context": "ctx"}


def test_conversations_ordered_by_last_update(store):
    store.save_conversation("a", [_msg("user", "first")])
    store.save_conversation("b", [_msg("user", "second")])
    assert list(store.get_conversations()) == ["b", "a"]

    store.save_conversation("a", [_msg("user", "first"), _msg("assistant", "reply")])
    conversations = store.get_conversations()
    assert list(conversations) == ["a", "b"]
    assert [m.role for m in conversations["a"]] == ["user", "assistant"]


def test_file_names_survive_storage(store):
    image = ImageBlock(media_type="image/png", data="aGk=", file_name="shot.png")
    store.save_conversation("c", [Message(role="user", content=[image])])
    stored = store.get_conversation("c").messages[0].content[0]
    assert stored.file_name == "shot.png"


def test_nul_characters_are_stripped(store):
    store.save_conversation("n", [_msg("user", "a\x00b")])
    assert store.get_conversation("n").messages[0].content[0].text == "ab"


def test_append_bumps_version(store):
    assert store.append_messages("x", [_msg("user", "hi")], expected_version=0) == 1
    assert store.append_messages("x", [_msg("assistant", "hello")], expected_version=1) == 2
    conversation = store.get_conversation("x")
    assert conversation.version == 2
    assert [m.content[0].text for m in conversation.messages] == ["hi", "hello"]


def test_append_with_stale_version_conflicts(store):
    store.append_messages("x", [_msg("user", "hi")], expected_version=0)
    with pytest.raises(ConflictError):
        store.append_messages("x", [_msg("user", "again")], expected_version=0)
    assert len(store.get_conversation("x").messages) == 1


def test_append_without_version_always_applies(store):
    store.append_messages("x", [_msg("user", "one")])
    store.append_messages("x", [_msg("user", "two")])
    assert len(store.get_conversation("x").messages) == 2


def test_delete(store):
    store.save_conversation("d", [_msg("user", "bye")])
    store.delete_conversation("d")
    assert store.get_conversation("d") is None
    with pytest.raises(ConversationNotFound):
        store.delete_conversation("d")


def test_cache_defaults_for_unknown_conversation(store):
    assert store.get_conversation_cache("nope") == {"cache_text": "", "cached_files": []}


def test_cache_round_trip_and_cascade(store):
    files = [{"kind": "text", "name": "a.txt", "text": "alpha", "metadata": {}}]
    store.save_conversation_cache("k", "notes", files)
    assert store.get_conversation_cache("k") == {"cache_text": "notes", "cached_files": files}

    store.delete_conversation("k")
    assert store.get_conversation_cache("k") == {"cache_text": "", "cached_files": []}


def test_connection_status(store, tmp_path):
    status = store.connection_status()
    assert status["status"] == "connected"
    assert status["conversations"] == 0

    broken = SQLiteConversationStore(tmp_path / "missing-dir" / "nested" / "chat.db")
    assert broken.connection_status()["status"] == "disconnected"
