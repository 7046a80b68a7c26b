"""Tests for the command-line interface."""

import sqlite3
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from claude_chat.cli import connect_with_retries, main
from claude_chat.core import Complete, Error, Update


class FlakyStore:
    def __init__(self, failures):
        self.failures = failures
        self.attempts = 0

    def initialize(self):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise sqlite3.OperationalError("unable to open database file")


class ScriptedClient:
    def __init__(self, events):
        self.events = events

    async def send(self, *args):
        for event in self.events:
            yield event


@pytest.fixture
def db_env(tmp_path, monkeypatch):
    monkeypatch.setenv("CLAUDE_CHAT_DB_PATH", str(tmp_path / "chat.db"))
    monkeypatch.setenv("CLAUDE_CHAT_DB_RETRY_DELAY", "0")
    return tmp_path


def test_connect_retries_until_success():
    store = FlakyStore(failures=2)
    sleeps = []
    assert connect_with_retries(store, retries=5, delay=3.0, sleep=sleeps.append)
    assert store.attempts == 3
    assert sleeps == [3.0, 3.0]


def test_connect_gives_up():
    store = FlakyStore(failures=10)
    assert not connect_with_retries(store, retries=3, delay=0, sleep=lambda s: None)
    assert store.attempts == 3


def test_serve_exits_when_datastore_unreachable(db_env, monkeypatch):
    monkeypatch.setenv("CLAUDE_CHAT_DB_RETRIES", "2")
    with (
        patch("claude_chat.cli.SQLiteConversationStore", return_value=FlakyStore(failures=99)) as store_cls,
        patch("claude_chat.cli.uvicorn.run") as run,
    ):
        store_cls.return_value.db_path = db_env / "chat.db"
        result = CliRunner().invoke(main, ["serve"])
    assert result.exit_code == 1
    run.assert_not_called()


def test_serve_starts_uvicorn(db_env):
    with patch("claude_chat.cli.uvicorn.run") as run:
        result = CliRunner().invoke(main, ["serve", "--port", "9999"])
    assert result.exit_code == 0
    assert "http://127.0.0.1:9999" in result.output
    assert run.call_args.kwargs["port"] == 9999


def test_send_prints_reply(db_env):
    client = ScriptedClient([Update("Hel", "Hel"), Update("lo", "Hello"), Complete("Hello")])
    with patch("claude_chat.cli.StreamClient", return_value=client):
        result = CliRunner().invoke(main, ["send", "hi", "--api-key", "k", "--conversation", "c1"])
    assert result.exit_code == 0
    assert "Hello" in result.output


def test_send_error_exit_status(db_env):
    client = ScriptedClient([Error("bad key", "authentication_error")])
    with patch("claude_chat.cli.StreamClient", return_value=client):
        result = CliRunner().invoke(main, ["send", "hi", "--api-key", "k"])
    assert result.exit_code == 1
    assert "bad key" in result.output


def test_send_requires_api_key(db_env, monkeypatch):
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    result = CliRunner().invoke(main, ["send", "hi"])
    assert result.exit_code != 0
