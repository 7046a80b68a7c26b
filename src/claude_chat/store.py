"""Conversation persistence.

``ConversationStore`` is the interface the chat core consumes;
``SQLiteConversationStore`` is the bundled implementation.
"""

import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from contextlib import closing
from datetime import datetime, timedelta, timezone
from pathlib import Path

from .config import DEFAULT_SYSTEM_DIRECTIVES
from .core import Conversation, Message, message_from_wire, message_to_wire
from .errors import ConflictError, ConversationNotFound

logger = logging.getLogger(__name__)


class ConversationStore(ABC):
    """Durable storage for conversations, global config and per-conversation cache."""

    @abstractmethod
    def get_conversations(self) -> dict[str, list[Message]]:
        """Return every conversation's messages, most recently updated first."""
        ...

    @abstractmethod
    def get_conversation(self, conversation_id: str) -> Conversation | None:
        ...

    @abstractmethod
    def save_conversation(self, conversation_id: str, messages: list[Message]) -> None:
        """Replace a conversation's messages, creating it if needed."""
        ...

    @abstractmethod
    def append_messages(
        self,
        conversation_id: str,
        messages: list[Message],
        expected_version: int | None = None,
    ) -> int:
        """Append messages and return the new version.

        Raises ``ConflictError`` when ``expected_version`` is given and stale.
        """
        ...

    @abstractmethod
    def delete_conversation(self, conversation_id: str) -> None:
        ...

    @abstractmethod
    def get_system_config(self) -> dict:
        """Return ``{"system_directives": str, "cache_context": str}``."""
        ...

    @abstractmethod
    def save_system_config(self, system_directives: str, cache_context: str) -> None:
        ...

    @abstractmethod
    def get_conversation_cache(self, conversation_id: str) -> dict:
        """Return ``{"cache_text": str, "cached_files": list[dict]}``."""
        ...

    @abstractmethod
    def save_conversation_cache(self, conversation_id: str, cache_text: str, cached_files: list) -> None:
        ...

    @abstractmethod
    def connection_status(self) -> dict:
        ...


SCHEMA = """
CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    messages TEXT NOT NULL DEFAULT '[]',
    version INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS system_config (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    system_directives TEXT NOT NULL DEFAULT '',
    cache_context TEXT NOT NULL DEFAULT '',
    updated_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS conversation_cache (
    conversation_id TEXT PRIMARY KEY REFERENCES conversations(id) ON DELETE CASCADE,
    cache_text TEXT NOT NULL DEFAULT '',
    cached_files TEXT NOT NULL DEFAULT '[]',
    updated_at TEXT NOT NULL
);
"""


def strip_nul(value):
    """Remove NUL characters from every string in a JSON-like value."""
    if isinstance(value, str):
        return value.replace("\x00", "")
    if isinstance(value, list):
        return [strip_nul(v) for v in value]
    if isinstance(value, dict):
        return {k: strip_nul(v) for k, v in value.items()}
    return value


class SQLiteConversationStore(ConversationStore):
    """SQLite-backed store. One short-lived connection per operation."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._last_stamp = ""

    def initialize(self) -> None:
        """Create the schema and seed the default system config."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with closing(self._connect()) as conn, conn:
            conn.executescript(SCHEMA)
            conn.execute(
                "INSERT OR IGNORE INTO system_config (id, system_directives, cache_context, updated_at) "
                "VALUES (1, ?, '', ?)",
                (DEFAULT_SYSTEM_DIRECTIVES, self._now()),
            )
        logger.info("Datastore ready at %s", self.db_path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=10)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _now(self) -> str:
        # Strictly increasing so updated_at ordering follows append order
        stamp = datetime.now(timezone.utc).isoformat(timespec="microseconds")
        if stamp <= self._last_stamp:
            bumped = datetime.fromisoformat(self._last_stamp) + timedelta(microseconds=1)
            stamp = bumped.isoformat(timespec="microseconds")
        self._last_stamp = stamp
        return stamp

    # ── Conversations ────────────────────────────────────────────

    def get_conversations(self) -> dict[str, list[Message]]:
        return {c.id: c.messages for c in self.list_conversations()}

    def list_conversations(self) -> list[Conversation]:
        with closing(self._connect()) as conn:
            rows = conn.execute(
                "SELECT id, messages, version, created_at, updated_at FROM conversations "
                "ORDER BY updated_at DESC"
            ).fetchall()
        return [_row_to_conversation(r) for r in rows]

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT id, messages, version, created_at, updated_at FROM conversations WHERE id = ?",
                (conversation_id,),
            ).fetchone()
        return _row_to_conversation(row) if row else None

    def save_conversation(self, conversation_id: str, messages: list[Message]) -> None:
        payload = _dump_messages(messages)
        now = self._now()
        with closing(self._connect()) as conn, conn:
            conn.execute(
                "INSERT INTO conversations (id, messages, version, created_at, updated_at) "
                "VALUES (?, ?, 1, ?, ?) "
                "ON CONFLICT(id) DO UPDATE SET messages = excluded.messages, "
                "version = conversations.version + 1, updated_at = excluded.updated_at",
                (conversation_id, payload, now, now),
            )
        logger.info("Conversation %s saved (%d messages)", conversation_id, len(messages))

    def append_messages(
        self,
        conversation_id: str,
        messages: list[Message],
        expected_version: int | None = None,
    ) -> int:
        with closing(self._connect()) as conn:
            conn.isolation_level = None
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    "SELECT messages, version FROM conversations WHERE id = ?", (conversation_id,)
                ).fetchone()
                current = row["version"] if row else 0
                if expected_version is not None and expected_version != current:
                    raise ConflictError(
                        f"Conversation {conversation_id} changed (expected version "
                        f"{expected_version}, found {current})"
                    )
                existing = json.loads(row["messages"]) if row else []
                combined = existing + [strip_nul(message_to_wire(m, metadata=True)) for m in messages]
                now = self._now()
                if row:
                    conn.execute(
                        "UPDATE conversations SET messages = ?, version = ?, updated_at = ? WHERE id = ?",
                        (json.dumps(combined, ensure_ascii=False), current + 1, now, conversation_id),
                    )
                else:
                    conn.execute(
                        "INSERT INTO conversations (id, messages, version, created_at, updated_at) "
                        "VALUES (?, ?, 1, ?, ?)",
                        (conversation_id, json.dumps(combined, ensure_ascii=False), now, now),
                    )
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise
        return current + 1

    def delete_conversation(self, conversation_id: str) -> None:
        with closing(self._connect()) as conn, conn:
            cur = conn.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))
            if cur.rowcount == 0:
                raise ConversationNotFound(f"Conversation not found: {conversation_id}")
        logger.info("Conversation %s deleted", conversation_id)

    # ── System config ────────────────────────────────────────────

    def get_system_config(self) -> dict:
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT system_directives, cache_context FROM system_config WHERE id = 1"
            ).fetchone()
        if not row:
            return {"system_directives": "", "cache_context": ""}
        return {"system_directives": row["system_directives"], "cache_context": row["cache_context"]}

    def save_system_config(self, system_directives: str, cache_context: str) -> None:
        with closing(self._connect()) as conn, conn:
            conn.execute(
                "INSERT INTO system_config (id, system_directives, cache_context, updated_at) "
                "VALUES (1, ?, ?, ?) "
                "ON CONFLICT(id) DO UPDATE SET system_directives = excluded.system_directives, "
                "cache_context = excluded.cache_context, updated_at = excluded.updated_at",
                (strip_nul(system_directives or ""), strip_nul(cache_context or ""), self._now()),
            )

    # ── Conversation cache ───────────────────────────────────────

    def get_conversation_cache(self, conversation_id: str) -> dict:
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT cache_text, cached_files FROM conversation_cache WHERE conversation_id = ?",
                (conversation_id,),
            ).fetchone()
        if not row:
            return {"cache_text": "", "cached_files": []}
        try:
            cached_files = json.loads(row["cached_files"])
        except json.JSONDecodeError as e:
            logger.warning("Corrupt cached_files for %s: %s", conversation_id, e)
            cached_files = []
        return {"cache_text": row["cache_text"] or "", "cached_files": cached_files}

    def save_conversation_cache(self, conversation_id: str, cache_text: str, cached_files: list) -> None:
        now = self._now()
        with closing(self._connect()) as conn, conn:
            # The cache row references its conversation, so make sure one exists
            conn.execute(
                "INSERT OR IGNORE INTO conversations (id, messages, version, created_at, updated_at) "
                "VALUES (?, '[]', 0, ?, ?)",
                (conversation_id, now, now),
            )
            conn.execute(
                "INSERT INTO conversation_cache (conversation_id, cache_text, cached_files, updated_at) "
                "VALUES (?, ?, ?, ?) "
                "ON CONFLICT(conversation_id) DO UPDATE SET cache_text = excluded.cache_text, "
                "cached_files = excluded.cached_files, updated_at = excluded.updated_at",
                (
                    conversation_id,
                    strip_nul(cache_text or ""),
                    json.dumps(strip_nul(cached_files or []), ensure_ascii=False),
                    now,
                ),
            )
        logger.info("Conversation cache saved for %s (%d files)", conversation_id, len(cached_files or []))

    def connection_status(self) -> dict:
        try:
            with closing(self._connect()) as conn:
                count = conn.execute("SELECT count(*) FROM conversations").fetchone()[0]
        except sqlite3.Error as e:
            return {"status": "disconnected", "error": f"Connection failed: {e}"}
        return {"status": "connected", "path": str(self.db_path), "conversations": count}


def _dump_messages(messages: list[Message]) -> str:
    return json.dumps([strip_nul(message_to_wire(m, metadata=True)) for m in messages], ensure_ascii=False)


def _row_to_conversation(row) -> Conversation:
    try:
        raw = json.loads(row["messages"])
    except json.JSONDecodeError as e:
        logger.warning("Corrupt messages for conversation %s: %s", row["id"], e)
        raw = []
    return Conversation(
        id=row["id"],
        messages=[message_from_wire(m) for m in raw if isinstance(m, dict)],
        created=datetime.fromisoformat(row["created_at"]),
        updated=datetime.fromisoformat(row["updated_at"]),
        version=row["version"],
    )
