"""Chat session: the caller side of the stream client.

A ``ChatSession`` owns one conversation. It composes the outgoing message,
assembles the pinned system context from the store, streams the reply and
persists only completed assistant messages.
"""

import html
import logging
import re
import time

from .composer import compose
from .config import DEFAULT_MODEL, MODEL_MAX_TOKENS, OVERLOAD_FRIENDLY_MESSAGE
from .core import (
    Complete,
    Error,
    ExtractedText,
    Message,
    SystemContext,
    TextBlock,
    Update,
    block_from_wire,
    normalized_from_dict,
)
from .errors import ChatError
from .store import ConversationStore
from .stream import StreamClient

logger = logging.getLogger(__name__)

NEW_CONVERSATION_TITLE = "New conversation"

_TAG_RE = re.compile(r"<[^>]*>")
_FENCE_RE = re.compile(r"```.*?```", re.DOTALL)
_BRACKET_RE = re.compile(r"\[.*?\]")
_BANNER_RE = re.compile(r"=== .*? ===")
_SPACE_RE = re.compile(r"\s+")


def new_conversation_id() -> str:
    """Return a time-derived conversation id (milliseconds since the epoch)."""
    return str(int(time.time() * 1000))


def conversation_title(messages: list[Message]) -> str:
    """Readable title from the first user text, stripped of markup."""
    first_user = next((m for m in messages if m.role == "user"), None)
    if first_user is None:
        return NEW_CONVERSATION_TITLE
    text_block = next((b for b in first_user.content if isinstance(b, TextBlock) and b.text), None)
    if text_block is None:
        return NEW_CONVERSATION_TITLE

    text = html.unescape(text_block.text)
    for pattern in (_TAG_RE, _FENCE_RE, _BRACKET_RE, _BANNER_RE):
        text = pattern.sub("", text)
    text = _SPACE_RE.sub(" ", text).strip()
    if len(text) < 3:
        return NEW_CONVERSATION_TITLE
    return text


def cached_file_from_dict(data: dict):
    """Parse one stored cached-file entry.

    Older entries are plain ``{"name": ..., "content": ...}`` text records.
    """
    if "kind" in data:
        return normalized_from_dict(data)
    if data.get("type") in ("text", "image", "document"):
        return block_from_wire(data)
    return ExtractedText(text=str(data.get("content") or ""), source_name=str(data.get("name") or "file"))


class ChatSession:
    """Session context for one conversation."""

    def __init__(
        self,
        store: ConversationStore,
        client: StreamClient,
        api_key: str,
        conversation_id: str | None = None,
        model: str = DEFAULT_MODEL,
        max_tokens: int | None = None,
    ):
        self.store = store
        self.client = client
        self.api_key = api_key
        self.conversation_id = conversation_id or new_conversation_id()
        self.model = model
        self.max_tokens = max_tokens or MODEL_MAX_TOKENS.get(model, 4096)

    def system_context(self) -> SystemContext:
        config = self.store.get_system_config()
        cache = self.store.get_conversation_cache(self.conversation_id)
        files = []
        for entry in cache.get("cached_files") or []:
            if not isinstance(entry, dict):
                continue
            try:
                files.append(cached_file_from_dict(entry))
            except ChatError as e:
                logger.warning("Ignoring unreadable cached file in %s: %s", self.conversation_id, e.message)
        return SystemContext(
            global_directives=config.get("system_directives", ""),
            global_cache_context=config.get("cache_context", ""),
            conversation_cache_text=cache.get("cache_text", ""),
            conversation_cached_files=files,
        )

    async def send(self, free_text: str, files: list | None = None):
        """Yield ``Update`` events, then a ``Complete`` or a terminal ``Error``.

        Nothing is yielded (and nothing is stored) when there is neither text
        nor files. Partial text from a failed stream is never persisted.
        """
        files = files or []
        if not (free_text or "").strip() and not files:
            return

        content = compose(free_text, files)
        conversation = self.store.get_conversation(self.conversation_id)
        history = conversation.messages if conversation else []
        version = conversation.version if conversation else 0

        version = self.store.append_messages(
            self.conversation_id, [Message(role="user", content=content)], expected_version=version
        )
        context = self.system_context()

        async for event in self.client.send(
            content, context, history, self.api_key, self.model, self.max_tokens
        ):
            if isinstance(event, Update):
                yield event
            elif isinstance(event, Complete):
                reply = Message(role="assistant", content=[TextBlock(text=event.full_text)])
                self.store.append_messages(self.conversation_id, [reply], expected_version=version)
                logger.info("Conversation %s: reply stored (%d chars)", self.conversation_id, len(event.full_text))
                yield event
                return
            elif isinstance(event, Error):
                logger.error("Conversation %s: send failed: %s", self.conversation_id, event.message)
                if event.error_type == "overloaded_error":
                    yield Error(OVERLOAD_FRIENDLY_MESSAGE, event.error_type)
                else:
                    yield event
                return
