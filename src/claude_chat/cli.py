"""CLI entry point for claude-chat."""

import asyncio
import logging
import mimetypes
import sqlite3
import sys
import time
from pathlib import Path

import click
import uvicorn

from .config import (
    DEFAULT_MODEL,
    get_database_path,
    get_db_retries,
    get_db_retry_delay,
    get_upstream_url,
)
from .core import Complete, Error, Update
from .errors import ChatError
from .normalizer import normalize_upload
from .session import ChatSession
from .store import SQLiteConversationStore
from .stream import StreamClient

logger = logging.getLogger(__name__)


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def connect_with_retries(store: SQLiteConversationStore, retries: int, delay: float, sleep=time.sleep) -> bool:
    """Try to initialize the datastore, ``retries`` times at most."""
    for attempt in range(1, retries + 1):
        try:
            store.initialize()
            return True
        except (sqlite3.Error, OSError) as e:
            logger.warning("Datastore connection attempt %d/%d failed: %s", attempt, retries, e)
            if attempt < retries:
                sleep(delay)
    return False


@click.group()
def main():
    """Chat with Claude through a local relay, with file uploads and prompt caching."""
    pass


@main.command()
@click.option("--port", default=3000, help="Port to serve on.")
@click.option("--host", default="127.0.0.1", help="Host to bind to.")
@click.option("--log-level", default="info", type=click.Choice(["debug", "info", "warning", "error"]), help="Log level.")
def serve(port: int, host: str, log_level: str):
    """Start the web interface and relay."""
    _configure_logging(log_level)
    store = SQLiteConversationStore(get_database_path())
    if not connect_with_retries(store, get_db_retries(), get_db_retry_delay()):
        click.echo(f"Could not open the datastore at {store.db_path}", err=True)
        sys.exit(1)

    click.echo(f"Starting claude-chat on http://{host}:{port}")
    uvicorn.run("claude_chat.server:app", host=host, port=port, reload=False, log_level=log_level)


@main.command()
@click.argument("message", default="")
@click.option("--file", "files", multiple=True, type=click.Path(exists=True, dir_okay=False, path_type=Path), help="Attach a file (repeatable).")
@click.option("--model", default=DEFAULT_MODEL, help="Model name.")
@click.option("--max-tokens", type=int, default=None, help="Maximum output tokens.")
@click.option("--api-key", envvar="ANTHROPIC_API_KEY", required=True, help="API key (or $ANTHROPIC_API_KEY).")
@click.option("--url", default=None, help="Messages endpoint or relay URL.")
@click.option("--conversation", default=None, help="Continue an existing conversation id.")
@click.option("--pdf-as-text", is_flag=True, help="Extract PDF text instead of attaching PDFs natively.")
def send(message, files, model, max_tokens, api_key, url, conversation, pdf_as_text):
    """Send one message and stream the reply to stdout."""
    _configure_logging("warning")
    normalized = []
    for path in files:
        try:
            normalized.append(
                normalize_upload(path.name, mimetypes.guess_type(path.name)[0], path.read_bytes(), pdf_as_text=pdf_as_text)
            )
        except ChatError as e:
            click.echo(f"Skipping {path}: {e.message}", err=True)

    store = SQLiteConversationStore(get_database_path())
    store.initialize()
    session = ChatSession(
        store,
        StreamClient(url or get_upstream_url()),
        api_key,
        conversation_id=conversation,
        model=model,
        max_tokens=max_tokens,
    )
    ok = asyncio.run(_print_reply(session, message, normalized))
    if not ok:
        sys.exit(1)


async def _print_reply(session: ChatSession, message: str, files: list) -> bool:
    async for event in session.send(message, files):
        if isinstance(event, Update):
            click.echo(event.delta, nl=False)
        elif isinstance(event, Complete):
            click.echo()
            click.echo(f"[conversation {session.conversation_id}]", err=True)
        elif isinstance(event, Error):
            click.echo(f"\nError: {event.message}", err=True)
            return False
    return True
