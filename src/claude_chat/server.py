"""FastAPI web server for claude-chat."""

import logging
import time
from contextlib import asynccontextmanager
from pathlib import Path

import httpx
from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import HTMLResponse, JSONResponse, StreamingResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import DEFAULT_MODEL, get_database_path, get_max_bytes, get_upstream_url
from .core import (
    Complete,
    Error,
    Update,
    message_from_wire,
    message_to_wire,
    normalized_from_dict,
    normalized_to_dict,
)
from .errors import AuthenticationError, ChatError, ContentTooLarge, ValidationError, format_size
from .normalizer import normalize_upload
from .relay import SSE_HEADERS, relay, sse_frame
from .session import ChatSession
from .store import SQLiteConversationStore
from .stream import StreamClient

logger = logging.getLogger(__name__)

# Shared resources (created on first request)
_store: SQLiteConversationStore | None = None
_upstream: httpx.AsyncClient | None = None


def _get_store() -> SQLiteConversationStore:
    """Lazily initialize and cache the datastore."""
    global _store
    if _store is None:
        _store = SQLiteConversationStore(get_database_path())
        _store.initialize()
    return _store


def _get_upstream() -> httpx.AsyncClient:
    """Lazily create the upstream HTTP client.

    Read timeouts are enforced by the relay watchdog and the stream client idle timeout.
    """
    global _upstream
    if _upstream is None:
        _upstream = httpx.AsyncClient(timeout=httpx.Timeout(None, connect=30.0))
    return _upstream


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Close the shared upstream client on shutdown."""
    global _upstream
    yield
    if _upstream is not None:
        await _upstream.aclose()
        _upstream = None


app = FastAPI(title="claude-chat", version="0.1.0", lifespan=lifespan)


# ── Error handling ───────────────────────────────────────────────


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.monotonic()
    response = await call_next(request)
    logger.info(
        "%s %s -> %d (%.0fms)",
        request.method, request.url.path, response.status_code, (time.monotonic() - start) * 1000,
    )
    return response


@app.exception_handler(ChatError)
async def _chat_error_handler(request: Request, exc: ChatError):
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


@app.exception_handler(StarletteHTTPException)
async def _http_error_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 404:
        message = exc.detail if exc.detail != "Not Found" else f"Route not found: {request.url.path}"
        return JSONResponse({"error": {"type": "not_found", "message": message}}, status_code=404)
    return JSONResponse({"error": {"type": "api_error", "message": str(exc.detail)}}, status_code=exc.status_code)


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError as e:
        raise ValidationError("Request body is not valid JSON", details=str(e)) from e
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


# ── Routes ───────────────────────────────────────────────────────


@app.get("/")
async def index():
    """Serve the frontend."""
    html_path = Path(__file__).parent / "static" / "index.html"
    if not html_path.exists():
        raise HTTPException(status_code=404, detail="Frontend not found")
    return HTMLResponse(html_path.read_text(encoding="utf-8"))


@app.get("/health")
async def health():
    """Report datastore connectivity."""
    status = _get_store().connection_status()
    code = 200 if status["status"] == "connected" else 503
    return JSONResponse({"status": "ok" if code == 200 else "error", "database": status}, status_code=code)


@app.post("/proxy/claude")
async def proxy_claude(request: Request):
    """Relay one request to the upstream messages API."""
    raw_body = await request.body()
    return await relay(request.headers.get("x-api-key"), raw_body, _get_upstream())


@app.get("/api/conversations")
async def get_conversations():
    """Return every conversation keyed by id, most recently updated first."""
    conversations = _get_store().get_conversations()
    return {
        conv_id: [message_to_wire(m, metadata=True) for m in messages]
        for conv_id, messages in conversations.items()
    }


@app.post("/api/conversations")
async def save_conversation(request: Request):
    """Save a conversation: ``{"id": ..., "messages": [...]}``."""
    body = await _json_body(request)
    conv_id = body.get("id")
    messages = body.get("messages")
    if not conv_id or not isinstance(messages, list):
        raise ValidationError("Both 'id' and a 'messages' list are required")
    parsed = [message_from_wire(m) for m in messages if isinstance(m, dict)]
    _get_store().save_conversation(str(conv_id), parsed)
    return {"success": True}


@app.delete("/api/conversations/{conversation_id}")
async def delete_conversation(conversation_id: str):
    _get_store().delete_conversation(conversation_id)
    return {"success": True}


@app.get("/api/system-config")
async def get_system_config():
    config = _get_store().get_system_config()
    return {"systemDirectives": config["system_directives"], "cacheContext": config["cache_context"]}


@app.post("/api/system-config")
async def save_system_config(request: Request):
    body = await _json_body(request)
    _get_store().save_system_config(
        str(body.get("systemDirectives") or ""),
        str(body.get("cacheContext") or ""),
    )
    return {"success": True}


@app.get("/api/conversations/{conversation_id}/cache")
async def get_conversation_cache(conversation_id: str):
    cache = _get_store().get_conversation_cache(conversation_id)
    return {"cacheText": cache["cache_text"], "cachedFiles": cache["cached_files"]}


@app.post("/api/conversations/{conversation_id}/cache")
async def save_conversation_cache(conversation_id: str, request: Request):
    body = await _json_body(request)
    cached_files = body.get("cachedFiles") or []
    if not isinstance(cached_files, list):
        raise ValidationError("'cachedFiles' must be a list")
    _get_store().save_conversation_cache(conversation_id, str(body.get("cacheText") or ""), cached_files)
    return {"success": True}


@app.post("/api/files/normalize")
async def normalize_files(
    files: list[UploadFile] = File(...),
    pdf_as_text: bool = Form(False),
):
    """Normalize uploaded files. A failing file is reported without aborting the others.

    Only files that were accepted count toward the cumulative size ceiling.
    """
    max_bytes = get_max_bytes()
    total = 0
    results = []
    for upload in files:
        name = upload.filename or "file"
        data = await upload.read()
        try:
            if total + len(data) > max_bytes:
                raise ContentTooLarge(f"{name}: upload exceeds the {format_size(max_bytes)} limit")
            normalized = normalize_upload(name, upload.content_type, data, pdf_as_text=pdf_as_text)
        except ChatError as e:
            logger.warning("Could not normalize %s: %s", name, e.message)
            results.append({"name": name, **e.to_dict()})
            continue
        total += len(data)
        results.append({"name": name, "file": normalized_to_dict(normalized)})
    return {"files": results}


@app.post("/api/conversations/{conversation_id}/send")
async def send_message(conversation_id: str, request: Request):
    """Send one user turn and stream the reply as server-sent events.

    Body: ``{"message": ..., "files": [normalized files], "model": ..., "maxTokens": ...}``
    with the API key in ``x-api-key``. The stored system configuration and the
    conversation cache are pinned to the request, and only a completed reply is
    persisted. Each frame is ``data: {"type": "update" | "complete" | "error", ...}``.
    """
    api_key = request.headers.get("x-api-key")
    if not api_key:
        raise AuthenticationError("API key not provided")
    body = await _json_body(request)
    files = body.get("files") or []
    if not isinstance(files, list):
        raise ValidationError("'files' must be a list")
    normalized = [normalized_from_dict(f) for f in files if isinstance(f, dict)]
    message = str(body.get("message") or "")
    if not message.strip() and not normalized:
        raise ValidationError("A message needs text or at least one file")

    max_tokens = body.get("maxTokens")
    session = ChatSession(
        _get_store(),
        StreamClient(get_upstream_url(), http_client=_get_upstream()),
        api_key,
        conversation_id=conversation_id,
        model=str(body.get("model") or DEFAULT_MODEL),
        max_tokens=max_tokens if isinstance(max_tokens, int) else None,
    )
    return StreamingResponse(
        _session_frames(session, message, normalized),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


async def _session_frames(session: ChatSession, message: str, files: list):
    try:
        async for event in session.send(message, files):
            if isinstance(event, Update):
                yield sse_frame({"type": "update", "delta": event.delta, "fullText": event.full_text})
            elif isinstance(event, Complete):
                yield sse_frame({"type": "complete", "fullText": event.full_text, "conversationId": session.conversation_id})
            elif isinstance(event, Error):
                yield sse_frame({"type": "error", "error": {"type": event.error_type, "message": event.message}})
    except ChatError as e:
        logger.error("Conversation %s: %s", session.conversation_id, e.message)
        yield sse_frame({"type": "error", **e.to_dict()})
