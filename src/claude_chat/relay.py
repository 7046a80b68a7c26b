"""Stateless proxy between the chat client and the upstream messages API.

One call per request: authenticate, validate, drop empty messages, forward,
and re-stream the upstream response. Failures are always reported in the
transport the caller asked for. A streaming client gets an SSE frame, never a
bare HTTP error, because it is already reading an event stream.

A watchdog bounds every wait on upstream. It is re-armed for each forwarded
chunk, so it only fires when upstream stalls, and it fires even if upstream
never closes the connection.
"""

import asyncio
import codecs
import json
import logging

import httpx
from fastapi.responses import JSONResponse, StreamingResponse

from .config import ANTHROPIC_VERSION, CACHING_BETA, get_max_bytes, get_upstream_url, get_watchdog_seconds
from .errors import (
    AuthenticationError,
    ChatError,
    ContentTooLarge,
    DecodeError,
    InternalError,
    StreamTimeoutError,
    UpstreamApiError,
    ValidationError,
    format_size,
)

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

WATCHDOG_MESSAGE = "Request exceeded the {minutes}-minute time limit. Please try again."


def sse_frame(payload) -> bytes:
    data = payload if isinstance(payload, str) else json.dumps(payload, ensure_ascii=False)
    return f"data: {data}\n\n".encode("utf-8")


def _forward_line(line: str) -> bytes:
    line = line.rstrip("\r")
    if not line.startswith("data: "):
        line = f"data: {line}"
    return f"{line}\n\n".encode("utf-8")


def message_is_empty(message: dict) -> bool:
    """Empty string content, or a block list with no non-blank text and no attachments."""
    content = message.get("content") if isinstance(message, dict) else None
    if isinstance(content, str):
        return not content.strip()
    if isinstance(content, list):
        for item in content:
            if not isinstance(item, dict) or item.get("type") != "text":
                return False
            if (item.get("text") or "").strip():
                return False
        return True
    return False


def strip_empty_messages(messages: list) -> list:
    return [m for m in messages if not message_is_empty(m)]


def validate_request(api_key: str | None, raw_body: bytes, max_bytes: int) -> dict:
    """Check auth, size and shape, in that order. Returns the parsed body."""
    if not api_key:
        raise AuthenticationError("API key not provided")

    if len(raw_body) > max_bytes:
        raise ContentTooLarge(
            f"Content exceeds the {format_size(max_bytes)} limit. Current size: {format_size(len(raw_body))}"
        )

    try:
        body = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValidationError("Request body is not valid JSON", details=str(e)) from e

    if not isinstance(body, dict) or not isinstance(body.get("messages"), list) or not body.get("model"):
        raise ValidationError("Invalid request structure")
    return body


def upstream_headers(api_key: str, streaming: bool) -> dict:
    headers = {
        "content-type": "application/json",
        "x-api-key": api_key,
        "anthropic-version": ANTHROPIC_VERSION,
        "anthropic-beta": CACHING_BETA,
    }
    if streaming:
        headers["accept"] = "text/event-stream"
    return headers


def error_response(error: ChatError, streaming: bool):
    """Render an error in the transport the caller expects."""
    if streaming:
        return StreamingResponse(
            iter([sse_frame(error.to_dict())]),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )
    return JSONResponse(error.to_dict(), status_code=error.status_code)


def _timeout_error(watchdog: float) -> StreamTimeoutError:
    minutes = max(1, round(watchdog / 60))
    return StreamTimeoutError(
        WATCHDOG_MESSAGE.format(minutes=minutes),
        details="The server is processing a large request and needs more time.",
    )


def _upstream_error_payload(status_code: int, raw: bytes) -> dict:
    text = raw.decode("utf-8", errors="replace")
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        payload = None
    if not isinstance(payload, dict) or not isinstance(payload.get("error"), dict):
        payload = {"error": {"type": "api_error", "message": text or f"HTTP {status_code}"}}

    if "pdf" in text.lower():
        payload["error"]["message"] = f"Error processing PDF file: {payload['error'].get('message', '')}"
    return payload


async def relay(
    api_key: str | None,
    raw_body: bytes,
    client: httpx.AsyncClient,
    url: str | None = None,
    max_bytes: int | None = None,
    watchdog: float | None = None,
):
    """Handle one proxied request and return the response to send back."""
    url = url or get_upstream_url()
    max_bytes = max_bytes if max_bytes is not None else get_max_bytes()
    watchdog = watchdog if watchdog is not None else get_watchdog_seconds()

    try:
        body = validate_request(api_key, raw_body, max_bytes)
    except ChatError as e:
        logger.warning("Rejected proxy request: %s", e.message)
        return JSONResponse(e.to_dict(), status_code=e.status_code)

    streaming = body.get("stream") is True
    clean_body = dict(body, messages=strip_empty_messages(body["messages"]))
    dropped = len(body["messages"]) - len(clean_body["messages"])
    logger.info(
        "Forwarding %.2fKB to upstream (stream=%s, %d empty messages dropped)",
        len(raw_body) / 1024, streaming, dropped,
    )

    request = client.build_request("POST", url, headers=upstream_headers(api_key, streaming), json=clean_body)
    try:
        upstream = await asyncio.wait_for(client.send(request, stream=True), timeout=watchdog)
    except asyncio.TimeoutError:
        logger.error("Upstream did not respond within %ss", watchdog)
        return error_response(_timeout_error(watchdog), streaming)
    except httpx.HTTPError as e:
        logger.error("Error in proxy request: %s", e)
        return error_response(InternalError("Error processing the request", details=str(e)), streaming)

    if not upstream.is_success:
        return await _relay_upstream_error(upstream, streaming, watchdog)
    if streaming:
        return StreamingResponse(
            _forward_stream(upstream, watchdog),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )
    return await _relay_buffered(upstream, watchdog)


async def _relay_upstream_error(upstream: httpx.Response, streaming: bool, watchdog: float):
    try:
        raw = await asyncio.wait_for(upstream.aread(), timeout=watchdog)
    except asyncio.TimeoutError:
        return error_response(_timeout_error(watchdog), streaming)
    finally:
        await upstream.aclose()

    payload = _upstream_error_payload(upstream.status_code, raw)
    logger.error("Upstream error %d: %s", upstream.status_code, payload["error"].get("message"))

    if streaming:
        return StreamingResponse(iter([sse_frame(payload)]), media_type="text/event-stream", headers=SSE_HEADERS)
    error = UpstreamApiError(
        payload["error"].get("message") or "Error from the upstream API",
        payload["error"].get("type") or "api_error",
        upstream.status_code,
        details=payload,
    )
    return JSONResponse(error.to_dict(), status_code=upstream.status_code)


async def _relay_buffered(upstream: httpx.Response, watchdog: float):
    try:
        raw = await asyncio.wait_for(upstream.aread(), timeout=watchdog)
    except asyncio.TimeoutError:
        return error_response(_timeout_error(watchdog), streaming=False)
    finally:
        await upstream.aclose()

    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.error("Could not parse upstream response: %r", raw[:200])
        error = DecodeError("Error parsing upstream response", details=str(e))
        return JSONResponse(error.to_dict(), status_code=500)
    logger.info("Upstream response relayed")
    return JSONResponse(data)


async def _forward_stream(upstream: httpx.Response, watchdog: float):
    """Re-frame upstream lines as ``data:`` events and finish with ``[DONE]``."""
    utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""
    chunks = upstream.aiter_bytes().__aiter__()
    try:
        while True:
            try:
                chunk = await asyncio.wait_for(chunks.__anext__(), timeout=watchdog)
            except StopAsyncIteration:
                break
            except asyncio.TimeoutError:
                logger.error("Watchdog fired after %ss without upstream data", watchdog)
                yield sse_frame(_timeout_error(watchdog).to_dict())
                return

            buffer += utf8.decode(chunk)
            *lines, buffer = buffer.split("\n")
            for line in lines:
                if line.strip():
                    yield _forward_line(line)

        rest = buffer + utf8.decode(b"", final=True)
        if rest.strip():
            yield _forward_line(rest)
        yield b"data: [DONE]\n\n"
    except httpx.HTTPError as e:
        logger.error("Error while streaming: %s", e)
        yield sse_frame({"error": {"type": "api_error", "message": f"Streaming error: {e}"}})
    finally:
        await upstream.aclose()
