"""Streaming client for the messages endpoint.

Sends one user message plus history through the relay and turns the
event-stream response into ``Update`` / ``Complete`` / ``Error`` events.

Frames look like ``data: <json>\\n\\n`` and the stream ends with
``data: [DONE]``. Chunks are split on ``\\n`` with the trailing partial line
held back for the next chunk, so the decoded text does not depend on where
the network happened to cut the bytes.

Lines the relay forwards from upstream that are not JSON, e.g.
``data: event: content_block_delta``, are ignored when they carry an
``event:`` marker. Any other undecodable payload fails the stream.
"""

import asyncio
import codecs
import enum
import json
import logging
import time
from dataclasses import dataclass, field

import httpx

from .composer import compose_system_context, system_to_wire
from .config import ANTHROPIC_VERSION, CACHING_BETA, MAX_RETRIES, RETRY_DELAY_SECONDS, get_idle_timeout_seconds
from .core import Complete, Error, SystemContext, Update, block_to_wire, message_to_wire
from .errors import ChatError, DecodeError, StreamTimeoutError, UpstreamApiError, error_from_payload

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
DONE = "[DONE]"


class StreamState(enum.Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class SSEDecoder:
    """Incremental line decoder for ``data:`` frames."""

    def __init__(self):
        self.buffer = ""
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def feed(self, chunk: bytes | str) -> list[str]:
        """Add a chunk and return the payloads of every line it completed."""
        if isinstance(chunk, bytes):
            chunk = self._utf8.decode(chunk)
        self.buffer += chunk
        *lines, self.buffer = self.buffer.split("\n")
        return [p for p in map(self._payload, lines) if p is not None]

    def flush(self) -> list[str]:
        """Return the payload of any unterminated last line."""
        rest = self.buffer + self._utf8.decode(b"", final=True)
        self.buffer = ""
        payload = self._payload(rest)
        return [payload] if payload is not None else []

    @staticmethod
    def _payload(line: str) -> str | None:
        line = line.strip()
        if not line.startswith(DATA_PREFIX):
            return None
        return line[len(DATA_PREFIX):]


@dataclass
class StreamSession:
    """Per-request decoding state. Discarded when the stream ends."""

    retry_count: int = 0
    state: StreamState = StreamState.IDLE
    decoder: SSEDecoder = field(default_factory=SSEDecoder)
    accumulated_text: str = ""
    last_event_time: float = 0.0

    def handle(self, payload: str):
        """Interpret one payload. Returns an event, or None for ignored frames.

        Raises a ``ChatError`` for in-band errors and undecodable frames.
        """
        if payload.strip() == DONE:
            self.state = StreamState.COMPLETED
            return Complete(self.accumulated_text)

        try:
            parsed = json.loads(payload)
        except json.JSONDecodeError as e:
            if "event:" in payload:
                return None
            raise DecodeError(f"Error processing response: {e}", details=payload[:200]) from e

        error = error_from_payload(parsed)
        if error is not None:
            raise error
        if not isinstance(parsed, dict):
            logger.debug("Ignoring non-object frame: %r", parsed)
            return None

        event_type = parsed.get("type")
        if event_type == "content_block_delta":
            delta = (parsed.get("delta") or {}).get("text")
            if delta:
                self.accumulated_text += delta
                return Update(delta, self.accumulated_text)
        elif event_type in ("message_start", "content_block_start"):
            logger.debug("Stream event: %s", event_type)
        elif event_type in ("content_block_stop", "message_stop"):
            logger.debug("Stream event: %s", event_type)
        return None


class StreamClient:
    """Send messages and stream the assistant reply.

    ``clock`` and ``sleep`` are injectable so timeouts and retry delays can be
    simulated.
    """

    def __init__(
        self,
        url: str,
        http_client: httpx.AsyncClient | None = None,
        idle_timeout: float | None = None,
        max_retries: int = MAX_RETRIES,
        retry_delay: float = RETRY_DELAY_SECONDS,
        clock=time.monotonic,
        sleep=asyncio.sleep,
    ):
        self.url = url
        self.http_client = http_client
        self.idle_timeout = idle_timeout if idle_timeout is not None else get_idle_timeout_seconds()
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._clock = clock
        self._sleep = sleep

    def build_request_body(
        self,
        message: list,
        system_context: SystemContext | None,
        history: list,
        model: str,
        max_tokens: int,
    ) -> dict:
        """Build the upstream request. File metadata and cache hints are dropped from messages."""
        body = {"model": model, "max_tokens": max_tokens, "stream": True}
        system = compose_system_context(system_context) if system_context else []
        if system:
            body["system"] = system_to_wire(system)
        body["messages"] = [message_to_wire(m) for m in history]
        body["messages"].append({"role": "user", "content": [block_to_wire(b) for b in message]})
        return body

    async def send(
        self,
        message: list,
        system_context: SystemContext | None,
        history: list,
        api_key: str,
        model: str,
        max_tokens: int,
    ):
        """Yield ``Update`` events then one ``Complete`` or ``Error``.

        An overload error restarts the whole request, up to ``max_retries``
        attempts in total with a fixed delay before each retry.
        """
        body = self.build_request_body(message, system_context, history, model, max_tokens)

        for attempt in range(1, self.max_retries + 1):
            session = StreamSession(retry_count=attempt - 1)
            overloaded = False
            events = self._attempt(session, body, api_key)
            try:
                async for event in events:
                    if isinstance(event, Error) and event.error_type == "overloaded_error" and attempt < self.max_retries:
                        overloaded = True
                        break
                    yield event
            finally:
                await events.aclose()
            if not overloaded:
                return
            logger.info("Upstream overloaded, retrying in %ss (retry %d/%d)", self.retry_delay, attempt, self.max_retries - 1)
            await self._sleep(self.retry_delay)

    async def _attempt(self, session: StreamSession, body: dict, api_key: str):
        headers = {
            "content-type": "application/json",
            "x-api-key": api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "anthropic-beta": CACHING_BETA,
            "accept": "text/event-stream",
        }
        client = self.http_client or httpx.AsyncClient(timeout=httpx.Timeout(None, connect=30.0))
        session.state = StreamState.SENDING
        logger.info("Sending request to %s (model=%s, attempt %d)", self.url, body.get("model"), session.retry_count + 1)

        try:
            async with client.stream("POST", self.url, json=body, headers=headers) as response:
                if not response.is_success:
                    raise await _error_from_response(response)

                session.state = StreamState.STREAMING
                session.last_event_time = self._clock()
                chunks = response.aiter_bytes().__aiter__()
                while True:
                    try:
                        chunk = await asyncio.wait_for(chunks.__anext__(), timeout=self.idle_timeout)
                    except StopAsyncIteration:
                        break
                    except asyncio.TimeoutError:
                        raise StreamTimeoutError("response timeout") from None

                    now = self._clock()
                    if now - session.last_event_time > self.idle_timeout:
                        raise StreamTimeoutError("response timeout")
                    session.last_event_time = now

                    for payload in session.decoder.feed(chunk):
                        event = session.handle(payload)
                        if event is not None:
                            yield event
                        if isinstance(event, Complete):
                            return

                for payload in session.decoder.flush():
                    event = session.handle(payload)
                    if event is not None:
                        yield event
                    if isinstance(event, Complete):
                        return

                logger.warning("Stream closed without [DONE]; completing with %d chars", len(session.accumulated_text))
                session.state = StreamState.COMPLETED
                yield Complete(session.accumulated_text)

        except StreamTimeoutError as e:
            session.state = StreamState.TIMED_OUT
            logger.error("Stream timed out after %ss without data", self.idle_timeout)
            yield Error(e.message, e.error_type)
        except ChatError as e:
            session.state = StreamState.FAILED
            logger.error("Stream failed: %s", e.message)
            yield Error(e.message, e.error_type)
        except httpx.HTTPError as e:
            session.state = StreamState.FAILED
            logger.error("Error communicating with the API: %s", e)
            yield Error(f"Error communicating with the API: {e}", "api_error")
        finally:
            if self.http_client is None:
                await client.aclose()


async def _error_from_response(response: httpx.Response) -> ChatError:
    raw = await response.aread()
    text = raw.decode("utf-8", errors="replace")
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        payload = None
    error = error_from_payload(payload) if isinstance(payload, dict) else None
    if error is None:
        error = UpstreamApiError(text or f"HTTP {response.status_code}", status_code=response.status_code)
    return error
