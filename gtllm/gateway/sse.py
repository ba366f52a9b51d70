"""
Server-Sent Events parsing for OpenAI-compatible chat completion streams.

Wire format, one event per line:

    : OPENROUTER PROCESSING                  keep-alive comment, skipped
    data: {"choices":[{"delta":{"content":"Hel"}}]}
    data: {"choices":[{"delta":{},"finish_reason":"stop"}]}
    data: [DONE]

Network chunks can split a line anywhere (even inside a multi-byte
character), so SSEParser buffers the partial tail until its newline arrives.
"""

from __future__ import annotations

import json
import logging

from gtllm.gateway.base import Content, Done, Error, ErrorKind, StreamEvent

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


def parse_sse_line(line: str) -> list[StreamEvent]:
    """Parse one complete SSE line into zero or more stream events."""
    line = line.strip()
    if not line or line.startswith(":"):
        return []
    if not line.startswith(DATA_PREFIX):
        # event:/id:/retry: fields carry nothing we use
        return []

    data = line[len(DATA_PREFIX):].strip()
    if data == DONE_SENTINEL:
        return [Done()]

    try:
        payload = json.loads(data)
    except json.JSONDecodeError as e:
        # Never log the payload itself: it is prompt/response content
        logger.warning("Skipping malformed SSE chunk: %s (payload_len=%d)", e, len(data))
        return []
    if not isinstance(payload, dict):
        logger.warning("Skipping non-object SSE chunk (payload_len=%d)", len(data))
        return []

    err = payload.get("error")
    if err:
        message = err.get("message") if isinstance(err, dict) else str(err)
        code = err.get("code") if isinstance(err, dict) else None
        return [Error(message or "Unknown stream error", ErrorKind.SERVER, code if isinstance(code, int) else None)]

    events: list[StreamEvent] = []
    choices = payload.get("choices") or []
    if choices and isinstance(choices[0], dict):
        choice = choices[0]
        delta = choice.get("delta") or {}
        content = delta.get("content") if isinstance(delta, dict) else None
        if isinstance(content, str) and content:
            events.append(Content(content))

        finish_reason = choice.get("finish_reason")
        if finish_reason == "error":
            events.append(Error("Stream terminated with error", ErrorKind.SERVER))
        elif finish_reason:
            events.append(Done())
    return events


class SSEParser:
    """Incremental parser; feed() raw text as it arrives, flush() at EOF."""

    def __init__(self):
        self._buffer = ""

    def feed(self, chunk: str) -> list[StreamEvent]:
        self._buffer += chunk
        events: list[StreamEvent] = []
        while True:
            idx = self._buffer.find("\n")
            if idx < 0:
                break
            line = self._buffer[:idx].rstrip("\r")
            self._buffer = self._buffer[idx + 1:]
            events.extend(parse_sse_line(line))
        return events

    def flush(self) -> list[StreamEvent]:
        """Parse whatever is left once the stream closes."""
        rest, self._buffer = self._buffer, ""
        if rest.strip():
            return parse_sse_line(rest)
        return []


def parse_sse_text(text: str) -> list[StreamEvent]:
    """Parse a complete SSE body in one go."""
    parser = SSEParser()
    return parser.feed(text) + parser.flush()
