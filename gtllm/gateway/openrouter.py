"""
OpenRouter client: the gateway every chat mode talks through.

Speaks the OpenAI-compatible API:

    GET  /models             model catalogue
    GET  /credits            account balance
    POST /chat/completions   streamed (SSE) or plain completions

One httpx.AsyncClient (and its connection pool) is shared by every request,
so N concurrent model streams reuse keep-alive connections. Streams never
raise for transport problems: failures become Error events so one broken
model cannot take its siblings down.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import AsyncIterator

import httpx

from gtllm.config import get_config
from gtllm.gateway.base import (
    ChatMessage,
    Credits,
    Done,
    Error,
    ErrorKind,
    GatewayError,
    ModelInfo,
    ModelStreamEvent,
    StreamEvent,
    is_terminal,
)
from gtllm.gateway.retry_wrapper import RetryPolicy
from gtllm.gateway.sse import SSEParser

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"


class MultiStream:
    """
    Many-to-one merge of per-model streams.

    One task per model pumps its events into a shared queue; the consumer
    iterates ModelStreamEvent items keyed by model id. Every model id yields
    exactly one terminal event (Done or Error) and iteration stops after the
    last one. aclose() cancels the pumps, which closes their HTTP responses.
    """

    def __init__(self, streams: dict[str, AsyncIterator[StreamEvent]]):
        self._queue: asyncio.Queue[ModelStreamEvent] = asyncio.Queue()
        self._pending: set[str] = set(streams)
        self._closed = False
        self._tasks = [
            asyncio.create_task(self._pump(model_id, stream), name=f"gtllm-stream:{model_id}")
            for model_id, stream in streams.items()
        ]

    @property
    def model_ids(self) -> set[str]:
        return set(self._pending)

    async def _pump(self, model_id: str, stream: AsyncIterator[StreamEvent]) -> None:
        terminal: StreamEvent | None = None
        try:
            async for event in stream:
                if is_terminal(event):
                    terminal = event
                    break
                self._queue.put_nowait(ModelStreamEvent(model_id, event))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Stream for model '%s' failed: %s", model_id, e)
            terminal = Error(f"Stream error: {e}", ErrorKind.NETWORK)
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
        self._queue.put_nowait(ModelStreamEvent(model_id, terminal or Done()))

    def __aiter__(self) -> "MultiStream":
        return self

    async def __anext__(self) -> ModelStreamEvent:
        if self._closed or not self._pending:
            raise StopAsyncIteration
        item = await self._queue.get()
        if is_terminal(item.event):
            self._pending.discard(item.model_id)
        return item

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)

    async def __aenter__(self) -> "MultiStream":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()


class OpenRouterClient:
    """Async client for OpenRouter (or any OpenAI-compatible gateway)."""

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        referer: str = "https://github.com/gtllm/gtllm",
        title: str = "gtllm",
        connect_timeout: float = 30,
        idle_timeout: float = 60,
        max_retries: int = 2,
        backoff_base: float = 1.5,
        backoff_max: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.referer = referer
        self.title = title
        self.connect_timeout = connect_timeout
        self.idle_timeout = idle_timeout
        self._retry = RetryPolicy(max_retries, backoff_base, backoff_max)
        # read= is the per-chunk idle timeout once a stream is open
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(connect=connect_timeout, read=idle_timeout, write=connect_timeout, pool=connect_timeout),
            limits=httpx.Limits(max_keepalive_connections=10, keepalive_expiry=90),
            transport=transport,
        )

    @classmethod
    def from_config(cls, api_key: str, cfg: dict | None = None, **overrides) -> "OpenRouterClient":
        """Create a client from the `gateway:` block of config.yaml."""
        g_cfg = (cfg or get_config()).get("gateway", {})
        kwargs = {
            "base_url": g_cfg.get("base_url", DEFAULT_BASE_URL),
            "referer": g_cfg.get("referer", "https://github.com/gtllm/gtllm"),
            "title": g_cfg.get("title", "gtllm"),
            "connect_timeout": g_cfg.get("connect_timeout", 30),
            "idle_timeout": g_cfg.get("idle_timeout", 60),
            "max_retries": g_cfg.get("max_retries", 2),
            "backoff_base": g_cfg.get("backoff_base", 1.5),
            "backoff_max": g_cfg.get("backoff_max", 10.0),
        }
        kwargs.update(overrides)
        return cls(api_key, **kwargs)

    def _headers(self) -> dict:
        """Build request headers with auth and app attribution."""
        headers = {
            "HTTP-Referer": self.referer,
            "X-Title": self.title,
        }
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _require_key(self) -> None:
        if not self.api_key:
            raise GatewayError("No API key configured for OpenRouter", ErrorKind.AUTH)

    # ── Plain requests ────────────────────────────────────────────────────────

    async def _request_json(self, method: str, path: str, what: str, **kwargs) -> dict:
        try:
            resp = await self._client.request(method, f"{self.base_url}{path}", headers=self._headers(), **kwargs)
        except httpx.TimeoutException:
            raise GatewayError(f"Failed to {what}: request timed out", ErrorKind.NETWORK)
        except httpx.HTTPError as e:
            raise GatewayError(f"Failed to {what}: {e}", ErrorKind.NETWORK)

        if resp.status_code >= 400:
            raise GatewayError.from_response(resp.status_code, resp.text)

        try:
            data = resp.json()
        except ValueError as e:
            raise GatewayError(f"Failed to parse {what} response: {e}", ErrorKind.PARSE, resp.status_code)
        if not isinstance(data, dict):
            raise GatewayError(f"Failed to parse {what} response: expected an object", ErrorKind.PARSE, resp.status_code)
        return data

    async def list_models(self) -> list[ModelInfo]:
        """Fetch the model catalogue. Raises GatewayError with a readable message."""
        self._require_key()
        data = await self._retry.call("list_models", lambda: self._request_json("GET", "/models", "fetch models"))
        models = []
        for entry in data.get("data") or []:
            if isinstance(entry, dict) and entry.get("id"):
                models.append(ModelInfo.from_api(entry))
        logger.info("Fetched %d models from %s", len(models), self.base_url)
        return models

    async def get_credits(self) -> Credits:
        self._require_key()
        data = await self._retry.call("get_credits", lambda: self._request_json("GET", "/credits", "fetch credits"))
        payload = data.get("data")
        if not isinstance(payload, dict):
            raise GatewayError("Failed to parse credits response: missing data", ErrorKind.PARSE)
        try:
            return Credits.from_api(payload)
        except ArithmeticError as e:
            raise GatewayError(f"Failed to parse credits response: {e}", ErrorKind.PARSE)

    async def complete(self, model_id: str, messages: list[ChatMessage]) -> str:
        """Non-streaming completion; returns the assistant text."""
        self._require_key()
        body = {
            "model": model_id,
            "messages": [m.to_dict() for m in messages],
            "stream": False,
        }
        data = await self._retry.call(
            f"complete({model_id})",
            lambda: self._request_json("POST", "/chat/completions", "send request", json=body),
        )
        err = data.get("error")
        if err:
            message = err.get("message", str(err)) if isinstance(err, dict) else str(err)
            raise GatewayError(f"API error: {message}", ErrorKind.SERVER)
        choices = data.get("choices") or []
        if not choices:
            raise GatewayError("Failed to parse response: no choices", ErrorKind.PARSE)
        return (choices[0].get("message") or {}).get("content") or ""

    # ── Streaming ─────────────────────────────────────────────────────────────

    async def stream_completion(self, model_id: str, messages: list[ChatMessage]) -> AsyncIterator[StreamEvent]:
        """
        Stream one model's answer as Content events followed by Done.
        Failures yield a single Error, then Done. Closing the generator
        (aclose / leaving an aclosing() block) aborts the HTTP request.
        """
        async with contextlib.aclosing(self._stream_events(model_id, messages)) as events:
            async for event in events:
                yield event
                if isinstance(event, Error):
                    yield Done()
                    return
                if isinstance(event, Done):
                    return
        yield Done()

    async def _stream_events(self, model_id: str, messages: list[ChatMessage]) -> AsyncIterator[StreamEvent]:
        if not self.api_key:
            yield Error("No API key configured for OpenRouter", ErrorKind.AUTH)
            return

        body = {
            "model": model_id,
            "messages": [m.to_dict() for m in messages],
            "stream": True,
        }
        parser = SSEParser()
        try:
            async with self._client.stream(
                "POST",
                f"{self.base_url}/chat/completions",
                headers=self._headers(),
                json=body,
            ) as resp:
                if resp.status_code >= 400:
                    raw = (await resp.aread()).decode("utf-8", errors="replace")
                    err = GatewayError.from_response(resp.status_code, raw)
                    logger.warning("Model '%s' stream rejected: %s", model_id, err.message)
                    yield Error.from_exception(err)
                    return

                # aiter_text decodes incrementally, so split UTF-8 sequences are safe
                async for chunk in resp.aiter_text():
                    for event in parser.feed(chunk):
                        yield event
                        if is_terminal(event):
                            return
                for event in parser.flush():
                    yield event
                    if is_terminal(event):
                        return
        except httpx.TimeoutException:
            logger.warning("Model '%s' stream timed out", model_id)
            yield Error(f"Request to {model_id} timed out", ErrorKind.NETWORK)
        except httpx.HTTPError as e:
            logger.warning("Model '%s' stream failed: %s", model_id, e)
            yield Error(f"Stream error: {e}", ErrorKind.NETWORK)

    def stream_completion_each(self, requests: dict[str, list[ChatMessage]]) -> MultiStream:
        """Fan out one stream per model, each with its own messages, merged into one channel."""
        return MultiStream({
            model_id: self.stream_completion(model_id, messages)
            for model_id, messages in requests.items()
        })

    def stream_completion_multi(self, model_ids: list[str], messages: list[ChatMessage]) -> MultiStream:
        """Send the same messages to every model concurrently."""
        if len(set(model_ids)) != len(model_ids):
            raise ValueError(f"Duplicate model ids in {model_ids}")
        return self.stream_completion_each({model_id: list(messages) for model_id in model_ids})

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "OpenRouterClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} url={self.base_url!r}>"
