"""
Shared machinery for the chat-mode engines.

An engine owns one session. Each user message runs one *round*, made of one
or more *phases*; every phase fans prompts out to models through the
gateway's merged stream and drains it to completion. Progress is pushed to
the observer as plain event dicts:

    {type:"start",          round:N, message:"...", models:[...]}
    {type:"phase",          phase:"initial"|"review"|..., models:[...]}
    {type:"update",         phase, model_id, content}       (throttled)
    {type:"model_done",     phase, model_id, content, error}
    {type:"round_complete", round:{...}}
    {type:"saved",          session_id, path, checkpoint}
    {type:"persist_error",  session_id, error}
    {type:"cancelled"}

Engines add their own: "state" (PvP), "tally" (Competitive) and
"decision" (LLM-Choice). Every event also carries `mode` and `ts`.

The same events are available as an async generator via engine.stream().
Events are queued per listener, so the gateway stream is always drained at
network speed no matter how slow the consumer is.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict
from typing import AsyncGenerator, Awaitable, Callable, ClassVar

from gtllm.gateway.base import ChatMessage, Content, Error
from gtllm.storage.chat_history import SessionStore, SessionStoreError
from gtllm.storage.models import (
    ChatSession,
    History,
    ModelResponse,
    SessionData,
    derive_title,
    format_timestamp,
    new_session_id,
    timestamp_value,
)
from gtllm.types import ChatMode

logger = logging.getLogger(__name__)

Observer = Callable[[dict], None]

DEFAULT_THROTTLE = 0.05  # 20 updates/s per model


class EngineError(Exception):
    """Invalid engine configuration or use."""


class RoundInProgressError(EngineError):
    """A new message was sent while the previous round is still running."""


def _ev(type_: str, **kw) -> dict:
    """Create event dict with timestamp."""
    return {"type": type_, "ts": round(time.monotonic() * 1000), **kw}


class StreamBuffer:
    """
    Accumulates streamed text per model for one phase and rate-limits the
    `update` events sent to the UI. Text held back by the limit goes out on a
    trailing timer, so a model that stalls after a burst still shows it.
    model_done always carries the full text.
    """

    def __init__(
        self,
        emit: Callable[..., None],
        phase: str,
        interval: float = DEFAULT_THROTTLE,
        clock: Callable[[], float] = time.monotonic,
        call_later: Callable[..., asyncio.TimerHandle] | None = None,
    ):
        self._emit = emit
        self.phase = phase
        self.interval = interval
        self._clock = clock
        self._call_later = call_later
        self._parts: dict[str, list[str]] = {}
        self._last_flush: dict[str, float] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}

    def text(self, model_id: str) -> str:
        return "".join(self._parts.get(model_id, ()))

    def append(self, model_id: str, delta: str) -> None:
        self._parts.setdefault(model_id, []).append(delta)
        now = self._clock()
        last = self._last_flush.get(model_id)
        if last is not None and now - last < self.interval:
            if self._call_later is not None and model_id not in self._timers:
                delay = self.interval - (now - last)
                self._timers[model_id] = self._call_later(delay, self._flush, model_id)
            return
        self._flush(model_id)

    def _flush(self, model_id: str) -> None:
        timer = self._timers.pop(model_id, None)
        if timer is not None:
            timer.cancel()
        self._last_flush[model_id] = self._clock()
        self._emit("update", phase=self.phase, model_id=model_id, content=self.text(model_id))

    def finish(self, model_id: str, error: str | None = None) -> ModelResponse:
        timer = self._timers.pop(model_id, None)
        if timer is not None:
            timer.cancel()
        content = "" if error is not None else self.text(model_id)
        self._emit("model_done", phase=self.phase, model_id=model_id, content=content, error=error)
        return ModelResponse(model_id, content, error)

    def close(self) -> None:
        """Drop pending trailing updates."""
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()


class BaseEngine:
    """
    Common round lifecycle: one round at a time, cancellation, throttled
    streaming, and persistence exactly once per round.
    """

    mode: ClassVar[ChatMode]

    def __init__(
        self,
        client,
        history: History,
        *,
        store: SessionStore | None = None,
        observer: Observer | None = None,
        throttle_interval: float = DEFAULT_THROTTLE,
        clock: Callable[[], float] = time.monotonic,
        persist: bool = True,
    ):
        self.client = client
        self.history = history
        self.store = store
        self.persist = persist and store is not None
        self.throttle_interval = throttle_interval
        self._observer = observer
        self._clock = clock

        self.session: ChatSession | None = None
        self.created_at: str | None = None
        self.updated_at: str | None = None
        self.needs_save = False
        self._saved_before_round = False
        self._checkpointed = None

        self._round_task: asyncio.Task | None = None
        self._cancel_requested = False
        self._listeners: list[asyncio.Queue] = []
        self._closed = False

    # ── Construction from disk ────────────────────────────────────────────────

    @classmethod
    def _options_from_history(cls, history: History) -> dict:
        raise NotImplementedError

    @classmethod
    def from_session(cls, client, data: SessionData, **kwargs) -> "BaseEngine":
        """Rebuild an engine around a loaded session so the chat can continue."""
        if data.mode != cls.mode:
            raise EngineError(f"{cls.__name__} cannot open a {data.mode.value} session")
        engine = cls(client, **cls._options_from_history(data.history), **kwargs)
        engine.history = data.history
        engine.session = data.session
        engine.created_at = data.created_at
        engine.updated_at = data.updated_at
        engine._restored()
        return engine

    def _restored(self) -> None:
        """Hook for engines that derive state from loaded rounds."""

    # ── Properties ────────────────────────────────────────────────────────────

    @property
    def session_id(self) -> str | None:
        return self.session.id if self.session else None

    @property
    def busy(self) -> bool:
        return self._round_task is not None and not self._round_task.done()

    @property
    def rounds(self) -> list:
        return self.history.rounds

    # ── Events ────────────────────────────────────────────────────────────────

    def _emit(self, type_: str, **kw) -> None:
        event = _ev(type_, mode=self.mode.value, **kw)
        for queue in list(self._listeners):
            queue.put_nowait(event)
        if self._observer is None:
            return
        try:
            self._observer(event)
        except Exception as e:
            # A broken observer must not kill the round
            logger.warning("Observer failed on %s event: %s", type_, e)

    # ── Round lifecycle ───────────────────────────────────────────────────────

    async def send(self, message: str):
        """
        Run one full round for `message` and return it.
        Returns None when the round was cancelled via cancel().
        """
        return await self._run_exclusive(lambda: self._run_round(message))

    async def _run_exclusive(self, make_round: Callable[[], Awaitable]):
        if self._closed:
            raise EngineError("Engine is closed")
        if self.busy:
            raise RoundInProgressError("A round is already in progress")

        self._cancel_requested = False
        task = asyncio.create_task(make_round(), name=f"gtllm-round:{self.mode.value}")
        self._round_task = task
        try:
            return await task
        except asyncio.CancelledError:
            if self._cancel_requested:
                return None
            raise
        finally:
            self._round_task = None

    async def stream(self, message: str) -> AsyncGenerator[dict, None]:
        """Run a round and yield its events as they happen."""
        queue: asyncio.Queue = asyncio.Queue()
        self._listeners.append(queue)

        async def _run():
            try:
                return await self.send(message)
            finally:
                queue.put_nowait(None)

        task = asyncio.create_task(_run())
        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield event
            await task
        finally:
            self._listeners.remove(queue)
            if not task.done():
                self.cancel()
                await asyncio.gather(task, return_exceptions=True)

    def cancel(self) -> bool:
        """Abort the in-flight round. Its partial output is discarded."""
        if not self.busy:
            return False
        self._cancel_requested = True
        self._round_task.cancel()
        return True

    async def aclose(self) -> None:
        """Cancel any running round; the engine accepts no more messages."""
        self._closed = True
        task = self._round_task
        if task is not None and not task.done():
            self.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def _run_round(self, message: str, play: Callable[[str], Awaitable] | None = None):
        fresh = self.session is None
        if fresh:
            self.session = ChatSession(
                id=new_session_id(),
                title=derive_title(message, self.mode),
                mode=self.mode,
                timestamp=format_timestamp(),
            )
        self._saved_before_round = self.created_at is not None
        self._emit("start", round=len(self.history.rounds), message=message, models=self.participants())
        try:
            round_ = await (play or self._play_round)(message)
        except asyncio.CancelledError:
            logger.info("%s round cancelled", self.mode.label)
            await self._discard_checkpoint()
            if fresh:
                # The title came from a message that was never kept
                self.session = None
            self._emit("cancelled")
            raise

        self._checkpointed = None
        if not any(r is round_ for r in self.history.rounds):
            self.history.rounds.append(round_)
        self._emit("round_complete", round=self._round_dict(round_))
        await self._save()
        return round_

    # ── Subclass hooks ────────────────────────────────────────────────────────

    def participants(self) -> list[str]:
        raise NotImplementedError

    async def _play_round(self, message: str):
        """Run every phase of one round and return the finished round object."""
        raise NotImplementedError

    @staticmethod
    def _round_dict(round_) -> dict:
        return asdict(round_)

    # ── Phases ────────────────────────────────────────────────────────────────

    def _phase(self, phase: str, model_ids: list[str]) -> None:
        self._emit("phase", phase=phase, models=list(model_ids))

    async def _drain(self, phase: str, stream, model_ids: list[str]) -> list[ModelResponse]:
        buffer = StreamBuffer(
            self._emit, phase, self.throttle_interval, self._clock,
            call_later=asyncio.get_running_loop().call_later,
        )
        results: dict[str, ModelResponse] = {}
        try:
            async with stream:
                async for item in stream:
                    event = item.event
                    if isinstance(event, Content):
                        buffer.append(item.model_id, event.delta)
                    elif isinstance(event, Error):
                        logger.warning("%s: model '%s' failed in %s phase: %s",
                                       self.mode.label, item.model_id, phase, event.message)
                        results[item.model_id] = buffer.finish(item.model_id, event.message)
                    else:
                        results[item.model_id] = buffer.finish(item.model_id)
        finally:
            buffer.close()
        # Keep selection order; a model with no terminal event counts as failed
        return [
            results.get(mid) or ModelResponse(mid, "", "Stream ended without a response")
            for mid in model_ids
        ]

    async def _run_same(self, phase: str, model_ids: list[str], messages: list[ChatMessage]) -> list[ModelResponse]:
        """One phase where every model gets the same conversation."""
        if not model_ids:
            return []
        self._phase(phase, model_ids)
        return await self._drain(phase, self.client.stream_completion_multi(model_ids, messages), model_ids)

    async def _run_each(self, phase: str, requests: dict[str, list[ChatMessage]]) -> list[ModelResponse]:
        """One phase with a separate conversation per model."""
        if not requests:
            return []
        self._phase(phase, list(requests))
        return await self._drain(phase, self.client.stream_completion_each(requests), list(requests))

    async def _run_one(self, phase: str, model_id: str, messages: list[ChatMessage]) -> ModelResponse:
        (response,) = await self._run_each(phase, {model_id: messages})
        return response

    # ── Persistence ───────────────────────────────────────────────────────────

    def snapshot(self) -> SessionData:
        now = format_timestamp()
        created = self.created_at or now
        if timestamp_value(now) < timestamp_value(created):
            now = created
        return SessionData(self.session, self.history, created, now)

    async def _save(self, checkpoint: bool = False) -> bool:
        if not self.persist or self.session is None:
            return False
        data = self.snapshot()
        try:
            path = await asyncio.to_thread(self.store.save, data)
        except SessionStoreError as e:
            logger.error("Failed to save session %s: %s", data.session.id, e)
            self.needs_save = True
            self._emit("persist_error", session_id=data.session.id, error=str(e))
            return False
        self.created_at = data.created_at
        self.updated_at = data.updated_at
        self.needs_save = False
        self._emit("saved", session_id=data.session.id, path=str(path), checkpoint=checkpoint)
        return True

    async def retry_save(self) -> bool:
        """Re-attempt a save that failed earlier."""
        if self.busy:
            raise RoundInProgressError("Cannot save while a round is in progress")
        return await self._save()

    async def _discard_checkpoint(self) -> None:
        """Drop a partially played round that a checkpoint already wrote to disk."""
        partial, self._checkpointed = self._checkpointed, None
        if partial is None:
            return
        self.history.rounds[:] = [r for r in self.history.rounds if r is not partial]
        if not self.persist:
            return
        if self._saved_before_round:
            await self._save()
            return
        # The checkpoint created the file; nothing else lives in it
        try:
            await asyncio.to_thread(self.store.delete, self.session.id)
        except SessionStoreError as e:
            logger.error("Failed to remove checkpoint for %s: %s", self.session.id, e)
        self.created_at = None

    async def _checkpoint(self, round_) -> None:
        """Record an unfinished round in place so a crash can resume it."""
        if not any(r is round_ for r in self.history.rounds):
            self.history.rounds.append(round_)
        self._checkpointed = round_
        await self._save(checkpoint=True)
