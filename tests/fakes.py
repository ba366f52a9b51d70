"""
Scripted stand-in for OpenRouterClient, used by the engine tests.

Each model id maps to a reply:
    "text"                 streamed as two Content chunks, then Done
    [Content(..), Error()] exact event list
    callable(messages)     returns either of the above, per call
    HANG                   never finishes (for cancellation tests)

Fan-out goes through the real MultiStream so merge semantics are exercised.
"""

import asyncio

from gtllm.gateway.base import ChatMessage, Content, Done, Error, ErrorKind
from gtllm.gateway.openrouter import MultiStream

HANG = object()


def rate_limited(model_id: str = "model") -> list:
    return [Error(f"OpenRouter error (429): Rate limit exceeded for {model_id}", ErrorKind.RATE_LIMIT, 429)]


def by_prompt(replies: dict):
    """
    Reply chosen by the first marker found in the last message, e.g.
    by_prompt({"Review the following": "looks fine", "": "my answer"}).
    """
    def reply(messages):
        text = messages[-1].content
        for marker, answer in replies.items():
            if marker in text:
                return answer
        raise AssertionError(f"unexpected prompt: {text[:80]!r}")
    return reply


class FakeClient:
    def __init__(self, script: dict | None = None):
        self.script = dict(script or {})
        self.calls: list[tuple[str, list[ChatMessage]]] = []
        self.started = asyncio.Event()

    def calls_for(self, model_id: str) -> list[list[ChatMessage]]:
        return [messages for mid, messages in self.calls if mid == model_id]

    def prompts_for(self, model_id: str) -> list[str]:
        """Last message text of every call made to `model_id`."""
        return [messages[-1].content for messages in self.calls_for(model_id)]

    def _events(self, model_id: str, messages: list[ChatMessage]):
        reply = self.script.get(model_id, f"reply from {model_id}")
        if callable(reply):
            reply = reply(messages)
        if reply is HANG:
            return HANG
        if isinstance(reply, str):
            half = len(reply) // 2
            return [Content(p) for p in (reply[:half], reply[half:]) if p] + [Done()]
        return list(reply)

    async def stream_completion(self, model_id: str, messages: list[ChatMessage]):
        self.calls.append((model_id, list(messages)))
        self.started.set()
        events = self._events(model_id, messages)
        if events is HANG:
            await asyncio.Event().wait()
        for event in events:
            await asyncio.sleep(0)
            yield event

    def stream_completion_each(self, requests: dict[str, list[ChatMessage]]) -> MultiStream:
        return MultiStream({mid: self.stream_completion(mid, msgs) for mid, msgs in requests.items()})

    def stream_completion_multi(self, model_ids: list[str], messages: list[ChatMessage]) -> MultiStream:
        assert len(set(model_ids)) == len(model_ids)
        return self.stream_completion_each({mid: list(messages) for mid in model_ids})

    async def aclose(self) -> None:
        pass


class Recorder:
    """Observer that keeps every engine event."""

    def __init__(self):
        self.events: list[dict] = []

    def __call__(self, event: dict) -> None:
        self.events.append(event)

    def types(self) -> list[str]:
        return [e["type"] for e in self.events]

    def of(self, type_: str) -> list[dict]:
        return [e for e in self.events if e["type"] == type_]


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTimers:
    """Stand-in for loop.call_later; callbacks run only when fire() is called."""

    class Handle:
        def __init__(self, delay, callback, args):
            self.delay = delay
            self.callback = callback
            self.args = args
            self.cancelled = False

        def cancel(self) -> None:
            self.cancelled = True

    def __init__(self):
        self.handles: list[FakeTimers.Handle] = []

    def call_later(self, delay, callback, *args):
        handle = self.Handle(delay, callback, args)
        self.handles.append(handle)
        return handle

    def pending(self) -> list:
        return [h for h in self.handles if not h.cancelled]

    def fire(self) -> None:
        for handle in self.pending():
            handle.cancelled = True
            handle.callback(*handle.args)
