"""
Gateway types shared by the client, the SSE parser and the mode engines.

Stream events are a small tagged union per model id:

    Content(delta)   a non-empty piece of assistant text
    Done()           terminal, the model finished
    Error(message)   terminal, the model failed (typed by ErrorKind)
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum


# ---------------------------------------------------------------------------
# Request / catalogue types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ChatMessage:
    role: str  # "system", "user", "assistant"
    content: str

    @classmethod
    def system(cls, content: str) -> "ChatMessage":
        return cls("system", content)

    @classmethod
    def user(cls, content: str) -> "ChatMessage":
        return cls("user", content)

    @classmethod
    def assistant(cls, content: str) -> "ChatMessage":
        return cls("assistant", content)

    def to_dict(self) -> dict:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class ModelInfo:
    """A model advertised by /models. Immutable once fetched."""
    id: str
    display_name: str | None = None
    context_length: int | None = None
    description: str | None = None
    prompt_price: str | None = None
    completion_price: str | None = None

    @property
    def label(self) -> str:
        return self.display_name or self.id

    @classmethod
    def from_api(cls, data: dict) -> "ModelInfo":
        pricing = data.get("pricing") or {}
        ctx = data.get("context_length")
        return cls(
            id=str(data["id"]),
            display_name=data.get("name") or None,
            context_length=int(ctx) if isinstance(ctx, (int, float)) else None,
            description=data.get("description") or None,
            prompt_price=pricing.get("prompt"),
            completion_price=pricing.get("completion"),
        )


@dataclass(frozen=True)
class Credits:
    total_credits: Decimal
    total_usage: Decimal

    @property
    def remaining(self) -> Decimal:
        return self.total_credits - self.total_usage

    def remaining_formatted(self) -> str:
        return f"${self.remaining:.2f}"

    @classmethod
    def from_api(cls, data: dict) -> "Credits":
        # str() first so float noise like 0.1 + 0.2 does not leak into Decimal
        return cls(
            total_credits=Decimal(str(data.get("total_credits", 0))),
            total_usage=Decimal(str(data.get("total_usage", 0))),
        )


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class ErrorKind(str, Enum):
    NETWORK = "network"
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    DATA_POLICY = "data_policy"
    BAD_REQUEST = "bad_request"
    SERVER = "server"
    PARSE = "parse"


# Phrases OpenRouter uses when a request is blocked by the account's privacy settings
_POLICY_PHRASES = ("data policy", "data retention")

# Transient: worth another attempt for non-streaming calls
RETRYABLE_KINDS = {ErrorKind.NETWORK, ErrorKind.RATE_LIMIT, ErrorKind.SERVER}


def mentions_data_policy(text: str) -> bool:
    lowered = text.lower()
    return any(p in lowered for p in _POLICY_PHRASES)


def classify_status(status_code: int, message: str = "") -> ErrorKind:
    """Map an HTTP status (and provider message) onto the error taxonomy."""
    # Privacy blocks arrive as 403, 404 or 451; the phrase is the reliable signal
    if mentions_data_policy(message) or status_code == 451:
        return ErrorKind.DATA_POLICY
    if status_code in (401, 403):
        return ErrorKind.AUTH
    if status_code == 429:
        return ErrorKind.RATE_LIMIT
    if status_code == 400:
        return ErrorKind.BAD_REQUEST
    if status_code >= 500:
        return ErrorKind.SERVER
    return ErrorKind.BAD_REQUEST


def extract_error_message(body: str) -> str:
    """Pull `error.message` out of a JSON error body, falling back to the raw text."""
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, TypeError):
        return body.strip() or "Unknown error"
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and isinstance(err.get("message"), str):
            return err["message"]
        if isinstance(err, str):
            return err
    return body.strip() or "Unknown error"


class GatewayError(Exception):
    """Raised by non-streaming gateway calls. Streams emit Error events instead."""

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.NETWORK, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    @classmethod
    def from_response(cls, status_code: int, body: str) -> "GatewayError":
        message = extract_error_message(body)
        return cls(
            f"OpenRouter error ({status_code}): {message}",
            kind=classify_status(status_code, message),
            status_code=status_code,
        )


# ---------------------------------------------------------------------------
# Stream events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Content:
    delta: str


@dataclass(frozen=True)
class Done:
    pass


@dataclass(frozen=True)
class Error:
    message: str
    kind: ErrorKind = ErrorKind.NETWORK
    status_code: int | None = None

    @classmethod
    def from_exception(cls, exc: GatewayError) -> "Error":
        return cls(exc.message, exc.kind, exc.status_code)


StreamEvent = Content | Done | Error


def is_terminal(event: StreamEvent) -> bool:
    return isinstance(event, (Done, Error))


@dataclass(frozen=True)
class ModelStreamEvent:
    model_id: str
    event: StreamEvent
