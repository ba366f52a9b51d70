"""
Gateway client for OpenRouter (OpenAI-compatible) completions.
Streams per-model events and merges concurrent model streams.
"""
from gtllm.gateway.base import (
    ChatMessage,
    Content,
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
from gtllm.gateway.openrouter import MultiStream, OpenRouterClient
from gtllm.gateway.retry_wrapper import RetryPolicy

__all__ = [
    "ChatMessage",
    "Content",
    "Credits",
    "Done",
    "Error",
    "ErrorKind",
    "GatewayError",
    "ModelInfo",
    "ModelStreamEvent",
    "StreamEvent",
    "is_terminal",
    "MultiStream",
    "OpenRouterClient",
    "RetryPolicy",
]
