"""
Session persistence: per-mode history models and the JSON session store.
"""
from gtllm.storage.chat_history import SessionStore, SessionStoreError
from gtllm.storage.models import ChatSession, SessionData

__all__ = [
    "SessionStore",
    "SessionStoreError",
    "ChatSession",
    "SessionData",
]
