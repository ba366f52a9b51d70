"""
ChatApp: the entry point the UI layer drives.

    app = ChatApp()                         # settings.toml + config.yaml
    engine = app.new_engine("standard", ["openai/gpt-4o", "anthropic/claude-3.5-sonnet"])
    async for event in engine.stream("hi"):
        ...
    await app.aclose()

Holds the settings, the config, one shared OpenRouterClient (created lazily
from the stored API key) and the session store.
"""

from __future__ import annotations

import logging
from pathlib import Path

import httpx

from gtllm.config import get_config
from gtllm.gateway.base import ErrorKind, GatewayError
from gtllm.gateway.openrouter import OpenRouterClient
from gtllm.modes import ENGINES, BaseEngine, EngineError
from gtllm.modes.base import Observer
from gtllm.settings import Settings, load_settings, save_settings
from gtllm.storage.chat_history import SessionStore
from gtllm.storage.models import SessionData
from gtllm.types import ChatMode

logger = logging.getLogger(__name__)


def setup_logging(cfg: dict) -> None:
    log_cfg = cfg.get("logging", {})
    level = getattr(logging, str(log_cfg.get("level", "INFO")).upper(), logging.INFO)
    log_file = log_cfg.get("file")

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


class ChatApp:
    def __init__(
        self,
        settings: Settings | None = None,
        cfg: dict | None = None,
        store: SessionStore | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.cfg = cfg or get_config()
        self.settings = settings or load_settings()
        self.store = store or SessionStore()
        self._transport = transport
        self._client: OpenRouterClient | None = None
        if self.settings.load_error:
            logger.warning("Settings fell back to defaults: %s", self.settings.load_error)

    def client(self) -> OpenRouterClient:
        """The shared gateway client. Raises GatewayError(auth) without an API key."""
        if self._client is None:
            if not self.settings.has_api_key():
                raise GatewayError("No OpenRouter API key configured", ErrorKind.AUTH)
            self._client = OpenRouterClient.from_config(
                self.settings.openrouter_api_key,
                self.cfg,
                transport=self._transport,
            )
        return self._client

    def _engine_options(self, mode: ChatMode, observer: Observer | None, options: dict) -> dict:
        engine_cfg = self.cfg.get("engine", {})
        merged = {
            "store": self.store,
            "observer": observer,
            "throttle_interval": engine_cfg.get("throttle_ms", 50) / 1000,
        }
        if mode == ChatMode.COMPETITIVE:
            merged["checkpoint_phases"] = engine_cfg.get("checkpoint_phases", True)
        merged.update(options)
        return merged

    def new_engine(
        self,
        mode: ChatMode | str,
        models: list[str],
        observer: Observer | None = None,
        **options,
    ) -> BaseEngine:
        """
        Start a new session in `mode`. For PvP, `models` are the two bots and
        the moderator is passed as moderator=...
        """
        mode = ChatMode(mode)
        opts = self._engine_options(mode, observer, options)
        if mode == ChatMode.PVP:
            return ENGINES[mode](self.client(), bots=list(models), **opts)
        if mode == ChatMode.COLLABORATIVE:
            opts.setdefault(
                "consensus_strategy",
                self.cfg.get("collaborative", {}).get("consensus_strategy", "synthesizer"),
            )
        return ENGINES[mode](self.client(), list(models), **opts)

    def open_engine(self, session_id: str, observer: Observer | None = None, **options) -> BaseEngine:
        """Load a saved session and rebuild its engine so the chat can continue."""
        data = self.store.load(session_id)
        engine_cls = ENGINES.get(data.mode)
        if engine_cls is None:
            raise EngineError(f"No engine for mode {data.mode.value!r}")
        opts = self._engine_options(data.mode, observer, options)
        return engine_cls.from_session(self.client(), data, **opts)

    def list_sessions(self) -> list[SessionData]:
        return self.store.list_sessions()

    def delete_session(self, session_id: str) -> bool:
        return self.store.delete(session_id)

    async def save_settings(self, settings: Settings) -> None:
        """Persist settings; the next client() call picks up a changed key."""
        save_settings(settings)
        key_changed = settings.openrouter_api_key != self.settings.openrouter_api_key
        self.settings = settings
        if key_changed and self._client is not None:
            old, self._client = self._client, None
            await old.aclose()
            logger.info("API key changed, gateway client will be rebuilt")

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
