"""
Settings store: API key and theme preference.

Persisted as TOML at <config>/gtllm/settings.toml:

    openrouter_api_key = "sk-or-..."
    theme = "dracula"
    theme_mode = "dark"

A missing file yields defaults. A broken file also yields defaults, with
`load_error` set so the UI can show a notice. Saving uses the same
tmp-rename pattern as the session store and leaves the file at 0600.
"""

from __future__ import annotations

import logging
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

import tomli_w

from gtllm.paths import settings_path
from gtllm.storage.atomic import atomic_write_text
from gtllm.theme import DEFAULT_THEME, Theme, ThemeMode

logger = logging.getLogger(__name__)


@dataclass
class Settings:
    openrouter_api_key: str | None = None
    theme: str = DEFAULT_THEME.value
    theme_mode: ThemeMode = ThemeMode.DARK
    # Not persisted: set when the file existed but could not be read
    load_error: str | None = field(default=None, compare=False, repr=False)

    def has_api_key(self) -> bool:
        return bool(self.openrouter_api_key)

    def set_api_key(self, api_key: str) -> None:
        self.openrouter_api_key = api_key.strip() or None

    def clear_api_key(self) -> None:
        self.openrouter_api_key = None

    @property
    def theme_enum(self) -> Theme:
        return Theme.from_str(self.theme) or DEFAULT_THEME

    def to_dict(self) -> dict:
        data = {"theme": self.theme, "theme_mode": self.theme_mode.value}
        # TOML has no null; an absent key means "no key configured"
        if self.openrouter_api_key:
            data["openrouter_api_key"] = self.openrouter_api_key
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Settings":
        key = data.get("openrouter_api_key")
        if key is not None and not isinstance(key, str):
            raise ValueError("openrouter_api_key must be a string")

        theme = data.get("theme", DEFAULT_THEME.value)
        if Theme.from_str(str(theme)) is None:
            logger.warning("Unknown theme '%s' in settings, using %s", theme, DEFAULT_THEME.value)
            theme = DEFAULT_THEME.value

        mode_raw = str(data.get("theme_mode", ThemeMode.DARK.value)).lower()
        try:
            theme_mode = ThemeMode(mode_raw)
        except ValueError:
            raise ValueError(f"theme_mode must be 'dark' or 'light', got {mode_raw!r}")

        return cls(openrouter_api_key=key or None, theme=str(theme).lower(), theme_mode=theme_mode)


def load_settings(path: Path | None = None) -> Settings:
    """Load settings; never raises."""
    path = path or settings_path()
    if not path.exists():
        return Settings()

    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
        return Settings.from_dict(data)
    except (OSError, tomllib.TOMLDecodeError, ValueError) as e:
        logger.warning("Failed to load settings from %s, using defaults: %s", path, e)
        return Settings(load_error=f"Failed to load settings: {e}")


def save_settings(settings: Settings, path: Path | None = None) -> None:
    """Persist settings atomically. Raises OSError on failure."""
    path = path or settings_path()
    atomic_write_text(path, tomli_w.dumps(settings.to_dict()))
    logger.info("Settings saved to %s", path)
