"""
Theme catalogue.
Names match the daisyUI themes the renderer ships; the store only persists the id.
"""

from __future__ import annotations

from enum import Enum


class ThemeMode(str, Enum):
    DARK = "dark"
    LIGHT = "light"


class Theme(str, Enum):
    WINTER = "winter"
    BLACK = "black"
    NORD = "nord"
    DRACULA = "dracula"
    NIGHT = "night"
    DIM = "dim"

    @classmethod
    def from_str(cls, value: str) -> Theme | None:
        """Case-insensitive lookup; None for unknown names."""
        try:
            return cls(value.strip().lower())
        except (ValueError, AttributeError):
            return None

    @property
    def label(self) -> str:
        return self.value.capitalize()

    @property
    def is_dark(self) -> bool:
        return self in (Theme.DRACULA, Theme.NIGHT, Theme.DIM)

    @property
    def mode(self) -> ThemeMode:
        return ThemeMode.DARK if self.is_dark else ThemeMode.LIGHT

    @classmethod
    def dark_themes(cls) -> list[Theme]:
        return [t for t in cls if t.is_dark]

    @classmethod
    def light_themes(cls) -> list[Theme]:
        return [t for t in cls if not t.is_dark]


DEFAULT_THEME = Theme.DRACULA
