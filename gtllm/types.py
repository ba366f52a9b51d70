"""
Chat modes offered by the app.
The enum value is the discriminant written to session files.
"""

from __future__ import annotations

from enum import Enum


class ChatMode(str, Enum):
    STANDARD = "standard"
    PVP = "pvp"
    COLLABORATIVE = "collaborative"
    COMPETITIVE = "competitive"
    LLM_CHOICE = "llm_choice"

    @property
    def label(self) -> str:
        return _LABELS[self]

    @property
    def description(self) -> str:
        return _DESCRIPTIONS[self]


_LABELS = {
    ChatMode.STANDARD: "Standard",
    ChatMode.PVP: "PvP",
    ChatMode.COLLABORATIVE: "Collaborative",
    ChatMode.COMPETITIVE: "Competitive",
    ChatMode.LLM_CHOICE: "LLM's Choice",
}

_DESCRIPTIONS = {
    ChatMode.STANDARD: "Chat with one or more LLMs side by side",
    ChatMode.PVP: "2 bots compete, 1 moderator judges",
    ChatMode.COLLABORATIVE: "Multiple bots jointly agree on best solution",
    ChatMode.COMPETITIVE: "All bots vote for the best (can't vote for their own)",
    ChatMode.LLM_CHOICE: "LLMs decide to collaborate or compete",
}
