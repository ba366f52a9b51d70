"""
Chat-mode engines: Standard, PvP, Collaborative, Competitive and LLM-Choice.
"""
from gtllm.modes.base import BaseEngine, EngineError, RoundInProgressError
from gtllm.modes.choice import LLMChoiceEngine
from gtllm.modes.collaborative import CollaborativeEngine
from gtllm.modes.competitive import CompetitiveEngine
from gtllm.modes.pvp import PvPEngine
from gtllm.modes.standard import StandardEngine
from gtllm.types import ChatMode

ENGINES = {
    ChatMode.STANDARD: StandardEngine,
    ChatMode.PVP: PvPEngine,
    ChatMode.COLLABORATIVE: CollaborativeEngine,
    ChatMode.COMPETITIVE: CompetitiveEngine,
    ChatMode.LLM_CHOICE: LLMChoiceEngine,
}

__all__ = [
    "BaseEngine",
    "EngineError",
    "RoundInProgressError",
    "StandardEngine",
    "PvPEngine",
    "CollaborativeEngine",
    "CompetitiveEngine",
    "LLMChoiceEngine",
    "ENGINES",
]
