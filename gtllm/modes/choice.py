"""
LLM-Choice mode: an arbiter model decides whether the team should
collaborate or compete on the question, then the round runs through the
matching engine.

The arbiter's answer is parsed like a ballot: the first decision word found
wins. An arbiter failure or an answer naming neither falls back to
collaborate.
"""

from __future__ import annotations

import logging

from gtllm.gateway.base import ChatMessage
from gtllm.modes.base import BaseEngine, EngineError
from gtllm.modes.collaborative import CollaborativeEngine
from gtllm.modes.competitive import CompetitiveEngine, find_candidates
from gtllm.modes.prompts import CHOICE_DECISION, render_template
from gtllm.storage.models import (
    CollaborativeRound,
    CompetitiveRound,
    Decision,
    LLMChoiceHistory,
    LLMChoiceRound,
)
from gtllm.types import ChatMode

logger = logging.getLogger(__name__)

DECISION_ALIASES = {
    "collaborate": Decision.COLLABORATE,
    "collaborative": Decision.COLLABORATE,
    "collaboration": Decision.COLLABORATE,
    "compete": Decision.COMPETE,
    "competitive": Decision.COMPETE,
    "competition": Decision.COMPETE,
}

FALLBACK_DECISION = Decision.COLLABORATE

# Sub-engine events we re-emit; lifecycle events come from this engine itself
_FORWARDED = {"phase", "update", "model_done", "tally"}


def parse_decision(text: str) -> Decision | None:
    found = find_candidates(text, list(DECISION_ALIASES))
    if not found:
        return None
    return DECISION_ALIASES[found[0]]


class LLMChoiceEngine(BaseEngine):
    mode = ChatMode.LLM_CHOICE

    def __init__(
        self,
        client,
        models: list[str],
        arbiter: str | None = None,
        decision_template: str = CHOICE_DECISION,
        **kwargs,
    ):
        if len(models) < 2:
            raise EngineError("LLM-Choice mode needs at least two models")
        if len(set(models)) != len(models):
            raise EngineError(f"Duplicate models in selection: {models}")
        history = LLMChoiceHistory(selected_models=list(models), arbiter_model=arbiter or models[0])
        super().__init__(client, history, **kwargs)
        self.decision_template = decision_template

    @classmethod
    def _options_from_history(cls, history: LLMChoiceHistory) -> dict:
        return {"models": history.selected_models, "arbiter": history.arbiter_model}

    @property
    def models(self) -> list[str]:
        return self.history.selected_models

    @property
    def arbiter(self) -> str:
        return self.history.arbiter_model

    def participants(self) -> list[str]:
        return list(dict.fromkeys([self.arbiter, *self.models]))

    def _forward(self, event: dict) -> None:
        if event["type"] in _FORWARDED:
            payload = {k: v for k, v in event.items() if k not in ("type", "ts", "mode")}
            self._emit(event["type"], sub_mode=event["mode"], **payload)

    def _sub_engine(self, decision: Decision) -> BaseEngine:
        options = {
            "store": None,
            "persist": False,
            "observer": self._forward,
            "throttle_interval": self.throttle_interval,
            "clock": self._clock,
        }
        if decision == Decision.COMPETE:
            return CompetitiveEngine(self.client, self.models, checkpoint_phases=False, **options)
        return CollaborativeEngine(self.client, self.models, **options)

    async def decide(self, message: str) -> tuple[Decision, str]:
        """Ask the arbiter. Returns (decision, raw arbiter text)."""
        prompt = render_template(
            self.decision_template,
            user_question=message,
            models=", ".join(self.models),
        )
        answer = await self._run_one("decision", self.arbiter, [ChatMessage.user(prompt)])
        if not answer.ok:
            logger.warning("Arbiter '%s' failed (%s), falling back to %s",
                           self.arbiter, answer.error_message, FALLBACK_DECISION.value)
            return FALLBACK_DECISION, ""
        decision = parse_decision(answer.content)
        if decision is None:
            logger.warning("Arbiter '%s' gave no decision, falling back to %s",
                           self.arbiter, FALLBACK_DECISION.value)
            return FALLBACK_DECISION, answer.content
        return decision, answer.content

    async def _play_round(self, message: str) -> LLMChoiceRound:
        decision, raw = await self.decide(message)
        self._emit("decision", decision=decision.value, arbiter=self.arbiter)

        engine = self._sub_engine(decision)
        try:
            sub_round = await engine.send(message)
        finally:
            await engine.aclose()

        round_ = LLMChoiceRound(
            user_message=message, decision=decision, arbiter_response=raw, sub_round=sub_round,
        )
        if isinstance(sub_round, CompetitiveRound):
            round_.winners = list(sub_round.winners)
            if sub_round.winners:
                first = sub_round.winners[0]
                round_.content = next(p.content for p in sub_round.proposals if p.model_id == first)
        elif isinstance(sub_round, CollaborativeRound):
            round_.content = sub_round.final_consensus
            if sub_round.final_consensus is not None and sub_round.consensus_model:
                round_.winners = [sub_round.consensus_model]
        return round_
