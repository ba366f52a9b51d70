"""
PvP mode: two bots answer, a moderator judges.

    Idle -> BotsStreaming -> ModeratorStreaming -> Complete
                 \\-> (either bot failed) -> Complete, no judgment

The moderator is only called when both bots produced an answer.
"""

from __future__ import annotations

import logging
from enum import Enum

from gtllm.gateway.base import ChatMessage
from gtllm.modes.base import BaseEngine, EngineError
from gtllm.modes.prompts import PVP_BOT_SYSTEM, PVP_JUDGE, PVP_MODERATOR_SYSTEM, render_template
from gtllm.storage.models import ModeratorResponse, PvPHistory, PvPRound, SystemPrompts
from gtllm.types import ChatMode

logger = logging.getLogger(__name__)


class PvPState(str, Enum):
    IDLE = "idle"
    BOTS_STREAMING = "bots_streaming"
    MODERATOR_STREAMING = "moderator_streaming"
    COMPLETE = "complete"


class PvPEngine(BaseEngine):
    mode = ChatMode.PVP

    def __init__(
        self,
        client,
        bots: list[str],
        moderator: str,
        bot_prompt: str = PVP_BOT_SYSTEM,
        moderator_prompt: str = PVP_MODERATOR_SYSTEM,
        judge_template: str = PVP_JUDGE,
        **kwargs,
    ):
        if len(bots) != 2 or bots[0] == bots[1]:
            raise EngineError("PvP needs exactly two different bot models")
        if not moderator:
            raise EngineError("PvP needs a moderator model")
        history = PvPHistory(
            bot_models=list(bots),
            moderator_model=moderator,
            system_prompts=SystemPrompts(bot=bot_prompt, moderator=moderator_prompt),
        )
        super().__init__(client, history, **kwargs)
        self.judge_template = judge_template
        self.state = PvPState.IDLE

    @classmethod
    def _options_from_history(cls, history: PvPHistory) -> dict:
        if not history.moderator_model:
            raise EngineError("Saved PvP session has no moderator model")
        return {
            "bots": history.bot_models,
            "moderator": history.moderator_model,
            "bot_prompt": history.system_prompts.bot,
            "moderator_prompt": history.system_prompts.moderator,
        }

    @property
    def bots(self) -> list[str]:
        return self.history.bot_models

    @property
    def moderator(self) -> str:
        return self.history.moderator_model

    def participants(self) -> list[str]:
        return [*self.bots, self.moderator]

    def _set_state(self, state: PvPState) -> None:
        self.state = state
        self._emit("state", state=state.value)

    def judge_prompt(self, message: str, bot1, bot2) -> str:
        return render_template(
            self.judge_template,
            user_question=message,
            bot1_id=bot1.model_id,
            bot1_response=bot1.content,
            bot2_id=bot2.model_id,
            bot2_response=bot2.content,
        )

    async def _play_round(self, message: str) -> PvPRound:
        try:
            round_ = await self._debate(message)
        except BaseException:
            self.state = PvPState.IDLE
            raise
        self._set_state(PvPState.COMPLETE)
        return round_

    async def _debate(self, message: str) -> PvPRound:
        prompts = self.history.system_prompts
        self._set_state(PvPState.BOTS_STREAMING)
        messages = [ChatMessage.user(message)]
        if prompts.bot:
            messages.insert(0, ChatMessage.system(prompts.bot))
        bot1, bot2 = await self._run_same("bots", self.bots, messages)
        round_ = PvPRound(user_message=message, bot1_response=bot1, bot2_response=bot2)

        if not (bot1.ok and bot2.ok):
            logger.info("PvP judge skipped: a bot failed")
            return round_

        self._set_state(PvPState.MODERATOR_STREAMING)
        judge_messages = [ChatMessage.user(self.judge_prompt(message, bot1, bot2))]
        if prompts.moderator:
            judge_messages.insert(0, ChatMessage.system(prompts.moderator))
        verdict = await self._run_one("moderator", self.moderator, judge_messages)
        round_.moderator_judgment = ModeratorResponse(verdict.content, verdict.error_message)
        return round_
