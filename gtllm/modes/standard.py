"""
Standard mode: the same message goes to every selected model side by side.

Each model keeps its own conversation memory: the system prompt plus every
earlier exchange where that model answered successfully. A model that
errored in a round simply has no memory of that round.
"""

from __future__ import annotations

import logging

from gtllm.gateway.base import ChatMessage
from gtllm.modes.base import BaseEngine, EngineError
from gtllm.storage.models import StandardHistory, StandardRound
from gtllm.types import ChatMode

logger = logging.getLogger(__name__)


class StandardEngine(BaseEngine):
    mode = ChatMode.STANDARD

    def __init__(self, client, models: list[str], system_prompt: str = "", **kwargs):
        if not models:
            raise EngineError("Select at least one model")
        if len(set(models)) != len(models):
            raise EngineError(f"Duplicate models in selection: {models}")
        history = StandardHistory(selected_models=list(models), system_prompt=system_prompt)
        super().__init__(client, history, **kwargs)

    @classmethod
    def _options_from_history(cls, history: StandardHistory) -> dict:
        return {"models": history.selected_models, "system_prompt": history.system_prompt}

    @property
    def models(self) -> list[str]:
        return self.history.selected_models

    def participants(self) -> list[str]:
        return list(self.models)

    def conversation_for(self, model_id: str) -> list[ChatMessage]:
        """Prior exchanges this model took part in successfully."""
        messages = []
        if self.history.system_prompt:
            messages.append(ChatMessage.system(self.history.system_prompt))
        for round_ in self.history.rounds:
            for resp in round_.responses:
                if resp.model_id == model_id and resp.ok:
                    messages.append(ChatMessage.user(round_.user_message))
                    messages.append(ChatMessage.assistant(resp.content))
                    break
        return messages

    async def _play_round(self, message: str) -> StandardRound:
        requests = {
            model_id: self.conversation_for(model_id) + [ChatMessage.user(message)]
            for model_id in self.models
        }
        conversations = list(requests.values())
        if all(c == conversations[0] for c in conversations):
            responses = await self._run_same("response", self.models, conversations[0])
        else:
            responses = await self._run_each("response", requests)

        failed = [r.model_id for r in responses if not r.ok]
        if failed:
            logger.info("Standard round finished with %d/%d failures", len(failed), len(responses))
        return StandardRound(user_message=message, responses=responses)
