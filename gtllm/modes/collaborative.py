"""
Collaborative mode: models answer, critique each other, then merge.

    initial    every model answers the question
    review     every model that answered critiques the *other* answers
    consensus  one final answer built from the answers and the reviews

A model that fails in one phase sits out the following ones. Review and
consensus need at least two successful initial answers; with fewer the
round ends with final_consensus = None.

Consensus strategies:
    synthesizer  one model (the designated one, else the first surviving
                 model) writes the final answer
    vote         every surviving model writes one, then they vote on the
                 syntheses with the competitive ballot rules
"""

from __future__ import annotations

import logging

from gtllm.gateway.base import ChatMessage
from gtllm.modes.base import BaseEngine, EngineError
from gtllm.modes.competitive import parse_ballot, pick_winners, tally_votes
from gtllm.modes.prompts import (
    COLLAB_CONSENSUS,
    COLLAB_INITIAL,
    COLLAB_REVIEW,
    COMPETE_VOTING,
    format_proposals,
    format_responses,
    render_template,
)
from gtllm.storage.models import (
    CollaborativeHistory,
    CollaborativeRound,
    CollaborativeTemplates,
    ModelResponse,
    ModelVote,
)
from gtllm.types import ChatMode

logger = logging.getLogger(__name__)

CONSENSUS_STRATEGIES = ("synthesizer", "vote")


class CollaborativeEngine(BaseEngine):
    mode = ChatMode.COLLABORATIVE

    def __init__(
        self,
        client,
        models: list[str],
        initial_template: str = COLLAB_INITIAL,
        review_template: str = COLLAB_REVIEW,
        consensus_template: str = COLLAB_CONSENSUS,
        consensus_strategy: str = "synthesizer",
        synthesizer: str | None = None,
        **kwargs,
    ):
        if len(models) < 2:
            raise EngineError("Collaborative mode needs at least two models")
        if len(set(models)) != len(models):
            raise EngineError(f"Duplicate models in selection: {models}")
        if consensus_strategy not in CONSENSUS_STRATEGIES:
            raise EngineError(f"Unknown consensus strategy: {consensus_strategy!r}")
        if synthesizer is not None and synthesizer not in models:
            raise EngineError(f"Synthesizer {synthesizer!r} is not one of the selected models")
        history = CollaborativeHistory(
            templates=CollaborativeTemplates(initial_template, review_template, consensus_template),
            selected_models=list(models),
            consensus_strategy=consensus_strategy,
        )
        super().__init__(client, history, **kwargs)
        self.synthesizer = synthesizer

    @classmethod
    def _options_from_history(cls, history: CollaborativeHistory) -> dict:
        return {
            "models": history.selected_models,
            "initial_template": history.templates.initial,
            "review_template": history.templates.review,
            "consensus_template": history.templates.consensus,
            "consensus_strategy": history.consensus_strategy,
        }

    @property
    def models(self) -> list[str]:
        return self.history.selected_models

    def participants(self) -> list[str]:
        return list(self.models)

    # ── Round ─────────────────────────────────────────────────────────────────

    async def _play_round(self, message: str) -> CollaborativeRound:
        templates = self.history.templates
        round_ = CollaborativeRound(user_message=message)

        prompt = render_template(templates.initial, user_question=message)
        round_.model_responses = await self._run_same("initial", self.models, [ChatMessage.user(prompt)])

        survivors = [r for r in round_.model_responses if r.ok]
        if len(survivors) < 2:
            logger.info("Collaborative round stopped after initial phase: %d answer(s)", len(survivors))
            return round_

        round_.reviews = await self._review(message, survivors)
        reviewers = {r.model_id for r in round_.reviews if r.ok}
        # Keep selection order for the consensus phase
        contributors = [r for r in survivors if r.model_id in reviewers]
        if not contributors:
            logger.info("Collaborative round stopped after review phase: every review failed")
            return round_

        initial_text = format_responses([(r.model_id, r.content) for r in survivors])
        reviews_text = format_responses([(r.model_id, r.content) for r in round_.reviews if r.ok])
        consensus_prompt = render_template(
            templates.consensus,
            user_question=message,
            initial_responses=initial_text,
            reviews=reviews_text,
        )

        if self.history.consensus_strategy == "vote":
            model_id, content = await self._voted_consensus(message, contributors, consensus_prompt)
        else:
            model_id, content = await self._synthesize(contributors, consensus_prompt)
        round_.consensus_model = model_id
        round_.final_consensus = content
        return round_

    async def _review(self, message: str, survivors: list[ModelResponse]) -> list[ModelResponse]:
        template = self.history.templates.review
        requests = {}
        for resp in survivors:
            others = [(o.model_id, o.content) for o in survivors if o.model_id != resp.model_id]
            prompt = render_template(
                template,
                user_question=message,
                other_responses=format_responses(others),
            )
            requests[resp.model_id] = [ChatMessage.user(prompt)]
        return await self._run_each("review", requests)

    async def _synthesize(self, contributors: list[ModelResponse], prompt: str) -> tuple[str | None, str | None]:
        ids = [c.model_id for c in contributors]
        synth = self.synthesizer if self.synthesizer in ids else ids[0]
        result = await self._run_one("consensus", synth, [ChatMessage.user(prompt)])
        if not result.ok:
            logger.warning("Consensus by '%s' failed: %s", synth, result.error_message)
            return synth, None
        return synth, result.content

    async def _voted_consensus(
        self, message: str, contributors: list[ModelResponse], prompt: str
    ) -> tuple[str | None, str | None]:
        ids = [c.model_id for c in contributors]
        drafts = [d for d in await self._run_same("consensus", ids, [ChatMessage.user(prompt)]) if d.ok]
        if not drafts:
            return None, None
        if len(drafts) == 1:
            return drafts[0].model_id, drafts[0].content

        candidates = [d.model_id for d in drafts]
        all_drafts = format_proposals([(d.model_id, d.content) for d in drafts])
        requests = {
            d.model_id: [ChatMessage.user(render_template(
                COMPETE_VOTING,
                user_question=message,
                all_proposals=all_drafts,
                your_proposal=d.content,
            ))]
            for d in drafts
        }
        ballots = await self._run_each("consensus_vote", requests)
        votes = []
        for ballot in ballots:
            if ballot.ok:
                voted_for, error = parse_ballot(ballot.content, ballot.model_id, candidates)
                votes.append(ModelVote(ballot.model_id, voted_for, ballot.content, error))
            else:
                votes.append(ModelVote(ballot.model_id, None, "", ballot.error_message))

        winners = pick_winners(tally_votes(candidates, votes))
        chosen = winners[0] if winners else candidates[0]
        content = next(d.content for d in drafts if d.model_id == chosen)
        return chosen, content
