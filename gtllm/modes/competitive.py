"""
Competitive mode: every model proposes, then every model votes for the best
proposal other than its own.

    proposal -> voting -> tallying -> complete

Rounds are checkpointed to disk at each phase boundary (replaced in place,
never appended twice) so resume() can finish a round after a crash.

Ballots are free text. parse_ballot() takes the first candidate id that
appears in it (case-insensitive, whitespace collapsed, longest id wins at a
given position) that is not the voter's own id.
"""

from __future__ import annotations

import logging
import re

from gtllm.gateway.base import ChatMessage
from gtllm.modes.base import BaseEngine, EngineError
from gtllm.modes.prompts import COMPETE_PROPOSAL, COMPETE_VOTING, format_proposals, render_template
from gtllm.storage.models import (
    CompetitiveHistory,
    CompetitivePhase,
    CompetitiveRound,
    CompetitiveTemplates,
    ModelProposal,
    ModelVote,
    VoteTally,
)
from gtllm.types import ChatMode

logger = logging.getLogger(__name__)

SELF_VOTE_ERROR = "Self-vote is not allowed"
NO_CANDIDATE_ERROR = "Ballot does not name any candidate"


# ---------------------------------------------------------------------------
# Ballots and tallies
# ---------------------------------------------------------------------------

def _normalize(text: str) -> str:
    return " ".join(text.split()).lower()


def find_candidates(text: str, candidates: list[str]) -> list[str]:
    """Candidate ids in order of appearance in `text` (repeats kept)."""
    by_key: dict[str, str] = {}
    for cid in candidates:
        by_key.setdefault(_normalize(cid), cid)
    keys = sorted((k for k in by_key if k), key=len, reverse=True)
    if not keys:
        return []
    pattern = re.compile("|".join(re.escape(k) for k in keys))
    return [by_key[m.group(0)] for m in pattern.finditer(_normalize(text))]


def parse_ballot(text: str, voter_id: str, candidates: list[str]) -> tuple[str | None, str | None]:
    """
    Returns (voted_for, error). Exactly one of the two is None.
    The voter's own id is matched too, so it cannot hide inside a longer id.
    """
    names = list(candidates)
    if voter_id not in names:
        names.append(voter_id)
    found = find_candidates(text, names)
    for cid in found:
        if cid != voter_id:
            return cid, None
    if found:
        return None, SELF_VOTE_ERROR
    return None, NO_CANDIDATE_ERROR


def tally_votes(candidates: list[str], votes: list[ModelVote]) -> list[VoteTally]:
    """Count valid ballots. Sorted by count desc, ties kept in proposer order."""
    tallies = {cid: VoteTally(cid) for cid in candidates}
    for vote in votes:
        if vote.voted_for is None or vote.voted_for == vote.voter_id:
            continue
        tally = tallies.get(vote.voted_for)
        if tally is None:
            continue
        tally.vote_count += 1
        tally.voters.append(vote.voter_id)
    return sorted(tallies.values(), key=lambda t: -t.vote_count)


def pick_winners(tallies: list[VoteTally]) -> list[str]:
    """Every id sharing the top count. Empty when nobody got a valid vote."""
    top = max((t.vote_count for t in tallies), default=0)
    if top == 0:
        return []
    return [t.model_id for t in tallies if t.vote_count == top]


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class CompetitiveEngine(BaseEngine):
    mode = ChatMode.COMPETITIVE

    def __init__(
        self,
        client,
        models: list[str],
        proposal_template: str = COMPETE_PROPOSAL,
        voting_template: str = COMPETE_VOTING,
        checkpoint_phases: bool = True,
        **kwargs,
    ):
        if len(models) < 2:
            raise EngineError("Competitive mode needs at least two models")
        if len(set(models)) != len(models):
            raise EngineError(f"Duplicate models in selection: {models}")
        history = CompetitiveHistory(
            templates=CompetitiveTemplates(proposal=proposal_template, voting=voting_template),
            selected_models=list(models),
        )
        super().__init__(client, history, **kwargs)
        self.checkpoint_phases = checkpoint_phases

    @classmethod
    def _options_from_history(cls, history: CompetitiveHistory) -> dict:
        return {
            "models": history.selected_models,
            "proposal_template": history.templates.proposal,
            "voting_template": history.templates.voting,
        }

    @property
    def models(self) -> list[str]:
        return self.history.selected_models

    def participants(self) -> list[str]:
        return list(self.models)

    # ── Round ─────────────────────────────────────────────────────────────────

    def _restored(self) -> None:
        round_ = self.pending_round()
        if round_ is not None:
            logger.info("Session %s has an unfinished round at phase %s",
                        self.session_id, round_.current_phase.value)

    async def send(self, message: str):
        """
        Run one round for `message`. An unfinished round left by a crash
        must be finished with resume() first.
        """
        if not self.busy and self.pending_round() is not None:
            raise EngineError("An unfinished round is pending; resume() it before sending")
        return await super().send(message)

    async def _play_round(self, message: str) -> CompetitiveRound:
        return await self._advance(CompetitiveRound(user_question=message))

    def pending_round(self) -> CompetitiveRound | None:
        """The last round, if a crash left it unfinished."""
        if self.history.rounds and not self.history.rounds[-1].complete:
            return self.history.rounds[-1]
        return None

    async def resume(self) -> CompetitiveRound | None:
        """Finish a checkpointed round. Returns None if nothing is pending."""
        round_ = self.pending_round()
        if round_ is None:
            return None
        logger.info("Resuming competitive round at phase %s", round_.current_phase.value)
        return await self._run_exclusive(
            lambda: self._run_round(round_.user_question, lambda _message: self._advance(round_))
        )

    async def _checkpoint_phase(self, round_: CompetitiveRound) -> None:
        if self.checkpoint_phases and self.persist:
            await self._checkpoint(round_)

    async def _advance(self, round_: CompetitiveRound) -> CompetitiveRound:
        templates = self.history.templates

        if round_.current_phase == CompetitivePhase.PROPOSAL:
            prompt = render_template(templates.proposal, user_question=round_.user_question)
            responses = await self._run_same("proposal", self.models, [ChatMessage.user(prompt)])
            round_.proposals = [ModelProposal(r.model_id, r.content, r.error_message) for r in responses]
            round_.current_phase = CompetitivePhase.VOTING
            await self._checkpoint_phase(round_)

        if round_.current_phase == CompetitivePhase.VOTING:
            round_.votes = await self._collect_votes(round_)
            round_.current_phase = CompetitivePhase.TALLYING
            await self._checkpoint_phase(round_)

        if round_.current_phase == CompetitivePhase.TALLYING:
            candidates = [p.model_id for p in round_.proposals if p.ok]
            round_.tallies = tally_votes(candidates, round_.votes)
            round_.winners = pick_winners(round_.tallies)
            round_.current_phase = CompetitivePhase.COMPLETE
            self._emit("tally", tallies=[
                {"model_id": t.model_id, "vote_count": t.vote_count, "voters": list(t.voters)}
                for t in round_.tallies
            ], winners=list(round_.winners))

        return round_

    async def _collect_votes(self, round_: CompetitiveRound) -> list[ModelVote]:
        proposers = [p for p in round_.proposals if p.ok]
        if len(proposers) < 2:
            logger.info("Competitive voting skipped: %d successful proposal(s)", len(proposers))
            return []

        candidates = [p.model_id for p in proposers]
        all_proposals = format_proposals([(p.model_id, p.content) for p in proposers])
        requests = {
            p.model_id: [ChatMessage.user(render_template(
                self.history.templates.voting,
                user_question=round_.user_question,
                all_proposals=all_proposals,
                your_proposal=p.content,
            ))]
            for p in proposers
        }
        ballots = await self._run_each("voting", requests)

        votes = []
        for ballot in ballots:
            if not ballot.ok:
                votes.append(ModelVote(ballot.model_id, None, "", ballot.error_message))
                continue
            voted_for, error = parse_ballot(ballot.content, ballot.model_id, candidates)
            if error:
                logger.info("Invalid ballot from '%s': %s", ballot.model_id, error)
            votes.append(ModelVote(ballot.model_id, voted_for, ballot.content, error))
        return votes
