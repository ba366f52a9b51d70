"""
Tests for the chat-mode engines.
Models are scripted with FakeClient; fan-out runs through the real MultiStream.
Run with: pytest tests/test_modes.py
"""

import asyncio
from unittest.mock import patch

import pytest

from fakes import HANG, FakeClient, FakeClock, FakeTimers, Recorder, by_prompt, rate_limited
from gtllm.gateway.base import Content, Done, Error, ErrorKind
from gtllm.modes import (
    CollaborativeEngine,
    CompetitiveEngine,
    EngineError,
    LLMChoiceEngine,
    PvPEngine,
    RoundInProgressError,
    StandardEngine,
)
from gtllm.modes.base import StreamBuffer
from gtllm.modes.choice import parse_decision
from gtllm.modes.competitive import (
    NO_CANDIDATE_ERROR,
    SELF_VOTE_ERROR,
    find_candidates,
    parse_ballot,
    pick_winners,
    tally_votes,
)
from gtllm.modes.prompts import COMPETE_PROPOSAL, COMPETE_VOTING, render_template
from gtllm.modes.pvp import PvPState
from gtllm.storage.chat_history import SessionStore, SessionStoreError
from gtllm.storage.models import (
    ChatSession,
    CompetitiveHistory,
    CompetitivePhase,
    CompetitiveRound,
    CompetitiveTemplates,
    Decision,
    ModelProposal,
    ModelResponse,
    ModelVote,
    SessionData,
    VoteTally,
)
from gtllm.types import ChatMode

DECIDE = "Decide how the team should work"
PROPOSE = "You are competing against other AI models"
VOTE = "Vote for the best answer"
INITIAL = "Provide your best answer"
REVIEW = "Review the following responses"
CONSENSUS = "synthesize a final"


@pytest.fixture
def store(tmp_path):
    return SessionStore(tmp_path / "chats")


@pytest.fixture
def rec():
    return Recorder()


def _competitor(proposal: str, ballot: str):
    return by_prompt({VOTE: ballot, PROPOSE: proposal})


def _collaborator(name: str, consensus: str = "FINAL", ballot: str = ""):
    return by_prompt({
        VOTE: ballot,
        CONSENSUS: consensus,
        REVIEW: f"{name} review",
        INITIAL: f"{name} answer",
    })


# ---------------------------------------------------------------------------
# Prompt templates
# ---------------------------------------------------------------------------

def test_render_template_only_known_names():
    out = render_template('Q: {user_question} json: {"k": 1} {unknown}', user_question="why?")
    assert out == 'Q: why? json: {"k": 1} {unknown}'


# ---------------------------------------------------------------------------
# Stream buffer throttling
# ---------------------------------------------------------------------------

def test_stream_buffer_throttles_updates():
    events = []
    clock = FakeClock()
    buffer = StreamBuffer(lambda t, **kw: events.append((t, kw)), "response", 0.05, clock)

    buffer.append("a", "x")       # first delta goes out at once
    clock.advance(0.01)
    buffer.append("a", "y")       # inside the window
    buffer.append("b", "1")       # other models have their own window
    clock.advance(0.05)
    buffer.append("a", "z")

    updates = [(kw["model_id"], kw["content"]) for t, kw in events if t == "update"]
    assert updates == [("a", "x"), ("b", "1"), ("a", "xyz")]

    assert buffer.finish("a") == ModelResponse("a", "xyz")
    failed = buffer.finish("b", "boom")
    assert failed == ModelResponse("b", "", "boom")
    done = [kw for t, kw in events if t == "model_done"]
    assert done[0]["content"] == "xyz"
    assert done[1]["error"] == "boom"


def test_stream_buffer_flushes_held_text_after_interval():
    events = []
    clock = FakeClock()
    timers = FakeTimers()
    buffer = StreamBuffer(lambda t, **kw: events.append((t, kw)), "response", 0.05, clock, timers.call_later)

    buffer.append("a", "x")
    clock.advance(0.01)
    buffer.append("a", "y")       # held back, trailing flush scheduled
    buffer.append("a", "z")       # same window, no second timer
    (handle,) = timers.pending()
    assert handle.delay == pytest.approx(0.04)

    # The model stalls; the timer delivers what was held back
    clock.advance(0.04)
    timers.fire()
    updates = [kw["content"] for t, kw in events if t == "update"]
    assert updates == ["x", "xyz"]

    clock.advance(0.01)
    buffer.append("a", "!")
    assert len(timers.pending()) == 1
    buffer.finish("a")
    assert timers.pending() == []


# ---------------------------------------------------------------------------
# Standard
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_standard_partial_failure(store, rec):
    """One model streams, the other is rate limited; both land in the round."""
    client = FakeClient({
        "a/x": [Content("Hel"), Content("lo"), Done()],
        "b/y": rate_limited("b/y"),
    })
    engine = StandardEngine(client, ["a/x", "b/y"], store=store, observer=rec)

    round_ = await engine.send("hi")

    assert round_.responses[0] == ModelResponse("a/x", "Hello", None)
    assert round_.responses[1].content == ""
    assert "429" in round_.responses[1].error_message

    types = rec.types()
    assert types[0] == "start"
    assert types[-2:] == ["round_complete", "saved"]
    assert all(e["mode"] == "standard" for e in rec.events)
    done = {e["model_id"]: e for e in rec.of("model_done")}
    assert done["a/x"]["content"] == "Hello"
    assert done["b/y"]["error"]

    loaded = store.load(engine.session_id)
    assert loaded.history.rounds == [round_]
    assert loaded.session.title == "hi"


@pytest.mark.asyncio
async def test_standard_throttle_with_fixed_clock(rec):
    client = FakeClient({"a/x": [Content("Hel"), Content("lo"), Done()]})
    engine = StandardEngine(client, ["a/x"], observer=rec, throttle_interval=10, clock=FakeClock())
    await engine.send("hi")

    assert [e["content"] for e in rec.of("update")] == ["Hel"]
    assert rec.of("model_done")[0]["content"] == "Hello"


@pytest.mark.asyncio
async def test_standard_memory_per_model():
    client = FakeClient({"a/x": "A1", "b/y": rate_limited("b/y")})
    engine = StandardEngine(client, ["a/x", "b/y"], system_prompt="be brief")
    await engine.send("first")

    client.script["b/y"] = "B2"
    await engine.send("second")

    a_msgs = client.calls_for("a/x")[-1]
    b_msgs = client.calls_for("b/y")[-1]
    assert [(m.role, m.content) for m in a_msgs] == [
        ("system", "be brief"),
        ("user", "first"),
        ("assistant", "A1"),
        ("user", "second"),
    ]
    # b/y failed the first round, so it has no memory of it
    assert [(m.role, m.content) for m in b_msgs] == [("system", "be brief"), ("user", "second")]


@pytest.mark.asyncio
async def test_standard_selection_validated():
    with pytest.raises(EngineError):
        StandardEngine(FakeClient(), [])
    with pytest.raises(EngineError):
        StandardEngine(FakeClient(), ["a/x", "a/x"])


@pytest.mark.asyncio
async def test_stream_yields_round_events():
    engine = StandardEngine(FakeClient({"a/x": "hello"}), ["a/x"])
    events = [e async for e in engine.stream("hi")]

    types = [e["type"] for e in events]
    assert types[0] == "start"
    assert types[-1] == "round_complete"
    assert events[-1]["round"]["responses"][0]["content"] == "hello"
    assert all("ts" in e for e in events)


@pytest.mark.asyncio
async def test_observer_failure_does_not_break_round(caplog):
    def broken(event):
        raise RuntimeError("ui gone")

    engine = StandardEngine(FakeClient({"a/x": "ok"}), ["a/x"], observer=broken)
    with caplog.at_level("WARNING"):
        round_ = await engine.send("hi")
    assert round_.responses[0].content == "ok"
    assert "Observer failed" in caplog.text


# ---------------------------------------------------------------------------
# Round lifecycle: concurrency, cancel, persistence
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_second_send_while_busy_rejected():
    client = FakeClient({"a/x": HANG})
    engine = StandardEngine(client, ["a/x"])
    task = asyncio.create_task(engine.send("hi"))
    await client.started.wait()

    assert engine.busy
    with pytest.raises(RoundInProgressError):
        await engine.send("again")

    assert engine.cancel()
    assert await task is None


@pytest.mark.asyncio
async def test_cancel_discards_round(store, rec):
    client = FakeClient({"a/x": HANG, "b/y": "fast"})
    engine = StandardEngine(client, ["a/x", "b/y"], store=store, observer=rec)
    task = asyncio.create_task(engine.send("hi"))
    await client.started.wait()

    engine.cancel()
    assert await task is None
    assert engine.rounds == []
    assert not engine.busy
    assert "cancelled" in rec.types()
    assert "round_complete" not in rec.types()
    assert store.list_sessions() == []


@pytest.mark.asyncio
async def test_cancelled_first_message_leaves_no_title(store):
    client = FakeClient({"a/x": HANG})
    engine = StandardEngine(client, ["a/x"], store=store)
    task = asyncio.create_task(engine.send("private draft"))
    await client.started.wait()
    engine.cancel()
    assert await task is None
    assert engine.session_id is None

    client.script["a/x"] = "ok"
    await engine.send("hello")

    assert store.load(engine.session_id).session.title == "hello"
    assert "private draft" not in store.path_for(engine.session_id).read_text()


@pytest.mark.asyncio
async def test_closing_stream_early_cancels_round():
    client = FakeClient({"a/x": HANG})
    engine = StandardEngine(client, ["a/x"])
    gen = engine.stream("hi")
    first = await gen.__anext__()
    assert first["type"] == "start"
    await gen.aclose()

    assert not engine.busy
    assert engine.rounds == []


@pytest.mark.asyncio
async def test_closed_engine_refuses_rounds():
    engine = StandardEngine(FakeClient(), ["a/x"])
    await engine.aclose()
    with pytest.raises(EngineError):
        await engine.send("hi")


@pytest.mark.asyncio
async def test_persist_error_keeps_round_and_retry_saves(store, rec):
    engine = StandardEngine(FakeClient({"a/x": "ok"}), ["a/x"], store=store, observer=rec)

    with patch.object(store, "save", side_effect=SessionStoreError("disk full")):
        round_ = await engine.send("hi")

    assert engine.rounds == [round_]
    assert engine.needs_save
    (err,) = rec.of("persist_error")
    assert "disk full" in err["error"]
    assert not store.exists(engine.session_id)

    assert await engine.retry_save() is True
    assert not engine.needs_save
    assert store.load(engine.session_id).history.rounds == [round_]


@pytest.mark.asyncio
async def test_created_at_fixed_after_first_save(store):
    engine = StandardEngine(FakeClient({"a/x": "ok"}), ["a/x"], store=store)
    await engine.send("one")
    created = engine.created_at
    await engine.send("two")

    loaded = store.load(engine.session_id)
    assert loaded.created_at == created
    assert int(loaded.updated_at) >= int(loaded.created_at)
    assert len(loaded.history.rounds) == 2
    assert len(store.list_sessions()) == 1


@pytest.mark.asyncio
async def test_reopened_session_continues(store):
    client = FakeClient({"a/x": "A1"})
    engine = StandardEngine(client, ["a/x"], store=store)
    await engine.send("first")

    data = store.load(engine.session_id)
    reopened = StandardEngine.from_session(client, data, store=store)
    assert reopened.session_id == engine.session_id
    assert reopened.models == ["a/x"]

    await reopened.send("second")
    assert [m.content for m in client.calls_for("a/x")[-1]] == ["first", "A1", "second"]
    assert len(store.load(engine.session_id).history.rounds) == 2


@pytest.mark.asyncio
async def test_from_session_wrong_mode(store):
    engine = StandardEngine(FakeClient(), ["a/x"], store=store)
    await engine.send("hi")
    with pytest.raises(EngineError):
        PvPEngine.from_session(FakeClient(), store.load(engine.session_id))


# ---------------------------------------------------------------------------
# PvP
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_pvp_bot_error_skips_moderator(store, rec):
    client = FakeClient({
        "a/x": [Content("A"), Done()],
        "b/y": [Error("OpenRouter error (500): upstream", ErrorKind.SERVER, 500)],
        "m/j": "verdict",
    })
    engine = PvPEngine(client, bots=["a/x", "b/y"], moderator="m/j", store=store, observer=rec)

    round_ = await engine.send("who wins?")

    assert round_.bot1_response.content == "A"
    assert round_.bot2_response.error_message
    assert round_.moderator_judgment is None
    assert client.calls_for("m/j") == []
    assert [e["state"] for e in rec.of("state")] == ["bots_streaming", "complete"]
    assert store.load(engine.session_id).history.rounds[0].moderator_judgment is None


@pytest.mark.asyncio
async def test_pvp_full_round(rec):
    client = FakeClient({"a/x": "answer one", "b/y": "answer two", "m/j": "a/x wins"})
    engine = PvPEngine(client, bots=["a/x", "b/y"], moderator="m/j", observer=rec)

    round_ = await engine.send("who wins?")

    assert round_.moderator_judgment.content == "a/x wins"
    assert engine.state == PvPState.COMPLETE
    judge_call = client.calls_for("m/j")[0]
    assert judge_call[0].role == "system"
    assert "answer one" in judge_call[-1].content
    assert "answer two" in judge_call[-1].content
    assert client.calls_for("a/x")[0][0].role == "system"
    assert [e["state"] for e in rec.of("state")] == ["bots_streaming", "moderator_streaming", "complete"]


@pytest.mark.asyncio
async def test_pvp_moderator_error_recorded():
    client = FakeClient({"a/x": "one", "b/y": "two", "m/j": rate_limited("m/j")})
    engine = PvPEngine(client, bots=["a/x", "b/y"], moderator="m/j")
    round_ = await engine.send("q")
    assert round_.moderator_judgment.content == ""
    assert "429" in round_.moderator_judgment.error_message


def test_pvp_selection_validated():
    with pytest.raises(EngineError):
        PvPEngine(FakeClient(), bots=["a/x", "a/x"], moderator="m/j")
    with pytest.raises(EngineError):
        PvPEngine(FakeClient(), bots=["a/x"], moderator="m/j")
    with pytest.raises(EngineError):
        PvPEngine(FakeClient(), bots=["a/x", "b/y"], moderator="")


# ---------------------------------------------------------------------------
# Ballots and tallies
# ---------------------------------------------------------------------------

def test_self_vote_is_invalid():
    assert parse_ballot("I pick p2", "p2", ["p1", "p2", "p3", "p4"]) == (None, SELF_VOTE_ERROR)


def test_first_non_self_candidate_counts():
    assert parse_ballot("p2 is mine, but p3 is better", "p2", ["p1", "p2", "p3"]) == ("p3", None)
    assert parse_ballot("nobody", "p1", ["p1", "p2"]) == (None, NO_CANDIDATE_ERROR)


def test_ballot_matching_rules():
    # Case-insensitive, whitespace collapsed
    assert parse_ballot("I vote for   OpenAI/GPT-4o", "x", ["openai/gpt-4o", "y"]) == ("openai/gpt-4o", None)
    # Longest id wins where two ids start at the same place
    assert find_candidates("gpt-4o-mini rocks", ["gpt-4o", "gpt-4o-mini"]) == ["gpt-4o-mini"]
    # The voter's own id cannot be read as a shorter candidate
    assert parse_ballot("gpt-4o-mini", "gpt-4o-mini", ["gpt-4o", "gpt-4o-mini"]) == (None, SELF_VOTE_ERROR)


def test_tally_tie_break_and_winners():
    votes = [ModelVote("p1", "p2"), ModelVote("p2", "p3"), ModelVote("p3", "p2")]
    tallies = tally_votes(["p1", "p2", "p3"], votes)
    assert [(t.model_id, t.vote_count) for t in tallies] == [("p2", 2), ("p3", 1), ("p1", 0)]
    assert tallies[0].voters == ["p1", "p3"]
    assert pick_winners(tallies) == ["p2"]


def test_tally_ignores_invalid_votes():
    votes = [
        ModelVote("p1", None, "I pick p1", SELF_VOTE_ERROR),
        ModelVote("p2", "p2"),
        ModelVote("p3", "ghost"),
        ModelVote("p4", "p1"),
    ]
    tallies = tally_votes(["p1", "p2", "p3", "p4"], votes)
    assert sum(t.vote_count for t in tallies) == 1
    assert tallies[0] == VoteTally("p1", 1, ["p4"])


def test_shared_top_count_all_win_and_zero_votes_none():
    tallies = tally_votes(["p1", "p2", "p3"], [ModelVote("p3", "p2"), ModelVote("p2", "p1")])
    assert pick_winners(tallies) == ["p1", "p2"]
    assert pick_winners(tally_votes(["p1", "p2"], [])) == []


# ---------------------------------------------------------------------------
# Competitive
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_competitive_round_with_self_vote(store, rec):
    client = FakeClient({
        "p1": _competitor("prop 1", "p3"),
        "p2": _competitor("prop 2", "I pick p2"),
        "p3": _competitor("prop 3", "p1"),
        "p4": _competitor("prop 4", "p3 is best"),
    })
    engine = CompetitiveEngine(client, ["p1", "p2", "p3", "p4"], store=store, observer=rec)

    round_ = await engine.send("best sorting algorithm?")

    p2_vote = next(v for v in round_.votes if v.voter_id == "p2")
    assert p2_vote.voted_for is None
    assert p2_vote.raw_response == "I pick p2"
    assert p2_vote.error_message == SELF_VOTE_ERROR

    assert [(t.model_id, t.vote_count) for t in round_.tallies] == [("p3", 2), ("p1", 1), ("p2", 0), ("p4", 0)]
    assert round_.winners == ["p3"]
    assert round_.current_phase == CompetitivePhase.COMPLETE

    assert [e["phase"] for e in rec.of("phase")] == ["proposal", "voting"]
    assert rec.of("tally")[0]["winners"] == ["p3"]
    # Two phase checkpoints, then the final save; one round on disk
    assert [e["checkpoint"] for e in rec.of("saved")] == [True, True, False]
    assert len(engine.rounds) == 1
    assert store.load(engine.session_id).history.rounds == [round_]


@pytest.mark.asyncio
async def test_competitive_voting_prompt_lists_proposals():
    client = FakeClient({
        "p1": _competitor("prop 1", "p2"),
        "p2": _competitor("prop 2", "p1"),
    })
    engine = CompetitiveEngine(client, ["p1", "p2"])
    await engine.send("q")

    ballot_prompt = client.prompts_for("p1")[-1]
    assert "prop 1" in ballot_prompt
    assert "prop 2" in ballot_prompt
    assert "1. p1:" in ballot_prompt


@pytest.mark.asyncio
async def test_competitive_failed_proposer_neither_votes_nor_runs():
    client = FakeClient({
        "p1": _competitor("prop 1", "p2"),
        "p2": _competitor("prop 2", "p3"),
        "p3": rate_limited("p3"),
    })
    engine = CompetitiveEngine(client, ["p1", "p2", "p3"])
    round_ = await engine.send("q")

    assert [v.voter_id for v in round_.votes] == ["p1", "p2"]
    assert len(client.calls_for("p3")) == 1
    assert [t.model_id for t in round_.tallies] == ["p2", "p1"]
    assert round_.votes[1].error_message == NO_CANDIDATE_ERROR
    assert round_.winners == ["p2"]


@pytest.mark.asyncio
async def test_competitive_errored_voter():
    client = FakeClient({
        "p1": _competitor("prop 1", "p2"),
        "p2": _competitor("prop 2", rate_limited("p2")),
    })
    engine = CompetitiveEngine(client, ["p1", "p2"])
    round_ = await engine.send("q")

    vote = round_.votes[1]
    assert vote.voted_for is None
    assert vote.raw_response == ""
    assert "429" in vote.error_message
    assert round_.winners == ["p2"]


@pytest.mark.asyncio
async def test_competitive_single_survivor_skips_voting(rec):
    client = FakeClient({"p1": _competitor("prop 1", "p2"), "p2": rate_limited("p2")})
    engine = CompetitiveEngine(client, ["p1", "p2"], observer=rec)
    round_ = await engine.send("q")

    assert round_.votes == []
    assert round_.winners == []
    assert [e["phase"] for e in rec.of("phase")] == ["proposal"]


def _save_checkpointed_round(store) -> str:
    """A competitive session whose only round stopped at the voting phase."""
    pending = CompetitiveRound(
        user_question="q",
        proposals=[ModelProposal("p1", "prop 1"), ModelProposal("p2", "prop 2")],
        current_phase=CompetitivePhase.VOTING,
    )
    history = CompetitiveHistory(
        templates=CompetitiveTemplates(COMPETE_PROPOSAL, COMPETE_VOTING),
        rounds=[pending],
        selected_models=["p1", "p2"],
    )
    sid = store.new_session_id()
    store.save(SessionData(ChatSession(sid, "q", ChatMode.COMPETITIVE, "100"), history, "100", "100"))
    return sid


@pytest.mark.asyncio
async def test_competitive_resume_after_crash(store, rec):
    """A round checkpointed at the voting phase finishes without re-proposing."""
    sid = _save_checkpointed_round(store)
    client = FakeClient({"p1": _competitor("unused", "p2"), "p2": _competitor("unused", "p1")})
    engine = CompetitiveEngine.from_session(client, store.load(sid), store=store, observer=rec)
    assert engine.pending_round() is not None

    round_ = await engine.resume()

    assert round_.complete
    assert all(PROPOSE not in p for p in client.prompts_for("p1"))
    assert round_.winners == ["p1", "p2"]
    loaded = store.load(sid)
    assert len(loaded.history.rounds) == 1
    assert loaded.history.rounds[0].current_phase == CompetitivePhase.COMPLETE
    assert engine.pending_round() is None
    assert await engine.resume() is None


@pytest.mark.asyncio
async def test_competitive_send_waits_for_resume(store):
    sid = _save_checkpointed_round(store)
    client = FakeClient({"p1": _competitor("mine", "p2"), "p2": _competitor("theirs", "p1")})
    engine = CompetitiveEngine.from_session(client, store.load(sid), store=store)

    with pytest.raises(EngineError):
        await engine.send("q2")
    assert client.calls == []
    assert [r.current_phase for r in store.load(sid).history.rounds] == [CompetitivePhase.VOTING]

    await engine.resume()
    await engine.send("q2")

    rounds = store.load(sid).history.rounds
    assert [r.user_question for r in rounds] == ["q", "q2"]
    assert all(r.current_phase == CompetitivePhase.COMPLETE for r in rounds)


@pytest.mark.asyncio
async def test_competitive_cancel_rolls_back_checkpoint(store, rec):
    voting = asyncio.Event()

    def observer(event):
        rec(event)
        if event["type"] == "phase" and event["phase"] == "voting":
            voting.set()

    client = FakeClient({
        "p1": _competitor("prop 1", HANG),
        "p2": _competitor("prop 2", HANG),
    })
    engine = CompetitiveEngine(client, ["p1", "p2"], store=store, observer=observer)
    task = asyncio.create_task(engine.send("q"))
    await voting.wait()
    # The proposal checkpoint is already on disk
    sid = engine.session_id
    assert store.exists(sid)

    engine.cancel()
    assert await task is None
    assert engine.rounds == []
    assert not store.exists(sid)
    assert engine.session_id is None
    assert "cancelled" in rec.types()


def test_competitive_needs_two_models():
    with pytest.raises(EngineError):
        CompetitiveEngine(FakeClient(), ["p1"])


# ---------------------------------------------------------------------------
# Collaborative
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_collaborative_round(store, rec):
    client = FakeClient({m: _collaborator(m) for m in ("a", "b", "c")})
    engine = CollaborativeEngine(client, ["a", "b", "c"], store=store, observer=rec)

    round_ = await engine.send("q")

    assert [r.content for r in round_.model_responses] == ["a answer", "b answer", "c answer"]
    assert [r.content for r in round_.reviews] == ["a review", "b review", "c review"]
    assert round_.final_consensus == "FINAL"
    assert round_.consensus_model == "a"
    assert [e["phase"] for e in rec.of("phase")] == ["initial", "review", "consensus"]

    # Each reviewer sees the others' answers, never its own
    review_prompt = client.prompts_for("a")[1]
    assert "b: b answer" in review_prompt
    assert "c: c answer" in review_prompt
    assert "a answer" not in review_prompt
    # Only the synthesizer runs the consensus phase
    assert len(client.calls_for("b")) == 2
    assert store.load(engine.session_id).history.rounds == [round_]


@pytest.mark.asyncio
async def test_collaborative_failed_model_sits_out():
    client = FakeClient({"a": _collaborator("a"), "b": rate_limited("b"), "c": _collaborator("c")})
    engine = CollaborativeEngine(client, ["a", "b", "c"])
    round_ = await engine.send("q")

    assert not round_.model_responses[1].ok
    assert [r.model_id for r in round_.reviews] == ["a", "c"]
    assert len(client.calls_for("b")) == 1
    assert "b:" not in client.prompts_for("c")[1]
    assert round_.final_consensus == "FINAL"


@pytest.mark.asyncio
async def test_collaborative_needs_two_answers(rec):
    client = FakeClient({"a": _collaborator("a"), "b": rate_limited("b")})
    engine = CollaborativeEngine(client, ["a", "b"], observer=rec)
    round_ = await engine.send("q")

    assert round_.final_consensus is None
    assert round_.reviews == []
    assert [e["phase"] for e in rec.of("phase")] == ["initial"]


@pytest.mark.asyncio
async def test_collaborative_designated_synthesizer():
    client = FakeClient({"a": _collaborator("a"), "b": _collaborator("b", consensus="B FINAL")})
    engine = CollaborativeEngine(client, ["a", "b"], synthesizer="b")
    round_ = await engine.send("q")
    assert round_.consensus_model == "b"
    assert round_.final_consensus == "B FINAL"


@pytest.mark.asyncio
async def test_collaborative_consensus_failure():
    client = FakeClient({
        "a": by_prompt({CONSENSUS: rate_limited("a"), REVIEW: "r", INITIAL: "x"}),
        "b": _collaborator("b"),
    })
    engine = CollaborativeEngine(client, ["a", "b"])
    round_ = await engine.send("q")
    assert round_.consensus_model == "a"
    assert round_.final_consensus is None


@pytest.mark.asyncio
async def test_collaborative_vote_strategy(rec):
    client = FakeClient({
        "a": _collaborator("a", consensus="DRAFT a", ballot="b"),
        "b": _collaborator("b", consensus="DRAFT b", ballot="c"),
        "c": _collaborator("c", consensus="DRAFT c", ballot="b"),
    })
    engine = CollaborativeEngine(client, ["a", "b", "c"], consensus_strategy="vote", observer=rec)
    round_ = await engine.send("q")

    assert round_.consensus_model == "b"
    assert round_.final_consensus == "DRAFT b"
    assert [e["phase"] for e in rec.of("phase")] == ["initial", "review", "consensus", "consensus_vote"]
    assert engine.history.consensus_strategy == "vote"


def test_collaborative_options_validated():
    with pytest.raises(EngineError):
        CollaborativeEngine(FakeClient(), ["a"])
    with pytest.raises(EngineError):
        CollaborativeEngine(FakeClient(), ["a", "b"], consensus_strategy="coin_flip")
    with pytest.raises(EngineError):
        CollaborativeEngine(FakeClient(), ["a", "b"], synthesizer="z")


# ---------------------------------------------------------------------------
# LLM-Choice
# ---------------------------------------------------------------------------

def test_parse_decision():
    assert parse_decision("Let's COMPETE.") == Decision.COMPETE
    assert parse_decision("collaboration beats competition") == Decision.COLLABORATE
    assert parse_decision("Competitive, because the answers differ") == Decision.COMPETE
    assert parse_decision("no idea") is None


@pytest.mark.asyncio
async def test_choice_compete(store, rec):
    def competitor(name, ballot, decision=None):
        replies = {VOTE: ballot, PROPOSE: f"{name} proposal"}
        if decision:
            replies = {DECIDE: decision, **replies}
        return by_prompt(replies)

    client = FakeClient({
        "a": competitor("a", "b", decision="compete. The answers will differ."),
        "b": competitor("b", "a"),
        "c": competitor("c", "b"),
    })
    engine = LLMChoiceEngine(client, ["a", "b", "c"], store=store, observer=rec)

    round_ = await engine.send("q")

    assert round_.decision == Decision.COMPETE
    assert round_.arbiter_response.startswith("compete")
    assert round_.winners == ["b"]
    assert round_.content == "b proposal"

    assert rec.of("decision")[0]["decision"] == "compete"
    forwarded = rec.of("phase")
    assert [e.get("sub_mode") for e in forwarded] == [None, "competitive", "competitive"]
    assert all(e["mode"] == "llm_choice" for e in rec.events)
    # Only the outer session is written
    sessions = store.list_sessions()
    assert [s.id for s in sessions] == [engine.session_id]
    assert sessions[0].history.rounds == [round_]


@pytest.mark.asyncio
async def test_choice_round_keeps_every_model_output(store):
    client = FakeClient({
        "a": by_prompt({DECIDE: "compete", VOTE: "b", PROPOSE: "prop A"}),
        "b": by_prompt({VOTE: "a", PROPOSE: "prop B"}),
        "c": by_prompt({PROPOSE: [Error("OpenRouter error (500): boom", ErrorKind.SERVER, 500)]}),
    })
    engine = LLMChoiceEngine(client, ["a", "b", "c"], store=store)

    round_ = await engine.send("q")

    sub = round_.sub_round
    assert isinstance(sub, CompetitiveRound)
    assert [(p.model_id, p.content) for p in sub.proposals] == [("a", "prop A"), ("b", "prop B"), ("c", "")]
    assert "boom" in sub.proposals[2].error_message
    assert [(v.voter_id, v.voted_for) for v in sub.votes] == [("a", "b"), ("b", "a")]

    raw = store.path_for(engine.session_id).read_text()
    assert "prop B" in raw
    assert "boom" in raw
    assert store.load(engine.session_id).history.rounds == [round_]


@pytest.mark.asyncio
async def test_choice_unparseable_falls_back_to_collaborate(caplog):
    client = FakeClient({
        "a": by_prompt({DECIDE: "hmm, hard to say", CONSENSUS: "JOINT", REVIEW: "r", INITIAL: "x"}),
        "b": _collaborator("b"),
    })
    engine = LLMChoiceEngine(client, ["a", "b"])
    with caplog.at_level("WARNING"):
        round_ = await engine.send("q")

    assert round_.decision == Decision.COLLABORATE
    assert round_.arbiter_response == "hmm, hard to say"
    assert round_.content == "JOINT"
    assert round_.winners == ["a"]
    assert "falling back" in caplog.text


@pytest.mark.asyncio
async def test_choice_arbiter_error_falls_back():
    client = FakeClient({
        "arb": rate_limited("arb"),
        "a": _collaborator("a"),
        "b": _collaborator("b"),
    })
    engine = LLMChoiceEngine(client, ["a", "b"], arbiter="arb")
    round_ = await engine.send("q")

    assert round_.decision == Decision.COLLABORATE
    assert round_.arbiter_response == ""
    assert round_.content == "FINAL"


def test_choice_defaults_arbiter_to_first_model():
    engine = LLMChoiceEngine(FakeClient(), ["a", "b"])
    assert engine.arbiter == "a"
    assert engine.participants() == ["a", "b"]
