"""
Session data model: per-mode round histories and the session envelope.

Everything here serialises to plain dicts (to_dict / from_dict) so the
store can write JSON. The history dict carries a "mode" discriminant that
must match session.mode:

    { "session": {"id", "title", "mode", "timestamp"},
      "history": {"mode": "<mode>", ...},
      "created_at": "<secs>", "updated_at": "<secs>" }
"""

from __future__ import annotations

import re
import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import ClassVar

from gtllm.types import ChatMode

TITLE_MAX_BYTES = 60


# ---------------------------------------------------------------------------
# Shared pieces
# ---------------------------------------------------------------------------

@dataclass
class ModelResponse:
    """One model's output in a phase. Errors are typed, content stays empty."""
    model_id: str
    content: str = ""
    error_message: str | None = None

    @property
    def ok(self) -> bool:
        return self.error_message is None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "ModelResponse":
        return cls(
            model_id=d["model_id"],
            content=d.get("content", ""),
            error_message=d.get("error_message"),
        )


def _responses(items: list[dict]) -> list[ModelResponse]:
    return [ModelResponse.from_dict(r) for r in items or []]


# ---------------------------------------------------------------------------
# Standard
# ---------------------------------------------------------------------------

@dataclass
class StandardRound:
    user_message: str
    responses: list[ModelResponse] = field(default_factory=list)

    @classmethod
    def from_dict(cls, d: dict) -> "StandardRound":
        return cls(d["user_message"], _responses(d.get("responses")))


@dataclass
class StandardHistory:
    mode: ClassVar[ChatMode] = ChatMode.STANDARD
    rounds: list[StandardRound] = field(default_factory=list)
    selected_models: list[str] = field(default_factory=list)
    system_prompt: str = ""

    @classmethod
    def from_dict(cls, d: dict) -> "StandardHistory":
        return cls(
            rounds=[StandardRound.from_dict(r) for r in d.get("rounds") or []],
            selected_models=list(d.get("selected_models") or []),
            system_prompt=d.get("system_prompt", ""),
        )


# ---------------------------------------------------------------------------
# PvP
# ---------------------------------------------------------------------------

@dataclass
class ModeratorResponse:
    content: str = ""
    error_message: str | None = None

    @property
    def ok(self) -> bool:
        return self.error_message is None

    @classmethod
    def from_dict(cls, d: dict) -> "ModeratorResponse":
        return cls(d.get("content", ""), d.get("error_message"))


@dataclass
class SystemPrompts:
    bot: str = ""
    moderator: str = ""

    @classmethod
    def from_dict(cls, d: dict) -> "SystemPrompts":
        return cls(d.get("bot", ""), d.get("moderator", ""))


@dataclass
class PvPRound:
    user_message: str
    bot1_response: ModelResponse
    bot2_response: ModelResponse
    moderator_judgment: ModeratorResponse | None = None

    @classmethod
    def from_dict(cls, d: dict) -> "PvPRound":
        judgment = d.get("moderator_judgment")
        return cls(
            user_message=d["user_message"],
            bot1_response=ModelResponse.from_dict(d["bot1_response"]),
            bot2_response=ModelResponse.from_dict(d["bot2_response"]),
            moderator_judgment=ModeratorResponse.from_dict(judgment) if judgment else None,
        )


@dataclass
class PvPHistory:
    mode: ClassVar[ChatMode] = ChatMode.PVP
    rounds: list[PvPRound] = field(default_factory=list)
    bot_models: list[str] = field(default_factory=list)
    moderator_model: str | None = None
    system_prompts: SystemPrompts = field(default_factory=SystemPrompts)

    @classmethod
    def from_dict(cls, d: dict) -> "PvPHistory":
        return cls(
            rounds=[PvPRound.from_dict(r) for r in d.get("rounds") or []],
            bot_models=list(d.get("bot_models") or []),
            moderator_model=d.get("moderator_model"),
            system_prompts=SystemPrompts.from_dict(d.get("system_prompts") or {}),
        )


# ---------------------------------------------------------------------------
# Collaborative
# ---------------------------------------------------------------------------

@dataclass
class CollaborativeTemplates:
    initial: str
    review: str
    consensus: str

    @classmethod
    def from_dict(cls, d: dict) -> "CollaborativeTemplates":
        return cls(d["initial"], d["review"], d["consensus"])


@dataclass
class CollaborativeRound:
    user_message: str
    model_responses: list[ModelResponse] = field(default_factory=list)
    final_consensus: str | None = None
    reviews: list[ModelResponse] = field(default_factory=list)
    consensus_model: str | None = None

    @classmethod
    def from_dict(cls, d: dict) -> "CollaborativeRound":
        return cls(
            user_message=d["user_message"],
            model_responses=_responses(d.get("model_responses")),
            final_consensus=d.get("final_consensus"),
            reviews=_responses(d.get("reviews")),
            consensus_model=d.get("consensus_model"),
        )


@dataclass
class CollaborativeHistory:
    mode: ClassVar[ChatMode] = ChatMode.COLLABORATIVE
    templates: CollaborativeTemplates
    rounds: list[CollaborativeRound] = field(default_factory=list)
    selected_models: list[str] = field(default_factory=list)
    consensus_strategy: str = "synthesizer"

    @classmethod
    def from_dict(cls, d: dict) -> "CollaborativeHistory":
        return cls(
            templates=CollaborativeTemplates.from_dict(d["templates"]),
            rounds=[CollaborativeRound.from_dict(r) for r in d.get("rounds") or []],
            selected_models=list(d.get("selected_models") or []),
            consensus_strategy=d.get("consensus_strategy", "synthesizer"),
        )


# ---------------------------------------------------------------------------
# Competitive
# ---------------------------------------------------------------------------

class CompetitivePhase(str, Enum):
    PROPOSAL = "proposal"
    VOTING = "voting"
    TALLYING = "tallying"
    COMPLETE = "complete"


@dataclass
class ModelProposal:
    model_id: str
    content: str = ""
    error_message: str | None = None

    @property
    def ok(self) -> bool:
        return self.error_message is None

    @classmethod
    def from_dict(cls, d: dict) -> "ModelProposal":
        return cls(d["model_id"], d.get("content", ""), d.get("error_message"))


@dataclass
class ModelVote:
    voter_id: str
    voted_for: str | None = None
    raw_response: str = ""
    error_message: str | None = None

    @property
    def valid(self) -> bool:
        return self.voted_for is not None

    @classmethod
    def from_dict(cls, d: dict) -> "ModelVote":
        return cls(d["voter_id"], d.get("voted_for"), d.get("raw_response", ""), d.get("error_message"))


@dataclass
class VoteTally:
    model_id: str
    vote_count: int = 0
    voters: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, d: dict) -> "VoteTally":
        return cls(d["model_id"], int(d.get("vote_count", 0)), list(d.get("voters") or []))


@dataclass
class CompetitiveTemplates:
    proposal: str
    voting: str

    @classmethod
    def from_dict(cls, d: dict) -> "CompetitiveTemplates":
        return cls(d["proposal"], d["voting"])


@dataclass
class CompetitiveRound:
    user_question: str
    proposals: list[ModelProposal] = field(default_factory=list)
    votes: list[ModelVote] = field(default_factory=list)
    tallies: list[VoteTally] = field(default_factory=list)
    winners: list[str] = field(default_factory=list)
    current_phase: CompetitivePhase = CompetitivePhase.PROPOSAL

    @property
    def complete(self) -> bool:
        return self.current_phase == CompetitivePhase.COMPLETE

    @classmethod
    def from_dict(cls, d: dict) -> "CompetitiveRound":
        return cls(
            user_question=d["user_question"],
            proposals=[ModelProposal.from_dict(p) for p in d.get("proposals") or []],
            votes=[ModelVote.from_dict(v) for v in d.get("votes") or []],
            tallies=[VoteTally.from_dict(t) for t in d.get("tallies") or []],
            winners=list(d.get("winners") or []),
            current_phase=CompetitivePhase(d.get("current_phase", "proposal")),
        )


@dataclass
class CompetitiveHistory:
    mode: ClassVar[ChatMode] = ChatMode.COMPETITIVE
    templates: CompetitiveTemplates
    rounds: list[CompetitiveRound] = field(default_factory=list)
    selected_models: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, d: dict) -> "CompetitiveHistory":
        return cls(
            templates=CompetitiveTemplates.from_dict(d["templates"]),
            rounds=[CompetitiveRound.from_dict(r) for r in d.get("rounds") or []],
            selected_models=list(d.get("selected_models") or []),
        )


# ---------------------------------------------------------------------------
# LLM-Choice
# ---------------------------------------------------------------------------

class Decision(str, Enum):
    COLLABORATE = "collaborate"
    COMPETE = "compete"


@dataclass
class LLMChoiceRound:
    user_message: str
    decision: Decision
    content: str | None = None
    arbiter_response: str = ""
    winners: list[str] = field(default_factory=list)
    # The collaborative or competitive round the decision ran
    sub_round: CollaborativeRound | CompetitiveRound | None = None

    @classmethod
    def from_dict(cls, d: dict) -> "LLMChoiceRound":
        decision = Decision(d["decision"])
        sub = d.get("sub_round")
        if sub is not None:
            sub_type = CompetitiveRound if decision == Decision.COMPETE else CollaborativeRound
            sub = sub_type.from_dict(sub)
        return cls(
            user_message=d["user_message"],
            decision=decision,
            content=d.get("content"),
            arbiter_response=d.get("arbiter_response", ""),
            winners=list(d.get("winners") or []),
            sub_round=sub,
        )


@dataclass
class LLMChoiceHistory:
    mode: ClassVar[ChatMode] = ChatMode.LLM_CHOICE
    rounds: list[LLMChoiceRound] = field(default_factory=list)
    selected_models: list[str] = field(default_factory=list)
    arbiter_model: str | None = None

    @classmethod
    def from_dict(cls, d: dict) -> "LLMChoiceHistory":
        return cls(
            rounds=[LLMChoiceRound.from_dict(r) for r in d.get("rounds") or []],
            selected_models=list(d.get("selected_models") or []),
            arbiter_model=d.get("arbiter_model"),
        )


History = StandardHistory | PvPHistory | CollaborativeHistory | CompetitiveHistory | LLMChoiceHistory

_HISTORY_TYPES: dict[ChatMode, type] = {
    ChatMode.STANDARD: StandardHistory,
    ChatMode.PVP: PvPHistory,
    ChatMode.COLLABORATIVE: CollaborativeHistory,
    ChatMode.COMPETITIVE: CompetitiveHistory,
    ChatMode.LLM_CHOICE: LLMChoiceHistory,
}


def _plain_dict(items: list[tuple[str, object]]) -> dict:
    return {k: v.value if isinstance(v, Enum) else v for k, v in items}


def history_to_dict(history: History) -> dict:
    # asdict() skips ClassVars, so the discriminant goes in explicitly first
    return {"mode": history.mode.value, **asdict(history, dict_factory=_plain_dict)}


def history_from_dict(d: dict) -> History:
    try:
        mode = ChatMode(d["mode"])
    except (KeyError, ValueError):
        raise ValueError(f"Unknown history mode: {d.get('mode')!r}")
    return _HISTORY_TYPES[mode].from_dict(d)


# ---------------------------------------------------------------------------
# Session envelope
# ---------------------------------------------------------------------------

@dataclass
class ChatSession:
    id: str
    title: str
    mode: ChatMode
    timestamp: str

    def to_dict(self) -> dict:
        return {"id": self.id, "title": self.title, "mode": self.mode.value, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, d: dict) -> "ChatSession":
        return cls(str(d["id"]), d.get("title", ""), ChatMode(d["mode"]), str(d.get("timestamp", "")))


@dataclass
class SessionData:
    session: ChatSession
    history: History
    created_at: str
    updated_at: str

    @property
    def id(self) -> str:
        return self.session.id

    @property
    def mode(self) -> ChatMode:
        return self.session.mode

    def to_dict(self) -> dict:
        return {
            "session": self.session.to_dict(),
            "history": history_to_dict(self.history),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "SessionData":
        """Raises ValueError / KeyError / TypeError on malformed input."""
        session = ChatSession.from_dict(d["session"])
        history = history_from_dict(d["history"])
        if history.mode != session.mode:
            raise ValueError(
                f"history mode {history.mode.value!r} does not match session mode {session.mode.value!r}"
            )
        return cls(session, history, str(d["created_at"]), str(d["updated_at"]))


# ---------------------------------------------------------------------------
# Ids, titles, timestamps
# ---------------------------------------------------------------------------

def new_session_id() -> str:
    return str(uuid.uuid4())


def is_session_id(value: str) -> bool:
    """True for a canonical UUID v4 string (the only names the store accepts)."""
    try:
        parsed = uuid.UUID(value)
    except (ValueError, AttributeError, TypeError):
        return False
    return parsed.version == 4 and str(parsed) == value.lower()


_WS_RE = re.compile(r"\s+")


def derive_title(message: str, mode: ChatMode = ChatMode.STANDARD) -> str:
    """
    Session title from the first user message: whitespace collapsed, cut at
    the last space before byte 60 with "..." appended when longer.
    """
    text = _WS_RE.sub(" ", message).strip()
    if not text:
        return f"{mode.label} Chat"
    encoded = text.encode("utf-8")
    if len(encoded) <= TITLE_MAX_BYTES:
        return text
    # errors="ignore" drops a multi-byte character split by the byte cut
    head = encoded[:TITLE_MAX_BYTES].decode("utf-8", errors="ignore")
    space = head.rfind(" ")
    if space > 0:
        head = head[:space]
    return head.rstrip() + "..."


def format_timestamp(now: float | None = None) -> str:
    """Current Unix time as whole decimal seconds."""
    return str(int(time.time() if now is None else now))


def timestamp_value(ts: str) -> int:
    """Numeric value of a stored timestamp; unparseable values sort oldest."""
    try:
        return int(ts)
    except (TypeError, ValueError):
        return 0


def format_timestamp_display(ts: str, now: float | None = None) -> str:
    """Relative, human readable age of a stored timestamp."""
    try:
        secs = int(ts)
    except (TypeError, ValueError):
        return ts
    current = int(time.time() if now is None else now)
    diff = max(0, current - secs)
    if diff < 60:
        return "Just now"
    if diff < 3600:
        return f"{diff // 60} minutes ago"
    if diff < 86400:
        return f"{diff // 3600} hours ago"
    days = diff // 86400
    if days < 365:
        return f"{days} days ago"
    return f"{days // 365} years ago"
