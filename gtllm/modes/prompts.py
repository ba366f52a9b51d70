"""
Default prompt templates for the multi-model modes.

Templates use {name} placeholders. render_template() fills only the names it
is given, so literal braces in user-edited templates (JSON examples, code)
survive untouched.
"""

from __future__ import annotations

import re

# ── Collaborative ─────────────────────────────────────────────────────────────

COLLAB_INITIAL = (
    "You are part of a collaborative AI team working together to answer questions. "
    "Provide your best answer to this question:\n\n{user_question}"
)

COLLAB_REVIEW = (
    "Review the following responses from other AI models. Provide constructive "
    "feedback on their strengths and areas for improvement.\n\n"
    "User Question: {user_question}\n\n"
    "Other responses:\n{other_responses}\n\n"
    "Provide your analysis:"
)

COLLAB_CONSENSUS = (
    "Based on all the initial responses and reviews below, synthesize a final "
    "collaborative answer that combines the best insights from all models.\n\n"
    "User Question: {user_question}\n\n"
    "Initial Responses:\n{initial_responses}\n\n"
    "Reviews:\n{reviews}\n\n"
    "Synthesize the best collaborative answer:"
)

# ── Competitive ───────────────────────────────────────────────────────────────

COMPETE_PROPOSAL = (
    "You are competing against other AI models to give the best answer. "
    "Your answer will be judged by the other models.\n\n"
    "Question: {user_question}\n\n"
    "Give your best answer:"
)

COMPETE_VOTING = (
    "Several AI models answered the question below. Vote for the best answer "
    "other than your own.\n\n"
    "Question: {user_question}\n\n"
    "Proposals:\n{all_proposals}\n\n"
    "Your own proposal was:\n{your_proposal}\n\n"
    "You may not vote for yourself. Reply with the exact model id of the "
    "proposal you vote for, then a short justification."
)

# ── PvP ───────────────────────────────────────────────────────────────────────

PVP_BOT_SYSTEM = "You are a helpful assistant. Answer the user's question as well as you can."

PVP_MODERATOR_SYSTEM = "You are a fair and impartial judge."

PVP_JUDGE = (
    "You are a moderator judging a debate between two AI models.\n\n"
    "User Question: {user_question}\n\n"
    "{bot1_id} Response:\n{bot1_response}\n\n"
    "{bot2_id} Response:\n{bot2_response}\n\n"
    "Please evaluate both responses and determine which one is better. "
    "Explain your reasoning and declare a winner. Be specific about what makes "
    "one response superior to the other."
)

# ── LLM-Choice ────────────────────────────────────────────────────────────────

CHOICE_DECISION = (
    "A team of AI models ({models}) will answer the question below. Decide how "
    "the team should work.\n\n"
    "collaborate: the models answer, review each other and merge one joint answer.\n"
    "compete: the models answer separately and vote for the best answer.\n\n"
    "Question: {user_question}\n\n"
    "Reply with exactly one word, collaborate or compete, then one sentence explaining why."
)


_PLACEHOLDER_RE = re.compile(r"\{(\w+)\}")


def render_template(template: str, **values) -> str:
    """Replace {name} tokens for the names given; leave everything else as-is."""
    def _sub(m: re.Match) -> str:
        name = m.group(1)
        if name in values:
            return str(values[name])
        return m.group(0)

    return _PLACEHOLDER_RE.sub(_sub, template)


def format_responses(pairs: list[tuple[str, str]]) -> str:
    """Render (model_id, text) pairs as "model_id: text" blocks."""
    return "\n\n".join(f"{model_id}: {text}" for model_id, text in pairs)


def format_proposals(pairs: list[tuple[str, str]]) -> str:
    """Numbered proposal list used by the voting prompt."""
    return "\n\n".join(f"{i}. {model_id}:\n{text}" for i, (model_id, text) in enumerate(pairs, 1))
