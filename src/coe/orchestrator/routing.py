"""Worker prompts and routing decisions.

Conversation tickets are routed by type first; anything else is sent to
the classifier prompt and the model's one-word reply picks the worker.
"""

from __future__ import annotations

import re
from enum import StrEnum

from ..tickets import Ticket, TicketType

ANSWER_SYSTEM_PROMPT = (
    "You are an Answer agent in a coding orchestration system. "
    "Provide concise, actionable responses to developer questions. "
    "Focus on clarity and practical solutions."
)

PLANNING_SYSTEM_PROMPT = (
    "You are a Planning agent. Break coding tasks into small atomic steps "
    "(15-25 min each), number them, include file names to modify/create, "
    "and add 1-sentence success criteria per step."
)

VERIFICATION_SYSTEM_PROMPT = (
    "You are a Verification agent. Check if the code meets the task success criteria. "
    "Return only: PASS or FAIL, then 1-2 sentence explanation. Be strict."
)

CLASSIFIER_SYSTEM_PROMPT = (
    "You are a routing assistant. Classify the user request into exactly one of: "
    "planning, verification, answer. Reply with only the single word."
)

FALLBACK_MESSAGE = (
    "LLM service is currently unavailable. A ticket has been created for manual review."
)

EMPTY_QUESTION_MESSAGE = "Please ask a question."

EMPTY_DIFF_MESSAGE = "No code diff provided for verification."

# Words in an answer that suggest a follow-up ticket is needed
ACTION_KEYWORDS = ("ticket", "create", "fix", "implement")

VERDICT_PATTERN = re.compile(r"\b(PASS|FAIL)\b", re.IGNORECASE)


class RequestKind(StrEnum):
    PLANNING = "planning"
    VERIFICATION = "verification"
    ANSWER = "answer"


def parse_classification(text: str) -> RequestKind:
    """Pick the first kind word in the classifier reply, defaulting to answer."""
    match = re.search(r"\b(planning|verification|answer)\b", text or "", re.IGNORECASE)
    if match is None:
        return RequestKind.ANSWER
    return RequestKind(match.group(1).lower())


def parse_verdict(text: str) -> tuple[bool, str]:
    """Parse a verification reply into (passed, explanation).

    Anything without an explicit PASS/FAIL counts as FAIL.
    """
    text = (text or "").strip()
    match = VERDICT_PATTERN.search(text)
    if match is None:
        return False, text or "Verification response was empty."

    passed = match.group(1).upper() == "PASS"
    explanation = text[match.end():].lstrip(" :.-\n").strip()
    return passed, explanation or text


def needs_action(text: str) -> bool:
    lowered = (text or "").lower()
    return any(re.search(rf"\b{keyword}", lowered) for keyword in ACTION_KEYWORDS)


def route_for_ticket(ticket: Ticket) -> RequestKind | None:
    """Route a conversation ticket by its type. None means classify it."""
    if ticket.type == TicketType.AI_TO_HUMAN:
        return RequestKind.PLANNING
    if ticket.type == TicketType.ANSWER_AGENT:
        return RequestKind.ANSWER
    return None
