"""Fallback when the AI endpoint is unavailable — canned heuristic replies."""

from __future__ import annotations

import re

from replyfleet.ai.prompts import (
    GREETING_REPLY,
    GREETING_TOKENS,
    QUESTION_REPLY,
    THANKS_REPLY,
)

_WORD_RE = re.compile(r"[a-z']+")


def get_heuristic_reply(text: str) -> str | None:
    """Pick a generic reply from simple surface cues of the message.

    Args:
        text: Incoming message text.

    Returns:
        A question, greeting or thanks acknowledgement, or None when no cue
        is present.
    """
    if "?" in text:
        return QUESTION_REPLY
    lowered = text.lower()
    words = _WORD_RE.findall(lowered)
    if any(w in GREETING_TOKENS for w in words):
        return GREETING_REPLY
    if "thank" in lowered:
        return THANKS_REPLY
    return None
