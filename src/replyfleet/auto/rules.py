"""Reply rule matching and rule management on a session config."""

from __future__ import annotations

import re

from replyfleet.db.models import ReplyRule, SessionConfig
from replyfleet.utils.logger import get_logger

logger = get_logger("replyfleet.auto.rules")

MATCH_TYPES = ("contains", "exact", "regex")


def rule_matches(text: str, rule: ReplyRule) -> bool:
    """Check if text matches a single reply rule.

    Args:
        text: Incoming message text.
        rule: ReplyRule with pattern, match_type and case_sensitive.

    Returns:
        True if the rule's pattern matches the text. Empty patterns and
        invalid regexes never match.
    """
    if not rule.pattern:
        return False
    if rule.match_type == "regex":
        flags = 0 if rule.case_sensitive else re.IGNORECASE
        try:
            return bool(re.search(rule.pattern, text, flags))
        except re.error:
            logger.warning(f"Invalid regex in rule: {rule.pattern!r}")
            return False

    haystack, needle = text, rule.pattern
    if not rule.case_sensitive:
        haystack, needle = haystack.lower(), needle.lower()
    if rule.match_type == "exact":
        return haystack.strip() == needle.strip()
    return needle in haystack


def find_matching_rule(
    text: str, rules: list[ReplyRule]
) -> tuple[int, ReplyRule] | None:
    """Return the first rule in list order that matches, with its index."""
    for index, rule in enumerate(rules):
        if rule_matches(text, rule):
            return index, rule
    return None


def add_rule(
    config: SessionConfig,
    pattern: str,
    reply: str,
    match_type: str = "contains",
    case_sensitive: bool = False,
    priority: int = 0,
) -> ReplyRule:
    """Append a rule to a config.

    Args:
        config: Config to mutate.
        pattern: Text or regex to match.
        reply: Text to send when matched.
        match_type: ``'contains'``, ``'exact'`` or ``'regex'``.
        case_sensitive: Whether matching honors case.
        priority: Informational rank.

    Returns:
        The new ReplyRule.

    Raises:
        ValueError: On an empty pattern or reply, or an unknown match type.
    """
    if not pattern or not reply:
        raise ValueError("Rule pattern and reply must not be empty")
    if match_type not in MATCH_TYPES:
        raise ValueError(f"Unknown match type: {match_type}")
    rule = ReplyRule(
        pattern=pattern,
        reply=reply,
        priority=priority,
        case_sensitive=case_sensitive,
        match_type=match_type,
    )
    config.reply_rules.append(rule)
    return rule


def remove_rule(config: SessionConfig, index: int) -> bool:
    """Remove the rule at ``index``. Returns False if out of range."""
    if 0 <= index < len(config.reply_rules):
        del config.reply_rules[index]
        return True
    return False
