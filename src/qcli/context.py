"""Conversation context: follow-up detection, context messages and context hashing."""

import hashlib
import re
from collections.abc import Sequence

from qcli.store.base import LogStore
from qcli.types import ChatMessage

CONTEXT_SEPARATOR = "\n---\n"

CONTEXT_PATTERNS = [
    re.compile(r"\b(last|previous|earlier|that|those)\s+(command|query|one|time)", re.IGNORECASE),
    re.compile(r"\b(run|do|execute)\s+(it|that|this)\s+again", re.IGNORECASE),
    re.compile(r"\bmodify\s+(it|that)", re.IGNORECASE),
    re.compile(r"\bchange\s+(it|that)", re.IGNORECASE),
    re.compile(r"\bsame\s+but", re.IGNORECASE),
]


def context_hash(responses: Sequence[str]) -> str:
    """
    Fingerprint an ordered list of prior responses.

    Args:
        responses: Response texts, oldest first.

    Returns:
        Lowercase hex SHA-256 of the joined texts, or "" when there is no context.
    """
    if not responses:
        return ""
    combined = CONTEXT_SEPARATOR.join(responses)
    return hashlib.sha256(combined.encode("utf-8")).hexdigest()


def detects_context(query: str) -> bool:
    """Whether the query reads like a follow-up to an earlier interaction."""
    return any(pattern.search(query) for pattern in CONTEXT_PATTERNS)


def get_context_messages(log_store: LogStore, limit: int = 3) -> list[ChatMessage]:
    """
    Build chat turns from the most recent interactions, oldest first.

    Only records carrying both a prompt and a response are used, so turns
    always alternate user/assistant.
    """
    messages: list[ChatMessage] = []
    for log in reversed(log_store.get_logs(limit)):
        if log["prompt"] and log["response"]:
            messages.append({"role": "user", "content": log["prompt"]})
            messages.append({"role": "assistant", "content": log["response"]})
    return messages


def get_context_responses(log_store: LogStore, limit: int = 3) -> list[str]:
    """Response texts of the most recent interactions, oldest first."""
    return [log["response"] for log in reversed(log_store.get_logs(limit)) if log["response"]]
