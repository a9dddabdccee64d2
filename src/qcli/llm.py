"""Completion client: turns a request into a shell command and logs the interaction."""

import logging
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any

from qcli.embeddings.bedrock_client import BedrockClient
from qcli.errors import StoreUnavailable
from qcli.retry import with_retry
from qcli.store.base import LogStore
from qcli.types import ChatMessage

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a terminal assistant. Turn natural language instructions into terminal commands. "
    "When the user references previous interactions (e.g., 'modify last command', 'run that "
    "again'), use the conversation history to understand the context. By default always only "
    "output code, and in a code block. DO NOT OUTPUT ADDITIONAL REMARKS ABOUT THE CODE YOU "
    "OUTPUT. Do not repeat the question the users asks. Do not add explanations for your code. "
    "Do not output any non-code words at all. Just output the code. Short is better. However, "
    "if the user is clearly asking a general question then answer it very briefly and well."
)

FEW_SHOT_MESSAGES: list[ChatMessage] = [
    {"role": "user", "content": "get the current time from some website"},
    {"role": "assistant", "content": "curl -s http://worldtimeapi.org/api/ip | jq '.datetime'"},
    {"role": "user", "content": "print hi"},
    {"role": "assistant", "content": 'echo "hi"'},
]


@dataclass(frozen=True)
class Completion:
    """A finished model answer and the log record it was written to."""

    text: str
    log_id: int | None
    model: str
    duration_ms: int
    input_tokens: int | None = None
    output_tokens: int | None = None

    @property
    def total_tokens(self) -> int | None:
        if self.input_tokens is None or self.output_tokens is None:
            return None
        return self.input_tokens + self.output_tokens


def build_messages(query: str, context_messages: list[ChatMessage] | None = None) -> list[ChatMessage]:
    """Few-shot examples, then prior turns, then the query."""
    return [*FEW_SHOT_MESSAGES, *(context_messages or []), {"role": "user", "content": query}]


class CompletionClient:
    """Streams answers from an Anthropic model on Bedrock."""

    def __init__(
        self,
        bedrock_client: BedrockClient,
        log_store: LogStore | None = None,
        model_id: str = "anthropic.claude-3-haiku-20240307-v1:0",
        max_tokens: int = 1024,
        system_prompt: str = SYSTEM_PROMPT,
    ):
        """
        Initialize the completion client.

        Args:
            bedrock_client: Bedrock runtime client.
            log_store: Where interactions are recorded; None disables logging.
            model_id: Bedrock model ID or inference profile ARN.
            max_tokens: Maximum tokens for the response.
            system_prompt: System prompt sent with every request.
        """
        self.bedrock_client = bedrock_client
        self.log_store = log_store
        self.model_id = model_id
        self.max_tokens = max_tokens
        self.system_prompt = system_prompt

    def complete(
        self,
        query: str,
        context_messages: list[ChatMessage] | None = None,
        on_text: Callable[[str], None] | None = None,
    ) -> Completion:
        """
        Generate an answer, streaming text deltas to ``on_text``.

        Opening the stream is retried on transient failures. Once text has
        started flowing, a failure propagates so the caller never sees a
        silently truncated answer.

        Args:
            query: Natural-language request.
            context_messages: Prior user/assistant turns, oldest first.
            on_text: Called with each text delta as it arrives.

        Returns:
            The full answer with its log id (None if logging failed).
        """
        messages = build_messages(query, context_messages)
        started = time.perf_counter()

        events = with_retry(lambda: self._open_stream(messages))

        parts: list[str] = []
        usage: dict[str, Any] = {}
        for event in events:
            event_type = event.get("type")
            if event_type == "content_block_delta":
                delta = event.get("delta", {})
                if delta.get("type") == "text_delta":
                    text = delta.get("text", "")
                    parts.append(text)
                    if on_text is not None:
                        on_text(text)
            elif event_type == "message_start":
                usage.update(event.get("message", {}).get("usage", {}))
            elif event_type == "message_delta":
                usage.update(event.get("usage", {}))

        duration_ms = round((time.perf_counter() - started) * 1000)
        text = "".join(parts)

        completion = Completion(
            text=text,
            log_id=None,
            model=self.model_id,
            duration_ms=duration_ms,
            input_tokens=usage.get("input_tokens"),
            output_tokens=usage.get("output_tokens"),
        )
        log_id = self._log(query, completion)
        return replace(completion, log_id=log_id)

    def _open_stream(self, messages: list[ChatMessage]) -> Iterator[dict[str, Any]]:
        stream = self.bedrock_client.stream_messages(
            self.model_id,
            messages,
            system=self.system_prompt,
            max_tokens=self.max_tokens,
        )
        # Pull the first event so connection errors surface inside the retry.
        first = next(stream, None)
        return _chain(first, stream)

    def _log(self, query: str, completion: Completion) -> int | None:
        if self.log_store is None:
            return None
        try:
            return self.log_store.insert_log(
                {
                    "model": completion.model,
                    "prompt": query,
                    "system": self.system_prompt,
                    "response": completion.text,
                    "duration_ms": completion.duration_ms,
                    "datetime_utc": datetime.now(timezone.utc),
                    "input_tokens": completion.input_tokens,
                    "output_tokens": completion.output_tokens,
                    "total_tokens": completion.total_tokens,
                }
            )
        except StoreUnavailable as e:
            logger.warning(f"Could not log interaction: {e}")
            return None


def _chain(first: dict[str, Any] | None, rest: Iterator[dict[str, Any]]) -> Iterator[dict[str, Any]]:
    if first is not None:
        yield first
    yield from rest
