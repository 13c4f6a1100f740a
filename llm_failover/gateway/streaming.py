"""Incrementally delivered responses.

A streamed completion is consumed as an async iterator of text fragments and
folded into a StreamOutcome with one of three terminal states:

  - COMPLETED: the stream ended normally
  - PARTIAL: the stream failed after at least one fragment arrived; the
    accumulated text is kept and treated as a successful answer
  - EMPTY_ERROR: the stream failed before any fragment arrived

Server-Sent Events parsing for OpenAI-style ``chat.completion.chunk``
payloads lives here too, so adapters only deal with fragments.
"""

from __future__ import annotations

import json
import logging
import math
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from llm_failover.gateway.errors import CompletionError, MalformedResponseError
from llm_failover.gateway.types import TokenUsage

logger = logging.getLogger(__name__)

_DONE_SENTINEL = "[DONE]"


class StreamStatus(str, Enum):
    COMPLETED = "completed"
    PARTIAL = "errored_with_partial"
    EMPTY_ERROR = "errored_empty"


class StreamEventError(CompletionError):
    """The backend reported an error inside the event stream."""


@dataclass
class StreamChunk:
    """One parsed event: an optional text fragment and optional usage."""

    text: str = ""
    usage: TokenUsage | None = None


@dataclass
class StreamOutcome:
    status: StreamStatus
    content: str = ""
    fragments: int = 0
    usage: TokenUsage | None = None
    error: BaseException | None = field(default=None, repr=False)

    @property
    def ok(self) -> bool:
        return self.status != StreamStatus.EMPTY_ERROR


async def accumulate_fragments(chunks: AsyncIterator[StreamChunk]) -> StreamOutcome:
    """Concatenate fragments in delivery order until the stream ends.

    Exceptions from the stream are folded into the outcome instead of being
    raised. Cancellation is not an exception here and propagates.
    """
    parts: list[str] = []
    usage: TokenUsage | None = None
    try:
        async for chunk in chunks:
            if chunk.text:
                parts.append(chunk.text)
            if chunk.usage is not None:
                usage = chunk.usage
    except Exception as e:
        if parts:
            return StreamOutcome(StreamStatus.PARTIAL, "".join(parts), len(parts), usage, e)
        return StreamOutcome(StreamStatus.EMPTY_ERROR, "", 0, usage, e)

    return StreamOutcome(StreamStatus.COMPLETED, "".join(parts), len(parts), usage)


def _token_count(usage: dict[str, Any], field_name: str) -> int | None:
    value = usage.get(field_name)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise MalformedResponseError(f"usage.{field_name} is not a number: {value!r}")
    return int(value)


def parse_usage(usage: Any) -> TokenUsage | None:
    """Map an OpenAI-style usage block; absent block → None.

    Raises MalformedResponseError when the block or a count has the wrong type.
    """
    if not usage:
        return None
    if not isinstance(usage, dict):
        raise MalformedResponseError(f"usage is {type(usage).__name__}, expected an object")
    prompt = _token_count(usage, "prompt_tokens") or 0
    completion = _token_count(usage, "completion_tokens") or 0
    total = _token_count(usage, "total_tokens") or prompt + completion
    return TokenUsage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)


def first_choice_text(choices: Any, part: str) -> str:
    """Content of ``choices[0].<part>``; empty when a level is absent.

    ``part`` is ``message`` for plain answers and ``delta`` for stream events.
    Raises MalformedResponseError when a level has the wrong type.
    """
    if not choices:
        return ""
    if not isinstance(choices, list) or not isinstance(choices[0], dict):
        raise MalformedResponseError("choices is not a list of objects")
    section = choices[0].get(part) or {}
    if not isinstance(section, dict):
        raise MalformedResponseError(f"choices[0].{part} is {type(section).__name__}, expected an object")
    content = section.get("content") or ""
    if not isinstance(content, str):
        raise MalformedResponseError(f"choices[0].{part}.content is {type(content).__name__}, expected a string")
    return content


def parse_sse_data(data: str) -> StreamChunk:
    """Parse the payload of one ``data:`` line.

    Raises StreamEventError when the event carries an ``error`` object and
    MalformedResponseError when it is not shaped like a completion chunk.
    """
    payload = json.loads(data)
    if not isinstance(payload, dict):
        raise MalformedResponseError(f"Stream event is {type(payload).__name__}, expected an object")
    if payload.get("error"):
        error = payload["error"]
        message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
        raise StreamEventError(f"Stream error event: {message}")

    text = first_choice_text(payload.get("choices"), "delta")
    return StreamChunk(text=text, usage=parse_usage(payload.get("usage")))


async def iter_sse_chunks(lines: AsyncIterator[str]) -> AsyncIterator[StreamChunk]:
    """Turn raw SSE lines into StreamChunks.

    Comment lines (``: keep-alive``), blank separators and non-data fields are
    skipped; undecodable data lines are logged and skipped.
    """
    async for line in lines:
        line = line.strip()
        if not line or line.startswith(":") or not line.startswith("data:"):
            continue
        data = line[5:].strip()
        if data == _DONE_SENTINEL:
            return
        try:
            chunk = parse_sse_data(data)
        except json.JSONDecodeError:
            logger.debug("Skipping undecodable SSE line: %s", data[:200])
            continue
        yield chunk
