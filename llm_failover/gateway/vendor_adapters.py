"""Provider Adapters — protocol-level handling for each completion backend.

Each adapter translates a CompletionRequest into the backend's HTTP payload,
sends it, and maps the answer back into a CompletionResponse.

Provider-specific behaviors:
  - Mistral: OpenAI-compatible chat completions, temperature 0.7 / 4096 tokens by default
  - Cerebras: OpenAI-compatible, omits max_tokens unless positive,
    quota headers feed the shared RateLimitTracker
  - OpenRouter: streamed SSE by default; partial output survives a broken stream

All adapters share the same capability surface (ProviderAdapter) and keep
their model cursor and last-known limit in a small owned ModelRotation.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import httpx

from llm_failover.gateway.errors import (
    BackendHttpError,
    MalformedResponseError,
    NetworkError,
    RateLimitedError,
    StreamInterruptedError,
    matches_rate_limit_wording,
)
from llm_failover.gateway.rate_limiter import RateLimitTracker, parse_quota_count
from llm_failover.gateway.streaming import (
    StreamEventError,
    StreamStatus,
    accumulate_fragments,
    first_choice_text,
    iter_sse_chunks,
    parse_usage,
)
from llm_failover.gateway.types import (
    CompletionRequest,
    CompletionResponse,
    ProviderConfig,
    ProviderName,
    QuotaHeader,
    RateLimitInfo,
    TokenUsage,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 60.0


@runtime_checkable
class ProviderAdapter(Protocol):
    """Capabilities the gateway relies on."""

    name: str

    @property
    def models(self) -> list[str]: ...

    def current_model(self) -> str: ...

    def rotate_model(self, expected: str | None = None) -> bool: ...

    def reset_rotation(self) -> None: ...

    def mark_limited(self) -> None: ...

    def is_available(self) -> bool: ...

    def get_rate_limit_info(self) -> RateLimitInfo: ...

    async def complete(self, request: CompletionRequest, timeout: float | None = None) -> CompletionResponse: ...


@dataclass
class ModelRotation:
    """Model cursor and last-known rate limit view owned by one adapter.

    Mutations never await, so within one event loop they cannot interleave.
    """

    models: list[str]
    cursor: int = 0
    rate_limit: RateLimitInfo = field(default_factory=RateLimitInfo)

    def __post_init__(self) -> None:
        if not self.models:
            raise ValueError("A provider needs at least one model")

    def current_model(self) -> str:
        return self.models[self.cursor]

    def rotate(self, expected: str | None = None) -> bool:
        """Advance to the next model; False once the list is exhausted.

        If ``expected`` is given and the cursor has already moved off it
        (another call rotated first), report success without advancing.
        """
        if expected is not None and self.models[self.cursor] != expected:
            return True
        if self.cursor < len(self.models) - 1:
            self.cursor += 1
            return True
        return False

    def reset(self) -> None:
        self.cursor = 0
        self.rate_limit = RateLimitInfo()


@dataclass(frozen=True)
class RateLimitHeaderMap:
    """Backend header names for each canonical quota value."""

    remaining_requests: str | None = None
    remaining_tokens: str | None = None
    reset_requests: str | None = None
    reset_tokens: str | None = None

    def extract(self, headers: Mapping[str, str]) -> dict[QuotaHeader, str]:
        found: dict[QuotaHeader, str] = {}
        for canonical, wire_name in (
            (QuotaHeader.REMAINING_REQUESTS, self.remaining_requests),
            (QuotaHeader.REMAINING_TOKENS, self.remaining_tokens),
            (QuotaHeader.RESET_REQUESTS, self.reset_requests),
            (QuotaHeader.RESET_TOKENS, self.reset_tokens),
        ):
            if wire_name and headers.get(wire_name) is not None:
                found[canonical] = headers[wire_name]
        return found


CEREBRAS_RATE_LIMIT_HEADERS = RateLimitHeaderMap(
    remaining_requests="x-ratelimit-remaining-requests-day",
    remaining_tokens="x-ratelimit-remaining-tokens-minute",
    reset_requests="x-ratelimit-reset-requests-day",
    reset_tokens="x-ratelimit-reset-tokens-minute",
)


# ---------------------------------------------------------------------------
# Shared wire helpers
# ---------------------------------------------------------------------------


def _bearer_headers(api_key: str) -> dict[str, str]:
    return {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
    }


async def _post_json(
    url: str,
    payload: dict[str, Any],
    headers: dict[str, str],
    timeout: float,
    provider: str,
    model: str,
) -> httpx.Response:
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            return await client.post(url, json=payload, headers=headers)
    except httpx.TimeoutException as e:
        raise NetworkError(f"{provider} timeout after {timeout}s", provider=provider, model=model) from e
    except httpx.TransportError as e:
        raise NetworkError(f"{provider} transport error: {e}", provider=provider, model=model) from e


def _decode_json(resp: httpx.Response, provider: str, model: str) -> dict[str, Any]:
    try:
        data = resp.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MalformedResponseError(
            f"{provider} returned an unparseable body: {resp.text[:200]}", provider=provider, model=model
        ) from e
    if not isinstance(data, dict):
        raise MalformedResponseError(
            f"{provider} returned {type(data).__name__} instead of an object", provider=provider, model=model
        )
    return data


def _parse_chat_completion(data: dict[str, Any], provider: str, model: str) -> tuple[str, TokenUsage | None]:
    """Content of the first choice plus usage.

    Missing pieces are tolerated; wrongly typed ones raise MalformedResponseError.
    """
    try:
        return first_choice_text(data.get("choices"), "message"), parse_usage(data.get("usage"))
    except MalformedResponseError as e:
        raise MalformedResponseError(
            f"{provider} returned a malformed completion: {e}", provider=provider, model=model
        ) from e


def _http_error(
    status_code: int,
    body: str,
    rotation: ModelRotation,
    provider: str,
    model: str,
) -> BackendHttpError:
    """Build the error for a non-2xx answer, flagging the adapter on rate limits."""
    message = f"{provider} API error {status_code}: {body[:500]}"
    if status_code == 429 or matches_rate_limit_wording(body):
        rotation.rate_limit.is_limited = True
        logger.warning(
            "%s rate limit hit on %s: %s", provider, model, body[:200], extra={"provider": provider, "model": model}
        )
        return RateLimitedError(message, status_code=status_code, body=body, provider=provider, model=model)
    return BackendHttpError(message, status_code=status_code, body=body, provider=provider, model=model)


class _RotationMixin:
    """Cursor and availability accessors backed by ``self.rotation``."""

    rotation: ModelRotation
    api_key: str

    @property
    def models(self) -> list[str]:
        return self.rotation.models

    def current_model(self) -> str:
        return self.rotation.current_model()

    def rotate_model(self, expected: str | None = None) -> bool:
        return self.rotation.rotate(expected)

    def reset_rotation(self) -> None:
        self.rotation.reset()

    def mark_limited(self) -> None:
        self.rotation.rate_limit.is_limited = True

    def is_available(self) -> bool:
        return bool(self.api_key) and not self.rotation.rate_limit.is_limited

    def get_rate_limit_info(self) -> RateLimitInfo:
        return self.rotation.rate_limit


# ---------------------------------------------------------------------------
# Mistral Adapter
# ---------------------------------------------------------------------------


class MistralAdapter(_RotationMixin):
    """Mistral chat completions adapter."""

    provider = ProviderName.MISTRAL
    default_temperature = 0.7
    default_max_tokens = 4096

    def __init__(
        self,
        config: ProviderConfig,
        tracker: RateLimitTracker | None = None,
        default_timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.name = self.provider.value
        self.api_key = config.api_key
        self.endpoint = config.endpoint
        self.rotation = ModelRotation(models=list(config.models))
        self.tracker = tracker
        self.default_timeout = default_timeout

    def build_payload(self, request: CompletionRequest, model: str) -> dict[str, Any]:
        return {
            "model": model,
            "messages": request.wire_messages(),
            "temperature": request.temperature if request.temperature is not None else self.default_temperature,
            "max_tokens": request.max_tokens if request.max_tokens is not None else self.default_max_tokens,
        }

    async def complete(self, request: CompletionRequest, timeout: float | None = None) -> CompletionResponse:
        model = self.current_model()
        timeout = timeout if timeout is not None else self.default_timeout

        logger.debug("Mistral request to %s (%d messages)", model, len(request.messages))
        resp = await _post_json(
            self.endpoint,
            self.build_payload(request, model),
            _bearer_headers(self.api_key),
            timeout,
            self.name,
            model,
        )

        if not resp.is_success:
            raise _http_error(resp.status_code, resp.text, self.rotation, self.name, model)

        data = _decode_json(resp, self.name, model)
        content, usage = _parse_chat_completion(data, self.name, model)
        if not content:
            logger.warning("Mistral returned empty content (model=%s)", model)

        self.rotation.rate_limit.is_limited = False
        return CompletionResponse(content=content, provider=self.name, model=model, usage=usage)


# ---------------------------------------------------------------------------
# Cerebras Adapter
# ---------------------------------------------------------------------------


class CerebrasAdapter(_RotationMixin):
    """Cerebras adapter with multi-model rotation and quota header tracking."""

    provider = ProviderName.CEREBRAS
    default_temperature = 0.0
    rate_limit_headers = CEREBRAS_RATE_LIMIT_HEADERS

    def __init__(
        self,
        config: ProviderConfig,
        tracker: RateLimitTracker | None = None,
        default_timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.name = self.provider.value
        self.api_key = config.api_key
        self.endpoint = config.endpoint
        self.rotation = ModelRotation(models=list(config.models))
        self.tracker = tracker
        self.default_timeout = default_timeout

    def build_payload(self, request: CompletionRequest, model: str) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": model,
            "messages": request.wire_messages(),
            "temperature": request.temperature if request.temperature is not None else self.default_temperature,
            "stream": False,
            "seed": 0,
            "top_p": 1,
        }
        # Cerebras rejects -1 as "unbounded"; leave the field out instead
        if request.max_tokens and request.max_tokens > 0:
            payload["max_tokens"] = request.max_tokens
        return payload

    def update_rate_limit_from_headers(self, headers: Mapping[str, str], model: str) -> None:
        quota = self.rate_limit_headers.extract(headers)
        if not quota:
            return

        info = self.rotation.rate_limit
        remaining_requests = parse_quota_count(quota.get(QuotaHeader.REMAINING_REQUESTS))
        if remaining_requests is not None:
            info.remaining_requests = remaining_requests
            if remaining_requests == 0:
                info.is_limited = True
                logger.warning("Cerebras %s: daily request limit exhausted", model)

        remaining_tokens = parse_quota_count(quota.get(QuotaHeader.REMAINING_TOKENS))
        if remaining_tokens is not None:
            info.remaining_tokens_per_minute = remaining_tokens
            if remaining_tokens == 0:
                logger.info(
                    "Cerebras %s: per-minute token limit exhausted, resets in %ss",
                    model,
                    quota.get(QuotaHeader.RESET_TOKENS, "?"),
                )

        reset_requests = parse_quota_count(quota.get(QuotaHeader.RESET_REQUESTS))
        if reset_requests is not None:
            info.reset_time_seconds = reset_requests

        if self.tracker is not None:
            self.tracker.update_from_headers(self.name, model, quota)

    async def complete(self, request: CompletionRequest, timeout: float | None = None) -> CompletionResponse:
        model = self.current_model()
        timeout = timeout if timeout is not None else self.default_timeout

        logger.debug("Cerebras request to %s (%d messages)", model, len(request.messages))
        resp = await _post_json(
            self.endpoint,
            self.build_payload(request, model),
            _bearer_headers(self.api_key),
            timeout,
            self.name,
            model,
        )

        # Quota headers are read before the status so a 429 still records them
        self.update_rate_limit_from_headers(resp.headers, model)

        if not resp.is_success:
            raise _http_error(resp.status_code, resp.text, self.rotation, self.name, model)

        data = _decode_json(resp, self.name, model)
        content, usage = _parse_chat_completion(data, self.name, model)
        if not content:
            logger.warning("Cerebras returned empty content (model=%s)", model)

        # Keep the flag when the headers said the daily budget is gone
        if self.rotation.rate_limit.remaining_requests != 0:
            self.rotation.rate_limit.is_limited = False

        return CompletionResponse(content=content, provider=self.name, model=model, usage=usage)


# ---------------------------------------------------------------------------
# OpenRouter Adapter (streaming)
# ---------------------------------------------------------------------------


class OpenRouterAdapter(_RotationMixin):
    """OpenRouter adapter that aggregates a streamed answer.

    A stream that breaks after some text arrived yields that partial text as
    a normal response; one that breaks before any text arrived is raised.
    """

    provider = ProviderName.OPENROUTER

    def __init__(
        self,
        config: ProviderConfig,
        tracker: RateLimitTracker | None = None,
        default_timeout: float = DEFAULT_TIMEOUT_SECONDS,
        app_url: str = "",
        app_name: str = "",
    ):
        self.name = self.provider.value
        self.api_key = config.api_key
        self.endpoint = config.endpoint
        self.rotation = ModelRotation(models=list(config.models))
        self.tracker = tracker
        self.default_timeout = default_timeout
        self.app_url = app_url
        self.app_name = app_name

    def _headers(self) -> dict[str, str]:
        headers = _bearer_headers(self.api_key)
        if self.app_url:
            headers["HTTP-Referer"] = self.app_url
        if self.app_name:
            headers["X-Title"] = self.app_name
        return headers

    def build_payload(self, request: CompletionRequest, model: str, stream: bool) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": model,
            "messages": request.wire_messages(),
            "stream": stream,
        }
        if stream:
            payload["stream_options"] = {"include_usage": True}
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.max_tokens is not None and request.max_tokens > 0:
            payload["max_tokens"] = request.max_tokens
        return payload

    async def complete(self, request: CompletionRequest, timeout: float | None = None) -> CompletionResponse:
        model = self.current_model()
        timeout = timeout if timeout is not None else self.default_timeout
        stream = request.stream is not False

        logger.debug("OpenRouter request to %s (%d messages, stream=%s)", model, len(request.messages), stream)
        if stream:
            content, usage = await self._complete_streaming(request, model, timeout)
        else:
            content, usage = await self._complete_plain(request, model, timeout)

        if not content:
            logger.warning("OpenRouter returned empty content (model=%s)", model)

        self.rotation.rate_limit.is_limited = False
        return CompletionResponse(content=content, provider=self.name, model=model, usage=usage)

    async def _complete_plain(
        self, request: CompletionRequest, model: str, timeout: float
    ) -> tuple[str, TokenUsage | None]:
        resp = await _post_json(
            self.endpoint,
            self.build_payload(request, model, stream=False),
            self._headers(),
            timeout,
            self.name,
            model,
        )
        if not resp.is_success:
            raise _http_error(resp.status_code, resp.text, self.rotation, self.name, model)
        return _parse_chat_completion(_decode_json(resp, self.name, model), self.name, model)

    async def _complete_streaming(
        self, request: CompletionRequest, model: str, timeout: float
    ) -> tuple[str, TokenUsage | None]:
        payload = self.build_payload(request, model, stream=True)
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                async with client.stream("POST", self.endpoint, json=payload, headers=self._headers()) as resp:
                    if not resp.is_success:
                        body = (await resp.aread()).decode("utf-8", errors="replace")
                        raise _http_error(resp.status_code, body, self.rotation, self.name, model)
                    outcome = await accumulate_fragments(iter_sse_chunks(resp.aiter_lines()))
        except httpx.TimeoutException as e:
            raise NetworkError(f"{self.name} timeout after {timeout}s", provider=self.name, model=model) from e
        except httpx.TransportError as e:
            raise NetworkError(f"{self.name} transport error: {e}", provider=self.name, model=model) from e

        if not outcome.ok:
            raise self._interruption_error(outcome.error, model) from outcome.error
        if outcome.status == StreamStatus.PARTIAL:
            logger.warning(
                "OpenRouter stream interrupted after receiving partial content (model=%s, fragments=%d, chars=%d): %s",
                model,
                outcome.fragments,
                len(outcome.content),
                outcome.error,
                extra={"provider": self.name, "model": model},
            )

        return outcome.content, outcome.usage

    def _interruption_error(self, error: BaseException | None, model: str) -> Exception:
        message = str(error) if error else "stream ended with an error"
        if isinstance(error, MalformedResponseError):
            return MalformedResponseError(
                f"{self.name} sent a malformed stream event: {message}", provider=self.name, model=model
            )
        if isinstance(error, StreamEventError) and matches_rate_limit_wording(message):
            self.rotation.rate_limit.is_limited = True
            logger.warning(
                "OpenRouter rate limit hit on %s: %s", model, message, extra={"provider": self.name, "model": model}
            )
            return RateLimitedError(message, status_code=429, body=message, provider=self.name, model=model)
        return StreamInterruptedError(
            f"{self.name} stream interrupted before any content: {message}", provider=self.name, model=model
        )


# ---------------------------------------------------------------------------
# Adapter registry
# ---------------------------------------------------------------------------

ADAPTER_REGISTRY: dict[ProviderName, type] = {
    ProviderName.MISTRAL: MistralAdapter,
    ProviderName.CEREBRAS: CerebrasAdapter,
    ProviderName.OPENROUTER: OpenRouterAdapter,
}


def get_adapter(config: ProviderConfig, tracker: RateLimitTracker | None = None, **kwargs) -> ProviderAdapter:
    """Factory: build the adapter for ``config.provider``."""
    cls = ADAPTER_REGISTRY.get(config.provider)
    if cls is None:
        raise ValueError(f"No adapter registered for provider: {config.provider}")
    return cls(config, tracker=tracker, **kwargs)
