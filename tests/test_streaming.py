"""Tests for stream accumulation, SSE parsing and the OpenRouter streaming path."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from llm_failover.gateway.errors import (
    MalformedResponseError,
    NetworkError,
    RateLimitedError,
    StreamInterruptedError,
)
from llm_failover.gateway.streaming import (
    StreamChunk,
    StreamEventError,
    StreamStatus,
    accumulate_fragments,
    first_choice_text,
    iter_sse_chunks,
    parse_sse_data,
    parse_usage,
)
from llm_failover.gateway.types import CompletionRequest, Message, ProviderConfig, ProviderName, TokenUsage
from llm_failover.gateway.vendor_adapters import OpenRouterAdapter


async def _chunks(*items):
    for item in items:
        if isinstance(item, BaseException):
            raise item
        yield StreamChunk(text=item) if isinstance(item, str) else item


async def _lines(*lines):
    for line in lines:
        yield line


def _sse(content: str) -> bytes:
    return ('data: {"choices":[{"delta":{"content":"%s"}}]}\n\n' % content).encode()


class _ChunkStream(httpx.AsyncByteStream):
    """Byte stream that yields its chunks and then optionally fails."""

    def __init__(self, chunks: list[bytes], error: Exception | None = None):
        self._chunks = chunks
        self._error = error

    async def __aiter__(self):
        for chunk in self._chunks:
            yield chunk
        if self._error is not None:
            raise self._error

    async def aclose(self) -> None:
        pass


class _StreamContext:
    def __init__(self, response: httpx.Response):
        self.response = response

    async def __aenter__(self) -> httpx.Response:
        return self.response

    async def __aexit__(self, *exc_info) -> bool:
        return False


def _stream_response(status_code: int, chunks: list[bytes], error: Exception | None = None) -> httpx.Response:
    request = httpx.Request("POST", "https://openrouter.ai/api/v1/chat/completions")
    return httpx.Response(
        status_code,
        headers={"content-type": "text/event-stream"},
        stream=_ChunkStream(chunks, error),
        request=request,
    )


def _mock_stream_client(mock_client_cls, response=None, error=None):
    mock_client = AsyncMock()
    if error is not None:
        mock_client.stream = MagicMock(side_effect=error)
    else:
        mock_client.stream = MagicMock(return_value=_StreamContext(response))
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=None)
    mock_client_cls.return_value = mock_client
    return mock_client


def _request(**kwargs) -> CompletionRequest:
    return CompletionRequest(messages=(Message("user", "Hi"),), **kwargs)


# ==========================================================================
# Test: Fragment accumulation
# ==========================================================================


class TestAccumulateFragments:
    @pytest.mark.asyncio
    async def test_completed(self):
        outcome = await accumulate_fragments(_chunks("Hel", "lo", " world"))
        assert outcome.status == StreamStatus.COMPLETED
        assert outcome.content == "Hello world"
        assert outcome.fragments == 3
        assert outcome.ok is True
        assert outcome.error is None

    @pytest.mark.asyncio
    async def test_empty_stream_is_completed(self):
        outcome = await accumulate_fragments(_chunks())
        assert outcome.status == StreamStatus.COMPLETED
        assert outcome.content == ""

    @pytest.mark.asyncio
    async def test_failure_after_fragments_keeps_partial(self):
        error = httpx.ReadError("connection reset")
        outcome = await accumulate_fragments(_chunks("Hel", "lo", error))
        assert outcome.status == StreamStatus.PARTIAL
        assert outcome.content == "Hello"
        assert outcome.fragments == 2
        assert outcome.ok is True
        assert outcome.error is error

    @pytest.mark.asyncio
    async def test_failure_before_fragments(self):
        outcome = await accumulate_fragments(_chunks(httpx.ReadError("reset")))
        assert outcome.status == StreamStatus.EMPTY_ERROR
        assert outcome.content == ""
        assert outcome.ok is False

    @pytest.mark.asyncio
    async def test_usage_only_chunk_is_not_a_fragment(self):
        usage = TokenUsage(prompt_tokens=3, completion_tokens=2, total_tokens=5)
        outcome = await accumulate_fragments(_chunks("Hi", StreamChunk(usage=usage)))
        assert outcome.fragments == 1
        assert outcome.usage == usage

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self):
        with pytest.raises(asyncio.CancelledError):
            await accumulate_fragments(_chunks("Hel", asyncio.CancelledError()))


# ==========================================================================
# Test: SSE parsing
# ==========================================================================


class TestSseParsing:
    def test_parse_delta(self):
        chunk = parse_sse_data('{"choices":[{"delta":{"content":"Hi"}}]}')
        assert chunk.text == "Hi"
        assert chunk.usage is None

    def test_parse_usage_block(self):
        chunk = parse_sse_data('{"choices":[],"usage":{"prompt_tokens":4,"completion_tokens":6}}')
        assert chunk.text == ""
        assert chunk.usage == TokenUsage(prompt_tokens=4, completion_tokens=6, total_tokens=10)

    def test_parse_error_event(self):
        with pytest.raises(StreamEventError, match="Rate limit exceeded"):
            parse_sse_data('{"error":{"message":"Rate limit exceeded","code":429}}')

    def test_parse_usage_absent(self):
        assert parse_usage(None) is None
        assert parse_usage({}) is None

    @pytest.mark.asyncio
    async def test_iter_skips_comments_and_stops_on_done(self):
        lines = _lines(
            ": OPENROUTER PROCESSING",
            "",
            'data: {"choices":[{"delta":{"content":"A"}}]}',
            "event: ping",
            "data: not-json",
            'data: {"choices":[{"delta":{"content":"B"}}]}',
            "data: [DONE]",
            'data: {"choices":[{"delta":{"content":"ignored"}}]}',
        )
        texts = [chunk.text async for chunk in iter_sse_chunks(lines)]
        assert texts == ["A", "B"]


# ==========================================================================
# Test: OpenRouter streaming adapter
# ==========================================================================


class TestOpenRouterStreaming:
    @pytest.mark.asyncio
    async def test_streamed_answer(self):
        adapter = OpenRouterAdapter(ProviderConfig(ProviderName.OPENROUTER, api_key="k"))
        chunks = [
            b": keep-alive\n\n",
            _sse("Hel"),
            _sse("lo"),
            b'data: {"choices":[],"usage":{"prompt_tokens":5,"completion_tokens":2,"total_tokens":7}}\n\n',
            b"data: [DONE]\n\n",
        ]

        with patch("llm_failover.gateway.vendor_adapters.httpx.AsyncClient") as mock_client_cls:
            mock_client = _mock_stream_client(mock_client_cls, _stream_response(200, chunks))
            resp = await adapter.complete(_request())

        assert resp.content == "Hello"
        assert resp.provider == "openrouter"
        assert resp.model == "xiaomi/mimo-v2-flash:free"
        assert resp.usage.total_tokens == 7

        args, kwargs = mock_client.stream.call_args
        assert args[0] == "POST"
        assert kwargs["json"]["stream"] is True

    @pytest.mark.asyncio
    async def test_interrupted_stream_returns_partial(self):
        adapter = OpenRouterAdapter(ProviderConfig(ProviderName.OPENROUTER, api_key="k"))
        response = _stream_response(200, [_sse("Hel"), _sse("lo")], error=httpx.ReadError("connection reset"))

        with patch("llm_failover.gateway.vendor_adapters.httpx.AsyncClient") as mock_client_cls:
            _mock_stream_client(mock_client_cls, response)
            resp = await adapter.complete(_request())

        assert resp.content == "Hello"
        assert adapter.is_available() is True

    @pytest.mark.asyncio
    async def test_interruption_before_content_raises(self):
        adapter = OpenRouterAdapter(ProviderConfig(ProviderName.OPENROUTER, api_key="k"))
        response = _stream_response(200, [b": keep-alive\n\n"], error=httpx.ReadError("connection reset"))

        with patch("llm_failover.gateway.vendor_adapters.httpx.AsyncClient") as mock_client_cls:
            _mock_stream_client(mock_client_cls, response)
            with pytest.raises(StreamInterruptedError) as exc_info:
                await adapter.complete(_request())

        assert isinstance(exc_info.value, NetworkError)
        assert exc_info.value.provider == "openrouter"

    @pytest.mark.asyncio
    async def test_rate_limit_error_event(self):
        adapter = OpenRouterAdapter(ProviderConfig(ProviderName.OPENROUTER, api_key="k"))
        response = _stream_response(200, [b'data: {"error":{"message":"Rate limit exceeded: free-models-per-day"}}\n\n'])

        with patch("llm_failover.gateway.vendor_adapters.httpx.AsyncClient") as mock_client_cls:
            _mock_stream_client(mock_client_cls, response)
            with pytest.raises(RateLimitedError):
                await adapter.complete(_request())

        assert adapter.is_available() is False

    @pytest.mark.asyncio
    async def test_error_event_after_content_keeps_partial(self):
        adapter = OpenRouterAdapter(ProviderConfig(ProviderName.OPENROUTER, api_key="k"))
        response = _stream_response(200, [_sse("Partial"), b'data: {"error":{"message":"upstream died"}}\n\n'])

        with patch("llm_failover.gateway.vendor_adapters.httpx.AsyncClient") as mock_client_cls:
            _mock_stream_client(mock_client_cls, response)
            resp = await adapter.complete(_request())

        assert resp.content == "Partial"

    @pytest.mark.asyncio
    async def test_http_429_before_stream(self):
        adapter = OpenRouterAdapter(ProviderConfig(ProviderName.OPENROUTER, api_key="k"))
        response = _stream_response(429, [b'{"error":{"message":"Too Many Requests"}}'])

        with patch("llm_failover.gateway.vendor_adapters.httpx.AsyncClient") as mock_client_cls:
            _mock_stream_client(mock_client_cls, response)
            with pytest.raises(RateLimitedError) as exc_info:
                await adapter.complete(_request())

        assert exc_info.value.status_code == 429
        assert adapter.is_available() is False

    @pytest.mark.asyncio
    async def test_connect_error(self):
        adapter = OpenRouterAdapter(ProviderConfig(ProviderName.OPENROUTER, api_key="k"))

        with patch("llm_failover.gateway.vendor_adapters.httpx.AsyncClient") as mock_client_cls:
            _mock_stream_client(mock_client_cls, error=httpx.ConnectError("refused"))
            with pytest.raises(NetworkError):
                await adapter.complete(_request())


# ==========================================================================
# Test: wrongly shaped events
# ==========================================================================


class TestWronglyShapedEvents:
    @pytest.mark.parametrize(
        "choices,expected",
        [
            (None, ""),
            ([], ""),
            ([{}], ""),
            ([{"delta": {}}], ""),
            ([{"delta": {"content": None}}], ""),
            ([{"delta": {"content": "Hi"}}], "Hi"),
        ],
    )
    def test_first_choice_text(self, choices, expected):
        assert first_choice_text(choices, "delta") == expected

    @pytest.mark.parametrize(
        "choices",
        [
            {"0": {"delta": {"content": "Hi"}}},
            ["Hi"],
            [{"delta": "Hi"}],
            [{"delta": {"content": ["H", "i"]}}],
        ],
    )
    def test_first_choice_text_rejects_wrong_types(self, choices):
        with pytest.raises(MalformedResponseError):
            first_choice_text(choices, "delta")

    @pytest.mark.parametrize("usage", [[1, 2], "lots", {"prompt_tokens": "n/a"}, {"total_tokens": False}])
    def test_parse_usage_rejects_wrong_types(self, usage):
        with pytest.raises(MalformedResponseError):
            parse_usage(usage)

    def test_parse_usage_rejects_non_finite_count(self):
        with pytest.raises(MalformedResponseError):
            parse_usage({"prompt_tokens": float("inf")})

    @pytest.mark.parametrize("data", ["5", '"text"', "[1, 2]", '{"choices":[{"delta":"x"}]}'])
    def test_parse_sse_data_rejects_non_chunks(self, data):
        with pytest.raises(MalformedResponseError):
            parse_sse_data(data)

    @pytest.mark.asyncio
    async def test_wrongly_shaped_first_event_raises_malformed(self):
        adapter = OpenRouterAdapter(ProviderConfig(ProviderName.OPENROUTER, api_key="k"))
        response = _stream_response(200, [b'data: {"choices":[{"delta":"x"}]}\n\n'])

        with patch("llm_failover.gateway.vendor_adapters.httpx.AsyncClient") as mock_client_cls:
            _mock_stream_client(mock_client_cls, response)
            with pytest.raises(MalformedResponseError) as exc_info:
                await adapter.complete(_request())

        assert exc_info.value.provider == "openrouter"
        assert adapter.is_available() is True

    @pytest.mark.asyncio
    async def test_wrongly_shaped_event_after_content_keeps_partial(self):
        adapter = OpenRouterAdapter(ProviderConfig(ProviderName.OPENROUTER, api_key="k"))
        response = _stream_response(200, [_sse("Partial"), b'data: {"choices":[{"delta":"x"}]}\n\n'])

        with patch("llm_failover.gateway.vendor_adapters.httpx.AsyncClient") as mock_client_cls:
            _mock_stream_client(mock_client_cls, response)
            resp = await adapter.complete(_request())

        assert resp.content == "Partial"
