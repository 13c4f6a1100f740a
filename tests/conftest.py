from __future__ import annotations

import asyncio

import pytest

from llm_failover.gateway.errors import RateLimitedError
from llm_failover.gateway.rate_limiter import RateLimitTracker
from llm_failover.gateway.types import CompletionRequest, CompletionResponse, Message, RateLimitInfo
from llm_failover.gateway.vendor_adapters import ModelRotation


class FakeClock:
    """Millisecond clock the tests move by hand."""

    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


class FakeAdapter:
    """In-memory ProviderAdapter.

    ``outcomes`` is consumed one per ``complete`` call: a string becomes the
    response content, an exception is raised. RateLimitedError flags the
    adapter the way the real adapters do.
    """

    def __init__(self, name: str, models: list[str], outcomes: list | None = None, api_key: str = "key"):
        self.name = name
        self.api_key = api_key
        self.rotation = ModelRotation(models=list(models))
        self.outcomes = list(outcomes or [])
        self.calls: list[str] = []
        self.block: asyncio.Event | None = None

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

    async def complete(self, request: CompletionRequest, timeout: float | None = None) -> CompletionResponse:
        model = self.current_model()
        self.calls.append(model)
        if self.block is not None:
            await self.block.wait()
        outcome = self.outcomes.pop(0) if self.outcomes else "ok"
        if isinstance(outcome, BaseException):
            if isinstance(outcome, RateLimitedError):
                self.rotation.rate_limit.is_limited = True
            raise outcome
        self.rotation.rate_limit.is_limited = False
        return CompletionResponse(content=outcome, provider=self.name, model=model)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tracker(clock):
    return RateLimitTracker(high_traffic_threshold_ms=2000, cooldown_ms=5000, clock=clock)


@pytest.fixture
def request_():
    return CompletionRequest(
        messages=(
            Message("system", "You are terse."),
            Message("user", "Say hello"),
        )
    )
