"""Core types and DTOs for the completion gateway."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ProviderName(str, Enum):
    """Supported completion providers."""

    MISTRAL = "mistral"
    CEREBRAS = "cerebras"
    OPENROUTER = "openrouter"


class MessageRole(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class QuotaHeader(str, Enum):
    """Canonical names for backend-reported quota values.

    Adapters translate their backend's header names into these keys before
    handing them to the RateLimitTracker.
    """

    REMAINING_REQUESTS = "remaining_requests"  # per-day request budget
    REMAINING_TOKENS = "remaining_tokens"  # per-minute token budget
    RESET_REQUESTS = "reset_requests"  # seconds until the request budget resets
    RESET_TOKENS = "reset_tokens"  # seconds until the token budget resets


class RequalifyPolicy(str, Enum):
    """How a provider re-enters rotation after its cooldown has passed."""

    FULL = "full"  # Fresh start: first model, normal failover rules
    PROBE = "probe"  # Half-open: one probe attempt, any failure benches it again


# ---------------------------------------------------------------------------
# Request / response
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Message:
    role: MessageRole
    content: str

    def __post_init__(self) -> None:
        # Accept plain strings ("user") as well as enum members
        object.__setattr__(self, "role", MessageRole(self.role))

    def to_wire(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}


@dataclass(frozen=True)
class CompletionRequest:
    """A single completion request, immutable once issued.

    ``temperature`` and ``max_tokens`` left as None mean "use the provider's
    default"; each adapter decides what that maps to on the wire.
    """

    messages: tuple[Message, ...]
    temperature: float | None = None
    max_tokens: int | None = None
    stream: bool | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "messages", tuple(self.messages))
        if not self.messages:
            raise ValueError("CompletionRequest needs at least one message")

    @classmethod
    def from_prompts(
        cls,
        system_prompt: str,
        user_prompt: str,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> CompletionRequest:
        """Build the usual system + user conversation."""
        messages = []
        if system_prompt:
            messages.append(Message(MessageRole.SYSTEM, system_prompt))
        messages.append(Message(MessageRole.USER, user_prompt))
        return cls(messages=tuple(messages), temperature=temperature, max_tokens=max_tokens)

    def wire_messages(self) -> list[dict[str, str]]:
        return [m.to_wire() for m in self.messages]


@dataclass(frozen=True)
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass
class CompletionResponse:
    """Unified response from any provider.

    ``provider`` and ``model`` name what actually answered, which can differ
    from the first choice after rotation or failover.
    """

    content: str
    provider: str
    model: str
    usage: TokenUsage | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to JSON-compatible dict for storage/API."""
        return {
            "content": self.content,
            "provider": self.provider,
            "model": self.model,
            "usage": (
                {
                    "prompt_tokens": self.usage.prompt_tokens,
                    "completion_tokens": self.usage.completion_tokens,
                    "total_tokens": self.usage.total_tokens,
                }
                if self.usage
                else None
            ),
        }


# ---------------------------------------------------------------------------
# Rate limit views
# ---------------------------------------------------------------------------


@dataclass
class RateLimitInfo:
    """Per-adapter transient view of the provider's limits."""

    is_limited: bool = False
    remaining_requests: int | None = None
    remaining_tokens_per_minute: int | None = None
    reset_time_seconds: int | None = None


@dataclass
class RateLimitState:
    """Tracker record for a single provider (or provider:model) key."""

    provider: str
    model: str | None = None
    error_count: int = 0
    first_error_time: float | None = None  # milliseconds, tracker clock
    last_error_time: float | None = None
    is_in_high_traffic: bool = False
    remaining_requests: int | None = None
    remaining_tokens_per_minute: int | None = None


# ---------------------------------------------------------------------------
# Provider config
# ---------------------------------------------------------------------------


@dataclass
class ProviderConfig:
    """Connection settings for one provider, supplied by the caller."""

    provider: ProviderName
    api_key: str = field(default="", repr=False)
    endpoint: str = ""
    models: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.provider = ProviderName(self.provider)
        if not self.endpoint:
            self.endpoint = DEFAULT_ENDPOINTS[self.provider]
        self.models = [m.strip() for m in self.models if m and m.strip()]
        if not self.models:
            self.models = list(DEFAULT_MODELS[self.provider])


DEFAULT_ENDPOINTS: dict[ProviderName, str] = {
    ProviderName.MISTRAL: "https://api.mistral.ai/v1/chat/completions",
    ProviderName.CEREBRAS: "https://api.cerebras.ai/v1/chat/completions",
    ProviderName.OPENROUTER: "https://openrouter.ai/api/v1/chat/completions",
}

DEFAULT_MODELS: dict[ProviderName, tuple[str, ...]] = {
    ProviderName.MISTRAL: ("mistral-small-latest",),
    ProviderName.CEREBRAS: ("llama-3.3-70b", "llama3.1-70b", "llama3.1-8b"),
    ProviderName.OPENROUTER: ("xiaomi/mimo-v2-flash:free",),
}

DEFAULT_PRIORITY: tuple[ProviderName, ...] = (
    ProviderName.MISTRAL,
    ProviderName.CEREBRAS,
    ProviderName.OPENROUTER,
)
