"""Error taxonomy for provider adapters and the gateway."""

from __future__ import annotations

from dataclasses import dataclass

# Lower-cased phrases that mark an error as a quota/rate-limit rejection
RATE_LIMIT_PHRASES = ("rate limit", "429", "too many requests", "quota exceeded")


class CompletionError(Exception):
    """Base class for every failure raised by an adapter."""

    def __init__(self, message: str, provider: str = "", model: str = ""):
        super().__init__(message)
        self.provider = provider
        self.model = model


class NetworkError(CompletionError):
    """Transport failure: no usable response was received."""


class StreamInterruptedError(NetworkError):
    """A streamed response broke off before any content arrived."""


class BackendHttpError(CompletionError):
    """The backend answered with a non-2xx status."""

    def __init__(self, message: str, status_code: int, body: str = "", provider: str = "", model: str = ""):
        super().__init__(message, provider=provider, model=model)
        self.status_code = status_code
        self.body = body


class RateLimitedError(BackendHttpError):
    """HTTP 429, or an error whose text reads like a rate limit."""


class MalformedResponseError(CompletionError):
    """The body could not be parsed into a completion."""


@dataclass
class AttemptFailure:
    """One failed (or skipped) provider/model attempt within a gateway call."""

    provider: str
    model: str
    reason: str
    rate_limited: bool = False

    def __str__(self) -> str:
        return f"{self.provider}/{self.model}: {self.reason}"


class AllProvidersFailedError(CompletionError):
    """Every configured provider and model was tried and none succeeded."""

    def __init__(self, failures: list[AttemptFailure]):
        self.failures = list(failures)
        if self.failures:
            detail = "; ".join(str(f) for f in self.failures)
            message = f"All providers were attempted and failed ({detail})"
        else:
            message = "All providers were attempted and failed (no provider configured)"
        super().__init__(message)


def matches_rate_limit_wording(text: str) -> bool:
    lowered = (text or "").lower()
    return any(phrase in lowered for phrase in RATE_LIMIT_PHRASES)


def is_rate_limit_error(exc: BaseException) -> bool:
    """Classify an exception as a rate-limit signal.

    Typed RateLimitedError and HTTP 429 always count; anything else counts
    only if its message carries rate-limit wording.
    """
    if isinstance(exc, RateLimitedError):
        return True
    if isinstance(exc, BackendHttpError) and exc.status_code == 429:
        return True
    return matches_rate_limit_wording(str(exc))
