"""Rate Limit Tracker — shared per provider/model error and quota state.

Combines two independent limiting signals:
  - Error bursts: consecutive failures for a key that last at least
    ``high_traffic_threshold_ms`` flag the key as high-traffic.
  - Quota headers: a backend-reported remaining request count of zero
    limits the key regardless of the burst heuristic.

A key recovers either on a recorded success or once ``cooldown_ms`` has
passed since its last error (``reset_if_cooled_down``). A benched provider
is released once all of its error-stamped keys have cooled down
(``reset_provider_if_cooled_down``).

One instance is created at startup and shared by the gateway and every
adapter. The state map is guarded by a single lock that is held only for
the read-modify-write of one call, never across a network round trip.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import asdict, replace

from llm_failover.gateway.types import QuotaHeader, RateLimitState

logger = logging.getLogger(__name__)

DEFAULT_HIGH_TRAFFIC_THRESHOLD_MS = 120_000
DEFAULT_COOLDOWN_MS = 300_000


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


def parse_quota_count(value: str | int | None) -> int | None:
    """Parse a backend quota header value; fractional values are truncated.

    Returns None for absent, non-numeric or non-finite values.
    """
    if value is None:
        return None
    try:
        number = float(str(value).strip())
    except ValueError:
        logger.debug("Ignoring non-numeric quota header value %r", value)
        return None
    if not math.isfinite(number):
        logger.debug("Ignoring non-finite quota header value %r", value)
        return None
    return int(number)


class RateLimitTracker:
    """Per provider/model rate limit tracking.

    Usage:
        tracker = RateLimitTracker()

        # After a failed call:
        tracker.record_error("cerebras", "llama-3.3-70b")

        # After a successful call:
        tracker.record_success("cerebras", "llama-3.3-70b")

        # Before retrying a benched provider:
        if tracker.reset_if_cooled_down("cerebras", "llama-3.3-70b"):
            adapter.reset_rotation()
    """

    def __init__(
        self,
        high_traffic_threshold_ms: float = DEFAULT_HIGH_TRAFFIC_THRESHOLD_MS,
        cooldown_ms: float = DEFAULT_COOLDOWN_MS,
        clock: Callable[[], float] | None = None,
    ):
        """
        Args:
            high_traffic_threshold_ms: Error-burst duration that flags a key as high-traffic
            cooldown_ms: Quiet time after the last error before a key is reset
            clock: Returns the current time in milliseconds (monotonic by default)
        """
        self.high_traffic_threshold_ms = high_traffic_threshold_ms
        self.cooldown_ms = cooldown_ms
        self._clock = clock or _monotonic_ms
        self._states: dict[str, RateLimitState] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _key(provider: str, model: str | None = None) -> str:
        provider = getattr(provider, "value", provider)
        return f"{provider}:{model}" if model else provider

    def _get_or_create(self, provider: str, model: str | None) -> RateLimitState:
        key = self._key(provider, model)
        state = self._states.get(key)
        if state is None:
            state = RateLimitState(provider=getattr(provider, "value", provider), model=model)
            self._states[key] = state
        return state

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record_error(self, provider: str, model: str | None = None) -> None:
        """Count an error; flag high traffic once the burst is long enough."""
        key = self._key(provider, model)
        with self._lock:
            now = self._clock()
            state = self._get_or_create(provider, model)
            state.error_count += 1
            state.last_error_time = now
            if state.first_error_time is None:
                state.first_error_time = now

            burst_ms = now - state.first_error_time
            if burst_ms >= self.high_traffic_threshold_ms and not state.is_in_high_traffic:
                state.is_in_high_traffic = True
                logger.warning("High traffic detected for %s - errors for %ds", key, round(burst_ms / 1000))

    def record_success(self, provider: str, model: str | None = None) -> None:
        """Clear all state for the key."""
        with self._lock:
            self._states.pop(self._key(provider, model), None)

    def record_limit(self, provider: str, model: str | None = None) -> None:
        """Start the cooldown clock for a key without counting an error.

        Used when a provider is benched by a quota signal on an otherwise
        successful call, so ``reset_if_cooled_down`` can still release it.
        """
        with self._lock:
            state = self._get_or_create(provider, model)
            state.last_error_time = self._clock()

    def update_from_headers(
        self,
        provider: str,
        model: str | None,
        headers: Mapping[str, str | None],
    ) -> None:
        """Store backend-reported quota values.

        ``headers`` is keyed by QuotaHeader names; absent or unparsable
        values are ignored.
        """
        remaining_requests = parse_quota_count(headers.get(QuotaHeader.REMAINING_REQUESTS))
        remaining_tokens = parse_quota_count(headers.get(QuotaHeader.REMAINING_TOKENS))
        if remaining_requests is None and remaining_tokens is None:
            return

        key = self._key(provider, model)
        with self._lock:
            state = self._get_or_create(provider, model)
            if remaining_requests is not None:
                state.remaining_requests = remaining_requests
                if remaining_requests == 0:
                    logger.warning("Daily request limit reached for %s", key)
            if remaining_tokens is not None:
                state.remaining_tokens_per_minute = remaining_tokens
                if remaining_tokens == 0:
                    logger.warning("Per-minute token limit reached for %s", key)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_limited(self, provider: str, model: str | None = None) -> bool:
        with self._lock:
            state = self._states.get(self._key(provider, model))
            if state is None:
                return False
            return state.remaining_requests == 0 or state.is_in_high_traffic

    def is_in_high_traffic(self, provider: str, model: str | None = None) -> bool:
        with self._lock:
            state = self._states.get(self._key(provider, model))
            return bool(state and state.is_in_high_traffic)

    def get_error_count(self, provider: str, model: str | None = None) -> int:
        with self._lock:
            state = self._states.get(self._key(provider, model))
            return state.error_count if state else 0

    def get_state(self, provider: str, model: str | None = None) -> RateLimitState | None:
        """Return a copy of the key's state, or None if nothing is tracked."""
        with self._lock:
            state = self._states.get(self._key(provider, model))
            return replace(state) if state else None

    def get_all_states(self) -> list[dict]:
        with self._lock:
            return [{"key": key, **asdict(state)} for key, state in self._states.items()]

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def reset_if_cooled_down(self, provider: str, model: str | None = None) -> bool:
        """Drop the key's state if its last error is older than the cooldown.

        Returns True if the state was dropped. Keys without a recorded error
        time are left untouched.
        """
        key = self._key(provider, model)
        with self._lock:
            state = self._states.get(key)
            if state is None or state.last_error_time is None:
                return False
            if self._clock() - state.last_error_time < self.cooldown_ms:
                return False
            del self._states[key]

        logger.info("Cooldown period passed for %s, resetting state", key)
        return True

    def reset_provider_if_cooled_down(self, provider: str, models: Iterable[str]) -> bool:
        """Release a provider once every error-stamped key of its models has cooled down.

        The provider key itself counts alongside ``provider:model`` keys.
        Returns True and drops those keys' state if at least one key carries an
        error time and none of them is still inside the cooldown. A provider
        with no error-stamped key is left untouched.
        """
        keys = list(dict.fromkeys([self._key(provider)] + [self._key(provider, m) for m in models]))
        with self._lock:
            now = self._clock()
            stamped = [
                key
                for key in keys
                if key in self._states and self._states[key].last_error_time is not None
            ]
            if not stamped:
                return False
            if any(now - self._states[key].last_error_time < self.cooldown_ms for key in stamped):
                return False
            for key in stamped:
                del self._states[key]

        logger.info(
            "Cooldown period passed for %s, resetting %s", getattr(provider, "value", provider), ", ".join(stamped)
        )
        return True

    def clear_all(self) -> None:
        with self._lock:
            self._states.clear()
