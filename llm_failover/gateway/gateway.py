"""Completion Gateway — ordered provider failover with model rotation.

Main entry point for completions:
  1. Walks providers in the configured priority order
  2. Skips benched providers until their cooldown has passed
  3. Skips provider/model keys the RateLimitTracker reports as limited
  4. Rotates to the provider's next model after a rate-limit failure
  5. Fails over to the next provider on any other failure
  6. Raises AllProvidersFailedError once everything has been tried

Usage:
    tracker = RateLimitTracker()
    gateway = CompletionGateway(
        adapters={ProviderName.CEREBRAS: CerebrasAdapter(config, tracker)},
        tracker=tracker,
    )

    response = await gateway.complete(request, timeout=30)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING

from llm_failover.gateway.errors import (
    AllProvidersFailedError,
    AttemptFailure,
    CompletionError,
    is_rate_limit_error,
)
from llm_failover.gateway.rate_limiter import RateLimitTracker
from llm_failover.gateway.types import (
    DEFAULT_PRIORITY,
    CompletionRequest,
    CompletionResponse,
    ProviderName,
    RequalifyPolicy,
)
from llm_failover.gateway.vendor_adapters import ProviderAdapter, get_adapter

if TYPE_CHECKING:
    from llm_failover.core.config import Settings

logger = logging.getLogger(__name__)


def _log_context(name: ProviderName, model: str) -> dict[str, str]:
    return {"provider": name.value, "model": model}


class CompletionGateway:
    """Failover orchestrator over a fixed set of provider adapters.

    The tracker is shared with the adapters; the gateway records one error or
    success per attempt. Cancelled calls record nothing.
    """

    def __init__(
        self,
        adapters: Mapping[ProviderName, ProviderAdapter],
        tracker: RateLimitTracker,
        priority: Sequence[ProviderName] | None = None,
        requalify: RequalifyPolicy = RequalifyPolicy.FULL,
    ):
        """
        Args:
            adapters: Adapter per provider; providers without one are skipped
            tracker: Shared RateLimitTracker (also handed to the adapters)
            priority: Provider order to try; defaults to mistral, cerebras, openrouter
            requalify: What a provider gets once its cooldown has passed
        """
        self._adapters: dict[ProviderName, ProviderAdapter] = {ProviderName(k): v for k, v in adapters.items()}
        self.tracker = tracker
        self.priority: list[ProviderName] = [ProviderName(p) for p in (priority or DEFAULT_PRIORITY)]
        self.requalify = RequalifyPolicy(requalify)
        self._probing: set[ProviderName] = set()

        for name, adapter in self._adapters.items():
            logger.info("Registered completion provider: %s (models: %s)", name.value, ", ".join(adapter.models))

    @property
    def adapters(self) -> dict[ProviderName, ProviderAdapter]:
        return dict(self._adapters)

    async def complete(self, request: CompletionRequest, timeout: float | None = None) -> CompletionResponse:
        """Run one completion, failing over until a provider answers.

        Raises:
            AllProvidersFailedError: every provider/model was skipped or failed
        """
        failures: list[AttemptFailure] = []

        for name in self.priority:
            adapter = self._adapters.get(name)
            if adapter is None:
                continue

            if not self._ready(name, adapter):
                failures.append(
                    AttemptFailure(name.value, adapter.current_model(), "unavailable (cooling down)", rate_limited=True)
                )
                continue

            response = await self._try_provider(name, adapter, request, timeout, failures)
            if response is not None:
                return response

        logger.warning("All providers exhausted after %d attempt(s)", len(failures))
        raise AllProvidersFailedError(failures)

    def _ready(self, name: ProviderName, adapter: ProviderAdapter) -> bool:
        """True if the adapter may be tried now, releasing it after cooldown."""
        if adapter.is_available():
            return True

        model = adapter.current_model()
        if self.tracker.reset_provider_if_cooled_down(name.value, adapter.models):
            adapter.reset_rotation()
            if not adapter.is_available():
                logger.info("Provider %s cooled down but has no credentials", name.value)
                return False
            if self.requalify == RequalifyPolicy.PROBE:
                self._probing.add(name)
            model = adapter.current_model()
            logger.info(
                "Provider %s cooled down, back on %s",
                name.value,
                model,
                extra=_log_context(name, model),
            )
            return True

        logger.info("Skipping unavailable provider: %s (model: %s)", name.value, model)
        return False

    async def _try_provider(
        self,
        name: ProviderName,
        adapter: ProviderAdapter,
        request: CompletionRequest,
        timeout: float | None,
        failures: list[AttemptFailure],
    ) -> CompletionResponse | None:
        """Attempt every remaining model of one provider; None means move on."""
        tried: set[str] = set()

        while True:
            model = adapter.current_model()
            if model in tried:
                return None
            tried.add(model)

            self.tracker.reset_if_cooled_down(name.value, model)
            if self.tracker.is_limited(name.value, model):
                logger.info(
                    "Provider %s/%s is rate limited, switching...", name.value, model, extra=_log_context(name, model)
                )
                failures.append(AttemptFailure(name.value, model, "rate limited (tracker)", rate_limited=True))
                if self._rotate(name, adapter, model):
                    continue
                return None

            try:
                logger.debug("Attempting request with %s/%s", name.value, model)
                response = await adapter.complete(request, timeout=timeout)
            except CompletionError as e:
                self.tracker.record_error(name.value, model)
                rate_limited = is_rate_limit_error(e)
                failures.append(AttemptFailure(name.value, model, str(e), rate_limited=rate_limited))

                if name in self._probing:
                    self._probing.discard(name)
                    adapter.mark_limited()
                    logger.warning(
                        "Probe of %s/%s failed, benching provider again: %s",
                        name.value,
                        model,
                        e,
                        extra=_log_context(name, model),
                    )
                    return None

                if not rate_limited:
                    logger.error("Error from %s/%s: %s", name.value, model, e, extra=_log_context(name, model))
                    return None

                logger.warning("Rate limit hit on %s/%s", name.value, model, extra=_log_context(name, model))
                if self._rotate(name, adapter, model):
                    continue
                return None

            self._probing.discard(name)
            self.tracker.record_success(name.value, model)
            if not adapter.is_available():
                # Answered, but the quota headers benched the provider
                self.tracker.record_limit(name.value, model)
            return response

    @staticmethod
    def _rotate(name: ProviderName, adapter: ProviderAdapter, model: str) -> bool:
        if adapter.rotate_model(expected=model):
            logger.info("Rotated %s to model: %s", name.value, adapter.current_model())
            return True
        logger.info("Provider %s has no models left after %s", name.value, model)
        return False

    async def ask(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float | None = None,
        max_tokens: int | None = None,
        timeout: float | None = None,
    ) -> str:
        """Send a system + user prompt and return just the text."""
        request = CompletionRequest.from_prompts(system_prompt, user_prompt, temperature, max_tokens)
        response = await self.complete(request, timeout=timeout)
        return response.content

    async def complete_many(
        self,
        requests: Sequence[CompletionRequest],
        max_concurrent: int = 10,
        timeout: float | None = None,
    ) -> list[CompletionResponse | BaseException]:
        """Run many completions concurrently.

        Results are in request order; a failed call leaves its exception in
        place of a response.
        """
        if not requests:
            return []

        semaphore = asyncio.Semaphore(max_concurrent)

        async def _run(req: CompletionRequest) -> CompletionResponse:
            async with semaphore:
                return await self.complete(req, timeout=timeout)

        return await asyncio.gather(*(_run(r) for r in requests), return_exceptions=True)

    def force_provider(self, name: ProviderName) -> bool:
        """Move a provider to the front of the priority order and reset it."""
        name = ProviderName(name)
        adapter = self._adapters.get(name)
        if adapter is None:
            logger.warning("Provider %s not registered", name.value)
            return False

        self.priority = [name] + [p for p in self.priority if p != name]
        adapter.reset_rotation()
        self._probing.discard(name)
        logger.info("Forced switch to provider: %s", name.value)
        return True

    def get_status(self) -> dict:
        """Provider availability snapshot for monitoring."""
        providers = []
        for name in self.priority:
            adapter = self._adapters.get(name)
            if adapter is None:
                providers.append({"name": name.value, "registered": False, "available": False})
                continue
            model = adapter.current_model()
            providers.append(
                {
                    "name": name.value,
                    "registered": True,
                    "model": model,
                    "models": list(adapter.models),
                    "available": adapter.is_available(),
                    "tracker_limited": self.tracker.is_limited(name.value, model),
                    "error_count": self.tracker.get_error_count(name.value, model),
                    "high_traffic": self.tracker.is_in_high_traffic(name.value, model),
                }
            )
        return {
            "priority": [p.value for p in self.priority],
            "available_providers": [p["name"] for p in providers if p["available"]],
            "providers": providers,
            "requalify_policy": self.requalify.value,
        }


def build_gateway(settings: Settings | None = None, tracker: RateLimitTracker | None = None) -> CompletionGateway:
    """Create adapters for every provider with an API key and wire them to one tracker."""
    if settings is None:
        from llm_failover.core.config import settings as default_settings

        settings = default_settings

    settings.validate_providers()
    tracker = tracker or RateLimitTracker(
        high_traffic_threshold_ms=settings.ai_high_traffic_threshold_ms,
        cooldown_ms=settings.ai_cooldown_ms,
    )

    adapters: dict[ProviderName, ProviderAdapter] = {}
    for name, config in settings.provider_configs().items():
        kwargs: dict = {"default_timeout": settings.ai_request_timeout_seconds}
        if name == ProviderName.OPENROUTER:
            kwargs["app_url"] = settings.openrouter_app_url
            kwargs["app_name"] = settings.openrouter_app_name
        adapters[name] = get_adapter(config, tracker=tracker, **kwargs)

    gateway = CompletionGateway(
        adapters=adapters,
        tracker=tracker,
        priority=settings.priority,
        requalify=settings.ai_requalify_policy,
    )
    logger.info("Completion providers initialized: %s", gateway.get_status()["available_providers"])
    return gateway
