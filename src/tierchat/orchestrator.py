from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import TypeVar

import structlog

from .errors import AllTiersExhaustedError, UpstreamError
from .metrics import fallback_exhausted_total, tier_attempts_total, tier_latency_seconds
from .provider import ProviderPool
from .registry import ModelRegistry
from .router_contracts import CompletionResult, NormalizedMessage, ProviderTier

log = structlog.get_logger()

T = TypeVar("T")


async def _aclose(it: AsyncIterator[str]) -> None:
    aclose = getattr(it, "aclose", None)
    if callable(aclose):
        await aclose()


class TieredStream:
    """
    Increments from the tier that won the fallback.

    The first increment was already pulled while choosing the tier; it is
    replayed before the rest. Failures from here on belong to the caller.
    """

    def __init__(self, *, tier: ProviderTier, attempt: int, first: str, rest: AsyncIterator[str]):
        self.tier = tier
        self.attempt = attempt
        self._pending: str | None = first
        self._rest = rest

    @property
    def source_tier(self) -> str:
        return self.tier.id

    def __aiter__(self) -> TieredStream:
        return self

    async def __anext__(self) -> str:
        if self._pending is not None:
            piece, self._pending = self._pending, None
            return piece
        while True:
            piece = await self._rest.__anext__()
            if piece:
                return piece

    async def aclose(self) -> None:
        self._pending = None
        await _aclose(self._rest)


class FallbackOrchestrator:
    def __init__(self, registry: ModelRegistry, pool: ProviderPool):
        self.registry = registry
        self.pool = pool

    @staticmethod
    async def _within_deadline(tier: ProviderTier, attempt: Callable[[ProviderTier], Awaitable[T]]) -> T:
        # Bounds the whole attempt; for streams that includes the first increment.
        try:
            return await asyncio.wait_for(attempt(tier), timeout=tier.timeout_seconds or None)
        except asyncio.TimeoutError as e:
            raise UpstreamError(f"No response within {tier.timeout_seconds:g}s.", tier=tier.id) from e

    async def _run(
        self, logical_model: str | None, attempt: Callable[[ProviderTier], Awaitable[T]]
    ) -> tuple[T, ProviderTier, int]:
        family = self.registry.canonical(logical_model)
        tiers = self.registry.resolve(family)
        failures: list[tuple[str, str]] = []
        last_error: UpstreamError | None = None

        for index, tier in enumerate(tiers):
            is_final = index == len(tiers) - 1
            next_tier = None if is_final else tiers[index + 1].id

            # The last tier is the keyless passthrough and is always tried.
            if not tier.has_credential and not is_final:
                failures.append((tier.id, "no credential configured"))
                tier_attempts_total.labels(family=family, kind=tier.kind.value, outcome="skipped").inc()
                log.debug("tier_skipped", tier=tier.id, next_tier=next_tier)
                continue

            started = time.monotonic()
            try:
                value = await self._within_deadline(tier, attempt)
            except UpstreamError as e:
                if e.tier is None:
                    e.tier = tier.id
                last_error = e
                failures.append((tier.id, str(e)))
                tier_attempts_total.labels(family=family, kind=tier.kind.value, outcome="failure").inc()
                log.warning(
                    "tier_failed",
                    tier=tier.id,
                    model=tier.model_name,
                    http_status=e.http_status,
                    error=str(e),
                    next_tier=next_tier,
                )
                continue
            finally:
                tier_latency_seconds.labels(kind=tier.kind.value).observe(max(0.0, time.monotonic() - started))

            tier_attempts_total.labels(family=family, kind=tier.kind.value, outcome="success").inc()
            if index > 0:
                log.info("tier_fallback_succeeded", tier=tier.id, attempt=index + 1)
            return value, tier, index + 1

        fallback_exhausted_total.labels(family=family).inc()
        log.error("tiers_exhausted", model=family, attempts=len(tiers), failures=failures)
        raise AllTiersExhaustedError(family, attempts=len(tiers), failures=failures, last_error=last_error)

    async def complete(self, logical_model: str | None, messages: list[NormalizedMessage]) -> CompletionResult:
        started = time.monotonic()

        async def attempt(tier: ProviderTier) -> str:
            return await self.pool.adapter_for(tier).complete_once(tier, messages)

        text, tier, attempt_no = await self._run(logical_model, attempt)
        return CompletionResult(
            text=text,
            source_tier=tier.id,
            succeeded_on_attempt=attempt_no,
            latency_seconds=time.monotonic() - started,
        )

    async def open_stream(self, logical_model: str | None, messages: list[NormalizedMessage]) -> TieredStream:
        """
        Choose a tier by pulling its first increment.

        An empty stream, or no increment within the tier timeout, counts as a
        tier failure.
        """

        async def attempt(tier: ProviderTier) -> tuple[str, AsyncIterator[str]]:
            it = self.pool.adapter_for(tier).stream(tier, messages)
            try:
                async for piece in it:
                    if piece:
                        return piece, it
            except BaseException:
                await _aclose(it)
                raise
            raise UpstreamError("Upstream stream produced no output.", tier=tier.id)

        (first, rest), tier, attempt_no = await self._run(logical_model, attempt)
        return TieredStream(tier=tier, attempt=attempt_no, first=first, rest=rest)
