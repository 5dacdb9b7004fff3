from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Protocol

import httpx

from .inference_session import InferenceSession
from .openai_chat_session import OpenAIChatSession
from .router_contracts import NormalizedMessage, ProviderTier
from .tiering import ProviderKind


class ProviderAdapter(Protocol):
    async def complete_once(self, tier: ProviderTier, messages: list[NormalizedMessage]) -> str: ...

    def stream(self, tier: ProviderTier, messages: list[NormalizedMessage]) -> AsyncIterator[str]: ...


class ProviderPool:
    """Picks the adapter for a tier's wire protocol; owns the shared HTTP client."""

    def __init__(
        self,
        *,
        client: httpx.AsyncClient | None = None,
        adapters: dict[ProviderKind, ProviderAdapter] | None = None,
    ):
        self._client = client or httpx.AsyncClient()
        if adapters is None:
            chat = OpenAIChatSession(self._client)
            adapters = {
                ProviderKind.OFFICIAL: chat,
                ProviderKind.AGGREGATOR: chat,
                ProviderKind.INFERENCE: InferenceSession(self._client),
            }
        self._adapters = adapters

    def adapter_for(self, tier: ProviderTier) -> ProviderAdapter:
        return self._adapters[tier.kind]

    async def close(self) -> None:
        await self._client.aclose()
