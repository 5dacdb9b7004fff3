from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import structlog

from .config import TierChatConfig
from .errors import ConfigurationError
from .router_contracts import ProviderTier
from .tiering import TIER_PRIORITY, ProviderKind

log = structlog.get_logger()


class ModelRegistry:
    """Read-only map from logical model id to its ordered provider tiers."""

    def __init__(self, tiers: Mapping[str, list[ProviderTier] | tuple[ProviderTier, ...]], *, default_model: str):
        normalized: dict[str, tuple[ProviderTier, ...]] = {}
        for family, family_tiers in tiers.items():
            ordered = tuple(family_tiers)
            if not ordered:
                raise ConfigurationError(f"Model {family!r} has no provider tiers configured.")
            priorities = [t.priority for t in ordered]
            if any(b <= a for a, b in zip(priorities, priorities[1:])):
                raise ConfigurationError(f"Tier priorities for {family!r} must be strictly increasing.")
            normalized[family.lower()] = ordered

        default_key = default_model.lower()
        if default_key not in normalized:
            raise ConfigurationError(f"Default model {default_model!r} is not configured.")
        self._tiers = normalized
        self.default_model = default_key

    def resolve(self, logical_model: str | None) -> tuple[ProviderTier, ...]:
        return self._tiers[self.canonical(logical_model)]

    def canonical(self, logical_model: str | None) -> str:
        """Family id actually served for `logical_model`; unknown ids map to the default."""
        key = (logical_model or "").strip().lower()
        return key if key in self._tiers else self.default_model

    def families(self) -> list[str]:
        return list(self._tiers)

    def describe(self) -> dict[str, Any]:
        return {
            "default": self.default_model,
            "models": {family: [t.describe() for t in tiers] for family, tiers in self._tiers.items()},
        }


def build_registry(cfg: TierChatConfig) -> ModelRegistry:
    tiers: dict[str, list[ProviderTier]] = {}
    for family, fam in cfg.families.items():
        candidates = [
            ProviderTier(
                family=family,
                kind=ProviderKind.OFFICIAL,
                priority=TIER_PRIORITY[ProviderKind.OFFICIAL],
                base_url=fam.official_base_url,
                model_name=fam.official_model,
                api_key=fam.official_api_key,
                timeout_seconds=cfg.official_timeout_seconds,
            ),
            ProviderTier(
                family=family,
                kind=ProviderKind.AGGREGATOR,
                priority=TIER_PRIORITY[ProviderKind.AGGREGATOR],
                base_url=cfg.aggregator_base_url,
                model_name=fam.aggregator_model,
                api_key=cfg.aggregator_api_key,
                timeout_seconds=cfg.aggregator_timeout_seconds,
            ),
            ProviderTier(
                family=family,
                kind=ProviderKind.INFERENCE,
                priority=TIER_PRIORITY[ProviderKind.INFERENCE],
                base_url=cfg.inference_base_url,
                model_name=fam.inference_model,
                api_key=cfg.inference_api_key,
                timeout_seconds=cfg.inference_timeout_seconds,
            ),
        ]
        tiers[family] = [t for t in candidates if t.base_url and t.model_name]

    registry = ModelRegistry(tiers, default_model=cfg.default_model)
    log.info(
        "model_registry_built",
        default=registry.default_model,
        models={f: [t.id for t in registry.resolve(f)] for f in registry.families()},
    )
    return registry
