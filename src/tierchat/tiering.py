from __future__ import annotations

from enum import Enum


class LogicalModel(str, Enum):
    DEEPSEEK = "deepseek"
    OPENAI = "openai"
    GROK = "grok"
    GEMINI = "gemini"
    CLAUDE = "claude"


class ProviderKind(str, Enum):
    OFFICIAL = "official"
    AGGREGATOR = "aggregator"
    INFERENCE = "inference"


# Attempt order within a family; lower runs first.
TIER_PRIORITY: dict[ProviderKind, int] = {
    ProviderKind.OFFICIAL: 1,
    ProviderKind.AGGREGATOR: 2,
    ProviderKind.INFERENCE: 3,
}
