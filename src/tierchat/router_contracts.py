from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import BaseModel, Field

from .tiering import ProviderKind


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class ProviderTier:
    family: str
    kind: ProviderKind
    priority: int
    base_url: str
    model_name: str
    api_key: str | None = field(default=None, repr=False)
    timeout_seconds: float = 60.0

    @property
    def id(self) -> str:
        return f"{self.family}:{self.kind.value}"

    @property
    def has_credential(self) -> bool:
        return bool(self.api_key)

    def describe(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "priority": self.priority,
            "model": self.model_name,
            "has_credential": self.has_credential,
        }


class NormalizedMessage(BaseModel):
    """One conversation turn as stored and as handed to adapters.

    `images` holds ordered image URLs or data URIs and is only ever set on
    user turns.
    """

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    role: Literal["user", "assistant"]
    content: str
    images: list[str] = Field(default_factory=list)
    timestamp: int = Field(default_factory=now_ms)
    is_voice_message: bool = False
    is_from_fallback: bool = False


@dataclass(frozen=True)
class CompletionResult:
    text: str
    source_tier: str
    succeeded_on_attempt: int
    latency_seconds: float = 0.0
