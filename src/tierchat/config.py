from __future__ import annotations

import os
from collections.abc import Mapping
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from .tiering import LogicalModel


def _parse_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [v.strip() for v in value.split(",") if v.strip()]


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


# official base URL, official model, aggregator model, inference model
_FAMILY_DEFAULTS: dict[str, tuple[str, str, str, str]] = {
    LogicalModel.DEEPSEEK.value: (
        "https://api.deepseek.com",
        "deepseek-chat",
        "deepseek/deepseek-chat",
        "deepseek-ai/DeepSeek-V3",
    ),
    LogicalModel.OPENAI.value: (
        "https://api.openai.com/v1",
        "gpt-4o-mini",
        "openai/gpt-4o-mini",
        "openai/gpt-4o-mini",
    ),
    LogicalModel.GROK.value: (
        "https://api.x.ai/v1",
        "grok-2-latest",
        "x-ai/grok-2-1212",
        "x-ai/grok-2",
    ),
    LogicalModel.GEMINI.value: (
        "https://generativelanguage.googleapis.com/v1beta/openai",
        "gemini-1.5-flash",
        "google/gemini-flash-1.5",
        "google/gemini-1.5-flash",
    ),
    LogicalModel.CLAUDE.value: (
        "https://api.anthropic.com/v1",
        "claude-3-5-haiku-latest",
        "anthropic/claude-3.5-haiku",
        "anthropic/claude-3-5-haiku",
    ),
}


class FamilyConfig(BaseModel):
    """Per logical model settings; an empty base URL or model name drops that tier."""

    model_config = ConfigDict(frozen=True)

    official_base_url: str
    official_model: str
    official_api_key: str | None = None
    aggregator_model: str
    inference_model: str


def families_from_env(env: Mapping[str, str]) -> dict[str, FamilyConfig]:
    families: dict[str, FamilyConfig] = {}
    for name, (base_url, official_model, aggregator_model, inference_model) in _FAMILY_DEFAULTS.items():
        prefix = name.upper()
        families[name] = FamilyConfig(
            official_base_url=env.get(f"{prefix}_BASE_URL", base_url),
            official_model=env.get(f"{prefix}_MODEL", official_model),
            official_api_key=env.get(f"{prefix}_API_KEY") or None,
            aggregator_model=env.get(f"AGGREGATOR_{prefix}_MODEL", aggregator_model),
            inference_model=env.get(f"INFERENCE_{prefix}_MODEL", inference_model),
        )
    return families


class TierChatConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    # Provider tiers
    families: dict[str, FamilyConfig] = Field(default_factory=lambda: families_from_env(os.environ))
    default_model: str = Field(default_factory=lambda: os.getenv("DEFAULT_MODEL", LogicalModel.DEEPSEEK.value))
    aggregator_base_url: str = Field(
        default_factory=lambda: os.getenv("AGGREGATOR_BASE_URL", "https://openrouter.ai/api/v1")
    )
    aggregator_api_key: str | None = Field(default_factory=lambda: os.getenv("AGGREGATOR_API_KEY") or None)
    inference_base_url: str = Field(
        default_factory=lambda: os.getenv("INFERENCE_BASE_URL", "https://api.bytez.com/models/v2")
    )
    inference_api_key: str | None = Field(default_factory=lambda: os.getenv("INFERENCE_API_KEY") or None)

    # Per-tier upstream deadlines
    official_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("OFFICIAL_TIMEOUT_SECONDS", "60"))
    )
    aggregator_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("AGGREGATOR_TIMEOUT_SECONDS", "60"))
    )
    inference_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("INFERENCE_TIMEOUT_SECONDS", "120"))
    )

    # Credential storage
    credentials_path: str = Field(default_factory=lambda: os.getenv("CREDENTIALS_PATH", "credentials.enc"))
    fernet_key: str | None = Field(default_factory=lambda: os.getenv("CREDENTIALS_FERNET_KEY"))

    # Identity and conversation policy
    allow_anonymous_completion: bool = Field(default_factory=lambda: _flag("ALLOW_ANONYMOUS_COMPLETION"))
    jwt_secret: str | None = Field(default_factory=lambda: os.getenv("JWT_SECRET") or None)
    jwt_algorithms: list[str] = Field(
        default_factory=lambda: _parse_csv(os.getenv("JWT_ALGORITHMS")) or ["HS256"]
    )
    # Local development only: trust unsigned claims when no JWT_SECRET is set.
    allow_unverified_tokens: bool = Field(default_factory=lambda: _flag("ALLOW_UNVERIFIED_TOKENS"))
    history_messages: int = Field(default_factory=lambda: int(os.getenv("HISTORY_MESSAGES", "0")))
    max_images: int = Field(default_factory=lambda: int(os.getenv("MAX_IMAGES", "8")))
    max_prompt_chars: int = Field(default_factory=lambda: int(os.getenv("MAX_PROMPT_CHARS", "20000")))

    # Observability
    enable_metrics: bool = Field(default_factory=lambda: _flag("ENABLE_METRICS"))
    metrics_bind: str = Field(default_factory=lambda: os.getenv("METRICS_BIND", "127.0.0.1"))
    metrics_port: int = Field(default_factory=lambda: int(os.getenv("METRICS_PORT", "9109")))
    log_level: str = Field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    log_format: str = Field(default_factory=lambda: os.getenv("LOG_FORMAT", "json"))
    stream_format: Literal["text", "sse"] = Field(
        default_factory=lambda: "sse" if os.getenv("STREAM_FORMAT", "text").lower() == "sse" else "text"
    )

    # Server hardening
    enable_api_docs: bool = Field(default_factory=lambda: _flag("ENABLE_API_DOCS"))
    allowed_hosts: list[str] = Field(default_factory=lambda: _parse_csv(os.getenv("ALLOWED_HOSTS")))
    cors_allow_origins: list[str] = Field(default_factory=lambda: _parse_csv(os.getenv("CORS_ALLOW_ORIGINS")))
    cors_allow_credentials: bool = Field(default_factory=lambda: _flag("CORS_ALLOW_CREDENTIALS"))
    # Inline data-URI images make bodies large.
    max_request_body_bytes: int = Field(
        default_factory=lambda: int(os.getenv("MAX_REQUEST_BODY_BYTES", str(8 * 1024 * 1024)))
    )

    # Server request timeouts (end-to-end deadlines)
    chat_completions_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("CHAT_COMPLETIONS_TIMEOUT_SECONDS", "300"))
    )
    chat_completions_stream_idle_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("CHAT_COMPLETIONS_STREAM_IDLE_TIMEOUT_SECONDS", "60"))
    )
    chat_completions_stream_total_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("CHAT_COMPLETIONS_STREAM_TOTAL_TIMEOUT_SECONDS", "600"))
    )

    def require_fernet_key(self) -> str:
        if not self.fernet_key:
            raise ValueError("CREDENTIALS_FERNET_KEY is required for encrypted credential storage.")
        return self.fernet_key

    def secrets(self) -> list[str]:
        values = [self.aggregator_api_key, self.inference_api_key, self.fernet_key, self.jwt_secret]
        values.extend(f.official_api_key for f in self.families.values())
        return [v for v in values if v]

    def with_stored_credentials(self) -> TierChatConfig:
        """Fill absent API keys from the encrypted credential file, if one is configured."""
        from .credential_store import EncryptedCredentialStore

        if not self.fernet_key or not self.credentials_path:
            return self
        store = EncryptedCredentialStore(self.credentials_path, self.require_fernet_key())
        current: dict[str, str | None] = {
            f"{name.upper()}_API_KEY": family.official_api_key for name, family in self.families.items()
        }
        current["AGGREGATOR_API_KEY"] = self.aggregator_api_key
        current["INFERENCE_API_KEY"] = self.inference_api_key
        filled = store.fill_missing(current)
        if not filled:
            return self

        families = {
            name: family.model_copy(update={"official_api_key": filled[f"{name.upper()}_API_KEY"]})
            if f"{name.upper()}_API_KEY" in filled
            else family
            for name, family in self.families.items()
        }
        update: dict[str, Any] = {
            "families": families,
            "aggregator_api_key": filled.get("AGGREGATOR_API_KEY", self.aggregator_api_key),
            "inference_api_key": filled.get("INFERENCE_API_KEY", self.inference_api_key),
        }
        return self.model_copy(update=update)
