import pytest
from pydantic import ValidationError

from tierchat.config import TierChatConfig


def test_config_reads_environment_once_at_construction(monkeypatch):
    monkeypatch.setenv("DEEPSEEK_API_KEY", "sk-deep")
    monkeypatch.setenv("AGGREGATOR_API_KEY", "agg")
    monkeypatch.setenv("ALLOW_ANONYMOUS_COMPLETION", "true")
    monkeypatch.setenv("STREAM_FORMAT", "SSE")
    monkeypatch.setenv("JWT_ALGORITHMS", "HS256, HS512")
    cfg = TierChatConfig()

    monkeypatch.setenv("DEEPSEEK_API_KEY", "changed-later")

    assert cfg.families["deepseek"].official_api_key == "sk-deep"
    assert cfg.aggregator_api_key == "agg"
    assert cfg.allow_anonymous_completion is True
    assert cfg.stream_format == "sse"
    assert cfg.jwt_algorithms == ["HS256", "HS512"]


def test_empty_credentials_are_treated_as_absent(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "")
    monkeypatch.setenv("INFERENCE_API_KEY", "")
    cfg = TierChatConfig()
    assert cfg.families["openai"].official_api_key is None
    assert cfg.inference_api_key is None


def test_config_is_immutable():
    cfg = TierChatConfig()
    with pytest.raises(ValidationError):
        cfg.default_model = "claude"


def test_secrets_lists_every_configured_credential():
    cfg = TierChatConfig(aggregator_api_key="agg", inference_api_key=None, jwt_secret="jwt", fernet_key=None)
    secrets = cfg.secrets()
    assert "agg" in secrets
    assert "jwt" in secrets
    assert None not in secrets


def test_unverified_tokens_need_an_explicit_opt_in(monkeypatch):
    monkeypatch.delenv("ALLOW_UNVERIFIED_TOKENS", raising=False)
    assert TierChatConfig().allow_unverified_tokens is False
    monkeypatch.setenv("ALLOW_UNVERIFIED_TOKENS", "true")
    assert TierChatConfig().allow_unverified_tokens is True
