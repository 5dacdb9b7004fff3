import pytest
from cryptography.fernet import Fernet

from tierchat.config import TierChatConfig, families_from_env
from tierchat.credential_store import EncryptedCredentialStore, decrypt_bytes, encrypt_bytes


def test_encrypt_decrypt_roundtrip():
    key = Fernet.generate_key().decode("utf-8")
    assert decrypt_bytes(key, encrypt_bytes(key, b"hello")) == b"hello"


def test_wrong_key_raises_value_error():
    token = encrypt_bytes(Fernet.generate_key().decode("utf-8"), b"hello")
    with pytest.raises(ValueError):
        decrypt_bytes(Fernet.generate_key().decode("utf-8"), token)


def test_store_rejects_non_object_payload(tmp_path):
    key = Fernet.generate_key().decode("utf-8")
    path = tmp_path / "creds.enc"
    path.write_bytes(encrypt_bytes(key, b'["not", "an", "object"]'))
    with pytest.raises(ValueError):
        EncryptedCredentialStore(str(path), key).load_keys()


def test_stored_credentials_fill_absent_keys_only(tmp_path):
    key = Fernet.generate_key().decode("utf-8")
    path = tmp_path / "creds.enc"
    EncryptedCredentialStore(str(path), key).save_keys(
        {
            "DEEPSEEK_API_KEY": "sk-from-file",
            "CLAUDE_API_KEY": "sk-file-claude",
            "AGGREGATOR_API_KEY": "agg-from-file",
        }
    )
    cfg = TierChatConfig(
        families=families_from_env({"CLAUDE_API_KEY": "sk-env-claude"}),
        aggregator_api_key=None,
        inference_api_key=None,
        credentials_path=str(path),
        fernet_key=key,
    )

    loaded = cfg.with_stored_credentials()

    assert loaded.families["deepseek"].official_api_key == "sk-from-file"
    assert loaded.families["claude"].official_api_key == "sk-env-claude"
    assert loaded.families["grok"].official_api_key is None
    assert loaded.aggregator_api_key == "agg-from-file"
    assert loaded.inference_api_key is None
    assert cfg.families["deepseek"].official_api_key is None


def test_missing_file_or_key_leaves_config_unchanged(tmp_path):
    cfg = TierChatConfig(credentials_path=str(tmp_path / "absent.enc"), fernet_key=Fernet.generate_key().decode())
    assert cfg.with_stored_credentials() is cfg
    cfg2 = TierChatConfig(fernet_key=None)
    assert cfg2.with_stored_credentials() is cfg2


def test_load_keys_drops_non_key_entries(tmp_path):
    key = Fernet.generate_key().decode("utf-8")
    path = tmp_path / "creds.enc"
    payload = b'{"GROK_API_KEY": "xai-1", "GEMINI_API_KEY": "", "NOTE": "hello", "OPENAI_API_KEY": 42}'
    path.write_bytes(encrypt_bytes(key, payload))
    assert EncryptedCredentialStore(str(path), key).load_keys() == {"GROK_API_KEY": "xai-1"}


def test_set_key_adds_replaces_and_removes_single_entries(tmp_path):
    store = EncryptedCredentialStore(str(tmp_path / "creds.enc"), Fernet.generate_key().decode("utf-8"))
    store.set_key("GROK_API_KEY", "xai-1")
    store.set_key("AGGREGATOR_API_KEY", "agg-1")
    store.set_key("GROK_API_KEY", "xai-2")
    assert store.load_keys() == {"AGGREGATOR_API_KEY": "agg-1", "GROK_API_KEY": "xai-2"}

    store.set_key("AGGREGATOR_API_KEY", None)
    assert store.load_keys() == {"GROK_API_KEY": "xai-2"}


def test_key_names_must_look_like_api_key_variables(tmp_path):
    store = EncryptedCredentialStore(str(tmp_path / "creds.enc"), Fernet.generate_key().decode("utf-8"))
    with pytest.raises(ValueError):
        store.set_key("JWT_SECRET", "nope")
    with pytest.raises(ValueError):
        store.save_keys({"password": "x"})


def test_fill_missing_only_returns_names_without_a_value(tmp_path):
    store = EncryptedCredentialStore(str(tmp_path / "creds.enc"), Fernet.generate_key().decode("utf-8"))
    assert store.fill_missing({"GROK_API_KEY": None}) == {}
    store.save_keys({"GROK_API_KEY": "stored-grok", "CLAUDE_API_KEY": "stored-claude"})
    filled = store.fill_missing({"GROK_API_KEY": None, "CLAUDE_API_KEY": "env-claude", "OPENAI_API_KEY": ""})
    assert filled == {"GROK_API_KEY": "stored-grok"}
