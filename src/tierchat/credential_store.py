from __future__ import annotations

import json
from collections.abc import Mapping
from pathlib import Path

import structlog
from cryptography.fernet import Fernet, InvalidToken

log = structlog.get_logger()

KEY_SUFFIX = "_API_KEY"


def _fernet(key_str: str) -> Fernet:
    return Fernet(key_str.encode("utf-8"))


def encrypt_bytes(key_str: str, data: bytes) -> bytes:
    return _fernet(key_str).encrypt(data)


def decrypt_bytes(key_str: str, token: bytes) -> bytes:
    try:
        return _fernet(key_str).decrypt(token)
    except InvalidToken as e:
        raise ValueError("Failed to decrypt provider credentials (wrong key or corrupted file).") from e


def _check_name(name: str) -> None:
    if not name.endswith(KEY_SUFFIX):
        raise ValueError(f"Credential names must end with {KEY_SUFFIX!r}: {name!r}")


class EncryptedCredentialStore:
    """
    Provider API keys encrypted at rest.

    The file at `path` is one Fernet token wrapping a JSON object keyed by the
    environment variable each key would otherwise come from, e.g.
    ``{"DEEPSEEK_API_KEY": "...", "AGGREGATOR_API_KEY": "..."}``. Keys set in
    the environment always win over stored ones.
    """

    def __init__(self, path: str, fernet_key: str):
        self.path = Path(path)
        self.fernet_key = fernet_key

    def exists(self) -> bool:
        return self.path.is_file()

    def load_keys(self) -> dict[str, str]:
        raw = decrypt_bytes(self.fernet_key, self.path.read_bytes())
        payload = json.loads(raw.decode("utf-8"))
        if not isinstance(payload, dict):
            raise ValueError("Credential payload must be a JSON object.")
        keys = {
            name: value
            for name, value in payload.items()
            if isinstance(name, str) and name.endswith(KEY_SUFFIX) and isinstance(value, str) and value
        }
        if len(keys) != len(payload):
            log.warning("credential_entries_ignored", ignored=sorted(set(payload) - set(keys)))
        return keys

    def save_keys(self, keys: Mapping[str, str]) -> None:
        for name in keys:
            _check_name(name)
        raw = json.dumps({k: v for k, v in keys.items() if v}, sort_keys=True).encode("utf-8")
        self.path.write_bytes(encrypt_bytes(self.fernet_key, raw))

    def set_key(self, name: str, value: str | None) -> None:
        """Store or (with an empty value) remove one key, keeping the others."""
        _check_name(name)
        keys = self.load_keys() if self.exists() else {}
        if value:
            keys[name] = value
        else:
            keys.pop(name, None)
        self.save_keys(keys)

    def fill_missing(self, current: Mapping[str, str | None]) -> dict[str, str]:
        """Stored values for the names in `current` that have no value yet."""
        if not self.exists():
            return {}
        stored = self.load_keys()
        filled = {name: stored[name] for name, value in current.items() if not value and name in stored}
        if filled:
            log.info("credentials_loaded_from_store", names=sorted(filled))
        return filled
