from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable, Mapping, MutableMapping
from typing import Any, TypeAlias, cast

import structlog

Processor: TypeAlias = Callable[[Any, str, MutableMapping[str, Any]], Mapping[str, Any] | str | bytes]

REDACTED = "[REDACTED]"

# Header and field names whose values are credentials.
_CREDENTIAL_FIELDS = frozenset(
    {
        "authorization",
        "proxy-authorization",
        "cookie",
        "set-cookie",
        "credentials",
        "fernet_key",
        "jwt_secret",
    }
)
_CREDENTIAL_FRAGMENTS = ("api_key", "apikey", "token", "secret", "password")

# Conversation text is logged as its length only.
_TEXT_FIELDS = frozenset({"prompt", "content", "text"})

_AUTH_SCHEME_RE = re.compile(r"(?i)\b(Bearer|Key)\s+[A-Za-z0-9._-]{6,}")
_DATA_URI_RE = re.compile(r"data:([\w.+-]+/[\w.+-]+)?;base64,[A-Za-z0-9+/=]{16,}")


class LogScrubber:
    """
    structlog processor that removes credentials, user text and inline image
    payloads from an event before it is rendered.

    Known secret values (configured API keys and signing secrets) are
    replaced wherever they appear, including inside exception messages.
    """

    def __init__(self, secrets: Iterable[str | None] = ()):
        self.secrets = sorted({s for s in secrets if s}, key=len, reverse=True)

    def __call__(self, _logger: Any, _method_name: str, event_dict: MutableMapping[str, Any]) -> Mapping[str, Any]:
        return {k: self._field(str(k), v) for k, v in event_dict.items()}

    def _field(self, name: str, value: Any) -> Any:
        lowered = name.lower()
        if lowered in _CREDENTIAL_FIELDS or any(f in lowered for f in _CREDENTIAL_FRAGMENTS):
            return REDACTED
        if lowered in _TEXT_FIELDS and isinstance(value, str):
            return f"<{len(value)} chars>"
        return self._value(value)

    def _value(self, value: Any) -> Any:
        if isinstance(value, str):
            return self._text(value)
        if isinstance(value, dict):
            return {k: self._field(str(k), v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return type(value)(self._value(v) for v in value)
        return value

    def _text(self, value: str) -> str:
        for secret in self.secrets:
            value = value.replace(secret, REDACTED)
        value = _AUTH_SCHEME_RE.sub(lambda m: f"{m.group(1)} {REDACTED}", value)
        return _DATA_URI_RE.sub(lambda m: f"data:{m.group(1) or ''};base64,[TRUNCATED]", value)


def configure_logging(level: str = "INFO", fmt: str = "json", *, secrets: Iterable[str | None] = ()) -> None:
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=numeric_level)

    renderer = structlog.processors.JSONRenderer() if fmt == "json" else structlog.dev.ConsoleRenderer()
    processors: list[Processor] = [
        cast(Processor, structlog.contextvars.merge_contextvars),
        cast(Processor, structlog.processors.add_log_level),
        cast(Processor, structlog.processors.TimeStamper(fmt="iso")),
        LogScrubber(secrets),
        cast(Processor, renderer),
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        cache_logger_on_first_use=True,
    )
