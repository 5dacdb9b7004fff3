from __future__ import annotations


class TierChatError(Exception):
    """Base error for chat routing failures."""


class ConfigurationError(TierChatError):
    """Deployment fault: the service cannot be built from its configuration."""


class InvalidRequestError(TierChatError):
    """The client sent a request that breaks a limit or misses a field."""


class UpstreamError(TierChatError):
    """One provider tier failed: bad status, malformed body, transport fault or timeout."""

    def __init__(self, message: str, *, tier: str | None = None, http_status: int | None = None):
        super().__init__(message)
        self.message = message
        self.tier = tier
        self.http_status = http_status

    def __str__(self) -> str:
        prefix = f"[{self.tier}] " if self.tier else ""
        status = f" (HTTP {self.http_status})" if self.http_status is not None else ""
        return f"{prefix}{self.message}{status}"


class AuthenticationError(UpstreamError):
    pass


class RateLimitError(UpstreamError):
    def __init__(
        self,
        message: str = "Rate limited",
        *,
        tier: str | None = None,
        http_status: int | None = 429,
        retry_after_seconds: int | None = None,
    ):
        super().__init__(message, tier=tier, http_status=http_status)
        self.retry_after_seconds = retry_after_seconds


class AllTiersExhaustedError(TierChatError):
    def __init__(
        self,
        logical_model: str,
        *,
        attempts: int,
        failures: list[tuple[str, str]],
        last_error: UpstreamError | None = None,
    ):
        self.logical_model = logical_model
        self.attempts = attempts
        self.failures = failures
        self.last_error = last_error
        reason = str(last_error) if last_error is not None else "no tier available"
        super().__init__(f"All {attempts} provider tiers failed for {logical_model!r}: {reason}")


class ConversationNotFoundError(TierChatError):
    def __init__(self, conversation_id: str | None):
        super().__init__("Chat not found")
        self.conversation_id = conversation_id


class UnauthenticatedError(TierChatError):
    def __init__(self, message: str = "User not authenticated"):
        super().__init__(message)


class RequestTimeoutError(TierChatError):
    """Server-side request deadline exceeded."""
