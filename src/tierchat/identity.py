from __future__ import annotations

import jwt
import structlog

from .errors import UnauthenticatedError

log = structlog.get_logger()


def parse_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) != 2:
        return None
    scheme, token = parts[0].strip(), parts[1].strip()
    if scheme.lower() != "bearer" or not token:
        return None
    return token


class IdentityResolver:
    """
    Maps an `Authorization: Bearer <jwt>` header to an owner id.

    The owner id is the token's `sub` claim (`uid` as a fallback). Tokens are
    only trusted when their signature verifies against `secret`. Without a
    secret every token is rejected, unless `allow_unverified` is set for
    local development, in which case claims are read without verification.
    """

    def __init__(
        self,
        secret: str | None = None,
        *,
        algorithms: list[str] | None = None,
        allow_unverified: bool = False,
    ):
        self._secret = secret
        self._algorithms = algorithms or ["HS256"]
        self._allow_unverified = allow_unverified
        if not secret:
            if allow_unverified:
                log.warning("identity_signature_verification_disabled")
            else:
                log.warning("identity_secret_missing_all_tokens_rejected")

    def _decode(self, token: str) -> dict | None:
        if self._secret:
            return jwt.decode(
                token,
                self._secret,
                algorithms=self._algorithms,
                options={"verify_aud": False},
            )
        if self._allow_unverified:
            return jwt.decode(token, options={"verify_signature": False})
        return None

    def resolve_owner_id(self, authorization: str | None) -> str | None:
        token = parse_bearer_token(authorization)
        if token is None:
            return None
        try:
            claims = self._decode(token)
        except jwt.InvalidTokenError as e:
            log.info("identity_token_rejected", reason=str(e))
            return None
        if claims is None:
            log.info("identity_token_rejected", reason="no signing secret configured")
            return None
        owner_id = claims.get("sub") or claims.get("uid")
        if not isinstance(owner_id, str) or not owner_id:
            log.info("identity_token_missing_subject")
            return None
        return owner_id

    def require_owner_id(self, authorization: str | None) -> str:
        owner_id = self.resolve_owner_id(authorization)
        if owner_id is None:
            raise UnauthenticatedError()
        return owner_id
