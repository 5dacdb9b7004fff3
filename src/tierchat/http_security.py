from __future__ import annotations

import re
import uuid


_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{8,128}$")


def coerce_request_id(value: str | None) -> str:
    if value and _REQUEST_ID_RE.fullmatch(value):
        return value
    return uuid.uuid4().hex


def _is_api_path(path: str) -> bool:
    return path.startswith("/api/")


def install_middlewares(app, *, cfg) -> None:
    """
    Install request-id, security-header and body-size middleware, plus
    optional host and CORS allowlists, based on cfg.
    """
    import structlog
    from fastapi.responses import JSONResponse
    from starlette.middleware.base import BaseHTTPMiddleware
    from starlette.requests import Request

    from .schemas import make_error_response

    class RequestIdMiddleware(BaseHTTPMiddleware):
        async def dispatch(self, request: Request, call_next):
            request_id = coerce_request_id(request.headers.get("x-request-id"))
            request.state.request_id = request_id
            structlog.contextvars.bind_contextvars(request_id=request_id)
            try:
                response = await call_next(request)
            finally:
                structlog.contextvars.clear_contextvars()
            response.headers.setdefault("X-Request-Id", request_id)
            return response

    class SecurityHeadersMiddleware(BaseHTTPMiddleware):
        async def dispatch(self, request: Request, call_next):
            response = await call_next(request)
            response.headers.setdefault("X-Content-Type-Options", "nosniff")
            response.headers.setdefault("X-Frame-Options", "DENY")
            response.headers.setdefault("Referrer-Policy", "no-referrer")
            response.headers.setdefault("Cross-Origin-Resource-Policy", "same-site")
            if not cfg.enable_api_docs:
                response.headers.setdefault("X-Robots-Tag", "noindex, nofollow")
            if _is_api_path(request.url.path):
                response.headers.setdefault("Cache-Control", "no-store")
                response.headers.setdefault("Pragma", "no-cache")
            return response

    class MaxBodySizeMiddleware(BaseHTTPMiddleware):
        async def dispatch(self, request: Request, call_next):
            limit = int(cfg.max_request_body_bytes or 0)
            if limit > 0 and request.method in ("POST", "PUT", "PATCH") and _is_api_path(request.url.path):
                content_length = request.headers.get("content-length")
                too_large = bool(content_length and content_length.isdigit() and int(content_length) > limit)
                if not too_large:
                    too_large = len(await request.body()) > limit
                if too_large:
                    return JSONResponse(
                        status_code=413,
                        content=make_error_response(
                            message="Request body too large.",
                            code=getattr(request.state, "request_id", None),
                        ).model_dump(),
                    )
            return await call_next(request)

    app.add_middleware(MaxBodySizeMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    # Outermost, so `X-Request-Id` is set even when inner middleware short-circuits.
    app.add_middleware(RequestIdMiddleware)

    if cfg.allowed_hosts:
        from starlette.middleware.trustedhost import TrustedHostMiddleware

        app.add_middleware(TrustedHostMiddleware, allowed_hosts=list(cfg.allowed_hosts))

    if cfg.cors_allow_origins:
        from fastapi.middleware.cors import CORSMiddleware

        if cfg.cors_allow_credentials and "*" in cfg.cors_allow_origins:
            raise ValueError("CORS_ALLOW_ORIGINS cannot include '*' when CORS_ALLOW_CREDENTIALS=true.")
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(cfg.cors_allow_origins),
            allow_credentials=cfg.cors_allow_credentials,
            allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
            allow_headers=["Authorization", "Content-Type", "X-Request-Id"],
            expose_headers=["X-Request-Id", "X-Source-Tier"],
            max_age=600,
        )
