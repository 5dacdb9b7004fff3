import asyncio
import os
import time
from contextlib import asynccontextmanager

import httpx

from .chat_service import ChatService
from .config import TierChatConfig
from .conversations import ConversationStore, InMemoryConversationStore
from .errors import (
    AllTiersExhaustedError,
    ConversationNotFoundError,
    InvalidRequestError,
    RequestTimeoutError,
    TierChatError,
    UnauthenticatedError,
    UpstreamError,
)
from .http_security import install_middlewares
from .identity import IdentityResolver
from .logging import configure_logging
from .metrics import maybe_start_metrics, server_errors_total, server_request_latency_seconds, server_requests_total
from .orchestrator import FallbackOrchestrator
from .provider import ProviderPool
from .registry import build_registry
from .schemas import (
    ApiResponse,
    CompletionRequest,
    CompletionResponse,
    CreateConversationRequest,
    RenameConversationRequest,
    SaveMessageRequest,
    make_completion_response,
    make_conversation_summary,
    make_error_response,
    make_export,
)

COMPLETION_PATH = "/api/chat/completion"


def create_app(
    cfg: TierChatConfig | None = None,
    *,
    store: ConversationStore | None = None,
    http_client: httpx.AsyncClient | None = None,
    identity: IdentityResolver | None = None,
):
    try:
        from fastapi import FastAPI, Request
        from fastapi.responses import JSONResponse, StreamingResponse
        from starlette.background import BackgroundTask
    except ImportError as e:  # pragma: no cover
        raise RuntimeError('Install the "server" extra: pip install -e ".[server]"') from e

    cfg = (cfg or TierChatConfig()).with_stored_credentials()
    configure_logging(level=cfg.log_level, fmt=cfg.log_format, secrets=cfg.secrets())

    registry = build_registry(cfg)
    pool = ProviderPool(client=http_client)
    service = ChatService(cfg, FallbackOrchestrator(registry, pool), store or InMemoryConversationStore())
    identity = identity or IdentityResolver(
        cfg.jwt_secret,
        algorithms=cfg.jwt_algorithms,
        allow_unverified=cfg.allow_unverified_tokens,
    )

    def _request_id(request) -> str | None:
        return getattr(getattr(request, "state", None), "request_id", None)

    def _observe(path: str, status_code: int, started_at: float) -> None:
        server_requests_total.labels(path=path, status=str(status_code)).inc()
        server_request_latency_seconds.labels(path=path).observe(max(0.0, time.monotonic() - started_at))

    def _error(request, *, status_code: int, kind: str, message: str, headers: dict[str, str] | None = None):
        server_errors_total.labels(type=kind).inc()
        return JSONResponse(
            status_code=status_code,
            content=make_error_response(message=message, code=_request_id(request)).model_dump(),
            headers=headers,
        )

    def _owner_id(request) -> str | None:
        return identity.resolve_owner_id(request.headers.get("authorization"))

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        maybe_start_metrics(enable=cfg.enable_metrics, bind=cfg.metrics_bind, port=cfg.metrics_port)
        try:
            yield
        finally:
            await pool.close()

    app = FastAPI(
        title="tierchat",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if cfg.enable_api_docs else None,
        redoc_url="/redoc" if cfg.enable_api_docs else None,
        openapi_url="/openapi.json" if cfg.enable_api_docs else None,
    )
    install_middlewares(app, cfg=cfg)

    @app.exception_handler(UnauthenticatedError)
    async def _unauthenticated_handler(request, exc: UnauthenticatedError):
        return _error(
            request,
            status_code=401,
            kind="unauthenticated",
            message=str(exc),
            headers={"WWW-Authenticate": 'Bearer realm="tierchat"'},
        )

    @app.exception_handler(ConversationNotFoundError)
    async def _not_found_handler(request, exc: ConversationNotFoundError):
        return _error(request, status_code=404, kind="conversation_not_found", message=str(exc))

    @app.exception_handler(InvalidRequestError)
    async def _invalid_request_handler(request, exc: InvalidRequestError):
        return _error(request, status_code=400, kind="invalid_request", message=str(exc))

    @app.exception_handler(AllTiersExhaustedError)
    async def _exhausted_handler(request, exc: AllTiersExhaustedError):
        return _error(request, status_code=502, kind="all_tiers_exhausted", message=str(exc))

    @app.exception_handler(UpstreamError)
    async def _upstream_error_handler(request, exc: UpstreamError):
        return _error(request, status_code=502, kind="upstream_error", message=str(exc))

    @app.exception_handler(RequestTimeoutError)
    async def _timeout_error_handler(request, exc: RequestTimeoutError):
        return _error(request, status_code=504, kind="timeout", message=str(exc) or "Request timed out.")

    @app.exception_handler(TierChatError)
    async def _chat_error_handler(request, exc: TierChatError):
        return _error(request, status_code=500, kind="api_error", message=str(exc))

    @app.get("/healthz")
    async def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/models", response_model=ApiResponse)
    async def list_models():
        return ApiResponse(success=True, data=registry.describe())

    @app.post(COMPLETION_PATH, response_model=CompletionResponse)
    async def chat_completion(req: CompletionRequest, request: Request):
        started_at = time.monotonic()
        turn = await service.prepare(req, _owner_id(request))

        if req.stream:
            bridge, stream = await service.open_stream(turn)
            resp = StreamingResponse(
                bridge.relay(),
                media_type=bridge.encoder.media_type,
                headers={"X-Source-Tier": stream.source_tier, "X-Accel-Buffering": "no"},
                background=BackgroundTask(bridge.finalize),
            )
            _observe(COMPLETION_PATH, 200, started_at)
            return resp

        try:
            result, message = await asyncio.wait_for(
                service.complete(turn),
                timeout=max(0.0, float(cfg.chat_completions_timeout_seconds or 0)) or None,
            )
        except asyncio.TimeoutError as e:
            raise RequestTimeoutError("Request timed out.") from e

        _observe(COMPLETION_PATH, 200, started_at)
        return make_completion_response(result, message)

    @app.post("/api/conversations", response_model=ApiResponse)
    async def create_conversation(request: Request, body: CreateConversationRequest | None = None):
        owner_id = identity.require_owner_id(request.headers.get("authorization"))
        record = await service.store.create_conversation(owner_id, (body or CreateConversationRequest()).name)
        return ApiResponse(success=True, message="Chat created", data={"id": record.id})

    @app.get("/api/conversations", response_model=ApiResponse)
    async def list_conversations(request: Request):
        owner_id = identity.require_owner_id(request.headers.get("authorization"))
        records = await service.store.list_conversations(owner_id)
        return ApiResponse(success=True, data=[make_conversation_summary(r) for r in records])

    @app.get("/api/conversations/{conversation_id}", response_model=ApiResponse)
    async def get_conversation(conversation_id: str, request: Request):
        owner_id = identity.require_owner_id(request.headers.get("authorization"))
        record = await service.store.get_conversation(conversation_id, owner_id)
        return ApiResponse(success=True, data=record.model_dump(mode="json"))

    @app.post("/api/conversations/{conversation_id}/messages", response_model=ApiResponse)
    async def save_message(conversation_id: str, body: SaveMessageRequest, request: Request):
        owner_id = identity.require_owner_id(request.headers.get("authorization"))
        await service.store.append_message(conversation_id, owner_id, body.to_message())
        return ApiResponse(success=True, message="Message saved successfully")

    @app.patch("/api/conversations/{conversation_id}", response_model=ApiResponse)
    async def rename_conversation(conversation_id: str, body: RenameConversationRequest, request: Request):
        owner_id = identity.require_owner_id(request.headers.get("authorization"))
        await service.store.rename_conversation(conversation_id, owner_id, body.name)
        return ApiResponse(success=True, message="Chat Renamed")

    @app.delete("/api/conversations/{conversation_id}", response_model=ApiResponse)
    async def delete_conversation(conversation_id: str, request: Request):
        owner_id = identity.require_owner_id(request.headers.get("authorization"))
        await service.store.delete_conversation(conversation_id, owner_id)
        return ApiResponse(success=True, message="Chat Deleted")

    @app.delete("/api/conversations", response_model=ApiResponse)
    async def delete_all_conversations(request: Request):
        owner_id = identity.require_owner_id(request.headers.get("authorization"))
        deleted = await service.store.delete_all_conversations(owner_id)
        return ApiResponse(success=True, message=f"Deleted {deleted} chat(s)", data={"deleted_count": deleted})

    @app.get("/api/export", response_model=ApiResponse)
    async def export_conversations(request: Request):
        owner_id = identity.require_owner_id(request.headers.get("authorization"))
        records = await service.store.list_conversations(owner_id)
        return ApiResponse(success=True, data=make_export(owner_id, records))

    return app


app = create_app()


def main() -> None:  # pragma: no cover
    try:
        import uvicorn
    except ImportError as e:
        raise RuntimeError('Install the "server" extra: pip install -e ".[server]"') from e

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run("tierchat.server:app", host=host, port=port)


if __name__ == "__main__":  # pragma: no cover
    main()
