from __future__ import annotations

from dataclasses import dataclass

import structlog

from .config import TierChatConfig
from .conversations import ConversationStore
from .errors import InvalidRequestError, UnauthenticatedError
from .orchestrator import FallbackOrchestrator, TieredStream
from .router_contracts import CompletionResult, NormalizedMessage
from .schemas import CompletionRequest
from .streaming import StreamingBridge, encoder_for

log = structlog.get_logger()


@dataclass(frozen=True)
class ChatTurn:
    owner_id: str | None
    conversation_id: str | None
    logical_model: str
    user_message: NormalizedMessage
    provider_messages: list[NormalizedMessage]


class ChatService:
    """
    One completion request cycle.

    `prepare` runs every precondition and stores the user turn before any
    provider is contacted; `complete` / `open_stream` dispatch and store the
    assistant turn once its text is final.
    """

    def __init__(self, cfg: TierChatConfig, orchestrator: FallbackOrchestrator, store: ConversationStore):
        self.cfg = cfg
        self.orchestrator = orchestrator
        self.store = store

    async def prepare(self, req: CompletionRequest, owner_id: str | None) -> ChatTurn:
        if owner_id is None and not self.cfg.allow_anonymous_completion:
            raise UnauthenticatedError()
        if len(req.images) > self.cfg.max_images:
            raise InvalidRequestError(f"At most {self.cfg.max_images} images per prompt.")
        if len(req.prompt) > self.cfg.max_prompt_chars:
            raise InvalidRequestError("Prompt too large.")

        logical_model = self.orchestrator.registry.canonical(req.model)
        user_message = NormalizedMessage(role="user", content=req.prompt, images=list(req.images))
        history: list[NormalizedMessage] = []

        if owner_id is None:
            log.info("anonymous_completion", model=logical_model)
            return ChatTurn(None, None, logical_model, user_message, [user_message])

        if not req.conversation_id:
            raise InvalidRequestError("conversation_id is required.")
        record = await self.store.get_conversation(req.conversation_id, owner_id)
        if self.cfg.history_messages > 0:
            # Earlier image payloads are not re-sent.
            history = [m.model_copy(update={"images": []}) for m in record.messages[-self.cfg.history_messages :]]

        await self.store.append_message(req.conversation_id, owner_id, user_message)
        log.info(
            "user_turn_persisted",
            conversation_id=req.conversation_id,
            model=logical_model,
            images=len(user_message.images),
        )
        return ChatTurn(owner_id, req.conversation_id, logical_model, user_message, [*history, user_message])

    async def _persist_assistant(self, turn: ChatTurn, message: NormalizedMessage, logger=None) -> None:
        if turn.owner_id is None or turn.conversation_id is None:
            return
        await self.store.append_message(turn.conversation_id, turn.owner_id, message)
        (logger or log).info("assistant_turn_persisted", conversation_id=turn.conversation_id, chars=len(message.content))

    async def complete(self, turn: ChatTurn) -> tuple[CompletionResult, NormalizedMessage]:
        result = await self.orchestrator.complete(turn.logical_model, turn.provider_messages)
        message = NormalizedMessage(
            role="assistant",
            content=result.text,
            is_from_fallback=result.succeeded_on_attempt > 1,
        )
        await self._persist_assistant(turn, message)
        return result, message

    async def open_stream(self, turn: ChatTurn) -> tuple[StreamingBridge, TieredStream]:
        stream = await self.orchestrator.open_stream(turn.logical_model, turn.provider_messages)
        # Runs after the response body, outside the request logging context.
        persist_log = structlog.get_logger().bind(**structlog.contextvars.get_contextvars())

        async def on_complete(text: str) -> None:
            message = NormalizedMessage(role="assistant", content=text, is_from_fallback=stream.attempt > 1)
            await self._persist_assistant(turn, message, persist_log)

        bridge = StreamingBridge(
            stream,
            on_complete=on_complete,
            encoder=encoder_for(self.cfg.stream_format),
            idle_timeout_seconds=self.cfg.chat_completions_stream_idle_timeout_seconds,
            total_timeout_seconds=self.cfg.chat_completions_stream_total_timeout_seconds,
        )
        return bridge, stream
