from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timezone
from typing import Protocol

import structlog
from pydantic import BaseModel, Field

from .errors import ConversationNotFoundError
from .router_contracts import NormalizedMessage

log = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConversationRecord(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    owner_id: str
    name: str = "New Chat"
    messages: list[NormalizedMessage] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class ConversationStore(Protocol):
    async def create_conversation(self, owner_id: str, name: str = "New Chat") -> ConversationRecord: ...

    async def list_conversations(self, owner_id: str) -> list[ConversationRecord]: ...

    async def get_conversation(self, conversation_id: str, owner_id: str) -> ConversationRecord: ...

    async def append_message(self, conversation_id: str, owner_id: str, message: NormalizedMessage) -> None: ...

    async def rename_conversation(self, conversation_id: str, owner_id: str, name: str) -> None: ...

    async def delete_conversation(self, conversation_id: str, owner_id: str) -> None: ...

    async def delete_all_conversations(self, owner_id: str) -> int: ...


class InMemoryConversationStore:
    """
    Process-local conversation store.

    Appends are idempotent on message id. Records handed out are copies, so
    callers never mutate stored state.
    """

    def __init__(self) -> None:
        self._records: dict[str, ConversationRecord] = {}
        self._lock = asyncio.Lock()

    def _owned(self, conversation_id: str, owner_id: str) -> ConversationRecord:
        record = self._records.get(conversation_id)
        if record is None or record.owner_id != owner_id:
            raise ConversationNotFoundError(conversation_id)
        return record

    async def create_conversation(self, owner_id: str, name: str = "New Chat") -> ConversationRecord:
        async with self._lock:
            record = ConversationRecord(owner_id=owner_id, name=name)
            self._records[record.id] = record
            return record.model_copy(deep=True)

    async def list_conversations(self, owner_id: str) -> list[ConversationRecord]:
        async with self._lock:
            owned = [r for r in self._records.values() if r.owner_id == owner_id]
            return [r.model_copy(deep=True) for r in sorted(owned, key=lambda r: r.updated_at, reverse=True)]

    async def get_conversation(self, conversation_id: str, owner_id: str) -> ConversationRecord:
        async with self._lock:
            return self._owned(conversation_id, owner_id).model_copy(deep=True)

    async def append_message(self, conversation_id: str, owner_id: str, message: NormalizedMessage) -> None:
        async with self._lock:
            record = self._owned(conversation_id, owner_id)
            if any(m.id == message.id for m in record.messages):
                log.debug("append_duplicate_ignored", conversation_id=conversation_id, message_id=message.id)
                return
            record.messages.append(message.model_copy(deep=True))
            record.updated_at = _utcnow()

    async def rename_conversation(self, conversation_id: str, owner_id: str, name: str) -> None:
        async with self._lock:
            record = self._owned(conversation_id, owner_id)
            record.name = name
            record.updated_at = _utcnow()

    async def delete_conversation(self, conversation_id: str, owner_id: str) -> None:
        async with self._lock:
            self._owned(conversation_id, owner_id)
            del self._records[conversation_id]

    async def delete_all_conversations(self, owner_id: str) -> int:
        async with self._lock:
            doomed = [cid for cid, r in self._records.items() if r.owner_id == owner_id]
            for cid in doomed:
                del self._records[cid]
        log.info("conversations_deleted", count=len(doomed))
        return len(doomed)
