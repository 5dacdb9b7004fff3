from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from .conversations import ConversationRecord
from .router_contracts import CompletionResult, NormalizedMessage


class CompletionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    conversation_id: str | None = Field(default=None, alias="conversationId")
    prompt: str
    images: list[str] = Field(default_factory=list)
    model: str | None = Field(default=None, validation_alias=AliasChoices("model", "logicalModel"))
    stream: bool = False

    @field_validator("prompt")
    @classmethod
    def _validate_prompt(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("prompt must be non-empty.")
        return v

    @field_validator("images")
    @classmethod
    def _validate_images(cls, v: list[str]) -> list[str]:
        for url in v:
            if not isinstance(url, str) or not url.startswith(("http://", "https://", "data:image/")):
                raise ValueError("images must be http(s) URLs or data:image URIs.")
        return v


class SaveMessageRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    role: Literal["user", "assistant"]
    content: str
    timestamp: int | None = None
    is_voice_message: bool = Field(default=False, alias="isVoiceMessage")

    def to_message(self) -> NormalizedMessage:
        fields: dict[str, Any] = {
            "role": self.role,
            "content": self.content,
            "is_voice_message": self.is_voice_message,
        }
        if self.timestamp is not None:
            fields["timestamp"] = self.timestamp
        return NormalizedMessage(**fields)


class CreateConversationRequest(BaseModel):
    name: str = "New Chat"


class RenameConversationRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)


class CompletionData(BaseModel):
    role: Literal["assistant"] = "assistant"
    text: str
    timestamp: int
    source_tier: str
    succeeded_on_attempt: int


class ApiResponse(BaseModel):
    success: bool
    data: Any | None = None
    message: str | None = None
    error: str | None = None
    code: str | None = None


class CompletionResponse(ApiResponse):
    data: CompletionData | None = None


def make_completion_response(result: CompletionResult, message: NormalizedMessage) -> CompletionResponse:
    return CompletionResponse(
        success=True,
        data=CompletionData(
            text=result.text,
            timestamp=message.timestamp,
            source_tier=result.source_tier,
            succeeded_on_attempt=result.succeeded_on_attempt,
        ),
    )


def make_conversation_summary(record: ConversationRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        "name": record.name,
        "message_count": len(record.messages),
        "created_at": record.created_at.isoformat(),
        "updated_at": record.updated_at.isoformat(),
    }


def make_error_response(*, message: str, code: str | None = None) -> ApiResponse:
    return ApiResponse(success=False, error=message, code=code)


def make_export(owner_id: str, records: list[ConversationRecord]) -> dict[str, Any]:
    return {
        "user_id": owner_id,
        "exported_at": datetime.now(timezone.utc).isoformat(),
        "chats": [r.model_dump(mode="json", exclude={"owner_id"}) for r in records],
        "total_chats": len(records),
        "total_messages": sum(len(r.messages) for r in records),
    }
