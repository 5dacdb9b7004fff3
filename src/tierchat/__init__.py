from .config import TierChatConfig
from .conversations import ConversationRecord, ConversationStore, InMemoryConversationStore
from .errors import (
    AllTiersExhaustedError,
    ConversationNotFoundError,
    InvalidRequestError,
    TierChatError,
    UnauthenticatedError,
    UpstreamError,
)
from .orchestrator import FallbackOrchestrator, TieredStream
from .provider import ProviderPool
from .registry import ModelRegistry, build_registry
from .router_contracts import CompletionResult, NormalizedMessage, ProviderTier
from .streaming import StreamingBridge

__all__ = [
    "AllTiersExhaustedError",
    "CompletionResult",
    "ConversationNotFoundError",
    "ConversationRecord",
    "ConversationStore",
    "FallbackOrchestrator",
    "InMemoryConversationStore",
    "InvalidRequestError",
    "ModelRegistry",
    "NormalizedMessage",
    "ProviderPool",
    "ProviderTier",
    "StreamingBridge",
    "TierChatConfig",
    "TierChatError",
    "TieredStream",
    "UnauthenticatedError",
    "UpstreamError",
    "build_registry",
]
