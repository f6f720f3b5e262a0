import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from src.colloquy.config import DEFAULT_TITLE


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def new_message_id() -> str:
    return f"msg-{uuid.uuid4().hex}"


class MessageRole(str, Enum):
    """Roles that may appear in persisted storage."""

    USER = "user"
    ASSISTANT = "assistant"


class ThinkingMode(str, Enum):
    """Generation profile requested for a completion."""

    LOW = "low"
    HIGH = "high"


class Message(BaseModel):
    """
    A single role-tagged utterance within a session.

    Attributes:
        id: Identifier unique within the owning session.
        role: Either 'user' or 'assistant'.
        content: Textual payload; never blank once committed.
        timestamp: Assignment time, non-decreasing within a session.
        metadata: Opaque mapping carried alongside the message (thinking mode,
                  provider identifiers, token usage). Not interpreted by the core.
    """
    id: str = Field(default_factory=new_message_id)
    role: MessageRole
    content: str
    timestamp: datetime = Field(default_factory=utc_now)
    metadata: Optional[Dict[str, Any]] = None


class Session(BaseModel):
    """
    A persisted, ordered conversation between one user and the assistant.

    Attributes:
        id: A unique identifier for the session.
        owner_id: Identifier of the owning user; immutable.
        title: Short human-readable label.
        messages: Messages in strict commit order.
        created_at: When the session was created.
        updated_at: Advances on every append, title change, clear or lifecycle change.
        is_active: False once the session has been soft-deleted.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    owner_id: str
    title: str = DEFAULT_TITLE
    messages: List[Message] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    is_active: bool = True

    @property
    def last_message(self) -> Optional[Message]:
        return self.messages[-1] if self.messages else None

    def first_user_message(self) -> Optional[Message]:
        for message in self.messages:
            if message.role == MessageRole.USER:
                return message
        return None


class ConversationTurn(BaseModel):
    """A {role, content} pair handed to the completion provider."""
    role: MessageRole
    content: str

    def as_dict(self) -> Dict[str, str]:
        return {"role": self.role.value, "content": self.content}


class MessageSearchHit(BaseModel):
    session_id: str
    session_title: str
    message_id: str
    role: MessageRole
    snippet: str
    timestamp: datetime


class CompletionResult(BaseModel):
    """Normalized provider reply returned by the completion gateway."""
    text: str
    provider_name: str
    model_name: str
    mode: ThinkingMode
    used_cached_handle: bool = False
    history_length: int = 0
    response_time_ms: int = 0
    estimated_tokens: int = 0

    def to_metadata(self) -> Dict[str, Any]:
        return {
            "thinking_mode": self.mode.value,
            "provider": self.provider_name,
            "model": self.model_name,
            "response_time_ms": self.response_time_ms,
            "token_usage": {"estimated_tokens": self.estimated_tokens},
        }
