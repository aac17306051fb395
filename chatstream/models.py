"""
chatstream/models.py: Pydantic models for the completion pipeline.

Covers:
- Stored records (Conversation, Message) as returned by the store
- PromptMessage, the provider-facing message shape
- Stream fragments (TextDelta, EndOfStream)
- API request bodies and status helpers
"""

from __future__ import annotations

from typing import List, Literal, Optional, Union

from pydantic import BaseModel, Field

Role = Literal["system", "user", "assistant"]


# ---------------------------------------------------------------------------
# Stored records
# ---------------------------------------------------------------------------


class Conversation(BaseModel):
    id: str
    title: str
    user_id: str
    created_at: str
    updated_at: str


class Message(BaseModel):
    """One immutable turn of a conversation."""

    id: str
    conversation_id: str
    user_id: str
    role: Role
    content: str
    created_at: str
    updated_at: str


class ConversationDetail(BaseModel):
    conversation: Conversation
    messages: List[Message] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Prompt
# ---------------------------------------------------------------------------


class PromptMessage(BaseModel):
    """A message as sent to the model provider. Never persisted."""

    role: Role
    content: str
    name: Optional[str] = None

    def to_payload(self) -> dict:
        return self.model_dump(exclude_none=True)


class PromptBudget(BaseModel):
    """Result of fitting a conversation into the context window."""

    messages: List[PromptMessage]
    prompt_tokens: int
    max_response_tokens: int
    dropped: int = 0


# ---------------------------------------------------------------------------
# Stream fragments
# ---------------------------------------------------------------------------


class TextDelta(BaseModel):
    """Incremental text produced by the provider."""

    text: str
    provider_id: Optional[str] = None


class EndOfStream(BaseModel):
    """Terminal sentinel: the provider finished the reply."""

    provider_id: Optional[str] = None


StreamFragment = Union[TextDelta, EndOfStream]


# ---------------------------------------------------------------------------
# API bodies
# ---------------------------------------------------------------------------


class CreateConversationRequest(BaseModel):
    title: str = Field(default="New conversation", max_length=200)


class CreateMessageRequest(BaseModel):
    text: str = Field(..., min_length=1)


class StatusResponse(BaseModel):
    status: str = "ok"
    version: str = "1.0.0"
    model: str = ""
