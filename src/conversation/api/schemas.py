from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from src.messaging.api.schemas import MessageRead
from src.messaging.domain.value_objects import (
    ConversationHandler,
    ConversationPriority,
    ConversationStatus,
    MessageType,
)


# -----------------------
# Conversation DTOs
# -----------------------
class ConversationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: UUID
    channel_id: UUID
    customer_external_id: str
    customer_id: Optional[UUID] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    status: ConversationStatus
    handler: ConversationHandler
    priority: ConversationPriority
    assigned_to_id: Optional[UUID] = None
    message_count: int
    last_message_at: Optional[datetime] = None
    first_response_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    tags: List[str] = Field(default_factory=list)
    notes: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict, validation_alias="metadata_")
    created_at: datetime
    updated_at: datetime


class PageMetaRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total: int
    page: int
    limit: int
    total_pages: int


class ConversationList(BaseModel):
    items: List[ConversationRead]
    meta: PageMetaRead


class MessageList(BaseModel):
    items: List[MessageRead]
    meta: PageMetaRead


# -----------------------
# Commands
# -----------------------
class StatusChange(BaseModel):
    model_config = ConfigDict(extra="forbid")

    status: ConversationStatus
    user_id: Optional[UUID] = None
    force: bool = False


class AssignRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    agent_id: UUID


class HandlerChange(BaseModel):
    model_config = ConfigDict(extra="forbid")

    handler: ConversationHandler


class PriorityChange(BaseModel):
    model_config = ConfigDict(extra="forbid")

    priority: ConversationPriority


class TagsRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    tags: List[str] = Field(min_length=1)


class NoteCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    note: str = Field(min_length=1, max_length=4000)
    user: Optional[str] = Field(default=None, max_length=200)


class ReplyCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    content: str = Field(min_length=1)
    type: MessageType = MessageType.TEXT
    sender_id: Optional[UUID] = None
    queue: bool = False


class ConversationStats(BaseModel):
    total: int
    by_status: Dict[str, int]
    by_handler: Dict[str, int]
    unread: int
