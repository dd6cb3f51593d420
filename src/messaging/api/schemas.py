from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from src.messaging.domain.value_objects import (
    JobStatus,
    MessageDirection,
    MessageSender,
    MessageStatus,
    MessageType,
    WebhookEventStatus,
)


# -----------------------
# Messages
# -----------------------
class MessageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: UUID
    tenant_id: UUID
    conversation_id: UUID
    direction: MessageDirection
    type: MessageType
    status: MessageStatus
    sender: MessageSender
    sender_id: Optional[UUID] = None
    external_id: Optional[str] = None
    content: Optional[str] = None
    media: Optional[Dict[str, Any]] = None
    location: Optional[Dict[str, Any]] = None
    interactive: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = Field(default_factory=dict, validation_alias="metadata_")
    error_message: Optional[str] = None
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    read_at: Optional[datetime] = None
    created_at: datetime


class ChannelEventAccepted(BaseModel):
    status: Literal["ingested", "duplicate", "dropped"]
    message_id: Optional[UUID] = None
    conversation_id: Optional[UUID] = None
    is_new_conversation: bool = False


class ConfirmSentRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    external_id: str = Field(min_length=1, max_length=255)
    sent_at: Optional[datetime] = None


class StatusUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    external_id: str = Field(min_length=1, max_length=255)
    status: MessageStatus
    timestamp: Optional[datetime] = None
    error: Optional[str] = None


class StatusUpdateResult(BaseModel):
    applied: bool
    message: Optional[MessageRead] = None


# -----------------------
# Queue jobs
# -----------------------
class JobRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    queue: str
    name: str
    payload: Dict[str, Any]
    status: JobStatus
    attempts: int
    max_attempts: int
    last_error: Optional[str] = None
    available_at: datetime
    failed_at: Optional[datetime] = None


# -----------------------
# Webhook events
# -----------------------
class WebhookEventCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    event_type: str = Field(min_length=1, max_length=128)
    payload: Dict[str, Any] = Field(default_factory=dict)
    idempotency_key: Optional[str] = Field(default=None, max_length=255)
    tenant_id: Optional[UUID] = None


class WebhookEventRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    source: str
    event_type: str
    tenant_id: Optional[UUID] = None
    idempotency_key: Optional[str] = None
    status: WebhookEventStatus
    attempts: int
    error_message: Optional[str] = None
    processed_at: Optional[datetime] = None
    created: bool = False


class FailedJobsResponse(BaseModel):
    items: List[JobRead]
