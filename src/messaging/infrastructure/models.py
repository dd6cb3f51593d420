"""SQLAlchemy ORM models for the messaging pipeline."""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from src.shared.database import Base, JSONType, UTCDateTime, str_enum, utcnow
from src.messaging.domain.value_objects import (
    ACTIVE_CONVERSATION_STATUSES,
    ChannelStatus,
    ChannelType,
    ConversationHandler,
    ConversationPriority,
    ConversationStatus,
    JobStatus,
    MessageDirection,
    MessageSender,
    MessageStatus,
    MessageType,
    WebhookEventStatus,
)

_ACTIVE_STATUS_SQL = "status IN ({})".format(
    ", ".join(f"'{s.value}'" for s in sorted(ACTIVE_CONVERSATION_STATUSES, key=lambda s: s.value))
)


class StoreORM(Base):
    __tablename__ = "stores"

    id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, nullable=False, index=True)
    name: Mapped[str] = mapped_column(sa.String(255), nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)


class ChannelORM(Base):
    __tablename__ = "channels"

    id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, primary_key=True, default=uuid.uuid4)
    store_id: Mapped[uuid.UUID] = mapped_column(
        sa.Uuid, sa.ForeignKey("stores.id", ondelete="CASCADE"), nullable=False, index=True
    )
    type: Mapped[ChannelType] = mapped_column(str_enum(ChannelType, "channel_type"), nullable=False)
    status: Mapped[ChannelStatus] = mapped_column(
        str_enum(ChannelStatus, "channel_status"), nullable=False, default=ChannelStatus.PENDING
    )
    name: Mapped[str] = mapped_column(sa.String(255), nullable=False, default="")
    # Opaque to the pipeline; read only by the credentials provider.
    credentials: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    settings: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    messages_received: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    messages_sent: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    last_activity_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow, onupdate=utcnow)


class ConversationORM(Base):
    __tablename__ = "conversations"
    __table_args__ = (
        sa.Index(
            "uq_conversations_active_customer",
            "tenant_id", "channel_id", "customer_external_id",
            unique=True,
            postgresql_where=sa.text(_ACTIVE_STATUS_SQL),
            sqlite_where=sa.text(_ACTIVE_STATUS_SQL),
        ),
        sa.Index("ix_conversations_tenant_status", "tenant_id", "status"),
        sa.Index("ix_conversations_tenant_last_message", "tenant_id", "last_message_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, nullable=False)
    channel_id: Mapped[uuid.UUID] = mapped_column(
        sa.Uuid, sa.ForeignKey("channels.id", ondelete="CASCADE"), nullable=False, index=True
    )
    customer_external_id: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    customer_id: Mapped[Optional[uuid.UUID]] = mapped_column(sa.Uuid, nullable=True)
    customer_name: Mapped[Optional[str]] = mapped_column(sa.String(255), nullable=True)
    customer_phone: Mapped[Optional[str]] = mapped_column(sa.String(32), nullable=True)
    status: Mapped[ConversationStatus] = mapped_column(
        str_enum(ConversationStatus, "conversation_status"), nullable=False, default=ConversationStatus.OPEN
    )
    handler: Mapped[ConversationHandler] = mapped_column(
        str_enum(ConversationHandler, "conversation_handler"), nullable=False, default=ConversationHandler.AI
    )
    priority: Mapped[ConversationPriority] = mapped_column(
        str_enum(ConversationPriority, "conversation_priority"), nullable=False, default=ConversationPriority.NORMAL
    )
    assigned_to_id: Mapped[Optional[uuid.UUID]] = mapped_column(sa.Uuid, nullable=True)
    # Unread inbound messages; reset by mark-as-read.
    message_count: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    last_message_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    first_response_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    closed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    tags: Mapped[List[str]] = mapped_column(JSONType, nullable=False, default=list)
    ai_context: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    notes: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    metadata_: Mapped[Dict[str, Any]] = mapped_column("metadata", JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow, onupdate=utcnow)


class MessageORM(Base):
    __tablename__ = "messages"
    __table_args__ = (
        # NULL external ids never collide, so outbound rows without a provider id are fine.
        sa.UniqueConstraint("tenant_id", "external_id", name="uq_messages_tenant_external_id"),
        sa.Index("ix_messages_conversation_created", "conversation_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, nullable=False)
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        sa.Uuid, sa.ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    direction: Mapped[MessageDirection] = mapped_column(str_enum(MessageDirection, "message_direction"), nullable=False)
    type: Mapped[MessageType] = mapped_column(
        str_enum(MessageType, "message_type"), nullable=False, default=MessageType.TEXT
    )
    status: Mapped[MessageStatus] = mapped_column(
        str_enum(MessageStatus, "message_status"), nullable=False, default=MessageStatus.PENDING
    )
    sender: Mapped[MessageSender] = mapped_column(str_enum(MessageSender, "message_sender"), nullable=False)
    sender_id: Mapped[Optional[uuid.UUID]] = mapped_column(sa.Uuid, nullable=True)
    external_id: Mapped[Optional[str]] = mapped_column(sa.String(255), nullable=True)
    content: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    media: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    location: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    interactive: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    template: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    metadata_: Mapped[Dict[str, Any]] = mapped_column("metadata", JSONType, nullable=False, default=dict)
    error_message: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    read_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow, onupdate=utcnow)


class WebhookEventORM(Base):
    __tablename__ = "webhook_events"
    __table_args__ = (
        sa.UniqueConstraint("idempotency_key", name="uq_webhook_events_idempotency_key"),
        sa.Index("ix_webhook_events_status", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[Optional[uuid.UUID]] = mapped_column(sa.Uuid, nullable=True)
    source: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    event_type: Mapped[str] = mapped_column(sa.String(128), nullable=False)
    idempotency_key: Mapped[Optional[str]] = mapped_column(sa.String(255), nullable=True)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    status: Mapped[WebhookEventStatus] = mapped_column(
        str_enum(WebhookEventStatus, "webhook_event_status"), nullable=False, default=WebhookEventStatus.PENDING
    )
    attempts: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    error_message: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    result: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow, onupdate=utcnow)


class QueueJobORM(Base):
    __tablename__ = "queue_jobs"
    __table_args__ = (
        sa.Index("ix_queue_jobs_claim", "queue", "status", "available_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, primary_key=True, default=uuid.uuid4)
    queue: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    name: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    status: Mapped[JobStatus] = mapped_column(str_enum(JobStatus, "job_status"), nullable=False, default=JobStatus.PENDING)
    attempts: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=3)
    backoff_base_seconds: Mapped[float] = mapped_column(sa.Float, nullable=False, default=1.0)
    available_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    locked_until: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    result: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow, onupdate=utcnow)
