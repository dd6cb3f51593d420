from __future__ import annotations

from dataclasses import asdict
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from src.conversation.application.services.conversation_service import ConversationService
from src.messaging.api.dependencies import get_conversation_service, get_dispatcher, get_tenant_id
from src.messaging.api.schemas import MessageRead
from src.messaging.application.outbound_dispatcher import OutboundDispatcher
from src.messaging.domain.value_objects import ConversationHandler, ConversationPriority, ConversationStatus
from .schemas import (
    AssignRequest,
    ConversationList,
    ConversationRead,
    ConversationStats,
    HandlerChange,
    MessageList,
    NoteCreate,
    PageMetaRead,
    PriorityChange,
    ReplyCreate,
    StatusChange,
    TagsRequest,
)

router = APIRouter(prefix="/api/conversations", tags=["conversations"])


def _read(conversation) -> ConversationRead:
    return ConversationRead.model_validate(conversation)


# ---------------------------------------------------------
# Queries
# ---------------------------------------------------------
@router.get("", response_model=ConversationList)
async def list_conversations(
    status_: Optional[ConversationStatus] = Query(None, alias="status"),
    channel_id: Optional[UUID] = None,
    assigned_to_id: Optional[UUID] = None,
    handler: Optional[ConversationHandler] = None,
    priority: Optional[ConversationPriority] = None,
    search: Optional[str] = Query(None, max_length=200),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    tenant_id: UUID = Depends(get_tenant_id),
    svc: ConversationService = Depends(get_conversation_service),
):
    rows, meta = await svc.list_conversations(
        tenant_id,
        status=status_,
        channel_id=channel_id,
        assigned_to_id=assigned_to_id,
        handler=handler,
        priority=priority,
        search=search,
        page=page,
        limit=limit,
    )
    return ConversationList(items=[_read(r) for r in rows], meta=PageMetaRead(**asdict(meta)))


@router.get("/stats", response_model=ConversationStats)
async def conversation_stats(
    tenant_id: UUID = Depends(get_tenant_id),
    svc: ConversationService = Depends(get_conversation_service),
):
    return ConversationStats(**await svc.get_stats(tenant_id))


@router.get("/{conversation_id}", response_model=ConversationRead)
async def get_conversation(
    conversation_id: UUID,
    tenant_id: UUID = Depends(get_tenant_id),
    svc: ConversationService = Depends(get_conversation_service),
):
    return _read(await svc.get_conversation(tenant_id, conversation_id))


@router.get("/{conversation_id}/messages", response_model=MessageList)
async def get_messages(
    conversation_id: UUID,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    before: Optional[datetime] = None,
    after: Optional[datetime] = None,
    tenant_id: UUID = Depends(get_tenant_id),
    svc: ConversationService = Depends(get_conversation_service),
):
    rows, meta = await svc.get_messages(
        tenant_id, conversation_id, page=page, limit=limit, before=before, after=after
    )
    return MessageList(items=[MessageRead.model_validate(m) for m in rows], meta=PageMetaRead(**asdict(meta)))


# ---------------------------------------------------------
# Replies
# ---------------------------------------------------------
@router.post("/{conversation_id}/messages", response_model=MessageRead, status_code=status.HTTP_201_CREATED)
async def send_reply(
    conversation_id: UUID,
    body: ReplyCreate,
    tenant_id: UUID = Depends(get_tenant_id),
    dispatcher: OutboundDispatcher = Depends(get_dispatcher),
):
    if body.queue:
        message = await dispatcher.enqueue(
            tenant_id, conversation_id, body.content, type=body.type, sender_id=body.sender_id
        )
    else:
        message = await dispatcher.send(tenant_id, conversation_id, body.content, type=body.type, sender_id=body.sender_id)
    return MessageRead.model_validate(message)


# ---------------------------------------------------------
# Workflow & attributes
# ---------------------------------------------------------
@router.post("/{conversation_id}/status", response_model=ConversationRead)
async def change_status(
    conversation_id: UUID,
    body: StatusChange,
    tenant_id: UUID = Depends(get_tenant_id),
    svc: ConversationService = Depends(get_conversation_service),
):
    conv = await svc.change_status(tenant_id, conversation_id, body.status, user_id=body.user_id, force=body.force)
    return _read(conv)


@router.post("/{conversation_id}/assign", response_model=ConversationRead)
async def assign(
    conversation_id: UUID,
    body: AssignRequest,
    tenant_id: UUID = Depends(get_tenant_id),
    svc: ConversationService = Depends(get_conversation_service),
):
    return _read(await svc.assign(tenant_id, conversation_id, body.agent_id))


@router.post("/{conversation_id}/unassign", response_model=ConversationRead)
async def unassign(
    conversation_id: UUID,
    tenant_id: UUID = Depends(get_tenant_id),
    svc: ConversationService = Depends(get_conversation_service),
):
    return _read(await svc.unassign(tenant_id, conversation_id))


@router.put("/{conversation_id}/handler", response_model=ConversationRead)
async def set_handler(
    conversation_id: UUID,
    body: HandlerChange,
    tenant_id: UUID = Depends(get_tenant_id),
    svc: ConversationService = Depends(get_conversation_service),
):
    return _read(await svc.set_handler(tenant_id, conversation_id, body.handler))


@router.put("/{conversation_id}/priority", response_model=ConversationRead)
async def update_priority(
    conversation_id: UUID,
    body: PriorityChange,
    tenant_id: UUID = Depends(get_tenant_id),
    svc: ConversationService = Depends(get_conversation_service),
):
    return _read(await svc.update_priority(tenant_id, conversation_id, body.priority))


@router.post("/{conversation_id}/tags", response_model=ConversationRead)
async def add_tags(
    conversation_id: UUID,
    body: TagsRequest,
    tenant_id: UUID = Depends(get_tenant_id),
    svc: ConversationService = Depends(get_conversation_service),
):
    return _read(await svc.add_tags(tenant_id, conversation_id, body.tags))


@router.delete("/{conversation_id}/tags", response_model=ConversationRead)
async def remove_tags(
    conversation_id: UUID,
    tags: List[str] = Query(..., min_length=1),
    tenant_id: UUID = Depends(get_tenant_id),
    svc: ConversationService = Depends(get_conversation_service),
):
    return _read(await svc.remove_tags(tenant_id, conversation_id, tags))


@router.post("/{conversation_id}/notes", response_model=ConversationRead)
async def add_note(
    conversation_id: UUID,
    body: NoteCreate,
    tenant_id: UUID = Depends(get_tenant_id),
    svc: ConversationService = Depends(get_conversation_service),
):
    return _read(await svc.add_note(tenant_id, conversation_id, body.note, user=body.user))


@router.post("/{conversation_id}/read", response_model=ConversationRead)
async def mark_as_read(
    conversation_id: UUID,
    tenant_id: UUID = Depends(get_tenant_id),
    svc: ConversationService = Depends(get_conversation_service),
):
    return _read(await svc.mark_as_read(tenant_id, conversation_id))
