from __future__ import annotations

from typing import Any, Dict, Literal
from uuid import UUID

from fastapi import APIRouter, Body, Depends, Query, Response, status

from src.shared.logging import get_logger
from src.messaging.domain.events import CHANNEL_MESSAGE_RECEIVED, WHATSAPP_MESSAGE_RECEIVED
from src.messaging.infrastructure.job_queue import JobQueue
from .dependencies import MessagingServices, get_services, get_tenant_id
from .schemas import (
    ChannelEventAccepted,
    ConfirmSentRequest,
    FailedJobsResponse,
    JobRead,
    MessageRead,
    StatusUpdateRequest,
    StatusUpdateResult,
    WebhookEventCreate,
    WebhookEventRead,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/api", tags=["messaging"])

_EVENT_SHAPES = {
    "channel": CHANNEL_MESSAGE_RECEIVED,
    "whatsapp": WHATSAPP_MESSAGE_RECEIVED,
}


# ---------------------------------------------------------
# Channel adapter events (inbound)
# ---------------------------------------------------------
@router.post("/channels/events/{shape}", response_model=ChannelEventAccepted, status_code=status.HTTP_202_ACCEPTED)
async def receive_channel_event(
    shape: Literal["channel", "whatsapp"],
    payload: Dict[str, Any] = Body(...),
    services: MessagingServices = Depends(get_services),
):
    # Tenant comes from the channel's store, never from the caller.
    result = await services.listener.handle(_EVENT_SHAPES[shape], payload)
    if result is None:
        return ChannelEventAccepted(status="dropped")
    return ChannelEventAccepted(
        status="duplicate" if result.duplicate else "ingested",
        message_id=result.message.id,
        conversation_id=result.conversation.id if result.conversation else None,
        is_new_conversation=result.is_new_conversation,
    )


# ---------------------------------------------------------
# Adapter callbacks (outbound)
# ---------------------------------------------------------
@router.post("/messages/{message_id}/confirm", response_model=MessageRead)
async def confirm_sent(
    message_id: UUID,
    body: ConfirmSentRequest,
    tenant_id: UUID = Depends(get_tenant_id),
    services: MessagingServices = Depends(get_services),
):
    message = await services.dispatcher.confirm_sent(tenant_id, message_id, body.external_id, at=body.sent_at)
    return MessageRead.model_validate(message)


@router.post("/messages/status", response_model=StatusUpdateResult)
async def update_message_status(
    body: StatusUpdateRequest,
    tenant_id: UUID = Depends(get_tenant_id),
    services: MessagingServices = Depends(get_services),
):
    message = await services.dispatcher.apply_status_update(
        tenant_id, body.external_id, body.status, at=body.timestamp, error=body.error
    )
    if message is None:
        return StatusUpdateResult(applied=False)
    return StatusUpdateResult(applied=True, message=MessageRead.model_validate(message))


# ---------------------------------------------------------
# Durable queue (operators)
# ---------------------------------------------------------
@router.get("/jobs/failed", response_model=FailedJobsResponse)
async def list_failed_jobs(
    limit: int = Query(50, ge=1, le=500),
    services: MessagingServices = Depends(get_services),
):
    async with services.session_factory() as s:
        jobs = await JobQueue(s).list_failed(limit=limit)
    return FailedJobsResponse(items=[JobRead.model_validate(j) for j in jobs])


@router.post("/jobs/{job_id}/retry", response_model=JobRead)
async def retry_failed_job(job_id: UUID, services: MessagingServices = Depends(get_services)):
    async with services.session_factory() as s:
        async with s.begin():
            job = await JobQueue(s).retry_failed(job_id)
    logger.info("queue_job_requeued", job_id=str(job_id))
    return JobRead.model_validate(job)


# ---------------------------------------------------------
# Platform webhooks
# ---------------------------------------------------------
@router.post("/webhooks/{source}/events", response_model=WebhookEventRead)
async def record_webhook_event(
    source: str,
    body: WebhookEventCreate,
    response: Response,
    services: MessagingServices = Depends(get_services),
):
    event, created = await services.webhook_events.record(
        source,
        body.event_type,
        body.payload,
        idempotency_key=body.idempotency_key,
        tenant_id=body.tenant_id,
    )
    response.status_code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
    return WebhookEventRead.model_validate(event).model_copy(update={"created": created})
