# src/messaging/domain/exceptions.py
"""
Messaging Domain Exceptions
"""
from __future__ import annotations

from typing import Any, Optional

from src.shared.exceptions import ConflictError, DomainError, ExternalServiceError, NotFoundError, ValidationError


class ChannelNotFoundError(NotFoundError):
    code = "channel_not_found"


class StoreNotFoundError(NotFoundError):
    code = "store_not_found"


class ConversationNotFoundError(NotFoundError):
    code = "conversation_not_found"


class MessageNotFoundError(NotFoundError):
    code = "message_not_found"


class WebhookEventNotFoundError(NotFoundError):
    code = "webhook_event_not_found"


class JobNotFoundError(NotFoundError):
    code = "job_not_found"


class DuplicateMessageError(ConflictError):
    """A message with the same (tenant, external id) already exists."""
    code = "duplicate_message"

    def __init__(self, external_id: str, existing: Optional[Any] = None) -> None:
        super().__init__(f"Message {external_id!r} already stored", details={"external_id": external_id})
        self.external_id = external_id
        self.existing = existing


class ActiveConversationExistsError(ConflictError):
    code = "active_conversation_exists"


class InvalidStatusTransitionError(ConflictError):
    code = "invalid_status_transition"


class InvalidWebhookEventStateError(ConflictError):
    code = "invalid_webhook_event_state"


class NoRecipientError(ValidationError):
    code = "no_recipient"


class UnsupportedPayloadError(ValidationError):
    code = "unsupported_payload"


class ChannelSendError(ExternalServiceError):
    """The provider rejected or never confirmed an outbound message."""
    code = "channel_send_failed"


class SenderNotConfiguredError(DomainError):
    code = "sender_not_configured"
