"""Event type names exchanged over the in-process bus."""
from __future__ import annotations

from .value_objects import ChannelType

# Published by channel adapters
CHANNEL_MESSAGE_RECEIVED = "channel.message.received"
WHATSAPP_MESSAGE_RECEIVED = "whatsapp.message.received"

# Published by the pipeline
MESSAGE_RECEIVED = "message.received"
MESSAGE_PROCESSED = "message.processed"
CONVERSATION_CREATED = "conversation.created"
CONVERSATION_STATUS_CHANGED = "conversation.status_changed"


def channel_send_event(channel_type: ChannelType) -> str:
    """Event consumed by the transport adapter of ``channel_type``."""
    return f"channel.{channel_type.value}.send"
