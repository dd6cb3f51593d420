"""Value objects and enumerations for channels, conversations and messages."""
from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet


class ChannelType(str, Enum):
    WHATSAPP_OFFICIAL = "whatsapp_official"
    WHATSAPP_UNOFFICIAL = "whatsapp_unofficial"  # QR / linked-device transport
    INSTAGRAM = "instagram"
    DISCORD = "discord"

    @property
    def is_whatsapp(self) -> bool:
        return self in (ChannelType.WHATSAPP_OFFICIAL, ChannelType.WHATSAPP_UNOFFICIAL)


class ChannelStatus(str, Enum):
    PENDING = "pending"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"
    BANNED = "banned"


class ConversationStatus(str, Enum):
    OPEN = "open"
    PENDING = "pending"
    ASSIGNED = "assigned"
    RESOLVED = "resolved"
    CLOSED = "closed"


# At most one conversation per (tenant, channel, customer) may sit in this set.
ACTIVE_CONVERSATION_STATUSES: FrozenSet[ConversationStatus] = frozenset({
    ConversationStatus.OPEN,
    ConversationStatus.PENDING,
    ConversationStatus.ASSIGNED,
    ConversationStatus.RESOLVED,
})

ALLOWED_STATUS_TRANSITIONS: Dict[ConversationStatus, FrozenSet[ConversationStatus]] = {
    ConversationStatus.OPEN: frozenset({
        ConversationStatus.PENDING, ConversationStatus.ASSIGNED,
        ConversationStatus.RESOLVED, ConversationStatus.CLOSED,
    }),
    ConversationStatus.PENDING: frozenset({
        ConversationStatus.OPEN, ConversationStatus.ASSIGNED,
        ConversationStatus.RESOLVED, ConversationStatus.CLOSED,
    }),
    ConversationStatus.ASSIGNED: frozenset({
        ConversationStatus.OPEN, ConversationStatus.PENDING,
        ConversationStatus.RESOLVED, ConversationStatus.CLOSED,
    }),
    ConversationStatus.RESOLVED: frozenset({ConversationStatus.OPEN, ConversationStatus.CLOSED}),
    ConversationStatus.CLOSED: frozenset({ConversationStatus.OPEN}),
}


def can_transition(current: ConversationStatus, new: ConversationStatus) -> bool:
    return new in ALLOWED_STATUS_TRANSITIONS.get(current, frozenset())


class ConversationHandler(str, Enum):
    AI = "ai"
    HUMAN = "human"
    UNASSIGNED = "unassigned"


class ConversationPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class MessageDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"
    LOCATION = "location"
    CONTACT = "contact"
    STICKER = "sticker"
    TEMPLATE = "template"
    INTERACTIVE = "interactive"
    SYSTEM = "system"


class MessageStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


# Delivery receipts only ever move a message forward along this ladder.
MESSAGE_STATUS_RANK: Dict[MessageStatus, int] = {
    MessageStatus.PENDING: 0,
    MessageStatus.SENT: 1,
    MessageStatus.DELIVERED: 2,
    MessageStatus.READ: 3,
}


class MessageSender(str, Enum):
    CUSTOMER = "customer"
    AGENT = "agent"
    AI = "ai"
    SYSTEM = "system"
    CAMPAIGN = "campaign"


class WebhookEventStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"
    SKIPPED = "skipped"
    RETRY_PENDING = "retry_pending"


class JobStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
