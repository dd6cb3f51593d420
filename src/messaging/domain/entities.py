from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID

from .identity import SenderIdentity
from .value_objects import MessageType


@dataclass(frozen=True)
class InboundMessage:
    """Canonical inbound message, independent of the channel it arrived on."""

    channel_id: UUID
    sender: SenderIdentity
    external_message_id: Optional[str]
    content: Optional[str]
    type: MessageType
    timestamp: datetime
    sender_name: Optional[str] = None
    media: Optional[Dict[str, Any]] = None
    interactive: Optional[Dict[str, Any]] = None
    location: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def sender_external_id(self) -> str:
        return self.sender.external_id

    @property
    def sender_phone(self) -> Optional[str]:
        return self.sender.phone
