# src/shared/events.py
"""
Domain events and the in-process event bus.

Handlers subscribe by event type name (e.g. "message.received") and are awaited in
subscription order. A failing handler is logged and the remaining handlers still run,
unless the publisher asks for strict delivery.
"""
from __future__ import annotations

import inspect
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from src.shared.logging import get_logger

logger = get_logger(__name__)


@dataclass
class DomainEvent:
    """Base class for all domain events."""

    event_type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    tenant_id: Optional[uuid.UUID] = None
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "tenant_id": str(self.tenant_id) if self.tenant_id else None,
            "occurred_at": self.occurred_at.isoformat(),
            "payload": self.payload,
        }


EventHandler = Callable[[DomainEvent], Union[Awaitable[None], None]]


class EventBus:
    """
    In-memory event bus for domain event publication and subscription.

    Allows decoupled communication between modules via domain events.
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, List[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        self._handlers[event_type].append(handler)
        logger.debug("event_handler_subscribed", event_type=event_type, handler=_handler_name(handler))

    def unsubscribe(self, event_type: str, handler: EventHandler) -> None:
        handlers = self._handlers.get(event_type)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def has_handlers(self, event_type: str) -> bool:
        return bool(self._handlers.get(event_type))

    async def publish(self, event: DomainEvent, *, strict: bool = False) -> int:
        """
        Publish a domain event to all subscribed handlers.

        Returns the number of handlers that completed. With ``strict=True`` the first
        handler error is re-raised instead of being logged and skipped.
        """
        handlers = list(self._handlers.get(event.event_type, []))
        if not handlers:
            logger.debug("event_without_handlers", event_type=event.event_type, event_id=event.event_id)
            return 0

        logger.info(
            "event_published",
            event_type=event.event_type,
            event_id=event.event_id,
            handler_count=len(handlers),
        )

        completed = 0
        for handler in handlers:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
                completed += 1
            except Exception as e:
                if strict:
                    raise
                logger.error(
                    "event_handler_failed",
                    handler=_handler_name(handler),
                    event_type=event.event_type,
                    event_id=event.event_id,
                    error=str(e),
                    exc_info=True,
                )
                # Continue processing other handlers even if one fails
        return completed

    async def publish_many(self, events: List[DomainEvent]) -> None:
        for event in events:
            await self.publish(event)

    def clear_handlers(self, event_type: Optional[str] = None) -> None:
        if event_type:
            self._handlers.pop(event_type, None)
        else:
            self._handlers.clear()


def _handler_name(handler: Callable[..., Any]) -> str:
    return getattr(handler, "__qualname__", None) or handler.__class__.__name__


# Global event bus instance
_event_bus: Optional[EventBus] = None


def get_event_bus() -> EventBus:
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus()
    return _event_bus
