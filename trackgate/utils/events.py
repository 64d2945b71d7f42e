"""Event system for trackgate.

Security-relevant state changes (bans, lockouts, revocations, denials) are
published on a process-local bus so that audit sinks can subscribe without
the admission core knowing about them.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class EventPriority(Enum):
    """Event priority levels."""

    LOW = 0
    NORMAL = 1
    HIGH = 2
    CRITICAL = 3


class EventType(Enum):
    """Types of events emitted by the admission core."""

    # Address bans
    ADDRESS_BAN_ADDED = "address_ban_added"
    ADDRESS_BAN_UPDATED = "address_ban_updated"
    ADDRESS_BAN_REMOVED = "address_ban_removed"

    # Account bans
    ACCOUNT_BANNED = "account_banned"
    ACCOUNT_BAN_DEACTIVATED = "account_ban_deactivated"
    ACCOUNT_BANS_EXPIRED = "account_bans_expired"
    ACCOUNT_REACTIVATED = "account_reactivated"

    # Authentication
    LOGIN_SUCCEEDED = "login_succeeded"
    LOGIN_FAILED = "login_failed"
    LOGIN_LOCKED_OUT = "login_locked_out"
    CREDENTIAL_REVOKED = "credential_revoked"

    # Admission
    ADMISSION_DENIED = "admission_denied"


@dataclass
class Event:
    """Base event class."""

    event_type: str = ""
    timestamp: float = field(default_factory=time.time)
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    priority: EventPriority = EventPriority.NORMAL
    source: str | None = None
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert event to dictionary."""
        return {
            "event_type": self.event_type,
            "timestamp": self.timestamp,
            "event_id": self.event_id,
            "priority": self.priority.value,
            "source": self.source,
            "data": self.data,
        }

    def to_json(self) -> str:
        """Convert event to JSON string."""
        return json.dumps(self.to_dict(), default=str)


class EventHandler(ABC):
    """Base class for event handlers."""

    def __init__(self, name: str):
        """Initialize event handler."""
        self.name = name

    @abstractmethod
    async def handle(self, event: Event) -> None:
        """Handle an event."""

    def can_handle(self, _event: Event) -> bool:
        """Check if this handler can handle the event."""
        return True


class EventBus:
    """Dispatches events to registered handlers.

    Dispatch is inline on the emitting task. A failing handler is logged and
    skipped; it never fails the operation that emitted the event.
    """

    def __init__(self, max_replay_events: int = 1000):
        """Initialize event bus.

        Args:
            max_replay_events: Number of recent events kept for inspection

        """
        self.handlers: dict[str, list[EventHandler]] = {}
        self.replay_buffer: list[Event] = []
        self.max_replay_events = max_replay_events
        self.stats = {
            "events_processed": 0,
            "handler_errors": 0,
            "handlers_registered": 0,
        }

    def register_handler(self, event_type: str, handler: EventHandler) -> None:
        """Register a handler for ``event_type`` (use ``"*"`` for all events)."""
        self.handlers.setdefault(event_type, []).append(handler)
        self.stats["handlers_registered"] += 1

    def unregister_handler(self, event_type: str, handler: EventHandler) -> None:
        """Remove a previously registered handler."""
        handlers = self.handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)
            self.stats["handlers_registered"] -= 1

    async def emit(self, event: Event) -> None:
        """Deliver ``event`` to every matching handler."""
        self.replay_buffer.append(event)
        if len(self.replay_buffer) > self.max_replay_events:
            del self.replay_buffer[: -self.max_replay_events]

        targets = self.handlers.get(event.event_type, []) + self.handlers.get("*", [])
        for handler in targets:
            if not handler.can_handle(event):
                continue
            try:
                await handler.handle(event)
            except Exception:
                self.stats["handler_errors"] += 1
                logger.exception(
                    "Event handler %s failed for %s", handler.name, event.event_type
                )
        self.stats["events_processed"] += 1

    def get_replay_events(self, event_type: str | None = None) -> list[Event]:
        """Return buffered events, optionally filtered by type."""
        if event_type is None:
            return list(self.replay_buffer)
        return [e for e in self.replay_buffer if e.event_type == event_type]

    def clear(self) -> None:
        """Drop all handlers and buffered events."""
        self.handlers.clear()
        self.replay_buffer.clear()
        self.stats["handlers_registered"] = 0


# Global event bus instance
_event_bus: EventBus | None = None


def get_event_bus() -> EventBus:
    """Get the global event bus."""
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus()
    return _event_bus


async def emit_event(event: Event) -> None:
    """Emit an event to the global event bus."""
    await get_event_bus().emit(event)


async def emit_security_event(
    event_type: EventType,
    source: str,
    priority: EventPriority = EventPriority.NORMAL,
    **data: Any,
) -> None:
    """Build and emit a security event in one call."""
    await emit_event(
        Event(
            event_type=event_type.value,
            source=source,
            priority=priority,
            data=data,
        )
    )
