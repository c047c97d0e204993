"""
Event System Module

Publish/subscribe dispatcher for lending domain events. Presentation layers
subscribe here to receive OperationResult notifications (success or failure
messages) instead of the core depending on any UI state container.
"""

from enum import Enum
from typing import Callable, Dict, List, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
import uuid
import logging
from threading import RLock


class DomainEvent(Enum):
    """Domain events raised by the lending engine"""

    PRODUCT_CREATED = "product.created"
    PRODUCT_UPDATED = "product.updated"

    APPLICATION_SUBMITTED = "application.submitted"
    APPLICATION_APPROVED = "application.approved"
    APPLICATION_REJECTED = "application.rejected"

    LOAN_DISBURSED = "loan.disbursed"
    LOAN_REPAYMENT = "loan.repayment"
    LOAN_OVERPAYMENT = "loan.overpayment"
    LOAN_PENALTY = "loan.penalty"
    LOAN_CLOSED = "loan.closed"
    LOAN_DEFAULTED = "loan.defaulted"
    LOAN_WRITTEN_OFF = "loan.written_off"

    OPERATION_FAILED = "operation.failed"


@dataclass(frozen=True)
class OperationResult:
    """User-facing outcome of a core operation"""
    success: bool
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {'success': self.success, 'message': self.message}


@dataclass
class EventPayload:
    """Payload for domain events"""
    event_type: DomainEvent
    entity_type: str
    entity_id: str
    data: Dict[str, Any]
    result: Optional[OperationResult] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'data': self.data,
            'result': self.result.to_dict() if self.result else None,
            'timestamp': self.timestamp.isoformat(),
            'event_id': self.event_id
        }


class EventDispatcher:
    """Central event dispatcher, publish/subscribe pattern"""

    def __init__(self):
        self._handlers: Dict[DomainEvent, List[Callable]] = {}
        self._global_handlers: List[Callable] = []
        self._lock = RLock()
        self.logger = logging.getLogger("lending_core.events")

    @staticmethod
    def _handler_name(handler: Callable) -> str:
        return getattr(handler, '__name__', repr(handler))

    def subscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Subscribe to a specific event type"""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)
            self.logger.debug(f"Subscribed handler {self._handler_name(handler)} to {event_type.value}")

    def subscribe_all(self, handler: Callable) -> None:
        """Subscribe to ALL events"""
        with self._lock:
            self._global_handlers.append(handler)
            self.logger.debug(f"Subscribed global handler {self._handler_name(handler)}")

    def unsubscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Unsubscribe from a specific event type"""
        with self._lock:
            try:
                self._handlers.get(event_type, []).remove(handler)
            except ValueError:
                self.logger.warning(
                    f"Handler {self._handler_name(handler)} was not subscribed to {event_type.value}"
                )

    def publish(self, event: EventPayload) -> None:
        """Publish event to all subscribers"""
        with self._lock:
            self.logger.debug(f"Publishing event {event.event_type.value} for {event.entity_type}:{event.entity_id}")

            handlers = list(self._handlers.get(event.event_type, [])) + list(self._global_handlers)
            for handler in handlers:
                try:
                    handler(event)
                except Exception as e:
                    # A failing subscriber must not undo a committed operation
                    self.logger.error(
                        f"Error in event handler {self._handler_name(handler)} for {event.event_type.value}: {e}"
                    )

    def clear(self) -> None:
        """Clear all handlers"""
        with self._lock:
            self._handlers.clear()
            self._global_handlers.clear()

    def get_handler_count(self, event_type: Optional[DomainEvent] = None) -> int:
        """Get count of handlers for a specific event type or all"""
        with self._lock:
            if event_type:
                return len(self._handlers.get(event_type, []))
            return sum(len(h) for h in self._handlers.values()) + len(self._global_handlers)


class EventPublisherMixin:
    """Mixin to add event publishing capabilities to domain services"""

    _event_dispatcher: Optional[EventDispatcher] = None

    def set_event_dispatcher(self, event_dispatcher: EventDispatcher) -> None:
        """Set the event dispatcher for this instance"""
        self._event_dispatcher = event_dispatcher

    def publish_event(
        self,
        event_type: DomainEvent,
        entity_type: str,
        entity_id: str,
        data: Dict[str, Any],
        message: Optional[str] = None,
        success: bool = True
    ) -> None:
        """Publish a domain event with an optional user-facing outcome"""
        if self._event_dispatcher is None:
            return
        result = OperationResult(success=success, message=message) if message else None
        self._event_dispatcher.publish(EventPayload(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            data=data,
            result=result
        ))
