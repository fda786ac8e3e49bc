"""
Transaction Events

Events emitted over a transaction's lifetime and an in-process bus that
delivers them to observers. A failing observer is logged and skipped.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Type

from loguru import logger


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TransactionEvent:
    transaction_id: str
    user_id: str
    timestamp: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class TransactionCreated(TransactionEvent):
    transaction_type: str = ''
    amount: float = 0.0
    fees_total: float = 0.0


@dataclass(frozen=True)
class TransactionProcessingStarted(TransactionEvent):
    pass


@dataclass(frozen=True)
class TransactionCompleted(TransactionEvent):
    correlation_id: Optional[str] = None


@dataclass(frozen=True)
class TransactionFailed(TransactionEvent):
    error: str = ''
    failed_at_step: str = ''


@dataclass(frozen=True)
class TransactionCancelled(TransactionEvent):
    reason: str = ''


@dataclass(frozen=True)
class FlowStateChanged(TransactionEvent):
    previous_state: str = ''
    new_state: str = ''


EventHandler = Callable[[TransactionEvent], None]


class EventBus:
    """Synchronous publish/subscribe for transaction events"""

    def __init__(self):
        self._handlers: Dict[Type[TransactionEvent], List[EventHandler]] = {}
        self._global_handlers: List[EventHandler] = []

    def subscribe(self, event_type: Type[TransactionEvent], handler: EventHandler):
        self._handlers.setdefault(event_type, []).append(handler)

    def subscribe_all(self, handler: EventHandler):
        self._global_handlers.append(handler)

    def publish(self, event: TransactionEvent):
        handlers = self._handlers.get(type(event), []) + self._global_handlers
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                logger.error(f"Event handler {getattr(handler, '__name__', handler)} failed "
                             f"on {type(event).__name__}: {e}")
