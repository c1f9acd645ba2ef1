"""
Notification hook.

Ingestion, liveness and ranking emit events through a narrow
`Notifier.notify(event)` interface. Delivery (email, push, webhooks) lives
in an external dispatcher.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from core.models import utcnow

logger = logging.getLogger(__name__)

NEW_JOB_FOR_CANDIDATE = 'new_job_for_candidate'
JOB_EXPIRED = 'job_expired'
JOB_STALE = 'job_stale'
JOB_CREATED = 'job_created'

EVENT_TYPES = (NEW_JOB_FOR_CANDIDATE, JOB_EXPIRED, JOB_STALE, JOB_CREATED)


@dataclass
class NotificationEvent:
    type: str
    job_id: Optional[str] = None
    candidate_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if self.type not in EVENT_TYPES:
            raise ValueError(f"Unknown notification event type: {self.type}")


class Notifier(ABC):
    """Receives pipeline events"""

    @abstractmethod
    def deliver(self, event: NotificationEvent):
        """Hand the event to the dispatcher. May raise."""

    def notify(self, event: NotificationEvent) -> bool:
        """Deliver an event; failures are logged and never propagate."""
        try:
            self.deliver(event)
            return True
        except Exception as e:
            logger.error(f"[notify] Failed to deliver {event.type} (job={event.job_id}): {e}", exc_info=True)
            return False


class NullNotifier(Notifier):
    def deliver(self, event: NotificationEvent):
        pass


class LoggingNotifier(Notifier):
    """Writes events to the log; useful in development"""

    def deliver(self, event: NotificationEvent):
        target = f" candidate={event.candidate_id}" if event.candidate_id else ""
        logger.info(f"[notify] {event.type} job={event.job_id}{target} {event.payload}")


class CallbackNotifier(Notifier):
    """Wraps any callable taking a NotificationEvent"""

    def __init__(self, callback: Callable[[NotificationEvent], Any]):
        self.callback = callback

    def deliver(self, event: NotificationEvent):
        self.callback(event)


class RecordingNotifier(Notifier):
    """Keeps events in memory"""

    def __init__(self):
        self.events: List[NotificationEvent] = []

    def deliver(self, event: NotificationEvent):
        self.events.append(event)

    def of_type(self, event_type: str) -> List[NotificationEvent]:
        return [e for e in self.events if e.type == event_type]
