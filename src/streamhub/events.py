"""
Notification bridge for streamhub.

Every state transition of the session registry and the two orchestrators is
published as one tagged event. Owners publish only after their in-memory state
reflects the transition, so a subscriber reacting to an event always reads
consistent state through the query facade.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, ClassVar, List, Optional

from .logger import get_logger


def epoch_ms(moment: datetime) -> int:
    """Convert a datetime to epoch milliseconds."""
    return int(moment.timestamp() * 1000)


@dataclass(frozen=True)
class Event:
    """Base event: transition type plus minimal identifying payload."""
    type: ClassVar[str] = "event"

    stream_path: str
    timestamp: datetime = field(default_factory=datetime.now)

    def payload(self) -> dict:
        return {}

    def to_dict(self) -> dict:
        return {
            'type': self.type,
            'streamPath': self.stream_path,
            'timestamp': epoch_ms(self.timestamp),
            **self.payload(),
        }


@dataclass(frozen=True)
class StreamStarted(Event):
    type: ClassVar[str] = "stream_started"
    session_id: str = ""

    def payload(self) -> dict:
        return {'sessionId': self.session_id}


@dataclass(frozen=True)
class StreamEnded(Event):
    type: ClassVar[str] = "stream_ended"
    session_id: str = ""

    def payload(self) -> dict:
        return {'sessionId': self.session_id}


@dataclass(frozen=True)
class RecordingStarted(Event):
    type: ClassVar[str] = "recording_started"
    recording_id: str = ""
    filename: str = ""

    def payload(self) -> dict:
        return {'recordingId': self.recording_id, 'filename': self.filename}


@dataclass(frozen=True)
class RecordingFinished(Event):
    type: ClassVar[str] = "recording_finished"
    recording_id: str = ""
    status: str = ""
    exit_code: Optional[int] = None

    def payload(self) -> dict:
        return {
            'recordingId': self.recording_id,
            'status': self.status,
            'exitCode': self.exit_code,
        }


@dataclass(frozen=True)
class ForwardingStarted(Event):
    type: ClassVar[str] = "forwarding_started"
    task_id: str = ""
    destination_id: str = ""

    def payload(self) -> dict:
        return {'taskId': self.task_id, 'destinationId': self.destination_id}


@dataclass(frozen=True)
class ForwardingRetried(Event):
    type: ClassVar[str] = "forwarding_retried"
    task_id: str = ""
    destination_id: str = ""
    retry_count: int = 0

    def payload(self) -> dict:
        return {
            'taskId': self.task_id,
            'destinationId': self.destination_id,
            'retryCount': self.retry_count,
        }


@dataclass(frozen=True)
class ForwardingFinished(Event):
    type: ClassVar[str] = "forwarding_finished"
    task_id: str = ""
    destination_id: str = ""
    status: str = ""
    error: Optional[str] = None

    def payload(self) -> dict:
        return {
            'taskId': self.task_id,
            'destinationId': self.destination_id,
            'status': self.status,
            'error': self.error,
        }


Subscriber = Callable[[Event], None]


class NotificationBridge:
    """
    Synchronous publish/subscribe hub.

    Subscribers are plain callables invoked on the event loop thread. They must
    not block; anything slow (network sends) should be queued by the
    subscriber itself.
    """

    def __init__(self):
        self._subscribers: List[Subscriber] = []
        self._logger = get_logger('events')

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """
        Register a subscriber.

        Returns:
            Callable that removes the subscription.
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, event: Event) -> None:
        """Deliver an event to every subscriber; subscriber errors are logged."""
        self._logger.debug(f"{event.type} {event.stream_path}")
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                self._logger.exception(f"Subscriber failed on {event.type}")

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
