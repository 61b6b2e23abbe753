"""
Read-only query facade for streamhub.

Every answer is composed from the session registry and the two orchestrators.
Empty collections are valid answers; only lookups of a single missing entity
raise NotFoundError.
"""

from datetime import datetime
from typing import List, Optional

from .config import Config
from .errors import NotFoundError
from .forwarder import DestinationConfig, ForwardingOrchestrator, ForwardingTask
from .recorder import RecordingOrchestrator, RecordingTask
from .session_registry import SessionRegistry, StreamSession


class QueryFacade:
    """Answers what is live, what is recording and what is forwarding."""

    def __init__(
        self,
        registry: SessionRegistry,
        recorder: RecordingOrchestrator,
        forwarder: ForwardingOrchestrator,
        config: Optional[Config] = None
    ):
        self.registry = registry
        self.recorder = recorder
        self.forwarder = forwarder
        self.config = config or Config()
        self.started_at = datetime.now()

    def streams(self) -> List[StreamSession]:
        return self.registry.list()

    def find_live_session(self, key: str) -> Optional[StreamSession]:
        return self.registry.find_by_key(key)

    def stats(self) -> dict:
        sessions = self.registry.list()
        return {
            'totalSessions': len(sessions),
            'liveSessions': sum(1 for s in sessions if s.is_live),
            'activeRecordings': len(self.recorder.active_recordings()),
            'activeForwarding': len(self.forwarder.list_active()),
            'uptime': round((datetime.now() - self.started_at).total_seconds()),
        }

    def recordings(self) -> List[RecordingTask]:
        return self.recorder.history()

    def recording(self, recording_id: str) -> RecordingTask:
        task = self.recorder.get_by_id(recording_id)
        if task is None:
            raise NotFoundError(f"Recording {recording_id} not found")
        return task

    def active_recordings(self) -> List[RecordingTask]:
        return self.recorder.active_recordings()

    def active_forwarding(self) -> List[ForwardingTask]:
        return self.forwarder.list_active()

    def destinations(self) -> List[DestinationConfig]:
        return self.forwarder.destinations()

    def destination(self, destination_id: str) -> DestinationConfig:
        config = self.forwarder.get_destination(destination_id)
        if config is None:
            raise NotFoundError(f"Destination {destination_id} not found")
        return config

    def server_config(self) -> dict:
        """Public connection details for the dashboard."""
        media = self.config.media_server
        return {
            'rtmpUrl': f"{media.public_rtmp_url.rstrip('/')}/live",
            'playbackUrl': media.public_playback_url,
            'recordingEnabled': self.recorder.available,
            'forwardingDestinations': len(self.forwarder.enabled_destinations()),
            'requiresStreamKey': bool(media.allowed_stream_keys),
        }
