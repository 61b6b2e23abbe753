"""
Session registry for streamhub.

The registry is the only authority on which streams are live. It is fed
directly from the media server's publish hooks and never consults the media
server's own session bookkeeping, which is updated on its own schedule and has
been seen to lag behind a publish that is already underway.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from .events import NotificationBridge, StreamEnded, StreamStarted, epoch_ms
from .logger import get_logger, get_stream_logger


class SessionState(Enum):
    """Publish session lifecycle."""
    CONNECTING = "connecting"
    PUBLISHING = "publishing"
    ENDED = "ended"


def stream_key_from_path(stream_path: str) -> str:
    """Last segment of a stream path, e.g. /live/abc -> abc."""
    if not stream_path:
        return 'unknown'
    return stream_path.rstrip('/').split('/')[-1] or 'unknown'


@dataclass
class StreamSession:
    """One live publish attempt."""
    session_id: str
    stream_path: str
    state: SessionState = SessionState.CONNECTING
    started_at: datetime = field(default_factory=datetime.now)
    confirmed_at: Optional[datetime] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def stream_key(self) -> str:
        return stream_key_from_path(self.stream_path)

    @property
    def is_live(self) -> bool:
        return self.state == SessionState.PUBLISHING

    def to_dict(self) -> dict:
        return {
            'id': self.session_id,
            'streamPath': self.stream_path,
            'streamKey': self.stream_key,
            'isLive': self.is_live,
            'connectedAt': epoch_ms(self.started_at),
            'confirmed': self.confirmed_at is not None,
        }


class SessionRegistry:
    """
    Tracks live publish sessions keyed by session id, in insertion order.

    All methods are synchronous and do no I/O; they are meant to be called
    from the event loop thread only.
    """

    def __init__(self, bridge: NotificationBridge):
        self._bridge = bridge
        self._sessions: Dict[str, StreamSession] = {}
        self._logger = get_logger('registry')

    def on_publish_intent(
        self,
        session_id: str,
        stream_path: str,
        metadata: Optional[Dict[str, str]] = None
    ) -> Optional[StreamSession]:
        """
        Register a publish attempt as live.

        The session enters PUBLISHING right away instead of waiting for the
        protocol layer's later confirmation.

        Args:
            session_id: Media server connection id.
            stream_path: Stream path, e.g. /live/abc.
            metadata: Extra hook fields (client address, args).

        Returns:
            The live session, or None if another session already publishes
            on the same path.
        """
        logger = get_stream_logger(stream_path, 'registry')

        existing = self._sessions.get(session_id)
        if existing is not None:
            logger.debug(f"Duplicate publish intent for session {session_id}, ignoring")
            return existing

        owner = self.find_by_path(stream_path)
        if owner is not None:
            logger.warning(
                f"Rejecting session {session_id}: path already published by session {owner.session_id}"
            )
            return None

        session = StreamSession(
            session_id=session_id,
            stream_path=stream_path,
            metadata=dict(metadata or {}),
        )
        session.state = SessionState.PUBLISHING
        self._sessions[session_id] = session

        logger.info(f"🔴 Stream live (session {session_id}, {len(self._sessions)} active)")
        self._bridge.publish(StreamStarted(
            stream_path=stream_path,
            timestamp=session.started_at,
            session_id=session_id,
        ))
        return session

    def on_publish_confirmed(
        self,
        session_id: str,
        stream_path: str,
        metadata: Optional[Dict[str, str]] = None
    ) -> Optional[StreamSession]:
        """Informational confirmation from the protocol layer; never changes liveness."""
        session = self._sessions.get(session_id)
        if session is None:
            get_stream_logger(stream_path, 'registry').debug(
                f"Publish confirmation for unknown session {session_id}"
            )
            return None

        if session.confirmed_at is None:
            session.confirmed_at = datetime.now()
        return session

    def on_publish_end(self, session_id: str) -> Optional[StreamSession]:
        """
        Remove a session. Unknown ids are logged and ignored.

        Returns:
            The removed session (now ENDED), or None.
        """
        session = self._sessions.pop(session_id, None)
        if session is None:
            self._logger.info(f"Publish end for unknown session {session_id}, ignoring")
            return None

        session.state = SessionState.ENDED
        logger = get_stream_logger(session.stream_path, 'registry')
        logger.info(f"⚫ Stream ended (session {session_id}, {len(self._sessions)} active)")

        self._bridge.publish(StreamEnded(
            stream_path=session.stream_path,
            session_id=session_id,
        ))
        return session

    def list(self) -> List[StreamSession]:
        """Snapshot of current sessions in insertion order."""
        return list(self._sessions.values())

    def get(self, session_id: str) -> Optional[StreamSession]:
        return self._sessions.get(session_id)

    def find_by_path(self, stream_path: str) -> Optional[StreamSession]:
        for session in self._sessions.values():
            if session.stream_path == stream_path and session.is_live:
                return session
        return None

    def find_by_key(self, key: str) -> Optional[StreamSession]:
        """Live session whose stream key or full path equals key."""
        for session in self._sessions.values():
            if session.is_live and key in (session.stream_key, session.stream_path):
                return session
        return None

    def count(self) -> int:
        return len(self._sessions)
