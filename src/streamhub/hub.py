"""
Stream hub core.

Wires the session registry to the recording and forwarding orchestrators and
reacts to publish lifecycle hooks. Each hook is handled synchronously: the
registry commits first, then the orchestrators start or stop their processes.
"""

from typing import Optional

from .config import Config
from .errors import NotFoundError
from .events import NotificationBridge
from .forwarder import ForwardingOrchestrator
from .logger import get_logger, get_stream_logger
from .media_server import MediaServerClient, PublishHook
from .query import QueryFacade
from .recorder import RecordingOrchestrator
from .session_registry import SessionRegistry, StreamSession
from .supervisor import ProcessSupervisor


class StreamHub:
    """Session registry, orchestrators and query facade for one media server."""

    def __init__(
        self,
        config: Config,
        supervisor: Optional[ProcessSupervisor] = None,
        media_server: Optional[MediaServerClient] = None
    ):
        self.config = config
        self._logger = get_logger('hub')

        self.bridge = NotificationBridge()
        self.supervisor = supervisor or ProcessSupervisor(log_output=config.logging.ffmpeg_output)
        self.registry = SessionRegistry(self.bridge)
        self.recorder = RecordingOrchestrator(
            supervisor=self.supervisor,
            bridge=self.bridge,
            playback_url=config.playback_url,
            recording_dir=config.recording.output_dir,
            ffmpeg_path=config.ffmpeg.path,
            enabled=config.recording.enabled,
            stop_grace_period=config.ffmpeg.stop_grace_period,
        )
        self.forwarder = ForwardingOrchestrator(
            supervisor=self.supervisor,
            bridge=self.bridge,
            playback_url=config.playback_url,
            destinations_file=config.forwarding.destinations_file,
            ffmpeg_path=config.ffmpeg.path,
            stop_grace_period=config.ffmpeg.stop_grace_period,
            default_max_retries=config.forwarding.default_max_retries,
            default_retry_delay_ms=config.forwarding.default_retry_delay_ms,
        )
        self.query = QueryFacade(self.registry, self.recorder, self.forwarder, config)
        self.media_server = media_server or MediaServerClient(config.media_server.control_url)

    async def startup(self) -> None:
        """Prepare recording and load persisted history and destinations."""
        self.recorder.prepare()
        await self.recorder.load_history()
        await self.forwarder.load_destinations()

    def is_key_allowed(self, stream_key: str) -> bool:
        allowed = self.config.media_server.allowed_stream_keys
        return not allowed or stream_key in allowed

    def handle_publish_intent(self, hook: PublishHook) -> Optional[StreamSession]:
        """
        A publisher announced a stream.

        Returns:
            The live session, or None if the publish is rejected.
        """
        logger = get_stream_logger(hook.stream_path, 'hub')
        if not self.is_key_allowed(hook.stream_key):
            logger.warning(f"Rejecting publish with unknown stream key (session {hook.session_id})")
            return None

        session = self.registry.on_publish_intent(hook.session_id, hook.stream_path, hook.metadata)
        if session is None:
            return None

        self.recorder.start(session)
        self.forwarder.start_session(session)
        return session

    def handle_publish_confirmed(self, hook: PublishHook) -> Optional[StreamSession]:
        return self.registry.on_publish_confirmed(hook.session_id, hook.stream_path, hook.metadata)

    def handle_publish_end(self, session_id: str) -> Optional[StreamSession]:
        """A publisher went away; stop its recorder and relays."""
        session = self.registry.on_publish_end(session_id)
        if session is None:
            return None

        self.recorder.stop(session_id)
        self.forwarder.stop_session(session_id)
        return session

    async def stop_stream(self, key: str) -> StreamSession:
        """
        Terminate a live stream by stream key or path.

        The media server is asked to drop the publisher; the session is ended
        locally right away, and the later publish_done hook is a no-op.

        Raises:
            NotFoundError: If no live session matches.
        """
        session = self.query.find_live_session(key)
        if session is None:
            raise NotFoundError(f"No live stream matches {key}")

        get_stream_logger(session.stream_path, 'hub').info("🛑 Stop requested via API")
        await self.media_server.drop_publisher(session.stream_path)
        self.handle_publish_end(session.session_id)
        return session

    async def shutdown(self) -> None:
        """Stop every child process and flush persisted state."""
        self._logger.info("Stopping recordings and forwarding...")
        await self.recorder.shutdown()
        await self.forwarder.shutdown()
        await self.supervisor.shutdown(self.config.ffmpeg.stop_grace_period)
        await self.media_server.disconnect()
