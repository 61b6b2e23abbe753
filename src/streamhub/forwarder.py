"""
Forwarding orchestrator for streamhub.
Relays every live stream to the enabled destinations (YouTube, Twitch, custom
RTMP servers) with ffmpeg stream copy, retrying failed relays per destination.
"""

import asyncio
import itertools
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from functools import partial
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import urlparse

from .errors import NotFoundError, ValidationError
from .events import (
    ForwardingFinished,
    ForwardingRetried,
    ForwardingStarted,
    NotificationBridge,
    epoch_ms,
)
from .logger import get_logger, get_stream_logger
from .session_registry import StreamSession
from .state_manager import SnapshotStore
from .supervisor import FFMPEG_LOG_ARGS, ProcessHandle, ProcessSupervisor


PLATFORMS = ("youtube", "twitch", "facebook", "custom")
URL_SCHEMES = ("rtmp", "rtmps", "srt")

# ffmpeg output fragments that mean the destination will not accept the stream
DESTINATION_FAILURE_MARKERS = (
    "Connection refused",
    "Server returned 404",
    "Server returned 403",
    "No such file or directory",
    "Connection timed out",
)

PRESETS = {
    'youtube': {
        'name': 'YouTube Live',
        'platform': 'youtube',
        'rtmpUrl': 'rtmp://a.rtmp.youtube.com/live2/YOUR_STREAM_KEY',
        'customArgs': [],
        'maxRetries': 5,
        'retryDelayMs': 10000,
    },
    'twitch': {
        'name': 'Twitch',
        'platform': 'twitch',
        'rtmpUrl': 'rtmp://live.twitch.tv/app/YOUR_STREAM_KEY',
        'customArgs': [],
        'maxRetries': 5,
        'retryDelayMs': 10000,
    },
    'facebook': {
        'name': 'Facebook Live',
        'platform': 'facebook',
        'rtmpUrl': 'rtmps://live-api-s.facebook.com:443/rtmp/YOUR_STREAM_KEY',
        'customArgs': [],
        'maxRetries': 3,
        'retryDelayMs': 15000,
    },
    'custom': {
        'name': 'Custom RTMP',
        'platform': 'custom',
        'rtmpUrl': 'rtmp://your-server.com/live/YOUR_STREAM_KEY',
        'customArgs': [],
        'maxRetries': 3,
        'retryDelayMs': 5000,
    },
}


class ForwardingStatus(Enum):
    """Forwarding task status enumeration."""
    RUNNING = "running"
    ERROR = "error"
    COMPLETED = "completed"
    STOPPED = "stopped"


def _from_ms(value, name: str) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be epoch milliseconds")
    try:
        return datetime.fromtimestamp(float(value) / 1000)
    except (TypeError, ValueError, OverflowError, OSError):
        raise ValidationError(f"{name} must be epoch milliseconds") from None


def _non_negative_int(value, name: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be a number")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be a number") from None
    if number < 0:
        raise ValidationError(f"{name} must be >= 0")
    return number


def _as_flag(value, name: str) -> bool:
    if not isinstance(value, bool):
        raise ValidationError(f"{name} must be true or false")
    return value


@dataclass(frozen=True)
class DestinationConfig:
    """
    Persistent relay target.

    Instances are immutable: updates produce a new object, so tasks already
    running keep the snapshot they were started with.
    """
    id: str
    name: str
    platform: str
    rtmp_url: str
    enabled: bool = True
    max_retries: int = 3
    retry_delay_ms: int = 5000
    custom_args: Tuple[str, ...] = ()
    debug: bool = False
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: Optional[datetime] = None

    @classmethod
    def from_dict(
        cls,
        data: dict,
        default_max_retries: int = 3,
        default_retry_delay_ms: int = 5000
    ) -> 'DestinationConfig':
        """
        Build a validated config from its camelCase form.

        Raises:
            ValidationError: On missing or invalid fields.
        """
        if not isinstance(data, dict):
            raise ValidationError("Destination must be an object")

        rtmp_url = str(data.get('rtmpUrl') or '').strip()
        if not rtmp_url:
            raise ValidationError("rtmpUrl is required")
        scheme = urlparse(rtmp_url).scheme.lower()
        if scheme not in URL_SCHEMES:
            raise ValidationError(f"rtmpUrl must use one of: {', '.join(URL_SCHEMES)}")

        platform = str(data.get('platform') or 'custom').lower()
        if platform not in PLATFORMS:
            raise ValidationError(f"platform must be one of: {', '.join(PLATFORMS)}")

        custom_args = data.get('customArgs') or []
        if not isinstance(custom_args, (list, tuple)) or not all(isinstance(a, str) for a in custom_args):
            raise ValidationError("customArgs must be a list of strings")

        retry_delay = data.get('retryDelayMs', data.get('retryDelay'))

        return cls(
            id=str(data['id']),
            name=str(data.get('name') or 'Unknown'),
            platform=platform,
            rtmp_url=rtmp_url,
            enabled=_as_flag(data.get('enabled', True), 'enabled'),
            max_retries=_non_negative_int(
                data.get('maxRetries', default_max_retries), 'maxRetries'
            ),
            retry_delay_ms=_non_negative_int(
                default_retry_delay_ms if retry_delay is None else retry_delay, 'retryDelayMs'
            ),
            custom_args=tuple(custom_args),
            debug=_as_flag(data.get('debug', False), 'debug'),
            created_at=_from_ms(data.get('createdAt'), 'createdAt') or datetime.now(),
            updated_at=_from_ms(data.get('updatedAt'), 'updatedAt'),
        )

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'name': self.name,
            'platform': self.platform,
            'rtmpUrl': self.rtmp_url,
            'enabled': self.enabled,
            'maxRetries': self.max_retries,
            'retryDelayMs': self.retry_delay_ms,
            'customArgs': list(self.custom_args),
            'debug': self.debug,
            'createdAt': epoch_ms(self.created_at),
            'updatedAt': epoch_ms(self.updated_at) if self.updated_at else None,
        }

    def merged(self, patch: dict) -> 'DestinationConfig':
        """Return a validated copy with patch applied; id and createdAt are kept."""
        if not isinstance(patch, dict):
            raise ValidationError("Patch must be an object")

        data = self.to_dict()
        data.update(patch)
        if 'retryDelay' in patch and 'retryDelayMs' not in patch:
            data['retryDelayMs'] = patch['retryDelay']
        data['id'] = self.id
        data['createdAt'] = epoch_ms(self.created_at)

        updated = DestinationConfig.from_dict(data)
        return replace(updated, created_at=self.created_at, updated_at=datetime.now())


@dataclass
class ForwardingTask:
    """One relay attempt to one destination for one session."""
    id: str
    session_id: str
    stream_path: str
    destination: DestinationConfig
    input_url: str
    started_at: datetime = field(default_factory=datetime.now)
    status: ForwardingStatus = ForwardingStatus.RUNNING
    retry_count: int = 0
    ended_at: Optional[datetime] = None
    last_error: Optional[str] = None

    @property
    def destination_id(self) -> str:
        return self.destination.id

    @property
    def destination_name(self) -> str:
        return self.destination.name

    @property
    def platform(self) -> str:
        return self.destination.platform

    @property
    def output_url(self) -> str:
        return self.destination.rtmp_url

    def to_dict(self) -> dict:
        end = self.ended_at or datetime.now()
        return {
            'id': self.id,
            'sessionId': self.session_id,
            'streamPath': self.stream_path,
            'destinationId': self.destination_id,
            'name': self.destination_name,
            'platform': self.platform,
            'outputUrl': self.output_url,
            'status': self.status.value,
            'retryCount': self.retry_count,
            'maxRetries': self.destination.max_retries,
            'startedAt': epoch_ms(self.started_at),
            'endedAt': epoch_ms(self.ended_at) if self.ended_at else None,
            'duration': int((end - self.started_at).total_seconds() * 1000),
            'error': self.last_error,
        }


class ForwardingOrchestrator:
    """
    Starts, retries and stops relay processes.

    Features:
    - One ffmpeg relay per (session, enabled destination)
    - Fixed-delay retries up to the destination's max_retries
    - Destination-side failures detected from ffmpeg output skip retries
    - Destination edits never touch running relays or their retries
    """

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        bridge: NotificationBridge,
        playback_url: Callable[[str], str],
        destinations_file: str = "./data/destinations.json",
        ffmpeg_path: str = "ffmpeg",
        stop_grace_period: float = 5.0,
        default_max_retries: int = 3,
        default_retry_delay_ms: int = 5000
    ):
        self.supervisor = supervisor
        self.bridge = bridge
        self.playback_url = playback_url
        self.ffmpeg_path = ffmpeg_path
        self.stop_grace_period = stop_grace_period
        self.default_max_retries = default_max_retries
        self.default_retry_delay_ms = default_retry_delay_ms

        self._logger = get_logger('forwarder')
        self._store = SnapshotStore(destinations_file)
        self._destinations: Dict[str, DestinationConfig] = {}
        # session id -> destination id -> current attempt of the chain
        self._tasks: Dict[str, Dict[str, ForwardingTask]] = {}
        self._handles: Dict[str, ProcessHandle] = {}
        self._retry_timers: Dict[Tuple[str, str], asyncio.TimerHandle] = {}
        self._suffix = itertools.count(2)

    # Destinations

    async def load_destinations(self) -> int:
        """Load destination configs from disk. Returns the number loaded."""
        records = await self._store.load()
        destinations = {}
        for record in records:
            try:
                config = DestinationConfig.from_dict(
                    record, self.default_max_retries, self.default_retry_delay_ms
                )
            except (KeyError, ValidationError) as e:
                self._logger.warning(f"Skipping bad destination {record.get('id')}: {e}")
                continue
            destinations[config.id] = config

        self._destinations = destinations
        self._logger.info(f"📡 Loaded {len(destinations)} forwarding destinations")
        return len(destinations)

    def destinations(self) -> List[DestinationConfig]:
        return list(self._destinations.values())

    def enabled_destinations(self) -> List[DestinationConfig]:
        return [d for d in self._destinations.values() if d.enabled]

    def get_destination(self, destination_id: str) -> Optional[DestinationConfig]:
        return self._destinations.get(destination_id)

    def add_destination(self, data: dict) -> DestinationConfig:
        """
        Add a destination.

        Raises:
            ValidationError: On invalid fields or a duplicate id.
        """
        if not isinstance(data, dict):
            raise ValidationError("Destination must be an object")

        data = dict(data)
        data.pop('createdAt', None)
        data.pop('updatedAt', None)
        if data.get('id'):
            data['id'] = str(data['id'])
            if data['id'] in self._destinations:
                raise ValidationError(f"Destination {data['id']} already exists")
        else:
            data['id'] = self._new_destination_id()

        config = DestinationConfig.from_dict(
            data, self.default_max_retries, self.default_retry_delay_ms
        )
        self._destinations[config.id] = config
        self._save()

        self._logger.info(f"✅ Added forwarding destination: {config.name} ({config.platform})")
        return config

    def update_destination(self, destination_id: str, patch: dict) -> DestinationConfig:
        """
        Apply a partial update. Running relays keep their old snapshot.

        Raises:
            NotFoundError: If the destination does not exist.
            ValidationError: If the result is invalid.
        """
        current = self._destinations.get(destination_id)
        if current is None:
            raise NotFoundError(f"Destination {destination_id} not found")

        config = current.merged(patch)
        self._destinations[destination_id] = config
        self._save()

        self._logger.info(f"✅ Updated forwarding destination: {config.name}")
        return config

    def remove_destination(self, destination_id: str) -> DestinationConfig:
        """
        Remove a destination. Running relays and their retries are not affected.

        Raises:
            NotFoundError: If the destination does not exist.
        """
        config = self._destinations.pop(destination_id, None)
        if config is None:
            raise NotFoundError(f"Destination {destination_id} not found")

        self._save()
        self._logger.info(f"🗑️ Removed forwarding destination: {config.name}")
        return config

    def presets(self) -> Dict[str, dict]:
        """Templates for popular platforms."""
        return {key: dict(preset, customArgs=list(preset['customArgs'])) for key, preset in PRESETS.items()}

    def _new_destination_id(self) -> str:
        destination_id = f"dest_{epoch_ms(datetime.now())}"
        while destination_id in self._destinations:
            destination_id = f"dest_{epoch_ms(datetime.now())}_{next(self._suffix)}"
        return destination_id

    def _save(self) -> None:
        self._store.save_soon([d.to_dict() for d in self._destinations.values()])

    # Relays

    def start_session(self, session: StreamSession) -> List[ForwardingTask]:
        """
        Start one relay per enabled destination.

        Returns:
            The RUNNING tasks (the existing ones if already forwarding).
        """
        chain = self._tasks.get(session.session_id)
        if chain is not None:
            return list(chain.values())

        destinations = self.enabled_destinations()
        logger = get_stream_logger(session.stream_path, 'forwarder')
        if not destinations:
            logger.debug("No enabled forwarding destinations")
            return []

        chain = {}
        self._tasks[session.session_id] = chain
        for destination in destinations:
            chain[destination.id] = self._spawn(session.session_id, session.stream_path, destination, 0)

        logger.info(f"📡 Started {len(chain)} forwarding tasks")
        return list(chain.values())

    def _spawn(
        self,
        session_id: str,
        stream_path: str,
        destination: DestinationConfig,
        retry_count: int
    ) -> ForwardingTask:
        """Start one relay attempt and announce it."""
        task_id = f"{session_id}_{destination.id}"
        if retry_count:
            task_id = f"{task_id}_r{retry_count}"

        task = ForwardingTask(
            id=task_id,
            session_id=session_id,
            stream_path=stream_path,
            destination=destination,
            input_url=self.playback_url(stream_path),
            retry_count=retry_count,
        )
        args = [
            *FFMPEG_LOG_ARGS,
            '-i', task.input_url,
            '-c', 'copy',
            '-f', 'flv',
            '-flvflags', 'no_duration_filesize',
            *destination.custom_args,
            '-y', destination.rtmp_url,
        ]

        self._handles[task.id] = self.supervisor.start(
            self.ffmpeg_path,
            args,
            on_output=partial(self._on_output, task),
            on_exit=partial(self._on_exit, task),
            label=f"fwd:{destination.name}",
        )

        logger = get_stream_logger(stream_path, 'forwarder')
        if retry_count:
            logger.info(
                f"🔄 Retrying forward to {destination.name} "
                f"(attempt {retry_count}/{destination.max_retries})"
            )
            self.bridge.publish(ForwardingRetried(
                stream_path=stream_path,
                timestamp=task.started_at,
                task_id=task.id,
                destination_id=destination.id,
                retry_count=retry_count,
            ))
        else:
            logger.info(f"🚀 Forwarding to {destination.name} ({destination.platform})")
            self.bridge.publish(ForwardingStarted(
                stream_path=stream_path,
                timestamp=task.started_at,
                task_id=task.id,
                destination_id=destination.id,
            ))
        return task

    def _is_current(self, task: ForwardingTask) -> bool:
        return self._tasks.get(task.session_id, {}).get(task.destination_id) is task

    def is_destination_failure(self, line: str, input_url: str) -> bool:
        """True if an ffmpeg output line reports the destination rejecting the stream."""
        if not any(marker in line for marker in DESTINATION_FAILURE_MARKERS):
            return False
        input_location = urlparse(input_url).netloc
        if input_url in line or (input_location and input_location in line):
            return False
        return True

    def _on_output(self, task: ForwardingTask, line: str) -> None:
        if task.destination.debug:
            get_stream_logger(task.stream_path, 'forwarder').info(f"[{task.destination_name}] {line}")

        if task.status != ForwardingStatus.RUNNING or not self._is_current(task):
            return

        if self.is_destination_failure(line, task.input_url):
            self._finish(task, ForwardingStatus.ERROR, error=line)
            handle = self._handles.get(task.id)
            if handle is not None:
                self.supervisor.stop(handle, self.stop_grace_period)

    def _on_exit(self, task: ForwardingTask, code: int) -> None:
        """Classify a relay exit: complete, retry or give up."""
        handle = self._handles.pop(task.id, None)
        if not self._is_current(task) or task.status != ForwardingStatus.RUNNING:
            # Stopped, short-circuited or superseded; already announced
            return

        if code == 0:
            self._finish(task, ForwardingStatus.COMPLETED)
            return

        detail = ''
        if handle is not None:
            detail = handle.error or handle.last_output(3)
        error = detail or f"ffmpeg exited with code {code}"
        destination = task.destination
        logger = get_stream_logger(task.stream_path, 'forwarder')

        if task.retry_count >= destination.max_retries:
            logger.error(
                f"❌ Forward to {destination.name} failed after {task.retry_count} retries "
                f"(exit code {code}): {error}"
            )
            self._finish(task, ForwardingStatus.ERROR, error=error)
            return

        # Attempt ended; the chain stays RUNNING until the retry replaces it
        task.ended_at = datetime.now()
        task.last_error = error
        logger.warning(
            f"Forward to {destination.name} exited with code {code}, "
            f"retrying in {destination.retry_delay_ms / 1000:.1f}s"
        )
        key = (task.session_id, task.destination_id)
        self._retry_timers[key] = asyncio.get_running_loop().call_later(
            destination.retry_delay_ms / 1000, self._retry, task
        )

    def _retry(self, task: ForwardingTask) -> None:
        self._retry_timers.pop((task.session_id, task.destination_id), None)
        if not self._is_current(task):
            return

        self._tasks[task.session_id][task.destination_id] = self._spawn(
            task.session_id,
            task.stream_path,
            task.destination,
            task.retry_count + 1,
        )

    def _finish(
        self,
        task: ForwardingTask,
        status: ForwardingStatus,
        error: Optional[str] = None
    ) -> None:
        """Move a task to a terminal status and announce it."""
        task.status = status
        task.ended_at = datetime.now()
        if error is not None:
            task.last_error = error

        logger = get_stream_logger(task.stream_path, 'forwarder')
        if status == ForwardingStatus.ERROR:
            logger.error(f"❌ Forward to {task.destination_name} failed: {task.last_error}")
        else:
            logger.info(f"Forward to {task.destination_name} {status.value}")

        self.bridge.publish(ForwardingFinished(
            stream_path=task.stream_path,
            timestamp=task.ended_at,
            task_id=task.id,
            destination_id=task.destination_id,
            status=status.value,
            error=task.last_error if status == ForwardingStatus.ERROR else None,
        ))

    def stop_session(self, session_id: str) -> int:
        """
        Stop every relay of a session and cancel its pending retries.

        Returns:
            Number of tasks moved to STOPPED.
        """
        chain = self._tasks.pop(session_id, None)
        if chain is None:
            return 0

        stopped = 0
        for destination_id, task in chain.items():
            timer = self._retry_timers.pop((session_id, destination_id), None)
            if timer is not None:
                timer.cancel()

            if task.status != ForwardingStatus.RUNNING:
                continue

            handle = self._handles.get(task.id)
            if handle is not None:
                self.supervisor.stop(handle, self.stop_grace_period)
            self._finish(task, ForwardingStatus.STOPPED)
            stopped += 1

        if stopped:
            self._logger.info(f"🛑 Stopped {stopped} forwarding tasks for session {session_id}")
        return stopped

    def list_active(self) -> List[ForwardingTask]:
        """Current attempt of every relay chain of live sessions."""
        return [task for chain in self._tasks.values() for task in chain.values()]

    def tasks_for_session(self, session_id: str) -> List[ForwardingTask]:
        return list(self._tasks.get(session_id, {}).values())

    async def shutdown(self) -> None:
        """Stop every relay, wait for the processes and flush destinations."""
        handles = list(self._handles.values())
        for session_id in list(self._tasks):
            self.stop_session(session_id)

        for handle in handles:
            await handle.wait()

        await self._store.flush()
