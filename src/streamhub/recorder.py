"""
Recording orchestrator for streamhub.
Records every live stream to disk with ffmpeg stream copy, one recorder per session.
"""

import itertools
import os
import shutil
import signal
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from functools import partial
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .errors import NotFoundError, ResourceUnavailableError, ValidationError
from .events import NotificationBridge, RecordingFinished, RecordingStarted, epoch_ms
from .logger import get_logger, get_stream_logger
from .session_registry import StreamSession, stream_key_from_path
from .state_manager import SnapshotStore
from .supervisor import FFMPEG_LOG_ARGS, ProcessHandle, ProcessSupervisor


HISTORY_FILE = "recording_history.json"

# ffmpeg exits 255 from its own SIGTERM handler; -SIGTERM if signalled before
# the handler is installed. Both mean "stopped on request".
GRACEFUL_EXIT_CODES = (0, 255, -signal.SIGTERM)


class RecordingStatus(Enum):
    """Recording status enumeration."""
    RECORDING = "recording"
    COMPLETED = "completed"
    FAILED = "failed"


def _parse_time(value) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


@dataclass
class RecordingTask:
    """One active or historical recording."""
    id: str
    session_id: str
    stream_path: str
    filename: str
    output_file: str
    started_at: datetime
    status: RecordingStatus = RecordingStatus.RECORDING
    ended_at: Optional[datetime] = None
    exit_code: Optional[int] = None
    size_bytes: Optional[int] = None
    duration_seconds: Optional[float] = None
    error: Optional[str] = None

    @property
    def stream_key(self) -> str:
        return stream_key_from_path(self.stream_path)

    @property
    def duration_formatted(self) -> str:
        """Get human-readable duration."""
        total = self.duration_seconds or 0
        hours = int(total // 3600)
        minutes = int((total % 3600) // 60)
        seconds = int(total % 60)
        return f"{hours:02d}:{minutes:02d}:{seconds:02d}"

    @property
    def file_size_formatted(self) -> str:
        """Get human-readable file size."""
        size = float(self.size_bytes or 0)
        for unit in ['B', 'KB', 'MB', 'GB']:
            if size < 1024:
                return f"{size:.2f} {unit}"
            size /= 1024
        return f"{size:.2f} TB"

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'sessionId': self.session_id,
            'streamPath': self.stream_path,
            'streamKey': self.stream_key,
            'filename': self.filename,
            'outputFile': self.output_file,
            'status': self.status.value,
            'startedAt': self.started_at.isoformat(),
            'endedAt': self.ended_at.isoformat() if self.ended_at else None,
            'exitCode': self.exit_code,
            'sizeBytes': self.size_bytes,
            'durationSeconds': self.duration_seconds,
            'size': self.file_size_formatted,
            'duration': self.duration_formatted,
            'error': self.error,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'RecordingTask':
        """Restore from a history record. Raises KeyError/ValueError on bad input."""
        return cls(
            id=data['id'],
            session_id=data.get('sessionId', ''),
            stream_path=data.get('streamPath', ''),
            filename=data['filename'],
            output_file=data.get('outputFile', ''),
            started_at=_parse_time(data['startedAt']),
            status=RecordingStatus(data.get('status', 'completed')),
            ended_at=_parse_time(data.get('endedAt')),
            exit_code=data.get('exitCode'),
            size_bytes=data.get('sizeBytes'),
            duration_seconds=data.get('durationSeconds'),
            error=data.get('error'),
        )


class RecordingOrchestrator:
    """
    Starts and finalizes recordings.

    Recordings are written to <recording_dir>/active and moved to
    <recording_dir>/completed once ffmpeg exits. Finalization happens only in
    the exit callback, so a recording is classified exactly once whether it
    ended by stream end, API stop or crash.
    """

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        bridge: NotificationBridge,
        playback_url: Callable[[str], str],
        recording_dir: str = "./recordings",
        ffmpeg_path: str = "ffmpeg",
        enabled: bool = True,
        stop_grace_period: float = 5.0
    ):
        """
        Initialize recording orchestrator.

        Args:
            supervisor: Process supervisor used for ffmpeg.
            bridge: Notification bridge for recording events.
            playback_url: Maps a stream path to the local ffmpeg input URL.
            recording_dir: Root directory for recordings.
            ffmpeg_path: ffmpeg executable.
            enabled: Record live streams at all.
            stop_grace_period: Seconds between SIGTERM and SIGKILL.
        """
        self.supervisor = supervisor
        self.bridge = bridge
        self.playback_url = playback_url
        self.recording_dir = Path(recording_dir)
        self.active_dir = self.recording_dir / "active"
        self.completed_dir = self.recording_dir / "completed"
        self.ffmpeg_path = ffmpeg_path
        self.enabled = enabled
        self.stop_grace_period = stop_grace_period

        self.available = False
        self._logger = get_logger('recorder')
        self._store = SnapshotStore(str(self.recording_dir / HISTORY_FILE))
        self._active: Dict[str, RecordingTask] = {}  # session id -> task
        self._handles: Dict[str, ProcessHandle] = {}  # recording id -> handle
        self._history: List[RecordingTask] = []
        self._suffix = itertools.count(2)

    def prepare(self) -> bool:
        """
        Create the recording directories and verify they are writable.

        Returns:
            True if recording is available. A failure disables recording
            with a warning; it never raises.
        """
        if not self.enabled:
            self._logger.info("Recording disabled in config")
            self.available = False
            return False

        try:
            self._check_directories()
        except ResourceUnavailableError as e:
            self._logger.warning(f"⚠️ Recording disabled: {e}")
            self.available = False
            return False

        self.available = True
        self._logger.info(f"Recording to {self.recording_dir.resolve()}")
        return True

    def _check_directories(self) -> None:
        for directory in (self.active_dir, self.completed_dir):
            try:
                directory.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise ResourceUnavailableError(f"cannot create {directory}: {e}") from e
            if not os.access(directory, os.W_OK):
                raise ResourceUnavailableError(f"{directory} is not writable")

    async def load_history(self) -> int:
        """Load recording history from disk. Returns the number of entries."""
        records = await self._store.load()
        history = []
        for record in records:
            try:
                history.append(RecordingTask.from_dict(record))
            except (KeyError, TypeError, ValueError) as e:
                self._logger.warning(f"Skipping bad history entry {record.get('id')}: {e}")

        self._history = history
        if self.available:
            self._recover_interrupted()

        self._logger.info(f"Loaded {len(self._history)} recordings from history")
        return len(self._history)

    def _recover_interrupted(self) -> None:
        """Move files left in active/ by a previous crash into history as failed."""
        recovered = 0
        for path in sorted(self.active_dir.glob("*.flv")):
            if any(t.output_file == str(path) for t in self._active.values()):
                continue

            stat = path.stat()
            target = self.completed_dir / path.name
            try:
                shutil.move(str(path), str(target))
            except OSError as e:
                self._logger.warning(f"Could not move interrupted recording {path.name}: {e}")
                target = path

            key = path.stem.rsplit('_', 3)[0]
            modified = datetime.fromtimestamp(stat.st_mtime)
            self._history.append(RecordingTask(
                id=self._new_id(modified),
                session_id='',
                stream_path=f"/live/{key}",
                filename=path.name,
                output_file=str(target),
                started_at=modified,
                status=RecordingStatus.FAILED,
                ended_at=modified,
                size_bytes=stat.st_size,
                duration_seconds=0.0,
                error="Interrupted by streamhub restart",
            ))
            recovered += 1

        if recovered:
            self._logger.warning(f"Recovered {recovered} interrupted recordings")
            self._save()

    def _new_id(self, moment: datetime) -> str:
        recording_id = f"rec_{epoch_ms(moment)}"
        while self._find(recording_id) is not None:
            recording_id = f"rec_{epoch_ms(moment)}_{next(self._suffix)}"
        return recording_id

    def _find(self, recording_id: str) -> Optional[RecordingTask]:
        for task in self._history:
            if task.id == recording_id:
                return task
        for task in self._active.values():
            if task.id == recording_id:
                return task
        return None

    def generate_filename(self, stream_key: str, started_at: datetime, recording_id: str) -> str:
        """<key>_<date>_<time>_<id suffix>.flv"""
        safe_key = "".join(c if c.isalnum() or c in "-_" else "_" for c in stream_key)
        timestamp = started_at.strftime('%Y-%m-%d_%H-%M-%S')
        return f"{safe_key}_{timestamp}_{recording_id[-6:]}.flv"

    def start(self, session: StreamSession) -> Optional[RecordingTask]:
        """
        Start recording a live session.

        Returns:
            The RECORDING task (the existing one if already recording), or
            None when recording is disabled or unavailable.
        """
        if not self.available:
            return None

        existing = self._active.get(session.session_id)
        if existing is not None:
            return existing

        logger = get_stream_logger(session.stream_path, 'recorder')
        started_at = datetime.now()
        recording_id = self._new_id(started_at)
        filename = self.generate_filename(session.stream_key, started_at, recording_id)
        output_file = self.active_dir / filename

        task = RecordingTask(
            id=recording_id,
            session_id=session.session_id,
            stream_path=session.stream_path,
            filename=filename,
            output_file=str(output_file),
            started_at=started_at,
        )
        args = [
            *FFMPEG_LOG_ARGS,
            '-i', self.playback_url(session.stream_path),
            '-c', 'copy',
            '-f', 'flv',
            '-y', str(output_file),
        ]

        self._active[session.session_id] = task
        self._handles[task.id] = self.supervisor.start(
            self.ffmpeg_path,
            args,
            on_exit=partial(self._on_exit, session.session_id, task.id),
            label=f"rec:{session.stream_key}",
        )

        logger.info(f"⏺️ Recording started: {filename}")
        self.bridge.publish(RecordingStarted(
            stream_path=session.stream_path,
            timestamp=started_at,
            recording_id=task.id,
            filename=filename,
        ))
        return task

    def stop(self, session_id: str) -> bool:
        """
        Ask the recorder of a session to stop.

        The task is finalized later by the exit callback.
        """
        task = self._active.get(session_id)
        if task is None:
            return False

        handle = self._handles.get(task.id)
        if handle is None:
            return False

        get_stream_logger(task.stream_path, 'recorder').info("Stopping recording...")
        return self.supervisor.stop(handle, self.stop_grace_period)

    def _on_exit(self, session_id: str, recording_id: str, code: int) -> None:
        """Classify and finalize a recording once its ffmpeg process exited."""
        task = self._active.get(session_id)
        if task is None or task.id != recording_id:
            self._logger.debug(f"Ignoring exit of finished recording {recording_id}")
            return

        del self._active[session_id]
        handle = self._handles.pop(recording_id, None)
        logger = get_stream_logger(task.stream_path, 'recorder')

        task.ended_at = datetime.now()
        task.exit_code = code
        task.duration_seconds = round((task.ended_at - task.started_at).total_seconds(), 3)

        if code in GRACEFUL_EXIT_CODES:
            task.status = RecordingStatus.COMPLETED
        else:
            task.status = RecordingStatus.FAILED
            detail = ''
            if handle is not None:
                detail = handle.error or handle.last_output()
            task.error = detail or f"ffmpeg exited with code {code}"

        self._move_to_completed(task, logger)
        self._history.append(task)
        self._save()

        if task.status == RecordingStatus.COMPLETED:
            logger.info(
                f"✅ Recording completed: {task.filename} "
                f"({task.duration_formatted}, {task.file_size_formatted})"
            )
        else:
            logger.error(f"❌ Recording failed (exit code {code}): {task.error}")

        self.bridge.publish(RecordingFinished(
            stream_path=task.stream_path,
            timestamp=task.ended_at,
            recording_id=task.id,
            status=task.status.value,
            exit_code=code,
        ))

    def _move_to_completed(self, task: RecordingTask, logger) -> None:
        """Move the output file to completed/ and record its size; failures are logged."""
        source = Path(task.output_file)
        if not source.exists():
            task.size_bytes = 0
            return

        target = self.completed_dir / source.name
        try:
            shutil.move(str(source), str(target))
            task.output_file = str(target)
        except OSError as e:
            logger.warning(f"Could not move {source.name} to completed: {e}")

        try:
            task.size_bytes = Path(task.output_file).stat().st_size
        except OSError:
            task.size_bytes = 0

    def _save(self) -> None:
        self._store.save_soon([t.to_dict() for t in self._history])

    def active_recordings(self) -> List[RecordingTask]:
        return list(self._active.values())

    def history(self) -> List[RecordingTask]:
        """Finished recordings, newest first."""
        return list(reversed(self._history))

    def get_by_id(self, recording_id: str) -> Optional[RecordingTask]:
        return self._find(recording_id)

    def is_recording(self, session_id: str) -> bool:
        return session_id in self._active

    def delete(self, recording_id: str) -> RecordingTask:
        """
        Delete a finished recording and its file.

        Raises:
            ValidationError: If the recording is still running.
            NotFoundError: If no such recording exists.
        """
        if any(t.id == recording_id for t in self._active.values()):
            raise ValidationError(f"Recording {recording_id} is still in progress")

        task = next((t for t in self._history if t.id == recording_id), None)
        if task is None:
            raise NotFoundError(f"Recording {recording_id} not found")

        try:
            Path(task.output_file).unlink()
        except FileNotFoundError:
            self._logger.debug(f"File of {recording_id} already gone")
        except OSError as e:
            self._logger.warning(f"Could not delete {task.output_file}: {e}")

        self._history.remove(task)
        self._save()
        self._logger.info(f"🗑️ Deleted recording {task.filename}")
        return task

    async def shutdown(self) -> None:
        """Stop all recorders, wait for their finalization and flush history."""
        handles = [self._handles[t.id] for t in self._active.values() if t.id in self._handles]
        if handles:
            self._logger.info(f"Stopping {len(handles)} active recordings...")
            for handle in handles:
                self.supervisor.stop(handle, self.stop_grace_period)
            for handle in handles:
                await handle.wait()

        await self._store.flush()
