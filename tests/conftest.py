"""Shared fixtures: a scriptable process supervisor and wired-up components."""

import asyncio
from collections import deque
from typing import Callable, List, Optional

import pytest

from streamhub.events import Event, NotificationBridge
from streamhub.forwarder import ForwardingOrchestrator
from streamhub.recorder import RecordingOrchestrator
from streamhub.session_registry import SessionRegistry


def playback_url(stream_path: str) -> str:
    return f"rtmp://127.0.0.1:1935{stream_path}"


class FakeHandle:
    """Stand-in for ProcessHandle that tests drive by hand."""

    def __init__(self, handle_id: str, executable: str, args: List[str], label: str):
        self.id = handle_id
        self.executable = executable
        self.args = list(args)
        self.label = label
        self.error: Optional[str] = None
        self.tail: deque = deque(maxlen=50)
        self.returncode: Optional[int] = None
        self.stop_requested = False
        self.grace_period: Optional[float] = None
        self.on_output: Optional[Callable[[str], None]] = None
        self.on_exit: Optional[Callable[[int], None]] = None
        self._exited = asyncio.Event()

    @property
    def running(self) -> bool:
        return self.returncode is None

    def last_output(self, lines: int = 5) -> str:
        return '\n'.join(list(self.tail)[-lines:])

    async def wait(self) -> Optional[int]:
        await self._exited.wait()
        return self.returncode


class FakeSupervisor:
    """
    Records spawn and stop requests instead of running processes.

    Tests fire output and exits explicitly with emit() and exit(). With
    exit_on_stop set, stop() makes the process exit with that code right away.
    """

    def __init__(self, exit_on_stop: Optional[int] = None):
        self.exit_on_stop = exit_on_stop
        self.started: List[FakeHandle] = []
        self.stopped: List[FakeHandle] = []

    def start(self, executable, args, on_output=None, on_exit=None, label=None) -> FakeHandle:
        handle = FakeHandle(f"proc_{len(self.started) + 1}", executable, args, label or "")
        handle.on_output = on_output
        handle.on_exit = on_exit
        self.started.append(handle)
        return handle

    def stop(self, handle: FakeHandle, grace_period: float = 5.0) -> bool:
        if not handle.running:
            return False
        handle.stop_requested = True
        handle.grace_period = grace_period
        self.stopped.append(handle)
        if self.exit_on_stop is not None:
            self.exit(handle, self.exit_on_stop)
        return True

    def active(self) -> List[FakeHandle]:
        return [h for h in self.started if h.running]

    async def shutdown(self, grace_period: float = 5.0) -> None:
        for handle in self.active():
            self.stop(handle, grace_period)

    def emit(self, handle: FakeHandle, line: str) -> None:
        handle.tail.append(line)
        if handle.on_output:
            handle.on_output(line)

    def exit(self, handle: FakeHandle, code: int, error: Optional[str] = None) -> None:
        assert handle.running, "exit fired twice"
        handle.error = error
        handle.returncode = code
        handle._exited.set()
        if handle.on_exit:
            handle.on_exit(code)


class EventRecorder:
    """Bridge subscriber keeping every event."""

    def __init__(self, bridge: NotificationBridge):
        self.events: List[Event] = []
        bridge.subscribe(self.events.append)

    def types(self) -> List[str]:
        return [e.type for e in self.events]


@pytest.fixture
def bridge():
    return NotificationBridge()


@pytest.fixture
def events(bridge):
    return EventRecorder(bridge)


@pytest.fixture
def supervisor():
    return FakeSupervisor()


@pytest.fixture
def registry(bridge):
    return SessionRegistry(bridge)


@pytest.fixture
def recorder(supervisor, bridge, tmp_path):
    orchestrator = RecordingOrchestrator(
        supervisor=supervisor,
        bridge=bridge,
        playback_url=playback_url,
        recording_dir=str(tmp_path / "recordings"),
        ffmpeg_path="ffmpeg",
        stop_grace_period=2.0,
    )
    orchestrator.prepare()
    return orchestrator


@pytest.fixture
def forwarder(supervisor, bridge, tmp_path):
    return ForwardingOrchestrator(
        supervisor=supervisor,
        bridge=bridge,
        playback_url=playback_url,
        destinations_file=str(tmp_path / "data" / "destinations.json"),
        ffmpeg_path="ffmpeg",
        stop_grace_period=2.0,
    )
