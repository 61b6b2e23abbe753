"""Tests for the process supervisor, run against short-lived Python children."""

import asyncio
import signal
import sys

import pytest

from streamhub.supervisor import SPAWN_ERROR_CODE, ProcessSupervisor


SLEEPER = "import time; print('ready', flush=True); time.sleep(30)"
STUBBORN = (
    "import signal, time; "
    "signal.signal(signal.SIGTERM, signal.SIG_IGN); "
    "print('ready', flush=True); "
    "time.sleep(30)"
)


async def start_ready(supervisor: ProcessSupervisor, script: str, on_exit=None):
    """Start a child and wait until it printed 'ready'."""
    ready = asyncio.Event()

    def on_output(line):
        if line == "ready":
            ready.set()

    handle = supervisor.start(sys.executable, ["-c", script], on_output=on_output, on_exit=on_exit)
    await asyncio.wait_for(ready.wait(), timeout=10)
    return handle


@pytest.fixture
def real_supervisor():
    return ProcessSupervisor()


class TestStart:
    """Spawning and exit reporting."""

    async def test_raw_exit_code_reported_once(self, real_supervisor):
        codes = []
        handle = real_supervisor.start(
            sys.executable, ["-c", "import sys; sys.exit(3)"], on_exit=codes.append
        )

        assert handle in real_supervisor.active()
        assert await asyncio.wait_for(handle.wait(), timeout=10) == 3
        assert codes == [3]
        assert not handle.running
        assert real_supervisor.active() == []

    async def test_output_lines_delivered(self, real_supervisor):
        lines = []
        handle = real_supervisor.start(
            sys.executable,
            ["-c", "import sys; print('one'); print('two', file=sys.stderr)"],
            on_output=lines.append,
        )
        await asyncio.wait_for(handle.wait(), timeout=10)

        assert sorted(lines) == ["one", "two"]
        assert sorted(handle.tail) == ["one", "two"]

    async def test_spawn_failure_reports_exit(self, real_supervisor):
        """A missing executable still fires on_exit exactly once."""
        codes = []
        handle = real_supervisor.start("/nonexistent/streamhub-ffmpeg", [], on_exit=codes.append)

        assert await asyncio.wait_for(handle.wait(), timeout=10) == SPAWN_ERROR_CODE
        assert codes == [SPAWN_ERROR_CODE]
        assert handle.error
        assert handle.pid is None

    async def test_failing_output_callback_does_not_break_supervision(self, real_supervisor):
        def explode(line):
            raise RuntimeError("boom")

        handle = real_supervisor.start(sys.executable, ["-c", "print('x')"], on_output=explode)

        assert await asyncio.wait_for(handle.wait(), timeout=10) == 0


class TestStop:
    """Graceful and forced termination."""

    async def test_sigterm_stops_process(self, real_supervisor):
        handle = await start_ready(real_supervisor, SLEEPER)

        assert real_supervisor.stop(handle, grace_period=5.0) is True
        assert handle.kill_pending

        assert await asyncio.wait_for(handle.wait(), timeout=10) == -signal.SIGTERM
        assert not handle.kill_pending

    async def test_force_kill_after_grace_period(self, real_supervisor):
        handle = await start_ready(real_supervisor, STUBBORN)

        real_supervisor.stop(handle, grace_period=0.3)

        assert await asyncio.wait_for(handle.wait(), timeout=10) == -signal.SIGKILL

    async def test_stop_before_spawn_completes(self, real_supervisor):
        """A stop issued right after start terminates the process once spawned."""
        handle = real_supervisor.start(sys.executable, ["-c", "import time; time.sleep(30)"])

        assert real_supervisor.stop(handle, grace_period=5.0) is True
        assert await asyncio.wait_for(handle.wait(), timeout=10) == -signal.SIGTERM

    async def test_stop_after_exit_is_noop(self, real_supervisor):
        handle = real_supervisor.start(sys.executable, ["-c", "pass"])
        await asyncio.wait_for(handle.wait(), timeout=10)

        assert real_supervisor.stop(handle) is False
        assert not handle.kill_pending

    async def test_kill_timer_after_exit_does_nothing(self, real_supervisor):
        """A late kill timer resolves the handle by id and finds nothing."""
        exits = []
        handle = await start_ready(real_supervisor, SLEEPER, on_exit=exits.append)
        real_supervisor.stop(handle, grace_period=0.2)
        await asyncio.wait_for(handle.wait(), timeout=10)

        real_supervisor._force_kill(handle.id)
        await asyncio.sleep(0.4)

        assert exits == [-signal.SIGTERM]
        assert real_supervisor.get(handle.id) is None

    async def test_repeated_stop_keeps_single_timer(self, real_supervisor):
        handle = await start_ready(real_supervisor, SLEEPER)

        assert real_supervisor.stop(handle, grace_period=5.0)
        timer = handle._kill_timer
        assert real_supervisor.stop(handle, grace_period=5.0)
        assert handle._kill_timer is timer

        await asyncio.wait_for(handle.wait(), timeout=10)


class TestShutdown:
    """Stopping everything."""

    async def test_shutdown_waits_for_all(self, real_supervisor):
        first = await start_ready(real_supervisor, SLEEPER)
        second = await start_ready(real_supervisor, STUBBORN)

        await real_supervisor.shutdown(grace_period=0.3)

        assert first.returncode == -signal.SIGTERM
        assert second.returncode == -signal.SIGKILL
        assert real_supervisor.active() == []
