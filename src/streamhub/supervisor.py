"""
Process supervisor for streamhub.
Spawns ffmpeg (or any executable), pumps its output and enforces
graceful-then-forced termination.
"""

import asyncio
import itertools
import signal
from collections import deque
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set

from .logger import get_logger


# Exit code reported when the executable could not be started at all
SPAWN_ERROR_CODE = -1

# Output lines kept per process for error reporting
OUTPUT_TAIL_LINES = 50

# Leading ffmpeg args: no banner, no \r progress lines, warnings and errors only
FFMPEG_LOG_ARGS = ['-hide_banner', '-nostats', '-loglevel', 'warning']

OutputCallback = Callable[[str], None]
ExitCallback = Callable[[int], None]


class ProcessHandle:
    """A supervised child process, valid before, during and after its run."""

    def __init__(self, handle_id: str, executable: str, args: List[str], label: str):
        self.id = handle_id
        self.executable = executable
        self.args = list(args)
        self.label = label
        self.process: Optional[asyncio.subprocess.Process] = None
        self.started_at = datetime.now()
        self.ended_at: Optional[datetime] = None
        self.returncode: Optional[int] = None
        self.error: Optional[str] = None
        self.tail: deque = deque(maxlen=OUTPUT_TAIL_LINES)
        self.stop_requested = False
        self.grace_period = 0.0
        self._kill_timer: Optional[asyncio.TimerHandle] = None
        self._exited = asyncio.Event()

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    @property
    def running(self) -> bool:
        return not self._exited.is_set()

    @property
    def kill_pending(self) -> bool:
        """True while a forced-kill timer is scheduled."""
        return self._kill_timer is not None

    @property
    def command(self) -> str:
        return ' '.join([self.executable, *self.args])

    def last_output(self, lines: int = 5) -> str:
        """Last few output lines joined, for error messages."""
        return '\n'.join(list(self.tail)[-lines:])

    async def wait(self) -> Optional[int]:
        """Wait until the exit callback has run and return the exit code."""
        await self._exited.wait()
        return self.returncode


class ProcessSupervisor:
    """
    Starts and stops child processes on the running event loop.

    Features:
    - Non-blocking start, spawn happens in a background task
    - Merged stdout/stderr delivered line by line
    - Exit callback fired exactly once per process, spawn failures included
    - SIGTERM, then SIGKILL after a grace period; the kill timer is cancelled
      as soon as the process exits and never acts on an unregistered handle
    """

    def __init__(self, log_output: bool = False):
        """
        Initialize process supervisor.

        Args:
            log_output: Log every output line at DEBUG.
        """
        self.log_output = log_output
        self._logger = get_logger('supervisor')
        self._active: Dict[str, ProcessHandle] = {}
        self._runners: Set[asyncio.Task] = set()
        self._ids = itertools.count(1)

    def start(
        self,
        executable: str,
        args: List[str],
        on_output: Optional[OutputCallback] = None,
        on_exit: Optional[ExitCallback] = None,
        label: Optional[str] = None
    ) -> ProcessHandle:
        """
        Start an executable.

        Args:
            executable: Path or name of the executable.
            args: Argument list (without the executable).
            on_output: Called with each output line.
            on_exit: Called once with the raw exit code.
            label: Short name used in logs.

        Returns:
            ProcessHandle registered as active.
        """
        handle_id = f"proc_{next(self._ids)}"
        handle = ProcessHandle(handle_id, executable, args, label or handle_id)
        self._active[handle.id] = handle

        runner = asyncio.get_running_loop().create_task(
            self._run(handle, on_output, on_exit)
        )
        self._runners.add(runner)
        runner.add_done_callback(self._runners.discard)

        self._logger.debug(f"[{handle.label}] Starting: {handle.command}")
        return handle

    def stop(self, handle: ProcessHandle, grace_period: float = 5.0) -> bool:
        """
        Ask a process to terminate.

        Args:
            handle: Handle returned by start().
            grace_period: Seconds to wait after SIGTERM before SIGKILL.

        Returns:
            True if a stop was requested, False if the process already exited.
        """
        if self._active.get(handle.id) is not handle:
            return False

        if handle.stop_requested:
            return True

        handle.stop_requested = True
        handle.grace_period = grace_period

        # Spawn still in flight: _run terminates right after spawning
        if handle.process is not None:
            self._terminate(handle)
        return True

    def active(self) -> List[ProcessHandle]:
        """Handles of processes that have not exited yet."""
        return list(self._active.values())

    def get(self, handle_id: str) -> Optional[ProcessHandle]:
        return self._active.get(handle_id)

    async def shutdown(self, grace_period: float = 5.0) -> None:
        """Stop every active process and wait for all of them to exit."""
        handles = self.active()
        if not handles:
            return

        self._logger.info(f"Stopping {len(handles)} child processes...")
        for handle in handles:
            self.stop(handle, grace_period)

        try:
            await asyncio.wait_for(
                asyncio.gather(*(h.wait() for h in handles)),
                timeout=grace_period + 5
            )
        except asyncio.TimeoutError:
            self._logger.warning("Timeout waiting for child processes to exit")

    async def _run(
        self,
        handle: ProcessHandle,
        on_output: Optional[OutputCallback],
        on_exit: Optional[ExitCallback]
    ) -> None:
        """Spawn, pump output, wait, then finish exactly once."""
        code = SPAWN_ERROR_CODE
        try:
            try:
                process = await asyncio.create_subprocess_exec(
                    handle.executable,
                    *handle.args,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.STDOUT  # Merge stderr into stdout to avoid pipe deadlock
                )
            except (OSError, ValueError) as e:
                handle.error = str(e)
                self._logger.error(f"[{handle.label}] Failed to start {handle.executable}: {e}")
                return

            handle.process = process
            self._logger.debug(f"[{handle.label}] Running as pid {process.pid}")

            if handle.stop_requested:
                self._terminate(handle)

            await self._pump_output(handle, on_output)
            code = await process.wait()
        finally:
            if handle.process is not None and handle.process.returncode is None:
                # Runner cancelled while the child is alive
                try:
                    handle.process.kill()
                except ProcessLookupError:
                    pass
                code = -signal.SIGKILL
            self._finish(handle, code, on_exit)

    async def _pump_output(self, handle: ProcessHandle, on_output: Optional[OutputCallback]) -> None:
        """Read merged output until EOF."""
        stream = handle.process.stdout
        while True:
            try:
                line = await stream.readline()
            except ValueError:
                # Line longer than the stream limit; the buffer was discarded
                continue
            if not line:
                break

            text = line.decode('utf-8', errors='ignore').strip()
            if not text:
                continue

            handle.tail.append(text)
            if self.log_output:
                self._logger.debug(f"[{handle.label}] {text}")

            if on_output:
                try:
                    on_output(text)
                except Exception:
                    self._logger.exception(f"[{handle.label}] Output callback failed")

    def _terminate(self, handle: ProcessHandle) -> None:
        """Send SIGTERM and arm the forced-kill timer."""
        try:
            handle.process.terminate()
        except ProcessLookupError:
            return

        self._logger.debug(
            f"[{handle.label}] SIGTERM sent, SIGKILL in {handle.grace_period:.1f}s if still running"
        )
        loop = asyncio.get_running_loop()
        handle._kill_timer = loop.call_later(handle.grace_period, self._force_kill, handle.id)

    def _force_kill(self, handle_id: str) -> None:
        """Kill timer callback; resolves the handle by id and gives up if it is gone."""
        handle = self._active.get(handle_id)
        if handle is None:
            return

        handle._kill_timer = None
        if handle.process is None or handle.process.returncode is not None:
            return

        self._logger.warning(f"[{handle.label}] Did not exit after SIGTERM, force killing...")
        try:
            handle.process.kill()
        except ProcessLookupError:
            pass

    def _finish(self, handle: ProcessHandle, code: int, on_exit: Optional[ExitCallback]) -> None:
        """Record exit, invalidate the kill timer, unregister, then notify."""
        if handle._kill_timer is not None:
            handle._kill_timer.cancel()
            handle._kill_timer = None

        handle.returncode = code
        handle.ended_at = datetime.now()
        self._active.pop(handle.id, None)
        handle._exited.set()

        self._logger.debug(f"[{handle.label}] Exited with code {code}")

        if on_exit:
            try:
                on_exit(code)
            except Exception:
                self._logger.exception(f"[{handle.label}] Exit callback failed")
