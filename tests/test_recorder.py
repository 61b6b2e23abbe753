"""Tests for the recording orchestrator."""

import json
import os
import signal

import pytest

from streamhub.errors import NotFoundError, ValidationError
from streamhub.recorder import RecordingOrchestrator, RecordingStatus, RecordingTask
from streamhub.session_registry import SessionState, StreamSession

from conftest import FakeSupervisor, playback_url


def live_session(session_id="c1", path="/live/abc") -> StreamSession:
    session = StreamSession(session_id=session_id, stream_path=path)
    session.state = SessionState.PUBLISHING
    return session


def write_output(task: RecordingTask, size: int = 1024) -> None:
    with open(task.output_file, "wb") as f:
        f.write(b"\0" * size)


class TestPrepare:
    """Directory setup and availability."""

    def test_creates_directories(self, recorder):
        assert recorder.available
        assert recorder.active_dir.is_dir()
        assert recorder.completed_dir.is_dir()

    def test_disabled_in_config(self, supervisor, bridge, tmp_path):
        orchestrator = RecordingOrchestrator(
            supervisor, bridge, playback_url, str(tmp_path / "rec"), enabled=False
        )

        assert orchestrator.prepare() is False
        assert orchestrator.start(live_session()) is None
        assert supervisor.started == []

    def test_unwritable_directory_disables_recording(self, supervisor, bridge, tmp_path):
        """A recording dir that cannot be created disables recording without raising."""
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("file")
        orchestrator = RecordingOrchestrator(
            supervisor, bridge, playback_url, str(blocker / "recordings")
        )

        assert orchestrator.prepare() is False
        assert orchestrator.available is False
        assert orchestrator.start(live_session()) is None


class TestStart:
    """Starting recorders."""

    def test_start_spawns_ffmpeg(self, recorder, supervisor, events):
        task = recorder.start(live_session())

        assert task.status == RecordingStatus.RECORDING
        assert len(supervisor.started) == 1
        args = supervisor.started[0].args
        assert args[args.index("-i") + 1] == "rtmp://127.0.0.1:1935/live/abc"
        assert args[args.index("-c") + 1] == "copy"
        assert args[-1] == task.output_file
        assert task.output_file.startswith(str(recorder.active_dir))
        assert task.filename.startswith("abc_") and task.filename.endswith(".flv")
        assert events.types() == ["recording_started"]

    def test_single_recording_per_session(self, recorder, supervisor):
        """A second start for the same session returns the running task."""
        session = live_session()
        first = recorder.start(session)
        second = recorder.start(session)

        assert first is second
        assert len(supervisor.started) == 1
        assert len(recorder.active_recordings()) == 1

    def test_unique_ids_for_simultaneous_streams(self, recorder):
        tasks = [recorder.start(live_session(f"c{i}", f"/live/k{i}")) for i in range(5)]

        assert len({t.id for t in tasks}) == 5
        assert len({t.filename for t in tasks}) == 5


class TestExitClassification:
    """Finalization from the exit callback."""

    @pytest.mark.parametrize("code", [0, 255, -signal.SIGTERM])
    async def test_graceful_codes_complete(self, recorder, supervisor, code):
        task = recorder.start(live_session())
        write_output(task)

        supervisor.exit(supervisor.started[0], code)

        assert task.status == RecordingStatus.COMPLETED
        assert task.exit_code == code
        assert task.error is None

    @pytest.mark.parametrize("code", [1, -1, -signal.SIGKILL])
    async def test_other_codes_fail(self, recorder, supervisor, code):
        task = recorder.start(live_session())
        handle = supervisor.started[0]
        supervisor.emit(handle, "rtmp://127.0.0.1:1935/live/abc: Input/output error")

        supervisor.exit(handle, code)

        assert task.status == RecordingStatus.FAILED
        assert task.exit_code == code
        assert "Input/output error" in task.error

    async def test_spawn_error_message_kept(self, recorder, supervisor):
        task = recorder.start(live_session())

        supervisor.exit(supervisor.started[0], -1, error="No such file: ffmpeg")

        assert task.status == RecordingStatus.FAILED
        assert task.error == "No such file: ffmpeg"

    async def test_stop_then_graceful_exit(self, recorder, supervisor, events):
        """Stream end path: stop, ffmpeg exits 255, one completed history entry."""
        session = live_session()
        task = recorder.start(session)
        write_output(task, size=2048)

        assert recorder.stop(session.session_id) is True
        handle = supervisor.started[0]
        assert handle.stop_requested
        assert handle.grace_period == 2.0
        # Stop never finalizes on its own
        assert task.status == RecordingStatus.RECORDING

        supervisor.exit(handle, 255)

        history = recorder.history()
        assert len(history) == 1
        assert history[0].status == RecordingStatus.COMPLETED
        assert history[0].exit_code == 255
        assert history[0].size_bytes == 2048
        assert history[0].output_file.startswith(str(recorder.completed_dir))
        assert os.path.exists(history[0].output_file)
        assert recorder.active_recordings() == []
        assert events.types() == ["recording_started", "recording_finished"]
        assert events.events[-1].status == "completed"

    async def test_missing_output_file_is_not_fatal(self, recorder, supervisor):
        task = recorder.start(live_session())

        supervisor.exit(supervisor.started[0], 255)

        assert task.status == RecordingStatus.COMPLETED
        assert task.size_bytes == 0

    async def test_at_most_one_recording_per_session(self, recorder, supervisor):
        """Across start/exit/restart there is never more than one RECORDING task."""
        session = live_session()

        for round_no in range(3):
            recorder.start(session)
            recording = [t for t in recorder.active_recordings() if t.status == RecordingStatus.RECORDING]
            assert len(recording) == 1
            supervisor.exit(supervisor.started[round_no], 1)
            assert recorder.active_recordings() == []

        assert len(recorder.history()) == 3

    def test_stop_unknown_session(self, recorder):
        assert recorder.stop("ghost") is False


class TestHistory:
    """Persistence and queries."""

    async def test_history_persisted(self, recorder, supervisor, tmp_path):
        task = recorder.start(live_session())
        supervisor.exit(supervisor.started[0], 0)
        await recorder.shutdown()

        with open(tmp_path / "recordings" / "recording_history.json", encoding="utf-8") as f:
            data = json.load(f)

        assert [r["id"] for r in data] == [task.id]
        assert data[0]["status"] == "completed"

    async def test_load_history_round_trip(self, recorder, supervisor, bridge, tmp_path):
        recorder.start(live_session())
        supervisor.exit(supervisor.started[0], 0)
        await recorder.shutdown()

        reloaded = RecordingOrchestrator(
            FakeSupervisor(), bridge, playback_url, str(tmp_path / "recordings")
        )
        reloaded.prepare()

        assert await reloaded.load_history() == 1
        assert reloaded.history()[0].status == RecordingStatus.COMPLETED

    async def test_bad_entries_skipped(self, supervisor, bridge, tmp_path):
        directory = tmp_path / "recordings"
        directory.mkdir()
        (directory / "recording_history.json").write_text(json.dumps([
            {"id": "rec_1", "filename": "a.flv", "startedAt": "2024-01-01T10:00:00", "status": "completed"},
            {"id": "rec_2"},
            {"id": "rec_3", "filename": "c.flv", "startedAt": "nope"},
        ]))
        orchestrator = RecordingOrchestrator(supervisor, bridge, playback_url, str(directory))

        assert await orchestrator.load_history() == 1

    async def test_interrupted_files_recovered(self, supervisor, bridge, tmp_path):
        directory = tmp_path / "recordings"
        (directory / "active").mkdir(parents=True)
        (directory / "active" / "abc_2024-01-01_10-00-00_000123.flv").write_bytes(b"\0" * 10)
        orchestrator = RecordingOrchestrator(supervisor, bridge, playback_url, str(directory))
        orchestrator.prepare()

        await orchestrator.load_history()

        [task] = orchestrator.history()
        assert task.status == RecordingStatus.FAILED
        assert task.stream_path == "/live/abc"
        assert (directory / "completed" / task.filename).exists()
        await orchestrator.shutdown()

    async def test_history_newest_first(self, recorder, supervisor):
        for i in range(3):
            recorder.start(live_session(f"c{i}", f"/live/k{i}"))
        for handle in supervisor.started:
            supervisor.exit(handle, 0)

        assert [t.stream_key for t in recorder.history()] == ["k2", "k1", "k0"]

    async def test_get_by_id_covers_active_and_history(self, recorder, supervisor):
        active = recorder.start(live_session("c1", "/live/a"))
        done = recorder.start(live_session("c2", "/live/b"))
        supervisor.exit(supervisor.started[1], 0)

        assert recorder.get_by_id(active.id) is active
        assert recorder.get_by_id(done.id) is done
        assert recorder.get_by_id("rec_missing") is None


class TestDelete:
    """Deleting recordings."""

    async def test_delete_removes_file_and_entry(self, recorder, supervisor):
        task = recorder.start(live_session())
        write_output(task)
        supervisor.exit(supervisor.started[0], 0)
        path = task.output_file

        recorder.delete(task.id)

        assert recorder.history() == []
        assert not os.path.exists(path)

    async def test_delete_unknown_leaves_history(self, recorder, supervisor):
        recorder.start(live_session())
        supervisor.exit(supervisor.started[0], 0)

        with pytest.raises(NotFoundError):
            recorder.delete("rec_missing")

        assert len(recorder.history()) == 1

    def test_delete_active_recording_refused(self, recorder):
        task = recorder.start(live_session())

        with pytest.raises(ValidationError):
            recorder.delete(task.id)


class TestShutdown:
    """Shutdown stops recorders and waits for finalization."""

    async def test_shutdown_finalizes_active(self, bridge, tmp_path):
        supervisor = FakeSupervisor(exit_on_stop=255)
        orchestrator = RecordingOrchestrator(
            supervisor, bridge, playback_url, str(tmp_path / "rec")
        )
        orchestrator.prepare()
        orchestrator.start(live_session())

        await orchestrator.shutdown()

        assert orchestrator.active_recordings() == []
        assert orchestrator.history()[0].status == RecordingStatus.COMPLETED
