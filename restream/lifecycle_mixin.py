import signal
from typing import Optional

from . import events
from .command_builder import cleanup_playlist
from .errors import PersistenceFailure, ProcessCrashed, ProcessExitedNonZero
from .registry_state import ActiveStream

CRASH_MESSAGE = "Process not found during health check"
INTERRUPTED_MESSAGE = "Hub restarted while streaming"


class LifecycleMixin:
    """
    Terminal transitions of an active stream.

    Natural exit, crash detection, stop and loop completion all go through
    ``_release_unlocked``; whichever gets there first removes the entry and the
    others find nothing to do.
    """

    def _release_unlocked(self, stream: ActiveStream) -> bool:
        """
        Remove ``stream`` from the active map and free what it owns.
        Returns False if the entry was already removed (or replaced).
        Caller must hold self.lock.
        """
        if self._active.get(stream.key) is not stream:
            return False
        del self._active[stream.key]
        stream.health_check.set()
        if stream.loop_session_id is not None:
            try:
                self.loops.end_session(stream.loop_session_id)
            except PersistenceFailure as e:
                self._append_log(f"Could not end loop session {stream.loop_session_id}: {e}")
        if cleanup_playlist(stream.playlist_path):
            self._append_log(f"Removed playlist {stream.playlist_path}")
        return True

    def _record_status_unlocked(self, stream: ActiveStream, status: str,
                                message: Optional[str] = None) -> None:
        if stream.stream_id is None:
            return
        try:
            self.store.update_stream_status(stream.stream_id, status, message)
        except PersistenceFailure as e:
            self._append_log(
                f"Could not record status {status!r} for stream {stream.stream_id}: {e}"
            )

    def _terminate_unlocked(self, stream: ActiveStream, status: str = "stopped") -> bool:
        """
        Graceful stop: SIGTERM without waiting for the exit. The late exit
        notification finds the entry gone and is ignored.
        Caller must hold self.lock.
        """
        if not self._release_unlocked(stream):
            return False
        if stream.pid is not None:
            self.spawner.signal(stream.pid, signal.SIGTERM)
        self._record_status_unlocked(stream, status)
        self._append_log(f"Stream {stream.video_id}-{stream.platform_id} {status}")
        return True

    def _on_process_exit(self, stream: ActiveStream, exit_code: int) -> None:
        """Exit notification from the process waiter thread."""
        with self.lock:
            if not self._release_unlocked(stream):
                self._append_log(
                    f"ffmpeg {stream.video_id}-{stream.platform_id} exited with code "
                    f"{exit_code} after removal; ignored"
                )
                return
            if exit_code == 0:
                self._record_status_unlocked(stream, "completed")
            else:
                err = ProcessExitedNonZero(exit_code)
                self._record_status_unlocked(stream, "error", err.message)
            self._append_log(
                f"ffmpeg {stream.video_id}-{stream.platform_id} exited with code {exit_code}"
            )
            self.bus.emit(events.ENDED, {
                "video_id": stream.video_id,
                "platform_id": stream.platform_id,
                "exit_code": exit_code,
            })

    def _declare_crashed_unlocked(self, stream: ActiveStream) -> None:
        if not self._release_unlocked(stream):
            return
        err = ProcessCrashed(CRASH_MESSAGE)
        self._record_status_unlocked(stream, "crashed", err.message)
        self._append_log(
            f"ffmpeg {stream.video_id}-{stream.platform_id} (pid {stream.pid}) crashed: {err.message}"
        )
        self.bus.emit(events.CRASHED, {
            "video_id": stream.video_id,
            "platform_id": stream.platform_id,
        })

    def _finish_loop_unlocked(self, stream: ActiveStream) -> None:
        """The loop policy is satisfied: end the stream as completed."""
        session_id = stream.loop_session_id
        iterations = self.loops.iteration(session_id)
        if not self._terminate_unlocked(stream, status="completed"):
            return
        self.bus.emit(events.LOOP_COMPLETED, {"session_id": session_id, "iterations": iterations})
        self.bus.emit(events.ENDED, {
            "video_id": stream.video_id,
            "platform_id": stream.platform_id,
            "exit_code": None,
        })

    def close_interrupted(self) -> int:
        """
        Records left "streaming" by a previous run have no process behind
        them; close them as crashed. Call before anything is started.
        """
        with self.lock:
            if self._active:
                return 0
            count = self.store.close_interrupted_streams("crashed", INTERRUPTED_MESSAGE)
        if count:
            self._append_log(f"Closed {count} stream record(s) left over from a previous run")
        return count
