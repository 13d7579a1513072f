import threading
import time

from . import events
from .errors import PersistenceFailure
from .registry_state import ActiveStream


class HealthMixin:
    def _start_health_check_unlocked(self, stream: ActiveStream) -> None:
        """
        Probe the stream's ffmpeg every health_interval seconds until the
        health check is cancelled. Caller must hold self.lock.
        """
        stream.health_thread = threading.Thread(
            target=self._health_loop, args=(stream,), daemon=True
        )
        stream.health_thread.start()

    def _health_loop(self, stream: ActiveStream) -> None:
        while not stream.health_check.wait(self.health_interval):
            if not self._health_tick(stream):
                break

    def _health_tick(self, stream: ActiveStream) -> bool:
        """
        One liveness probe. Returns False once the stream is no longer
        supervised (cancelled, crashed or loop finished).

        A killed or orphaned ffmpeg may never deliver an exit notification,
        so a failed probe ends the stream as crashed on its own.
        """
        with self.lock:
            if stream.health_check.is_set() or self._active.get(stream.key) is not stream:
                return False
            stream.probes += 1
            if not self.spawner.probe(stream.pid):
                self._declare_crashed_unlocked(stream)
                return False
            if stream.loop_session_id is not None:
                return self._account_loop_unlocked(stream)
            return True

    def _account_loop_unlocked(self, stream: ActiveStream) -> bool:
        """
        Count finished passes over the looped items and end the stream when
        its policy says stop. Caller must hold self.lock.
        """
        session_id = stream.loop_session_id
        if stream.cycle_seconds:
            elapsed = time.monotonic() - stream.started_monotonic
            wraps = int(elapsed // stream.cycle_seconds)
            while stream.wraps_seen < wraps:
                stream.wraps_seen += 1
                try:
                    iteration = self.loops.record_iteration(session_id)
                except PersistenceFailure as e:
                    self._append_log(f"Could not record loop iteration for session {session_id}: {e}")
                    continue
                self._append_log(f"Loop session {session_id} finished pass {iteration}")
                self.bus.emit(events.LOOP_ITERATION, {"session_id": session_id, "iteration": iteration})

        if not self.loops.should_continue(session_id):
            self._append_log(f"Loop session {session_id} complete; stopping stream")
            self._finish_loop_unlocked(stream)
            return False
        return True
