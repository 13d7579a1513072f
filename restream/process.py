import os
import signal as _signal
import subprocess
import threading
from typing import Callable, List, Optional

from .errors import ProcessSpawnFailure


class ProcessHandle:
    """A running ffmpeg child: pid, stderr stream and the threads watching it."""

    def __init__(self, proc: subprocess.Popen, log_thread: Optional[threading.Thread],
                 wait_thread: threading.Thread) -> None:
        self.proc = proc
        self.log_thread = log_thread
        self.wait_thread = wait_thread

    @property
    def pid(self) -> int:
        return self.proc.pid

    @property
    def stderr(self):
        return self.proc.stderr

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the exit callback has run; False on timeout."""
        self.wait_thread.join(timeout)
        return not self.wait_thread.is_alive()


class ProcessSpawner:
    """
    Launches ffmpeg processes and reports their exit.

    ``spawn`` never blocks on the child: stderr is drained by a reader thread
    and ``on_close(exit_code)`` is called from a waiter thread once the
    process has exited and been reaped.
    """

    def __init__(self, on_log: Optional[Callable[[str], None]] = None) -> None:
        self._on_log = on_log

    def _log(self, msg: str) -> None:
        if self._on_log is not None:
            self._on_log(msg)

    def _stderr_reader(self, proc: subprocess.Popen, label: str) -> None:
        """
        Read ffmpeg stderr as bytes and push lines into the log buffer.
        """
        try:
            err = proc.stderr
            if err is None:
                return
            for raw in iter(lambda: err.readline(), b""):
                if not raw:
                    break
                try:
                    line = raw.decode("utf-8", errors="replace").rstrip()
                except Exception:
                    line = repr(raw)
                if line:
                    self._log(f"[{label}] {line}")
        except Exception as e:
            self._log(f"{label} log reader error: {e!r}")

    def _waiter(self, proc: subprocess.Popen, on_close: Callable[[int], None]) -> None:
        code = proc.wait()
        on_close(code)

    def spawn(self, command: str, args: List[str], on_close: Callable[[int], None],
              label: str = "ffmpeg") -> ProcessHandle:
        cmd = [command, *args]
        self._log("Launching: " + " ".join(map(str, cmd)))
        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                bufsize=0,
            )
        except FileNotFoundError as e:
            raise ProcessSpawnFailure(f"ffmpeg executable not found: {command}") from e
        except OSError as e:
            raise ProcessSpawnFailure(f"Error starting ffmpeg: {e!r}") from e

        log_thread = None
        if proc.stderr is not None:
            log_thread = threading.Thread(
                target=self._stderr_reader, args=(proc, label), daemon=True
            )
            log_thread.start()
        wait_thread = threading.Thread(
            target=self._waiter, args=(proc, on_close), daemon=True
        )
        wait_thread.start()
        return ProcessHandle(proc, log_thread, wait_thread)

    def signal(self, pid: int, sig: int = _signal.SIGTERM) -> bool:
        """Send ``sig`` to ``pid``; False if the process is already gone."""
        try:
            os.kill(pid, sig)
            return True
        except ProcessLookupError:
            return False
        except PermissionError as e:
            self._log(f"Not allowed to signal pid {pid}: {e!r}")
            return False

    def probe(self, pid: int) -> bool:
        """Liveness check with signal 0."""
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # exists but owned by someone else
            return True
        return True
