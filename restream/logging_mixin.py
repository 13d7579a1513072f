import itertools
import time
from typing import List, Tuple

# shared across components so merged buffers keep their real order
_sequence = itertools.count()


class LoggingMixin:
    """
    In-memory console buffer shown at /logs.

    Hosts must provide ``self.lock``, ``self._logs`` and ``self._log_max``.
    Entries are ``(seq, line)`` pairs; ``seq`` orders lines written by
    different components within the same second.
    """

    log_prefix: str = ""

    def _append_log(self, msg: str) -> None:
        ts = time.strftime("%Y-%m-%d %H:%M:%S")
        entry = (next(_sequence), f"[{ts}] {self.log_prefix}{msg}")
        with self.lock:
            self._logs.append(entry)
            if len(self._logs) > self._log_max:
                del self._logs[: len(self._logs) - self._log_max]

    def log_entries(self) -> List[Tuple[int, str]]:
        with self.lock:
            return list(self._logs)

    def get_logs(self, limit: int = 200) -> List[str]:
        with self.lock:
            lines = [line for _, line in self._logs]
        if limit <= 0 or limit >= len(lines):
            return lines
        return lines[-limit:]
