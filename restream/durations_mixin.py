import subprocess
from pathlib import Path
from typing import Optional, Sequence

from .config import FFPROBE_PATH


class DurationsMixin:
    def _probe_duration(self, path: Path) -> Optional[float]:
        """
        Use ffprobe to get media duration in seconds.
        Returns None if ffprobe not available or fails.
        """
        cmd = [
            FFPROBE_PATH,
            "-v",
            "error",
            "-show_entries",
            "format=duration",
            "-of",
            "default=nw=1:nk=1",
            str(path),
        ]
        try:
            out = subprocess.check_output(cmd, stderr=subprocess.STDOUT, text=True)
            val = out.strip()
            if not val:
                return None
            dur = float(val)
            if dur < 0:
                return None
            return dur
        except (OSError, subprocess.CalledProcessError, ValueError) as e:
            self._append_log(f"ffprobe failed for {path}: {e}")
            return None

    def _prime_durations(self, paths: Sequence[str]) -> None:
        """
        Probe every path missing from track_durations. Runs without the
        lock; ffprobe is a blocking subprocess.
        """
        for p in paths:
            spath = str(p)
            with self.lock:
                if spath in self.track_durations:
                    continue
            dur = self._probe_duration(Path(spath))
            if dur is not None:
                with self.lock:
                    self.track_durations[spath] = dur

    def _cycle_seconds_unlocked(self, paths: Sequence[str]) -> Optional[float]:
        """
        Length of one pass over ``paths`` from the cache, or None if any
        duration is unknown. Caller must hold self.lock.
        """
        total = 0.0
        for p in paths:
            dur = self.track_durations.get(str(p))
            if dur is None:
                return None
            total += dur
        return total if total > 0 else None
