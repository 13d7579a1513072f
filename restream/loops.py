"""
Loop accounting.

A loop policy says how long a stream repeats its content: forever, for a
number of hours, for a number of passes, or both bounds together. A policy may
name an explicit list of videos (a playlist); without one the triggering video
is repeated.

Sessions are the runtime counterpart: one per looped stream, holding the start
time and the number of completed passes. ``should_continue`` fails closed when
it does not know the session or its policy.
"""
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from .errors import InvalidInput, NotFound
from .models import Video
from .store import Store


@dataclass
class LoopPolicy:
    infinite: bool = False
    duration_hours: Optional[float] = None
    repeat_count: Optional[int] = None
    video_ids: List[int] = field(default_factory=list)
    name: Optional[str] = None
    id: Optional[int] = None

    @property
    def kind(self) -> str:
        if self.infinite:
            return "infinite"
        if self.duration_hours is not None and self.repeat_count is not None:
            return "bounded"
        if self.duration_hours is not None:
            return "duration"
        return "count"

    @property
    def is_playlist(self) -> bool:
        return len(self.video_ids) > 1

    @classmethod
    def from_dict(cls, data: dict) -> "LoopPolicy":
        """Validate loop options coming from the API."""
        if not isinstance(data, dict):
            raise InvalidInput("loop must be an object")
        infinite = bool(data.get("infinite", False))

        duration = data.get("duration_hours")
        if duration is not None:
            try:
                duration = float(duration)
            except (TypeError, ValueError):
                raise InvalidInput("duration_hours must be a number")
            if duration <= 0:
                raise InvalidInput("duration_hours must be positive")

        repeat = data.get("repeat_count")
        if repeat is not None:
            if isinstance(repeat, bool):
                raise InvalidInput("repeat_count must be an integer")
            try:
                repeat = int(repeat)
            except (TypeError, ValueError):
                raise InvalidInput("repeat_count must be an integer")
            if repeat < 1:
                raise InvalidInput("repeat_count must be at least 1")

        if infinite and (duration is not None or repeat is not None):
            raise InvalidInput("an infinite loop cannot also be bounded")
        if not infinite and duration is None and repeat is None:
            raise InvalidInput("loop needs infinite, duration_hours or repeat_count")

        video_ids = data.get("video_ids") or []
        if not isinstance(video_ids, list):
            raise InvalidInput("video_ids must be a list")
        try:
            video_ids = [int(v) for v in video_ids]
        except (TypeError, ValueError):
            raise InvalidInput("video_ids must contain integers")

        return cls(infinite=infinite, duration_hours=duration, repeat_count=repeat,
                   video_ids=video_ids, name=data.get("name"))

    def continues(self, iteration: int, elapsed: timedelta) -> bool:
        if self.infinite:
            return True
        if self.repeat_count is not None and iteration >= self.repeat_count:
            return False
        if self.duration_hours is not None and elapsed >= timedelta(hours=self.duration_hours):
            return False
        return True


@dataclass
class _SessionState:
    session_id: int
    policy: LoopPolicy
    started_at: datetime
    iteration: int = 0


class LoopManager:
    def __init__(self, store: Store, clock: Callable[[], datetime] = datetime.now) -> None:
        self.store = store
        self.clock = clock
        self._sessions: Dict[int, _SessionState] = {}
        self._lock = threading.RLock()

    # ---------- policies ----------

    def create_policy(self, policy: LoopPolicy) -> int:
        if policy.video_ids:
            self.validate_media_files(policy.video_ids)
        config = self.store.insert_loop_config(
            name=policy.name,
            type="playlist" if policy.is_playlist else "single",
            video_ids=policy.video_ids,
            duration_hours=policy.duration_hours,
            repeat_count=policy.repeat_count,
            infinite=policy.infinite,
        )
        policy.id = config.id
        return config.id

    def get_policy(self, policy_id: int) -> Optional[LoopPolicy]:
        config = self.store.get_loop_config(policy_id)
        if config is None:
            return None
        return LoopPolicy(
            infinite=bool(config.infinite),
            duration_hours=config.duration_hours,
            repeat_count=config.repeat_count,
            video_ids=list(config.video_ids or []),
            name=config.name,
            id=config.id,
        )

    def validate_media_files(self, video_ids: List[int]) -> List[Video]:
        """
        Every referenced video must exist in the store and on disk.
        Returns the videos in the requested order.
        """
        found = {v.id: v for v in self.store.get_videos(video_ids)}
        videos = []
        for vid in video_ids:
            video = found.get(vid)
            if video is None:
                raise NotFound(f"Video {vid} not found")
            if not os.path.isfile(video.path):
                raise NotFound(f"Video file not found: {video.path}")
            videos.append(video)
        return videos

    # ---------- sessions ----------

    def start_session(self, policy_id: int, stream_id: Optional[int]) -> int:
        policy = self.get_policy(policy_id)
        if policy is None:
            raise NotFound(f"Loop configuration {policy_id} not found")
        started = self.clock()
        row = self.store.insert_loop_session(policy_id, stream_id, started)
        with self._lock:
            self._sessions[row.id] = _SessionState(row.id, policy, started)
        return row.id

    def should_continue(self, session_id: int) -> bool:
        with self._lock:
            state = self._sessions.get(session_id)
            if state is None:
                return False
            return state.policy.continues(state.iteration, self.clock() - state.started_at)

    def record_iteration(self, session_id: int) -> int:
        """Count one completed pass; returns the new count (0 if unknown)."""
        with self._lock:
            state = self._sessions.get(session_id)
            if state is None:
                return 0
            state.iteration += 1
            iteration = state.iteration
        self.store.update_loop_session(session_id, current_iteration=iteration)
        return iteration

    def iteration(self, session_id: int) -> int:
        with self._lock:
            state = self._sessions.get(session_id)
            return state.iteration if state else 0

    def end_session(self, session_id: int) -> None:
        with self._lock:
            state = self._sessions.pop(session_id, None)
        if state is None:
            return
        self.store.update_loop_session(session_id, status="ended", ended_at=self.clock(),
                                       current_iteration=state.iteration)

    def active_sessions(self) -> List[dict]:
        return self.store.active_loop_sessions()
