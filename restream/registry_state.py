import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from . import config
from .events import EventBus
from .loops import LoopManager
from .process import ProcessSpawner
from .store import Store

StreamKey = Tuple[int, int]


@dataclass(eq=False)
class ActiveStream:
    """A running ffmpeg for one (video, platform) pair. Memory only."""

    video_id: int
    platform_id: int
    handle: Any = None
    stream_id: Optional[int] = None
    loop_session_id: Optional[int] = None
    schedule_id: Optional[int] = None
    playlist_path: Optional[str] = None
    # seconds for one pass over the looped items, when known
    cycle_seconds: Optional[float] = None
    wraps_seen: int = 0
    probes: int = 0
    started_at: datetime = field(default_factory=datetime.now)
    started_monotonic: float = field(default_factory=time.monotonic)
    # set = health check cancelled
    health_check: threading.Event = field(default_factory=threading.Event)
    health_thread: Optional[threading.Thread] = None

    @property
    def key(self) -> StreamKey:
        return (self.video_id, self.platform_id)

    @property
    def pid(self) -> Optional[int]:
        return self.handle.pid if self.handle is not None else None

    def to_dict(self) -> dict:
        return {
            "key": f"{self.video_id}-{self.platform_id}",
            "video_id": self.video_id,
            "platform_id": self.platform_id,
            "pid": self.pid,
            "stream_id": self.stream_id,
            "loop_session_id": self.loop_session_id,
            "schedule_id": self.schedule_id,
            "started_at": self.started_at.isoformat(),
        }


@dataclass
class StartResult:
    platform_id: int
    success: bool
    pid: Optional[int] = None
    stream_id: Optional[int] = None
    error: Optional[str] = None
    kind: Optional[str] = None

    def to_dict(self) -> dict:
        data = {"platform_id": self.platform_id, "success": self.success}
        if self.success:
            data.update(pid=self.pid, stream_id=self.stream_id)
        else:
            data.update(error=self.error, kind=self.kind)
        return data


class RegistryState:
    def __init__(
        self,
        store: Store,
        loops: Optional[LoopManager] = None,
        bus: Optional[EventBus] = None,
        spawner: Optional[ProcessSpawner] = None,
        health_interval: float = config.HEALTH_CHECK_INTERVAL,
        ffmpeg_path: str = config.FFMPEG_PATH,
        temp_dir: str = config.TEMP_DIR,
    ) -> None:
        # sync primitives (RLock to allow nested acquire in same thread)
        self.lock = threading.RLock()

        # log buffer
        self._logs: List[Tuple[int, str]] = []
        self._log_max = config.LOG_MAX_LINES

        self.store = store
        self.loops = loops if loops is not None else LoopManager(store)
        self.bus = bus if bus is not None else EventBus(on_error=self._append_log)
        self.spawner = spawner if spawner is not None else ProcessSpawner(on_log=self._append_log)
        self.health_interval = health_interval
        self.ffmpeg_path = ffmpeg_path
        self.temp_dir = temp_dir

        # (video_id, platform_id) -> ActiveStream; the only record of what is running
        self._active: Dict[StreamKey, ActiveStream] = {}

        # media durations (seconds) keyed by absolute string path
        self.track_durations: Dict[str, float] = {}
