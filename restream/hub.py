"""
StreamHub wires the store, loop accounting, stream registry, schedule engine,
shared-link downloads and event bus together and exposes the operations the
HTTP layer calls.

Deleting a video or a platform force-stops the streams that depend on it
before the rows go away, so no active stream outlives its record.
"""
import heapq
import os
from datetime import datetime
from typing import Callable, List, Optional

from . import config
from .downloads import DownloadManager
from .errors import InvalidInput, NotFound
from .events import EventBus
from .loops import LoopManager, LoopPolicy
from .models import Platform, Video
from .process import ProcessSpawner
from .registry import StreamRegistry
from .scheduler import ScheduleEngine
from .store import Store


class StreamHub:
    def __init__(
        self,
        store: Store,
        spawner: Optional[ProcessSpawner] = None,
        clock: Callable[[], datetime] = datetime.now,
        health_interval: float = config.HEALTH_CHECK_INTERVAL,
        temp_dir: str = config.TEMP_DIR,
        ffmpeg_path: str = config.FFMPEG_PATH,
        upload_dir: str = config.UPLOAD_DIR,
        http_session=None,
    ) -> None:
        self.store = store
        self.loops = LoopManager(store, clock=clock)
        self.registry = StreamRegistry(
            store,
            loops=self.loops,
            spawner=spawner,
            health_interval=health_interval,
            ffmpeg_path=ffmpeg_path,
            temp_dir=temp_dir,
        )
        self.bus: EventBus = self.registry.bus
        self.scheduler = ScheduleEngine(self.registry, clock=clock)
        self.downloads = DownloadManager(store, self.bus, upload_dir=upload_dir,
                                         temp_dir=temp_dir, session=http_session)

    def start(self) -> None:
        self.registry.close_interrupted()
        self.scheduler.start()

    def shutdown(self) -> None:
        self.scheduler.stop()
        self.downloads.shutdown()
        self.registry.shutdown()

    def get_logs(self, limit: int = 200) -> List[str]:
        entries = heapq.merge(self.registry.log_entries(), self.scheduler.log_entries(),
                              self.downloads.log_entries())
        lines = [line for _, line in entries]
        if limit <= 0 or limit >= len(lines):
            return lines
        return lines[-limit:]

    # ---------- videos ----------

    def add_video(self, filename: str, original_name: str, path: str,
                  size: Optional[int] = None, source: str = "local") -> Video:
        if not os.path.isfile(path):
            raise NotFound(f"Video file not found: {path}")
        return self.store.add_video(filename, original_name, path, size, source)

    def list_videos(self) -> List[Video]:
        return self.store.list_videos()

    def delete_video(self, video_id: int, remove_file: bool = True) -> None:
        video = self.store.get_video(video_id)
        if video is None:
            raise NotFound(f"Video {video_id} not found")
        with self.registry.lock:
            self.registry.force_stop_all(lambda s: s.video_id == video_id)
            self.store.delete_video(video_id)
        if remove_file and os.path.isfile(video.path):
            os.unlink(video.path)

    # ---------- downloads ----------

    def download_from_url(self, url: str) -> dict:
        return self.downloads.start(url).to_dict()

    def cancel_download(self, download_id: str) -> bool:
        return self.downloads.cancel(download_id)

    def get_download_status(self, download_id: str) -> dict:
        return self.downloads.status(download_id)

    # ---------- platforms ----------

    def add_platform(self, name: str, type: str, rtmp_url: str, stream_key: str) -> Platform:
        if not name or not rtmp_url or not stream_key:
            raise InvalidInput("name, rtmp_url and stream_key are required")
        if type not in config.PLATFORM_TYPES:
            raise InvalidInput(f"type must be one of {sorted(config.PLATFORM_TYPES)}")
        return self.store.add_platform(name, type, rtmp_url, stream_key)

    def list_platforms(self) -> List[Platform]:
        return self.store.list_platforms()

    def update_platform(self, platform_id: int, name: Optional[str] = None,
                        rtmp_url: Optional[str] = None, stream_key: Optional[str] = None) -> Platform:
        # running streams keep the URL they were started with
        return self.store.update_platform(platform_id, name=name, rtmp_url=rtmp_url,
                                          stream_key=stream_key)

    def delete_platform(self, platform_id: int) -> None:
        if self.store.get_platform(platform_id) is None:
            raise NotFound(f"Platform {platform_id} not found")
        with self.registry.lock:
            self.registry.force_stop_all(lambda s: s.platform_id == platform_id)
            self.store.delete_platform(platform_id)

    # ---------- streams ----------

    def start_stream(self, video_id: int, platform_ids: List[int],
                     loop: Optional[dict] = None) -> List[dict]:
        """
        ``loop`` is either ``{"config_id": n}`` for a saved configuration or
        the options of a new one (infinite / duration_hours / repeat_count /
        video_ids).
        """
        if not isinstance(platform_ids, list) or not platform_ids:
            raise InvalidInput("platform_ids must be a non-empty list")
        loop_config_id = None
        if loop:
            if "config_id" in loop:
                loop_config_id = loop["config_id"]
            else:
                loop_config_id = self.loops.create_policy(LoopPolicy.from_dict(loop))
        results = self.registry.start(video_id, platform_ids, loop_config_id=loop_config_id)
        return [r.to_dict() for r in results]

    def stop_stream(self, video_id: int, platform_id: int) -> bool:
        return self.registry.stop(video_id, platform_id)

    def get_active_streams(self) -> List[dict]:
        return self.registry.get_active_streams()

    def stream_history(self, limit: int = 50) -> List[dict]:
        return self.store.stream_history(limit)

    # ---------- loops ----------

    def create_loop(self, data: dict) -> dict:
        policy = LoopPolicy.from_dict(data)
        self.loops.create_policy(policy)
        return self.store.get_loop_config(policy.id).to_dict()

    def get_active_loops(self) -> List[dict]:
        return self.loops.active_sessions()

    # ---------- schedules ----------

    def create_schedule(self, data: dict) -> dict:
        return self.scheduler.create_schedule(data).to_dict()

    def update_schedule(self, schedule_id: int, data: dict) -> dict:
        return self.scheduler.update_schedule(schedule_id, data).to_dict()

    def delete_schedule(self, schedule_id: int) -> None:
        self.scheduler.delete_schedule(schedule_id)

    def get_all_schedules(self) -> List[dict]:
        return [s.to_dict() for s in self.scheduler.get_all_schedules()]

    def get_schedule_logs(self, schedule_id: int, limit: int = 50) -> List[dict]:
        return [entry.to_dict() for entry in self.scheduler.get_schedule_logs(schedule_id, limit)]
