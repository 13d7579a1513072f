import os
import signal
import time
from typing import Callable, List, Optional, Sequence, Tuple

from . import events
from .command_builder import build_invocation, cleanup_playlist
from .errors import AlreadyActive, NotFound, PersistenceFailure, ProcessSpawnFailure
from .loops import LoopPolicy
from .models import Platform, Video
from .registry_state import ActiveStream, StartResult


class ControlMixin:
    def start(self, video_id: int, platform_ids: Sequence[int],
              loop_config_id: Optional[int] = None,
              schedule_id: Optional[int] = None) -> List[StartResult]:
        """
        Start streaming a video to each platform independently.

        Raises NotFound when the video, its file or the loop configuration is
        missing; everything else is reported per platform in the results.

        Rows and files are resolved under the lock so a concurrent delete
        either force-stops what this call started or makes it fail.
        """
        if loop_config_id is not None:
            # ffprobe can take seconds; fill the cache before taking the lock
            self._prime_durations(self._loop_paths(video_id, loop_config_id))

        results = []
        with self.lock:
            video, policy, items = self._resolve_media_unlocked(video_id, loop_config_id)
            platforms = {p.id: p for p in self.store.get_platforms(platform_ids)}
            self._append_log(f"Start requested: video {video_id} -> platforms {list(platform_ids)}")
            for platform_id in platform_ids:
                results.append(
                    self._start_one_unlocked(video, platforms.get(platform_id), platform_id,
                                             items, policy, schedule_id)
                )
        return results

    def _loop_paths(self, video_id: int, loop_config_id: int) -> List[str]:
        """Media paths a loop would play, or [] if something is missing."""
        policy = self.loops.get_policy(loop_config_id)
        if policy is None:
            return []
        if policy.video_ids:
            return [v.path for v in self.store.get_videos(policy.video_ids)]
        video = self.store.get_video(video_id)
        return [video.path] if video is not None else []

    def _resolve_media_unlocked(self, video_id: int, loop_config_id: Optional[int]
                                ) -> Tuple[Video, Optional[LoopPolicy], List[str]]:
        """Caller must hold self.lock."""
        video = self.store.get_video(video_id)
        if video is None:
            raise NotFound(f"Video {video_id} not found")

        policy = None
        if loop_config_id is not None:
            policy = self.loops.get_policy(loop_config_id)
            if policy is None:
                raise NotFound(f"Loop configuration {loop_config_id} not found")

        if policy is not None and policy.video_ids:
            items = [v.path for v in self.loops.validate_media_files(policy.video_ids)]
        else:
            if not os.path.isfile(video.path):
                raise NotFound(f"Video file not found: {video.path}")
            items = [video.path]
        return video, policy, items

    def _start_one_unlocked(self, video: Video, platform: Optional[Platform], platform_id: int,
                            items: List[str], policy: Optional[LoopPolicy],
                            schedule_id: Optional[int]) -> StartResult:
        """
        Spawn, persist and register one stream. Nothing is registered unless
        the stream record (and loop session) were written.
        Caller must hold self.lock.
        """
        if (video.id, platform_id) in self._active:
            err = AlreadyActive("Already streaming")
            return StartResult(platform_id, False, error=err.message, kind=err.kind)
        if platform is None:
            err = NotFound(f"Platform {platform_id} not found")
            return StartResult(platform_id, False, error=err.message, kind=err.kind)

        try:
            invocation = build_invocation(items, policy, platform.publish_url, temp_dir=self.temp_dir)
        except OSError as e:
            err = ProcessSpawnFailure(f"Could not write playlist: {e}")
            return StartResult(platform_id, False, error=err.message, kind=err.kind)

        stream = ActiveStream(video.id, platform_id, schedule_id=schedule_id,
                              playlist_path=invocation.playlist_path)
        try:
            stream.handle = self.spawner.spawn(
                self.ffmpeg_path,
                invocation.args,
                on_close=lambda code, s=stream: self._on_process_exit(s, code),
                label=f"ffmpeg {video.id}-{platform_id}",
            )
        except ProcessSpawnFailure as e:
            self._append_log(f"ERROR starting ffmpeg for {video.id}-{platform_id}: {e}")
            cleanup_playlist(invocation.playlist_path)
            return StartResult(platform_id, False, error=e.message, kind=e.kind)

        try:
            record = self.store.insert_stream(video.id, platform_id, stream.pid, schedule_id)
            stream.stream_id = record.id
            if policy is not None:
                stream.loop_session_id = self.loops.start_session(policy.id, record.id)
                self.store.set_stream_loop_session(record.id, stream.loop_session_id)
        except PersistenceFailure as e:
            self._append_log(f"ERROR persisting stream {video.id}-{platform_id}: {e}; terminating ffmpeg")
            self.spawner.signal(stream.pid, signal.SIGTERM)
            cleanup_playlist(invocation.playlist_path)
            if stream.loop_session_id is not None:
                try:
                    self.loops.end_session(stream.loop_session_id)
                except PersistenceFailure as end_err:
                    self._append_log(f"Could not end loop session {stream.loop_session_id}: {end_err}")
            self._record_status_unlocked(stream, "error", e.message)
            return StartResult(platform_id, False, error=e.message, kind=e.kind)

        if policy is not None:
            stream.cycle_seconds = self._cycle_seconds_unlocked(items)

        self._active[stream.key] = stream
        self._start_health_check_unlocked(stream)
        self._append_log(
            f"Streaming video {video.id} to {platform.name} (platform {platform_id}), pid {stream.pid}"
        )
        self.bus.emit(events.STARTED, {
            "video_id": video.id,
            "platform_id": platform_id,
            "pid": stream.pid,
        })
        return StartResult(platform_id, True, pid=stream.pid, stream_id=stream.stream_id)

    def stop(self, video_id: int, platform_id: int) -> bool:
        """
        Stop one stream. Returns False when nothing is streaming for the pair.
        """
        with self.lock:
            stream = self._active.get((video_id, platform_id))
            if stream is None:
                return False
            self._terminate_unlocked(stream, status="stopped")
            self.bus.emit(events.STOPPED, {"video_id": video_id, "platform_id": platform_id})
            return True

    def force_stop_all(self, predicate: Callable[[ActiveStream], bool]) -> List[dict]:
        """
        Stop every active stream matching ``predicate``; returns snapshots of
        the streams that were stopped.
        """
        stopped = []
        with self.lock:
            for stream in [s for s in self._active.values() if predicate(s)]:
                snapshot = stream.to_dict()
                if self._terminate_unlocked(stream, status="stopped"):
                    self.bus.emit(events.STOPPED, {
                        "video_id": stream.video_id,
                        "platform_id": stream.platform_id,
                    })
                    stopped.append(snapshot)
        return stopped

    def is_active(self, video_id: int, platform_id: int) -> bool:
        with self.lock:
            return (video_id, platform_id) in self._active

    def get_active_streams(self) -> List[dict]:
        with self.lock:
            return [s.to_dict() for s in self._active.values()]

    def shutdown(self, timeout: float = 5.0) -> int:
        """
        Stop every stream, then wait up to ``timeout`` seconds in total for
        the processes to exit.
        """
        with self.lock:
            handles = [s.handle for s in self._active.values() if s.handle is not None]
            stopped = self.force_stop_all(lambda s: True)
        if stopped:
            self._append_log(f"Shutdown stopped {len(stopped)} stream(s)")
        deadline = time.monotonic() + timeout
        for handle in handles:
            if not handle.wait(max(deadline - time.monotonic(), 0)):
                self._append_log(f"ffmpeg pid {handle.pid} still running after shutdown")
        return len(stopped)
