"""
Weekly stream schedules.

A schedule names a video, a set of platforms, weekdays (0 = Sunday) and a
local "HH:MM". Once a minute ``evaluate_tick`` starts every active schedule
due at that minute. A platform accepts one inbound publish at a time, so any
stream already running on a target platform is stopped first (whatever video
it carries) and the stop is written to the schedule's log.
"""
import re
import threading
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional, Tuple

from . import config, events
from .errors import InvalidInput, NotFound, PersistenceFailure, RestreamError
from .logging_mixin import LoggingMixin
from .models import ScheduledStream, ScheduleLog
from .registry import StreamRegistry

TIME_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


def js_weekday(dt: datetime) -> int:
    """Day of week with Sunday = 0, as stored in schedule_days."""
    return (dt.weekday() + 1) % 7


def compute_next_run(days: Iterable[int], schedule_time: str, now: datetime) -> Optional[datetime]:
    """
    Nearest moment strictly after ``now`` that falls on one of ``days`` at
    ``schedule_time``; today is included. None when ``days`` is empty.
    """
    days = set(days)
    hours, minutes = (int(x) for x in schedule_time.split(":"))
    for offset in range(8):
        candidate = (now + timedelta(days=offset)).replace(
            hour=hours, minute=minutes, second=0, microsecond=0
        )
        if js_weekday(candidate) in days and candidate > now:
            return candidate
    return None


def _validate_time(value) -> str:
    if not isinstance(value, str) or not TIME_RE.match(value):
        raise InvalidInput("schedule_time must be HH:MM (24h)")
    return value


def _validate_days(value) -> List[int]:
    if not isinstance(value, (list, tuple, set)) or not value:
        raise InvalidInput("schedule_days must be a non-empty list")
    days = set()
    for d in value:
        if isinstance(d, bool) or not isinstance(d, int) or not 0 <= d <= 6:
            raise InvalidInput("schedule_days must contain integers 0-6 (0 = Sunday)")
        days.add(d)
    return sorted(days)


def _validate_platform_ids(value) -> List[int]:
    if not isinstance(value, (list, tuple, set)) or not value:
        raise InvalidInput("platform_ids must be a non-empty list")
    ids = []
    for p in value:
        if isinstance(p, bool) or not isinstance(p, int):
            raise InvalidInput("platform_ids must contain integers")
        if p not in ids:
            ids.append(p)
    return ids


class ScheduleEngine(LoggingMixin):
    log_prefix = "[scheduler] "

    def __init__(
        self,
        registry: StreamRegistry,
        clock: Callable[[], datetime] = datetime.now,
        debounce_minutes: int = config.SCHEDULE_DEBOUNCE_MINUTES,
    ) -> None:
        self.registry = registry
        self.store = registry.store
        self.bus = registry.bus
        self.clock = clock
        self.debounce = timedelta(minutes=debounce_minutes)

        # schedule runs are serialised with every other stream change
        self.lock = registry.lock

        self._logs: List[Tuple[int, str]] = []
        self._log_max = config.LOG_MAX_LINES

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ---------- CRUD ----------

    def _check_references(self, video_id=None, platform_ids=None, loop_config_id=None) -> None:
        if video_id is not None and self.store.get_video(video_id) is None:
            raise NotFound(f"Video {video_id} not found")
        if platform_ids:
            found = {p.id for p in self.store.get_platforms(platform_ids)}
            missing = [p for p in platform_ids if p not in found]
            if missing:
                raise NotFound(f"Platforms not found: {missing}")
        if loop_config_id is not None and self.registry.loops.get_policy(loop_config_id) is None:
            raise NotFound(f"Loop configuration {loop_config_id} not found")

    def create_schedule(self, data: dict) -> ScheduledStream:
        video_id = data.get("video_id")
        if isinstance(video_id, bool) or not isinstance(video_id, int):
            raise InvalidInput("video_id must be an integer")
        platform_ids = _validate_platform_ids(data.get("platform_ids"))
        days = _validate_days(data.get("schedule_days"))
        schedule_time = _validate_time(data.get("schedule_time"))
        loop_config_id = data.get("loop_config_id")
        self._check_references(video_id, platform_ids, loop_config_id)

        schedule = self.store.insert_schedule(
            video_id=video_id,
            platform_ids=platform_ids,
            schedule_days=days,
            schedule_time=schedule_time,
            loop_config_id=loop_config_id,
            is_active=bool(data.get("is_active", True)),
        )
        next_run = compute_next_run(days, schedule_time, self.clock())
        schedule = self.store.update_schedule(schedule.id, next_run=next_run)
        self._append_log(
            f"Schedule {schedule.id} created: video {video_id} on days {days} at {schedule_time}"
        )
        return schedule

    def update_schedule(self, schedule_id: int, data: dict) -> ScheduledStream:
        current = self.get_schedule(schedule_id)
        changes = {}
        if "platform_ids" in data:
            changes["platform_ids"] = _validate_platform_ids(data["platform_ids"])
        if "schedule_days" in data:
            changes["schedule_days"] = _validate_days(data["schedule_days"])
        if "schedule_time" in data:
            changes["schedule_time"] = _validate_time(data["schedule_time"])
        if "is_active" in data:
            changes["is_active"] = bool(data["is_active"])
        if "loop_config_id" in data:
            changes["loop_config_id"] = data["loop_config_id"]
        self._check_references(platform_ids=changes.get("platform_ids"),
                               loop_config_id=changes.get("loop_config_id"))

        with self.lock:
            changes["next_run"] = compute_next_run(
                changes.get("schedule_days", current.schedule_days),
                changes.get("schedule_time", current.schedule_time),
                self.clock(),
            )
            schedule = self.store.update_schedule(schedule_id, **changes)
        self._append_log(f"Schedule {schedule_id} updated")
        return schedule

    def delete_schedule(self, schedule_id: int) -> None:
        with self.lock:
            self.store.delete_schedule(schedule_id)
        self._append_log(f"Schedule {schedule_id} deleted")

    def get_schedule(self, schedule_id: int) -> ScheduledStream:
        schedule = self.store.get_schedule(schedule_id)
        if schedule is None:
            raise NotFound(f"Schedule {schedule_id} not found")
        return schedule

    def get_all_schedules(self) -> List[ScheduledStream]:
        return self.store.list_schedules()

    def get_schedule_logs(self, schedule_id: int, limit: int = 50) -> List[ScheduleLog]:
        self.get_schedule(schedule_id)
        return self.store.get_schedule_logs(schedule_id, limit)

    def refresh_next_runs(self) -> None:
        """Recompute next_run for every active schedule (on startup)."""
        now = self.clock()
        with self.lock:
            for s in self.store.list_schedules(active_only=True):
                self.store.update_schedule(
                    s.id, next_run=compute_next_run(s.schedule_days, s.schedule_time, now)
                )

    # ---------- execution ----------

    def should_run_now(self, schedule: ScheduledStream, now: Optional[datetime] = None) -> bool:
        if schedule.last_run is None:
            return True
        now = now or self.clock()
        return now - schedule.last_run > self.debounce

    def _log_action(self, schedule_id: int, action: str, details: str) -> None:
        try:
            self.store.add_schedule_log(schedule_id, action, details)
        except PersistenceFailure as e:
            self._append_log(f"Could not write {action!r} log for schedule {schedule_id}: {e}")

    def evaluate_tick(self, now: Optional[datetime] = None) -> List[int]:
        """
        Run every active schedule due at the current minute.
        Returns the ids of schedules that started a stream.
        """
        now = now or self.clock()
        day = js_weekday(now)
        hhmm = now.strftime("%H:%M")
        try:
            schedules = self.store.list_schedules(active_only=True)
        except PersistenceFailure as e:
            self._append_log(f"Could not load schedules: {e}")
            return []

        fired = []
        for schedule in schedules:
            if day not in (schedule.schedule_days or []) or schedule.schedule_time != hhmm:
                continue
            if not self.should_run_now(schedule, now):
                continue
            try:
                if self.execute_schedule(schedule, now):
                    fired.append(schedule.id)
            except Exception as e:
                # one broken schedule must not stop the rest of the tick
                self._append_log(f"Schedule {schedule.id} failed: {e!r}")
        return fired

    def execute_schedule(self, schedule: ScheduledStream, now: Optional[datetime] = None) -> bool:
        now = now or self.clock()
        with self.lock:
            # re-read under the lock so a concurrent tick cannot fire it twice
            current = self.store.get_schedule(schedule.id)
            if current is None or not current.is_active or not self.should_run_now(current, now):
                return False

            targets = set(current.platform_ids or [])
            for conflict in self.registry.force_stop_all(lambda s: s.platform_id in targets):
                self._log_action(
                    current.id,
                    "conflict_resolved",
                    f"Stream stopped - Video ID: {conflict['video_id']}, "
                    f"Platform ID: {conflict['platform_id']}",
                )
                self._append_log(
                    f"Schedule {current.id}: stopped video {conflict['video_id']} "
                    f"on platform {conflict['platform_id']}"
                )
                self.bus.emit(events.CONFLICT_RESOLVED, {
                    "schedule_id": current.id,
                    "stopped_video_id": conflict["video_id"],
                    "platform_id": conflict["platform_id"],
                })

            try:
                results = self.registry.start(
                    current.video_id,
                    list(current.platform_ids),
                    loop_config_id=current.loop_config_id,
                    schedule_id=current.id,
                )
                failed = [r for r in results if not r.success]
                if len(failed) == len(results):
                    raise RestreamError(
                        "No platform started: "
                        + "; ".join(f"platform {r.platform_id}: {r.error}" for r in failed)
                    )
            except RestreamError as e:
                self._log_action(current.id, "error", e.message)
                self._append_log(f"Schedule {current.id} error: {e.message}")
                self.bus.emit(events.SCHEDULED_ERROR, {"schedule_id": current.id, "error": e.message})
                return False

            self.store.update_schedule(
                current.id,
                last_run=now,
                next_run=compute_next_run(current.schedule_days, current.schedule_time, now),
            )
            video = self.store.get_video(current.video_id)
            video_name = video.original_name if video is not None else str(current.video_id)
            details = f"Stream started for video: {video_name}"
            if failed:
                details += " (failed: " + ", ".join(
                    f"platform {r.platform_id}: {r.error}" for r in failed
                ) + ")"
            self._log_action(current.id, "started", details)
            self._append_log(f"Schedule {current.id}: {details}")
            self.bus.emit(events.SCHEDULED_STARTED, {
                "schedule_id": current.id,
                "video_name": video_name,
                "platforms": list(current.platform_ids),
            })
            return True

    # ---------- background timer ----------

    def watcher_loop(self) -> None:
        """Wake at every minute boundary and evaluate due schedules."""
        self._append_log("Schedule watcher started")
        while not self._stop_event.is_set():
            now = self.clock()
            wait = 60 - now.second - now.microsecond / 1_000_000
            if self._stop_event.wait(wait):
                break
            self.evaluate_tick()
        self._append_log("Schedule watcher stopped")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self.refresh_next_runs()
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.watcher_loop, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
