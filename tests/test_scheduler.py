"""Tests for weekly schedules, next-run computation and conflict resolution."""

import os
from datetime import datetime, timedelta

import pytest

from restream import events as ev
from restream.errors import InvalidInput, NotFound
from restream.scheduler import compute_next_run, js_weekday

MONDAY_10 = datetime(2024, 1, 1, 10, 0)


def _schedule(hub, video, platforms, days=(1,), time="10:00", **extra):
    data = {
        "video_id": video.id,
        "platform_ids": [p.id for p in platforms],
        "schedule_days": list(days),
        "schedule_time": time,
    }
    data.update(extra)
    return hub.create_schedule(data)


def _actions(hub, schedule_id):
    return [entry["action"] for entry in hub.get_schedule_logs(schedule_id)]


class TestComputeNextRun:
    """Tests for compute_next_run and the weekday convention."""

    def test_weekday_is_sunday_based(self):
        """Test Sunday is 0 and Monday is 1."""
        assert js_weekday(datetime(2024, 1, 7)) == 0
        assert js_weekday(MONDAY_10) == 1
        assert js_weekday(datetime(2024, 1, 6)) == 6

    def test_later_today(self):
        """Test today counts when the time has not passed yet."""
        assert compute_next_run([1], "10:30", MONDAY_10) == datetime(2024, 1, 1, 10, 30)

    def test_current_minute_is_not_next(self):
        """Test a time equal to now rolls over to next week."""
        assert compute_next_run([1], "10:00", MONDAY_10) == datetime(2024, 1, 8, 10, 0)

    def test_earliest_matching_day(self):
        """Test the nearest listed day wins."""
        assert compute_next_run([0, 3], "09:00", MONDAY_10) == datetime(2024, 1, 3, 9, 0)
        assert compute_next_run([0], "09:00", MONDAY_10) == datetime(2024, 1, 7, 9, 0)

    def test_no_days(self):
        """Test an empty day set never runs."""
        assert compute_next_run([], "10:00", MONDAY_10) is None


class TestScheduleCrud:
    """Tests for creating, updating and deleting schedules."""

    def test_create_sets_next_run(self, hub, make_video, make_platform):
        """Test a new schedule stores its normalised fields and next run."""
        video = make_video()
        a = make_platform()
        b = make_platform("Twitch", "twitch", "rtmp://live.twitch.tv/app", "k")

        data = hub.create_schedule({
            "video_id": video.id,
            "platform_ids": [b.id, a.id, b.id],
            "schedule_days": [3, 1, 1],
            "schedule_time": "10:30",
        })

        assert data["platform_ids"] == [b.id, a.id]
        assert data["schedule_days"] == [1, 3]
        assert data["is_active"] is True
        assert data["last_run"] is None
        assert data["next_run"] == "2024-01-01T10:30:00"
        assert [s["id"] for s in hub.get_all_schedules()] == [data["id"]]

    @pytest.mark.parametrize("field, value", [
        ("schedule_time", "24:00"),
        ("schedule_time", "9:00"),
        ("schedule_time", "10:60"),
        ("schedule_days", []),
        ("schedule_days", [7]),
        ("schedule_days", ["mon"]),
        ("platform_ids", []),
        ("video_id", "1"),
    ])
    def test_create_rejects_invalid(self, hub, make_video, make_platform, field, value):
        """Test malformed schedules raise InvalidInput."""
        video = make_video()
        platform = make_platform()
        data = {
            "video_id": video.id,
            "platform_ids": [platform.id],
            "schedule_days": [1],
            "schedule_time": "10:00",
        }
        data[field] = value

        with pytest.raises(InvalidInput):
            hub.create_schedule(data)

    def test_create_rejects_unknown_references(self, hub, make_video, make_platform):
        """Test schedules must reference existing rows."""
        video = make_video()
        platform = make_platform()

        with pytest.raises(NotFound):
            _schedule(hub, video, [platform], loop_config_id=99)
        with pytest.raises(NotFound):
            hub.create_schedule({"video_id": 99, "platform_ids": [platform.id],
                                 "schedule_days": [1], "schedule_time": "10:00"})

    def test_update_recomputes_next_run(self, hub, clock, make_video, make_platform):
        """Test changing the time moves next_run."""
        video = make_video()
        platform = make_platform()
        schedule = _schedule(hub, video, [platform], time="11:00")
        assert schedule["next_run"] == "2024-01-01T11:00:00"

        updated = hub.update_schedule(schedule["id"], {"schedule_time": "09:00", "is_active": False})

        assert updated["schedule_time"] == "09:00"
        assert updated["is_active"] is False
        assert updated["next_run"] == "2024-01-08T09:00:00"

    def test_update_unknown(self, hub):
        """Test updating a missing schedule raises NotFound."""
        with pytest.raises(NotFound):
            hub.update_schedule(5, {"schedule_time": "10:00"})

    def test_delete_removes_logs(self, hub, store, make_video, make_platform):
        """Test deleting a schedule also deletes its history."""
        video = make_video()
        platform = make_platform()
        schedule = _schedule(hub, video, [platform])
        hub.scheduler.evaluate_tick(MONDAY_10)
        assert _actions(hub, schedule["id"]) == ["started"]

        hub.delete_schedule(schedule["id"])

        assert hub.get_all_schedules() == []
        assert store.get_schedule_logs(schedule["id"]) == []
        with pytest.raises(NotFound):
            hub.get_schedule_logs(schedule["id"])
        with pytest.raises(NotFound):
            hub.delete_schedule(schedule["id"])


class TestShouldRunNow:
    """Tests for the re-run debounce window."""

    @pytest.mark.parametrize("minutes, expected", [(49, False), (50, False), (51, True)])
    def test_debounce(self, hub, store, make_video, make_platform, minutes, expected):
        """Test a schedule only re-runs strictly after the debounce window."""
        video = make_video()
        platform = make_platform()
        schedule_id = _schedule(hub, video, [platform])["id"]
        schedule = store.update_schedule(schedule_id, last_run=MONDAY_10 - timedelta(minutes=minutes))

        assert hub.scheduler.should_run_now(schedule, MONDAY_10) is expected

    def test_never_run(self, hub, store, make_video, make_platform):
        """Test a schedule that never ran is always eligible."""
        video = make_video()
        platform = make_platform()
        schedule = store.get_schedule(_schedule(hub, video, [platform])["id"])

        assert hub.scheduler.should_run_now(schedule, MONDAY_10) is True


class TestEvaluateTick:
    """Tests for running due schedules."""

    def test_fires_due_schedule(self, hub, spawner, events, make_video, make_platform):
        """Test a due schedule starts its stream and records the run."""
        video = make_video()
        platform = make_platform()
        schedule = _schedule(hub, video, [platform])

        assert hub.scheduler.evaluate_tick(MONDAY_10) == [schedule["id"]]

        assert hub.registry.is_active(video.id, platform.id)
        stored = hub.get_all_schedules()[0]
        assert stored["last_run"] == "2024-01-01T10:00:00"
        assert stored["next_run"] == "2024-01-08T10:00:00"
        logs = hub.get_schedule_logs(schedule["id"])
        assert logs[0]["details"] == "Stream started for video: clip.mp4"
        assert events[-1] == (ev.SCHEDULED_STARTED, {
            "schedule_id": schedule["id"],
            "video_name": "clip.mp4",
            "platforms": [platform.id],
        })
        assert hub.stream_history()[0]["schedule_id"] == schedule["id"]

    def test_skips_other_times_and_days(self, hub, spawner, make_video, make_platform):
        """Test only schedules matching the current day and minute run."""
        video = make_video()
        platform = make_platform()
        _schedule(hub, video, [platform], days=(2,))
        _schedule(hub, video, [platform], time="10:01")

        assert hub.scheduler.evaluate_tick(MONDAY_10) == []
        assert spawner.spawned == []

    def test_inactive_schedule_is_skipped(self, hub, spawner, make_video, make_platform):
        """Test a disabled schedule never fires."""
        video = make_video()
        platform = make_platform()
        _schedule(hub, video, [platform], is_active=False)

        assert hub.scheduler.evaluate_tick(MONDAY_10) == []

    def test_debounce_prevents_double_fire(self, hub, spawner, make_video, make_platform):
        """Test a second tick in the same minute does not start again."""
        video = make_video()
        platform = make_platform()
        _schedule(hub, video, [platform])

        hub.scheduler.evaluate_tick(MONDAY_10)
        assert hub.scheduler.evaluate_tick(MONDAY_10 + timedelta(seconds=30)) == []
        assert len(spawner.spawned) == 1

    def test_conflicting_stream_is_stopped_first(self, hub, spawner, events, make_video, make_platform):
        """Test a stream already on the target platform is stopped and logged."""
        other = make_video("other.mp4")
        video = make_video("show.mp4")
        platform = make_platform()
        hub.start_stream(other.id, [platform.id])
        schedule = _schedule(hub, video, [platform])

        assert hub.scheduler.evaluate_tick(MONDAY_10) == [schedule["id"]]

        assert not hub.registry.is_active(other.id, platform.id)
        assert hub.registry.is_active(video.id, platform.id)
        assert spawner.signals[0][0] == spawner.spawned[0].pid
        logs = hub.get_schedule_logs(schedule["id"])
        assert [entry["action"] for entry in logs] == ["started", "conflict_resolved"]
        assert logs[1]["details"] == f"Stream stopped - Video ID: {other.id}, Platform ID: {platform.id}"
        names = [name for name, _ in events]
        assert names[1:] == [ev.STOPPED, ev.CONFLICT_RESOLVED, ev.STARTED, ev.SCHEDULED_STARTED]

    def test_missing_file_is_logged(self, hub, events, make_video, make_platform):
        """Test a schedule whose video file is gone logs an error and stays active."""
        video = make_video()
        platform = make_platform()
        schedule = _schedule(hub, video, [platform])
        os.remove(video.path)

        assert hub.scheduler.evaluate_tick(MONDAY_10) == []

        logs = hub.get_schedule_logs(schedule["id"])
        assert logs[0]["action"] == "error"
        assert "Video file not found" in logs[0]["details"]
        assert events[-1][0] == ev.SCHEDULED_ERROR
        stored = hub.get_all_schedules()[0]
        assert stored["is_active"] is True
        assert stored["last_run"] is None

    def test_all_platforms_failing_is_an_error(self, hub, events, make_video, make_platform):
        """Test a run where no platform starts is reported as an error."""
        video = make_video()
        platform = make_platform()
        schedule = _schedule(hub, video, [platform])
        hub.delete_platform(platform.id)

        assert hub.scheduler.evaluate_tick(MONDAY_10) == []

        logs = hub.get_schedule_logs(schedule["id"])
        assert logs[0]["action"] == "error"
        assert logs[0]["details"].startswith("No platform started")
        assert events[-1][0] == ev.SCHEDULED_ERROR

    def test_failure_does_not_block_other_schedules(self, hub, monkeypatch, make_video, make_platform):
        """Test one schedule raising leaves the others running."""
        broken = make_video("broken.mp4")
        good = make_video("good.mp4")
        yt = make_platform()
        tw = make_platform("Twitch", "twitch", "rtmp://live.twitch.tv/app", "k")
        _schedule(hub, broken, [yt])
        good_schedule = _schedule(hub, good, [tw])

        real_start = hub.registry.start

        def flaky_start(video_id, *args, **kwargs):
            if video_id == broken.id:
                raise RuntimeError("boom")
            return real_start(video_id, *args, **kwargs)

        monkeypatch.setattr(hub.registry, "start", flaky_start)

        assert hub.scheduler.evaluate_tick(MONDAY_10) == [good_schedule["id"]]
        assert hub.registry.is_active(good.id, tw.id)
        assert any("boom" in line for line in hub.scheduler.get_logs())

    def test_partial_failure_still_fires(self, hub, make_video, make_platform):
        """Test a run counts as fired when at least one platform starts."""
        video = make_video()
        yt = make_platform()
        tw = make_platform("Twitch", "twitch", "rtmp://live.twitch.tv/app", "k")
        schedule = _schedule(hub, video, [yt, tw])
        hub.delete_platform(tw.id)

        assert hub.scheduler.evaluate_tick(MONDAY_10) == [schedule["id"]]
        details = hub.get_schedule_logs(schedule["id"])[0]["details"]
        assert "failed: platform" in details

    def test_refresh_next_runs(self, hub, store, clock, make_video, make_platform):
        """Test next_run is recomputed against the current clock."""
        video = make_video()
        platform = make_platform()
        schedule = _schedule(hub, video, [platform], time="10:30")
        clock.advance(hours=1)

        hub.scheduler.refresh_next_runs()

        assert store.get_schedule(schedule["id"]).next_run == datetime(2024, 1, 8, 10, 30)
