"""
Persistence for the restream hub.

Plain CRUD over the SQLAlchemy models; no business rules live here. Every
database error is re-raised as PersistenceFailure so callers only deal with
the hub's own error types. Returned objects are detached (the session factory
does not expire on commit) and safe to read after the session closes.
"""
from contextlib import contextmanager
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from .database import create_tables, make_engine, make_session_factory, session_scope
from .errors import NotFound, PersistenceFailure
from .models import (
    DropboxDownload,
    LoopConfiguration,
    LoopSession,
    Platform,
    ScheduledStream,
    ScheduleLog,
    Stream,
    Video,
)


class Store:
    def __init__(self, url: str) -> None:
        self.engine = make_engine(url)
        self._factory = make_session_factory(self.engine)
        create_tables(self.engine)

    @contextmanager
    def _session(self):
        try:
            with session_scope(self._factory) as session:
                yield session
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Database error: {e}") from e

    # ---------- videos ----------

    def add_video(self, filename: str, original_name: str, path: str,
                  size: Optional[int] = None, source: str = "local",
                  dropbox_url: Optional[str] = None) -> Video:
        with self._session() as db:
            video = Video(filename=filename, original_name=original_name,
                          path=path, size=size, source=source, dropbox_url=dropbox_url)
            db.add(video)
            db.flush()
            return video

    def get_video(self, video_id: int) -> Optional[Video]:
        with self._session() as db:
            return db.get(Video, video_id)

    def get_videos(self, video_ids: Iterable[int]) -> List[Video]:
        ids = list(video_ids)
        if not ids:
            return []
        with self._session() as db:
            return db.query(Video).filter(Video.id.in_(ids)).all()

    def list_videos(self) -> List[Video]:
        with self._session() as db:
            return db.query(Video).order_by(Video.uploaded_at.desc(), Video.id.desc()).all()

    def delete_video(self, video_id: int) -> None:
        """
        Remove a video with its stream rows and schedules (and their logs).
        Download rows are kept but no longer point at the video.
        """
        with self._session() as db:
            video = db.get(Video, video_id)
            if video is None:
                raise NotFound(f"Video {video_id} not found")
            schedule_ids = [
                s.id for s in db.query(ScheduledStream.id).filter(ScheduledStream.video_id == video_id)
            ]
            if schedule_ids:
                db.query(ScheduleLog).filter(
                    ScheduleLog.scheduled_stream_id.in_(schedule_ids)
                ).delete(synchronize_session=False)
                db.query(ScheduledStream).filter(
                    ScheduledStream.id.in_(schedule_ids)
                ).delete(synchronize_session=False)
            db.query(DropboxDownload).filter(DropboxDownload.video_id == video_id).update(
                {"video_id": None}, synchronize_session=False
            )
            db.query(Stream).filter(Stream.video_id == video_id).delete(synchronize_session=False)
            db.delete(video)

    # ---------- platforms ----------

    def add_platform(self, name: str, type: str, rtmp_url: str, stream_key: str) -> Platform:
        with self._session() as db:
            platform = Platform(name=name, type=type, rtmp_url=rtmp_url, stream_key=stream_key)
            db.add(platform)
            db.flush()
            return platform

    def get_platform(self, platform_id: int) -> Optional[Platform]:
        with self._session() as db:
            return db.get(Platform, platform_id)

    def get_platforms(self, platform_ids: Iterable[int]) -> List[Platform]:
        ids = list(platform_ids)
        if not ids:
            return []
        with self._session() as db:
            return db.query(Platform).filter(Platform.id.in_(ids)).all()

    def list_platforms(self) -> List[Platform]:
        with self._session() as db:
            return db.query(Platform).order_by(Platform.name).all()

    def update_platform(self, platform_id: int, **fields) -> Platform:
        with self._session() as db:
            platform = db.get(Platform, platform_id)
            if platform is None:
                raise NotFound(f"Platform {platform_id} not found")
            for k in ("name", "rtmp_url", "stream_key"):
                if fields.get(k) is not None:
                    setattr(platform, k, fields[k])
            db.flush()
            return platform

    def delete_platform(self, platform_id: int) -> None:
        with self._session() as db:
            platform = db.get(Platform, platform_id)
            if platform is None:
                raise NotFound(f"Platform {platform_id} not found")
            db.query(Stream).filter(Stream.platform_id == platform_id).delete(synchronize_session=False)
            db.delete(platform)

    # ---------- stream records ----------

    def insert_stream(self, video_id: int, platform_id: int, pid: Optional[int],
                      schedule_id: Optional[int] = None) -> Stream:
        with self._session() as db:
            stream = Stream(video_id=video_id, platform_id=platform_id, status="streaming",
                            process_pid=pid, started_at=datetime.now(), schedule_id=schedule_id)
            db.add(stream)
            db.flush()
            return stream

    def get_stream(self, stream_id: int) -> Optional[Stream]:
        with self._session() as db:
            return db.get(Stream, stream_id)

    def set_stream_loop_session(self, stream_id: int, session_id: int) -> None:
        with self._session() as db:
            stream = db.get(Stream, stream_id)
            if stream is not None:
                stream.loop_session_id = session_id

    def update_stream_status(self, stream_id: int, status: str,
                             error_message: Optional[str] = None) -> None:
        with self._session() as db:
            stream = db.get(Stream, stream_id)
            if stream is None:
                return
            stream.status = status
            stream.error_message = error_message
            stream.ended_at = datetime.now()

    def close_interrupted_streams(self, status: str, error_message: str) -> int:
        """
        Mark rows still "streaming" (and their loop sessions still "active")
        as finished. Only valid while nothing is running.
        """
        now = datetime.now()
        with self._session() as db:
            rows = db.query(Stream).filter(Stream.status == "streaming").all()
            for stream in rows:
                stream.status = status
                stream.error_message = error_message
                stream.ended_at = now
            db.query(LoopSession).filter(LoopSession.status == "active").update(
                {"status": "ended", "ended_at": now}, synchronize_session=False
            )
            return len(rows)

    def stream_history(self, limit: int = 50) -> List[dict]:
        with self._session() as db:
            rows = (
                db.query(Stream, Video.original_name, Platform.name, Platform.type)
                .join(Video, Stream.video_id == Video.id)
                .join(Platform, Stream.platform_id == Platform.id)
                .order_by(Stream.started_at.desc(), Stream.id.desc())
                .limit(limit)
                .all()
            )
            history = []
            for stream, video_name, platform_name, platform_type in rows:
                item = stream.to_dict()
                item.update(video_name=video_name, platform_name=platform_name,
                            platform_type=platform_type)
                history.append(item)
            return history

    # ---------- loops ----------

    def insert_loop_config(self, name: Optional[str], type: str, video_ids: List[int],
                           duration_hours: Optional[float], repeat_count: Optional[int],
                           infinite: bool) -> LoopConfiguration:
        with self._session() as db:
            config = LoopConfiguration(name=name, type=type, video_ids=list(video_ids),
                                       duration_hours=duration_hours, repeat_count=repeat_count,
                                       infinite=infinite)
            db.add(config)
            db.flush()
            return config

    def get_loop_config(self, config_id: int) -> Optional[LoopConfiguration]:
        with self._session() as db:
            return db.get(LoopConfiguration, config_id)

    def insert_loop_session(self, config_id: int, stream_id: Optional[int],
                            started_at: datetime) -> LoopSession:
        with self._session() as db:
            session = LoopSession(config_id=config_id, stream_id=stream_id,
                                  started_at=started_at, current_iteration=0, status="active")
            db.add(session)
            db.flush()
            return session

    def update_loop_session(self, session_id: int, **fields) -> None:
        with self._session() as db:
            session = db.get(LoopSession, session_id)
            if session is None:
                return
            for k, v in fields.items():
                setattr(session, k, v)

    def active_loop_sessions(self) -> List[dict]:
        with self._session() as db:
            rows = (
                db.query(LoopSession, LoopConfiguration)
                .join(LoopConfiguration, LoopSession.config_id == LoopConfiguration.id)
                .filter(LoopSession.status == "active")
                .all()
            )
            result = []
            for session, config in rows:
                item = session.to_dict()
                item.update(name=config.name, type=config.type, infinite=bool(config.infinite),
                            repeat_count=config.repeat_count, duration_hours=config.duration_hours)
                result.append(item)
            return result

    # ---------- schedules ----------

    def insert_schedule(self, video_id: int, platform_ids: List[int], schedule_days: List[int],
                        schedule_time: str, loop_config_id: Optional[int] = None,
                        is_active: bool = True) -> ScheduledStream:
        with self._session() as db:
            schedule = ScheduledStream(video_id=video_id, platform_ids=list(platform_ids),
                                       schedule_days=list(schedule_days),
                                       schedule_time=schedule_time, is_active=is_active,
                                       loop_config_id=loop_config_id)
            db.add(schedule)
            db.flush()
            return schedule

    def get_schedule(self, schedule_id: int) -> Optional[ScheduledStream]:
        with self._session() as db:
            return db.get(ScheduledStream, schedule_id)

    def list_schedules(self, active_only: bool = False) -> List[ScheduledStream]:
        with self._session() as db:
            query = db.query(ScheduledStream)
            if active_only:
                query = query.filter(ScheduledStream.is_active.is_(True))
            return query.order_by(ScheduledStream.created_at.desc(), ScheduledStream.id.desc()).all()

    def update_schedule(self, schedule_id: int, **fields) -> ScheduledStream:
        with self._session() as db:
            schedule = db.get(ScheduledStream, schedule_id)
            if schedule is None:
                raise NotFound(f"Schedule {schedule_id} not found")
            for k, v in fields.items():
                setattr(schedule, k, v)
            db.flush()
            return schedule

    def delete_schedule(self, schedule_id: int) -> None:
        with self._session() as db:
            schedule = db.get(ScheduledStream, schedule_id)
            if schedule is None:
                raise NotFound(f"Schedule {schedule_id} not found")
            db.query(ScheduleLog).filter(
                ScheduleLog.scheduled_stream_id == schedule_id
            ).delete(synchronize_session=False)
            db.delete(schedule)

    def add_schedule_log(self, schedule_id: int, action: str, details: str) -> None:
        with self._session() as db:
            db.add(ScheduleLog(scheduled_stream_id=schedule_id, action=action,
                               details=details, created_at=datetime.now()))

    def get_schedule_logs(self, schedule_id: int, limit: int = 50) -> List[ScheduleLog]:
        with self._session() as db:
            return (
                db.query(ScheduleLog)
                .filter(ScheduleLog.scheduled_stream_id == schedule_id)
                .order_by(ScheduleLog.created_at.desc(), ScheduleLog.id.desc())
                .limit(limit)
                .all()
            )

    # ---------- downloads ----------

    def insert_download(self, download_id: str, dropbox_url: str) -> DropboxDownload:
        with self._session() as db:
            row = DropboxDownload(download_id=download_id, dropbox_url=dropbox_url,
                                  status="starting", progress=0, created_at=datetime.now())
            db.add(row)
            db.flush()
            return row

    def update_download(self, download_id: str, **fields) -> None:
        with self._session() as db:
            row = db.query(DropboxDownload).filter(
                DropboxDownload.download_id == download_id
            ).first()
            if row is None:
                return
            for k, v in fields.items():
                setattr(row, k, v)

    def get_download(self, download_id: str) -> Optional[DropboxDownload]:
        with self._session() as db:
            return db.query(DropboxDownload).filter(
                DropboxDownload.download_id == download_id
            ).first()
