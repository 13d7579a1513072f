"""
SQLAlchemy models for the restream hub.

Tables mirror the hub's records: uploaded videos, RTMP platforms, one stream
row per start attempt, loop configurations and sessions, weekly schedules and
their audit log, and shared-link downloads.
"""
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
)

from .database import Base


def _iso(value):
    return value.isoformat() if value is not None else None


class Video(Base):
    __tablename__ = "videos"

    id = Column(Integer, primary_key=True, index=True)
    filename = Column(String(255), nullable=False)
    original_name = Column(String(255), nullable=False)
    path = Column(String(1024), nullable=False)
    size = Column(Integer)
    # "local" (uploaded) or "dropbox" (downloaded from a shared link)
    source = Column(String(32), default="local")
    dropbox_url = Column(String(2048))
    uploaded_at = Column(DateTime, default=datetime.now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "filename": self.filename,
            "original_name": self.original_name,
            "path": self.path,
            "size": self.size,
            "source": self.source,
            "dropbox_url": self.dropbox_url,
            "uploaded_at": _iso(self.uploaded_at),
        }

    def __repr__(self):
        return f"<Video id={self.id} name={self.original_name}>"


class Platform(Base):
    __tablename__ = "platforms"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    # youtube / twitch / facebook / custom
    type = Column(String(32), nullable=False)
    rtmp_url = Column(String(1024), nullable=False)
    stream_key = Column(String(512), nullable=False)
    created_at = Column(DateTime, default=datetime.now)

    @property
    def publish_url(self) -> str:
        return f"{self.rtmp_url.rstrip('/')}/{self.stream_key}"

    def to_dict(self) -> dict:
        # stream_key is a credential; never sent back to clients
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "rtmp_url": self.rtmp_url,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<Platform id={self.id} name={self.name} type={self.type}>"


class Stream(Base):
    __tablename__ = "streams"

    id = Column(Integer, primary_key=True, index=True)
    video_id = Column(Integer, ForeignKey("videos.id"), index=True)
    platform_id = Column(Integer, ForeignKey("platforms.id"), index=True)
    # streaming / completed / error / stopped / crashed
    status = Column(String(32), default="stopped")
    process_pid = Column(Integer)
    started_at = Column(DateTime)
    ended_at = Column(DateTime)
    error_message = Column(Text)
    loop_session_id = Column(Integer)
    schedule_id = Column(Integer)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "video_id": self.video_id,
            "platform_id": self.platform_id,
            "status": self.status,
            "process_pid": self.process_pid,
            "started_at": _iso(self.started_at),
            "ended_at": _iso(self.ended_at),
            "error_message": self.error_message,
            "loop_session_id": self.loop_session_id,
            "schedule_id": self.schedule_id,
        }


class LoopConfiguration(Base):
    __tablename__ = "loop_configurations"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255))
    # "single" or "playlist"
    type = Column(String(32), nullable=False)
    video_ids = Column(JSON, nullable=False, default=list)
    duration_hours = Column(Float)
    repeat_count = Column(Integer)
    infinite = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "video_ids": list(self.video_ids or []),
            "duration_hours": self.duration_hours,
            "repeat_count": self.repeat_count,
            "infinite": bool(self.infinite),
            "created_at": _iso(self.created_at),
        }


class LoopSession(Base):
    __tablename__ = "loop_sessions"

    id = Column(Integer, primary_key=True, index=True)
    config_id = Column(Integer, ForeignKey("loop_configurations.id"))
    stream_id = Column(Integer, ForeignKey("streams.id"))
    started_at = Column(DateTime, default=datetime.now)
    ended_at = Column(DateTime)
    current_iteration = Column(Integer, default=0)
    # "active" or "ended"
    status = Column(String(32), default="active")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "config_id": self.config_id,
            "stream_id": self.stream_id,
            "started_at": _iso(self.started_at),
            "ended_at": _iso(self.ended_at),
            "current_iteration": self.current_iteration,
            "status": self.status,
        }


class ScheduledStream(Base):
    __tablename__ = "scheduled_streams"

    id = Column(Integer, primary_key=True, index=True)
    video_id = Column(Integer, ForeignKey("videos.id"), nullable=False)
    platform_ids = Column(JSON, nullable=False)
    # 0 = Sunday ... 6 = Saturday
    schedule_days = Column(JSON, nullable=False)
    # "HH:MM", local time
    schedule_time = Column(String(5), nullable=False)
    is_active = Column(Boolean, default=True)
    loop_config_id = Column(Integer, ForeignKey("loop_configurations.id"))
    created_at = Column(DateTime, default=datetime.now)
    last_run = Column(DateTime)
    next_run = Column(DateTime)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "video_id": self.video_id,
            "platform_ids": list(self.platform_ids or []),
            "schedule_days": list(self.schedule_days or []),
            "schedule_time": self.schedule_time,
            "is_active": bool(self.is_active),
            "loop_config_id": self.loop_config_id,
            "created_at": _iso(self.created_at),
            "last_run": _iso(self.last_run),
            "next_run": _iso(self.next_run),
        }


class ScheduleLog(Base):
    __tablename__ = "schedule_logs"

    id = Column(Integer, primary_key=True, index=True)
    scheduled_stream_id = Column(Integer, ForeignKey("scheduled_streams.id"), index=True)
    # started / error / conflict_resolved
    action = Column(String(64), nullable=False)
    details = Column(Text)
    created_at = Column(DateTime, default=datetime.now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "scheduled_stream_id": self.scheduled_stream_id,
            "action": self.action,
            "details": self.details,
            "created_at": _iso(self.created_at),
        }


class DropboxDownload(Base):
    __tablename__ = "dropbox_downloads"

    id = Column(Integer, primary_key=True, index=True)
    download_id = Column(String(64), unique=True, nullable=False, index=True)
    dropbox_url = Column(String(2048), nullable=False)
    # starting / downloading / completed / error / cancelled
    status = Column(String(32), nullable=False, default="starting")
    progress = Column(Integer, default=0)
    size = Column(Integer)
    filename = Column(String(255))
    video_id = Column(Integer, ForeignKey("videos.id"))
    error_message = Column(Text)
    created_at = Column(DateTime, default=datetime.now)
    completed_at = Column(DateTime)

    def to_dict(self) -> dict:
        return {
            "id": self.download_id,
            "dropbox_url": self.dropbox_url,
            "status": self.status,
            "progress": self.progress,
            "size": self.size,
            "filename": self.filename,
            "video_id": self.video_id,
            "error_message": self.error_message,
            "created_at": _iso(self.created_at),
            "completed_at": _iso(self.completed_at),
        }
