#!/usr/bin/env python3
"""
Multi-platform RTMP restream hub (Flask + Socket.IO).

- Config via .env (HOST, PORT, DATABASE_URL, UPLOAD_DIR, TEMP_DIR, FFMPEG_PATH,
  FFPROBE_PATH, encoder settings, HEALTH_CHECK_INTERVAL, DOWNLOAD_TIMEOUT,
  SECRET_KEY)
- Upload videos, or fetch them from Dropbox shared links
- Manage RTMP platforms (YouTube, Twitch, Facebook, custom)
- Start/stop one ffmpeg per (video, platform), optionally looped
- Weekly schedules with automatic platform conflict resolution
- Every hub event (started, ended, crashed, scheduled_started, ...) is pushed
  to browsers over Socket.IO
- Keeps a console log buffer (ffmpeg output + actions) at /logs
"""
import os
import secrets

from flask import Flask, jsonify, request
from flask_socketio import SocketIO
from werkzeug.utils import secure_filename
from dotenv import load_dotenv

# Load .env if present (before restream.config reads the environment)
load_dotenv()

from restream import config
from restream.errors import InvalidInput, NotFound, RestreamError
from restream.hub import StreamHub
from restream.store import Store

os.makedirs(config.UPLOAD_DIR, exist_ok=True)

hub = StreamHub(Store(config.DATABASE_URL))

# Flask app setup
app = Flask(__name__)
app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", "dev-secret")

socketio = SocketIO(app, cors_allowed_origins="*", async_mode="threading")


def _relay_event(event: str, payload: dict) -> None:
    socketio.emit(event, payload)


hub.bus.subscribe(_relay_event)


@app.errorhandler(RestreamError)
def handle_restream_error(err: RestreamError):
    return jsonify(err.to_dict()), err.http_status


def _json() -> dict:
    return request.get_json(silent=True) or {}


def _int(value, name: str) -> int:
    if isinstance(value, bool):
        raise InvalidInput(f"{name} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidInput(f"{name} must be an integer")


def _int_list(value, name: str) -> list:
    if not isinstance(value, list) or not value:
        raise InvalidInput(f"{name} must be a non-empty list")
    return [_int(v, name) for v in value]


def _limit(default: int) -> int:
    try:
        return int(request.args.get("limit", str(default)))
    except ValueError:
        return default


@app.get("/logs")
def get_logs():
    return jsonify({"lines": hub.get_logs(_limit(200))})


# ========== VIDEOS ==========


@app.post("/api/upload")
def upload_video():
    if "video" not in request.files:
        return jsonify({"detail": "video file is required"}), 400
    f = request.files["video"]
    if f.filename == "":
        return jsonify({"detail": "empty filename"}), 400
    original_name = secure_filename(f.filename)
    ext = os.path.splitext(original_name)[1].lower()
    if ext not in config.ALLOWED_VIDEO_EXT:
        return jsonify({"detail": "unsupported video type"}), 400
    os.makedirs(config.UPLOAD_DIR, exist_ok=True)
    filename = secrets.token_hex(16) + ext
    dest = os.path.join(config.UPLOAD_DIR, filename)
    f.save(dest)
    video = hub.add_video(filename, f.filename, os.path.abspath(dest), os.path.getsize(dest))
    return jsonify({"ok": True, "video": video.to_dict()})


@app.get("/api/videos")
def list_videos():
    return jsonify([v.to_dict() for v in hub.list_videos()])


@app.delete("/api/videos/<int:video_id>")
def delete_video(video_id: int):
    hub.delete_video(video_id)
    return jsonify({"ok": True})


# ========== DROPBOX ==========


@app.post("/api/dropbox/download")
def dropbox_download():
    url = _json().get("url")
    download = hub.download_from_url(url)
    return jsonify({"ok": True, "download": download}), 202


@app.get("/api/dropbox/download/<download_id>")
def dropbox_download_status(download_id: str):
    return jsonify(hub.get_download_status(download_id))


@app.delete("/api/dropbox/download/<download_id>")
def dropbox_download_cancel(download_id: str):
    if not hub.cancel_download(download_id):
        raise NotFound("Download not found")
    return jsonify({"ok": True})


# ========== PLATFORMS ==========


@app.get("/api/platforms")
def list_platforms():
    return jsonify([p.to_dict() for p in hub.list_platforms()])


@app.post("/api/platforms")
def add_platform():
    data = _json()
    platform = hub.add_platform(
        name=(data.get("name") or "").strip(),
        type=(data.get("type") or "custom").strip().lower(),
        rtmp_url=(data.get("rtmp_url") or "").strip(),
        stream_key=(data.get("stream_key") or "").strip(),
    )
    return jsonify(platform.to_dict())


@app.put("/api/platforms/<int:platform_id>")
def update_platform(platform_id: int):
    data = _json()
    platform = hub.update_platform(
        platform_id,
        name=data.get("name"),
        rtmp_url=data.get("rtmp_url"),
        stream_key=data.get("stream_key"),
    )
    return jsonify({"ok": True, "platform": platform.to_dict()})


@app.delete("/api/platforms/<int:platform_id>")
def delete_platform(platform_id: int):
    hub.delete_platform(platform_id)
    return jsonify({"ok": True})


# ========== STREAMS ==========


@app.post("/api/stream/start")
def start_stream():
    data = _json()
    video_id = _int(data.get("video_id"), "video_id")
    platform_ids = _int_list(data.get("platform_ids"), "platform_ids")
    loop = data.get("loop")
    if loop is not None and not isinstance(loop, dict):
        raise InvalidInput("loop must be an object")
    results = hub.start_stream(video_id, platform_ids, loop=loop)
    return jsonify({"results": results})


@app.post("/api/stream/stop")
def stop_stream():
    data = _json()
    video_id = _int(data.get("video_id"), "video_id")
    platform_id = _int(data.get("platform_id"), "platform_id")
    if not hub.stop_stream(video_id, platform_id):
        raise NotFound("Stream not found")
    return jsonify({"ok": True})


@app.get("/api/streams/status")
def streams_status():
    return jsonify({"active_streams": hub.get_active_streams()})


@app.get("/api/streams/history")
def streams_history():
    return jsonify(hub.stream_history(_limit(50)))


# ========== LOOPS ==========


@app.post("/api/loops")
def create_loop():
    return jsonify(hub.create_loop(_json()))


@app.get("/api/loops/active")
def active_loops():
    return jsonify(hub.get_active_loops())


# ========== SCHEDULES ==========


@app.get("/api/schedules")
def list_schedules():
    return jsonify(hub.get_all_schedules())


@app.post("/api/schedules")
def create_schedule():
    return jsonify(hub.create_schedule(_json()))


@app.put("/api/schedules/<int:schedule_id>")
def update_schedule(schedule_id: int):
    return jsonify(hub.update_schedule(schedule_id, _json()))


@app.delete("/api/schedules/<int:schedule_id>")
def delete_schedule(schedule_id: int):
    hub.delete_schedule(schedule_id)
    return jsonify({"ok": True})


@app.get("/api/schedules/<int:schedule_id>/logs")
def schedule_logs(schedule_id: int):
    return jsonify(hub.get_schedule_logs(schedule_id, _limit(50)))


if __name__ == "__main__":
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "3000"))

    # Close leftover stream records, then start the schedule watcher thread
    hub.start()

    print(f"[App] Starting restream hub on {host}:{port}")
    try:
        socketio.run(app, host=host, port=port, allow_unsafe_werkzeug=True)
    finally:
        hub.shutdown()
