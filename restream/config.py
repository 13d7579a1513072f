import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

# Database (any SQLAlchemy URL); defaults to a local SQLite file
DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{BASE_DIR / 'db' / 'streamhub.db'}")

UPLOAD_DIR = os.getenv("UPLOAD_DIR", str(BASE_DIR / "uploads"))
# Concat playlists for looped streams are written here
TEMP_DIR = os.getenv("TEMP_DIR", str(BASE_DIR / "temp"))

# Determine ffprobe path:
# - If FFPROBE_PATH is set in env, use it directly.
# - Otherwise, if FFMPEG_PATH is an absolute/explicit path, try to derive ffprobe
#   from the same directory (ffprobe.exe or ffprobe).
FFMPEG_PATH = os.getenv("FFMPEG_PATH", "ffmpeg")
_ffprobe_env = os.getenv("FFPROBE_PATH")

if _ffprobe_env:
    FFPROBE_PATH = _ffprobe_env
else:
    try:
        ff = Path(FFMPEG_PATH)
        if ff.is_absolute():
            # On Windows this will typically map ffmpeg.exe -> ffprobe.exe
            probe_name = "ffprobe" + (ff.suffix if ff.suffix else "")
            FFPROBE_PATH = str(ff.with_name(probe_name))
        else:
            FFPROBE_PATH = "ffprobe"
    except Exception:
        FFPROBE_PATH = "ffprobe"

# Output encoding policy shared by every outgoing stream
FFMPEG_PRESET = os.getenv("FFMPEG_PRESET", "veryfast")
VIDEO_BITRATE = os.getenv("VIDEO_BITRATE", "3000k")
BUFFER_SIZE = os.getenv("BUFFER_SIZE", "6000k")
AUDIO_BITRATE = os.getenv("AUDIO_BITRATE", "160k")
AUDIO_SAMPLE_RATE = os.getenv("AUDIO_SAMPLE_RATE", "44100")
PIXEL_FORMAT = "yuv420p"
KEYFRAME_INTERVAL = "50"

# Seconds between liveness probes of each running ffmpeg
HEALTH_CHECK_INTERVAL = float(os.getenv("HEALTH_CHECK_INTERVAL", "5"))

# A schedule never fires twice within this many minutes
SCHEDULE_DEBOUNCE_MINUTES = int(os.getenv("SCHEDULE_DEBOUNCE_MINUTES", "50"))

LOG_MAX_LINES = int(os.getenv("LOG_MAX_LINES", "300"))

ALLOWED_VIDEO_EXT = {".mp4", ".avi", ".mkv", ".mov", ".flv", ".wmv", ".webm"}
PLATFORM_TYPES = {"youtube", "twitch", "facebook", "custom"}

# Shared-link downloads: seconds to wait for the server, bytes per write
DOWNLOAD_TIMEOUT = float(os.getenv("DOWNLOAD_TIMEOUT", "30"))
DOWNLOAD_CHUNK_SIZE = int(os.getenv("DOWNLOAD_CHUNK_SIZE", str(256 * 1024)))
