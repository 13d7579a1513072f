"""
Downloads of videos from Dropbox shared links.

Each download runs on its own thread. It streams the body to a temp file,
moves the file into the upload directory and registers it as a video with
source "dropbox". Progress, completion and failure go out on the event bus,
and a ``dropbox_downloads`` row records the outcome. Public shared links need
no account; there is no OAuth here.
"""
import os
import re
import secrets
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple
from urllib.parse import unquote

import requests
from werkzeug.utils import secure_filename

from . import config, events
from .errors import InvalidInput, NotFound, PersistenceFailure
from .events import EventBus
from .logging_mixin import LoggingMixin
from .models import Video
from .store import Store

USER_AGENT = "StreamHub/2.0"

_DISPOSITION_RE = re.compile(r"""filename[^;=\n]*=((['"]).*?\2|[^;\n]*)""")


class DownloadCancelled(Exception):
    pass


def convert_share_url(url: str) -> str:
    """Turn a Dropbox share link into one that serves the file itself."""
    if "dropbox.com" not in url:
        return url
    direct = url
    if "dl=0" in url:
        direct = url.replace("dl=0", "dl=1", 1)
    elif "dl=" not in url:
        direct = url + ("&" if "?" in url else "?") + "dl=1"
    if "/s/" in url or "/sh/" in url:
        direct = direct.replace("www.dropbox.com", "dl.dropboxusercontent.com")
    return direct


def extract_filename(headers, url: str) -> str:
    """Content-Disposition filename, else the last path segment of ``url``."""
    disposition = headers.get("Content-Disposition") if headers else None
    if disposition:
        m = _DISPOSITION_RE.search(disposition)
        if m and m.group(1):
            name = m.group(1).replace('"', "").replace("'", "").strip()
            if name:
                return name
    last = url.rstrip("/").split("/")[-1].split("?")[0]
    if not last:
        return f"video_{int(time.time() * 1000)}.mp4"
    return unquote(last)


def format_speed(bytes_per_second: float) -> str:
    if bytes_per_second < 1024:
        return f"{bytes_per_second:.2f} B/s"
    if bytes_per_second < 1024 * 1024:
        return f"{bytes_per_second / 1024:.2f} KB/s"
    return f"{bytes_per_second / (1024 * 1024):.2f} MB/s"


@dataclass(eq=False)
class Download:
    """An in-flight download. Memory only; the row holds the outcome."""

    id: str
    url: str
    original_url: str
    status: str = "starting"
    progress: int = 0
    size: int = 0
    downloaded_bytes: int = 0
    filename: Optional[str] = None
    video_id: Optional[int] = None
    error: Optional[str] = None
    started_monotonic: float = field(default_factory=time.monotonic)
    cancel: threading.Event = field(default_factory=threading.Event)
    thread: Optional[threading.Thread] = None

    def speed(self) -> str:
        elapsed = time.monotonic() - self.started_monotonic
        if elapsed <= 0:
            return format_speed(0)
        return format_speed(self.downloaded_bytes / elapsed)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "status": self.status,
            "progress": self.progress,
            "size": self.size,
            "downloaded_bytes": self.downloaded_bytes,
            "filename": self.filename,
            "speed": self.speed(),
        }


class DownloadManager(LoggingMixin):
    log_prefix = "[downloads] "

    def __init__(
        self,
        store: Store,
        bus: EventBus,
        upload_dir: str = config.UPLOAD_DIR,
        temp_dir: str = config.TEMP_DIR,
        session: Optional[requests.Session] = None,
        timeout: float = config.DOWNLOAD_TIMEOUT,
        chunk_size: int = config.DOWNLOAD_CHUNK_SIZE,
    ) -> None:
        self.store = store
        self.bus = bus
        self.upload_dir = upload_dir
        self.temp_dir = temp_dir
        self.session = session or requests.Session()
        self.timeout = timeout
        self.chunk_size = chunk_size

        self.lock = threading.RLock()
        self._logs: List[Tuple[int, str]] = []
        self._log_max = config.LOG_MAX_LINES
        self._active: Dict[str, Download] = {}

    def start(self, url: str) -> Download:
        if not isinstance(url, str) or not url.strip():
            raise InvalidInput("url is required")
        url = url.strip()
        if not url.startswith(("http://", "https://")):
            raise InvalidInput("url must be an http(s) link")

        download = Download(id=uuid.uuid4().hex, url=convert_share_url(url), original_url=url)
        self.store.insert_download(download.id, url)
        download.thread = threading.Thread(
            target=self._run, args=(download,), daemon=True, name=f"download-{download.id[:8]}"
        )
        with self.lock:
            self._active[download.id] = download
        self._append_log(f"Download {download.id} started: {url}")
        download.thread.start()
        return download

    def _run(self, download: Download) -> None:
        tmp_path = os.path.join(self.temp_dir, f"download_{download.id}.tmp")
        try:
            self._perform(download, tmp_path)
        except DownloadCancelled:
            self._remove_tmp(tmp_path)
            self._append_log(f"Download {download.id} cancelled")
        except (requests.RequestException, OSError, PersistenceFailure) as e:
            self._remove_tmp(tmp_path)
            if download.cancel.is_set():
                self._append_log(f"Download {download.id} cancelled: {e}")
            else:
                self._fail(download, str(e))
        finally:
            with self.lock:
                self._active.pop(download.id, None)

    def _perform(self, download: Download, tmp_path: str) -> None:
        with self.lock:
            if download.cancel.is_set():
                raise DownloadCancelled()
            download.status = "downloading"
            self.store.update_download(download.id, status="downloading")
        os.makedirs(self.temp_dir, exist_ok=True)

        with self.session.get(download.url, stream=True, timeout=self.timeout,
                              headers={"User-Agent": USER_AGENT}) as resp:
            resp.raise_for_status()
            content_length = resp.headers.get("Content-Length")
            if content_length and content_length.isdigit():
                download.size = int(content_length)
            download.filename = extract_filename(resp.headers, download.original_url)

            last_percent = -1
            with open(tmp_path, "wb") as fh:
                for chunk in resp.iter_content(chunk_size=self.chunk_size):
                    if download.cancel.is_set():
                        raise DownloadCancelled()
                    if not chunk:
                        continue
                    fh.write(chunk)
                    download.downloaded_bytes += len(chunk)
                    if download.size:
                        download.progress = min(
                            int(download.downloaded_bytes * 100 / download.size), 100
                        )
                    if download.progress != last_percent or not download.size:
                        self._report_progress(download, last_percent)
                        last_percent = download.progress

        if download.size and download.downloaded_bytes < download.size:
            raise IOError(
                f"Incomplete download ({download.downloaded_bytes}/{download.size} bytes)"
            )

        # cancel and completion exclude each other through self.lock
        with self.lock:
            if download.cancel.is_set():
                raise DownloadCancelled()
            video = self._register_video(download, tmp_path)
            self._active.pop(download.id, None)
        original_name = download.filename
        size = download.downloaded_bytes
        self._append_log(f"Download {download.id} completed: {original_name} ({size} bytes)")
        self.bus.emit(events.DOWNLOAD_COMPLETE, {
            "download_id": download.id,
            "video_id": video.id,
            "filename": original_name,
            "size": size,
        })

    def _register_video(self, download: Download, tmp_path: str) -> Video:
        """Move the file into the upload directory and record it. Caller must hold self.lock."""
        original_name = download.filename
        safe_name = secure_filename(original_name) or f"video_{int(time.time() * 1000)}.mp4"
        os.makedirs(self.upload_dir, exist_ok=True)
        final_name = f"{secrets.token_hex(16)}_{safe_name}"
        final_path = os.path.abspath(os.path.join(self.upload_dir, final_name))
        os.replace(tmp_path, final_path)

        size = download.downloaded_bytes
        try:
            video = self.store.add_video(final_name, original_name, final_path, size,
                                         source="dropbox", dropbox_url=download.original_url)
        except PersistenceFailure:
            os.unlink(final_path)
            raise

        download.status = "completed"
        download.progress = 100
        download.video_id = video.id
        self.store.update_download(download.id, status="completed", progress=100, size=size,
                                   filename=original_name, video_id=video.id,
                                   completed_at=datetime.now())
        return video

    def _report_progress(self, download: Download, last_percent: int) -> None:
        self.bus.emit(events.DOWNLOAD_PROGRESS, {
            "download_id": download.id,
            "progress": download.progress,
            "downloaded_bytes": download.downloaded_bytes,
            "total_bytes": download.size,
            "speed": download.speed(),
        })
        # the row is refreshed at every 5% step
        if download.size and download.progress // 5 != max(last_percent, 0) // 5:
            self.store.update_download(download.id, progress=download.progress)

    def _fail(self, download: Download, message: str) -> None:
        download.status = "error"
        download.error = message
        self._append_log(f"ERROR download {download.id}: {message}")
        try:
            self.store.update_download(download.id, status="error", error_message=message)
        except PersistenceFailure as e:
            self._append_log(f"Could not record failure of download {download.id}: {e}")
        self.bus.emit(events.DOWNLOAD_ERROR, {"download_id": download.id, "error": message})

    def _remove_tmp(self, tmp_path: str) -> None:
        try:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
        except OSError as e:
            self._append_log(f"Failed to remove {tmp_path}: {e}")

    def cancel(self, download_id: str) -> bool:
        """False when no download with that id is in flight."""
        with self.lock:
            download = self._active.pop(download_id, None)
            if download is None:
                return False
            download.cancel.set()
            download.status = "cancelled"
            self.store.update_download(download_id, status="cancelled")
        return True

    def status(self, download_id: str) -> dict:
        with self.lock:
            download = self._active.get(download_id)
        if download is not None:
            return download.to_dict()
        row = self.store.get_download(download_id)
        if row is None:
            raise NotFound(f"Download {download_id} not found")
        return row.to_dict()

    def active_ids(self) -> List[str]:
        with self.lock:
            return list(self._active)

    def shutdown(self, timeout: float = 5.0) -> None:
        with self.lock:
            downloads = list(self._active.values())
        for download in downloads:
            self.cancel(download.id)
        deadline = time.monotonic() + timeout
        for download in downloads:
            if download.thread is not None:
                download.thread.join(max(deadline - time.monotonic(), 0))
