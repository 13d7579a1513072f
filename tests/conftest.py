"""Shared fixtures: in-memory store, fake ffmpeg spawner, fake HTTP session, controllable clock."""

import os
import signal
import tempfile
from datetime import datetime, timedelta

# Point the app at throwaway locations before restream.config is imported.
_TMP = tempfile.mkdtemp(prefix="restream-tests-")
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["UPLOAD_DIR"] = os.path.join(_TMP, "uploads")
os.environ["TEMP_DIR"] = os.path.join(_TMP, "temp")

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from restream.errors import ProcessSpawnFailure
from restream.hub import StreamHub
from restream.store import Store


class FakeHandle:
    def __init__(self, pid, command, args, on_close):
        self.pid = pid
        self.command = command
        self.args = args
        self.on_close = on_close
        self.stderr = None

    def exit(self, code):
        """Deliver the process close notification."""
        self.on_close(code)

    def wait(self, timeout=None):
        return True


class FakeSpawner:
    """Records spawns and signals; tests decide when processes exit or die."""

    def __init__(self):
        self.spawned = []
        self.signals = []
        self.probes = []
        self.dead = set()
        self.fail_spawn = False
        self._next_pid = 4000

    def spawn(self, command, args, on_close, label="ffmpeg"):
        if self.fail_spawn:
            raise ProcessSpawnFailure(f"ffmpeg executable not found: {command}")
        self._next_pid += 1
        handle = FakeHandle(self._next_pid, command, list(args), on_close)
        self.spawned.append(handle)
        return handle

    def signal(self, pid, sig=signal.SIGTERM):
        self.signals.append((pid, sig))
        return True

    def probe(self, pid):
        self.probes.append(pid)
        return pid not in self.dead


class FakeResponse:
    """A streamed HTTP response; with ``gate`` set, chunks after the first wait for it."""

    def __init__(self, chunks=(), status=200, headers=None, gate=None):
        self.chunks = list(chunks)
        self.status_code = status
        self.headers = CaseInsensitiveDict(headers or {})
        self.gate = gate
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.closed = True
        return False

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Client Error", response=self)

    def iter_content(self, chunk_size=1):
        for i, chunk in enumerate(self.chunks):
            if i and self.gate is not None:
                self.gate.wait(5)
            yield chunk


class FakeHttpSession:
    """Serves queued responses and records the requests made."""

    def __init__(self):
        self.responses = []
        self.requests = []

    def get(self, url, **kwargs):
        self.requests.append((url, kwargs))
        if isinstance(self.responses[0], Exception):
            raise self.responses.pop(0)
        return self.responses.pop(0)


class FakeClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def store():
    return Store("sqlite://")


@pytest.fixture
def spawner():
    return FakeSpawner()


@pytest.fixture
def http():
    return FakeHttpSession()


@pytest.fixture
def make_response():
    return FakeResponse


@pytest.fixture
def clock():
    # Monday 2024-01-01 10:00 local time
    return FakeClock(datetime(2024, 1, 1, 10, 0, 0))


@pytest.fixture
def hub(store, spawner, clock, http, tmp_path):
    h = StreamHub(
        store,
        spawner=spawner,
        clock=clock,
        health_interval=3600,
        temp_dir=str(tmp_path / "temp"),
        upload_dir=str(tmp_path / "uploads"),
        http_session=http,
    )
    yield h
    h.downloads.shutdown()
    h.registry.shutdown()


@pytest.fixture
def events(hub):
    received = []
    hub.bus.subscribe(lambda event, payload: received.append((event, payload)))
    return received


@pytest.fixture
def make_video(hub, tmp_path):
    def _make(name="clip.mp4"):
        media_dir = tmp_path / "media"
        media_dir.mkdir(exist_ok=True)
        path = media_dir / name
        path.write_bytes(b"\x00" * 16)
        return hub.add_video(name, name, str(path), 16)

    return _make


@pytest.fixture
def make_platform(hub):
    def _make(name="YouTube", type="youtube", url="rtmp://a.rtmp.youtube.com/live2", key="key-1"):
        return hub.add_platform(name, type, url, key)

    return _make
