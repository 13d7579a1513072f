"""Tests for Dropbox shared-link downloads."""

import os
import threading

import pytest
import requests

from restream import events as ev
from restream.downloads import convert_share_url, extract_filename, format_speed
from restream.errors import InvalidInput, NotFound

SHARE_URL = "https://www.dropbox.com/s/abc123/clip.mp4?dl=0"


def _download_events(events):
    return [(name, p) for name, p in events if name.startswith("download:")]


def _finish(download):
    download.thread.join(5)
    assert not download.thread.is_alive()


class TestShareLinks:
    """Tests for link conversion, filenames and speed formatting."""

    def test_share_link_becomes_direct(self):
        """Test dl=0 share links are rewritten to the content host with dl=1."""
        assert convert_share_url(SHARE_URL) == (
            "https://dl.dropboxusercontent.com/s/abc123/clip.mp4?dl=1"
        )
        assert convert_share_url("https://www.dropbox.com/s/abc/v.mp4") == (
            "https://dl.dropboxusercontent.com/s/abc/v.mp4?dl=1"
        )

    def test_dl_is_appended_to_other_links(self):
        """Test links without dl get it appended and keep their host."""
        url = "https://www.dropbox.com/scl/fi/xyz/v.mp4?rlkey=k"
        assert convert_share_url(url) == url + "&dl=1"
        assert convert_share_url("https://www.dropbox.com/s/a/v.mp4?dl=1") == (
            "https://dl.dropboxusercontent.com/s/a/v.mp4?dl=1"
        )

    def test_other_hosts_are_untouched(self):
        """Test only Dropbox links are rewritten."""
        url = "https://example.com/media/v.mp4?dl=0"
        assert convert_share_url(url) == url

    def test_filename_from_header(self):
        """Test Content-Disposition wins over the URL."""
        headers = {"Content-Disposition": 'attachment; filename="My Clip.mp4"'}
        assert extract_filename(headers, SHARE_URL) == "My Clip.mp4"

    def test_filename_from_url(self):
        """Test the last path segment is used, without query and decoded."""
        assert extract_filename({}, "https://x.test/s/abc/My%20Video.mp4?dl=0") == "My Video.mp4"

        fallback = extract_filename({}, "https://x.test/?dl=0")
        assert fallback.startswith("video_")
        assert fallback.endswith(".mp4")

    def test_format_speed(self):
        """Test speeds are scaled to B/s, KB/s or MB/s with two decimals."""
        assert format_speed(512) == "512.00 B/s"
        assert format_speed(2048) == "2.00 KB/s"
        assert format_speed(3 * 1024 * 1024) == "3.00 MB/s"


class TestDownloadManager:
    """Tests for the download lifecycle."""

    def test_completed_download_registers_video(self, hub, http, events, make_response, tmp_path):
        """Test a finished download becomes a dropbox video in the upload directory."""
        http.responses.append(make_response(
            [b"a" * 10, b"b" * 10],
            headers={"Content-Length": "20",
                     "Content-Disposition": 'attachment; filename="My Clip.mp4"'},
        ))

        download = hub.downloads.start(SHARE_URL)
        _finish(download)

        url, kwargs = http.requests[0]
        assert url == "https://dl.dropboxusercontent.com/s/abc123/clip.mp4?dl=1"
        assert kwargs["stream"] is True

        status = hub.get_download_status(download.id)
        assert status["status"] == "completed"
        assert status["progress"] == 100
        assert status["size"] == 20
        assert status["completed_at"] is not None

        video = hub.store.get_video(status["video_id"])
        assert video.source == "dropbox"
        assert video.dropbox_url == SHARE_URL
        assert video.original_name == "My Clip.mp4"
        assert video.filename.endswith("_My_Clip.mp4")
        assert os.path.dirname(video.path) == str(tmp_path / "uploads")
        with open(video.path, "rb") as f:
            assert f.read() == b"a" * 10 + b"b" * 10
        assert os.listdir(tmp_path / "temp") == []

        seen = _download_events(events)
        assert [name for name, _ in seen] == [ev.DOWNLOAD_PROGRESS, ev.DOWNLOAD_PROGRESS,
                                              ev.DOWNLOAD_COMPLETE]
        assert [p["progress"] for _, p in seen[:2]] == [50, 100]
        assert seen[2][1] == {"download_id": download.id, "video_id": video.id,
                              "filename": "My Clip.mp4", "size": 20}

    def test_http_error_is_reported(self, hub, http, events, make_response):
        """Test a failed request marks the download as error and emits download:error."""
        http.responses.append(make_response(status=404))

        download = hub.downloads.start(SHARE_URL)
        _finish(download)

        status = hub.get_download_status(download.id)
        assert status["status"] == "error"
        assert "404" in status["error_message"]
        assert hub.list_videos() == []
        seen = _download_events(events)
        assert [name for name, _ in seen] == [ev.DOWNLOAD_ERROR]
        assert seen[0][1]["download_id"] == download.id

    def test_connection_error_is_reported(self, hub, http, events):
        """Test network failures end the download as error."""
        http.responses.append(requests.ConnectionError("connection refused"))

        download = hub.downloads.start(SHARE_URL)
        _finish(download)

        assert hub.get_download_status(download.id)["status"] == "error"
        assert [name for name, _ in _download_events(events)] == [ev.DOWNLOAD_ERROR]

    def test_incomplete_body_is_an_error(self, hub, http, make_response, tmp_path):
        """Test fewer bytes than Content-Length leaves no file behind."""
        http.responses.append(make_response([b"x" * 20], headers={"Content-Length": "100"}))

        download = hub.downloads.start(SHARE_URL)
        _finish(download)

        status = hub.get_download_status(download.id)
        assert status["status"] == "error"
        assert "Incomplete download" in status["error_message"]
        assert os.listdir(tmp_path / "temp") == []
        assert hub.list_videos() == []

    def test_cancel_discards_partial_file(self, hub, http, events, make_response, tmp_path):
        """Test cancelling mid-transfer removes the temp file and creates no video."""
        gate = threading.Event()
        first_chunk = threading.Event()
        hub.bus.subscribe(
            lambda name, payload: first_chunk.set() if name == ev.DOWNLOAD_PROGRESS else None
        )
        http.responses.append(make_response([b"a" * 10, b"b" * 10],
                                           headers={"Content-Length": "20"}, gate=gate))

        download = hub.downloads.start(SHARE_URL)
        assert first_chunk.wait(5)

        live = hub.get_download_status(download.id)
        assert live["status"] == "downloading"
        assert live["downloaded_bytes"] == 10
        assert live["speed"].endswith("/s")

        assert hub.cancel_download(download.id) is True
        gate.set()
        _finish(download)

        assert hub.get_download_status(download.id)["status"] == "cancelled"
        assert hub.list_videos() == []
        assert os.listdir(tmp_path / "temp") == []
        names = [name for name, _ in _download_events(events)]
        assert ev.DOWNLOAD_COMPLETE not in names
        assert ev.DOWNLOAD_ERROR not in names
        assert hub.cancel_download(download.id) is False

    def test_rejects_bad_urls(self, hub, http):
        """Test only http(s) links are accepted and nothing is requested otherwise."""
        with pytest.raises(InvalidInput):
            hub.download_from_url("")
        with pytest.raises(InvalidInput):
            hub.download_from_url("ftp://www.dropbox.com/s/a/v.mp4")
        assert http.requests == []

    def test_unknown_download(self, hub):
        """Test status of an unknown id raises NotFound."""
        with pytest.raises(NotFound):
            hub.get_download_status("nope")

    def test_downloads_log_to_hub(self, hub, http, make_response):
        """Test download lines show up in the merged log."""
        http.responses.append(make_response([b"x"], headers={"Content-Length": "1"}))

        download = hub.downloads.start(SHARE_URL)
        _finish(download)

        assert any("[downloads] " in line and "completed" in line for line in hub.get_logs(0))
