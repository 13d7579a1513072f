import os
import uuid
from pathlib import Path
from typing import List, NamedTuple, Optional, Sequence

from . import config
from .loops import LoopPolicy


class Invocation(NamedTuple):
    args: List[str]
    # concat manifest to delete when the stream ends
    playlist_path: Optional[str] = None


def output_args(destination_url: str) -> List[str]:
    """Fixed encoding settings followed by the RTMP target."""
    return [
        # Video encoding
        "-c:v", "libx264",
        "-preset", config.FFMPEG_PRESET,
        "-maxrate", config.VIDEO_BITRATE,
        "-bufsize", config.BUFFER_SIZE,
        "-pix_fmt", config.PIXEL_FORMAT,
        "-g", config.KEYFRAME_INTERVAL,
        # Audio encoding
        "-c:a", "aac",
        "-b:a", config.AUDIO_BITRATE,
        "-ar", config.AUDIO_SAMPLE_RATE,
        # Output to RTMP
        "-f", "flv",
        destination_url,
    ]


def quote_concat_path(path: str) -> str:
    """
    Quote a path for an ffmpeg concat manifest.

    Inside single quotes nothing can be escaped, so each embedded quote closes
    the string, adds an escaped quote and reopens it.
    """
    return "'" + str(path).replace("'", "'\\''") + "'"


def write_playlist(paths: Sequence[str], repeats: int = 1, temp_dir: Optional[str] = None) -> str:
    """
    Write a concat manifest listing ``paths`` ``repeats`` times.

    ``repeats == -1`` writes the list once and ends with a line pointing at the
    manifest itself, which makes the concat demuxer start over indefinitely.
    """
    directory = Path(temp_dir or config.TEMP_DIR)
    directory.mkdir(parents=True, exist_ok=True)
    playlist_path = str((directory / f"playlist_{uuid.uuid4()}.txt").resolve())

    iterations = 1 if repeats == -1 else max(repeats, 1)
    lines = []
    for _ in range(iterations):
        for p in paths:
            lines.append(f"file {quote_concat_path(os.path.abspath(p))}")
    if repeats == -1:
        lines.append(f"file {quote_concat_path(playlist_path)}")

    with open(playlist_path, "w", encoding="utf-8") as f:
        f.write("\n".join(lines) + "\n")
    return playlist_path


def cleanup_playlist(path: Optional[str]) -> bool:
    if not path:
        return False
    try:
        os.unlink(path)
        return True
    except FileNotFoundError:
        return False


def build_invocation(items: Sequence[str], policy: Optional[LoopPolicy], destination_url: str,
                     temp_dir: Optional[str] = None) -> Invocation:
    """
    Build ffmpeg arguments for streaming ``items`` (file paths) to
    ``destination_url`` under ``policy``.

    - no policy: one pass over the single item
    - one item looped forever: native ``-stream_loop -1``
    - anything else: a concat manifest, repeated ``repeat_count`` times, or
      self-referencing when the loop is unbounded in passes
    """
    if not items:
        raise ValueError("at least one media item is required")

    if policy is None:
        return Invocation(["-re", "-i", str(items[0]), *output_args(destination_url)])

    if len(items) == 1 and policy.infinite:
        return Invocation([
            "-stream_loop", "-1",
            "-re",
            "-i", str(items[0]),
            *output_args(destination_url),
        ])

    repeats = policy.repeat_count if policy.repeat_count is not None else -1
    playlist_path = write_playlist(items, repeats, temp_dir=temp_dir)
    args = [
        "-f", "concat",
        "-safe", "0",
        "-re",
        "-i", playlist_path,
    ]
    if policy.duration_hours is not None:
        # output time limit; the registry also enforces it
        args += ["-t", str(int(policy.duration_hours * 3600))]
    args += output_args(destination_url)
    return Invocation(args, playlist_path)
