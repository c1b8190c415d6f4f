"""Shared helpers for building ffmpeg command lines."""

from __future__ import annotations

from typing import Sequence

DEFAULT_LOG_LEVEL = "error"


def _base_args(ffmpeg: str, log_level: str) -> list[str]:
    return [ffmpeg, "-hide_banner", "-loglevel", log_level, "-y"]


def concat_manifest(paths: Sequence[str]) -> str:
    """Return a concat-demuxer manifest listing ``paths`` in the given order.

    Single quotes inside a path are closed, escaped and reopened, which is
    the only quoting the concat demuxer understands.
    """

    lines = []
    for path in paths:
        escaped = path.replace("'", "'\\''")
        lines.append(f"file '{escaped}'")
    return "\n".join(lines) + "\n"


def concat_copy_args(
    ffmpeg: str,
    manifest_path: str,
    output_path: str,
    *,
    log_level: str = DEFAULT_LOG_LEVEL,
) -> list[str]:
    """Stream-copy concatenation through the concat demuxer (no re-encode)."""

    return [
        *_base_args(ffmpeg, log_level),
        "-f",
        "concat",
        "-safe",
        "0",
        "-i",
        manifest_path,
        "-c",
        "copy",
        output_path,
    ]


def concat_filter_graph(count: int, *, audio: bool = True) -> str:
    streams = []
    for index in range(count):
        streams.append(f"[{index}:v:0]")
        if audio:
            streams.append(f"[{index}:a:0]")
    outputs = "[outv][outa]" if audio else "[outv]"
    return f"{''.join(streams)}concat=n={count}:v=1:a={1 if audio else 0}{outputs}"


def concat_reencode_args(
    ffmpeg: str,
    inputs: Sequence[str],
    output_path: str,
    *,
    audio: bool = True,
    video_codec: str = "libx264",
    audio_codec: str = "aac",
    log_level: str = DEFAULT_LOG_LEVEL,
) -> list[str]:
    """Concatenate through the concat filter, re-encoding every stream.

    Each input is passed with its own ``-i`` in caller order; the filter
    graph references them by index so playback order follows ``inputs``.
    """

    if not inputs:
        raise ValueError("inputs must not be empty")
    cmd = _base_args(ffmpeg, log_level)
    for path in inputs:
        cmd.extend(["-i", path])
    cmd.extend(["-filter_complex", concat_filter_graph(len(inputs), audio=audio), "-map", "[outv]"])
    if audio:
        cmd.extend(["-map", "[outa]"])
    cmd.extend(["-c:v", video_codec, "-preset", "veryfast"])
    if audio:
        cmd.extend(["-c:a", audio_codec])
    cmd.append(output_path)
    return cmd
