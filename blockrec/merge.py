#!/usr/bin/env python3
"""
Segment merge pipeline.

Validation keeps the caller's block order verbatim; that order is the
playback order of the result. Execution picks one of three paths:

- one segment: byte copy, no ffmpeg involved;
- primary: concat demuxer with stream copy (fast, needs matching codecs);
- fallback: concat filter with re-encode, written to a separate file so a
  failed primary artifact is never overwritten.

Only one merge runs at a time. ``MergeCoordinator`` rejects a second
request with ``MergeInProgress`` rather than queueing it.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import re
import shutil
import subprocess
import tempfile
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, Sequence

from blockrec.events import BroadcastHub
from blockrec.ffmpeg_io import concat_copy_args, concat_manifest, concat_reencode_args
from blockrec.segment_store import SegmentFile, SegmentStore

MERGE_EXECUTOR_MAX_WORKERS = 1
STDERR_TAIL_CHARS = 2000
FALLBACK_SUFFIX = "_reencoded"

_UNSAFE_NAME_CHARS = re.compile(r'[\\/:*?"<>|\x00-\x1f]')

Runner = Callable[..., subprocess.CompletedProcess]


class MergeStrategy(str, Enum):
    COPY = "copy"
    PRIMARY = "primary"
    FALLBACK = "fallback"


class MergeError(Exception):
    """Base class for merge failures."""


class NoValidSegments(MergeError):
    pass


class MergeInProgress(MergeError):
    pass


class MergeFailed(MergeError):
    """Both strategies failed; keeps each strategy's own error."""

    def __init__(self, primary_error: str, fallback_error: str) -> None:
        self.primary_error = primary_error
        self.fallback_error = fallback_error
        super().__init__(
            f"stream copy failed: {primary_error}; re-encode failed: {fallback_error}"
        )


class _StrategyError(Exception):
    pass


@dataclass(frozen=True)
class MergeResult:
    output_path: str
    size_bytes: int
    blocks_used: int
    strategy_used: MergeStrategy

    def to_dict(self) -> dict[str, Any]:
        # A single-segment copy is reported as primary (no re-encode) with a shortcut flag.
        shortcut = self.strategy_used is MergeStrategy.COPY
        return {
            "outputFile": self.output_path,
            "filename": Path(self.output_path).name,
            "fileSize": self.size_bytes,
            "blocksUsed": self.blocks_used,
            "strategyUsed": MergeStrategy.PRIMARY.value if shortcut else self.strategy_used.value,
            "shortcut": shortcut,
        }


def sanitize_project_name(name: str) -> str:
    """Return a file stem derived from ``name``, or "" if nothing usable remains."""
    cleaned = _UNSAFE_NAME_CHARS.sub("_", name or "").strip().strip(".")
    return cleaned


class MergePipeline:
    def __init__(
        self,
        store: SegmentStore,
        *,
        ffmpeg_path: str = "ffmpeg",
        output_extension: str = "mp4",
        rejected_marker: str = "[rejected]",
        fallback_audio: bool = True,
        video_codec: str = "libx264",
        audio_codec: str = "aac",
        runner: Runner = subprocess.run,
    ) -> None:
        self.store = store
        self.ffmpeg_path = ffmpeg_path
        self.output_extension = output_extension.lstrip(".") or "mp4"
        self.rejected_marker = rejected_marker
        self.fallback_audio = fallback_audio
        self.video_codec = video_codec
        self.audio_codec = audio_codec
        self._runner = runner
        self._log = logging.getLogger("merge")

    def validate(
        self,
        block_identifiers: Sequence[str],
        *,
        exclude_paths: Iterable[str] = (),
        modified_since: Optional[float] = None,
    ) -> list[SegmentFile]:
        """Resolve identifiers in caller order, skipping anything unusable.

        Files in ``exclude_paths`` and files modified at or after
        ``modified_since`` are treated as still being written.
        """
        excluded = {os.path.realpath(path) for path in exclude_paths if path}
        valid: list[SegmentFile] = []
        for identifier in block_identifiers:
            name = identifier.strip() if isinstance(identifier, str) else ""
            if not name:
                continue
            if name == self.rejected_marker:
                continue
            segment = self.store.resolve(name)
            if segment is None:
                self._log.info("Skipping missing segment %s", name)
                continue
            if os.path.realpath(segment.full_path) in excluded or (
                modified_since is not None and segment.mtime >= modified_since
            ):
                self._log.info("Skipping %s: still being recorded", name)
                continue
            valid.append(segment)
        if not valid:
            raise NoValidSegments("No valid video files to merge")
        return valid

    def execute(self, segments: Sequence[SegmentFile], project_name: str) -> MergeResult:
        if not segments:
            raise NoValidSegments("No valid video files to merge")
        stem = sanitize_project_name(project_name)
        if not stem:
            raise MergeError(f"Invalid project name {project_name!r}")

        if len(segments) == 1:
            source = Path(segments[0].full_path)
            output = self.store.root / f"{stem}{source.suffix}"
            self._copy_single(source, output)
            return self._result(output, 1, MergeStrategy.COPY)

        inputs = [segment.full_path for segment in segments]
        primary_output = self.store.root / f"{stem}.{self.output_extension}"
        fallback_output = self.store.root / f"{stem}{FALLBACK_SUFFIX}.{self.output_extension}"
        self._guard_output(primary_output, inputs)
        self._guard_output(fallback_output, inputs)

        self._log.info("Merging %d segments into %s", len(inputs), primary_output.name)
        try:
            self._run_primary(inputs, primary_output)
        except _StrategyError as primary_exc:
            primary_error = str(primary_exc)
            self._log.warning("Stream-copy merge failed, re-encoding instead: %s", primary_error)
            try:
                self._run_fallback(inputs, fallback_output)
            except _StrategyError as fallback_exc:
                self._log.error("Re-encode merge failed: %s", fallback_exc)
                raise MergeFailed(primary_error, str(fallback_exc)) from fallback_exc
            return self._result(fallback_output, len(inputs), MergeStrategy.FALLBACK)
        return self._result(primary_output, len(inputs), MergeStrategy.PRIMARY)

    def _guard_output(self, output: Path, inputs: Sequence[str]) -> None:
        target = os.path.realpath(output)
        if any(os.path.realpath(path) == target for path in inputs):
            raise MergeError(f"Output {output.name} would overwrite one of its segments")

    def _copy_single(self, source: Path, output: Path) -> None:
        try:
            shutil.copyfile(source, output)
        except OSError as exc:
            raise MergeError(f"Copy of {source.name} failed: {exc}") from exc
        self._log.info("Single segment copied: %s", output.name)

    def _run_primary(self, inputs: Sequence[str], output: Path) -> None:
        manifest_path: Optional[str] = None
        try:
            with tempfile.NamedTemporaryFile(
                "w",
                dir=self.store.root,
                prefix="concat_",
                suffix=".txt",
                delete=False,
                encoding="utf-8",
            ) as handle:
                manifest_path = handle.name
                handle.write(concat_manifest(inputs))
            self._run_ffmpeg(concat_copy_args(self.ffmpeg_path, manifest_path, str(output)), output)
        except OSError as exc:
            raise _StrategyError(f"unable to write concat manifest: {exc}") from exc
        finally:
            if manifest_path is not None:
                with contextlib.suppress(FileNotFoundError):
                    os.remove(manifest_path)

    def _run_fallback(self, inputs: Sequence[str], output: Path) -> None:
        cmd = concat_reencode_args(
            self.ffmpeg_path,
            inputs,
            str(output),
            audio=self.fallback_audio,
            video_codec=self.video_codec,
            audio_codec=self.audio_codec,
        )
        self._run_ffmpeg(cmd, output)

    def _run_ffmpeg(self, cmd: list[str], output: Path) -> None:
        self._log.debug("Running %s", " ".join(cmd))
        try:
            result = self._runner(cmd, capture_output=True, text=True, check=False)
        except FileNotFoundError as exc:
            raise _StrategyError(f"{self.ffmpeg_path} not found") from exc
        except OSError as exc:
            raise _StrategyError(f"unable to run {self.ffmpeg_path}: {exc}") from exc
        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            raise _StrategyError(
                f"ffmpeg exited with code {result.returncode}: {stderr[-STDERR_TAIL_CHARS:]}"
            )
        if not output.exists():
            raise _StrategyError(f"ffmpeg reported success but {output.name} is missing")

    def _result(self, output: Path, blocks_used: int, strategy: MergeStrategy) -> MergeResult:
        try:
            size = output.stat().st_size
        except OSError as exc:
            raise MergeError(f"Merged file {output.name} is not readable: {exc}") from exc
        self._log.info("Merge finished via %s: %s (%d bytes)", strategy.value, output.name, size)
        return MergeResult(
            output_path=str(output.resolve()),
            size_bytes=size,
            blocks_used=blocks_used,
            strategy_used=strategy,
        )


class MergeCoordinator:
    """Runs at most one merge at a time off the control loop."""

    def __init__(
        self,
        pipeline: MergePipeline,
        hub: BroadcastHub,
        *,
        exclusions: Callable[[], tuple[list[str], Optional[float]]] = lambda: ([], None),
        executor: ThreadPoolExecutor | None = None,
    ) -> None:
        self.pipeline = pipeline
        self.hub = hub
        self._exclusions = exclusions
        self._executor = executor or ThreadPoolExecutor(
            max_workers=MERGE_EXECUTOR_MAX_WORKERS,
            thread_name_prefix="merge",
        )
        self._in_flight: asyncio.Task | None = None
        self._log = logging.getLogger("merge")

    @property
    def busy(self) -> bool:
        return self._in_flight is not None and not self._in_flight.done()

    def begin(self, block_identifiers: Sequence[str], project_name: str) -> "asyncio.Task[MergeResult]":
        """Validate and launch a merge; must be called on the control loop."""
        if self.busy:
            raise MergeInProgress("Another merge is already running")
        paths, since = self._exclusions()
        segments = self.pipeline.validate(
            block_identifiers, exclude_paths=paths, modified_since=since
        )
        task = asyncio.get_running_loop().create_task(
            self._execute(segments, project_name), name="merge"
        )
        task.add_done_callback(self._consume_result)
        self._in_flight = task
        return task

    async def _execute(self, segments: list[SegmentFile], project_name: str) -> MergeResult:
        loop = asyncio.get_running_loop()
        try:
            result = await loop.run_in_executor(
                self._executor, self.pipeline.execute, segments, project_name
            )
        except MergeError as exc:
            self.hub.broadcast("error", {"message": f"Video merge failed: {exc}"})
            raise
        finally:
            self._in_flight = None
        self.hub.broadcast("video_merged", result.to_dict())
        self.hub.broadcast(
            "video_list",
            {"videos": [entry.to_dict() for entry in self.pipeline.store.list_segments()]},
        )
        return result

    def _consume_result(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None and not isinstance(exc, MergeError):
            self._log.error("Merge task crashed: %r", exc)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
