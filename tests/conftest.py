from __future__ import annotations

import copy
import subprocess
from pathlib import Path
from typing import Any

import pytest

from blockrec import config as config_module
from blockrec.control import ControlLoop
from blockrec.events import BroadcastHub, Listener
from blockrec.obs_backend import (
    ConnectionClosed,
    ConnectionOpened,
    RecordingBackend,
    RecordingStateChanged,
)
from blockrec.segment_store import SegmentStore
from blockrec.session import RecordingController


class FakeBackend(RecordingBackend):
    """In-memory recording backend; events are emitted only when asked."""

    def __init__(self, *, echo_events: bool = False) -> None:
        super().__init__()
        self._connected = False
        self.echo_events = echo_events
        self.active = False
        self.calls: list[tuple[Any, ...]] = []
        self.failures: dict[str, Exception] = {}
        self.start_path: str | None = None
        self.stop_path: str | None = None
        self.settings: dict[str, Any] = {
            "currentScene": "Main",
            "scenes": ["Main", "BRB"],
            "sources": [{"name": "Camera", "kind": "v4l2_input"}],
            "recordDirectory": "/tmp",
        }

    def _maybe_fail(self, name: str) -> None:
        exc = self.failures.get(name)
        if exc is not None:
            raise exc

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self, address: str, password: str) -> None:
        self.calls.append(("connect", address, password))
        self._maybe_fail("connect")
        self._connected = True
        self._emit(ConnectionOpened())

    async def disconnect(self) -> None:
        self.calls.append(("disconnect",))
        self._connected = False
        self._emit(ConnectionClosed())

    async def start_recording(self) -> None:
        self.calls.append(("start",))
        self._maybe_fail("start")
        self.active = True
        if self.echo_events:
            self._emit(RecordingStateChanged(active=True, output_path=self.start_path))

    async def stop_recording(self) -> str | None:
        self.calls.append(("stop",))
        self._maybe_fail("stop")
        self.active = False
        if self.echo_events:
            self._emit(RecordingStateChanged(active=False, output_path=self.stop_path))
        return self.stop_path

    async def set_output_directory(self, path: str) -> None:
        self.calls.append(("set_output_directory", path))
        self._maybe_fail("set_output_directory")

    async def query_recording_active(self) -> bool:
        self.calls.append(("query_recording_active",))
        self._maybe_fail("query_recording_active")
        return self.active

    async def query_settings(self) -> dict[str, Any]:
        self.calls.append(("query_settings",))
        self._maybe_fail("query_settings")
        return dict(self.settings)

    def emit(self, event) -> None:
        self._emit(event)

    def drop_connection(self) -> None:
        self._connected = False
        self._emit(ConnectionClosed())

    def call_names(self) -> list[str]:
        return [call[0] for call in self.calls]


class FakeFfmpeg:
    """Stand-in for subprocess.run that concatenates input bytes in order."""

    def __init__(self, *, fail_primary: bool = False, fail_fallback: bool = False) -> None:
        self.fail_primary = fail_primary
        self.fail_fallback = fail_fallback
        self.calls: list[list[str]] = []
        self.manifests: list[str] = []

    @staticmethod
    def is_fallback(cmd: list[str]) -> bool:
        return "-filter_complex" in cmd

    @staticmethod
    def inputs_of(cmd: list[str]) -> list[str]:
        return [cmd[i + 1] for i, arg in enumerate(cmd) if arg == "-i"]

    def __call__(self, cmd, **kwargs):
        cmd = list(cmd)
        self.calls.append(cmd)
        output = Path(cmd[-1])
        if self.is_fallback(cmd):
            if self.fail_fallback:
                return subprocess.CompletedProcess(cmd, 1, "", "Error while filtering: fallback broke")
            sources = self.inputs_of(cmd)
        else:
            manifest = Path(self.inputs_of(cmd)[0])
            text = manifest.read_text(encoding="utf-8")
            self.manifests.append(text)
            if self.fail_primary:
                output.write_bytes(b"partial")
                return subprocess.CompletedProcess(cmd, 1, "", "Non-monotonous DTS; codec mismatch")
            sources = [line[len("file '"):-1] for line in text.splitlines() if line]
        output.write_bytes(b"".join(Path(src).read_bytes() for src in sources))
        return subprocess.CompletedProcess(cmd, 0, "", "")


class Harness:
    def __init__(self, tmp_path: Path, backend: FakeBackend, *, test_duration: float = 5.0) -> None:
        self.now = [1_000.0]
        self.output_dir = tmp_path
        self.backend = backend
        self.store = SegmentStore(tmp_path, [".mp4", ".mkv"])
        self.hub = BroadcastHub()
        self.controller = RecordingController(
            backend,
            self.store,
            self.hub,
            output_dir=tmp_path,
            default_address="ws://obs.test:4455",
            default_password="secret",
            test_duration=test_duration,
            clock=lambda: self.now[0],
        )
        self.control = ControlLoop()
        self.controller.bind(self.control)
        self.listener: Listener = self.hub.attach()

    def start(self) -> None:
        self.control.start()

    async def stop(self) -> None:
        await self.control.stop()

    async def connect(self) -> None:
        await self.control.submit(self.controller.connect)

    async def run(self, operation):
        return await self.control.submit(operation)

    async def emit(self, event) -> None:
        self.backend.emit(event)
        await self.control.drain()

    def events(self) -> list[dict[str, Any]]:
        collected = []
        while not self.listener.queue.empty():
            collected.append(self.listener.queue.get_nowait())
        return collected

    def event_types(self) -> list[str]:
        return [event["type"] for event in self.events()]


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def harness(tmp_path, fake_backend) -> Harness:
    return Harness(tmp_path, fake_backend)


@pytest.fixture
def app_config(tmp_path) -> dict[str, Any]:
    cfg = copy.deepcopy(config_module._DEFAULTS)
    cfg["paths"]["output_dir"] = str(tmp_path / "videos")
    cfg["recording"]["video_extensions"] = [".mp4", ".mkv"]
    return cfg


@pytest.fixture
def fake_ffmpeg() -> FakeFfmpeg:
    return FakeFfmpeg()
