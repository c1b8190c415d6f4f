#!/usr/bin/env python3
"""
Recording session state machine.

States:
  IDLE -> STARTING -> RECORDING -> STOPPING -> IDLE
  STARTING -> IDLE and STOPPING -> IDLE when the backend call fails.

The transition helpers below are pure: they take the current session and
return the next one, raising ``SessionError`` subclasses for illegal moves.
``RecordingController`` owns the session value, performs the backend calls
and broadcasts. Commands only request a transition; the backend's
``RecordingStateChanged`` notification is what moves a session into
RECORDING or back to IDLE.

The file produced by the last stopped session is kept in ``last_segment``
until the next start is accepted, so callers can still refer to "the file
just recorded" after the session itself went idle.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Optional

from blockrec.obs_backend import (
    BackendError,
    BackendEvent,
    ConnectError,
    ConnectionClosed,
    ConnectionFailed,
    ConnectionOpened,
    RecordingBackend,
    RecordingStateChanged,
)

if TYPE_CHECKING:  # pragma: no cover - imports for type checkers
    from blockrec.control import ControlLoop
    from blockrec.events import BroadcastHub
    from blockrec.segment_store import SegmentStore


class SessionState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    RECORDING = "recording"
    STOPPING = "stopping"


class SessionError(Exception):
    """Base class for rejected session commands."""


class BackendUnavailable(SessionError):
    pass


class AlreadyRecording(SessionError):
    pass


class NoActiveSession(SessionError):
    pass


@dataclass(frozen=True)
class RecordingSession:
    block_index: int = 0
    block_text: str = ""
    state: SessionState = SessionState.IDLE
    start_time: Optional[float] = None
    segment_filename: Optional[str] = None
    segment_full_path: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "blockIndex": self.block_index,
            "blockText": self.block_text,
            "state": self.state.value,
            "startTime": self.start_time,
            "filename": self.segment_filename,
            "fullPath": self.segment_full_path,
        }


@dataclass(frozen=True)
class SegmentRef:
    filename: Optional[str]
    full_path: Optional[str]
    block_index: int


@dataclass
class BackendConnection:
    connected: bool = False
    address: str = ""
    last_error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"connected": self.connected}
        if self.address:
            payload["address"] = self.address
        if self.last_error and not self.connected:
            payload["error"] = self.last_error
        return payload


IDLE_SESSION = RecordingSession()


def begin_start(session: RecordingSession, block_index: int, block_text: str, now: float) -> RecordingSession:
    if session.state in (SessionState.STARTING, SessionState.RECORDING):
        raise AlreadyRecording(f"Block {session.block_index} is already recording")
    if session.state is SessionState.STOPPING:
        raise AlreadyRecording(f"Block {session.block_index} is still stopping")
    if block_index < 0:
        raise ValueError("block_index must be non-negative")
    return RecordingSession(
        block_index=block_index,
        block_text=block_text,
        state=SessionState.STARTING,
        start_time=now,
    )


def confirm_started(session: RecordingSession, output_path: Optional[str]) -> RecordingSession:
    if session.state is not SessionState.STARTING:
        raise SessionError(f"Cannot confirm start from {session.state.value}")
    if output_path:
        return replace(
            session,
            state=SessionState.RECORDING,
            segment_full_path=output_path,
            segment_filename=Path(output_path).name,
        )
    return replace(session, state=SessionState.RECORDING)


def begin_stop(session: RecordingSession) -> RecordingSession:
    if session.state is not SessionState.RECORDING:
        raise NoActiveSession("No active recording session")
    return replace(session, state=SessionState.STOPPING)


def confirm_stopped(session: RecordingSession, filename: Optional[str], full_path: Optional[str]) -> SegmentRef:
    if session.state not in (SessionState.RECORDING, SessionState.STOPPING):
        raise SessionError(f"Cannot confirm stop from {session.state.value}")
    return SegmentRef(filename=filename, full_path=full_path, block_index=session.block_index)


def abandon(session: RecordingSession) -> RecordingSession:
    return IDLE_SESSION


def format_timecode(seconds: float) -> str:
    seconds = max(0.0, seconds)
    millis = int(round(seconds * 1000))
    hours, rem = divmod(millis, 3_600_000)
    minutes, rem = divmod(rem, 60_000)
    secs, millis = divmod(rem, 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}.{millis:03d}"


class RecordingController:
    """Owns the connection record and the single recording session."""

    def __init__(
        self,
        backend: RecordingBackend,
        store: "SegmentStore",
        hub: "BroadcastHub",
        *,
        output_dir: Path | str,
        default_address: str = "ws://localhost:4455",
        default_password: str = "",
        test_duration: float = 5.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.backend = backend
        self.store = store
        self.hub = hub
        self.output_dir = Path(output_dir)
        self.default_address = default_address
        self.default_password = default_password
        self.test_duration = float(test_duration)
        self._clock = clock
        self.connection = BackendConnection()
        self.session: RecordingSession = IDLE_SESSION
        self.last_segment: Optional[SegmentRef] = None
        self._control: Optional["ControlLoop"] = None
        self._test_stop: Optional[asyncio.TimerHandle] = None
        self._log = logging.getLogger("session")

    def bind(self, control: "ControlLoop") -> None:
        """Route backend notifications through ``control``."""
        self._control = control

        def _sink(event: BackendEvent) -> None:
            control.post(lambda: self.handle_backend_event(event))

        self.backend.subscribe(_sink)

    # --- Snapshots ---
    def status_payload(self) -> dict[str, Any]:
        return self.connection.to_dict()

    def merge_exclusions(self) -> tuple[list[str], Optional[float]]:
        """Files the backend may still be writing.

        Returns known paths plus a modification-time cutoff used when the
        backend has not reported the path yet (obs-websocket only sends it
        on stop). Nothing is excluded while idle.
        """
        if self.session.state is SessionState.IDLE:
            return [], None
        if self.session.segment_full_path:
            return [self.session.segment_full_path], None
        return [], self.session.start_time

    # --- Connection ---
    async def connect(self, address: Optional[str] = None, password: Optional[str] = None) -> bool:
        address = address or self.default_address
        password = password if password is not None else self.default_password
        try:
            await self.backend.connect(address, password)
        except ConnectError as exc:
            self._log.error("OBS connection to %s failed: %s", address, exc)
            self.connection = BackendConnection(connected=False, address=address, last_error=str(exc))
            self.hub.broadcast("obs_status", self.connection.to_dict())
            return False

        self.connection = BackendConnection(connected=True, address=address)
        self._log.info("OBS connected: %s", address)
        self.hub.broadcast("obs_status", self.connection.to_dict())
        await self._reconcile_after_connect()
        return True

    async def _reconcile_after_connect(self) -> None:
        if self.session.state is not SessionState.RECORDING:
            return
        try:
            active = await self.backend.query_recording_active()
        except BackendError as exc:
            self._log.warning("Unable to query recording state after reconnect: %s", exc)
            return
        if not active:
            self._log.warning(
                "Block %s finished while OBS was disconnected; resolving from output directory",
                self.session.block_index,
            )
            self._finish_session(RecordingStateChanged(active=False))

    async def disconnect(self) -> None:
        self._cancel_test_stop()
        if self.backend.connected:
            try:
                await self.backend.disconnect()
            except (BackendError, OSError) as exc:
                self._log.error("Error disconnecting from OBS: %s", exc)
        if self.connection.connected:
            self.connection = replace(self.connection, connected=False)
            self.hub.broadcast("obs_status", self.connection.to_dict())

    # --- Commands ---
    async def start_recording(self, block_index: int, block_text: str) -> RecordingSession:
        if not self.connection.connected:
            raise BackendUnavailable("OBS is not connected")
        starting = begin_start(self.session, block_index, block_text, self._clock())
        if await self.backend.query_recording_active():
            raise AlreadyRecording("Recording is already active in OBS")

        self.session = starting
        self.last_segment = None
        try:
            await self.backend.set_output_directory(str(self.output_dir))
            await self.backend.start_recording()
        except BackendError as exc:
            self._log.error("Start of block %s failed: %s", block_index, exc)
            self.session = abandon(self.session)
            raise
        self._log.info("Start requested for block %s", block_index)
        return self.session

    async def stop_recording(self) -> Optional[RecordingSession]:
        if not self.connection.connected:
            self._log.warning("Stop requested while OBS is disconnected; ignoring")
            return None
        self.session = begin_stop(self.session)
        try:
            output_path = await self.backend.stop_recording()
        except BackendError as exc:
            self._log.error("Stop of block %s failed: %s", self.session.block_index, exc)
            self.session = abandon(self.session)
            raise
        if output_path and self.session.state is SessionState.STOPPING:
            self.session = replace(
                self.session,
                segment_full_path=output_path,
                segment_filename=Path(output_path).name,
            )
        self._log.info("Stop requested for block %s", self.session.block_index)
        return self.session

    async def test_recording(self) -> RecordingSession:
        session = await self.start_recording(0, "test")
        self._cancel_test_stop()
        loop = asyncio.get_running_loop()
        self._test_stop = loop.call_later(self.test_duration, self._post_test_stop)
        return session

    def _post_test_stop(self) -> None:
        self._test_stop = None
        if self._control is not None:
            self._control.post(self._delayed_stop)
        else:
            asyncio.get_running_loop().create_task(self._delayed_stop())

    async def _delayed_stop(self) -> None:
        try:
            await self.stop_recording()
        except (SessionError, BackendError) as exc:
            self._log.warning("Test recording stop failed: %s", exc)

    def _cancel_test_stop(self) -> None:
        if self._test_stop is not None:
            self._test_stop.cancel()
            self._test_stop = None

    async def refresh_settings(self) -> dict[str, Any]:
        if not self.connection.connected:
            raise BackendUnavailable("OBS is not connected")
        settings = await self.backend.query_settings()
        self.hub.broadcast("obs_settings", settings)
        return settings

    # --- Backend notifications ---
    async def handle_backend_event(self, event: BackendEvent) -> None:
        if isinstance(event, ConnectionOpened):
            if not self.connection.connected and self.backend.connected:
                self.connection = replace(self.connection, connected=True, last_error=None)
                self.hub.broadcast("obs_status", self.connection.to_dict())
        elif isinstance(event, ConnectionClosed):
            # A close from a replaced connection arrives after the new one is up.
            if self.backend.connected:
                return
            self._connection_lost(None)
        elif isinstance(event, ConnectionFailed):
            self._connection_lost(event.message)
        elif isinstance(event, RecordingStateChanged):
            if event.active:
                self._on_started(event)
            else:
                self._on_stopped(event)

    def _connection_lost(self, error: Optional[str]) -> None:
        was_connected = self.connection.connected
        self.connection = replace(self.connection, connected=False, last_error=error or self.connection.last_error)
        if error:
            self._log.error("OBS connection error: %s", error)
        elif was_connected:
            self._log.info("OBS connection closed")
        if was_connected or error:
            self.hub.broadcast("obs_status", self.connection.to_dict())
        if self.session.state in (SessionState.STARTING, SessionState.STOPPING):
            self._log.warning(
                "Abandoning block %s (%s) after connection loss",
                self.session.block_index,
                self.session.state.value,
            )
            self.session = abandon(self.session)

    def _on_started(self, event: RecordingStateChanged) -> None:
        state = self.session.state
        if state is SessionState.RECORDING:
            if event.output_path and not self.session.segment_full_path:
                self.session = replace(
                    self.session,
                    segment_full_path=event.output_path,
                    segment_filename=Path(event.output_path).name,
                )
            return
        if state is not SessionState.STARTING:
            self._log.info("Ignoring recording start not requested by this server")
            return
        self.session = confirm_started(self.session, event.output_path)
        self._log.info(
            "Recording started: block %s -> %s",
            self.session.block_index,
            self.session.segment_filename or "<unknown file>",
        )
        self.hub.broadcast(
            "recording_started",
            {
                "filename": self.session.segment_filename,
                "fullPath": self.session.segment_full_path,
                "blockIndex": self.session.block_index,
                "startTime": self.session.start_time,
            },
        )

    def _on_stopped(self, event: RecordingStateChanged) -> None:
        state = self.session.state
        if state is SessionState.STARTING:
            self._log.warning("OBS stopped before block %s started", self.session.block_index)
            block_index = self.session.block_index
            self.session = abandon(self.session)
            self.hub.broadcast("error", {"message": f"Recording of block {block_index} did not start"})
            return
        if state not in (SessionState.RECORDING, SessionState.STOPPING):
            self._log.info("Ignoring recording stop with no active session")
            return
        self._finish_session(event)

    def _finish_session(self, event: RecordingStateChanged) -> None:
        session = self.session
        filename, full_path = self._resolve_segment(session, event)
        file_exists = bool(full_path) and os.path.isfile(full_path)
        if event.size_bytes is not None:
            output_bytes = event.size_bytes
        elif file_exists:
            output_bytes = os.path.getsize(full_path)
        else:
            output_bytes = 0
        elapsed = self._clock() - session.start_time if session.start_time is not None else 0.0
        timecode = event.timecode or format_timecode(elapsed)

        self.last_segment = confirm_stopped(session, filename, full_path)
        self.session = IDLE_SESSION
        if not file_exists:
            self._log.warning("Recorded file for block %s not found at %s", session.block_index, full_path)
        self._log.info("Recording stopped: block %s -> %s", session.block_index, filename)
        self.hub.broadcast(
            "recording_stopped",
            {
                "filename": filename,
                "fullPath": full_path,
                "blockIndex": session.block_index,
                "outputBytes": output_bytes,
                "timecode": timecode,
                "fileExists": file_exists,
                "duration": int(elapsed * 1000),
            },
        )

    def _resolve_segment(self, session: RecordingSession, event: RecordingStateChanged) -> tuple[Optional[str], Optional[str]]:
        full_path = event.output_path or session.segment_full_path
        if full_path:
            return Path(full_path).name, full_path
        newest = self.store.newest_segment()
        if newest is None:
            return None, None
        self._log.warning("OBS did not report an output path; using newest file %s", newest.name)
        return newest.name, newest.full_path
