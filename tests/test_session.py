from __future__ import annotations

import asyncio
import logging
import os

import pytest

from blockrec.obs_backend import (
    BackendError,
    ConnectError,
    ConnectionFailed,
    RecordingStateChanged,
)
from blockrec.session import (
    AlreadyRecording,
    BackendUnavailable,
    NoActiveSession,
    RecordingSession,
    SessionError,
    SessionState,
    begin_start,
    begin_stop,
    confirm_started,
    format_timecode,
)

pytest_plugins = ("aiohttp.pytest_plugin",)


async def _start_block(harness, tmp_path, index=0, text="intro", name="block_1.mkv"):
    path = tmp_path / name
    await harness.run(lambda: harness.controller.start_recording(index, text))
    await harness.emit(RecordingStateChanged(active=True, output_path=str(path)))
    return path


def test_transitions_follow_success_path():
    idle = RecordingSession()
    starting = begin_start(idle, 3, "intro", 10.0)
    assert starting.state is SessionState.STARTING
    assert starting.start_time == 10.0

    recording = confirm_started(starting, "/videos/block_4.mkv")
    assert recording.state is SessionState.RECORDING
    assert recording.segment_filename == "block_4.mkv"

    stopping = begin_stop(recording)
    assert stopping.state is SessionState.STOPPING
    assert stopping.segment_full_path == "/videos/block_4.mkv"


def test_transitions_reject_illegal_moves():
    idle = RecordingSession()
    with pytest.raises(NoActiveSession):
        begin_stop(idle)
    with pytest.raises(SessionError):
        confirm_started(idle, None)

    starting = begin_start(idle, 0, "", 1.0)
    with pytest.raises(AlreadyRecording):
        begin_start(starting, 1, "", 2.0)
    with pytest.raises(NoActiveSession):
        begin_stop(starting)


def test_format_timecode():
    assert format_timecode(0) == "00:00:00.000"
    assert format_timecode(3725.5) == "01:02:05.500"


@pytest.mark.asyncio
async def test_start_requires_connection(harness):
    harness.start()
    with pytest.raises(BackendUnavailable):
        await harness.run(lambda: harness.controller.start_recording(0, "intro"))
    assert harness.controller.session.state is SessionState.IDLE
    assert "start" not in harness.backend.call_names()
    await harness.stop()


@pytest.mark.asyncio
async def test_start_waits_for_backend_confirmation(harness, tmp_path):
    harness.start()
    await harness.connect()
    harness.events()

    session = await harness.run(lambda: harness.controller.start_recording(2, "chapter two"))
    assert session.state is SessionState.STARTING
    assert harness.backend.call_names()[-2:] == ["set_output_directory", "start"]
    assert ("set_output_directory", str(tmp_path)) in harness.backend.calls
    assert harness.events() == []

    path = tmp_path / "block_3_2024.mkv"
    await harness.emit(RecordingStateChanged(active=True, output_path=str(path)))

    assert harness.controller.session.state is SessionState.RECORDING
    events = harness.events()
    assert [event["type"] for event in events] == ["recording_started"]
    assert events[0]["data"]["filename"] == "block_3_2024.mkv"
    assert events[0]["data"]["fullPath"] == str(path)
    assert events[0]["data"]["blockIndex"] == 2
    await harness.stop()


@pytest.mark.asyncio
async def test_second_start_is_rejected_and_keeps_original_session(harness, tmp_path):
    harness.start()
    await harness.connect()
    await _start_block(harness, tmp_path, index=4, text="first")
    original = harness.controller.session

    harness.now[0] += 30.0
    with pytest.raises(AlreadyRecording):
        await harness.run(lambda: harness.controller.start_recording(5, "second"))

    assert harness.controller.session == original
    assert harness.controller.session.block_index == 4
    assert harness.controller.session.start_time == 1_000.0
    assert harness.backend.call_names().count("start") == 1
    await harness.stop()


@pytest.mark.asyncio
async def test_start_while_starting_is_rejected(harness):
    harness.start()
    await harness.connect()
    await harness.run(lambda: harness.controller.start_recording(0, "a"))
    with pytest.raises(AlreadyRecording):
        await harness.run(lambda: harness.controller.start_recording(1, "b"))
    assert harness.controller.session.block_index == 0
    await harness.stop()


@pytest.mark.asyncio
async def test_start_rejected_when_backend_already_recording(harness):
    harness.start()
    await harness.connect()
    harness.backend.active = True
    with pytest.raises(AlreadyRecording):
        await harness.run(lambda: harness.controller.start_recording(0, "a"))
    assert harness.controller.session.state is SessionState.IDLE
    await harness.stop()


@pytest.mark.asyncio
async def test_start_failure_rolls_back_to_idle(harness):
    harness.start()
    await harness.connect()
    harness.backend.failures["start"] = BackendError("StartRecord failed (500): output busy")
    with pytest.raises(BackendError):
        await harness.run(lambda: harness.controller.start_recording(0, "a"))
    assert harness.controller.session.state is SessionState.IDLE
    await harness.stop()


@pytest.mark.asyncio
async def test_stop_while_disconnected_is_a_noop(harness, tmp_path, caplog):
    harness.start()
    await harness.connect()
    await _start_block(harness, tmp_path)
    harness.backend.drop_connection()
    await harness.control.drain()
    assert harness.controller.connection.connected is False

    with caplog.at_level(logging.WARNING, logger="session"):
        result = await harness.run(harness.controller.stop_recording)

    assert result is None
    assert harness.controller.session.state is SessionState.RECORDING
    assert "stop" not in harness.backend.call_names()
    assert "disconnected" in caplog.text
    await harness.stop()


@pytest.mark.asyncio
async def test_stop_without_session_is_rejected(harness):
    harness.start()
    await harness.connect()
    with pytest.raises(NoActiveSession):
        await harness.run(harness.controller.stop_recording)
    await harness.stop()


@pytest.mark.asyncio
async def test_stop_confirmation_reports_file(harness, tmp_path):
    harness.start()
    await harness.connect()
    path = await _start_block(harness, tmp_path, index=1, name="block_2.mkv")
    path.write_bytes(b"x" * 2048)
    harness.events()

    harness.now[0] += 65.25
    stopping = await harness.run(harness.controller.stop_recording)
    assert stopping.state is SessionState.STOPPING
    assert harness.events() == []

    await harness.emit(RecordingStateChanged(active=False, output_path=str(path)))

    events = harness.events()
    assert [event["type"] for event in events] == ["recording_stopped"]
    data = events[0]["data"]
    assert data["filename"] == "block_2.mkv"
    assert data["fullPath"] == str(path)
    assert data["blockIndex"] == 1
    assert data["outputBytes"] == 2048
    assert data["fileExists"] is True
    assert data["timecode"] == "00:01:05.250"
    assert harness.controller.session.state is SessionState.IDLE
    last = harness.controller.last_segment
    assert last is not None and last.filename == "block_2.mkv" and last.block_index == 1
    await harness.stop()


@pytest.mark.asyncio
async def test_stop_prefers_event_values(harness, tmp_path):
    harness.start()
    await harness.connect()
    path = await _start_block(harness, tmp_path)
    await harness.run(harness.controller.stop_recording)
    harness.events()

    await harness.emit(
        RecordingStateChanged(active=False, output_path=str(path), size_bytes=99, timecode="00:00:07.000")
    )

    data = harness.events()[0]["data"]
    assert data["outputBytes"] == 99
    assert data["timecode"] == "00:00:07.000"
    assert data["fileExists"] is False
    await harness.stop()


@pytest.mark.asyncio
async def test_stop_uses_start_path_before_directory_scan(harness, tmp_path):
    harness.start()
    await harness.connect()
    path = await _start_block(harness, tmp_path, name="block_1.mkv")
    path.write_bytes(b"a")
    newer = tmp_path / "unrelated.mkv"
    newer.write_bytes(b"b")
    os.utime(path, (100, 100))
    os.utime(newer, (200, 200))

    await harness.run(harness.controller.stop_recording)
    harness.events()
    await harness.emit(RecordingStateChanged(active=False))

    data = harness.events()[0]["data"]
    assert data["filename"] == "block_1.mkv"
    await harness.stop()


@pytest.mark.asyncio
async def test_stop_falls_back_to_newest_file(harness, tmp_path):
    harness.start()
    await harness.connect()
    await harness.run(lambda: harness.controller.start_recording(0, "a"))
    await harness.emit(RecordingStateChanged(active=True))
    older = tmp_path / "block_1_old.mkv"
    newest = tmp_path / "block_1_new.mp4"
    ignored = tmp_path / "notes.txt"
    for item in (older, newest, ignored):
        item.write_bytes(b"data")
    os.utime(older, (100, 100))
    os.utime(newest, (200, 200))
    os.utime(ignored, (300, 300))

    await harness.run(harness.controller.stop_recording)
    harness.events()
    await harness.emit(RecordingStateChanged(active=False))

    data = harness.events()[0]["data"]
    assert data["filename"] == "block_1_new.mp4"
    assert data["fileExists"] is True
    await harness.stop()


@pytest.mark.asyncio
async def test_started_always_precedes_stopped(harness, tmp_path):
    harness.backend.echo_events = True
    harness.backend.start_path = str(tmp_path / "block_1.mkv")
    harness.start()
    await harness.connect()
    harness.events()

    await harness.run(lambda: harness.controller.start_recording(0, "a"))
    await harness.control.drain()
    await harness.run(harness.controller.stop_recording)
    await harness.control.drain()

    assert harness.event_types() == ["recording_started", "recording_stopped"]
    await harness.stop()


@pytest.mark.asyncio
async def test_connection_loss_abandons_starting_session(harness):
    harness.start()
    await harness.connect()
    await harness.run(lambda: harness.controller.start_recording(0, "a"))
    harness.events()

    await harness.emit(ConnectionFailed("socket reset"))

    assert harness.controller.session.state is SessionState.IDLE
    events = harness.events()
    assert events[0]["type"] == "obs_status"
    assert events[0]["data"] == {"connected": False, "address": "ws://obs.test:4455", "error": "socket reset"}

    # A late confirmation for the abandoned start must not resurrect it.
    await harness.emit(RecordingStateChanged(active=True))
    assert harness.controller.session.state is SessionState.IDLE
    await harness.stop()


@pytest.mark.asyncio
async def test_reconnect_resolves_block_finished_while_disconnected(harness, tmp_path):
    harness.start()
    await harness.connect()
    path = await _start_block(harness, tmp_path)
    path.write_bytes(b"done")
    harness.backend.drop_connection()
    harness.backend.active = False
    await harness.control.drain()
    harness.events()

    await harness.connect()

    types = harness.event_types()
    assert types == ["obs_status", "recording_stopped"]
    assert harness.controller.session.state is SessionState.IDLE
    assert harness.controller.last_segment.filename == path.name
    await harness.stop()


@pytest.mark.asyncio
async def test_connect_failure_is_broadcast(harness):
    harness.backend.failures["connect"] = ConnectError("Unable to connect to ws://obs.test:4455")
    harness.start()

    ok = await harness.run(lambda: harness.controller.connect("ws://obs.test:4455", "bad"))

    assert ok is False
    assert harness.controller.connection.connected is False
    event = harness.events()[0]
    assert event["type"] == "obs_status"
    assert event["data"]["connected"] is False
    assert "Unable to connect" in event["data"]["error"]
    await harness.stop()


@pytest.mark.asyncio
async def test_refresh_settings_broadcasts_backend_metadata(harness):
    harness.start()
    await harness.connect()
    harness.events()

    settings = await harness.run(harness.controller.refresh_settings)

    assert settings["scenes"] == ["Main", "BRB"]
    events = harness.events()
    assert events[0]["type"] == "obs_settings"
    assert events[0]["data"]["recordDirectory"] == "/tmp"
    await harness.stop()


@pytest.mark.asyncio
async def test_test_recording_stops_after_delay(harness, tmp_path):
    harness.controller.test_duration = 0.05
    harness.backend.echo_events = True
    harness.backend.start_path = str(tmp_path / "test.mkv")
    harness.start()
    await harness.connect()
    harness.events()

    await harness.run(harness.controller.test_recording)
    await asyncio.sleep(0.2)
    await harness.control.drain()

    assert harness.backend.call_names().count("stop") == 1
    assert harness.event_types() == ["recording_started", "recording_stopped"]
    await harness.stop()


@pytest.mark.asyncio
async def test_test_recording_stop_failure_is_only_logged(harness, caplog):
    harness.controller.test_duration = 0.05
    harness.start()
    await harness.connect()

    with caplog.at_level(logging.WARNING, logger="session"):
        await harness.run(harness.controller.test_recording)
        # No confirmation arrives, so the session is still starting when the timer fires.
        await asyncio.sleep(0.2)
        await harness.control.drain()

    assert "Test recording stop failed" in caplog.text
    assert harness.controller.session.state is SessionState.STARTING
    await harness.stop()


@pytest.mark.asyncio
async def test_stop_failure_abandons_session(harness, tmp_path):
    harness.start()
    await harness.connect()
    await _start_block(harness, tmp_path)
    harness.backend.failures["stop"] = BackendError("StopRecord failed (501): output not active")

    with pytest.raises(BackendError):
        await harness.run(harness.controller.stop_recording)

    assert harness.controller.session.state is SessionState.IDLE
    await harness.stop()


@pytest.mark.asyncio
async def test_stop_response_path_is_used_before_directory_scan(harness, tmp_path):
    harness.start()
    await harness.connect()
    await harness.run(lambda: harness.controller.start_recording(0, "a"))
    await harness.emit(RecordingStateChanged(active=True))
    reported = tmp_path / "block_1_reported.mkv"
    reported.write_bytes(b"abc")
    newer = tmp_path / "unrelated.mkv"
    newer.write_bytes(b"zz")
    os.utime(reported, (100, 100))
    os.utime(newer, (200, 200))
    harness.backend.stop_path = str(reported)

    stopping = await harness.run(harness.controller.stop_recording)
    assert stopping.segment_filename == "block_1_reported.mkv"
    harness.events()
    await harness.emit(RecordingStateChanged(active=False))

    data = harness.events()[0]["data"]
    assert data["filename"] == "block_1_reported.mkv"
    assert data["outputBytes"] == 3
    await harness.stop()
