"""Maps control-channel messages onto session and merge operations."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping

from blockrec.control import ControlLoop
from blockrec.events import BroadcastHub, Listener
from blockrec.merge import MergeCoordinator, MergeError, sanitize_project_name
from blockrec.obs_backend import BackendError
from blockrec.session import RecordingController, SessionError

Handler = Callable[[Mapping[str, Any], Listener], Awaitable[Any]]


class InvalidCommand(Exception):
    """Raised for malformed or unknown control messages."""


def parse_message(raw: str | bytes) -> dict[str, Any]:
    try:
        message = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise InvalidCommand(f"Malformed message: {exc}") from exc
    if not isinstance(message, dict):
        raise InvalidCommand("Message must be a JSON object")
    msg_type = message.get("type")
    if not isinstance(msg_type, str) or not msg_type:
        raise InvalidCommand("Message is missing a type")
    data = message.get("data")
    if data is None:
        message["data"] = {}
    elif not isinstance(data, dict):
        raise InvalidCommand("Message data must be an object")
    return message


def _optional_str(data: Mapping[str, Any], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise InvalidCommand(f"{key} must be a string")
    return value


def _required_str(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str):
        raise InvalidCommand(f"{key} must be a string")
    return value


def _required_index(data: Mapping[str, Any], key: str) -> int:
    value = data.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidCommand(f"{key} must be an integer")
    if value < 0:
        raise InvalidCommand(f"{key} must be non-negative")
    return value


class CommandRouter:
    def __init__(
        self,
        control: ControlLoop,
        controller: RecordingController,
        merges: MergeCoordinator,
        hub: BroadcastHub,
    ) -> None:
        self.control = control
        self.controller = controller
        self.merges = merges
        self.hub = hub
        self._log = logging.getLogger("commands")
        self._handlers: dict[str, Handler] = {
            "connect_obs": self._connect_obs,
            "start_recording": self._start_recording,
            "stop_recording": self._stop_recording,
            "test_recording": self._test_recording,
            "merge_videos": self._merge_videos,
            "refresh_settings": self._refresh_settings,
            "get_video_list": self._get_video_list,
            "open_video_folder": self._open_video_folder,
        }

    @property
    def message_types(self) -> list[str]:
        return sorted(self._handlers)

    async def handle_raw(self, raw: str | bytes, listener: Listener) -> None:
        """Parse and run one inbound message; errors go back to ``listener`` only."""
        try:
            message = parse_message(raw)
            self._log.info("Received message: %s", message["type"])
            await self.dispatch(message, listener)
        except (InvalidCommand, SessionError, BackendError, MergeError) as exc:
            self._log.warning("Command failed: %s", exc)
            self.hub.send(listener, "error", {"message": str(exc)})
        except Exception as exc:  # pragma: no cover
            self._log.exception("Unexpected error handling message")
            self.hub.send(listener, "error", {"message": f"Server error: {exc}"})

    async def dispatch(self, message: Mapping[str, Any], listener: Listener) -> Any:
        msg_type = message["type"]
        handler = self._handlers.get(msg_type)
        if handler is None:
            raise InvalidCommand(f"Unknown message type {msg_type!r}")
        return await handler(message.get("data") or {}, listener)

    async def _connect_obs(self, data: Mapping[str, Any], _: Listener) -> bool:
        address = _optional_str(data, "address")
        password = _optional_str(data, "password")
        return await self.control.submit(lambda: self.controller.connect(address or None, password))

    async def _start_recording(self, data: Mapping[str, Any], _: Listener):
        block_index = _required_index(data, "blockIndex")
        block_text = _required_str(data, "blockText")
        return await self.control.submit(
            lambda: self.controller.start_recording(block_index, block_text)
        )

    async def _stop_recording(self, data: Mapping[str, Any], _: Listener):
        return await self.control.submit(self.controller.stop_recording)

    async def _test_recording(self, data: Mapping[str, Any], _: Listener):
        return await self.control.submit(self.controller.test_recording)

    async def _merge_videos(self, data: Mapping[str, Any], _: Listener):
        blocks = data.get("blocks")
        if not isinstance(blocks, list) or not all(isinstance(item, str) for item in blocks):
            raise InvalidCommand("blocks must be a list of strings")
        project_name = _required_str(data, "projectName")
        if not sanitize_project_name(project_name):
            raise InvalidCommand("projectName must not be empty")

        async def _begin() -> asyncio.Task:
            return self.merges.begin(list(blocks), project_name)

        task = await self.control.submit(_begin)
        # The merge keeps running if this caller disconnects.
        try:
            return await asyncio.shield(task)
        except MergeError:
            # Already broadcast as an error event to every listener.
            return None

    async def _refresh_settings(self, data: Mapping[str, Any], _: Listener):
        return await self.control.submit(self.controller.refresh_settings)

    async def _get_video_list(self, data: Mapping[str, Any], _: Listener) -> list[dict[str, Any]]:
        videos = [entry.to_dict() for entry in self.controller.store.list_segments()]
        self.hub.broadcast("video_list", {"videos": videos})
        return videos

    async def _open_video_folder(self, data: Mapping[str, Any], listener: Listener) -> str:
        folder = str(Path(self.controller.output_dir).resolve())
        self.hub.send(listener, "info", {"message": f"Video folder: {folder}", "path": folder})
        return folder
