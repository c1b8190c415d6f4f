#!/usr/bin/env python3
"""
Recording backend interface and the obs-websocket (v5) implementation.

The core only talks to ``RecordingBackend``. Commands sent through it are
requests; the events delivered to subscribed sinks are the authoritative
record of what the backend actually did.

Protocol summary (obs-websocket 5.x, JSON over WebSocket):
  op 0 Hello        server -> client, may carry an auth challenge
  op 1 Identify     client -> server, rpcVersion + auth + event mask
  op 2 Identified   server -> client, session ready
  op 5 Event        server -> client
  op 6 Request      client -> server, matched by requestId
  op 7 RequestResponse
"""

from __future__ import annotations

import asyncio
import base64
import contextlib
import hashlib
import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

import aiohttp

OP_HELLO = 0
OP_IDENTIFY = 1
OP_IDENTIFIED = 2
OP_EVENT = 5
OP_REQUEST = 6
OP_REQUEST_RESPONSE = 7

RPC_VERSION = 1
EVENT_SUBSCRIPTION_OUTPUTS = 1 << 6

OUTPUT_STARTED = "OBS_WEBSOCKET_OUTPUT_STARTED"
OUTPUT_STOPPED = "OBS_WEBSOCKET_OUTPUT_STOPPED"

WEBSOCKET_SUBPROTOCOL = "obswebsocket.json"


class BackendError(Exception):
    """Raised when the backend rejects or fails a requested operation."""


class ConnectError(BackendError):
    """Raised when the backend is unreachable or refuses the credentials."""


@dataclass(frozen=True)
class ConnectionOpened:
    pass


@dataclass(frozen=True)
class ConnectionClosed:
    pass


@dataclass(frozen=True)
class ConnectionFailed:
    message: str


@dataclass(frozen=True)
class RecordingStateChanged:
    active: bool
    output_path: Optional[str] = None
    size_bytes: Optional[int] = None
    timecode: Optional[str] = None


BackendEvent = Union[ConnectionOpened, ConnectionClosed, ConnectionFailed, RecordingStateChanged]
EventSink = Callable[[BackendEvent], None]


class RecordingBackend:
    """Capability set the core requires from a recording engine."""

    def __init__(self) -> None:
        self._sinks: list[EventSink] = []

    def subscribe(self, sink: EventSink) -> None:
        self._sinks.append(sink)

    def _emit(self, event: BackendEvent) -> None:
        for sink in list(self._sinks):
            sink(event)

    @property
    def connected(self) -> bool:  # pragma: no cover - interface only
        raise NotImplementedError

    async def connect(self, address: str, password: str) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    async def disconnect(self) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    async def start_recording(self) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    async def stop_recording(self) -> Optional[str]:  # pragma: no cover - interface only
        raise NotImplementedError

    async def set_output_directory(self, path: str) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    async def query_recording_active(self) -> bool:  # pragma: no cover - interface only
        raise NotImplementedError

    async def query_settings(self) -> dict[str, Any]:  # pragma: no cover - interface only
        raise NotImplementedError


def build_auth_string(password: str, salt: str, challenge: str) -> str:
    """Return the Identify ``authentication`` value for a Hello challenge."""
    secret = base64.b64encode(hashlib.sha256((password + salt).encode("utf-8")).digest())
    digest = hashlib.sha256(secret + challenge.encode("utf-8")).digest()
    return base64.b64encode(digest).decode("ascii")


def translate_event(event_type: str, event_data: dict[str, Any] | None) -> BackendEvent | None:
    """Map an obs-websocket event onto a backend event, or None to ignore it."""
    if event_type != "RecordStateChanged":
        return None
    data = event_data or {}
    state = data.get("outputState")
    output_path = data.get("outputPath") or None
    if state == OUTPUT_STARTED:
        return RecordingStateChanged(active=True, output_path=output_path)
    if state == OUTPUT_STOPPED:
        return RecordingStateChanged(active=False, output_path=output_path)
    return None


class ObsWebSocketBackend(RecordingBackend):
    """obs-websocket v5 client built on aiohttp's WebSocket support."""

    def __init__(self, *, request_timeout: float = 10.0) -> None:
        super().__init__()
        self.request_timeout = float(request_timeout)
        self._session: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader: asyncio.Task | None = None
        self._pending: dict[str, asyncio.Future] = {}
        self._closing = False
        self._log = logging.getLogger("obs_backend")

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def connect(self, address: str, password: str) -> None:
        if self._ws is not None:
            await self.disconnect()

        session = aiohttp.ClientSession()
        try:
            ws = await session.ws_connect(address, protocols=(WEBSOCKET_SUBPROTOCOL,))
            await self._identify(ws, password)
        except ConnectError:
            await session.close()
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError) as exc:
            await session.close()
            raise ConnectError(f"Unable to connect to {address}: {exc or type(exc).__name__}") from exc

        self._session = session
        self._ws = ws
        self._closing = False
        self._reader = asyncio.create_task(self._read_loop(ws), name="obs_backend_reader")
        self._log.info("Connected to OBS at %s", address)
        self._emit(ConnectionOpened())

    async def _identify(self, ws: aiohttp.ClientWebSocketResponse, password: str) -> None:
        hello = await self._receive_json(ws)
        if hello.get("op") != OP_HELLO:
            raise ConnectError(f"Unexpected handshake opcode {hello.get('op')!r}")

        identify: dict[str, Any] = {
            "rpcVersion": RPC_VERSION,
            "eventSubscriptions": EVENT_SUBSCRIPTION_OUTPUTS,
        }
        auth = (hello.get("d") or {}).get("authentication")
        if auth:
            if not password:
                await ws.close()
                raise ConnectError("OBS requires a password")
            identify["authentication"] = build_auth_string(
                password, auth.get("salt", ""), auth.get("challenge", "")
            )
        await ws.send_json({"op": OP_IDENTIFY, "d": identify})

        identified = await self._receive_json(ws)
        if identified.get("op") != OP_IDENTIFIED:
            raise ConnectError(f"Unexpected handshake opcode {identified.get('op')!r}")

    async def _receive_json(self, ws: aiohttp.ClientWebSocketResponse) -> dict[str, Any]:
        msg = await ws.receive(timeout=self.request_timeout)
        if msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED):
            # obs-websocket closes with 4009 on bad credentials
            raise ConnectError(f"OBS closed the connection (code {ws.close_code}): {msg.extra or ''}".strip())
        if msg.type == aiohttp.WSMsgType.ERROR:
            raise ConnectError(f"WebSocket error: {ws.exception()}")
        if msg.type != aiohttp.WSMsgType.TEXT:
            raise ConnectError(f"Unexpected WebSocket message type {msg.type!r}")
        payload = json.loads(msg.data)
        if not isinstance(payload, dict):
            raise ConnectError("Malformed handshake message")
        return payload

    async def disconnect(self) -> None:
        ws = self._ws
        session = self._session
        reader = self._reader
        self._closing = True
        if ws is not None:
            await ws.close()
        if reader is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await reader
        if session is not None:
            await session.close()
        self._ws = None
        self._session = None
        self._reader = None

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        payload = json.loads(msg.data)
                    except ValueError:
                        self._log.warning("Discarding malformed OBS message")
                        continue
                    self._dispatch(payload)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    message = str(ws.exception() or "WebSocket error")
                    self._log.warning("OBS connection error: %s", message)
                    self._emit(ConnectionFailed(message))
        finally:
            self._fail_pending(BackendError("OBS connection closed"))
            if not self._closing:
                self._log.info("OBS connection closed (code %s)", ws.close_code)
            if self._ws is ws:
                self._ws = None
            self._emit(ConnectionClosed())

    def _dispatch(self, payload: dict[str, Any]) -> None:
        op = payload.get("op")
        data = payload.get("d") or {}
        if op == OP_REQUEST_RESPONSE:
            future = self._pending.pop(data.get("requestId", ""), None)
            if future is not None and not future.done():
                future.set_result(data)
        elif op == OP_EVENT:
            event = translate_event(data.get("eventType", ""), data.get("eventData"))
            if event is not None:
                self._log.debug("OBS event %s", event)
                self._emit(event)

    def _fail_pending(self, exc: Exception) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        for future in pending:
            if not future.done():
                future.set_exception(exc)

    async def _request(self, request_type: str, request_data: dict[str, Any] | None = None) -> dict[str, Any]:
        ws = self._ws
        if ws is None or ws.closed:
            raise BackendError("OBS is not connected")
        request_id = uuid.uuid4().hex
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        body: dict[str, Any] = {"requestType": request_type, "requestId": request_id}
        if request_data:
            body["requestData"] = request_data
        try:
            await ws.send_json({"op": OP_REQUEST, "d": body})
            response = await asyncio.wait_for(future, timeout=self.request_timeout)
        except asyncio.TimeoutError as exc:
            raise BackendError(f"{request_type} timed out") from exc
        except (aiohttp.ClientError, ConnectionResetError) as exc:
            raise BackendError(f"{request_type} failed: {exc}") from exc
        finally:
            self._pending.pop(request_id, None)

        status = response.get("requestStatus") or {}
        if not status.get("result"):
            comment = status.get("comment") or "request rejected"
            raise BackendError(f"{request_type} failed ({status.get('code')}): {comment}")
        return response.get("responseData") or {}

    async def start_recording(self) -> None:
        await self._request("StartRecord")

    async def stop_recording(self) -> Optional[str]:
        """Stop recording; returns the output file OBS reports for it."""
        data = await self._request("StopRecord")
        return data.get("outputPath") or None

    async def set_output_directory(self, path: str) -> None:
        await self._request("SetRecordDirectory", {"recordDirectory": str(path)})

    async def query_recording_active(self) -> bool:
        status = await self._request("GetRecordStatus")
        return bool(status.get("outputActive"))

    async def query_settings(self) -> dict[str, Any]:
        scenes = await self._request("GetSceneList")
        inputs = await self._request("GetInputList")
        directory = await self._request("GetRecordDirectory")
        return {
            "currentScene": scenes.get("currentProgramSceneName"),
            "scenes": [
                scene.get("sceneName")
                for scene in scenes.get("scenes", [])
                if isinstance(scene, dict)
            ],
            "sources": [
                {"name": item.get("inputName"), "kind": item.get("inputKind")}
                for item in inputs.get("inputs", [])
                if isinstance(item, dict)
            ],
            "recordDirectory": directory.get("recordDirectory"),
        }
