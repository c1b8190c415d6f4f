#!/usr/bin/env python3
"""
aiohttp server for block-recorder.

Behavior:
- Clients drive recording and merging over a WebSocket control channel.
- Every attached client receives the current OBS status and segment list on
  connect, then all session, merge and connection events.
- SIGINT/SIGTERM disconnect from OBS before the server exits.

Endpoints:
  GET /ws                  -> WebSocket control channel (JSON messages)
  GET /health              -> JSON status snapshot
  GET /videos              -> JSON listing of segment and merge files
  GET /videos/<filename>   -> Download a file from the output directory
  GET /healthz             -> "ok"
"""

import argparse
import asyncio
import contextlib
import logging
import signal
import subprocess
from datetime import datetime, timezone
from typing import Any

from aiohttp import WSCloseCode, WSMsgType, web
from aiohttp.web import AppKey

from blockrec import config as config_module
from blockrec.commands import CommandRouter
from blockrec.control import ControlLoop
from blockrec.events import BroadcastHub, Listener
from blockrec.merge import MergeCoordinator, MergePipeline
from blockrec.obs_backend import ObsWebSocketBackend, RecordingBackend
from blockrec.segment_store import SegmentStore
from blockrec.session import RecordingController

WS_HEARTBEAT_SECONDS = 30.0
SHUTDOWN_DISCONNECT_TIMEOUT_SECONDS = 5.0

HUB_KEY = AppKey("hub", BroadcastHub)
CONTROL_KEY = AppKey("control", ControlLoop)
CONTROLLER_KEY = AppKey("controller", RecordingController)
MERGES_KEY = AppKey("merges", MergeCoordinator)
ROUTER_KEY = AppKey("router", CommandRouter)
STORE_KEY = AppKey("store", SegmentStore)
WS_CLIENTS_KEY = AppKey("ws_clients", set)
SHUTDOWN_EVENT_KEY = AppKey("shutdown_event", asyncio.Event)


def _quiet_noisy_dependencies(level: int = logging.WARNING) -> None:
    for name in ("aiohttp.access", "aiohttp.websocket"):
        logging.getLogger(name).setLevel(level)


def build_app(
    cfg: dict[str, Any] | None = None,
    *,
    backend: RecordingBackend | None = None,
    runner=subprocess.run,
) -> web.Application:
    log = logging.getLogger("server")
    cfg = cfg if cfg is not None else config_module.get_cfg()
    obs_cfg = cfg.get("obs", {})
    merge_cfg = cfg.get("merge", {})
    recording_cfg = cfg.get("recording", {})

    output_dir = config_module.output_dir(cfg)
    store = SegmentStore(output_dir, config_module.video_extensions(cfg))
    store.ensure_root()

    hub = BroadcastHub()
    if backend is None:
        backend = ObsWebSocketBackend(request_timeout=float(obs_cfg.get("request_timeout_sec", 10.0)))
    controller = RecordingController(
        backend,
        store,
        hub,
        output_dir=output_dir,
        default_address=obs_cfg.get("address") or "ws://localhost:4455",
        default_password=obs_cfg.get("password") or "",
        test_duration=float(recording_cfg.get("test_duration_sec", 5.0)),
    )
    pipeline = MergePipeline(
        store,
        ffmpeg_path=merge_cfg.get("ffmpeg_path") or "ffmpeg",
        output_extension=merge_cfg.get("output_extension") or "mp4",
        rejected_marker=merge_cfg.get("rejected_marker", "[rejected]"),
        fallback_audio=bool(merge_cfg.get("fallback_audio", True)),
        video_codec=merge_cfg.get("video_codec") or "libx264",
        audio_codec=merge_cfg.get("audio_codec") or "aac",
        runner=runner,
    )
    merges = MergeCoordinator(pipeline, hub, exclusions=controller.merge_exclusions)
    control = ControlLoop()
    controller.bind(control)
    router = CommandRouter(control, controller, merges, hub)

    def _snapshot():
        return [
            ("obs_status", controller.status_payload()),
            ("video_list", {"videos": [entry.to_dict() for entry in store.list_segments()]}),
        ]

    hub.set_snapshot_provider(_snapshot)

    app = web.Application()
    app[HUB_KEY] = hub
    app[CONTROL_KEY] = control
    app[CONTROLLER_KEY] = controller
    app[MERGES_KEY] = merges
    app[ROUTER_KEY] = router
    app[STORE_KEY] = store
    app[WS_CLIENTS_KEY] = set()
    app[SHUTDOWN_EVENT_KEY] = asyncio.Event()

    async def _start_control(_: web.Application) -> None:
        control.start()
        log.info("Output directory: %s", output_dir)
        if obs_cfg.get("auto_connect"):
            control.post(controller.connect)

    async def _close_clients(_: web.Application) -> None:
        for ws in list(app[WS_CLIENTS_KEY]):
            await ws.close(code=WSCloseCode.GOING_AWAY, message=b"server shutdown")
        try:
            await asyncio.wait_for(
                control.submit(controller.disconnect),
                timeout=SHUTDOWN_DISCONNECT_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError:
            log.warning("Timed out disconnecting from OBS")

    async def _stop_control(_: web.Application) -> None:
        await control.stop()
        merges.shutdown()

    app.on_startup.append(_start_control)
    app.on_shutdown.append(_close_clients)
    app.on_cleanup.append(_stop_control)

    async def _pump_events(ws: web.WebSocketResponse, listener: Listener) -> None:
        while True:
            event = await listener.next_event()
            try:
                await ws.send_json(event)
            except (ConnectionResetError, RuntimeError):
                listener.close()
                return

    async def control_socket(request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(heartbeat=WS_HEARTBEAT_SECONDS)
        await ws.prepare(request)
        listener = hub.attach(Listener(name=request.remote or ""))
        app[WS_CLIENTS_KEY].add(ws)
        log.info("WebSocket client connected (%s)", request.remote)
        writer = asyncio.create_task(_pump_events(ws, listener))
        pending: set[asyncio.Task] = set()
        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    # Long merges must not block further commands from this client.
                    task = asyncio.create_task(router.handle_raw(msg.data, listener))
                    pending.add(task)
                    task.add_done_callback(pending.discard)
                elif msg.type == WSMsgType.ERROR:
                    log.warning("WebSocket error: %s", ws.exception())
        finally:
            hub.detach(listener)
            app[WS_CLIENTS_KEY].discard(ws)
            writer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await writer
            log.info("WebSocket client disconnected (%s)", request.remote)
        return ws

    async def health(_: web.Request) -> web.Response:
        last = controller.last_segment
        return web.json_response(
            {
                "status": "ok",
                "obsConnected": controller.connection.connected,
                "outputDir": str(output_dir),
                "session": controller.session.to_dict(),
                "lastSegment": (
                    {"filename": last.filename, "fullPath": last.full_path, "blockIndex": last.block_index}
                    if last is not None
                    else None
                ),
                "mergeInProgress": merges.busy,
                "listeners": hub.listener_count,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        )

    async def videos_list(_: web.Request) -> web.Response:
        entries = await asyncio.to_thread(store.list_segments)
        return web.json_response({"videos": [entry.to_dict() for entry in entries]})

    async def video_file(request: web.Request) -> web.StreamResponse:
        name = request.match_info.get("filename", "")
        path = store.path_for(name)
        if path is None or not path.is_file():
            return web.json_response({"error": "File not found"}, status=404)
        response = web.FileResponse(path)
        response.headers["Content-Disposition"] = f'attachment; filename="{path.name}"'
        response.headers.setdefault("Cache-Control", "no-store")
        return response

    async def healthz(_: web.Request) -> web.Response:
        return web.Response(text="ok\n")

    app.router.add_get("/ws", control_socket)
    app.router.add_get("/health", health)
    app.router.add_get("/videos", videos_list)
    app.router.add_get("/videos/{filename}", video_file)
    app.router.add_get("/healthz", healthz)
    return app


async def serve(host: str, port: int, *, access_log: bool = False) -> None:
    """Run the server until SIGINT/SIGTERM, then shut down gracefully."""
    log = logging.getLogger("server")
    app = build_app()
    runner = web.AppRunner(app, access_log=logging.getLogger("aiohttp.access") if access_log else None)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    log.info("Server started on %s:%s", host, port)

    stop_event = app[SHUTDOWN_EVENT_KEY]
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop_event.set)
    try:
        await stop_event.wait()
        log.info("Shutdown signal received, stopping ...")
    finally:
        await runner.cleanup()
        log.info("Server stopped")


def cli_main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Block recorder control server.")
    parser.add_argument("--host", help="Override bind host (defaults to config).")
    parser.add_argument(
        "--port",
        type=int,
        help="Override bind port (defaults to config).",
    )
    parser.add_argument("--access-log", action="store_true", help="Enable aiohttp access logs.")
    parser.add_argument("--log-level", default="INFO", help="Python logging level (default: INFO).")
    args = parser.parse_args(argv)

    cfg = config_module.reload_cfg()
    level = getattr(logging, args.log_level.upper(), logging.INFO)
    if cfg.get("logging", {}).get("dev_mode"):
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    _quiet_noisy_dependencies()
    log = logging.getLogger("server")

    server_cfg = cfg.get("web_server", {})
    host = args.host or server_cfg.get("listen_host") or "0.0.0.0"
    try:
        port = int(args.port or server_cfg.get("listen_port") or 3001)
    except (TypeError, ValueError):
        log.error("Invalid listen port %r", server_cfg.get("listen_port"))
        return 1

    active = config_module.active_config_path()
    log.info("Using config %s", active if active is not None else "<defaults>")
    try:
        asyncio.run(serve(host, port, access_log=args.access_log))
    except KeyboardInterrupt:
        pass
    except OSError as exc:
        log.error("Unable to start server: %s", exc)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(cli_main())
