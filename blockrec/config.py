#!/usr/bin/env python3
"""
Unified configuration loader for block-recorder.

Load order (first found wins):
  1) BLOCKREC_CONFIG (env, absolute or relative to CWD)
  2) /etc/blockrec/config.yaml
  3) <project_root>/config.yaml (derived from this file's location)
  4) <script_dir>/config.yaml (directory of the running script)
  5) ./config.yaml (current working directory)

Environment variables override file values when present.
"""
from __future__ import annotations
import copy
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict

import yaml

DEFAULT_VIDEO_EXTENSIONS = [".mp4", ".mkv", ".mov", ".avi"]

_DEFAULTS: Dict[str, Any] = {
    "paths": {
        "output_dir": "./videos",
    },
    "obs": {
        "address": "ws://localhost:4455",
        "password": "",
        "request_timeout_sec": 10.0,
        "auto_connect": False,
    },
    "recording": {
        "test_duration_sec": 5.0,
        "video_extensions": list(DEFAULT_VIDEO_EXTENSIONS),
    },
    "merge": {
        "ffmpeg_path": "ffmpeg",
        "output_extension": "mp4",
        "rejected_marker": "[rejected]",
        "fallback_audio": True,
        "video_codec": "libx264",
        "audio_codec": "aac",
    },
    "web_server": {
        "listen_host": "0.0.0.0",
        "listen_port": 3001,
    },
    "logging": {
        "dev_mode": False  # if True or ENV DEV=1, enable verbose debug
    },
}

_cfg_cache: Dict[str, Any] | None = None
_search_paths: list[Path] = []
_active_config_path: Path | None = None

_log = logging.getLogger("config")


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        # Skip unreadable files and continue with other locations/defaults
        _log.warning("Ignoring unreadable config %s: %s", path, exc)
        return {}
    if isinstance(data, dict):
        return data
    return {}


def _candidate_search_paths(project_root: Path, script_dir: Path) -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv("BLOCKREC_CONFIG")
    if env_cfg:
        search.append(Path(env_cfg).expanduser())
    search.extend(
        [
            Path("/etc/blockrec/config.yaml"),
            project_root / "config.yaml",
            script_dir / "config.yaml",
            Path.cwd() / "config.yaml",
        ]
    )
    seen: set[Path] = set()
    ordered: list[Path] = []
    for candidate in search:
        try:
            resolved = candidate.resolve()
        except OSError:
            resolved = candidate
        if resolved in seen:
            continue
        seen.add(resolved)
        ordered.append(resolved)
    return ordered


def _deep_merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in extra.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _parse_extensions(raw: str) -> list[str]:
    extensions: list[str] = []
    for token in raw.split(","):
        token = token.strip().lower()
        if not token:
            continue
        if not token.startswith("."):
            token = f".{token}"
        extensions.append(token)
    return extensions


def _apply_env_overrides(cfg: Dict[str, Any]) -> None:
    # DEV mode
    if os.getenv("DEV") == "1":
        cfg.setdefault("logging", {})["dev_mode"] = True
    # Paths
    if "OUTPUT_DIR" in os.environ:
        value = os.environ["OUTPUT_DIR"].strip()
        if value:
            cfg.setdefault("paths", {})["output_dir"] = value
    # Recording backend
    if "OBS_ADDRESS" in os.environ:
        value = os.environ["OBS_ADDRESS"].strip()
        if value:
            cfg.setdefault("obs", {})["address"] = value
    if "OBS_PASSWORD" in os.environ:
        cfg.setdefault("obs", {})["password"] = os.environ["OBS_PASSWORD"]

    env_map = {
        "PORT": ("web_server", "listen_port", int),
        "HOST": ("web_server", "listen_host", str),
        "FFMPEG_PATH": ("merge", "ffmpeg_path", str),
        "TEST_RECORDING_SEC": ("recording", "test_duration_sec", float),
        "VIDEO_EXTENSIONS": ("recording", "video_extensions", _parse_extensions),
    }
    for env_key, (section, key, cast) in env_map.items():
        if env_key in os.environ:
            try:
                cfg.setdefault(section, {})[key] = cast(os.environ[env_key])
            except ValueError:
                _log.warning("Ignoring invalid %s=%r", env_key, os.environ[env_key])


def get_cfg() -> Dict[str, Any]:
    global _cfg_cache, _search_paths, _active_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    cfg = copy.deepcopy(_DEFAULTS)

    # Derive project root relative to this file (blockrec/ -> project root)
    project_root = Path(__file__).resolve().parent.parent

    # Derive script directory (useful for tools run as ./tool.py)
    try:
        script_dir = Path(sys.argv[0]).resolve().parent
    except (IndexError, OSError):
        script_dir = Path.cwd()

    search = _candidate_search_paths(project_root, script_dir)
    _search_paths = list(search)

    active: Path | None = None
    for candidate in search:
        try:
            if candidate.exists():
                active = candidate
                break
        except OSError:
            pass

    for candidate in reversed(search):
        cfg = _deep_merge(cfg, _load_yaml_if_exists(candidate))

    _active_config_path = active

    _apply_env_overrides(cfg)
    _cfg_cache = cfg
    return cfg


def reload_cfg() -> Dict[str, Any]:
    global _cfg_cache
    _cfg_cache = None
    return get_cfg()


def active_config_path() -> Path | None:
    global _active_config_path
    if _active_config_path is None:
        get_cfg()
    return _active_config_path


def search_paths() -> list[Path]:
    global _search_paths
    if not _search_paths:
        get_cfg()
    return list(_search_paths)


def output_dir(cfg: Dict[str, Any] | None = None) -> Path:
    """Return the configured output directory as an absolute path."""
    cfg = cfg if cfg is not None else get_cfg()
    raw = cfg.get("paths", {}).get("output_dir") or _DEFAULTS["paths"]["output_dir"]
    return Path(str(raw)).expanduser().resolve()


def video_extensions(cfg: Dict[str, Any] | None = None) -> list[str]:
    cfg = cfg if cfg is not None else get_cfg()
    raw = cfg.get("recording", {}).get("video_extensions")
    if isinstance(raw, str):
        return _parse_extensions(raw)
    if not isinstance(raw, list):
        return list(DEFAULT_VIDEO_EXTENSIONS)
    return _parse_extensions(",".join(str(item) for item in raw))
