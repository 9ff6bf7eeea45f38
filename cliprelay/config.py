#!/usr/bin/env python3
"""
Unified configuration loader for cliprelay.

Load order (first found wins):
  1) CLIPRELAY_CONFIG (env, absolute or relative to CWD)
  2) /etc/cliprelay/config.yaml
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
from typing import Any, Dict, Mapping

import yaml

_DEFAULTS: Dict[str, Any] = {
    "paths": {
        "data_dir": "~/.local/share/cliprelay",
    },
    "audio": {
        "device": "",
        "blocksize": 2048,
    },
    "capture": {
        "writer_queue_segments": 512,
        "volume_scale": 3.0,
    },
    "encoder": {
        "ffmpeg_path": "ffmpeg",
        "codec": "libmp3lame",
        "container_format": "mp3",
        "extension": "mp3",
        "bitrate_kbps": 64,
        # 0 keeps the capture rate; otherwise resample once before encoding.
        "target_sample_rate": 0,
        "channel_count": 1,
        "frame_samples": 1152,
        "frames_per_chunk": 20,
        "read_chunk_bytes": 4096,
        "finish_timeout_sec": 30.0,
        "single_shot_fallback": True,
    },
    "upload": {
        "url": "",
        "chunk_bytes": 32768,
        "min_chunk_bytes": 8192,
        "max_file_bytes": 52428800,
        "retries": 3,
        "backoff_base_sec": 0.3,
        "timeout_sec": 15.0,
    },
    "logging": {
        "dev_mode": False,  # if True or ENV DEV=1, enable verbose debug
        "level": "INFO",
    },
}

_cfg_cache: Dict[str, Any] | None = None
_search_paths: list[Path] = []
_active_config_path: Path | None = None

_LOG = logging.getLogger("cliprelay.config")


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        _LOG.warning("ignoring unreadable config %s: %s", path, exc)
        return {}
    if isinstance(data, dict):
        return data
    return {}


def _candidate_search_paths(project_root: Path, script_dir: Path) -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv("CLIPRELAY_CONFIG")
    if env_cfg:
        search.append(Path(env_cfg).expanduser())
    search.extend(
        [
            Path("/etc/cliprelay/config.yaml"),
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


def _apply_env_overrides(cfg: Dict[str, Any]) -> None:
    # DEV mode
    if os.getenv("DEV") == "1":
        cfg.setdefault("logging", {})["dev_mode"] = True
    if "CLIPRELAY_DATA_DIR" in os.environ:
        value = os.environ["CLIPRELAY_DATA_DIR"].strip()
        if value:
            cfg.setdefault("paths", {})["data_dir"] = value
    if "AUDIO_DEVICE" in os.environ:
        cfg.setdefault("audio", {})["device"] = os.environ["AUDIO_DEVICE"].strip()
    if "UPLOAD_URL" in os.environ:
        cfg.setdefault("upload", {})["url"] = os.environ["UPLOAD_URL"].strip()

    env_map = {
        "ENCODE_BITRATE_KBPS": ("encoder", "bitrate_kbps", int),
        "ENCODE_SAMPLE_RATE": ("encoder", "target_sample_rate", int),
        "UPLOAD_CHUNK_BYTES": ("upload", "chunk_bytes", int),
        "UPLOAD_MAX_FILE_BYTES": ("upload", "max_file_bytes", int),
        "UPLOAD_RETRIES": ("upload", "retries", int),
        "UPLOAD_TIMEOUT_SEC": ("upload", "timeout_sec", float),
    }
    for env_key, (section, key, cast) in env_map.items():
        if env_key in os.environ:
            try:
                cfg.setdefault(section, {})[key] = cast(os.environ[env_key])
            except ValueError:
                _LOG.warning("ignoring invalid %s=%r", env_key, os.environ[env_key])


def get_cfg() -> Dict[str, Any]:
    global _cfg_cache, _search_paths, _active_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    cfg = copy.deepcopy(_DEFAULTS)

    # Derive project root relative to this file (cliprelay/ -> project root)
    project_root = Path(__file__).resolve().parent.parent
    try:
        script_dir = Path(sys.argv[0]).resolve().parent
    except (OSError, IndexError):
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
    if _cfg_cache is None:
        get_cfg()
    return _active_config_path


def search_paths() -> list[Path]:
    if not _search_paths:
        get_cfg()
    return list(_search_paths)


def data_dir(cfg: Mapping[str, Any] | None = None) -> Path:
    """Return the expanded root directory for clip, segment and checkpoint data."""

    cfg = cfg if cfg is not None else get_cfg()
    raw = str((cfg.get("paths") or {}).get("data_dir") or _DEFAULTS["paths"]["data_dir"])
    return Path(raw).expanduser()


def configure_logging(cfg: Mapping[str, Any] | None = None) -> logging.Logger:
    cfg = cfg if cfg is not None else get_cfg()
    log_cfg = cfg.get("logging") or {}
    level_name = "DEBUG" if log_cfg.get("dev_mode") else str(log_cfg.get("level", "INFO"))
    logging.basicConfig(
        level=getattr(logging, level_name.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    return logging.getLogger("cliprelay")
