#!/usr/bin/env python3
"""
Service configuration loader for camrelay.

Load order (first found wins):
  1) CAMRELAY_CONFIG (env, absolute or relative to CWD)
  2) /etc/camrelay/config.yaml
  3) ./config.yaml (current working directory)

Environment variables override file values when present. The result is
cached for the life of the process; call reload_cfg() to re-read.

This is the configuration of the manager itself. The media relay's own
document (the cameras) lives at relay.config_path and is handled by
camrelay.camera_store.
"""
from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict

import yaml

_DEFAULTS: Dict[str, Any] = {
    "api": {
        "listen_host": "0.0.0.0",
        "listen_port": 3001,
        "cors_origins": ["http://localhost:5173"],
    },
    "relay": {
        "config_path": "../mediamtx.yml",
        "api_url": "http://mediamtx:9997",
        "container": "mediamtx",
        "settle_delay_sec": 5.0,
        # Used when the relay document carries no authInternalUsers entry.
        "fallback_user": "admin",
        "fallback_pass": "admin",
    },
    "retry": {
        "max_attempts": 3,
        "base_delay_sec": 1.0,
    },
    "startup_probe": {
        "attempts": 10,
        "interval_sec": 5.0,
        "timeout_sec": 10.0,
    },
    "logs": {
        "containers": ["mediamtx", "rtsp-api", "rtsp-ui"],
        "default_lines": 100,
        "max_lines": 5000,
    },
    "logging": {
        "dev_mode": False  # if True or ENV DEV=1, enable verbose debug
    },
}

_cfg_cache: Dict[str, Any] | None = None
_search_paths: list[Path] = []
_active_config_path: Path | None = None

log = logging.getLogger("camrelay.config")


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        log.warning("Ignoring unreadable service config %s: %s", path, exc)
        return {}
    if isinstance(data, dict):
        return data
    return {}


def _candidate_search_paths() -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv("CAMRELAY_CONFIG")
    if env_cfg:
        search.append(Path(env_cfg).expanduser())
    search.extend(
        [
            Path("/etc/camrelay/config.yaml"),
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


def _split_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _apply_env_overrides(cfg: Dict[str, Any]) -> None:
    # DEV mode
    if os.getenv("DEV") == "1":
        cfg.setdefault("logging", {})["dev_mode"] = True

    env_map = {
        "HOST": ("api", "listen_host", str),
        "PORT": ("api", "listen_port", int),
        "CORS_ORIGIN": ("api", "cors_origins", _split_list),
        "CONFIG_FILE_PATH": ("relay", "config_path", str),
        "MEDIAMTX_API_URL": ("relay", "api_url", lambda s: s.strip().rstrip("/")),
        "MEDIAMTX_CONTAINER": ("relay", "container", str),
        "MEDIAMTX_API_USER": ("relay", "fallback_user", str),
        "MEDIAMTX_API_PASS": ("relay", "fallback_pass", str),
        "RELOAD_SETTLE_SECONDS": ("relay", "settle_delay_sec", float),
    }
    for env_key, (section, key, cast) in env_map.items():
        if env_key not in os.environ:
            continue
        raw = os.environ[env_key]
        if not raw.strip():
            continue
        try:
            cfg.setdefault(section, {})[key] = cast(raw)
        except ValueError:
            log.warning("Ignoring invalid %s=%r", env_key, raw)


def get_cfg() -> Dict[str, Any]:
    global _cfg_cache, _search_paths, _active_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    cfg = copy.deepcopy(_DEFAULTS)
    search = _candidate_search_paths()
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


def relay_config_path(cfg: Dict[str, Any] | None = None) -> Path:
    """Absolute path of the media relay's YAML document."""

    cfg = cfg if cfg is not None else get_cfg()
    raw = str(cfg.get("relay", {}).get("config_path") or _DEFAULTS["relay"]["config_path"])
    return Path(raw).expanduser().resolve()


def dev_mode_enabled(cfg: Dict[str, Any] | None = None) -> bool:
    cfg = cfg if cfg is not None else get_cfg()
    return bool(cfg.get("logging", {}).get("dev_mode", False))
