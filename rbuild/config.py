# rbuild/config.py
# -*- coding: utf-8 -*-
"""
rbuild central configuration loader

Features:
- Read YAML/JSON config from multiple locations (explicit, env override, cwd, user, system)
- Merge with authoritative DEFAULTS, normalize paths and coerce types
- Validate structure and types, warn or raise ConfigError (fatal=True)
- Typed access via the Config dataclass and get_paths()
- Thread-safe load/reload
"""

from __future__ import annotations
import os
import json
import threading
from pathlib import Path
from copy import deepcopy
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, List, Tuple

import yaml

from .errors import ConfigError
from .logging import get_logger

logger = get_logger("config")

# ----------------------------
# DEFAULT configuration (authoritative base)
# ----------------------------
DEFAULTS: Dict[str, Any] = {
    "logging": {
        "level": "INFO",
        "file": None,
        "color": True,
        "max_size": "10M",
        "module_levels": {},
        "jsonl": {"enabled": False},
    },
    "paths": {
        "cache_dir": "~/.cache/rbuild",
        "repo_dir": "~/.cache/rbuild/repo",
        "pkgs_dir": "~/.cache/rbuild/pkgs",
        "db_path": "~/.cache/rbuild/db.sqlite3",
    },
    "build": {
        "recipe_name": "rbuild.sh",
        "root_cmd": "sudo",
        "pager_style": "native",
        "ignore_pkg_updates": [],
        "allow_run_as_root": False,
    },
    "overrides": {
        "enabled": True,
        "like_distros": True,
        "languages": None,
    },
    "sandbox": {
        "fakeroot": True,
        "kill_timeout": 2.0,
    },
    "fetcher": {
        "cache_dir": "~/.cache/rbuild/dl",
        "http_timeout": 30,
        "chunk_size": 65536,
    },
}


# ----------------------------
# Dataclasses
# ----------------------------
@dataclass
class Config:
    raw: Dict[str, Any] = field(default_factory=dict)     # values loaded from file (if any)
    merged: Dict[str, Any] = field(default_factory=dict)  # merged with DEFAULTS
    path: Optional[Path] = None

    def get(self, path: str, default: Any = None) -> Any:
        """Dot-separated getter for merged config."""
        parts = path.split(".") if path else []
        cur: Any = self.merged
        for p in parts:
            if isinstance(cur, dict) and p in cur:
                cur = cur[p]
            else:
                return default
        return cur

    def as_dict(self) -> Dict[str, Any]:
        return deepcopy(self.merged)


@dataclass(frozen=True)
class Paths:
    cache_dir: str
    repo_dir: str
    pkgs_dir: str
    db_path: str


# ----------------------------
# Module state
# ----------------------------
_CONFIG: Optional[Config] = None
_CONFIG_LOCK = threading.RLock()


# ----------------------------
# Utilities
# ----------------------------
def _expand_path(val: Optional[str]) -> Optional[str]:
    if val is None:
        return None
    return os.path.abspath(os.path.expanduser(os.path.expandvars(str(val))))


def _deep_merge(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    res = deepcopy(a)
    for k, v in b.items():
        if k in res and isinstance(res[k], dict) and isinstance(v, dict):
            res[k] = _deep_merge(res[k], v)
        else:
            res[k] = deepcopy(v)
    return res


def _find_candidates(explicit: Optional[str] = None) -> List[Path]:
    candidates: List[Path] = []
    env = os.environ.get("RBUILD_CONFIG")
    if explicit:
        candidates.append(Path(explicit))
    if env:
        candidates.append(Path(env))
    candidates.extend([
        Path.cwd() / "rbuild.yaml",
        Path.cwd() / "rbuild.yml",
        Path.cwd() / "rbuild.json",
        Path.home() / ".config" / "rbuild" / "config.yaml",
        Path("/etc") / "rbuild" / "config.yaml",
    ])
    return candidates


def _load_file(path: Path) -> Optional[Dict[str, Any]]:
    try:
        txt = path.read_text(encoding="utf-8")
    except OSError as e:
        logger.error("config: failed reading %s: %s", path, e)
        return None

    if path.suffix.lower() in (".yaml", ".yml"):
        try:
            data = yaml.safe_load(txt)
            return data or {}
        except yaml.YAMLError as e:
            logger.debug("config: yaml parse fail %s: %s", path, e)

    try:
        return json.loads(txt) or {}
    except ValueError as e:
        logger.debug("config: json parse fail %s: %s", path, e)
    return None


_PATH_KEYS = [
    ("paths", "cache_dir"),
    ("paths", "repo_dir"),
    ("paths", "pkgs_dir"),
    ("paths", "db_path"),
    ("fetcher", "cache_dir"),
    ("logging", "file"),
]


def _normalize_and_coerce(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize path fields and coerce basic types."""
    out = deepcopy(cfg)
    for section, key in _PATH_KEYS:
        sec = out.get(section)
        if isinstance(sec, dict) and isinstance(sec.get(key), str) and sec[key]:
            sec[key] = _expand_path(sec[key])

    build = out.get("build")
    if isinstance(build, dict):
        ign = build.get("ignore_pkg_updates")
        if isinstance(ign, str):
            build["ignore_pkg_updates"] = [s for s in ign.replace(",", " ").split() if s]
        if isinstance(build.get("allow_run_as_root"), str):
            build["allow_run_as_root"] = build["allow_run_as_root"].strip().lower() in ("1", "true", "yes", "on")

    for section, key, conv in (("sandbox", "kill_timeout", float),
                               ("fetcher", "http_timeout", float),
                               ("fetcher", "chunk_size", int)):
        sec = out.get(section)
        if isinstance(sec, dict) and key in sec:
            try:
                sec[key] = conv(sec[key])
            except (TypeError, ValueError):
                logger.warning("config: %s.%s is not a number: %r", section, key, sec[key])
                sec[key] = DEFAULTS[section][key]

    ov = out.get("overrides")
    if isinstance(ov, dict) and isinstance(ov.get("languages"), str):
        ov["languages"] = [s for s in ov["languages"].replace(",", " ").split() if s]
    return out


def _validate_structure(cfg: Dict[str, Any]) -> Tuple[bool, List[str]]:
    """Return (ok, issues_list)."""
    issues: List[str] = []
    for k in cfg.keys():
        if k not in DEFAULTS:
            issues.append(f"Unknown top-level config key: {k}")
    for k in DEFAULTS:
        if not isinstance(cfg.get(k), dict):
            issues.append(f"{k} must be a mapping")
    build = cfg.get("build") or {}
    if not isinstance(build.get("root_cmd"), str) or not build.get("root_cmd"):
        issues.append("build.root_cmd must be a non-empty string")
    if not isinstance(build.get("ignore_pkg_updates"), list):
        issues.append("build.ignore_pkg_updates should be a list")
    langs = (cfg.get("overrides") or {}).get("languages")
    if langs is not None and not isinstance(langs, list):
        issues.append("overrides.languages should be a list")
    chunk = (cfg.get("fetcher") or {}).get("chunk_size")
    if not isinstance(chunk, int) or chunk < 1:
        issues.append("fetcher.chunk_size must be integer >= 1")
    return (len(issues) == 0, issues)


# ----------------------------
# Loading / reloading
# ----------------------------
def _find_path(explicit: Optional[str] = None) -> Optional[Path]:
    if explicit and not Path(explicit).exists():
        raise ConfigError(f"config file not found: {explicit}")
    for p in _find_candidates(explicit):
        if p.exists():
            return p
    return None


def load(explicit_path: Optional[str] = None, fatal: bool = False) -> Config:
    """
    Load and merge config. If fatal=True then structural validation failures raise.
    """
    global _CONFIG
    with _CONFIG_LOCK:
        cfg_path = _find_path(explicit_path)
        raw: Dict[str, Any] = {}
        if cfg_path:
            data = _load_file(cfg_path)
            if data is None:
                msg = f"config: file found but could not be parsed: {cfg_path}"
                if fatal:
                    raise ConfigError(msg)
                logger.warning(msg)
            elif not isinstance(data, dict):
                logger.warning("config: %s does not contain a mapping; ignored", cfg_path)
            else:
                raw = data
        merged = _deep_merge(DEFAULTS, raw)
        normalized = _normalize_and_coerce(merged)
        ok, issues = _validate_structure(normalized)
        if not ok:
            msg = f"config: validation issues: {issues}"
            if fatal:
                raise ConfigError(msg)
            logger.warning(msg)
        _CONFIG = Config(raw=raw, merged=normalized, path=cfg_path)
        logger.debug("config: loaded merged config (from=%s)", str(cfg_path) if cfg_path else "<defaults>")
        return _CONFIG


def get_config() -> Config:
    global _CONFIG
    with _CONFIG_LOCK:
        if _CONFIG is None:
            _CONFIG = load()
        return _CONFIG


def reload(explicit_path: Optional[str] = None) -> Config:
    return load(explicit_path)


def set_config(cfg: Optional[Config]) -> None:
    """Replace the cached config (None forces the next get_config() to load)."""
    global _CONFIG
    with _CONFIG_LOCK:
        _CONFIG = cfg


def get_paths(cfg: Optional[Config] = None) -> Paths:
    cfg = cfg or get_config()
    return Paths(
        cache_dir=cfg.get("paths.cache_dir"),
        repo_dir=cfg.get("paths.repo_dir"),
        pkgs_dir=cfg.get("paths.pkgs_dir"),
        db_path=cfg.get("paths.db_path"),
    )
