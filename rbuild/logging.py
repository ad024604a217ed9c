# rbuild/logging.py
# -*- coding: utf-8 -*-
"""
rbuild logging

Features:
 - Console color formatter (stderr, so build output on stdout stays clean)
 - Rotating file handler
 - JSONL transparency log with atomic append and optional fsync
 - Module-level configurable log levels (module_levels)
 - Thread-safe reconfiguration from rbuild.config and level metrics
"""

from __future__ import annotations
import os
import sys
import json
import time
import logging
import logging.handlers
import threading
from pathlib import Path
from typing import Dict, Any, Optional, List

_logger = logging.getLogger("rbuild.logging")

DEFAULT_FORMAT = "[%(asctime)s] [%(levelname)s] [%(rbuild_module)s] %(message)s"
DEFAULT_FILE_FORMAT = "%(asctime)s %(levelname)s [%(rbuild_module)s] %(message)s"


# ----------------------
# Color formatter
# ----------------------
class ColorFormatter(logging.Formatter):
    COLORS = {
        logging.DEBUG: "\033[37m",
        logging.INFO: "\033[36m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[41;37m",
    }
    RESET = "\033[0m"

    def __init__(self, fmt: str = None, datefmt: str = None, color: bool = True):
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.color = color

    def format(self, record):
        if not hasattr(record, "rbuild_module"):
            record.rbuild_module = record.name
        msg = super().format(record)
        if self.color:
            color = self.COLORS.get(record.levelno, "")
            return f"{color}{msg}{self.RESET}"
        return msg


# ----------------------
# JSONL formatter for transparency log
# ----------------------
class JSONLineFormatter(logging.Formatter):
    def format(self, record):
        obj = {
            "timestamp": time.time(),
            "level": record.levelname,
            "module": getattr(record, "rbuild_module", record.name),
            "message": record.getMessage(),
        }
        if record.exc_info:
            obj["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(obj, ensure_ascii=False)


# ----------------------
# Module-level filter for per-module levels
# ----------------------
class ModuleLevelFilter(logging.Filter):
    def __init__(self, module_levels: Dict[str, str]):
        super().__init__()
        self.module_levels = {m: getattr(logging, str(lvl).upper(), logging.INFO)
                              for m, lvl in (module_levels or {}).items()}

    def filter(self, record):
        mod = getattr(record, "rbuild_module", None)
        if mod and mod in self.module_levels:
            return record.levelno >= self.module_levels[mod]
        return True


# ----------------------
# RbuildLogger (singleton)
# ----------------------
class RbuildLogger:
    _instance = None
    _singleton_lock = threading.Lock()

    def __new__(cls):
        with cls._singleton_lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._inited = False
        return cls._instance

    def __init__(self):
        if self._inited:
            return
        self._lock = threading.RLock()
        self._root = logging.getLogger("rbuild")
        self._handlers: List[logging.Handler] = []
        self._module_filter: Optional[ModuleLevelFilter] = None
        self._metrics: Dict[str, int] = {lvl: 0 for lvl in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")}
        self._jsonl_path: Optional[Path] = None
        self._jsonl_fsync = False
        self._root.addFilter(self._count_levels_filter)
        # console only until configure() is called with the loaded config
        self._apply_config({})
        self._inited = True

    def _count_levels_filter(self, record):
        name = record.levelname
        if name in self._metrics:
            self._metrics[name] += 1
        return True

    def _atomic_append_jsonl(self, path: Path, obj: Dict[str, Any]):
        line = json.dumps(obj, ensure_ascii=False) + "\n"
        try:
            fd = os.open(str(path), os.O_CREAT | os.O_WRONLY | os.O_APPEND, 0o644)
            try:
                os.write(fd, line.encode("utf-8"))
                if self._jsonl_fsync:
                    os.fsync(fd)
            finally:
                os.close(fd)
        except OSError:
            _logger.exception("logging: failed atomic append to %s", path)

    # ----------------------
    # Configuration
    # ----------------------
    def _apply_config(self, cfg: Dict[str, Any]):
        with self._lock:
            for h in self._handlers:
                self._root.removeHandler(h)
                h.close()
            self._handlers.clear()

            if self._module_filter is not None:
                self._root.removeFilter(self._module_filter)
            self._module_filter = ModuleLevelFilter(cfg.get("module_levels") or {})
            self._root.addFilter(self._module_filter)

            level = getattr(logging, str(cfg.get("level", "INFO")).upper(), logging.INFO)
            fmt = cfg.get("format") or DEFAULT_FORMAT
            datefmt = cfg.get("datefmt", "%H:%M:%S")

            console_cfg = cfg.get("console") or {"enabled": True}
            if console_cfg.get("enabled", True):
                ch = logging.StreamHandler(sys.stderr)
                ch.setLevel(level)
                color = cfg.get("color", True) and hasattr(sys.stderr, "isatty") and sys.stderr.isatty()
                ch.setFormatter(ColorFormatter(fmt, datefmt=datefmt, color=color))
                self._root.addHandler(ch)
                self._handlers.append(ch)

            lowest = level
            if cfg.get("file"):
                try:
                    file_path = Path(cfg["file"]).expanduser()
                    file_path.parent.mkdir(parents=True, exist_ok=True)
                    max_bytes = _parse_size(cfg.get("max_size", "10M"))
                    fh = logging.handlers.RotatingFileHandler(
                        str(file_path), maxBytes=max_bytes or 10 * 1024 * 1024,
                        backupCount=int(cfg.get("backups", 5)), encoding="utf-8")
                    file_level = getattr(logging, str(cfg.get("file_level", "DEBUG")).upper(), logging.DEBUG)
                    fh.setLevel(file_level)
                    fh.setFormatter(ColorFormatter(DEFAULT_FILE_FORMAT, datefmt=datefmt, color=False))
                    self._root.addHandler(fh)
                    self._handlers.append(fh)
                    lowest = min(lowest, file_level)
                except OSError:
                    _logger.exception("logging: failed to configure file handler")

            jsonl_cfg = cfg.get("jsonl") or {}
            self._jsonl_path = None
            self._jsonl_fsync = False
            if jsonl_cfg.get("enabled"):
                try:
                    path = Path(jsonl_cfg.get("path", "~/.cache/rbuild/transparency.jsonl")).expanduser()
                    path.parent.mkdir(parents=True, exist_ok=True)
                    self._jsonl_path = path
                    self._jsonl_fsync = bool(jsonl_cfg.get("fsync", False))
                    jh = logging.FileHandler(str(path), encoding="utf-8")
                    jl = getattr(logging, str(jsonl_cfg.get("level", "INFO")).upper(), logging.INFO)
                    jh.setLevel(jl)
                    jh.setFormatter(JSONLineFormatter())
                    self._root.addHandler(jh)
                    self._handlers.append(jh)
                    lowest = min(lowest, jl)
                except OSError:
                    _logger.exception("logging: failed to configure jsonl handler")

            self._root.setLevel(lowest)

    def configure(self, cfg: Optional[Dict[str, Any]] = None):
        """Apply the `logging` section; read from rbuild.config when cfg is None."""
        if cfg is None:
            from .config import get_config
            cfg = get_config().get("logging", {}) or {}
        self._apply_config(cfg)
        _logger.debug("logging: configuration applied")

    def reload_config(self):
        from .config import reload
        self.configure(reload().get("logging", {}) or {})

    # ----------------------
    # Public API
    # ----------------------
    def get_logger(self, module_name: str) -> logging.LoggerAdapter:
        """Return a LoggerAdapter that injects 'rbuild_module' into records."""
        return logging.LoggerAdapter(logging.getLogger("rbuild"), {"rbuild_module": module_name})

    def parse_and_log(self, module: str, level: int, msg: str, **kwargs):
        """Emit a log record and also append it to the jsonl transparency log."""
        self.get_logger(module).log(level, msg, **kwargs)
        if self._jsonl_path:
            self._atomic_append_jsonl(self._jsonl_path, {
                "timestamp": time.time(),
                "level": logging.getLevelName(level),
                "module": module,
                "message": msg,
            })

    def get_metrics(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._metrics)


def _parse_size(s: Any) -> Optional[int]:
    if s is None:
        return None
    if isinstance(s, int):
        return s
    ss = str(s).strip().upper()
    try:
        for suffix, mult in (("KB", 1024), ("K", 1024), ("MB", 1024 ** 2), ("M", 1024 ** 2),
                             ("GB", 1024 ** 3), ("G", 1024 ** 3)):
            if ss.endswith(suffix):
                return int(float(ss[:-len(suffix)]) * mult)
        return int(float(ss))
    except ValueError:
        _logger.debug("logging: parse size failed for %s", s)
        return None


# ----------------------
# Public factory
# ----------------------
_GLOBAL_LOGGER = RbuildLogger()


def get_logger(module: str):
    return _GLOBAL_LOGGER.get_logger(module)


def parse_and_log(module: str, level: int, msg: str, **kwargs):
    return _GLOBAL_LOGGER.parse_and_log(module, level, msg, **kwargs)


def configure(cfg: Optional[Dict[str, Any]] = None):
    return _GLOBAL_LOGGER.configure(cfg)


def reload_config():
    return _GLOBAL_LOGGER.reload_config()


def get_metrics():
    return _GLOBAL_LOGGER.get_metrics()
