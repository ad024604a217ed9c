# rbuild/distro.py
"""
Host distribution context.

os-release is itself a shell fragment, so it is evaluated with the
interpreter under nop handlers and an empty environment: nothing it
contains can reach the filesystem or run a command.
"""

from __future__ import annotations
import io
import os
import threading
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from . import cpu
from .handlers import nop_handlers
from .logging import get_logger
from .shinterp import Runner
from . import shparse

logger = get_logger("distro")

OS_RELEASE_PATHS = ("/usr/lib/os-release", "/etc/os-release")


@dataclass(frozen=True)
class DistroContext:
    id: str = ""
    like: Tuple[str, ...] = ()
    name: str = ""
    pretty_name: str = ""
    version_id: str = ""
    arch: str = ""
    arm_variant: str = ""
    language: str = ""


def system_language() -> str:
    for var in ("LC_ALL", "LC_MESSAGES", "LANG"):
        val = os.environ.get(var)
        if val:
            return val
    return ""


def parse_os_release(text: str, filename: str = "os-release") -> Dict[str, str]:
    """Evaluate an os-release file and return its variables."""
    runner = Runner(handlers=nop_handlers(), env={}, dir="/",
                    stdin=io.StringIO(), stdout=io.StringIO(), stderr=io.StringIO())
    runner.run(shparse.parse(text, filename))
    return {k: v.as_str() for k, v in runner.vars.items() if k != "PWD"}


def _read_os_release() -> Dict[str, str]:
    for path in OS_RELEASE_PATHS:
        try:
            with open(path, encoding="utf-8", errors="replace") as f:
                return parse_os_release(f.read(), path)
        except FileNotFoundError:
            continue
    logger.warning("no os-release file found; distribution is unknown")
    return {}


def context_from_os_release(values: Dict[str, str], arch: Optional[str] = None,
                            arm_variant: Optional[str] = None,
                            language: Optional[str] = None) -> DistroContext:
    """Build a DistroContext; RBUILD_DISTRO and RBUILD_DISTRO_LIKE override the file."""
    distro_id = os.environ.get("RBUILD_DISTRO") or values.get("ID", "")
    like_env = os.environ.get("RBUILD_DISTRO_LIKE")
    like = (like_env if like_env is not None else values.get("ID_LIKE", "")).split()
    a = arch or cpu.arch()
    variant = arm_variant if arm_variant is not None else (cpu.arm_variant() if a == "arm" else "")
    return DistroContext(
        id=distro_id,
        like=tuple(like),
        name=values.get("NAME", ""),
        pretty_name=values.get("PRETTY_NAME", ""),
        version_id=values.get("VERSION_ID", ""),
        arch=a,
        arm_variant=variant,
        language=system_language() if language is None else language,
    )


_CONTEXT: Optional[DistroContext] = None
_CONTEXT_LOCK = threading.Lock()


def get_distro_context() -> DistroContext:
    """Parsed once per process; the result is immutable."""
    global _CONTEXT
    with _CONTEXT_LOCK:
        if _CONTEXT is None:
            _CONTEXT = context_from_os_release(_read_os_release())
            logger.debug("distro: %s (like %s) on %s", _CONTEXT.id, " ".join(_CONTEXT.like), _CONTEXT.arch)
        return _CONTEXT


def script_env(info: DistroContext, scriptdir: str = "", srcdir: str = "",
               pkgdir: str = "") -> Dict[str, str]:
    """Variables every recipe session sees on top of the process environment."""
    env = {
        "DISTRO_NAME": info.name,
        "DISTRO_PRETTY_NAME": info.pretty_name,
        "DISTRO_ID": info.id,
        "DISTRO_VERSION_ID": info.version_id,
        "DISTRO_ID_LIKE": " ".join(info.like),
        "ARCH": cpu.package_arch(info.arch, info.arm_variant),
        "NCPU": str(os.cpu_count() or 1),
    }
    for key, val in (("scriptdir", scriptdir), ("srcdir", srcdir), ("pkgdir", pkgdir)):
        if val:
            env[key] = val
    return env
