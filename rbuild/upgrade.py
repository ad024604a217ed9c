# rbuild/upgrade.py
"""
upgrade.py - find installed packages with a newer recipe in the index

- Installed versions come from the native manager
- Index records are resolved for the host (override maps collapsed) and
  skipped when they cannot be built on this architecture
- Names matching any `ignore` glob (config build.ignore_pkg_updates) are skipped
"""

from __future__ import annotations
import fnmatch
from dataclasses import dataclass
from typing import List, Optional, Sequence

from . import cpu, overrides
from .db import DB, Package
from .distro import DistroContext
from .logging import get_logger
from .manager import Manager
from .overrides import DEFAULT_OPTS, OverrideOpts
from .vercmp import vercmp

logger = get_logger("upgrade")


@dataclass
class UpgradeInfo:
    name: str
    from_version: str
    to_version: str


def repo_version(pkg: Package) -> str:
    """[epoch:]version[-release] the way native managers print it."""
    v = pkg.version
    if pkg.release:
        v = f"{v}-{pkg.release}"
        if pkg.epoch:
            v = f"{pkg.epoch}:{v}"
    return v


def is_ignored(name: str, ignore: Sequence[str]) -> bool:
    return any(fnmatch.fnmatchcase(name, pat) for pat in ignore)


def check_for_updates(index: DB, manager: Manager, info: DistroContext,
                      ignore: Optional[Sequence[str]] = None,
                      opts: OverrideOpts = DEFAULT_OPTS) -> List[UpgradeInfo]:
    ignore = list(ignore or [])
    installed = manager.list_installed()
    names = overrides.resolve(info, opts)
    out: List[UpgradeInfo] = []
    for name in sorted(installed):
        if is_ignored(name, ignore):
            logger.debug("upgrade: %s ignored by configuration", name)
            continue
        pkgs = index.get_pkgs("name = ?", (name,))
        if not pkgs:
            continue
        pkg = pkgs[0]
        resolved = overrides.resolve_package(pkg, names)
        if not cpu.is_compatible(info.arch, info.arm_variant, resolved.architectures):
            continue
        to_version = repo_version(pkg)
        if vercmp(to_version, installed[name]) > 0:
            out.append(UpgradeInfo(name, installed[name], to_version))
    return out
