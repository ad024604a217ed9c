# rbuild/manager.py
"""
Native package manager adapters.

Each adapter knows the command lines of one manager. Commands that change
the system run through the root command (default `sudo`) with the
terminal attached; listing commands are captured and parsed.
"""

from __future__ import annotations
import os
import re
import shutil
import subprocess
from typing import Dict, List, Optional, Sequence, Tuple

from .errors import ManagerError
from .logging import get_logger

logger = get_logger("manager")

DEFAULT_ROOT_CMD = "sudo"

# separates name and version in dpkg-query / rpm output
_SEP = "\u200b"


def _safe_run(cmd: List[str], env: Optional[Dict[str, str]] = None,
              timeout: Optional[int] = None) -> Tuple[int, str, str]:
    """Run command and capture output. Returns (rc, stdout, stderr)"""
    logger.debug("RUN: %s", " ".join(cmd))
    try:
        p = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE,
                             env=(env or os.environ), text=True)
    except OSError as e:
        return 127, "", str(e)
    try:
        out, err = p.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        p.kill()
        out, err = p.communicate()
        return 124, out or "", err or ""
    return p.returncode, out or "", err or ""


class Manager:
    """Base adapter. Subclasses set name/format/binary and the command tables."""

    name = ""
    format = ""
    binary = ""

    def __init__(self, root_cmd: str = "", noconfirm: bool = False):
        self.root_cmd = root_cmd
        self.noconfirm = noconfirm

    def exists(self) -> bool:
        return shutil.which(self.binary or self.name) is not None

    def set_root_cmd(self, cmd: str) -> None:
        self.root_cmd = cmd

    def _root(self) -> List[str]:
        if os.geteuid() == 0:
            return []
        return (self.root_cmd or DEFAULT_ROOT_CMD).split()

    def _run(self, action: str, args: Sequence[str], as_root: bool = True) -> None:
        cmd = (self._root() if as_root else []) + list(args)
        logger.info("%s: %s", self.name, " ".join(cmd))
        try:
            rc = subprocess.run(cmd).returncode
        except OSError as e:
            raise ManagerError(self.name, action, 127, str(e)) from e
        if rc != 0:
            raise ManagerError(self.name, action, rc)

    # the command tables; a subclass overrides what differs
    def _sync_cmd(self) -> List[str]:
        raise NotImplementedError

    def _install_cmd(self) -> List[str]:
        raise NotImplementedError

    def _install_local_cmd(self) -> List[str]:
        return self._install_cmd()

    def _remove_cmd(self) -> List[str]:
        raise NotImplementedError

    def _upgrade_cmd(self) -> List[str]:
        return self._install_cmd()

    def _upgrade_all_cmd(self) -> List[str]:
        raise NotImplementedError

    def sync(self) -> None:
        self._run("sync", self._sync_cmd())

    def install(self, names: Sequence[str]) -> None:
        if names:
            self._run("install", self._install_cmd() + list(names))

    def install_local(self, paths: Sequence[str]) -> None:
        if paths:
            self._run("install-local", self._install_local_cmd() + [os.path.abspath(p) for p in paths])

    def remove(self, names: Sequence[str]) -> None:
        if names:
            self._run("remove", self._remove_cmd() + list(names))

    def upgrade(self, names: Sequence[str]) -> None:
        if names:
            self._run("upgrade", self._upgrade_cmd() + list(names))

    def upgrade_all(self) -> None:
        self._run("upgrade-all", self._upgrade_all_cmd())

    def list_installed(self) -> Dict[str, str]:
        raise NotImplementedError

    def _capture(self, action: str, cmd: List[str]) -> str:
        rc, out, err = _safe_run(cmd)
        if rc != 0:
            raise ManagerError(self.name, action, rc, err.strip() or None)
        return out

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


class Pacman(Manager):
    name = "pacman"
    format = "archlinux"

    def _flags(self) -> List[str]:
        return ["pacman", "--noconfirm"]

    def _sync_cmd(self):
        return self._flags() + ["-Sy"]

    def _install_cmd(self):
        return self._flags() + ["-S", "--needed"]

    def _install_local_cmd(self):
        return self._flags() + ["-U"]

    def _remove_cmd(self):
        return self._flags() + ["-R"]

    def _upgrade_all_cmd(self):
        return self._flags() + ["-Su"]

    def list_installed(self) -> Dict[str, str]:
        out: Dict[str, str] = {}
        for line in self._capture("list-installed", ["pacman", "-Q"]).splitlines():
            name, _, version = line.partition(" ")
            if version:
                out[name] = version
        return out


class APT(Manager):
    name = "apt"
    format = "deb"

    def _cmd(self, *args: str) -> List[str]:
        cmd = ["apt"] + list(args)
        if self.noconfirm:
            cmd.append("-y")
        return cmd

    def _sync_cmd(self):
        return ["apt", "update"]

    def _install_cmd(self):
        return self._cmd("install")

    def _remove_cmd(self):
        return self._cmd("remove")

    def _upgrade_cmd(self):
        return self._cmd("install", "--only-upgrade")

    def _upgrade_all_cmd(self):
        return self._cmd("upgrade")

    def list_installed(self) -> Dict[str, str]:
        text = self._capture("list-installed", ["dpkg-query", "-f", "${Package}" + _SEP + "${Version}\n", "-W"])
        return _parse_sep_lines(text)


_RPM_QUERY = ["rpm", "-qa", "--queryformat", "%{NAME}" + _SEP + "%|EPOCH?{%{EPOCH}:}:{}|%{VERSION}-%{RELEASE}\n"]


class DNF(Manager):
    name = "dnf"
    format = "rpm"

    def _sync_cmd(self):
        return [self.name, "makecache"]

    def _install_cmd(self):
        return [self.name, "install", "-y"]

    def _remove_cmd(self):
        return [self.name, "remove", "-y"]

    def _upgrade_cmd(self):
        return [self.name, "upgrade", "-y"]

    def _upgrade_all_cmd(self):
        return [self.name, "upgrade", "-y"]

    def list_installed(self) -> Dict[str, str]:
        return _parse_sep_lines(self._capture("list-installed", _RPM_QUERY))


class YUM(DNF):
    name = "yum"


class Zypper(Manager):
    name = "zypper"
    format = "rpm"

    def _sync_cmd(self):
        return ["zypper", "refresh"]

    def _install_cmd(self):
        return ["zypper", "install", "-y"]

    def _remove_cmd(self):
        return ["zypper", "remove", "-y"]

    def _upgrade_cmd(self):
        return ["zypper", "update", "-y"]

    def _upgrade_all_cmd(self):
        return ["zypper", "update", "-y"]

    def list_installed(self) -> Dict[str, str]:
        return _parse_sep_lines(self._capture("list-installed", _RPM_QUERY))


_APK_LINE = re.compile(r"^(?P<name>.+?)-(?P<version>\d[^-\s]*-r\d+)\s")


class APK(Manager):
    name = "apk"
    format = "apk"

    def _sync_cmd(self):
        return ["apk", "update"]

    def _install_cmd(self):
        return ["apk", "add"]

    def _install_local_cmd(self):
        return ["apk", "add", "--allow-untrusted"]

    def _remove_cmd(self):
        return ["apk", "del"]

    def _upgrade_cmd(self):
        return ["apk", "upgrade"]

    def _upgrade_all_cmd(self):
        return ["apk", "upgrade"]

    def list_installed(self) -> Dict[str, str]:
        out: Dict[str, str] = {}
        for line in self._capture("list-installed", ["apk", "list", "-I"]).splitlines():
            m = _APK_LINE.match(line)
            if m:
                out[m.group("name")] = m.group("version")
        return out


def _parse_sep_lines(text: str) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for line in text.splitlines():
        name, sep, version = line.partition(_SEP)
        if sep:
            out[name] = version
    return out


MANAGERS = (Pacman, APT, DNF, YUM, APK, Zypper)


def detect(root_cmd: str = "", noconfirm: bool = False) -> Optional[Manager]:
    """First supported manager present on this system."""
    for cls in MANAGERS:
        mgr = cls(root_cmd, noconfirm)
        if mgr.exists():
            return mgr
    return None


def get(name: str, root_cmd: str = "", noconfirm: bool = False) -> Optional[Manager]:
    for cls in MANAGERS:
        if cls.name == name:
            return cls(root_cmd, noconfirm)
    return None


def names() -> List[str]:
    return [cls.name for cls in MANAGERS]
