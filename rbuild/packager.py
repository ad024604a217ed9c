# rbuild/packager.py
"""
packager.py - turn a populated $pkgdir into a distribution package

Backends:
- NfpmPackager (deb, rpm, apk, archlinux): writes an nfpm YAML config and runs the `nfpm` CLI
- TarPackager (tar): a plain .tar.gz with a .PKGINFO member, for hosts without nfpm

Both compute the conventional file name of a package without writing
anything; the build orchestrator uses it for the cache-hit check.
"""

from __future__ import annotations

import io
import os
import shutil
import subprocess
import tarfile
import tempfile
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import IO, Dict, List, Optional

import yaml

from .errors import PackagerError
from .logging import get_logger

logger = get_logger("packager")

# Go-style arch name -> per-format arch name
_DEB_ARCH = {
    "386": "i386", "arm5": "armel", "arm6": "armel", "arm7": "armhf",
    "mipsle": "mipsel", "mips64le": "mips64el", "ppc64le": "ppc64el",
}
_RPM_ARCH = {
    "amd64": "x86_64", "386": "i386", "arm64": "aarch64", "arm5": "armv5tel",
    "arm6": "armv6hl", "arm7": "armv7hl", "mipsle": "mipsel", "mips64le": "mips64el",
    "all": "noarch",
}
_APK_ARCH = {
    "amd64": "x86_64", "386": "x86", "arm64": "aarch64", "arm6": "armhf",
    "arm7": "armv7", "all": "noarch",
}
_ARCH_ARCH = {
    "amd64": "x86_64", "386": "i686", "arm64": "aarch64", "arm5": "arm",
    "arm6": "armv6h", "arm7": "armv7h", "all": "any",
}


@dataclass
class Content:
    """One entry of the package file manifest. Destinations are absolute paths."""
    source: str
    destination: str
    type: str = "file"  # file | dir | symlink | config|noreplace
    mode: int = 0o644
    mtime: float = 0.0
    size: int = 0


@dataclass
class PackageInfo:
    name: str
    version: str
    release: int = 1
    epoch: int = 0
    arch: str = ""
    description: str = ""
    homepage: str = ""
    maintainer: str = ""
    license: str = ""
    depends: List[str] = field(default_factory=list)
    conflicts: List[str] = field(default_factory=list)
    replaces: List[str] = field(default_factory=list)
    provides: List[str] = field(default_factory=list)
    # hook name (preinstall, postupgrade, pretrans, ...) -> script path
    scripts: Dict[str, str] = field(default_factory=dict)
    contents: List[Content] = field(default_factory=list)

    @property
    def full_version(self) -> str:
        v = f"{self.version}-{self.release}" if self.release else self.version
        return f"{self.epoch}:{v}" if self.epoch else v


def build_contents(pkgdir: str, backup: Optional[List[str]] = None) -> List[Content]:
    """
    Walk pkgdir and describe every file, symlink and empty directory.
    Files listed in `backup` become config|noreplace.
    """
    backup = set(backup or [])
    out: List[Content] = []
    pkgdir = os.path.abspath(pkgdir)
    for root, dirs, files in os.walk(pkgdir):
        dirs.sort()
        rel_root = "/" + os.path.relpath(root, pkgdir) if root != pkgdir else "/"
        if root != pkgdir and not dirs and not files:
            st = os.lstat(root)
            out.append(Content(root, rel_root, "dir", 0o755, st.st_mtime))
            continue
        # os.walk lists symlinks to directories in dirs
        for name in sorted(files + [d for d in dirs if os.path.islink(os.path.join(root, d))]):
            full = os.path.join(root, name)
            dst = os.path.join(rel_root, name)
            st = os.lstat(full)
            if os.path.islink(full):
                target = os.readlink(full)
                if target.startswith(pkgdir + os.sep):
                    target = target[len(pkgdir):]
                out.append(Content(target, dst, "symlink", st.st_mode & 0o7777, st.st_mtime))
                continue
            kind = "config|noreplace" if dst in backup else "file"
            out.append(Content(full, dst, kind, st.st_mode & 0o7777, st.st_mtime, st.st_size))
    return out


class Packager:
    format = ""

    def conventional_file_name(self, info: PackageInfo) -> str:
        raise NotImplementedError

    def package(self, info: PackageInfo, stream: IO[bytes]) -> None:
        raise NotImplementedError


class NfpmPackager(Packager):
    """Delegates to the nfpm CLI (https://nfpm.goreleaser.com)."""

    FORMATS = ("deb", "rpm", "apk", "archlinux")

    def __init__(self, format: str, nfpm_bin: str = "nfpm", timeout: int = 1800):
        if format not in self.FORMATS:
            raise PackagerError(f"unsupported package format: {format}")
        self.format = format
        self.nfpm_bin = nfpm_bin
        self.timeout = timeout

    def conventional_file_name(self, info: PackageInfo) -> str:
        release = str(info.release or 1)
        if self.format == "deb":
            arch = _DEB_ARCH.get(info.arch, info.arch)
            version = f"{info.epoch}:{info.version}" if info.epoch else info.version
            return f"{info.name}_{version}-{release}_{arch}.deb"
        if self.format == "rpm":
            arch = _RPM_ARCH.get(info.arch, info.arch)
            return f"{info.name}-{info.version.replace('-', '_')}-{release}.{arch}.rpm"
        if self.format == "apk":
            arch = _APK_ARCH.get(info.arch, info.arch)
            return f"{info.name}_{info.version}-r{release}_{arch}.apk"
        arch = _ARCH_ARCH.get(info.arch, info.arch)
        version = f"{info.epoch}:{info.version}" if info.epoch else info.version
        return f"{info.name}-{version}-{release}-{arch}.pkg.tar.zst"

    def config(self, info: PackageInfo) -> Dict:
        """nfpm YAML config as a dict."""
        cfg: Dict = {
            "name": info.name,
            "arch": info.arch,
            "platform": "linux",
            "version": info.version,
            "version_schema": "none",
            "release": str(info.release or 1),
            "maintainer": info.maintainer,
            "description": info.description,
            "homepage": info.homepage,
            "license": info.license,
            "depends": list(info.depends),
            "conflicts": list(info.conflicts),
            "replaces": list(info.replaces),
            "provides": list(info.provides),
            "contents": [],
        }
        if info.epoch:
            cfg["epoch"] = str(info.epoch)
        for c in info.contents:
            entry: Dict = {"dst": c.destination}
            if c.type != "dir":
                entry["src"] = c.source
            if c.type != "file":
                entry["type"] = c.type
            entry["file_info"] = {
                "mode": c.mode,
                "mtime": datetime.fromtimestamp(c.mtime, tz=timezone.utc).isoformat(),
            }
            cfg["contents"].append(entry)

        common = {k: v for k, v in info.scripts.items()
                  if k in ("preinstall", "postinstall", "preremove", "postremove") and v}
        if common:
            cfg["scripts"] = common
        upgrade = {k: v for k, v in info.scripts.items() if k in ("preupgrade", "postupgrade") and v}
        if upgrade:
            cfg["apk"] = {"scripts": dict(upgrade)}
            cfg["archlinux"] = {"scripts": dict(upgrade)}
        trans = {k: v for k, v in info.scripts.items() if k in ("pretrans", "posttrans") and v}
        if trans:
            cfg["rpm"] = {"scripts": trans}
        return cfg

    def package(self, info: PackageInfo, stream: IO[bytes]) -> None:
        if shutil.which(self.nfpm_bin) is None:
            raise PackagerError(f"{self.nfpm_bin} not found in PATH; install nfpm or set RBUILD_PKG_FORMAT=tar")
        tmp = tempfile.mkdtemp(prefix="rbuild-nfpm-")
        try:
            cfg_path = os.path.join(tmp, "nfpm.yaml")
            with open(cfg_path, "w", encoding="utf-8") as f:
                yaml.safe_dump(self.config(info), f, sort_keys=False)
            target = os.path.join(tmp, self.conventional_file_name(info))
            cmd = [self.nfpm_bin, "package", "--config", cfg_path, "--packager", self.format, "--target", target]
            logger.debug("RUN: %s", " ".join(cmd))
            try:
                p = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True,
                                   timeout=self.timeout)
            except subprocess.TimeoutExpired as e:
                raise PackagerError(f"nfpm timed out after {self.timeout}s") from e
            if p.returncode != 0:
                raise PackagerError(f"nfpm failed (rc={p.returncode}): {p.stderr.strip()}")
            with open(target, "rb") as f:
                shutil.copyfileobj(f, stream)
        finally:
            shutil.rmtree(tmp, ignore_errors=True)


class TarPackager(Packager):
    format = "tar"

    def conventional_file_name(self, info: PackageInfo) -> str:
        return f"{info.name}-{info.full_version}-{info.arch}.tar.gz"

    def pkginfo(self, info: PackageInfo) -> str:
        lines = [
            f"pkgname = {info.name}",
            f"pkgver = {info.full_version}",
            f"pkgdesc = {info.description}",
            f"url = {info.homepage}",
            f"builddate = {int(time.time())}",
            f"packager = {info.maintainer}",
            f"arch = {info.arch}",
            f"license = {info.license}",
        ]
        for key, values in (("depend", info.depends), ("conflict", info.conflicts),
                            ("replaces", info.replaces), ("provides", info.provides)):
            lines.extend(f"{key} = {v}" for v in values)
        for c in info.contents:
            if c.type == "config|noreplace":
                lines.append(f"backup = {c.destination.lstrip('/')}")
        return "\n".join(lines) + "\n"

    def package(self, info: PackageInfo, stream: IO[bytes]) -> None:
        with tarfile.open(fileobj=stream, mode="w:gz") as tar:
            data = self.pkginfo(info).encode("utf-8")
            ti = tarfile.TarInfo(".PKGINFO")
            ti.size = len(data)
            ti.mtime = int(time.time())
            ti.mode = 0o644
            tar.addfile(ti, io.BytesIO(data))
            for c in info.contents:
                arcname = c.destination.lstrip("/")
                if c.type == "symlink":
                    ti = tarfile.TarInfo(arcname)
                    ti.type = tarfile.SYMTYPE
                    ti.linkname = c.source
                    ti.mode = c.mode
                    ti.mtime = int(c.mtime)
                    tar.addfile(ti)
                elif c.type == "dir":
                    ti = tarfile.TarInfo(arcname)
                    ti.type = tarfile.DIRTYPE
                    ti.mode = c.mode
                    ti.mtime = int(c.mtime)
                    tar.addfile(ti)
                else:
                    tar.add(c.source, arcname=arcname, recursive=False)


FORMATS = NfpmPackager.FORMATS + ("tar",)


def get_packager(format: str) -> Packager:
    if format == "tar":
        return TarPackager()
    if format in NfpmPackager.FORMATS:
        return NfpmPackager(format)
    raise PackagerError(f"unsupported package format: {format}")


def pkg_format(manager_format: str) -> str:
    """Package format for a manager, overridable with RBUILD_PKG_FORMAT."""
    return os.environ.get("RBUILD_PKG_FORMAT") or manager_format
