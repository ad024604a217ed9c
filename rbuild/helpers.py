# rbuild/helpers.py
"""
Helper commands available to recipes.

They run in-process through the exec handler and install files under
$pkgdir with the right prefix and permissions, so recipes do not have to
spell out the filesystem layout of every distribution.
"""

from __future__ import annotations
import os
import shutil
import struct
import subprocess
from typing import List, Optional, Tuple

from .errors import HandlerError, InsufficientArgsError
from .handlers import ExecFuncs, HandlerContext, HelperFunc, stdin_is_piped
from .logging import get_logger

logger = get_logger("helpers")

# Debian multiarch tuples, keyed by package architecture
MULTIARCH_TUPLES = {
    "386": "i386-linux-gnu",
    "amd64": "x86_64-linux-gnu",
    "arm5": "arm-linux-gnueabi",
    "arm6": "arm-linux-gnueabihf",
    "arm7": "arm-linux-gnueabihf",
    "arm64": "aarch64-linux-gnu",
    "mips": "mips-linux-gnu",
    "mipsle": "mipsel-linux-gnu",
    "mips64": "mips64-linux-gnuabi64",
    "mips64le": "mips64el-linux-gnuabi64",
    "ppc64": "powerpc64-linux-gnu",
    "ppc64le": "powerpc64le-linux-gnu",
    "s390x": "s390x-linux-gnu",
    "riscv64": "riscv64-linux-gnu",
    "loong64": "loongarch64-linux-gnu",
}

# distributions without /usr/lib64
USR_LIB_DISTROS = ("arch", "alpine", "void", "chimera")

COMPLETION_DIRS = {
    "bash": ("/usr/share/bash-completion/completions", "{}"),
    "zsh": ("/usr/share/zsh/site-functions", "_{}"),
    "fish": ("/usr/share/fish/vendor_completions.d", "{}.fish"),
}


def resolve_path(hc: HandlerContext, path: str) -> str:
    if not os.path.isabs(path):
        return os.path.join(hc.dir, path)
    return path


def _pkg_path(hc: HandlerContext, prefix: str, name: str) -> str:
    return os.path.join(hc.get("pkgdir"), prefix.lstrip("/"), name)


def helper_install(src: str, dst: str, perms: int):
    os.makedirs(os.path.dirname(dst), mode=0o755, exist_ok=True)
    shutil.copyfile(src, dst)
    os.chmod(dst, perms)


def install_helper(prefix: str, perms: int) -> HelperFunc:
    def helper(hc: HandlerContext, cmd: str, args: List[str]) -> None:
        if len(args) < 1:
            raise InsufficientArgsError(cmd, 1, len(args))
        src = resolve_path(hc, args[0])
        dst = _pkg_path(hc, prefix, args[1] if len(args) > 1 else os.path.basename(src))
        try:
            helper_install(src, dst, perms)
        except OSError as e:
            raise HandlerError(f"{cmd}: {e}") from e
        logger.debug("%s: %s -> %s", cmd, src, dst)
    return helper


def install_manual(hc: HandlerContext, cmd: str, args: List[str]) -> None:
    if len(args) < 1:
        raise InsufficientArgsError(cmd, 1, len(args))
    src = resolve_path(hc, args[0])
    base = os.path.basename(src)
    # man pages may be gzipped; the section is the extension before .gz
    stem = base[:-3] if base.endswith(".gz") else base
    section = os.path.splitext(stem)[1].lstrip(".")
    if not section.isdigit():
        raise HandlerError(f"{cmd}: manual number cannot be detected from the filename")
    try:
        helper_install(src, _pkg_path(hc, "/usr/share/man/man" + section, base), 0o644)
    except OSError as e:
        raise HandlerError(f"{cmd}: {e}") from e


def install_completion(hc: HandlerContext, cmd: str, args: List[str]) -> None:
    if not stdin_is_piped(hc.stdin):
        raise HandlerError(f"{cmd}: command requires data to be piped in")
    if len(args) < 2:
        raise InsufficientArgsError(cmd, 2, len(args))
    shell, name = args[0], args[1]
    if shell not in COMPLETION_DIRS:
        raise HandlerError(f"{cmd}: unsupported shell '{shell}'")
    prefix, pattern = COMPLETION_DIRS[shell]
    dst = _pkg_path(hc, prefix, pattern.format(name))
    try:
        os.makedirs(os.path.dirname(dst), mode=0o755, exist_ok=True)
        with open(dst, "w", encoding="utf-8") as f:
            shutil.copyfileobj(hc.stdin, f)
        os.chmod(dst, 0o644)
    except OSError as e:
        raise HandlerError(f"{cmd}: {e}") from e


def lib_prefix(hc: HandlerContext, word_size: Optional[int] = None) -> str:
    """Library directory for the target distribution (GNUInstallDirs rules)."""
    env = os.environ.get("RBUILD_LIB_DIR")
    if env is not None:
        return env
    distro_id = hc.get("DISTRO_ID")
    like = hc.get("DISTRO_ID_LIKE").split()
    if distro_id in USR_LIB_DISTROS or any(d in USR_LIB_DISTROS for d in like):
        return "/usr/lib"
    out = "/usr/lib"
    if (word_size or struct.calcsize("P")) == 8:
        out = "/usr/lib64"
    if distro_id == "debian" or "debian" in like:
        triple = MULTIARCH_TUPLES.get(hc.get("ARCH"))
        if triple:
            out = os.path.join("/usr/lib", triple)
    return out


def install_library(hc: HandlerContext, cmd: str, args: List[str]) -> None:
    install_helper(lib_prefix(hc), 0o755)(hc, cmd, args)


def _git(path: str, *args: str) -> Tuple[int, str, str]:
    try:
        p = subprocess.run(["git", "-C", path] + list(args), stdout=subprocess.PIPE,
                           stderr=subprocess.PIPE, text=True, timeout=60)
    except (OSError, subprocess.TimeoutExpired) as e:
        return 1, "", str(e)
    return p.returncode, p.stdout.strip(), p.stderr.strip()


def git_version(hc: HandlerContext, cmd: str, args: List[str]) -> None:
    """Prints <commit count>.<short hash> for the repository at hc.dir or args[0]."""
    path = resolve_path(hc, args[0]) if args else hc.dir
    rc, count, err = _git(path, "rev-list", "--count", "HEAD")
    if rc != 0:
        raise HandlerError(f"{cmd}: {err or 'not a git repository'}")
    rc, head, err = _git(path, "rev-parse", "HEAD")
    if rc != 0:
        raise HandlerError(f"{cmd}: {err}")
    hc.stdout.write(f"{int(count)}.{head[:7]}")


HELPERS = ExecFuncs({
    "install-binary": install_helper("/usr/bin", 0o755),
    "install-systemd-user": install_helper("/usr/lib/systemd/user", 0o644),
    "install-systemd": install_helper("/usr/lib/systemd/system", 0o644),
    "install-config": install_helper("/etc", 0o644),
    "install-license": install_helper("/usr/share/licenses", 0o644),
    "install-desktop": install_helper("/usr/share/applications", 0o644),
    "install-manual": install_manual,
    "install-completion": install_completion,
    "install-library": install_library,
    "git-version": git_version,
})

# the only helpers allowed during the restricted first pass
RESTRICTED_HELPERS = ExecFuncs({
    "git-version": git_version,
})
