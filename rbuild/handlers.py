# rbuild/handlers.py
"""
Capability handlers for the recipe interpreter.

Every operation a script can perform against the outside world goes
through one of five callables bundled in `Handlers`: open, stat,
readdir, exec and lookpath. Three sets are provided:

 - nop: nothing exists, nothing runs (used to parse os-release)
 - restricted: only the script's own directory is visible and only
   the restricted helper commands run (first pass)
 - default: real filesystem, helper commands, then real processes (second pass)
"""

from __future__ import annotations
import io
import os
import shutil
import signal
import subprocess
import sys
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, IO, List, Optional

from .errors import Cancelled, HandlerError, SandboxRestrictionError
from .logging import get_logger

logger = get_logger("handlers")

NOT_FOUND_STATUS = 127


@dataclass
class HandlerContext:
    runner: Any
    dir: str
    stdin: Any
    stdout: Any
    stderr: Any
    cancel: Optional[threading.Event] = None

    def get(self, name: str) -> str:
        """String value of a shell variable, exported or not."""
        return self.runner.get_str(name)

    def environ(self) -> Dict[str, str]:
        return self.runner.environ()

    def resolve(self, path: str) -> str:
        if not os.path.isabs(path):
            return os.path.join(self.dir, path)
        return path


OpenFunc = Callable[[HandlerContext, str, str], IO]
StatFunc = Callable[[HandlerContext, str, bool], os.stat_result]
ReadDirFunc = Callable[[HandlerContext, str], List[str]]
ExecFunc = Callable[[HandlerContext, List[str]], int]
LookPathFunc = Callable[[HandlerContext, str], Optional[str]]


@dataclass
class Handlers:
    open: OpenFunc
    stat: StatFunc
    readdir: ReadDirFunc
    exec: ExecFunc
    lookpath: LookPathFunc


class NullFile(io.StringIO):
    """Reads as empty and discards writes."""

    def write(self, s: str) -> int:
        return len(s)


# ----------------------------
# Helper command registry
# ----------------------------
# a helper receives (hc, cmd, args) and returns an exit status (None means 0)
HelperFunc = Callable[[HandlerContext, str, List[str]], Optional[int]]


class ExecFuncs(dict):
    """Named helper commands, falling back to another exec handler."""

    def exec_handler(self, fallback: ExecFunc) -> ExecFunc:
        def handler(hc: HandlerContext, args: List[str]) -> int:
            fn = self.get(args[0])
            if fn is None:
                return fallback(hc, args)
            rc = fn(hc, args[0], list(args[1:]))
            return 0 if rc is None else int(rc)
        return handler


# ----------------------------
# nop handlers
# ----------------------------
def nop_open(hc: HandlerContext, path: str, mode: str) -> IO:
    return NullFile()


def nop_stat(hc: HandlerContext, path: str, follow: bool = True) -> os.stat_result:
    raise FileNotFoundError(path)


def nop_readdir(hc: HandlerContext, path: str) -> List[str]:
    raise FileNotFoundError(path)


def nop_exec(hc: HandlerContext, args: List[str]) -> int:
    return NOT_FOUND_STATUS


def nop_lookpath(hc: HandlerContext, name: str) -> Optional[str]:
    return None


def nop_handlers() -> Handlers:
    return Handlers(nop_open, nop_stat, nop_readdir, nop_exec, nop_lookpath)


# ----------------------------
# default handlers
# ----------------------------
def default_open(hc: HandlerContext, path: str, mode: str) -> IO:
    return open(hc.resolve(path), mode, encoding="utf-8", errors="surrogateescape")


def default_stat(hc: HandlerContext, path: str, follow: bool = True) -> os.stat_result:
    path = hc.resolve(path)
    return os.stat(path) if follow else os.lstat(path)


def default_readdir(hc: HandlerContext, path: str) -> List[str]:
    return sorted(os.listdir(hc.resolve(path)))


def default_lookpath(hc: HandlerContext, name: str) -> Optional[str]:
    if os.sep in name:
        p = hc.resolve(name)
        return p if os.access(p, os.X_OK) and not os.path.isdir(p) else None
    return shutil.which(name, path=hc.environ().get("PATH", os.defpath))


def _fileno(stream) -> Optional[int]:
    if stream is None:
        return None
    try:
        return stream.fileno()
    except (AttributeError, OSError, ValueError, io.UnsupportedOperation):
        return None


_FAKEROOT_OK: Optional[bool] = None
_FAKEROOT_LOCK = threading.Lock()


def fakeroot_available() -> bool:
    """True when unprivileged user namespaces work on this host."""
    global _FAKEROOT_OK
    with _FAKEROOT_LOCK:
        if _FAKEROOT_OK is None:
            if not shutil.which("unshare"):
                logger.warning("unshare not found; commands will run without fakeroot")
                _FAKEROOT_OK = False
            else:
                try:
                    rc = subprocess.run(["unshare", "--map-root-user", "true"],
                                        stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL,
                                        timeout=5).returncode
                except (OSError, subprocess.TimeoutExpired):
                    rc = 1
                _FAKEROOT_OK = rc == 0
                if not _FAKEROOT_OK:
                    logger.warning("user namespaces unavailable; commands will run without fakeroot")
        return _FAKEROOT_OK


class DefaultExecHandler:
    """
    Runs real processes. Output goes straight to the session's streams when
    they are OS files; otherwise it is captured and copied over. On
    cancellation the child receives SIGINT, then SIGKILL after kill_timeout.
    """

    def __init__(self, kill_timeout: float = 2.0, fakeroot: bool = False, poll: float = 0.2):
        self.kill_timeout = kill_timeout
        self.fakeroot = fakeroot
        self.poll = poll

    def __call__(self, hc: HandlerContext, args: List[str]) -> int:
        path = default_lookpath(hc, args[0])
        if path is None:
            hc.stderr.write(f"{args[0]}: command not found\n")
            return NOT_FOUND_STATUS

        argv = [path] + list(args[1:])
        if self.fakeroot and os.geteuid() != 0 and fakeroot_available():
            argv = ["unshare", "--map-root-user"] + argv

        in_fd = _fileno(hc.stdin)
        input_data = None
        if in_fd is not None:
            stdin_arg = in_fd
        elif hc.stdin is None:
            stdin_arg = subprocess.DEVNULL
        else:
            stdin_arg = subprocess.PIPE
            input_data = hc.stdin.read()

        out_fd = _fileno(hc.stdout)
        err_fd = _fileno(hc.stderr)
        for s, fd in ((hc.stdout, out_fd), (hc.stderr, err_fd)):
            if fd is not None:
                s.flush()

        logger.debug("exec: %s (cwd=%s)", " ".join(argv), hc.dir)
        try:
            proc = subprocess.Popen(
                argv, cwd=hc.dir, env=hc.environ(),
                stdin=stdin_arg,
                stdout=out_fd if out_fd is not None else subprocess.PIPE,
                stderr=err_fd if err_fd is not None else subprocess.PIPE,
                text=True, errors="replace",
            )
        except OSError as e:
            hc.stderr.write(f"{args[0]}: {e.strerror}\n")
            return 126

        first = True
        while True:
            try:
                out, err = proc.communicate(input=input_data if first else None, timeout=self.poll)
                break
            except subprocess.TimeoutExpired:
                first = False
                if hc.cancel is not None and hc.cancel.is_set():
                    self._interrupt(proc)
                    raise Cancelled(f"{args[0]}: cancelled")
        if out:
            hc.stdout.write(out)
        if err:
            hc.stderr.write(err)
        return proc.returncode

    def _interrupt(self, proc: subprocess.Popen):
        try:
            proc.send_signal(signal.SIGINT)
            proc.wait(timeout=self.kill_timeout)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()


def default_handlers(helpers: Optional[ExecFuncs] = None, kill_timeout: float = 2.0,
                     fakeroot: bool = False) -> Handlers:
    fallback = DefaultExecHandler(kill_timeout=kill_timeout, fakeroot=fakeroot)
    exec_fn: ExecFunc = helpers.exec_handler(fallback) if helpers else fallback
    return Handlers(default_open, default_stat, default_readdir, exec_fn, default_lookpath)


# ----------------------------
# restricted handlers
# ----------------------------
def _within(path: str, root: str) -> bool:
    path = os.path.realpath(path)
    root = os.path.realpath(root)
    return path == root or path.startswith(root.rstrip(os.sep) + os.sep)


def _deny(hc: HandlerContext, op: str, target: str):
    err = SandboxRestrictionError(op, target)
    hits = getattr(hc.runner, "restricted_hits", None)
    if hits is not None:
        hits.append(err)
    logger.debug("restricted: %s", err)


def restricted_handlers(script_dir: str, helpers: Optional[ExecFuncs] = None) -> Handlers:
    """
    Handlers for the first pass. Anything outside script_dir looks like it
    does not exist; commands other than `helpers` are "not found".
    """

    def r_open(hc: HandlerContext, path: str, mode: str) -> IO:
        full = hc.resolve(path)
        if "r" in mode and "+" not in mode and _within(full, script_dir):
            return default_open(hc, full, mode)
        _deny(hc, "open", full)
        return NullFile()

    def r_stat(hc: HandlerContext, path: str, follow: bool = True) -> os.stat_result:
        full = hc.resolve(path)
        if _within(full, script_dir):
            return default_stat(hc, full, follow)
        _deny(hc, "stat", full)
        raise FileNotFoundError(full)

    def r_readdir(hc: HandlerContext, path: str) -> List[str]:
        full = hc.resolve(path)
        if _within(full, script_dir):
            return default_readdir(hc, full)
        _deny(hc, "readdir", full)
        raise FileNotFoundError(full)

    def r_exec_fallback(hc: HandlerContext, args: List[str]) -> int:
        _deny(hc, "exec", args[0])
        return NOT_FOUND_STATUS

    exec_fn = helpers.exec_handler(r_exec_fallback) if helpers else r_exec_fallback
    return Handlers(r_open, r_stat, r_readdir, exec_fn, nop_lookpath)


def stdin_is_piped(stream) -> bool:
    """False when the stream is the process stdin, i.e. nothing was piped in."""
    return not (stream is None or stream is sys.stdin or stream is sys.__stdin__)
