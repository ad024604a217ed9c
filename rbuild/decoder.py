# rbuild/decoder.py
"""
Typed access to the variables and functions of an executed recipe.

Every lookup goes through the override resolver, so `deps_arch` wins
over `deps` on an Arch Linux host. The first candidate that exists is
used even when its value is empty.
"""

from __future__ import annotations
import threading
from dataclasses import dataclass, field
from typing import Any, IO, List, Optional, Sequence

from . import overrides
from .distro import DistroContext
from .errors import DecodeError, ScriptError, VarNotFoundError
from .logging import get_logger
from .overrides import OverrideOpts, DEFAULT_OPTS
from .shinterp import Runner, Variable

logger = get_logger("decoder")


@dataclass
class Scripts:
    preinstall: str = ""
    postinstall: str = ""
    preremove: str = ""
    postremove: str = ""
    preupgrade: str = ""
    postupgrade: str = ""
    pretrans: str = ""
    posttrans: str = ""


@dataclass
class RecipeSpec:
    name: str = ""
    version: str = ""
    release: int = 0
    epoch: int = 0
    description: str = ""
    homepage: str = ""
    maintainer: str = ""
    architectures: List[str] = field(default_factory=list)
    licenses: List[str] = field(default_factory=list)
    provides: List[str] = field(default_factory=list)
    conflicts: List[str] = field(default_factory=list)
    replaces: List[str] = field(default_factory=list)
    depends: List[str] = field(default_factory=list)
    build_depends: List[str] = field(default_factory=list)
    opt_depends: List[str] = field(default_factory=list)
    sources: List[str] = field(default_factory=list)
    checksums: List[str] = field(default_factory=list)
    backup: List[str] = field(default_factory=list)
    scripts: Scripts = field(default_factory=Scripts)

    @property
    def full_version(self) -> str:
        """[epoch:]version-release"""
        v = f"{self.version}-{self.release}"
        return f"{self.epoch}:{v}" if self.epoch else v


@dataclass(frozen=True)
class Field:
    attr: str
    var: str
    kind: str  # str | int | uint | list | scripts
    required: bool = False


FIELDS = (
    Field("name", "name", "str", required=True),
    Field("version", "version", "str", required=True),
    Field("release", "release", "int", required=True),
    Field("epoch", "epoch", "uint"),
    Field("description", "desc", "str"),
    Field("homepage", "homepage", "str"),
    Field("maintainer", "maintainer", "str"),
    Field("architectures", "architectures", "list"),
    Field("licenses", "license", "list"),
    Field("provides", "provides", "list"),
    Field("conflicts", "conflicts", "list"),
    Field("replaces", "replaces", "list"),
    Field("depends", "deps", "list"),
    Field("build_depends", "build_deps", "list"),
    Field("opt_depends", "opt_deps", "list"),
    Field("sources", "sources", "list"),
    Field("checksums", "checksums", "list"),
    Field("backup", "backup", "list"),
    Field("scripts", "scripts", "scripts"),
)


# ----------------------------
# weak typing
# ----------------------------
def _to_str(name: str, value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        if len(value) == 0:
            return ""
        if len(value) == 1:
            return value[0]
        raise DecodeError(name, f"expected a string, got an array of {len(value)} elements")
    raise DecodeError(name, "expected a string, got an associative array")


def _to_int(name: str, value: Any, unsigned: bool = False) -> int:
    s = _to_str(name, value).strip()
    if s == "":
        return 0
    try:
        n = int(s, 10)
    except ValueError:
        raise DecodeError(name, f"cannot parse '{s}' as an integer") from None
    if unsigned and n < 0:
        raise DecodeError(name, f"expected an unsigned integer, got {n}")
    return n


def _to_list(name: str, value: Any) -> List[str]:
    if isinstance(value, list):
        return list(value)
    if isinstance(value, str):
        return [value] if value else []
    raise DecodeError(name, "expected an array, got an associative array")


def _to_scripts(name: str, value: Any) -> Scripts:
    if not isinstance(value, dict):
        raise DecodeError(name, "expected an associative array")
    known = Scripts.__dataclass_fields__
    unknown = [k for k in value if k not in known]
    if unknown:
        logger.warning("decoder: ignoring unknown script hooks: %s", ", ".join(sorted(unknown)))
    return Scripts(**{k: v for k, v in value.items() if k in known})


def convert(name: str, value: Any, kind: str) -> Any:
    if kind == "str":
        return _to_str(name, value)
    if kind == "int":
        return _to_int(name, value)
    if kind == "uint":
        return _to_int(name, value, unsigned=True)
    if kind == "list":
        return _to_list(name, value)
    if kind == "scripts":
        return _to_scripts(name, value)
    raise ValueError(f"unknown field kind {kind}")


# ----------------------------
# script functions
# ----------------------------
class ScriptFunc:
    """
    A recipe function bound to a session. Each call runs in an isolated
    copy of the session, so variables it sets do not leak back.
    """

    def __init__(self, runner: Runner, name: str, resolved: str):
        self.runner = runner
        self.name = name
        self.resolved = resolved

    def __call__(self, dir: Optional[str] = None, args: Sequence[str] = (),
                 stdin: Optional[IO] = None, stdout: Optional[IO] = None,
                 stderr: Optional[IO] = None, cancel: Optional[threading.Event] = None) -> None:
        sub = self.runner.subshell()
        if dir:
            sub.dir = dir
            sub.set_var("PWD", dir, exported=True)
        if stdin is not None:
            sub.stdin = stdin
        if stdout is not None:
            sub.stdout = stdout
        if stderr is not None:
            sub.stderr = stderr
        if cancel is not None:
            sub.cancel = cancel
        logger.debug("running %s() as %s", self.name, self.resolved)
        status = sub.call(self.resolved, list(args))
        if status != 0:
            raise ScriptError(status, f"{self.name}()")

    def __repr__(self) -> str:
        return f"ScriptFunc({self.resolved!r})"


# ----------------------------
# Decoder
# ----------------------------
class Decoder:
    def __init__(self, info: DistroContext, runner: Runner, opts: OverrideOpts = DEFAULT_OPTS):
        self.info = info
        self.runner = runner
        self.opts = opts

    def names(self, name: str) -> List[str]:
        return overrides.resolve(self.info, self.opts.with_name(name))

    def get_var(self, name: str) -> Optional[Variable]:
        for candidate in self.names(name):
            if self.runner.lookup(candidate) is not None:
                return self.runner.get_var(candidate)
        return None

    def decode_var(self, name: str, kind: Optional[str] = None) -> Any:
        """
        Value of the first existing override of `name`. Indexed arrays come
        back as lists, associative arrays as dicts, everything else as str;
        with `kind` the value is converted to that field kind.
        """
        var = self.get_var(name)
        if var is None:
            raise VarNotFoundError(name)
        if var.kind == "indexed":
            value: Any = list(var.value)
        elif var.kind == "assoc":
            value = dict(var.value)
        else:
            value = var.as_str()
        if kind is not None:
            return convert(name, value, kind)
        return value

    def decode_vars(self) -> RecipeSpec:
        spec = RecipeSpec()
        for f in FIELDS:
            try:
                value = self.decode_var(f.var, f.kind)
            except VarNotFoundError:
                if f.required:
                    raise
                continue
            setattr(spec, f.attr, value)
        return spec

    def get_func(self, name: str) -> Optional[ScriptFunc]:
        for candidate in self.names(name):
            if candidate in self.runner.funcs:
                return ScriptFunc(self.runner, name, candidate)
        return None

    def set_version(self, spec: RecipeSpec, version: str) -> None:
        """Rewrite the version in the live session and the decoded spec."""
        target = next((c for c in self.names("version") if self.runner.lookup(c) is not None), "version")
        self.runner.set_var(target, version)
        spec.version = version
