# rbuild/errors.py
"""
Exception hierarchy shared by every rbuild module.

Fatal conditions (malformed recipe, integrity failures) raise; the CLI
turns them into a logged message and a non-zero exit.
"""

from __future__ import annotations
from typing import Optional


class RbuildError(Exception):
    """Base class for all rbuild errors."""


class ConfigError(RbuildError):
    pass


class ParseError(RbuildError):
    def __init__(self, msg: str, filename: str = "", line: int = 0, col: int = 0):
        self.msg = msg
        self.filename = filename
        self.line = line
        self.col = col
        where = filename or "<script>"
        if line:
            where = f"{where}:{line}:{col}"
        super().__init__(f"{where}: {msg}")


class SandboxRestrictionError(RbuildError):
    """
    A restricted session touched something outside its script directory.
    Never raised to callers: restricted handlers record it on the runner
    and then behave as if the target does not exist.
    """

    def __init__(self, op: str, target: str):
        self.op = op
        self.target = target
        super().__init__(f"{op} denied: {target}")


class NotFoundError(RbuildError):
    kind = "item"

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"{self.kind} not found: {name}")


class VarNotFoundError(NotFoundError):
    kind = "variable"


class FuncNotFoundError(NotFoundError):
    kind = "function"


class DecodeError(RbuildError):
    def __init__(self, field: str, msg: str):
        self.field = field
        super().__init__(f"decoding '{field}': {msg}")


class ScriptError(RbuildError):
    """A shell function or script exited with a non-zero status."""

    def __init__(self, status: int, what: str = "script"):
        self.status = status
        super().__init__(f"{what} exited with status {status}")


class HandlerError(RbuildError):
    """Raised by exec helpers; aborts the running session."""


class InsufficientArgsError(HandlerError):
    def __init__(self, cmd: str, expected: int, got: int):
        self.cmd = cmd
        self.expected = expected
        self.got = got
        noun = "argument" if expected == 1 else "arguments"
        super().__init__(f"{cmd}: command requires at least {expected} {noun}, got {got}")


class Cancelled(RbuildError):
    pass


class FetchError(RbuildError):
    pass


class ChecksumMismatchError(FetchError):
    def __init__(self, path: str, algo: str, expected: str, actual: str):
        self.path = path
        self.algo = algo
        self.expected = expected
        self.actual = actual
        super().__init__(f"{path}: {algo} checksum mismatch (expected {expected}, got {actual})")


class ManagerError(RbuildError):
    def __init__(self, manager: str, action: str, rc: int, detail: Optional[str] = None):
        self.manager = manager
        self.action = action
        self.rc = rc
        msg = f"{manager}: {action} failed (rc={rc})"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class PackagerError(RbuildError):
    pass


class BuildError(RbuildError):
    pass


class ArchitectureMismatchError(BuildError):
    def __init__(self, arch: str, supported):
        self.arch = arch
        self.supported = list(supported)
        super().__init__(f"architecture {arch} not in {', '.join(self.supported)}")


class MissingPackageFunctionError(BuildError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"{name}: recipe has no package() function")


class SourcesMismatchError(BuildError):
    def __init__(self, name: str, sources: int, checksums: int):
        self.name = name
        super().__init__(
            f"{name}: the number of sources ({sources}) does not match the number of checksums ({checksums})"
        )


class DependencyCycleError(BuildError):
    def __init__(self, cycle):
        self.cycle = list(cycle)
        super().__init__(f"dependency cycle: {' -> '.join(self.cycle)}")


class UserAbortError(BuildError):
    pass


class AlreadyInstalledWarning(UserWarning):
    pass
