# rbuild/shinterp.py
"""
Interpreter for trees produced by rbuild.shparse.

A Runner holds the session state (variables, functions, working
directory, positional parameters, standard streams). Everything that
touches the outside world goes through its `Handlers`, which is what
makes the restricted first pass possible.

Pipelines run their stages one after another with the output of each
stage buffered into the next; background jobs (`&`) run synchronously.
"""

from __future__ import annotations
import copy
import io
import os
import re
import shlex
import stat
import sys
import threading
from contextlib import contextmanager
from fnmatch import fnmatchcase
from typing import Dict, IO, List, Optional, Sequence, Tuple, Union

from .errors import Cancelled, FuncNotFoundError, ParseError
from .handlers import HandlerContext, Handlers, NullFile, default_handlers
from . import shparse
from .shparse import (
    AndOr, ArithCmd, ArithExp, Assign, Block, CaseClause, CmdSubst, DblQuoted,
    File, ForClause, FuncDecl, IfClause, Lit, ParamExp, Pipeline, Redirect,
    SglQuoted, SimpleCmd, Stmt, Subshell, TestClause, WhileClause, Word,
)
from .logging import get_logger

logger = get_logger("shinterp")

DEFAULT_IFS = " \t\n"


# ----------------------------
# Variables
# ----------------------------
class Variable:
    """A shell variable: string, indexed array, associative array or nameref."""

    __slots__ = ("kind", "value", "exported", "readonly")

    def __init__(self, value: Union[str, list, dict] = "", kind: str = "string",
                 exported: bool = False, readonly: bool = False):
        self.kind = kind
        self.value = value
        self.exported = exported
        self.readonly = readonly

    def copy(self) -> "Variable":
        return Variable(copy.copy(self.value), self.kind, self.exported, self.readonly)

    def as_str(self) -> str:
        if self.kind == "indexed":
            return self.value[0] if self.value else ""
        if self.kind == "assoc":
            return self.value.get("0", "")
        return self.value

    def __repr__(self) -> str:
        return f"Variable({self.kind}, {self.value!r})"


# control flow signals
class _Exit(Exception):
    def __init__(self, status: int):
        self.status = status


class _Return(Exception):
    def __init__(self, status: int):
        self.status = status


class _Break(Exception):
    def __init__(self, levels: int = 1):
        self.levels = levels


class _Continue(Exception):
    def __init__(self, levels: int = 1):
        self.levels = levels


class _RedirectFailed(Exception):
    pass


# segment kinds produced by word expansion
_LIT, _EXP, _BREAK, _SOFT = "lit", "exp", "break", "soft"
_GLOB_CHARS = re.compile(r"([*?\[])")


def _glob_escape(s: str) -> str:
    return _GLOB_CHARS.sub(r"[\1]", s)


def _has_magic(s: str) -> bool:
    return any(c in s for c in "*?[")


# ----------------------------
# Runner
# ----------------------------
class Runner:
    def __init__(self, handlers: Optional[Handlers] = None, env: Optional[Dict[str, str]] = None,
                 dir: Optional[str] = None, stdin: Optional[IO] = None, stdout: Optional[IO] = None,
                 stderr: Optional[IO] = None, params: Sequence[str] = (),
                 cancel: Optional[threading.Event] = None, filename: str = ""):
        self.handlers = handlers or default_handlers()
        self.vars: Dict[str, Variable] = {}
        self.funcs: Dict[str, Stmt] = {}
        self.dir = os.path.abspath(dir or os.getcwd())
        self.stdin = sys.stdin if stdin is None else stdin
        self.stdout = sys.stdout if stdout is None else stdout
        self.stderr = sys.stderr if stderr is None else stderr
        self.params: List[str] = list(params)
        self.cancel = cancel
        self.filename = filename
        self.status = 0
        self.exited = False
        self.opts = {"errexit": False, "nounset": False, "pipefail": False, "xtrace": False}
        self.restricted_hits: list = []
        self._frames: List[Dict[str, Variable]] = []
        self._dirstack: List[str] = []
        self._no_errexit = 0
        self._last_subst_status = 0

        for k, v in (os.environ if env is None else env).items():
            self.vars[k] = Variable(str(v), exported=True)
        self.vars["PWD"] = Variable(self.dir, exported=True)

    # ---- public API ----
    def run(self, node: Union[File, Stmt, List[Stmt]]) -> int:
        """Run a parsed file or statements; returns the final exit status."""
        if isinstance(node, File):
            stmts = node.stmts
            self.filename = self.filename or node.name
        elif isinstance(node, Stmt):
            stmts = [node]
        else:
            stmts = node
        try:
            self._stmts(stmts)
        except _Exit as e:
            self.status = e.status
            self.exited = True
        except _Return as e:
            self.status = e.status
        except (_Break, _Continue):
            pass
        return self.status

    def run_source(self, src: str, filename: str = "") -> int:
        return self.run(shparse.parse(src, filename))

    def call(self, name: str, args: Sequence[str] = ()) -> int:
        """Call a defined shell function; returns its exit status."""
        if name not in self.funcs:
            raise FuncNotFoundError(name)
        try:
            return self._call_func(name, list(args))
        except _Exit as e:
            self.status = e.status
            self.exited = True
            return e.status

    def subshell(self) -> "Runner":
        """Independent copy of this session; changes do not leak back."""
        r = copy.copy(self)
        r.vars = {k: v.copy() for k, v in self.vars.items()}
        r._frames = [{k: v.copy() for k, v in f.items()} for f in self._frames]
        r.funcs = dict(self.funcs)
        r.params = list(self.params)
        r.opts = dict(self.opts)
        r._dirstack = list(self._dirstack)
        r.exited = False
        return r

    def lookup(self, name: str) -> Optional[Variable]:
        for frame in reversed(self._frames):
            if name in frame:
                return frame[name]
        return self.vars.get(name)

    def _resolve_ref(self, name: str) -> Tuple[str, Optional[Variable]]:
        var = self.lookup(name)
        for _ in range(16):
            if var is None or var.kind != "nameref":
                break
            name = var.value
            var = self.lookup(name)
        return name, var

    def get_var(self, name: str) -> Optional[Variable]:
        """Variable by name with namerefs followed."""
        return self._resolve_ref(name)[1]

    def get_str(self, name: str) -> str:
        var = self.get_var(name)
        return var.as_str() if var is not None else ""

    def environ(self) -> Dict[str, str]:
        out: Dict[str, str] = {}
        scopes = [self.vars] + self._frames
        for scope in scopes:
            for k, v in scope.items():
                if v.exported and v.kind != "nameref":
                    out[k] = v.as_str()
        return out

    def set_var(self, name: str, value: str, index: Optional[str] = None, append: bool = False,
                local: bool = False, kind: Optional[str] = None, exported: bool = False,
                readonly: bool = False) -> int:
        var = self._target(name, local)
        if var is None:
            return 1
        if kind and var.kind != kind:
            self._convert(var, kind)
        if index is not None:
            if var.kind == "string":
                self._convert(var, "indexed")
            if var.kind == "assoc":
                var.value[index] = (var.value.get(index, "") + value) if append else value
            else:
                i = self.arith(index)
                arr = var.value
                if i < 0:
                    i += len(arr)
                while len(arr) <= i:
                    arr.append("")
                arr[i] = (arr[i] + value) if append else value
        elif var.kind == "indexed":
            if not var.value:
                var.value.append("")
            var.value[0] = (var.value[0] + value) if append else value
        elif var.kind == "assoc":
            var.value["0"] = (var.value.get("0", "") + value) if append else value
        else:
            var.kind = "string"
            var.value = (var.value + value) if append else value
        if exported:
            var.exported = True
        if readonly:
            var.readonly = True
        return 0

    def set_array(self, name: str, elems: List[Tuple[Optional[str], str]], append: bool = False,
                  local: bool = False, kind: Optional[str] = None) -> int:
        var = self._target(name, local)
        if var is None:
            return 1
        if kind is None:
            if var.kind == "assoc":
                kind = "assoc"
            elif any(k is not None and not re.fullmatch(r"-?\d+", k.strip()) for k, _ in elems):
                kind = "assoc"
            else:
                kind = "indexed"
        if kind == "assoc":
            d = dict(var.value) if (append and var.kind == "assoc") else {}
            for k, v in elems:
                d["0" if k is None else k] = v
            var.kind, var.value = "assoc", d
        else:
            arr = list(var.value) if (append and var.kind == "indexed") else []
            if append and var.kind == "string" and var.value:
                arr = [var.value]
            for k, v in elems:
                if k is None:
                    arr.append(v)
                else:
                    i = self.arith(k)
                    while len(arr) <= i:
                        arr.append("")
                    arr[i] = v
            var.kind, var.value = "indexed", arr
        return 0

    def unset(self, name: str) -> None:
        for frame in reversed(self._frames):
            if name in frame:
                del frame[name]
                return
        self.vars.pop(name, None)

    def _target(self, name: str, local: bool) -> Optional[Variable]:
        if local and self._frames:
            frame = self._frames[-1]
            if name not in frame:
                frame[name] = Variable()
            var = frame[name]
        else:
            name, var = self._resolve_ref(name)
            if var is None:
                var = Variable()
                self.vars[name] = var
        if var.readonly:
            self.stderr.write(f"{name}: readonly variable\n")
            return None
        return var

    @staticmethod
    def _convert(var: Variable, kind: str):
        old = var.as_str() if var.kind == "string" else ""
        var.kind = kind
        if kind == "indexed":
            var.value = [old] if old else []
        elif kind == "assoc":
            var.value = {"0": old} if old else {}
        else:
            var.value = old

    # ---- execution ----
    def hc(self) -> HandlerContext:
        return HandlerContext(self, self.dir, self.stdin, self.stdout, self.stderr, self.cancel)

    def _check_cancel(self):
        if self.cancel is not None and self.cancel.is_set():
            raise Cancelled("execution cancelled")

    def _stmts(self, stmts: List[Stmt]) -> int:
        for st in stmts:
            self._stmt(st)
        return self.status

    def _stmt(self, st: Stmt) -> int:
        self._check_cancel()
        if st.background:
            logger.debug("background job runs synchronously (line %d)", st.line)
        if st.negated:
            self._no_errexit += 1
        try:
            if st.redirs:
                try:
                    with self._redirected(st.redirs):
                        status = self._cmd(st.cmd)
                except _RedirectFailed:
                    status = 1
            else:
                status = self._cmd(st.cmd)
        finally:
            if st.negated:
                self._no_errexit -= 1
        if st.negated:
            status = 0 if status else 1
        self.status = status
        if (status and self.opts["errexit"] and not self._no_errexit and not st.negated
                and isinstance(st.cmd, (SimpleCmd, Pipeline, Subshell, TestClause, ArithCmd))):
            raise _Exit(status)
        return status

    def _cmd(self, cmd) -> int:
        if isinstance(cmd, SimpleCmd):
            return self._simple(cmd)
        if isinstance(cmd, Pipeline):
            return self._pipeline(cmd)
        if isinstance(cmd, AndOr):
            self._no_errexit += 1
            try:
                left = self._stmt(cmd.left)
            finally:
                self._no_errexit -= 1
            if (cmd.op == "&&") == (left == 0):
                return self._stmt(cmd.right)
            return left
        if isinstance(cmd, Block):
            self._stmts(cmd.stmts)
            return self.status
        if isinstance(cmd, Subshell):
            sub = self.subshell()
            try:
                sub._stmts(cmd.stmts)
            except _Exit as e:
                sub.status = e.status
            return sub.status
        if isinstance(cmd, IfClause):
            return self._if(cmd)
        if isinstance(cmd, ForClause):
            return self._for(cmd)
        if isinstance(cmd, WhileClause):
            return self._while(cmd)
        if isinstance(cmd, CaseClause):
            return self._case(cmd)
        if isinstance(cmd, FuncDecl):
            self.funcs[cmd.name] = cmd.body
            return 0
        if isinstance(cmd, TestClause):
            return 0 if _TestClauseEval(self, cmd.tokens).run() else 1
        if isinstance(cmd, ArithCmd):
            return 0 if self.arith(self.expand_str(cmd.expr)) != 0 else 1
        raise TypeError(f"unknown command node {type(cmd).__name__}")

    def _cond(self, stmts: List[Stmt]) -> bool:
        self._no_errexit += 1
        try:
            return self._stmts(stmts) == 0
        finally:
            self._no_errexit -= 1

    def _if(self, cmd: IfClause) -> int:
        for cond, body in cmd.branches:
            if self._cond(cond):
                self.status = 0
                return self._stmts(body)
        if cmd.else_body is not None:
            self.status = 0
            return self._stmts(cmd.else_body)
        return 0

    def _loop_body(self, body: List[Stmt]) -> Optional[str]:
        try:
            self._stmts(body)
        except _Break as b:
            if b.levels > 1:
                raise _Break(b.levels - 1)
            return "break"
        except _Continue as c:
            if c.levels > 1:
                raise _Continue(c.levels - 1)
        return None

    def _for(self, cmd: ForClause) -> int:
        if cmd.items is None:
            items = list(self.params)
        else:
            items = []
            for w in cmd.items:
                items.extend(self.expand_fields(w))
        self.status = 0
        for item in items:
            self.set_var(cmd.var, item)
            if self._loop_body(cmd.body) == "break":
                break
        return self.status

    def _while(self, cmd: WhileClause) -> int:
        status = 0
        while True:
            self._check_cancel()
            ok = self._cond(cmd.cond)
            if ok == cmd.until:
                break
            if self._loop_body(cmd.body) == "break":
                break
            status = self.status
        self.status = status
        return status

    def _case(self, cmd: CaseClause) -> int:
        subject = self.expand_str(cmd.word)
        falling = False
        self.status = 0
        for item in cmd.items:
            if not falling and not any(fnmatchcase(subject, self.pattern(p)) for p in item.patterns):
                continue
            self._stmts(item.body)
            if item.terminator == ";&":
                falling = True
                continue
            falling = False
            if item.terminator != ";;&":
                break
        return self.status

    def _pipeline(self, p: Pipeline) -> int:
        data: Optional[str] = None
        statuses: List[int] = []
        n = len(p.stmts)
        if p.negated:
            self._no_errexit += 1
        try:
            for i, st in enumerate(p.stmts):
                last = i == n - 1
                r = self if last else self.subshell()
                saved = (r.stdin, r.stdout)
                buf = io.StringIO()
                if data is not None:
                    r.stdin = io.StringIO(data)
                if not last:
                    r.stdout = buf
                try:
                    status = r._stmt(st)
                except _Exit as e:
                    if last:
                        raise
                    status = e.status
                finally:
                    r.stdin, r.stdout = saved
                data = buf.getvalue()
                statuses.append(status)
        finally:
            if p.negated:
                self._no_errexit -= 1
        status = statuses[-1]
        if self.opts["pipefail"]:
            status = next((s for s in reversed(statuses) if s), 0)
        if p.negated:
            status = 0 if status else 1
        return status

    def _simple(self, cmd: SimpleCmd) -> int:
        argv: List[str] = []
        decl: List[Assign] = []
        self._last_subst_status = 0
        for a in cmd.args:
            if isinstance(a, Assign):
                decl.append(a)
            else:
                argv.extend(self.expand_fields(a))
        if not argv:
            for a in cmd.assigns:
                if self.assign(a) != 0:
                    return 1
            return self._last_subst_status

        if self.opts["xtrace"]:
            self.stderr.write("+ " + " ".join(shlex.quote(x) for x in argv) + "\n")

        if not cmd.assigns:
            return self.dispatch(argv, decl)

        saved: Dict[str, Optional[Variable]] = {}
        for a in cmd.assigns:
            if a.name not in saved:
                old = self.lookup(a.name)
                saved[a.name] = old.copy() if old is not None else None
            self.assign(a, exported=True)
        try:
            return self.dispatch(argv, decl)
        finally:
            for name, old in saved.items():
                if old is None:
                    self.unset(name)
                else:
                    self._store(name, old)

    def _store(self, name: str, var: Variable):
        for frame in reversed(self._frames):
            if name in frame:
                frame[name] = var
                return
        self.vars[name] = var

    def dispatch(self, argv: List[str], decl: Sequence[Assign] = (), skip_funcs: bool = False) -> int:
        name = argv[0]
        if not skip_funcs and name in self.funcs:
            return self._call_func(name, argv[1:])
        builtin = BUILTINS.get(name)
        if builtin is not None:
            return builtin(self, argv[1:], list(decl))
        return self._exec(argv)

    def _exec(self, argv: List[str]) -> int:
        self._check_cancel()
        return self.handlers.exec(self.hc(), argv)

    def _call_func(self, name: str, args: List[str]) -> int:
        body = self.funcs[name]
        saved = self.params
        self.params = list(args)
        self._frames.append({})
        try:
            status = self._stmt(body)
        except _Return as r:
            status = r.status
        finally:
            self._frames.pop()
            self.params = saved
        self.status = status
        return status

    def assign(self, a: Assign, local: bool = False, kind: Optional[str] = None,
               exported: bool = False, readonly: bool = False, nameref: bool = False) -> int:
        if a.array is not None:
            elems: List[Tuple[Optional[str], str]] = []
            for el in a.array:
                if el.key is not None:
                    elems.append((self.expand_str(el.key), self.expand_str(el.value)))
                else:
                    elems.extend((None, v) for v in self.expand_fields(el.value))
            rc = self.set_array(a.name, elems, append=a.append, local=local, kind=kind)
            if rc == 0 and (exported or readonly):
                var = self.lookup(a.name)
                var.exported = var.exported or exported
                var.readonly = var.readonly or readonly
            return rc
        value = self.expand_str(a.value, tilde=True) if a.value is not None else ""
        if nameref:
            target = self._frames[-1] if (local and self._frames) else self.vars
            target[a.name] = Variable(value, kind="nameref")
            return 0
        index = self.expand_str(a.index) if a.index is not None else None
        return self.set_var(a.name, value, index=index, append=a.append, local=local,
                            kind=kind, exported=exported, readonly=readonly)

    # ---- redirections ----
    @contextmanager
    def _redirected(self, redirs: List[Redirect]):
        saved = (self.stdin, self.stdout, self.stderr)
        opened: List[IO] = []
        try:
            for rd in redirs:
                self._apply_redirect(rd, opened)
            yield
        finally:
            for f in opened:
                try:
                    f.close()
                except OSError:
                    logger.debug("closing redirect target failed", exc_info=True)
            self.stdin, self.stdout, self.stderr = saved

    def _set_fd(self, fd: int, stream):
        if fd == 0:
            self.stdin = stream
        elif fd == 1:
            self.stdout = stream
        elif fd == 2:
            self.stderr = stream

    def _open(self, path: str, mode: str, opened: List[IO]) -> IO:
        try:
            f = self.handlers.open(self.hc(), path, mode)
        except OSError as e:
            self.stderr.write(f"{path}: {e.strerror or e}\n")
            raise _RedirectFailed()
        opened.append(f)
        return f

    def _apply_redirect(self, rd: Redirect, opened: List[IO]):
        op = rd.op
        if op in ("<<", "<<-"):
            self._set_fd(rd.fd or 0, io.StringIO(self.expand_str(rd.heredoc)))
            return
        target = self.expand_str(rd.target)
        if op == "<<<":
            self._set_fd(rd.fd or 0, io.StringIO(target + "\n"))
        elif op in (">&", "<&"):
            default_fd = 1 if op == ">&" else 0
            if target == "-":
                self._set_fd(rd.fd if rd.fd is not None else default_fd, NullFile())
            elif target.isdigit():
                src = {0: self.stdin, 1: self.stdout, 2: self.stderr}.get(int(target), NullFile())
                self._set_fd(rd.fd if rd.fd is not None else default_fd, src)
            else:
                f = self._open(target, "w", opened)
                self.stdout = self.stderr = f
        elif op in ("&>", "&>>"):
            f = self._open(target, "a" if op == "&>>" else "w", opened)
            self.stdout = self.stderr = f
        else:
            mode = {">": "w", ">|": "w", ">>": "a", "<": "r", "<>": "r+"}[op]
            f = self._open(target, mode, opened)
            self._set_fd(rd.fd if rd.fd is not None else (0 if op in ("<", "<>") else 1), f)

    # ---- expansion ----
    def _ifs(self) -> str:
        var = self.get_var("IFS")
        return DEFAULT_IFS if var is None else var.as_str()

    def _segments(self, parts: list, quoted: bool, tilde: bool = False) -> list:
        segs: list = []
        for i, part in enumerate(parts):
            if isinstance(part, Lit):
                text = part.value
                if tilde and i == 0 and not quoted and text.startswith("~"):
                    head, sep, rest = text.partition("/")
                    if head == "~":
                        text = self.get_str("HOME") + sep + rest
                segs.append((_LIT, text, quoted))
            elif isinstance(part, SglQuoted):
                segs.append((_LIT, part.value, True))
            elif isinstance(part, DblQuoted):
                inner = self._segments(part.parts, True)
                segs.extend(inner if part.parts else [(_LIT, "", True)])
            elif isinstance(part, ParamExp):
                val, multi = self._param(part, quoted)
                if multi:
                    for j, v in enumerate(val):
                        if j:
                            segs.append((_BREAK if quoted else _SOFT, "", quoted))
                        segs.append((_EXP, v, quoted))
                else:
                    segs.append((_EXP, val, quoted))
            elif isinstance(part, CmdSubst):
                segs.append((_EXP, self._cmd_subst(part.stmts), quoted))
            elif isinstance(part, ArithExp):
                segs.append((_EXP, str(self.arith(self.expand_str(part.expr))), quoted))
        return segs

    def expand_str(self, word: Optional[Word], tilde: bool = False) -> str:
        """Expand a word to a single string: no field splitting, no globbing."""
        if word is None:
            return ""
        out = []
        for kind, text, _ in self._segments(word.parts, False, tilde):
            out.append(" " if kind in (_BREAK, _SOFT) else text)
        return "".join(out)

    def pattern(self, word: Word) -> str:
        """Expand a word into a glob pattern; quoted text matches literally."""
        out = []
        for kind, text, quoted in self._segments(word.parts, False):
            if kind in (_BREAK, _SOFT):
                out.append(" ")
            else:
                out.append(_glob_escape(text) if quoted else text)
        return "".join(out)

    def expand_fields(self, word: Word) -> List[str]:
        """Full expansion: field splitting on IFS plus pathname expansion."""
        segs = self._segments(word.parts, False, tilde=True)
        ifs = self._ifs()
        if ifs and all(c in " \t\n" for c in ifs):
            splitter = re.compile("[" + re.escape(ifs) + "]+")
        elif ifs:
            splitter = re.compile("[" + re.escape(ifs) + "]")
        else:
            splitter = None

        fields: List[List[Tuple[str, bool]]] = []
        cur: List[Tuple[str, bool]] = []
        present = False

        def end():
            nonlocal cur, present
            if cur or present:
                fields.append(cur)
            cur, present = [], False

        for kind, text, quoted in segs:
            if kind == _BREAK:
                fields.append(cur)
                cur, present = [], False
            elif kind == _SOFT:
                end()
            elif kind == _EXP and not quoted and splitter is not None:
                for j, tok in enumerate(splitter.split(text)):
                    if j:
                        end()
                    if tok:
                        cur.append((tok, False))
            else:
                cur.append((text, quoted))
                if quoted:
                    present = True
        end()

        out: List[str] = []
        for f in fields:
            if any(not q and _has_magic(t) for t, q in f):
                pat = "".join(_glob_escape(t) if q else t for t, q in f)
                matches = self.glob(pat)
                if matches:
                    out.extend(matches)
                    continue
            out.append("".join(t for t, _ in f))
        return out

    def glob(self, pattern: str) -> List[str]:
        hc = self.hc()
        absolute = pattern.startswith("/")
        comps = [c for c in pattern.split("/") if c]
        paths = ["/"] if absolute else [""]
        for i, comp in enumerate(comps):
            last = i == len(comps) - 1
            nxt: List[str] = []
            if _has_magic(comp):
                for base in paths:
                    try:
                        names = self.handlers.readdir(hc, base or ".")
                    except OSError:
                        continue
                    for nm in names:
                        if nm.startswith(".") and not comp.startswith("."):
                            continue
                        if not fnmatchcase(nm, comp):
                            continue
                        p = os.path.join(base, nm) if base else nm
                        if not last and not self._is_dir(p):
                            continue
                        nxt.append(p)
            else:
                nxt = [os.path.join(base, comp) if base else comp for base in paths]
            paths = nxt
        return sorted(p for p in paths if self.stat(p) is not None)

    def stat(self, path: str, follow: bool = True) -> Optional[os.stat_result]:
        try:
            return self.handlers.stat(self.hc(), path, follow)
        except OSError:
            return None

    def _is_dir(self, path: str) -> bool:
        st = self.stat(path)
        return st is not None and stat.S_ISDIR(st.st_mode)

    def _cmd_subst(self, stmts: List[Stmt]) -> str:
        sub = self.subshell()
        buf = io.StringIO()
        sub.stdout = buf
        try:
            sub._stmts(stmts)
        except _Exit as e:
            sub.status = e.status
        except _Return as e:
            sub.status = e.status
        self._last_subst_status = sub.status
        return buf.getvalue().rstrip("\n")

    def _param_values(self, pe: ParamExp, quoted: bool):
        """Returns (value, multi, is_set) before operators are applied."""
        name = pe.name
        if name in ("@", "*"):
            vals = list(self.params)
            if name == "*" and quoted:
                return (self._ifs()[:1]).join(vals), False, bool(vals)
            return vals, True, bool(vals)
        if name == "#":
            return str(len(self.params)), False, True
        if name == "?":
            return str(self.status), False, True
        if name == "$":
            return str(os.getpid()), False, True
        if name == "!":
            return "", False, False
        if name == "-":
            flags = "".join(f for f, o in (("e", "errexit"), ("u", "nounset"), ("x", "xtrace")) if self.opts[o])
            return flags, False, True
        if name == "0":
            return self.filename or "rbuild", False, True
        if name.isdigit():
            i = int(name) - 1
            if 0 <= i < len(self.params):
                return self.params[i], False, True
            return "", False, False

        var = self.get_var(name)
        if pe.index is not None:
            idx = self.expand_str(pe.index)
            if idx in ("@", "*"):
                if var is None:
                    vals = []
                elif var.kind == "indexed":
                    vals = list(var.value)
                elif var.kind == "assoc":
                    vals = list(var.value.values())
                else:
                    vals = [var.value]
                if idx == "*" and quoted:
                    return (self._ifs()[:1]).join(vals), False, bool(vals)
                return vals, True, bool(vals)
            if var is None:
                return "", False, False
            if var.kind == "assoc":
                return var.value.get(idx, ""), False, idx in var.value
            i = self.arith(idx)
            arr = var.value if var.kind == "indexed" else [var.value]
            if -len(arr) <= i < len(arr):
                return arr[i], False, True
            return "", False, False
        if var is None:
            return "", False, False
        return var.as_str(), False, True

    def _param(self, pe: ParamExp, quoted: bool):
        if pe.length:
            val, multi, _ = self._param_values(pe, False)
            return str(len(val)), False
        if pe.indirect:
            if pe.index is not None and self.expand_str(pe.index) in ("@", "*"):
                var = self.get_var(pe.name)
                if var is None:
                    keys: List[str] = []
                elif var.kind == "assoc":
                    keys = list(var.value.keys())
                elif var.kind == "indexed":
                    keys = [str(i) for i in range(len(var.value))]
                else:
                    keys = ["0"]
                return keys, True
            pe = ParamExp(self.get_str(pe.name), index=pe.index, op=pe.op, arg=pe.arg, repl=pe.repl)
            if not pe.name:
                return "", False

        val, multi, is_set = self._param_values(pe, quoted)
        op = pe.op
        if not op:
            if not is_set and self.opts["nounset"] and pe.name not in ("@", "*"):
                self.stderr.write(f"{pe.name}: unbound variable\n")
                raise _Exit(1)
            return val, multi

        colon = op.startswith(":") and len(op) == 2
        base = op[1:] if colon else op
        if base in ("-", "=", "+", "?"):
            empty = (not val) if multi else (val == "")
            use_alt = (not is_set) or (colon and empty)
            if base == "+":
                return ("" if use_alt else self.expand_str(pe.arg)), False
            if not use_alt:
                return val, multi
            if base == "?":
                msg = self.expand_str(pe.arg) or "parameter null or not set"
                self.stderr.write(f"{pe.name}: {msg}\n")
                raise _Exit(1)
            alt = self.expand_str(pe.arg)
            if base == "=":
                self.set_var(pe.name, alt)
            return alt, False

        if op == ":":
            spec = self.expand_str(pe.arg)
            off_s, _, len_s = spec.partition(":")
            off = self.arith(off_s) if off_s.strip() else 0
            items = val if multi else val
            if off < 0:
                off = max(len(items) + off, 0)
            res = items[off:]
            if len_s.strip():
                ln = self.arith(len_s)
                res = res[:ln] if ln >= 0 else res[:ln]
            return res, multi

        if op in ("#", "##", "%", "%%"):
            pat = self.pattern(pe.arg) if pe.arg else ""
            fn = _remove_prefix if op[0] == "#" else _remove_suffix
            longest = len(op) == 2
            if multi:
                return [fn(v, pat, longest) for v in val], True
            return fn(val, pat, longest), False

        if op in ("/", "//", "/#", "/%"):
            pat = self.pattern(pe.arg) if pe.arg else ""
            rep = self.expand_str(pe.repl) if pe.repl is not None else ""
            if multi:
                return [_replace(v, pat, rep, op) for v in val], True
            return _replace(val, pat, rep, op), False

        if op in ("^", "^^", ",", ",,"):
            def conv(s: str) -> str:
                if not s:
                    return s
                if op == "^^":
                    return s.upper()
                if op == ",,":
                    return s.lower()
                if op == "^":
                    return s[0].upper() + s[1:]
                return s[0].lower() + s[1:]
            if multi:
                return [conv(v) for v in val], True
            return conv(val), False

        return val, multi

    # ---- arithmetic ----
    def arith(self, expr: str) -> int:
        return _Arith(self, expr).evaluate()


# ----------------------------
# pattern helpers
# ----------------------------
def _remove_prefix(s: str, pat: str, longest: bool) -> str:
    rng = range(len(s), -1, -1) if longest else range(0, len(s) + 1)
    for i in rng:
        if fnmatchcase(s[:i], pat):
            return s[i:]
    return s


def _remove_suffix(s: str, pat: str, longest: bool) -> str:
    rng = range(0, len(s) + 1) if longest else range(len(s), -1, -1)
    for i in rng:
        if fnmatchcase(s[i:], pat):
            return s[:i]
    return s


def _replace(s: str, pat: str, rep: str, op: str) -> str:
    if not pat:
        return s
    if op == "/#":
        for j in range(len(s), -1, -1):
            if fnmatchcase(s[:j], pat):
                return rep + s[j:]
        return s
    if op == "/%":
        for i in range(0, len(s) + 1):
            if fnmatchcase(s[i:], pat):
                return s[:i] + rep
        return s
    out = []
    i = 0
    replaced = False
    while i < len(s):
        if replaced and op == "/":
            out.append(s[i:])
            break
        match = None
        for j in range(len(s), i, -1):
            if fnmatchcase(s[i:j], pat):
                match = j
                break
        if match is None:
            out.append(s[i])
            i += 1
        else:
            out.append(rep)
            i = match
            replaced = True
    return "".join(out)


# ----------------------------
# arithmetic evaluation
# ----------------------------
_ARITH_TOKEN = re.compile(
    r"\s*(?:(0[xX][0-9a-fA-F]+|\d+)|([A-Za-z_][A-Za-z0-9_]*)"
    r"|(\+\+|--|<<=|>>=|\*\*|<<|>>|<=|>=|==|!=|&&|\|\||[-+*/%&|^]=|[-+*/%<>=!~&|^?:(),]))"
)


class _Arith:
    """Integer arithmetic as in $(( )): C operators, assignment, ternary."""

    ASSIGN_OPS = {"=", "+=", "-=", "*=", "/=", "%=", "<<=", ">>=", "&=", "|=", "^="}

    def __init__(self, runner: Runner, text: str, depth: int = 0):
        self.r = runner
        self.depth = depth
        self.toks: List[Tuple[str, str]] = []
        self.i = 0
        self.noeval = 0
        pos = 0
        text = text.strip()
        while pos < len(text):
            m = _ARITH_TOKEN.match(text, pos)
            if not m or m.end() == pos:
                raise ParseError(f"arithmetic syntax error near '{text[pos:]}'")
            if m.group(1):
                self.toks.append(("num", m.group(1)))
            elif m.group(2):
                self.toks.append(("name", m.group(2)))
            elif m.group(3):
                self.toks.append(("op", m.group(3)))
            pos = m.end()
            while pos < len(text) and text[pos].isspace():
                pos += 1

    def evaluate(self) -> int:
        if not self.toks:
            return 0
        v = self._comma()
        if self.i != len(self.toks):
            raise ParseError(f"arithmetic syntax error: unexpected '{self.toks[self.i][1]}'")
        return v

    def _peek(self) -> Optional[str]:
        if self.i < len(self.toks) and self.toks[self.i][0] == "op":
            return self.toks[self.i][1]
        return None

    def _eat(self, op: str) -> bool:
        if self._peek() == op:
            self.i += 1
            return True
        return False

    def _var(self, name: str) -> int:
        s = self.r.get_str(name).strip()
        if not s:
            return 0
        try:
            return _int_literal(s)
        except ValueError:
            if self.depth > 10:
                raise ParseError(f"arithmetic: expression recursion level exceeded ({name})")
            return _Arith(self.r, s, self.depth + 1).evaluate()

    def _setvar(self, name: str, value: int) -> int:
        if not self.noeval:
            self.r.set_var(name, str(value))
        return value

    def _comma(self) -> int:
        v = self._assign()
        while self._eat(","):
            v = self._assign()
        return v

    def _assign(self) -> int:
        if (self.i + 1 < len(self.toks) and self.toks[self.i][0] == "name"
                and self.toks[self.i + 1][0] == "op" and self.toks[self.i + 1][1] in self.ASSIGN_OPS):
            name = self.toks[self.i][1]
            op = self.toks[self.i + 1][1]
            self.i += 2
            rhs = self._assign()
            if op == "=":
                return self._setvar(name, rhs)
            return self._setvar(name, self._binop(op[:-1], self._var(name), rhs))
        return self._ternary()

    def _ternary(self) -> int:
        cond = self._binary(0)
        if not self._eat("?"):
            return cond
        if not cond:
            self.noeval += 1
        a = self._comma()
        if not cond:
            self.noeval -= 1
        if not self._eat(":"):
            raise ParseError("arithmetic: expected ':' in conditional expression")
        if cond:
            self.noeval += 1
        b = self._ternary()
        if cond:
            self.noeval -= 1
        return a if cond else b

    LEVELS = [("||",), ("&&",), ("|",), ("^",), ("&",), ("==", "!="),
              ("<", "<=", ">", ">="), ("<<", ">>"), ("+", "-"), ("*", "/", "%")]

    def _binary(self, level: int) -> int:
        if level == len(self.LEVELS):
            return self._power()
        left = self._binary(level + 1)
        while self._peek() in self.LEVELS[level]:
            op = self._peek()
            self.i += 1
            short = (op == "&&" and not left) or (op == "||" and left)
            if short:
                self.noeval += 1
            right = self._binary(level + 1)
            if short:
                self.noeval -= 1
            left = self._binop(op, left, right)
        return left

    def _power(self) -> int:
        base = self._unary()
        if self._eat("**"):
            exp = self._power()
            return base ** exp if exp >= 0 else 0
        return base

    def _unary(self) -> int:
        op = self._peek()
        if op in ("-", "+", "!", "~"):
            self.i += 1
            v = self._unary()
            return {"-": -v, "+": v, "!": int(not v), "~": ~v}[op]
        if op in ("++", "--"):
            self.i += 1
            kind, name = self.toks[self.i]
            if kind != "name":
                raise ParseError("arithmetic: ++/-- requires a variable")
            self.i += 1
            return self._setvar(name, self._var(name) + (1 if op == "++" else -1))
        return self._postfix()

    def _postfix(self) -> int:
        if self.i >= len(self.toks):
            raise ParseError("arithmetic: unexpected end of expression")
        kind, val = self.toks[self.i]
        if kind == "num":
            self.i += 1
            return _int_literal(val)
        if kind == "name":
            self.i += 1
            cur = self._var(val)
            if self._peek() in ("++", "--"):
                op = self._peek()
                self.i += 1
                self._setvar(val, cur + (1 if op == "++" else -1))
            return cur
        if self._eat("("):
            v = self._comma()
            if not self._eat(")"):
                raise ParseError("arithmetic: missing ')'")
            return v
        raise ParseError(f"arithmetic syntax error: unexpected '{val}'")

    def _binop(self, op: str, a: int, b: int) -> int:
        if op in ("/", "%"):
            if b == 0:
                if self.noeval:
                    return 0
                raise ParseError("arithmetic: division by zero")
            q = abs(a) // abs(b)
            if (a < 0) != (b < 0):
                q = -q
            return q if op == "/" else a - b * q
        return {
            "+": lambda: a + b, "-": lambda: a - b, "*": lambda: a * b,
            "<<": lambda: a << b, ">>": lambda: a >> b,
            "<": lambda: int(a < b), "<=": lambda: int(a <= b),
            ">": lambda: int(a > b), ">=": lambda: int(a >= b),
            "==": lambda: int(a == b), "!=": lambda: int(a != b),
            "&": lambda: a & b, "|": lambda: a | b, "^": lambda: a ^ b,
            "&&": lambda: int(bool(a) and bool(b)), "||": lambda: int(bool(a) or bool(b)),
        }[op]()


def _int_literal(s: str) -> int:
    s = s.strip()
    neg = s.startswith("-")
    if neg or s.startswith("+"):
        s = s[1:]
    if s.lower().startswith("0x"):
        v = int(s, 16)
    elif len(s) > 1 and s.startswith("0") and s.isdigit():
        v = int(s, 8)
    else:
        v = int(s)
    return -v if neg else v


# ----------------------------
# test / [ / [[
# ----------------------------
_UNARY_FILE = set("efdLhrwxsSpbcugk") | {"O", "G", "N"}
_BINARY_INT = {"-eq", "-ne", "-lt", "-le", "-gt", "-ge"}


def _file_test(r: Runner, op: str, path: str) -> bool:
    st = r.stat(path, follow=(op not in ("L", "h")))
    if st is None:
        return False
    mode = st.st_mode
    if op == "e":
        return True
    if op == "f":
        return stat.S_ISREG(mode)
    if op == "d":
        return stat.S_ISDIR(mode)
    if op in ("L", "h"):
        return stat.S_ISLNK(mode)
    if op == "s":
        return st.st_size > 0
    if op == "r":
        return bool(mode & (stat.S_IRUSR | stat.S_IRGRP | stat.S_IROTH))
    if op == "w":
        return bool(mode & (stat.S_IWUSR | stat.S_IWGRP | stat.S_IWOTH))
    if op == "x":
        return bool(mode & (stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH))
    if op == "S":
        return stat.S_ISSOCK(mode)
    if op == "p":
        return stat.S_ISFIFO(mode)
    if op == "b":
        return stat.S_ISBLK(mode)
    if op == "c":
        return stat.S_ISCHR(mode)
    if op == "u":
        return bool(mode & stat.S_ISUID)
    if op == "g":
        return bool(mode & stat.S_ISGID)
    if op == "k":
        return bool(mode & stat.S_ISVTX)
    return True


def _int_cmp(op: str, a: str, b: str) -> bool:
    x, y = _int_literal(a or "0"), _int_literal(b or "0")
    return {"-eq": x == y, "-ne": x != y, "-lt": x < y, "-le": x <= y, "-gt": x > y, "-ge": x >= y}[op]


def _binary_test(r: Runner, op: str, a: str, b: str) -> bool:
    if op in ("=", "=="):
        return a == b
    if op == "!=":
        return a != b
    if op == "<":
        return a < b
    if op == ">":
        return a > b
    if op in _BINARY_INT:
        return _int_cmp(op, a, b)
    if op in ("-nt", "-ot"):
        sa, sb = r.stat(a), r.stat(b)
        if op == "-nt":
            return sa is not None and (sb is None or sa.st_mtime > sb.st_mtime)
        return sb is not None and (sa is None or sa.st_mtime < sb.st_mtime)
    if op == "-ef":
        sa, sb = r.stat(a), r.stat(b)
        return sa is not None and sb is not None and (sa.st_dev, sa.st_ino) == (sb.st_dev, sb.st_ino)
    raise ValueError(op)


_TEST_BINOPS = {"=", "==", "!=", "<", ">", "-nt", "-ot", "-ef"} | _BINARY_INT


class _TestEval:
    """test / [ over already-expanded arguments."""

    def __init__(self, r: Runner, args: List[str]):
        self.r = r
        self.args = args
        self.i = 0

    def run(self) -> bool:
        if not self.args:
            return False
        v = self._or()
        if self.i != len(self.args):
            raise ValueError(f"unexpected argument '{self.args[self.i]}'")
        return v

    def _at(self, k: int = 0) -> Optional[str]:
        j = self.i + k
        return self.args[j] if j < len(self.args) else None

    def _or(self) -> bool:
        v = self._and()
        while self._at() == "-o":
            self.i += 1
            v = self._and() or v
        return v

    def _and(self) -> bool:
        v = self._not()
        while self._at() == "-a":
            self.i += 1
            v = self._not() and v
        return v

    def _not(self) -> bool:
        if self._at() == "!" and self._at(1) is not None:
            self.i += 1
            return not self._not()
        return self._primary()

    def _primary(self) -> bool:
        a = self._at()
        if a is None:
            raise ValueError("argument expected")
        if a == "(" and self._at(2) == ")" or (a == "(" and self._at(1) not in _TEST_BINOPS):
            self.i += 1
            v = self._or()
            if self._at() != ")":
                raise ValueError("')' expected")
            self.i += 1
            return v
        if self._at(1) in _TEST_BINOPS and self._at(2) is not None:
            op, b = self._at(1), self._at(2)
            self.i += 3
            return _binary_test(self.r, op, a, b)
        if a in ("-n", "-z") and self._at(1) is not None:
            self.i += 2
            s = self.args[self.i - 1]
            return bool(s) if a == "-n" else not s
        if len(a) == 2 and a[0] == "-" and a[1] in _UNARY_FILE and self._at(1) is not None:
            self.i += 2
            return _file_test(self.r, a[1], self.args[self.i - 1])
        self.i += 1
        return a != ""


class _TestClauseEval:
    """[[ ... ]]: operands are expanded without splitting or globbing."""

    def __init__(self, r: Runner, tokens: list):
        self.r = r
        self.toks = tokens
        self.i = 0

    def run(self) -> bool:
        v = self._or()
        if self.i != len(self.toks):
            raise ParseError("[[: unexpected token")
        return v

    def _at(self, k: int = 0):
        j = self.i + k
        return self.toks[j] if j < len(self.toks) else None

    @staticmethod
    def _lit(tok) -> Optional[str]:
        if isinstance(tok, str):
            return tok
        if isinstance(tok, Word):
            return tok.literal()
        return None

    def _or(self) -> bool:
        v = self._and()
        while self._at() == "||":
            self.i += 1
            rhs = self._and()
            v = v or rhs
        return v

    def _and(self) -> bool:
        v = self._not()
        while self._at() == "&&":
            self.i += 1
            rhs = self._not()
            v = v and rhs
        return v

    def _not(self) -> bool:
        if self._at() == "!":
            self.i += 1
            return not self._not()
        if self._at() == "(":
            self.i += 1
            v = self._or()
            if self._at() != ")":
                raise ParseError("[[: expected ')'")
            self.i += 1
            return v
        return self._cond()

    def _cond(self) -> bool:
        tok = self._at()
        if tok is None:
            raise ParseError("[[: expression expected")
        op = self._lit(self._at(1))
        if op in _TEST_BINOPS | {"=~"} and self._at(2) is not None and isinstance(tok, Word):
            left = self.r.expand_str(tok)
            rhs = self._at(2)
            self.i += 3
            if op in ("=", "==", "!="):
                matched = fnmatchcase(left, self.r.pattern(rhs))
                return matched if op != "!=" else not matched
            if op == "=~":
                m = re.search(self.r.expand_str(rhs), left)
                if m:
                    groups = [m.group(0)] + [g or "" for g in m.groups()]
                    self.r.set_array("BASH_REMATCH", [(None, g) for g in groups], kind="indexed")
                return m is not None
            return _binary_test(self.r, op, left, self.r.expand_str(rhs))
        lit = self._lit(tok)
        if lit and len(lit) == 2 and lit[0] == "-" and isinstance(self._at(1), Word):
            arg = self.r.expand_str(self._at(1))
            self.i += 2
            if lit == "-n":
                return arg != ""
            if lit == "-z":
                return arg == ""
            if lit == "-v":
                return self.r.get_var(arg) is not None
            if lit[1] in _UNARY_FILE:
                return _file_test(self.r, lit[1], arg)
            raise ParseError(f"[[: unknown operator {lit}")
        if not isinstance(tok, Word):
            raise ParseError(f"[[: unexpected '{tok}'")
        self.i += 1
        return self.r.expand_str(tok) != ""


# ----------------------------
# builtins
# ----------------------------
def _b_true(r, args, decl):
    return 0


def _b_false(r, args, decl):
    return 1


_ECHO_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "a": "\a", "b": "\b",
                 "f": "\f", "v": "\v", "\\": "\\", "e": "\x1b"}


def _unescape(s: str) -> Tuple[str, bool]:
    """Backslash escapes as in echo -e; second item is True on \\c."""
    out = []
    i = 0
    while i < len(s):
        c = s[i]
        if c == "\\" and i + 1 < len(s):
            e = s[i + 1]
            if e in _ECHO_ESCAPES:
                out.append(_ECHO_ESCAPES[e])
                i += 2
                continue
            if e == "c":
                return "".join(out), True
            if e == "0":
                m = re.match(r"[0-7]{0,3}", s[i + 2:])
                out.append(chr(int(m.group(0) or "0", 8)))
                i += 2 + len(m.group(0))
                continue
            if e == "x":
                m = re.match(r"[0-9a-fA-F]{1,2}", s[i + 2:])
                if m:
                    out.append(chr(int(m.group(0), 16)))
                    i += 2 + len(m.group(0))
                    continue
        out.append(c)
        i += 1
    return "".join(out), False


def _b_echo(r, args, decl):
    newline = True
    escapes = False
    while args and re.fullmatch(r"-[neE]+", args[0]):
        for f in args[0][1:]:
            if f == "n":
                newline = False
            elif f == "e":
                escapes = True
            else:
                escapes = False
        args = args[1:]
    text = " ".join(args)
    if escapes:
        text, stop = _unescape(text)
        if stop:
            newline = False
    r.stdout.write(text + ("\n" if newline else ""))
    return 0


_PRINTF_SPEC = re.compile(r"%([-+ #0]*)(\*|\d+)?(?:\.(\*|\d+))?([sdiouxXfFeEgGcbq%])")


def _printf_format(fmt: str, args: List[str]) -> str:
    out = []
    args = list(args)
    while True:
        consumed = 0
        pos = 0
        for m in _PRINTF_SPEC.finditer(fmt):
            out.append(_unescape(fmt[pos:m.start()])[0])
            pos = m.end()
            flags, width, prec, conv = m.groups()
            if conv == "%":
                out.append("%")
                continue
            if width == "*":
                width = args.pop(0) if args else "0"
                consumed += 1
            if prec == "*":
                prec = args.pop(0) if args else "0"
                consumed += 1
            arg = args.pop(0) if args else ""
            consumed += 1
            spec = "%" + flags + (width or "") + ("." + prec if prec is not None else "")
            if conv in "diouxX":
                try:
                    n = _int_literal(arg) if arg else 0
                except ValueError:
                    n = 0
                pyconv = "d" if conv in "diu" else conv
                out.append((spec + pyconv) % n)
            elif conv in "fFeEgG":
                try:
                    x = float(arg) if arg else 0.0
                except ValueError:
                    x = 0.0
                out.append((spec + conv) % x)
            elif conv == "c":
                out.append(arg[:1])
            elif conv == "b":
                out.append((spec + "s") % _unescape(arg)[0])
            elif conv == "q":
                out.append((spec + "s") % shlex.quote(arg))
            else:
                out.append((spec + "s") % arg)
        out.append(_unescape(fmt[pos:])[0])
        if not args or consumed == 0:
            break
    return "".join(out)


def _b_printf(r, args, decl):
    if args and args[0] == "-v" and len(args) > 2:
        r.set_var(args[1], _printf_format(args[2], args[3:]))
        return 0
    if not args:
        r.stderr.write("printf: usage: printf format [arguments]\n")
        return 2
    r.stdout.write(_printf_format(args[0], args[1:]))
    return 0


def _parse_flags(args: List[str]) -> Tuple[str, List[str]]:
    flags = ""
    rest = []
    for a in args:
        if a.startswith("-") and len(a) > 1 and not rest:
            flags += a[1:]
        elif a.startswith("+") and len(a) > 1 and not rest:
            continue
        else:
            rest.append(a)
    return flags, rest


def _declare(r: Runner, args: List[str], decl: List[Assign], local: bool,
             extra_flags: str = "") -> int:
    flags, names = _parse_flags(args)
    flags += extra_flags
    if "f" in flags or "F" in flags or "p" in flags:
        return 0
    in_func = bool(r._frames) and "g" not in flags
    local = local or in_func
    kind = "assoc" if "A" in flags else ("indexed" if "a" in flags else None)
    exported = "x" in flags
    readonly = "r" in flags
    nameref = "n" in flags
    status = 0
    for name in names:
        if local and r._frames:
            frame = r._frames[-1]
            if name not in frame:
                frame[name] = Variable(kind=kind or "string",
                                       value=[] if kind == "indexed" else ({} if kind == "assoc" else ""))
            var = frame[name]
        else:
            var = r.lookup(name)
            if var is None:
                var = Variable(kind=kind or "string",
                               value=[] if kind == "indexed" else ({} if kind == "assoc" else ""))
                r.vars[name] = var
            elif kind and var.kind != kind:
                Runner._convert(var, kind)
        var.exported = var.exported or exported
        var.readonly = var.readonly or readonly
    for a in decl:
        if local and r._frames and a.name not in r._frames[-1] and kind:
            r._frames[-1][a.name] = Variable(kind=kind, value=[] if kind == "indexed" else {})
        elif not local and kind and r.lookup(a.name) is None:
            r.vars[a.name] = Variable(kind=kind, value=[] if kind == "indexed" else {})
        status |= r.assign(a, local=local, kind=kind, exported=exported,
                           readonly=readonly, nameref=nameref)
    return status


def _b_declare(r, args, decl):
    return _declare(r, args, decl, local=False)


def _b_local(r, args, decl):
    return _declare(r, args, decl, local=True)


def _b_export(r, args, decl):
    flags, names = _parse_flags(args)
    for name in names:
        var = r.lookup(name)
        if var is None:
            var = r.vars[name] = Variable()
        var.exported = "n" not in flags
    for a in decl:
        r.assign(a, exported=True)
    return 0


def _b_readonly(r, args, decl):
    return _declare(r, args, decl, local=False, extra_flags="r")


def _b_unset(r, args, decl):
    flags, names = _parse_flags(args)
    for name in names:
        if "f" in flags:
            r.funcs.pop(name, None)
            continue
        m = re.fullmatch(r"([A-Za-z_][A-Za-z0-9_]*)\[(.*)\]", name)
        if m:
            var = r.get_var(m.group(1))
            if var is not None and var.kind == "assoc":
                var.value.pop(m.group(2), None)
            elif var is not None and var.kind == "indexed":
                i = r.arith(m.group(2))
                if 0 <= i < len(var.value):
                    var.value[i] = ""
            continue
        var = r.lookup(name)
        if var is not None and var.readonly:
            r.stderr.write(f"unset: {name}: cannot unset: readonly variable\n")
            return 1
        if var is None and name in r.funcs and "v" not in flags:
            r.funcs.pop(name)
        else:
            r.unset(name)
    return 0


def _int_arg(r: Runner, args: List[str], default: int) -> int:
    if not args:
        return default
    try:
        return int(args[0])
    except ValueError:
        r.stderr.write(f"{args[0]}: numeric argument required\n")
        return 2


def _b_return(r, args, decl):
    raise _Return(_int_arg(r, args, r.status) & 0xFF)


def _b_exit(r, args, decl):
    raise _Exit(_int_arg(r, args, r.status) & 0xFF)


def _b_break(r, args, decl):
    raise _Break(max(_int_arg(r, args, 1), 1))


def _b_continue(r, args, decl):
    raise _Continue(max(_int_arg(r, args, 1), 1))


def _b_shift(r, args, decl):
    n = _int_arg(r, args, 1)
    if n > len(r.params):
        return 1
    r.params = r.params[n:]
    return 0


def _b_set(r, args, decl):
    names = {"e": "errexit", "u": "nounset", "x": "xtrace"}
    i = 0
    while i < len(args):
        a = args[i]
        if a == "--":
            r.params = list(args[i + 1:])
            return 0
        if a in ("-o", "+o"):
            opt = args[i + 1] if i + 1 < len(args) else ""
            if opt in r.opts:
                r.opts[opt] = a[0] == "-"
            i += 2
            continue
        if len(a) > 1 and a[0] in "-+":
            for ch in a[1:]:
                if ch == "o" and i + 1 < len(args):
                    i += 1
                    if args[i] in r.opts:
                        r.opts[args[i]] = a[0] == "-"
                elif ch in names:
                    r.opts[names[ch]] = a[0] == "-"
            i += 1
            continue
        r.params = list(args[i:])
        return 0
    return 0


def _chdir(r: Runner, target: str) -> int:
    path = os.path.normpath(os.path.join(r.dir, target))
    if not r._is_dir(path):
        r.stderr.write(f"cd: {target}: No such file or directory\n")
        return 1
    r.set_var("OLDPWD", r.dir, exported=True)
    r.dir = path
    r.set_var("PWD", path, exported=True)
    return 0


def _b_cd(r, args, decl):
    target = args[0] if args else r.get_str("HOME")
    if target == "-":
        target = r.get_str("OLDPWD") or r.dir
    return _chdir(r, target)


def _b_pwd(r, args, decl):
    r.stdout.write(r.dir + "\n")
    return 0


def _b_pushd(r, args, decl):
    if not args:
        return 1
    prev = r.dir
    rc = _chdir(r, args[0])
    if rc == 0:
        r._dirstack.append(prev)
    return rc


def _b_popd(r, args, decl):
    if not r._dirstack:
        r.stderr.write("popd: directory stack empty\n")
        return 1
    return _chdir(r, r._dirstack.pop())


def _b_test(r, args, decl):
    try:
        return 0 if _TestEval(r, args).run() else 1
    except ValueError as e:
        r.stderr.write(f"test: {e}\n")
        return 2


def _b_bracket(r, args, decl):
    if not args or args[-1] != "]":
        r.stderr.write("[: missing ']'\n")
        return 2
    return _b_test(r, args[:-1], decl)


def _b_source(r, args, decl):
    if not args:
        r.stderr.write("source: filename argument required\n")
        return 2
    try:
        with r.handlers.open(r.hc(), args[0], "r") as f:
            src = f.read()
    except OSError as e:
        r.stderr.write(f"source: {args[0]}: {e.strerror or e}\n")
        return 1
    tree = shparse.parse(src, args[0])
    saved = r.params
    if len(args) > 1:
        r.params = list(args[1:])
    try:
        r._stmts(tree.stmts)
    except _Return as e:
        r.status = e.status
    finally:
        if len(args) > 1:
            r.params = saved
    return r.status


def _b_eval(r, args, decl):
    src = " ".join(args)
    if not src.strip():
        return 0
    r._stmts(shparse.parse(src, "eval").stmts)
    return r.status


def _b_command(r, args, decl):
    flags, rest = _parse_flags(args) if args and args[0].startswith("-") else ("", args)
    if "v" in flags or "V" in flags:
        status = 0
        for name in rest:
            if name in r.funcs or name in BUILTINS:
                r.stdout.write(name + "\n")
                continue
            path = r.handlers.lookpath(r.hc(), name)
            if path is None:
                status = 1
            else:
                r.stdout.write(path + "\n")
        return status
    if not rest:
        return 0
    return r.dispatch(rest, decl, skip_funcs=True)


def _b_read(r, args, decl):
    raw = False
    names = []
    i = 0
    while i < len(args):
        a = args[i]
        if a == "-r":
            raw = True
        elif a == "-p" and i + 1 < len(args):
            r.stderr.write(args[i + 1])
            i += 1
        else:
            names.append(a)
        i += 1
    line = r.stdin.readline() if r.stdin is not None else ""
    if not line:
        return 1
    line = line.rstrip("\n")
    if not raw:
        line = re.sub(r"\\(.)", r"\1", line)
    names = names or ["REPLY"]
    if names == ["REPLY"]:
        r.set_var("REPLY", line)
        return 0
    ifs = r._ifs() or DEFAULT_IFS
    if len(names) == 1:
        # the last name takes the rest of the line
        r.set_var(names[0], line.strip("".join(c for c in ifs if c in " \t\n")))
        return 0
    parts = re.split("[" + re.escape(ifs) + "]+", line.strip(ifs), maxsplit=len(names) - 1)
    for j, name in enumerate(names):
        r.set_var(name, parts[j] if j < len(parts) else "")
    return 0


def _b_noop(r, args, decl):
    return 0


BUILTINS = {
    ":": _b_true,
    "true": _b_true,
    "false": _b_false,
    "echo": _b_echo,
    "printf": _b_printf,
    "declare": _b_declare,
    "typeset": _b_declare,
    "local": _b_local,
    "export": _b_export,
    "readonly": _b_readonly,
    "unset": _b_unset,
    "return": _b_return,
    "exit": _b_exit,
    "break": _b_break,
    "continue": _b_continue,
    "shift": _b_shift,
    "set": _b_set,
    "cd": _b_cd,
    "pwd": _b_pwd,
    "pushd": _b_pushd,
    "popd": _b_popd,
    "test": _b_test,
    "[": _b_bracket,
    "source": _b_source,
    ".": _b_source,
    "eval": _b_eval,
    "command": _b_command,
    "read": _b_read,
    "wait": _b_noop,
    "trap": _b_noop,
}
