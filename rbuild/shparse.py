# rbuild/shparse.py
"""
Parser for the POSIX/bash shell subset used by build recipes.

The whole input is parsed up front into a tree of dataclasses; nothing
is executed here. Supported syntax:
 - quoting (single, double, $'...', backslash), comments, line continuations
 - parameter expansion ($x, ${x}, ${x:-y}, ${#x}, ${x[@]}, ${x#p}, ${x/p/r}, ...)
 - command substitution ($(...) and backticks) and arithmetic $((...))
 - assignments, indexed arrays a=(...), associative arrays a=([k]=v), a+=...
 - redirections, heredocs, herestrings
 - pipelines, && / ||, lists, { }, ( ), if, for, while, until, case
 - function definitions, [[ ... ]] and (( ... ))
"""

from __future__ import annotations
import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple, Union

from .errors import ParseError

# ----------------------------
# Word parts
# ----------------------------
@dataclass
class Lit:
    value: str


@dataclass
class SglQuoted:
    value: str


@dataclass
class DblQuoted:
    parts: list


@dataclass
class ParamExp:
    name: str
    index: Optional["Word"] = None
    op: str = ""
    arg: Optional["Word"] = None
    repl: Optional["Word"] = None
    length: bool = False
    indirect: bool = False


@dataclass
class CmdSubst:
    stmts: list


@dataclass
class ArithExp:
    expr: "Word"


@dataclass
class Word:
    parts: list

    def literal(self) -> Optional[str]:
        """The word's text if it is made of a single unquoted literal."""
        if len(self.parts) == 1 and isinstance(self.parts[0], Lit):
            return self.parts[0].value
        return None


# ----------------------------
# Commands
# ----------------------------
@dataclass
class ArrayElem:
    key: Optional[Word]
    value: Word


@dataclass
class Assign:
    name: str
    value: Optional[Word] = None
    array: Optional[List[ArrayElem]] = None
    index: Optional[Word] = None
    append: bool = False


@dataclass
class Redirect:
    op: str
    target: Optional[Word]
    fd: Optional[int] = None
    heredoc: Optional[Word] = None


@dataclass
class SimpleCmd:
    assigns: List[Assign] = field(default_factory=list)
    # Assign entries appear here for declaration builtins (declare, local, ...)
    args: List[Union[Word, Assign]] = field(default_factory=list)


@dataclass
class Stmt:
    cmd: object
    redirs: List[Redirect] = field(default_factory=list)
    negated: bool = False
    background: bool = False
    line: int = 0


@dataclass
class Pipeline:
    stmts: List[Stmt]
    negated: bool = False


@dataclass
class AndOr:
    left: object
    op: str
    right: object


@dataclass
class Block:
    stmts: List[Stmt]


@dataclass
class Subshell:
    stmts: List[Stmt]


@dataclass
class IfClause:
    branches: List[Tuple[List[Stmt], List[Stmt]]]
    else_body: Optional[List[Stmt]] = None


@dataclass
class ForClause:
    var: str
    items: Optional[List[Word]]
    body: List[Stmt]


@dataclass
class WhileClause:
    cond: List[Stmt]
    body: List[Stmt]
    until: bool = False


@dataclass
class CaseItem:
    patterns: List[Word]
    body: List[Stmt]
    terminator: str = ";;"


@dataclass
class CaseClause:
    word: Word
    items: List[CaseItem]


@dataclass
class FuncDecl:
    name: str
    body: Stmt


@dataclass
class TestClause:
    # Word operands and operator strings, in source order
    tokens: list


@dataclass
class ArithCmd:
    expr: Word


@dataclass
class File:
    name: str
    stmts: List[Stmt]


# ----------------------------
# Parser
# ----------------------------
META = set(" \t\n;&|<>()")
RESERVED = {
    "if", "then", "elif", "else", "fi", "for", "in", "do", "done",
    "while", "until", "case", "esac", "function", "{", "}", "!", "[[", "]]",
}
CLOSERS = {"then", "elif", "else", "fi", "do", "done", "esac", "}", "]]"}
DECL_BUILTINS = {"declare", "typeset", "local", "export", "readonly"}
SPECIAL_PARAMS = set("@*#?$!-0123456789")

_ASSIGN_RE = re.compile(r"^([A-Za-z_][A-Za-z0-9_]*)(?:\[([^\]]*)\])?(\+?)=")
_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_FUNC_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_.:+-]*$")
_REDIR_RE = re.compile(r"(\d*)(&>>|&>|<<<|<<-|<<|<>|>>|>&|<&|>\||>|<)")


@dataclass
class _PendingHeredoc:
    redir: Redirect
    delim: str
    strip_tabs: bool
    quoted: bool


class Parser:
    def __init__(self, src: str, filename: str = ""):
        self.src = src
        self.filename = filename
        self.pos = 0
        self._heredocs: List[_PendingHeredoc] = []

    # ---- low level helpers ----
    def _err(self, msg: str, pos: Optional[int] = None):
        p = self.pos if pos is None else pos
        line = self.src.count("\n", 0, p) + 1
        col = p - (self.src.rfind("\n", 0, p) + 1) + 1
        raise ParseError(msg, self.filename, line, col)

    def _eof(self) -> bool:
        return self.pos >= len(self.src)

    def _peek(self, n: int = 1) -> str:
        return self.src[self.pos:self.pos + n]

    def _line(self) -> int:
        return self.src.count("\n", 0, self.pos) + 1

    def _skip_blanks(self):
        while not self._eof():
            c = self.src[self.pos]
            if c in " \t":
                self.pos += 1
            elif c == "\\" and self._peek(2) == "\\\n":
                self.pos += 2
            elif c == "#":
                while not self._eof() and self.src[self.pos] != "\n":
                    self.pos += 1
            else:
                break

    def _newline(self):
        # consumes one newline, then any heredoc bodies queued on that line
        self.pos += 1
        pending, self._heredocs = self._heredocs, []
        for hd in pending:
            self._read_heredoc(hd)

    def _skip_newlines(self):
        while True:
            self._skip_blanks()
            if self._peek() == "\n":
                self._newline()
            else:
                break

    def _peek_word(self) -> str:
        self._skip_blanks()
        end = self.pos
        while end < len(self.src) and self.src[end] not in META and self.src[end] not in "'\"$`\\":
            end += 1
        if end < len(self.src) and self.src[end] not in META:
            return ""
        return self.src[self.pos:end]

    def _peek_reserved(self) -> str:
        w = self._peek_word()
        return w if w in RESERVED else ""

    def _expect_reserved(self, word: str):
        if self._peek_reserved() != word:
            got = self._peek_word() or self._peek() or "end of file"
            self._err(f"expected '{word}', got '{got}'")
        self.pos += len(word)

    # ---- entry point ----
    def parse(self) -> File:
        stmts = self._stmts(stop=())
        self._skip_newlines()
        if not self._eof():
            self._err(f"unexpected '{self._peek()}'")
        if self._heredocs:
            self._err(f"unterminated heredoc '{self._heredocs[0].delim}'")
        return File(self.filename, stmts)

    # ---- statement lists ----
    def _stmts(self, stop=(), in_case=False) -> List[Stmt]:
        stmts: List[Stmt] = []
        while True:
            self._skip_newlines()
            if self._eof():
                break
            if self._peek() == ")" or self._peek(2) in (";;", ";&"):
                break
            res = self._peek_reserved()
            if res in stop:
                break
            if res in CLOSERS:
                self._err(f"unexpected '{res}'")
            stmt = self._and_or()
            stmts.append(stmt)
            self._skip_blanks()
            c = self._peek()
            if c == ";" and self._peek(2) not in (";;", ";&"):
                self.pos += 1
            elif c == "&" and self._peek(2) != "&&":
                self.pos += 1
                stmt.background = True
            elif c == "\n":
                self._newline()
            elif self._eof() or c == ")" or self._peek(2) in (";;", ";&"):
                continue
            elif self._peek_reserved() in stop:
                continue
            else:
                self._err(f"unexpected '{c}'")
        return stmts

    def _and_or(self) -> Stmt:
        left = self._pipeline()
        while True:
            self._skip_blanks()
            op = self._peek(2)
            if op not in ("&&", "||"):
                return left
            self.pos += 2
            self._skip_newlines()
            right = self._pipeline()
            left = Stmt(AndOr(left, op, right), line=left.line)

    def _pipeline(self) -> Stmt:
        self._skip_blanks()
        line = self._line()
        negated = False
        if self._peek_reserved() == "!":
            self.pos += 1
            negated = True
        stmts = [self._command()]
        while True:
            self._skip_blanks()
            if self._peek() == "|" and self._peek(2) != "||":
                self.pos += 2 if self._peek(2) == "|&" else 1
                self._skip_newlines()
                stmts.append(self._command())
            else:
                break
        if len(stmts) == 1:
            stmts[0].negated = negated
            return stmts[0]
        return Stmt(Pipeline(stmts, negated), line=line)

    # ---- commands ----
    def _command(self) -> Stmt:
        self._skip_blanks()
        line = self._line()
        if self._eof():
            self._err("unexpected end of file")
        res = self._peek_reserved()
        cmd = None
        if res == "if":
            cmd = self._if()
        elif res in ("while", "until"):
            cmd = self._while(res)
        elif res == "for":
            cmd = self._for()
        elif res == "case":
            cmd = self._case()
        elif res == "{":
            self.pos += 1
            body = self._stmts(stop=("}",))
            self._expect_reserved("}")
            cmd = Block(body)
        elif res == "[[":
            cmd = self._test_clause()
        elif res == "function":
            self.pos += len("function")
            return self._func_decl(line, keyword=True)
        elif res in CLOSERS:
            self._err(f"unexpected '{res}'")
        elif self._peek(2) == "((":
            cmd = self._arith_cmd()
        elif self._peek() == "(":
            self.pos += 1
            body = self._stmts()
            self._skip_newlines()
            if self._peek() != ")":
                self._err("expected ')' to close subshell")
            self.pos += 1
            cmd = Subshell(body)

        if cmd is not None:
            stmt = Stmt(cmd, line=line)
            self._redirects(stmt)
            return stmt
        return self._simple(line)

    def _redirects(self, stmt: Stmt):
        while True:
            self._skip_blanks()
            if not self._try_redirect(stmt):
                return

    def _try_redirect(self, stmt: Stmt) -> bool:
        m = _REDIR_RE.match(self.src, self.pos)
        if not m:
            return False
        # a digit prefix is only an fd when directly followed by the operator
        fd = int(m.group(1)) if m.group(1) else None
        op = m.group(2)
        self.pos = m.end()
        self._skip_blanks()
        target = self._word()
        if target is None:
            self._err(f"missing target for redirect '{op}'")
        redir = Redirect(op=op, target=target, fd=fd)
        if op in ("<<", "<<-"):
            delim, quoted = self._heredoc_delim(target)
            self._heredocs.append(_PendingHeredoc(redir, delim, op == "<<-", quoted))
        stmt.redirs.append(redir)
        return True

    def _simple(self, line: int) -> Stmt:
        stmt = Stmt(SimpleCmd(), line=line)
        cmd: SimpleCmd = stmt.cmd
        decl = False
        while True:
            self._skip_blanks()
            if self._eof() or self._peek() == "\n":
                break
            if self._try_redirect(stmt):
                continue
            c = self._peek()
            if c in META:
                if c == "(" and not cmd.assigns and len(cmd.args) == 1:
                    name = cmd.args[0].literal()
                    if name and _FUNC_NAME_RE.match(name):
                        return self._func_body(name, line)
                if c == "(":
                    self._err("unexpected '('")
                break
            start = self.pos
            w = self._word()
            if w is None:
                break
            if not cmd.args or decl:
                a = self._assignment(w, start)
                if a is not None:
                    if decl:
                        cmd.args.append(a)
                    else:
                        cmd.assigns.append(a)
                    continue
            cmd.args.append(w)
            if len(cmd.args) == 1 and w.literal() in DECL_BUILTINS:
                decl = True
        if not cmd.assigns and not cmd.args and not stmt.redirs:
            self._err(f"unexpected '{self._peek() or 'end of file'}'")
        return stmt

    def _assignment(self, w: Word, start: int) -> Optional[Assign]:
        if not w.parts or not isinstance(w.parts[0], Lit):
            return None
        first = w.parts[0].value
        m = _ASSIGN_RE.match(first)
        if not m:
            return None
        name, index, append = m.group(1), m.group(2), bool(m.group(3))
        rest = first[m.end():]
        parts = ([Lit(rest)] if rest else []) + w.parts[1:]
        idx = Word([Lit(index)]) if index is not None else None
        if not parts and self._peek() == "(":
            self.pos += 1
            return Assign(name, array=self._array_elems(), index=idx, append=append)
        return Assign(name, value=Word(parts), index=idx, append=append)

    def _array_elems(self) -> List[ArrayElem]:
        elems: List[ArrayElem] = []
        while True:
            self._skip_newlines()
            if self._eof():
                self._err("unterminated array")
            if self._peek() == ")":
                self.pos += 1
                return elems
            w = self._word()
            if w is None:
                self._err(f"unexpected '{self._peek()}' in array")
            key = None
            if w.parts and isinstance(w.parts[0], Lit) and w.parts[0].value.startswith("["):
                txt = w.parts[0].value
                close = txt.find("]=")
                if close > 0:
                    key = Word([Lit(txt[1:close])])
                    rest = txt[close + 2:]
                    w = Word(([Lit(rest)] if rest else []) + w.parts[1:])
                elif txt == "[" and len(w.parts) > 2:
                    # ['quoted key']=value
                    end = w.parts[2]
                    if isinstance(end, Lit) and end.value.startswith("]="):
                        key = Word([w.parts[1]])
                        rest = end.value[2:]
                        w = Word(([Lit(rest)] if rest else []) + w.parts[3:])
            elems.append(ArrayElem(key, w))

    def _func_decl(self, line: int, keyword: bool) -> Stmt:
        self._skip_blanks()
        w = self._word()
        name = w.literal() if w else None
        if not name or not _FUNC_NAME_RE.match(name):
            self._err("invalid function name")
        self._skip_blanks()
        if self._peek() == "(":
            return self._func_body(name, line)
        self._skip_newlines()
        body = self._command()
        return Stmt(FuncDecl(name, body), line=line)

    def _func_body(self, name: str, line: int) -> Stmt:
        self.pos += 1
        self._skip_blanks()
        if self._peek() != ")":
            self._err("expected ')' in function definition")
        self.pos += 1
        self._skip_newlines()
        body = self._command()
        return Stmt(FuncDecl(name, body), line=line)

    def _if(self) -> IfClause:
        self._expect_reserved("if")
        branches = []
        cond = self._stmts(stop=("then",))
        self._expect_reserved("then")
        body = self._stmts(stop=("elif", "else", "fi"))
        branches.append((cond, body))
        else_body = None
        while True:
            res = self._peek_reserved()
            if res == "elif":
                self.pos += 4
                cond = self._stmts(stop=("then",))
                self._expect_reserved("then")
                body = self._stmts(stop=("elif", "else", "fi"))
                branches.append((cond, body))
            elif res == "else":
                self.pos += 4
                else_body = self._stmts(stop=("fi",))
            else:
                break
        self._expect_reserved("fi")
        return IfClause(branches, else_body)

    def _while(self, kw: str) -> WhileClause:
        self._expect_reserved(kw)
        cond = self._stmts(stop=("do",))
        self._expect_reserved("do")
        body = self._stmts(stop=("done",))
        self._expect_reserved("done")
        return WhileClause(cond, body, until=(kw == "until"))

    def _for(self) -> ForClause:
        self._expect_reserved("for")
        self._skip_blanks()
        w = self._word()
        name = w.literal() if w else None
        if not name or not _NAME_RE.match(name):
            self._err("invalid for loop variable")
        items = None
        self._skip_newlines()
        if self._peek_reserved() == "in":
            self.pos += 2
            items = []
            while True:
                self._skip_blanks()
                c = self._peek()
                if c in (";", "\n") or self._eof():
                    break
                iw = self._word()
                if iw is None:
                    self._err(f"unexpected '{c}' in for loop")
                items.append(iw)
        self._skip_blanks()
        if self._peek() == ";":
            self.pos += 1
        self._skip_newlines()
        self._expect_reserved("do")
        body = self._stmts(stop=("done",))
        self._expect_reserved("done")
        return ForClause(name, items, body)

    def _case(self) -> CaseClause:
        self._expect_reserved("case")
        self._skip_blanks()
        word = self._word()
        if word is None:
            self._err("expected word after 'case'")
        self._skip_newlines()
        self._expect_reserved("in")
        items: List[CaseItem] = []
        while True:
            self._skip_newlines()
            if self._peek_reserved() == "esac":
                self.pos += 4
                return CaseClause(word, items)
            if self._eof():
                self._err("unterminated case statement")
            if self._peek() == "(":
                self.pos += 1
            patterns = []
            while True:
                self._skip_blanks()
                pw = self._word()
                if pw is None:
                    self._err("expected case pattern")
                patterns.append(pw)
                self._skip_blanks()
                if self._peek() == "|":
                    self.pos += 1
                    continue
                if self._peek() == ")":
                    self.pos += 1
                    break
                self._err("expected ')' after case pattern")
            body = self._stmts(stop=("esac",))
            term = ";;"
            for t in (";;&", ";;", ";&"):
                if self._peek(len(t)) == t:
                    self.pos += len(t)
                    term = t
                    break
            items.append(CaseItem(patterns, body, term))

    def _test_clause(self) -> TestClause:
        self.pos += 2
        tokens: list = []
        while True:
            self._skip_newlines()
            if self._eof():
                self._err("unterminated '[['")
            two = self._peek(2)
            if two in ("&&", "||"):
                tokens.append(two)
                self.pos += 2
                continue
            c = self._peek()
            if c in "()<>!" and (c != "!" or self._peek(2) in ("! ", "!\t")):
                tokens.append(c)
                self.pos += 1
                continue
            if tokens and isinstance(tokens[-1], Word) and tokens[-1].literal() == "=~":
                tokens.append(self._regex_word())
                continue
            w = self._word()
            if w is None:
                self._err(f"unexpected '{c}' in '[['")
            if w.literal() == "]]":
                return TestClause(tokens)
            tokens.append(w)

    def _regex_word(self) -> Word:
        parts = self._parts("param", stops=" \t\n")
        return Word(parts)

    def _arith_cmd(self) -> ArithCmd:
        self.pos += 2
        text = self._balanced_arith()
        return ArithCmd(Word(Parser(text, self.filename)._parts("arith")))

    def _balanced_arith(self) -> str:
        # reads up to the closing "))", honoring nested parentheses
        depth = 0
        start = self.pos
        while not self._eof():
            c = self.src[self.pos]
            if c == "(":
                depth += 1
            elif c == ")":
                if depth == 0 and self._peek(2) == "))":
                    text = self.src[start:self.pos]
                    self.pos += 2
                    return text
                depth -= 1
            self.pos += 1
        self._err("unterminated arithmetic expression", start)

    # ---- heredocs ----
    def _heredoc_delim(self, w: Word) -> Tuple[str, bool]:
        quoted = any(not isinstance(p, Lit) for p in w.parts)
        text = ""
        for p in w.parts:
            if isinstance(p, (Lit, SglQuoted)):
                text += p.value
            elif isinstance(p, DblQuoted):
                text += "".join(x.value for x in p.parts if isinstance(x, Lit))
        return text, quoted

    def _read_heredoc(self, hd: _PendingHeredoc):
        lines = []
        while True:
            if self._eof():
                self._err(f"unterminated heredoc '{hd.delim}'")
            end = self.src.find("\n", self.pos)
            if end < 0:
                end = len(self.src)
            line = self.src[self.pos:end]
            self.pos = min(end + 1, len(self.src))
            if hd.strip_tabs:
                line = line.lstrip("\t")
            if line == hd.delim:
                break
            lines.append(line + "\n")
        body = "".join(lines)
        if hd.quoted:
            hd.redir.heredoc = Word([SglQuoted(body)])
        else:
            hd.redir.heredoc = Word(Parser(body, self.filename)._parts("heredoc"))

    # ---- words ----
    def _word(self) -> Optional[Word]:
        start = self.pos
        parts = self._parts("word")
        if self.pos == start:
            return None
        return Word(parts)

    def _parts(self, mode: str, stops: str = "") -> list:
        """
        Read word parts. Modes: word (stops at metacharacters), dquote
        (inside "..."), heredoc and arith (quotes are plain text), param
        (inside ${...}, stops at `stops`).
        """
        parts: list = []
        buf: List[str] = []

        def flush():
            if buf:
                parts.append(Lit("".join(buf)))
                buf.clear()

        quotes_active = mode in ("word", "param")
        while not self._eof():
            c = self.src[self.pos]
            if stops and c in stops:
                break
            if mode == "word" and c in META:
                break
            if mode == "dquote" and c == '"':
                break
            if c == "\\":
                nxt = self._peek(2)[1:]
                if nxt == "\n":
                    self.pos += 2
                    continue
                if not nxt:
                    buf.append(c)
                    self.pos += 1
                    continue
                if quotes_active:
                    flush()
                    parts.append(SglQuoted(nxt))
                    self.pos += 2
                    continue
                special = '$`"\\' if mode == "dquote" else "$`\\"
                if nxt in special:
                    buf.append(nxt)
                else:
                    buf.append(c + nxt)
                self.pos += 2
                continue
            if c == "'" and quotes_active:
                flush()
                end = self.src.find("'", self.pos + 1)
                if end < 0:
                    self._err("unterminated single quote")
                parts.append(SglQuoted(self.src[self.pos + 1:end]))
                self.pos = end + 1
                continue
            if c == '"' and quotes_active:
                flush()
                start = self.pos
                self.pos += 1
                inner = self._parts("dquote")
                if self._peek() != '"':
                    self._err("unterminated double quote", start)
                self.pos += 1
                parts.append(DblQuoted(inner))
                continue
            if c == "$":
                part = self._dollar(in_dquote=(mode == "dquote"))
                if part is None:
                    buf.append("$")
                    self.pos += 1
                else:
                    flush()
                    parts.append(part)
                continue
            if c == "`":
                flush()
                parts.append(self._backquote())
                continue
            buf.append(c)
            self.pos += 1
        flush()
        return parts

    def _backquote(self) -> CmdSubst:
        start = self.pos
        self.pos += 1
        out = []
        while True:
            if self._eof():
                self._err("unterminated backquote", start)
            c = self.src[self.pos]
            if c == "`":
                self.pos += 1
                break
            if c == "\\" and self._peek(2)[1:] in ("`", "\\", "$"):
                out.append(self._peek(2)[1])
                self.pos += 2
                continue
            out.append(c)
            self.pos += 1
        sub = Parser("".join(out), self.filename)
        return CmdSubst(sub.parse().stmts)

    def _dollar(self, in_dquote: bool = False):
        nxt = self._peek(2)[1:]
        if nxt == "(":
            if self._peek(3) == "$((":
                self.pos += 3
                text = self._balanced_arith()
                return ArithExp(Word(Parser(text, self.filename)._parts("arith")))
            start = self.pos
            self.pos += 2
            stmts = self._stmts()
            self._skip_newlines()
            if self._peek() != ")":
                self._err("unterminated command substitution", start)
            self.pos += 1
            return CmdSubst(stmts)
        if nxt == "{":
            return self._param_braced()
        if nxt == "'" and not in_dquote:
            return self._ansi_c()
        if nxt == '"' and not in_dquote:
            self.pos += 1
            return self._locale_dquote()
        if nxt and (nxt.isalpha() or nxt == "_"):
            self.pos += 1
            start = self.pos
            while not self._eof() and (self.src[self.pos].isalnum() or self.src[self.pos] == "_"):
                self.pos += 1
            return ParamExp(self.src[start:self.pos])
        if nxt and nxt in SPECIAL_PARAMS:
            self.pos += 2
            return ParamExp(nxt)
        return None

    def _locale_dquote(self) -> DblQuoted:
        start = self.pos
        self.pos += 1
        inner = self._parts("dquote")
        if self._peek() != '"':
            self._err("unterminated double quote", start)
        self.pos += 1
        return DblQuoted(inner)

    def _ansi_c(self) -> SglQuoted:
        start = self.pos
        self.pos += 2
        out = []
        escapes = {"n": "\n", "t": "\t", "r": "\r", "a": "\a", "b": "\b",
                   "e": "\x1b", "E": "\x1b", "f": "\f", "v": "\v",
                   "\\": "\\", "'": "'", '"': '"', "?": "?"}
        while True:
            if self._eof():
                self._err("unterminated $'...' string", start)
            c = self.src[self.pos]
            if c == "'":
                self.pos += 1
                break
            if c == "\\" and self.pos + 1 < len(self.src):
                e = self.src[self.pos + 1]
                if e in escapes:
                    out.append(escapes[e])
                    self.pos += 2
                    continue
                if e == "x":
                    m = re.match(r"[0-9a-fA-F]{1,2}", self.src[self.pos + 2:])
                    if m:
                        out.append(chr(int(m.group(0), 16)))
                        self.pos += 2 + len(m.group(0))
                        continue
            out.append(c)
            self.pos += 1
        return SglQuoted("".join(out))

    def _param_braced(self) -> ParamExp:
        start = self.pos
        self.pos += 2
        length = indirect = False
        if self._peek() == "#" and self._peek(2)[1:] not in ("}", ""):
            length = True
            self.pos += 1
        elif self._peek() == "!" and self._peek(2)[1:] not in ("}", ""):
            indirect = True
            self.pos += 1

        name_start = self.pos
        c = self._peek()
        if c and (c.isalpha() or c == "_"):
            while not self._eof() and (self.src[self.pos].isalnum() or self.src[self.pos] == "_"):
                self.pos += 1
        elif c.isdigit():
            while not self._eof() and self.src[self.pos].isdigit():
                self.pos += 1
        elif c and c in SPECIAL_PARAMS:
            self.pos += 1
        else:
            self._err("bad substitution", start)
        pe = ParamExp(self.src[name_start:self.pos], length=length, indirect=indirect)

        if self._peek() == "[":
            self.pos += 1
            pe.index = Word(self._parts("param", stops="]"))
            if self._peek() != "]":
                self._err("unterminated array index", start)
            self.pos += 1

        for op in (":-", ":=", ":+", ":?", "##", "%%", "//", "/#", "/%", "^^", ",,",
                   "-", "=", "+", "?", "#", "%", "/", "^", ",", ":"):
            if self._peek(len(op)) == op:
                self.pos += len(op)
                pe.op = op
                break

        if pe.op:
            if pe.op in ("/", "//", "/#", "/%"):
                pe.arg = Word(self._parts("param", stops="/}"))
                if self._peek() == "/":
                    self.pos += 1
                    pe.repl = Word(self._parts("param", stops="}"))
            else:
                pe.arg = Word(self._parts("param", stops="}"))
        if self._peek() != "}":
            self._err("bad substitution", start)
        self.pos += 1
        return pe


def parse(src: str, filename: str = "") -> File:
    """Parse a whole script. Raises ParseError on invalid syntax."""
    return Parser(src, filename).parse()
