"""Tests for rbuild.shparse and rbuild.shinterp."""

from __future__ import annotations

import threading
from pathlib import Path

import pytest

from rbuild import shparse
from rbuild.errors import Cancelled, FuncNotFoundError, ParseError
from rbuild.handlers import restricted_handlers
from rbuild.helpers import RESTRICTED_HELPERS
from rbuild.shinterp import Runner


def out(r: Runner) -> str:
    return r.stdout.getvalue()


def test_assignment_and_echo(sh) -> None:
    r = sh('x=1; y="$x two"; echo "$y"')

    assert out(r) == "1 two\n"
    assert r.get_str("y") == "1 two"


def test_indexed_and_associative_arrays(sh) -> None:
    r = sh("""
        a=(one two three)
        a+=(four)
        declare -A m=([k]=v [other]=w)
        echo "${#a[@]}" "${a[1]}" "${m[k]}"
    """)

    assert out(r) == "4 two v\n"
    assert r.get_var("a").kind == "indexed"
    assert r.get_var("m").kind == "assoc"


def test_quoted_array_expansion_keeps_fields(sh) -> None:
    r = sh("""
        a=('x y' z)
        for i in "${a[@]}"; do echo "[$i]"; done
    """)

    assert out(r) == "[x y]\n[z]\n"


def test_parameter_operators(sh) -> None:
    r = sh("""
        f=archive.tar.gz
        echo "${unset:-def}" "${f%%.*}" "${f#*.}" "${f/tar/zip}" "${f^^}"
    """)

    assert out(r) == "def archive tar.gz archive.zip.gz ARCHIVE.TAR.GZ\n"


def test_functions_and_local_scope(sh) -> None:
    r = sh("""
        v=out
        f() { local v=in; echo "$v $1"; }
        f arg
        echo "$v"
    """)

    assert out(r) == "in arg\nout\n"
    assert "f" in r.funcs


def test_command_substitution_and_arithmetic(sh) -> None:
    r = sh("""
        x=$(echo hi)
        n=$((2 + 3 * 4))
        echo "$x $n"
    """)

    assert out(r) == "hi 14\n"


def test_control_flow(sh) -> None:
    r = sh("""
        s=
        for i in 1 2 3; do s="$s$i"; done
        if [[ "$s" == 12* ]]; then echo yes; else echo no; fi
        case "$s" in
            1*) echo one ;;
            *) echo other ;;
        esac
        n=0
        while [ "$n" -lt 3 ]; do n=$((n + 1)); done
        echo "$s $n"
    """)

    assert out(r) == "yes\none\n123 3\n"


def test_and_or_lists(sh) -> None:
    r = sh("false && echo a || echo b; true && echo c")

    assert out(r) == "b\nc\n"


def test_exit_stops_execution_and_sets_status(sh) -> None:
    r = sh("""
        echo before
        exit 3
        echo after
    """)

    assert out(r) == "before\n"
    assert r.exited
    assert r.status == 3


def test_call_runs_defined_function(sh) -> None:
    r = sh("greet() { echo \"hello $1\"; return 4; }")

    assert r.call("greet", ["world"]) == 4
    assert out(r) == "hello world\n"
    with pytest.raises(FuncNotFoundError):
        r.call("missing")


def test_subshell_does_not_leak(sh) -> None:
    r = sh("x=1; (x=2; echo \"$x\"); echo \"$x\"")

    assert out(r) == "2\n1\n"


def test_heredoc_feeds_stdin(sh) -> None:
    r = sh("""
        read -r line <<EOF
        first line
        EOF
        echo "$line"
    """)

    assert out(r) == "first line\n"


def test_read_last_name_takes_rest_of_line(sh) -> None:
    r = sh("""
        read -r whole
        read -r first rest
        echo "[$whole]"
        echo "[$first] [$rest]"
    """, stdin="   padded  words here  \nalpha beta gamma\n")

    assert out(r) == "[padded  words here]\n[alpha] [beta gamma]\n"


def test_while_read_loop(sh) -> None:
    r = sh("""
        while read -r line; do
            echo "<$line>"
        done
    """, stdin="one two\nthree\n")

    assert out(r) == "<one two>\n<three>\n"


def test_syntax_error_raises_before_running() -> None:
    with pytest.raises(ParseError):
        shparse.parse("if true; then echo x\n", "bad.sh")


def test_cancel_stops_run(sh) -> None:
    cancel = threading.Event()
    cancel.set()
    r = Runner(env={}, dir="/", cancel=cancel)

    with pytest.raises(Cancelled):
        r.run(shparse.parse("echo x"))


# ----------------------------
# restricted first pass
# ----------------------------
def test_restricted_exec_is_denied_silently(sh, tmp_path: Path) -> None:
    r = sh("ls /; echo \"rc=$?\"", handlers=restricted_handlers(str(tmp_path), RESTRICTED_HELPERS),
           dir=str(tmp_path))

    assert out(r) == "rc=127\n"
    assert [(e.op, e.target) for e in r.restricted_hits] == [("exec", "ls")]


def test_restricted_fs_is_limited_to_script_dir(sh, tmp_path: Path) -> None:
    (tmp_path / "inside.txt").write_text("secret-ish\n", encoding="utf-8")
    outside = tmp_path.parent / f"{tmp_path.name}-outside.txt"
    outside.write_text("x\n", encoding="utf-8")
    try:
        r = sh(f"""
            [ -f inside.txt ] && echo inside
            [ -e {outside} ] && echo outside
            read -r line < inside.txt
            echo "$line"
            echo leaked > written.txt
        """, handlers=restricted_handlers(str(tmp_path), RESTRICTED_HELPERS), dir=str(tmp_path))
    finally:
        outside.unlink()

    assert out(r) == "inside\nsecret-ish\n"
    assert not (tmp_path / "written.txt").exists()
    assert {e.op for e in r.restricted_hits} == {"stat", "open"}
