"""Tests for rbuild.build.Builder driven end to end with recording fakes."""

from __future__ import annotations

import io
import os
import threading
from pathlib import Path

import pytest
from rich.console import Console

from rbuild.build import BuildOpts, Builder, remove_duplicates
from rbuild.errors import (ArchitectureMismatchError, Cancelled, DependencyCycleError,
                           MissingPackageFunctionError, ScriptError, SourcesMismatchError)
from rbuild.prompt import Prompter


def opts(script: str, manager, **kw) -> BuildOpts:
    return BuildOpts(script=script, manager=manager, interactive=False, **kw)


def test_remove_duplicates_keeps_order() -> None:
    assert remove_duplicates(["b", "a", "b", "c", "a"]) == ["b", "a", "c"]


def test_basic_build(builder: Builder, local_recipe, fake_manager, fake_packager, tmp_path: Path) -> None:
    script = local_recipe("hello")

    res = builder.build(opts(script, fake_manager))

    expected = tmp_path / "pkgs" / "hello" / "hello-1.0-1-amd64.fake"
    assert res.paths == [str(expected)]
    assert res.names == ["hello"]
    assert expected.read_bytes() == b"package hello\n"
    (info,) = fake_packager.packaged
    assert info.description == "the hello package"
    assert info.arch == "amd64"
    assert [c.destination for c in info.contents] == ["/hello.txt"]
    assert fake_manager.calls == []


def test_version_function_updates_version(builder: Builder, local_recipe, fake_manager) -> None:
    script = local_recipe("hello", body="version() {\n    echo 2.5\n}\n")

    res = builder.build(opts(script, fake_manager))

    assert os.path.basename(res.paths[0]) == "hello-2.5-1-amd64.fake"


def test_cached_package_skips_second_pass(builder: Builder, local_recipe, fake_manager, fake_packager) -> None:
    script = local_recipe("hello", body='echo ran > "$scriptdir/marker"\n')
    marker = Path(script).parent / "marker"

    first = builder.build(opts(script, fake_manager))
    assert marker.exists()
    marker.unlink()

    second = builder.build(opts(script, fake_manager))

    assert second.paths == first.paths
    assert second.names == ["hello"]
    assert not marker.exists()
    assert len(fake_packager.packaged) == 1

    builder.build(opts(script, fake_manager, clean=True))
    assert marker.exists()
    assert len(fake_packager.packaged) == 2


def test_sources_are_fetched_into_srcdir(builder: Builder, local_recipe, fake_manager, fake_fetcher,
                                         tmp_path: Path) -> None:
    script = local_recipe("hello", body="sources=('https://example.org/hello.tar.gz' 'fix.patch')\n"
                                        "checksums=('SKIP' 'abcd')\n")

    builder.build(opts(script, fake_manager))

    assert [(c.url, c.checksum, c.label) for c in fake_fetcher.calls] == [
        ("https://example.org/hello.tar.gz", "SKIP", "hello[0]"),
        ("fix.patch", "abcd", "hello[1]"),
    ]
    assert fake_fetcher.calls[0].destination == str(tmp_path / "pkgs" / "hello" / "src")
    assert fake_fetcher.calls[1].script_dir == os.path.dirname(script)


def test_sources_checksums_mismatch(builder: Builder, local_recipe, fake_manager, fake_fetcher) -> None:
    script = local_recipe("hello", body="sources=('a' 'b')\nchecksums=('SKIP')\n")

    with pytest.raises(SourcesMismatchError):
        builder.build(opts(script, fake_manager))
    assert fake_fetcher.calls == []


def test_missing_package_function(builder: Builder, write_recipe, fake_manager, fake_packager) -> None:
    script = write_recipe("""\
        name=nopkg
        version=1.0
        release=1
        build() {
            true
        }
        """)

    with pytest.raises(MissingPackageFunctionError):
        builder.build(opts(script, fake_manager))
    assert fake_manager.calls == []
    assert fake_packager.packaged == []


ARM_ONLY = """\
    name=armonly
    version=1.0
    release=1
    architectures=('arm64')
    package() {
        echo data > "$pkgdir/armonly.txt"
    }
    """


def test_architecture_mismatch_declined(builder: Builder, write_recipe, fake_manager, prompter) -> None:
    prompter.answers["architecture"] = False

    with pytest.raises(ArchitectureMismatchError):
        builder.build(opts(write_recipe(ARM_ONLY), fake_manager))
    assert any("architecture" in q for q in prompter.asked)


def test_architecture_mismatch_default_builds(builder: Builder, write_recipe, fake_manager,
                                              fake_packager) -> None:
    res = builder.build(opts(write_recipe(ARM_ONLY), fake_manager))

    assert os.path.basename(res.paths[0]) == "armonly-1.0-1-amd64.fake"
    assert len(fake_packager.packaged) == 1


def test_noarch_package(builder: Builder, write_recipe, fake_manager) -> None:
    script = write_recipe(ARM_ONLY.replace("'arm64'", "'all'"))

    res = builder.build(opts(script, fake_manager))

    assert os.path.basename(res.paths[0]) == "armonly-1.0-1-all.fake"


def test_shared_dependency_built_once(builder: Builder, recipes, local_recipe, fake_manager,
                                      fake_packager) -> None:
    recipes.add("libc")
    recipes.add("liba", body="deps=('libc')\n", depends=["libc"])
    recipes.add("libb", body="deps=('libc')\n", depends=["libc"])
    script = local_recipe("app", body="deps=('liba' 'libb' 'zlib')\n")

    res = builder.build(opts(script, fake_manager))

    assert [p.name for p in fake_packager.packaged] == ["libc", "liba", "libb", "app"]
    assert res.names == ["libc", "liba", "libb", "app"]
    assert [os.path.basename(p) for p in res.paths] == [
        "libc-1.0-1-amd64.fake", "liba-1.0-1-amd64.fake", "libb-1.0-1-amd64.fake", "app-1.0-1-amd64.fake",
    ]
    app = fake_packager.packaged[-1]
    assert app.depends[0] == "zlib"
    assert {"liba", "libb", "libc"} <= set(app.depends)
    assert fake_manager.calls == []


def test_native_build_deps_installed_and_removed(builder: Builder, local_recipe, fake_manager,
                                                 prompter) -> None:
    prompter.answers["remove the build dependencies"] = True
    script = local_recipe("hello", body="build_deps=('gcc' 'make')\n")
    fake_manager.installed = {"make": "4.3-1"}

    builder.build(opts(script, fake_manager))

    assert fake_manager.calls == [("install", ["gcc"]), ("remove", ["gcc"])]


def test_build_deps_kept_by_default(builder: Builder, local_recipe, fake_manager) -> None:
    script = local_recipe("hello", body="build_deps=('gcc')\n")

    builder.build(opts(script, fake_manager))

    assert fake_manager.calls == [("install", ["gcc"])]


def test_index_build_dep_is_built_and_installed(builder: Builder, recipes, local_recipe,
                                                fake_manager, tmp_path: Path) -> None:
    recipes.add("mytool")
    script = local_recipe("hello", body="build_deps=('mytool')\n")

    builder.build(opts(script, fake_manager))

    assert fake_manager.calls == [
        ("install_local", [str(tmp_path / "pkgs" / "mytool" / "mytool-1.0-1-amd64.fake")]),
    ]


def test_nonzero_exit_fails_build(builder: Builder, local_recipe, fake_manager) -> None:
    script = local_recipe("hello", body="exit 3\n")

    with pytest.raises(ScriptError) as excinfo:
        builder.build(opts(script, fake_manager))
    assert excinfo.value.status == 3


def test_cancel_before_start(builder: Builder, local_recipe, fake_manager) -> None:
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(Cancelled):
        builder.build(opts(local_recipe("hello"), fake_manager, cancel=cancel))


def test_dependency_cycle_is_reported(builder: Builder, recipes, fake_manager, fake_packager) -> None:
    recipes.add("a", body="deps=('b')\n", depends=["b"])
    script = recipes.add("b", body="deps=('a')\n", depends=["a"])
    built = {}

    with pytest.raises(DependencyCycleError) as excinfo:
        builder.build(opts(str(script), fake_manager), built)

    assert excinfo.value.cycle == ["b", "a", "b"]
    assert built == {}
    assert fake_packager.packaged == []


def test_self_dependency_is_a_cycle(builder: Builder, recipes, fake_manager) -> None:
    script = recipes.add("loop", body="build_deps=('loop')\n")

    with pytest.raises(DependencyCycleError) as excinfo:
        builder.build(opts(str(script), fake_manager))
    assert excinfo.value.cycle == ["loop", "loop"]


def test_non_interactive_opts_override_interactive_prompter(builder: Builder, write_recipe, fake_manager,
                                                            fake_packager,
                                                            monkeypatch: pytest.MonkeyPatch) -> None:
    def no_questions(*args, **kwargs):
        raise AssertionError("prompted during a non-interactive build")

    monkeypatch.setattr("rbuild.prompt.Confirm.ask", no_questions)
    builder.prompter = Prompter(console=Console(file=io.StringIO()), interactive=True)

    res = builder.build(opts(write_recipe(ARM_ONLY), fake_manager))

    assert os.path.basename(res.paths[0]) == "armonly-1.0-1-amd64.fake"
    assert len(fake_packager.packaged) == 1


def test_interactive_opts_override_non_interactive_prompter(builder: Builder, write_recipe, fake_manager,
                                                            monkeypatch: pytest.MonkeyPatch) -> None:
    asked = []

    def decline(prompt, *args, **kwargs):
        asked.append(prompt)
        return False

    monkeypatch.setattr("rbuild.prompt.Confirm.ask", decline)
    builder.prompter = Prompter(console=Console(file=io.StringIO()), interactive=False)

    with pytest.raises(ArchitectureMismatchError):
        builder.build(BuildOpts(script=write_recipe(ARM_ONLY), manager=fake_manager, interactive=True))

    assert len(asked) == 2
    assert "view the build script" in asked[0]
    assert "architecture" in asked[1]
