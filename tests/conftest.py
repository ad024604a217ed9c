"""Shared fixtures: isolated config/env and recording fakes for the build collaborators."""

from __future__ import annotations

import io
import textwrap
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import pytest

from rbuild import config as config_mod
from rbuild import shparse
from rbuild.build import Builder
from rbuild.db import DB, Package
from rbuild.distro import DistroContext
from rbuild.fetcher import FetchOptions
from rbuild.handlers import nop_handlers
from rbuild.manager import Manager
from rbuild.packager import PackageInfo, Packager
from rbuild.prompt import Prompter
from rbuild.shinterp import Runner

_ENV_VARS = (
    "RBUILD_CONFIG", "RBUILD_ARCH", "RBUILD_ARM_VARIANT", "RBUILD_PKG_FORMAT",
    "RBUILD_DISTRO", "RBUILD_DISTRO_LIKE", "RBUILD_LIB_DIR",
)


@pytest.fixture(autouse=True)
def isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    """Run every test in an empty cwd with a private HOME and no cached config."""
    for var in _ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.chdir(tmp_path)
    config_mod.set_config(None)
    yield
    config_mod.set_config(None)


@pytest.fixture
def ctx() -> DistroContext:
    return DistroContext(id="debian", like=(), name="Debian GNU/Linux", arch="amd64")


def run_script(src: str, handlers=None, env: Optional[Dict[str, str]] = None,
               dir: str = "/", stdin: str = "") -> Runner:
    """Parse and run a snippet; stdout is available as runner.stdout.getvalue()."""
    r = Runner(handlers=handlers or nop_handlers(), env=env or {}, dir=dir,
               stdin=io.StringIO(stdin), stdout=io.StringIO(), stderr=io.StringIO())
    r.run(shparse.parse(textwrap.dedent(src), "test.sh"))
    return r


@pytest.fixture
def sh():
    return run_script


# ----------------------------
# recording fakes
# ----------------------------
class FakeManager(Manager):
    """Records install/remove calls instead of running anything."""

    name = "fake"
    format = "deb"

    def __init__(self, installed: Optional[Dict[str, str]] = None):
        super().__init__()
        self.installed = dict(installed or {})
        self.calls: List[tuple] = []

    def exists(self) -> bool:
        return True

    def install(self, names: Sequence[str]) -> None:
        if names:
            self.calls.append(("install", list(names)))

    def install_local(self, paths: Sequence[str]) -> None:
        if paths:
            self.calls.append(("install_local", list(paths)))

    def remove(self, names: Sequence[str]) -> None:
        if names:
            self.calls.append(("remove", list(names)))

    def list_installed(self) -> Dict[str, str]:
        return dict(self.installed)


class FakeFetcher:
    def __init__(self):
        self.calls: List[FetchOptions] = []

    def fetch(self, opts: FetchOptions) -> str:
        self.calls.append(opts)
        return opts.destination


class FakePackager(Packager):
    format = "fake"

    def __init__(self):
        self.packaged: List[PackageInfo] = []

    def conventional_file_name(self, info: PackageInfo) -> str:
        return f"{info.name}-{info.full_version}-{info.arch}.fake"

    def package(self, info: PackageInfo, stream) -> None:
        self.packaged.append(info)
        stream.write(f"package {info.name}\n".encode("utf-8"))


class FakePrompter(Prompter):
    """Non-interactive prompter; `answers` maps a question substring to a reply."""

    def __init__(self, answers: Optional[Dict[str, bool]] = None):
        super().__init__(interactive=False)
        self.answers = dict(answers or {})
        self.asked: List[str] = []

    def yes_no(self, msg: str, default: bool, interactive: Optional[bool] = None) -> bool:
        self.asked.append(msg)
        for key, reply in self.answers.items():
            if key in msg:
                return reply
        return default


class RecipeRepo:
    """Writes recipes under <repo_dir>/<repository>/<name>/rbuild.sh and indexes them."""

    def __init__(self, repo_dir: Path, index: DB, repository: str = "main"):
        self.repo_dir = repo_dir
        self.index = index
        self.repository = repository

    def add(self, name: str, body: str = "", depends: Sequence[str] = (),
            provides: Sequence[str] = (), version: str = "1.0") -> Path:
        recipe = self.repo_dir / self.repository / name / "rbuild.sh"
        recipe.parent.mkdir(parents=True, exist_ok=True)
        recipe.write_text(recipe_text(name, body, version=version), encoding="utf-8")
        self.index.insert(Package(name=name, repository=self.repository, version=version, release=1,
                                  provides=list(provides), depends={"": list(depends)}))
        return recipe


def recipe_text(name: str, body: str = "", version: str = "1.0") -> str:
    head = textwrap.dedent(f"""\
        name={name}
        version={version}
        release=1
        architectures=('amd64')
        desc="the {name} package"
        """)
    tail = textwrap.dedent("""\
        package() {
            echo data > "$pkgdir/$name.txt"
        }
        """)
    return head + textwrap.dedent(body) + tail


@pytest.fixture
def index() -> DB:
    db = DB(":memory:")
    yield db
    db.close()


@pytest.fixture
def fake_manager() -> FakeManager:
    return FakeManager()


@pytest.fixture
def fake_fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def fake_packager() -> FakePackager:
    return FakePackager()


@pytest.fixture
def prompter() -> FakePrompter:
    return FakePrompter()


@pytest.fixture
def builder(tmp_path: Path, index: DB, fake_fetcher: FakeFetcher, fake_packager: FakePackager,
            prompter: FakePrompter, ctx: DistroContext) -> Builder:
    return Builder(
        index=index,
        fetcher=fake_fetcher,
        prompter=prompter,
        pkgs_dir=str(tmp_path / "pkgs"),
        repo_dir=str(tmp_path / "repo"),
        info=ctx,
        packager_factory=lambda fmt: fake_packager,
        fakeroot=False,
        stdin=io.StringIO(),
        stdout=io.StringIO(),
        stderr=io.StringIO(),
    )


@pytest.fixture
def recipes(tmp_path: Path, index: DB) -> RecipeRepo:
    return RecipeRepo(tmp_path / "repo", index)


@pytest.fixture
def write_recipe(tmp_path: Path):
    """Write a standalone recipe into tmp_path/<dirname>/rbuild.sh and return its path."""

    def write(text: str, dirname: str = "recipe") -> str:
        path = tmp_path / dirname / "rbuild.sh"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(textwrap.dedent(text), encoding="utf-8")
        return str(path)

    return write


@pytest.fixture
def local_recipe(write_recipe):
    """Write a minimal buildable recipe for `name` outside any repository."""

    def make(name: str = "hello", body: str = "", version: str = "1.0") -> str:
        return write_recipe(recipe_text(name, body, version=version), dirname=name)

    return make
