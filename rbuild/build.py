# rbuild/build.py
"""
Build orchestrator.

One call to Builder.build() takes a recipe from source text to a package
file:

    parse -> first pass (restricted) -> cache check -> user review
    -> second pass -> preflight checks -> prepare dirs -> build deps
    -> optional deps -> runtime deps (recursive) -> fetch sources
    -> version/prepare/build/package -> metadata -> package file
    -> build dep cleanup

Collaborators (index, native manager, fetcher, packager, prompts) are
passed in, so tests drive the whole state machine with fakes.
"""

from __future__ import annotations
import io
import os
import shutil
import sys
import threading
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Optional, Sequence

from . import cpu, shparse
from .db import DB, Package
from .decoder import Decoder, RecipeSpec
from .distro import DistroContext, get_distro_context, script_env
from .errors import (AlreadyInstalledWarning, ArchitectureMismatchError, Cancelled, DependencyCycleError,
                     MissingPackageFunctionError, ScriptError, SourcesMismatchError)
from .fetcher import FetchOptions, Fetcher
from .handlers import NullFile, default_handlers, restricted_handlers
from .helpers import HELPERS, RESTRICTED_HELPERS
from .logging import get_logger
from .manager import Manager
from .overrides import DEFAULT_OPTS, OverrideOpts
from .packager import PackageInfo, Packager, build_contents, get_packager, pkg_format
from .prompt import Prompter
from .shinterp import Runner

logger = get_logger("build")

_SCRIPT_HOOKS = ("preinstall", "postinstall", "preremove", "postremove",
                 "preupgrade", "postupgrade", "pretrans", "posttrans")


@dataclass
class BuildOpts:
    script: str
    manager: Manager
    clean: bool = False
    interactive: bool = True
    cancel: Optional[threading.Event] = None


@dataclass
class Directories:
    base_dir: str
    src_dir: str
    pkg_dir: str
    script_dir: str


@dataclass
class BuildResult:
    paths: List[str] = field(default_factory=list)
    names: List[str] = field(default_factory=list)


def remove_duplicates(items: Sequence[str]) -> List[str]:
    seen = set()
    out = []
    for s in items:
        if s not in seen:
            seen.add(s)
            out.append(s)
    return out


def remove_already_installed(found: Dict[str, List[Package]],
                             installed: Dict[str, str]) -> Dict[str, List[Package]]:
    return {name: [p for p in pkgs if p.name not in installed] for name, pkgs in found.items()}


def _check_cancel(cancel: Optional[threading.Event], what: str):
    if cancel is not None and cancel.is_set():
        raise Cancelled(f"{what}: cancelled")


def _cycle(built: Dict[str, Optional[BuildResult]], script: str) -> List[str]:
    """Recipe names from the first in-progress build of `script` back to itself."""
    stack = [s for s, res in built.items() if res is None]
    loop = stack[stack.index(script):] + [script]
    return [os.path.basename(os.path.dirname(s)) for s in loop]


class Builder:
    def __init__(self, index: DB, fetcher: Fetcher, prompter: Prompter,
                 pkgs_dir: str, repo_dir: str,
                 info: Optional[DistroContext] = None,
                 override_opts: OverrideOpts = DEFAULT_OPTS,
                 packager_factory: Callable[[str], Packager] = get_packager,
                 recipe_name: str = "rbuild.sh",
                 fakeroot: bool = True, kill_timeout: float = 2.0,
                 stdin=None, stdout=None, stderr=None):
        self.index = index
        self.fetcher = fetcher
        self.prompter = prompter
        self.pkgs_dir = pkgs_dir
        self.repo_dir = repo_dir
        self.info = info or get_distro_context()
        self.override_opts = override_opts
        self.packager_factory = packager_factory
        self.recipe_name = recipe_name
        self.fakeroot = fakeroot
        self.kill_timeout = kill_timeout
        self.stdin = sys.stdin if stdin is None else stdin
        self.stdout = sys.stdout if stdout is None else stdout
        self.stderr = sys.stderr if stderr is None else stderr

    # ----------------------------
    # passes
    # ----------------------------
    def parse(self, script: str) -> shparse.File:
        with open(script, encoding="utf-8") as f:
            return shparse.parse(f.read(), script)

    def first_pass(self, tree: shparse.File, script: str, cancel=None) -> RecipeSpec:
        """Evaluate with restricted handlers and decode the recipe variables."""
        script_dir = os.path.dirname(script)
        env = dict(os.environ)
        env.update(script_env(self.info, scriptdir=script_dir))
        runner = Runner(handlers=restricted_handlers(script_dir, RESTRICTED_HELPERS), env=env,
                        dir=script_dir, stdin=NullFile(), stdout=self.stderr, stderr=self.stderr,
                        cancel=cancel, filename=script)
        runner.run(tree)
        if runner.restricted_hits:
            logger.debug("first pass of %s: %d restricted operation(s) hidden", script,
                         len(runner.restricted_hits))
        return Decoder(self.info, runner, self.override_opts).decode_vars()

    def second_pass(self, tree: shparse.File, dirs: Directories, cancel=None) -> Decoder:
        env = dict(os.environ)
        env.update(script_env(self.info, scriptdir=dirs.script_dir, srcdir=dirs.src_dir, pkgdir=dirs.pkg_dir))
        runner = Runner(handlers=default_handlers(HELPERS, kill_timeout=self.kill_timeout, fakeroot=self.fakeroot),
                        env=env, dir=dirs.script_dir, stdin=self.stdin, stdout=self.stdout,
                        stderr=self.stderr, cancel=cancel, filename=tree.name)
        status = runner.run(tree)
        if runner.exited and status != 0:
            raise ScriptError(status, tree.name or "script")
        return Decoder(self.info, runner, self.override_opts)

    # ----------------------------
    # helpers
    # ----------------------------
    def directories(self, name: str, script: str) -> Directories:
        base = os.path.join(self.pkgs_dir, name)
        return Directories(
            base_dir=base,
            src_dir=os.path.join(base, "src"),
            pkg_dir=os.path.join(base, "pkg"),
            script_dir=os.path.dirname(script),
        )

    def package_arch(self, spec: RecipeSpec) -> str:
        if "all" in spec.architectures:
            return "all"
        return cpu.package_arch(self.info.arch, self.info.arm_variant)

    def file_name_info(self, spec: RecipeSpec) -> PackageInfo:
        return PackageInfo(name=spec.name, version=spec.version, release=spec.release,
                           epoch=spec.epoch, arch=self.package_arch(spec))

    def script_paths(self, pkgs: Sequence[Package]) -> List[str]:
        return [os.path.join(self.repo_dir, p.repository, p.name, self.recipe_name) for p in pkgs]

    def prepare_dirs(self, dirs: Directories):
        shutil.rmtree(dirs.base_dir, ignore_errors=True)
        os.makedirs(dirs.src_dir, mode=0o755)
        os.makedirs(dirs.pkg_dir, mode=0o755)

    def perform_checks(self, spec: RecipeSpec, installed: Dict[str, str],
                       interactive: Optional[bool] = None):
        if not cpu.is_compatible(self.info.arch, self.info.arm_variant, spec.architectures):
            arch = cpu.package_arch(self.info.arch, self.info.arm_variant)
            cont = self.prompter.yes_no(
                "Your system's CPU architecture doesn't match this package. Do you want to build anyway?", True,
                interactive)
            if not cont:
                raise ArchitectureMismatchError(arch, spec.architectures)
            logger.warning("building %s for unsupported architecture %s", spec.name, arch)
        if spec.name in installed:
            logger.warning("%s", AlreadyInstalledWarning(
                f"This package is already installed: {spec.name} {installed[spec.name]}"))

    # ----------------------------
    # dependencies
    # ----------------------------
    def install_pkgs(self, pkgs: Sequence[Package], native: Sequence[str], opts: BuildOpts,
                     built: Dict[str, Optional[BuildResult]]) -> None:
        """Install native packages through the manager, build and install index packages."""
        if native:
            opts.manager.install(list(native))
        for script in self.script_paths(pkgs):
            res = self.build(replace(opts, script=script), built)
            opts.manager.install_local(res.paths)

    def install_build_deps(self, spec: RecipeSpec, opts: BuildOpts, installed: Dict[str, str],
                           built: Dict[str, Optional[BuildResult]]) -> List[str]:
        if not spec.build_depends:
            return []
        res = self.index.find_pkgs(spec.build_depends)
        found = remove_already_installed(res.found, installed)
        native = [n for n in res.not_found if n not in installed]
        logger.info("Installing build dependencies")
        flattened = self.prompter.flatten_pkgs(found, "install", opts.interactive)
        self.install_pkgs(flattened, native, opts, built)
        return remove_duplicates([p.name for p in flattened] + native)

    def install_opt_deps(self, spec: RecipeSpec, opts: BuildOpts, installed: Dict[str, str],
                         built: Dict[str, Optional[BuildResult]]) -> None:
        if not spec.opt_depends:
            return
        chosen = self.prompter.choose_opt_depends(spec.opt_depends, "install", opts.interactive)
        if not chosen:
            return
        res = self.index.find_pkgs(chosen)
        found = remove_already_installed(res.found, installed)
        flattened = self.prompter.flatten_pkgs(found, "install", opts.interactive)
        self.install_pkgs(flattened, res.not_found, opts, built)

    def build_deps(self, spec: RecipeSpec, opts: BuildOpts, built: Dict[str, Optional[BuildResult]]):
        """Build runtime deps found in the index. Returns (paths, names, native deps)."""
        paths: List[str] = []
        names: List[str] = []
        if not spec.depends:
            return paths, names, []
        logger.info("Installing dependencies")
        res = self.index.find_pkgs(spec.depends)
        pkgs = self.prompter.flatten_pkgs(res.found, "install", opts.interactive)
        for script in self.script_paths(pkgs):
            _check_cancel(opts.cancel, spec.name)
            sub = self.build(replace(opts, script=script), built)
            paths.extend(sub.paths)
            names.extend(sub.names)
            names.append(os.path.basename(os.path.dirname(script)))
        return remove_duplicates(paths), remove_duplicates(names), remove_duplicates(res.not_found)

    # ----------------------------
    # sources & lifecycle
    # ----------------------------
    def get_sources(self, spec: RecipeSpec, dirs: Directories, cancel=None):
        for i, src in enumerate(spec.sources):
            self.fetcher.fetch(FetchOptions(
                url=src,
                destination=dirs.src_dir,
                label=f"{spec.name}[{i}]",
                checksum=spec.checksums[i],
                script_dir=dirs.script_dir,
                cancel=cancel,
            ))

    def execute_functions(self, dec: Decoder, spec: RecipeSpec, dirs: Directories, cancel=None):
        version = dec.get_func("version")
        if version is not None:
            logger.info("Executing version()")
            buf = io.StringIO()
            version(dir=dirs.src_dir, stdout=buf, cancel=cancel)
            new = buf.getvalue().strip()
            dec.set_version(spec, new)
            logger.info("Updating version to %s", new)

        for fname in ("prepare", "build"):
            fn = dec.get_func(fname)
            if fn is not None:
                logger.info("Executing %s()", fname)
                fn(dir=dirs.src_dir, cancel=cancel)

        package = dec.get_func("package")
        if package is None:
            raise MissingPackageFunctionError(spec.name)
        logger.info("Executing package()")
        package(dir=dirs.src_dir, cancel=cancel)

    def build_pkg_metadata(self, spec: RecipeSpec, dirs: Directories, fmt: str, deps: List[str]) -> PackageInfo:
        info = PackageInfo(
            name=spec.name,
            version=spec.version,
            release=spec.release,
            epoch=spec.epoch,
            arch=self.package_arch(spec),
            description=spec.description,
            homepage=spec.homepage,
            maintainer=spec.maintainer,
            license=", ".join(spec.licenses),
            depends=list(deps),
            conflicts=list(spec.conflicts),
            replaces=list(spec.replaces),
            provides=list(spec.provides),
        )
        if fmt == "apk":
            # apk refuses packages that provide themselves
            info.provides = [p for p in info.provides if p != spec.name]
        for hook in _SCRIPT_HOOKS:
            value = getattr(spec.scripts, hook)
            if value:
                info.scripts[hook] = os.path.join(dirs.script_dir, value)
        info.contents = build_contents(dirs.pkg_dir, spec.backup)
        return info

    def remove_build_deps(self, build_deps: List[str], opts: BuildOpts):
        if not build_deps:
            return
        if self.prompter.yes_no("Would you like to remove the build dependencies?", False, opts.interactive):
            opts.manager.remove(build_deps)

    # ----------------------------
    # entry point
    # ----------------------------
    def build(self, opts: BuildOpts, built: Optional[Dict[str, Optional[BuildResult]]] = None) -> BuildResult:
        """
        Build the recipe at opts.script. `built` maps recipe paths already
        handled in this invocation tree to their results, or to None while
        they are still building; reaching such a recipe again raises
        DependencyCycleError.
        """
        if built is None:
            built = {}
        script = os.path.abspath(opts.script)
        if script in built:
            if built[script] is None:
                raise DependencyCycleError(_cycle(built, script))
            logger.debug("already built in this run: %s", script)
            return built[script]
        _check_cancel(opts.cancel, script)

        tree = self.parse(script)
        spec = self.first_pass(tree, script, opts.cancel)
        if len(spec.sources) != len(spec.checksums):
            raise SourcesMismatchError(spec.name, len(spec.sources), len(spec.checksums))

        dirs = self.directories(spec.name, script)
        fmt = pkg_format(opts.manager.format)
        packager = self.packager_factory(fmt)

        if not opts.clean:
            cached = os.path.join(dirs.base_dir, packager.conventional_file_name(self.file_name_info(spec)))
            if os.path.exists(cached):
                logger.info("Using previously built package %s", cached)
                result = BuildResult([cached], [spec.name])
                built[script] = result
                return result

        # None marks a build in progress until its result replaces it
        built[script] = None
        try:
            result = self._build(opts, built, script, tree, spec, dirs, fmt, packager)
        except BaseException:
            built.pop(script, None)
            raise
        built[script] = result
        return result

    def _build(self, opts: BuildOpts, built: Dict[str, Optional[BuildResult]], script: str,
               tree: shparse.File, spec: RecipeSpec, dirs: Directories, fmt: str,
               packager: Packager) -> BuildResult:
        self.prompter.view_script(script, spec.name, opts.interactive)
        logger.info("Building package %s %s", spec.name, spec.version)

        dec = self.second_pass(tree, dirs, opts.cancel)
        if dec.get_func("package") is None:
            raise MissingPackageFunctionError(spec.name)

        installed = opts.manager.list_installed()
        self.perform_checks(spec, installed, opts.interactive)
        self.prepare_dirs(dirs)

        build_deps = self.install_build_deps(spec, opts, installed, built)
        self.install_opt_deps(spec, opts, installed, built)
        dep_paths, dep_names, repo_deps = self.build_deps(spec, opts, built)

        _check_cancel(opts.cancel, spec.name)
        logger.info("Downloading sources")
        self.get_sources(spec, dirs, opts.cancel)

        self.execute_functions(dec, spec, dirs, opts.cancel)

        logger.info("Building package metadata for %s", spec.name)
        info = self.build_pkg_metadata(spec, dirs, fmt, repo_deps + dep_names)
        pkg_path = os.path.join(dirs.base_dir, packager.conventional_file_name(info))
        logger.info("Compressing package %s", os.path.basename(pkg_path))
        try:
            with open(pkg_path, "wb") as f:
                packager.package(info, f)
        except BaseException:
            if os.path.exists(pkg_path):
                os.remove(pkg_path)
            raise

        self.remove_build_deps(build_deps, opts)

        result = BuildResult(remove_duplicates(dep_paths + [pkg_path]),
                             remove_duplicates(dep_names + [spec.name]))
        return result


def get_builder(interactive: bool = True, cfg=None) -> Builder:
    """Builder wired to the configured index, fetcher and paths."""
    from .config import get_config, get_paths
    from .db import get_default_db
    from .fetcher import get_fetcher

    cfg = cfg or get_config()
    paths = get_paths(cfg)
    langs = cfg.get("overrides.languages")
    opts = OverrideOpts(
        overrides=bool(cfg.get("overrides.enabled", True)),
        like_distros=bool(cfg.get("overrides.like_distros", True)),
        languages=tuple(langs) if langs else None,
    )
    return Builder(
        index=get_default_db(),
        fetcher=get_fetcher(),
        prompter=Prompter(interactive=interactive, pager_style=cfg.get("build.pager_style", "native")),
        pkgs_dir=paths.pkgs_dir,
        repo_dir=paths.repo_dir,
        override_opts=opts,
        recipe_name=cfg.get("build.recipe_name", "rbuild.sh"),
        fakeroot=bool(cfg.get("sandbox.fakeroot", True)),
        kill_timeout=float(cfg.get("sandbox.kill_timeout", 2.0)),
    )
