#!/usr/bin/env python3
# rbuild/cli.py
"""
rbuild CLI

Subcommands:
- build:   build the recipe at --script and copy the packages to the current directory
- install: build and install packages from the index (unknown names go to the native manager)
- upgrade: rebuild and install index packages newer than what is installed
- list:    show the index (optionally only installed packages)
- index:   (re)index a directory of recipes as a repository
- version: print the rbuild version
"""

from __future__ import annotations

import argparse
import logging
import os
import shutil
import signal
import sys
import threading
from contextlib import contextmanager
from typing import List, Optional

from rich.console import Console
from rich.table import Table

from . import __version__
from . import config as config_mod
from . import manager as manager_mod
from .build import BuildOpts, get_builder
from .db import get_default_db
from .errors import Cancelled, RbuildError, UserAbortError
from .logging import configure as configure_logging, get_logger, get_metrics, parse_and_log
from .repo import index_directory
from .upgrade import check_for_updates

logger = get_logger("cli")
console = Console()


# -----------------------
# Small pretty helpers
# -----------------------
def print_ok(msg: str):
    console.print(f"[bold green]✔[/] {msg}")


def print_warn(msg: str):
    console.print(f"[bold yellow]![/] {msg}")


def print_err(msg: str):
    console.print(f"[bold red]✖[/] {msg}")


def print_info(msg: str):
    console.print(f"[cyan]{msg}[/cyan]")


@contextmanager
def cancellable():
    """
    Yields an Event set by the first Ctrl-C; a second Ctrl-C interrupts
    immediately.
    """
    cancel = threading.Event()

    def handler(signum, frame):
        if cancel.is_set():
            raise KeyboardInterrupt
        cancel.set()
        print_warn("cancelling; press Ctrl-C again to abort immediately")

    if threading.current_thread() is not threading.main_thread():
        yield cancel
        return
    previous = signal.signal(signal.SIGINT, handler)
    try:
        yield cancel
    finally:
        signal.signal(signal.SIGINT, previous)


def _manager(args, cfg) -> manager_mod.Manager:
    root_cmd = cfg.get("build.root_cmd", manager_mod.DEFAULT_ROOT_CMD)
    noconfirm = not args.interactive
    if args.package_manager:
        mgr = manager_mod.get(args.package_manager, root_cmd, noconfirm)
        if mgr is None:
            raise RbuildError(f"unknown package manager '{args.package_manager}' "
                              f"(supported: {', '.join(manager_mod.names())})")
        return mgr
    mgr = manager_mod.detect(root_cmd, noconfirm)
    if mgr is None:
        raise RbuildError("unable to detect a supported package manager on the system")
    return mgr


# -----------------------
# Commands
# -----------------------
def cmd_build(args, cfg) -> int:
    mgr = _manager(args, cfg)
    builder = get_builder(args.interactive, cfg)
    script = args.script or os.path.join(os.getcwd(), builder.recipe_name)
    with cancellable() as cancel:
        res = builder.build(BuildOpts(script=script, manager=mgr, clean=args.clean,
                                      interactive=args.interactive, cancel=cancel))
    out_dir = os.path.abspath(args.output or os.getcwd())
    os.makedirs(out_dir, exist_ok=True)
    for path in res.paths:
        dst = os.path.join(out_dir, os.path.basename(path))
        if os.path.abspath(path) != dst:
            shutil.copy2(path, dst)
        parse_and_log("cli", logging.INFO, f"built {dst}")
        print_ok(f"Built {dst}")
    return 0


def cmd_install(args, cfg) -> int:
    if not args.packages:
        raise RbuildError("no packages given")
    mgr = _manager(args, cfg)
    builder = get_builder(args.interactive, cfg)
    res = builder.index.find_pkgs(args.packages)
    pkgs = builder.prompter.flatten_pkgs(res.found, "install", args.interactive)
    with cancellable() as cancel:
        opts = BuildOpts(script="", manager=mgr, clean=args.clean, interactive=args.interactive, cancel=cancel)
        builder.install_pkgs(pkgs, res.not_found, opts, {})
    print_ok(f"Installed {', '.join(args.packages)}")
    return 0


def cmd_upgrade(args, cfg) -> int:
    mgr = _manager(args, cfg)
    builder = get_builder(args.interactive, cfg)
    updates = check_for_updates(builder.index, mgr, builder.info,
                                cfg.get("build.ignore_pkg_updates", []), builder.override_opts)
    if not updates:
        print_info("There is nothing to do.")
        return 0
    table = Table(title="Upgrades")
    table.add_column("name")
    table.add_column("installed")
    table.add_column("available")
    for u in updates:
        table.add_row(u.name, u.from_version, u.to_version)
    console.print(table)
    res = builder.index.find_pkgs([u.name for u in updates])
    pkgs = builder.prompter.flatten_pkgs(res.found, "upgrade", args.interactive)
    with cancellable() as cancel:
        opts = BuildOpts(script="", manager=mgr, clean=args.clean, interactive=args.interactive, cancel=cancel)
        builder.install_pkgs(pkgs, [], opts, {})
    print_ok(f"Upgraded {len(pkgs)} package(s)")
    return 0


def cmd_list(args, cfg) -> int:
    db = get_default_db()
    pkgs = db.get_pkgs("1 ORDER BY repository, name")
    installed = {}
    if args.installed:
        installed = _manager(args, cfg).list_installed()
        pkgs = [p for p in pkgs if p.name in installed]
    table = Table()
    table.add_column("repository")
    table.add_column("name")
    table.add_column("version")
    if args.installed:
        table.add_column("installed")
    for p in pkgs:
        row = [p.repository, p.name, p.full_version]
        if args.installed:
            row.append(installed[p.name])
        table.add_row(*row)
    console.print(table)
    return 0


def cmd_index(args, cfg) -> int:
    """Link DIR into the repository directory as REPO and index its recipes."""
    paths = config_mod.get_paths(cfg)
    directory = os.path.abspath(args.directory)
    repo = args.repository or os.path.basename(directory)
    link = os.path.join(paths.repo_dir, repo)
    if os.path.realpath(link) != os.path.realpath(directory):
        if os.path.lexists(link):
            if not os.path.islink(link):
                raise RbuildError(f"{link} already exists and is not a link")
            os.remove(link)
        os.makedirs(paths.repo_dir, exist_ok=True)
        os.symlink(directory, link)
    pkgs = index_directory(get_default_db(), link, repo, cfg.get("build.recipe_name", "rbuild.sh"))
    print_ok(f"Indexed {len(pkgs)} package(s) as '{repo}'")
    return 0


def cmd_version(args, cfg) -> int:
    console.print(__version__)
    return 0


# -----------------------
# Argparse wiring
# -----------------------
def make_parser():
    ap = argparse.ArgumentParser(prog="rbuild", description="Build distribution packages from shell recipes")
    ap.add_argument("--config", help="config file (YAML or JSON)")
    ap.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    ap.add_argument("-P", "--package-manager", help="native package manager to use")
    ap.add_argument("--interactive", dest="interactive", action="store_true", default=True,
                    help="ask questions (default)")
    ap.add_argument("--noninteractive", dest="interactive", action="store_false",
                    help="never ask; use the documented defaults")
    sub = ap.add_subparsers(dest="cmd")

    p_build = sub.add_parser("build", help="build a local recipe")
    p_build.add_argument("-s", "--script", help="path to the recipe (default: build.recipe_name in cwd)")
    p_build.add_argument("-c", "--clean", action="store_true", help="rebuild even if a package exists")
    p_build.add_argument("-o", "--output", help="directory to copy packages into (default: cwd)")

    p_install = sub.add_parser("install", help="build and install packages from the index")
    p_install.add_argument("packages", nargs="*")
    p_install.add_argument("-c", "--clean", action="store_true")

    p_upgrade = sub.add_parser("upgrade", help="upgrade installed index packages")
    p_upgrade.add_argument("-c", "--clean", action="store_true")

    p_list = sub.add_parser("list", help="list indexed packages")
    p_list.add_argument("-i", "--installed", action="store_true", help="only installed packages")

    p_index = sub.add_parser("index", help="index a directory of recipes")
    p_index.add_argument("directory")
    p_index.add_argument("-r", "--repository", help="repository name (default: directory name)")

    sub.add_parser("version", help="print the version")
    return ap


COMMANDS = {
    "build": cmd_build,
    "install": cmd_install,
    "upgrade": cmd_upgrade,
    "list": cmd_list,
    "index": cmd_index,
    "version": cmd_version,
}


def main(argv: Optional[List[str]] = None) -> int:
    argv = argv if argv is not None else sys.argv[1:]
    parser = make_parser()
    args = parser.parse_args(argv)
    if not args.cmd:
        parser.print_help()
        return 0

    try:
        cfg = config_mod.load(args.config, fatal=bool(args.config))
    except RbuildError as e:
        print_err(str(e))
        return 2
    log_cfg = dict(cfg.get("logging", {}) or {})
    if args.verbose:
        log_cfg["level"] = "DEBUG"
    configure_logging(log_cfg)

    if args.cmd in ("build", "install", "upgrade") and os.geteuid() == 0 \
            and not cfg.get("build.allow_run_as_root", False):
        print_err("rbuild should not be run as root")
        return 1

    try:
        rc = COMMANDS[args.cmd](args, cfg)
    except UserAbortError as e:
        print_info(str(e))
        return 1
    except (Cancelled, KeyboardInterrupt):
        print_warn("Cancelled")
        return 130
    except RbuildError as e:
        logger.debug("command failed", exc_info=True)
        cause = f" ({e.__cause__})" if e.__cause__ else ""
        print_err(f"Command failed: {e}{cause}")
        return 2
    except OSError as e:
        print_err(f"Command failed: {e}")
        return 2
    if args.verbose:
        m = get_metrics()
        logger.debug("log counts: %d warning(s), %d error(s)", m["WARNING"], m["ERROR"])
    return rc


if __name__ == "__main__":
    sys.exit(main())
