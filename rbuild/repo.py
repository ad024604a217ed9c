# rbuild/repo.py
"""
Populate the package index from a directory of recipes.

A repository is a directory with one sub-directory per package, each
holding a recipe file. Recipes are evaluated with nop handlers and an
empty environment; override variants of the override-capable fields
are stored as maps keyed by their suffix.
"""

from __future__ import annotations
import io
import os
from pathlib import Path
from typing import Dict, List

from . import shparse
from .db import DB, Package
from .decoder import Decoder
from .distro import DistroContext
from .handlers import nop_handlers
from .logging import get_logger
from .overrides import OverrideOpts
from .shinterp import Runner

logger = get_logger("repo")

# recipe variable prefix -> Package field
OVERRIDABLE = {
    "desc": "description",
    "homepage": "homepage",
    "maintainer": "maintainer",
    "deps": "depends",
    "build_deps": "build_depends",
    "opt_deps": "opt_depends",
}

_STR_FIELDS = ("description", "homepage", "maintainer")


def _override_maps(runner: Runner) -> Dict[str, dict]:
    maps: Dict[str, dict] = {f: {} for f in OVERRIDABLE.values()}
    for name, var in runner.vars.items():
        # longest prefix first so "build_deps_x" is not read as "build" + ...
        for prefix in sorted(OVERRIDABLE, key=len, reverse=True):
            if name != prefix and not name.startswith(prefix + "_"):
                continue
            suffix = name[len(prefix):].lstrip("_")
            target = OVERRIDABLE[prefix]
            if target in _STR_FIELDS:
                maps[target][suffix] = var.as_str()
            else:
                maps[target][suffix] = list(var.value) if var.kind == "indexed" else (
                    [var.as_str()] if var.as_str() else [])
            break
    return maps


def parse_recipe(path: str, repository: str) -> Package:
    """Evaluate one recipe without side effects and build its index record."""
    with open(path, encoding="utf-8") as f:
        tree = shparse.parse(f.read(), path)
    runner = Runner(handlers=nop_handlers(), env={}, dir=os.path.dirname(os.path.abspath(path)),
                    stdin=io.StringIO(), stdout=io.StringIO(), stderr=io.StringIO())
    runner.run(tree)

    dec = Decoder(DistroContext(), runner, OverrideOpts(overrides=False, like_distros=False))
    spec = dec.decode_vars()
    pkg = Package(
        name=spec.name,
        repository=repository,
        version=spec.version,
        release=spec.release,
        epoch=spec.epoch,
        architectures=spec.architectures,
        licenses=spec.licenses,
        provides=spec.provides,
        conflicts=spec.conflicts,
        replaces=spec.replaces,
    )
    for attr, values in _override_maps(runner).items():
        setattr(pkg, attr, values)
    return pkg


def index_directory(db: DB, root: str, repository: str, recipe_name: str = "rbuild.sh") -> List[Package]:
    """Index every <root>/<pkg>/<recipe_name>, replacing older records of the repository."""
    rootp = Path(root)
    if not rootp.is_dir():
        raise FileNotFoundError(root)
    pkgs: List[Package] = []
    for recipe in sorted(rootp.glob(f"*/{recipe_name}")):
        pkgs.append(parse_recipe(str(recipe), repository))
    db.delete_pkgs("repository = ?", (repository,))
    db.insert_many(pkgs)
    logger.info("indexed %d package(s) from %s as '%s'", len(pkgs), root, repository)
    return pkgs
