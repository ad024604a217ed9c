# rbuild/overrides.py
"""
Override name resolution.

A recipe can carry per-architecture, per-distribution and per-language
variants of any variable or function by suffixing its name, e.g.
`deps_arm64_fedora` or `build_debian`. `resolve()` produces the names to
probe for one base name, most specific first and the bare name last.
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace, fields
from typing import Any, Dict, List, Optional, Sequence, TYPE_CHECKING

from . import cpu

if TYPE_CHECKING:
    from .distro import DistroContext


@dataclass(frozen=True)
class OverrideOpts:
    name: str = ""
    overrides: bool = True
    like_distros: bool = True
    # None means "use the context's language tag"
    languages: Optional[Sequence[str]] = None

    def with_name(self, name: str) -> "OverrideOpts":
        return replace(self, name=name)

    def with_overrides(self, enabled: bool) -> "OverrideOpts":
        return replace(self, overrides=enabled)

    def with_like_distros(self, enabled: bool) -> "OverrideOpts":
        return replace(self, like_distros=enabled)

    def with_languages(self, langs: Sequence[str]) -> "OverrideOpts":
        return replace(self, languages=tuple(langs))


DEFAULT_OPTS = OverrideOpts()


def base_language(tag: str) -> str:
    """'en_US.UTF-8' -> 'en', 'en-GB' -> 'en'."""
    tag = (tag or "").split(".", 1)[0].split("@", 1)[0]
    for sep in ("_", "-"):
        tag = tag.split(sep, 1)[0]
    return tag.lower()


def _parse_langs(langs: Sequence[str]) -> List[str]:
    out = {base_language(l) for l in langs if l}
    out.discard("")
    out.discard("c")
    out.discard("posix")
    return sorted(out)


def _arches(info: "DistroContext") -> List[str]:
    return cpu.compatible_arches(info.arch, info.arm_variant)


def resolve(info: "DistroContext", opts: Optional[OverrideOpts] = None) -> List[str]:
    """Return candidate override names for opts.name, most specific first."""
    opts = opts or DEFAULT_OPTS
    if not opts.overrides:
        return [opts.name]

    if opts.languages is None:
        langs = _parse_langs([info.language] if info.language else [])
    else:
        langs = _parse_langs(opts.languages)

    arches = _arches(info)
    distros = [info.id]
    if opts.like_distros:
        distros.extend(info.like)

    n = opts.name
    out: List[str] = []
    for lang in langs:
        for distro in distros:
            for a in arches:
                out.append(f"{n}_{a}_{distro}_{lang}")
            out.append(f"{n}_{distro}_{lang}")
        for a in arches:
            out.append(f"{n}_{a}_{lang}")

    for distro in distros:
        for a in arches:
            out.append(f"{n}_{a}_{distro}")
        out.append(f"{n}_{distro}")

    for a in arches:
        out.append(f"{n}_{a}")
    out.append(n)

    result = []
    for item in out:
        item = item.replace("-", "_")
        if item.startswith("_"):
            item = item[1:]
        result.append(item)
    return result


def resolve_value(values: Dict[str, Any], names: Sequence[str], default: Any = None) -> Any:
    """Value for the first override key present in an override map."""
    for name in names:
        if name in values:
            return values[name]
    return default


def resolve_package(pkg, names: Sequence[str]):
    """
    Collapse every override map field of an index record (see db.Package)
    to the value picked by `names`, returning a ResolvedPackage.
    """
    from .db import ResolvedPackage

    data = {}
    for f in fields(ResolvedPackage):
        val = getattr(pkg, f.name)
        if isinstance(val, dict):
            empty: Any = [] if f.name in ResolvedPackage.LIST_FIELDS else ""
            val = resolve_value(val, names, empty)
        data[f.name] = val
    return ResolvedPackage(**data)
