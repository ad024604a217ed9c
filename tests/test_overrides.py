"""Tests for rbuild.overrides."""

from __future__ import annotations

from rbuild import overrides
from rbuild.db import Package
from rbuild.distro import DistroContext
from rbuild.overrides import OverrideOpts, base_language, resolve, resolve_package, resolve_value

CENTOS = DistroContext(id="centos", like=("rhel", "fedora"), arch="amd64", language="en_US.UTF-8")


def test_resolve_full_candidate_list() -> None:
    names = resolve(CENTOS, OverrideOpts(name=""))

    assert names == [
        "amd64_centos_en", "centos_en", "amd64_rhel_en", "rhel_en", "amd64_fedora_en", "fedora_en",
        "amd64_en", "amd64_centos", "centos", "amd64_rhel", "rhel", "amd64_fedora", "fedora",
        "amd64", "",
    ]


def test_resolve_prefixes_and_ends_with_base_name() -> None:
    names = resolve(CENTOS, OverrideOpts(name="deps", languages=()))

    assert names[0] == "deps_amd64_centos"
    assert names[-1] == "deps"
    assert all(n.startswith("deps") for n in names)


def test_resolve_without_like_distros() -> None:
    names = resolve(CENTOS, OverrideOpts(name="build", like_distros=False, languages=()))

    assert names == ["build_amd64_centos", "build_centos", "build_amd64", "build"]


def test_resolve_disabled_returns_only_base_name() -> None:
    assert resolve(CENTOS, OverrideOpts(name="deps", overrides=False)) == ["deps"]


def test_resolve_arm_tries_variant_before_plain_arm() -> None:
    info = DistroContext(id="debian", arch="arm", arm_variant="arm7")

    names = resolve(info, OverrideOpts(name="deps", languages=()))

    assert names == ["deps_arm7_debian", "deps_arm_debian", "deps_debian", "deps_arm7", "deps_arm", "deps"]


def test_resolve_replaces_dashes_in_distro_ids() -> None:
    info = DistroContext(id="opensuse-leap", arch="amd64")

    names = resolve(info, OverrideOpts(name="deps", languages=()))

    assert "deps_opensuse_leap" in names
    assert not any("-" in n for n in names)


def test_explicit_languages_are_deduplicated_and_sorted() -> None:
    info = DistroContext(id="arch", arch="amd64")

    names = resolve(info, OverrideOpts(name="desc", like_distros=False, languages=["fr_FR", "de", "fr-CA", "C"]))

    assert names[:3] == ["desc_amd64_arch_de", "desc_arch_de", "desc_amd64_de"]
    assert "desc_arch_fr" in names
    assert not any(n.endswith("_c") for n in names)


def test_base_language() -> None:
    assert base_language("en_US.UTF-8") == "en"
    assert base_language("pt-BR") == "pt"
    assert base_language("de@euro") == "de"
    assert base_language("") == ""


def test_opts_builders_return_copies() -> None:
    opts = overrides.DEFAULT_OPTS.with_name("x").with_like_distros(False).with_languages(["en"])

    assert opts.name == "x"
    assert opts.like_distros is False
    assert opts.languages == ("en",)
    assert overrides.DEFAULT_OPTS.name == ""


def test_resolve_value_picks_first_present() -> None:
    values = {"": ["base"], "fedora": ["rpm"], "amd64": ["x86"]}
    names = resolve(CENTOS, OverrideOpts(name="", languages=()))

    assert resolve_value(values, names) == ["rpm"]
    assert resolve_value({}, names, default="none") == "none"


def test_resolve_package_collapses_override_maps() -> None:
    pkg = Package(name="foo", repository="main", version="1.0", release=1,
                  description={"": "generic", "rhel": "for rhel"},
                  depends={"": ["a"], "amd64": ["b"]})
    names = resolve(CENTOS, OverrideOpts(name="", languages=()))

    res = resolve_package(pkg, names)

    assert res.description == "for rhel"
    assert res.depends == ["b"]
    assert res.build_depends == []
    assert res.homepage == ""
