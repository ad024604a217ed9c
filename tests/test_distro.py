"""Tests for rbuild.distro and rbuild.cpu."""

from __future__ import annotations

from pathlib import Path

import pytest

from rbuild import cpu
from rbuild.distro import DistroContext, context_from_os_release, parse_os_release, script_env

OS_RELEASE = """\
NAME="Fedora Linux"
VERSION_ID=39
ID=fedora
ID_LIKE="rhel centos"
PRETTY_NAME="Fedora Linux 39 ($(rm -rf /) Edition)"
"""


def test_parse_os_release_evaluates_without_side_effects() -> None:
    values = parse_os_release(OS_RELEASE)

    assert values["ID"] == "fedora"
    assert values["VERSION_ID"] == "39"
    assert values["PRETTY_NAME"] == "Fedora Linux 39 ( Edition)"


def test_context_from_os_release() -> None:
    info = context_from_os_release(parse_os_release(OS_RELEASE), arch="amd64", language="en_US.UTF-8")

    assert info.id == "fedora"
    assert info.like == ("rhel", "centos")
    assert info.name == "Fedora Linux"
    assert info.arm_variant == ""
    assert info.language == "en_US.UTF-8"


def test_env_overrides_distro(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RBUILD_DISTRO", "arch")
    monkeypatch.setenv("RBUILD_DISTRO_LIKE", "")

    info = context_from_os_release({"ID": "fedora", "ID_LIKE": "rhel"}, arch="amd64", language="")

    assert info.id == "arch"
    assert info.like == ()


def test_script_env_exposes_context_and_dirs() -> None:
    info = DistroContext(id="debian", like=("ubuntu",), name="Debian", version_id="12", arch="arm",
                         arm_variant="arm7")

    env = script_env(info, scriptdir="/r", pkgdir="/p")

    assert env["DISTRO_ID"] == "debian"
    assert env["DISTRO_ID_LIKE"] == "ubuntu"
    assert env["ARCH"] == "arm7"
    assert env["scriptdir"] == "/r"
    assert env["pkgdir"] == "/p"
    assert "srcdir" not in env
    assert int(env["NCPU"]) >= 1


@pytest.mark.parametrize("machine,expected", [
    ("x86_64", "amd64"), ("i686", "386"), ("aarch64", "arm64"), ("armv7l", "arm"), ("arm64", "arm64"), ("riscv64", "riscv64"),
])
def test_cpu_arch_mapping(machine: str, expected: str) -> None:
    assert cpu.arch(machine) == expected


def test_cpu_arch_env_override(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RBUILD_ARCH", "riscv64")

    assert cpu.arch("x86_64") == "riscv64"


def test_arm_variant_from_cpuinfo(tmp_path: Path) -> None:
    cpuinfo = tmp_path / "cpuinfo"
    cpuinfo.write_text("processor : 0\nFeatures : half thumb fastmult vfp edsp neon vfpv3\n", encoding="utf-8")

    assert cpu.arm_variant(str(cpuinfo)) == "arm7"
    assert cpu.arm_variant(str(tmp_path / "missing")) == "arm5"


def test_is_compatible() -> None:
    assert cpu.is_compatible("amd64", "", ["amd64"])
    assert cpu.is_compatible("arm64", "", ["all"])
    assert cpu.is_compatible("arm", "arm6", ["arm"])
    assert not cpu.is_compatible("arm", "arm6", ["arm7"])
    assert not cpu.is_compatible("amd64", "", ["arm64"])
    assert cpu.compatible_arches("arm64") == ["arm64"]
