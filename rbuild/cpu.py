# rbuild/cpu.py
"""
Host architecture detection.

Architectures use the short names recipes are written against
(amd64, 386, arm64, arm, riscv64, ...). ARM hosts additionally report a
revision variant (arm5/arm6/arm7) which is tried before plain "arm".
"""

from __future__ import annotations
import os
import platform
from pathlib import Path
from typing import Iterable, List, Optional

_MACHINE_MAP = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "i386": "386",
    "i486": "386",
    "i586": "386",
    "i686": "386",
    "x86": "386",
    "aarch64": "arm64",
    "arm64": "arm64",
    "riscv64": "riscv64",
    "ppc64": "ppc64",
    "ppc64le": "ppc64le",
    "s390x": "s390x",
    "mips": "mips",
    "mipsel": "mipsle",
    "mips64": "mips64",
    "mips64el": "mips64le",
    "loongarch64": "loong64",
}

CPUINFO_PATH = "/proc/cpuinfo"


def arch(machine: Optional[str] = None) -> str:
    """Return the host architecture name. RBUILD_ARCH overrides detection."""
    env = os.environ.get("RBUILD_ARCH")
    if env:
        return env
    m = (machine or platform.machine() or "").lower()
    if m in _MACHINE_MAP:
        return _MACHINE_MAP[m]
    if m.startswith("arm"):
        return "arm"
    return m


def _cpu_features(path: str = CPUINFO_PATH) -> List[str]:
    try:
        txt = Path(path).read_text(encoding="utf-8", errors="replace")
    except OSError:
        return []
    for line in txt.splitlines():
        key, _, val = line.partition(":")
        if key.strip().lower() == "features":
            return val.split()
    return []


def arm_variant(cpuinfo: str = CPUINFO_PATH) -> str:
    env = os.environ.get("RBUILD_ARM_VARIANT", "")
    if env.startswith("arm"):
        return env
    feats = _cpu_features(cpuinfo)
    if "vfpv3" in feats:
        return "arm7"
    if "vfp" in feats:
        return "arm6"
    return "arm5"


def compatible_arches(arch_name: str, variant: str = "") -> List[str]:
    """Most specific first. Only ARM has more than one entry."""
    if arch_name == "arm" or arch_name.startswith("arm") and arch_name != "arm64":
        v = variant or (arch_name if arch_name != "arm" else "arm5")
        return [v, "arm"]
    return [arch_name]


def package_arch(arch_name: str, variant: str = "") -> str:
    """Architecture written into artifacts: ARM hosts use their variant."""
    return compatible_arches(arch_name, variant)[0]


def is_compatible(arch_name: str, variant: str, supported: Iterable[str]) -> bool:
    supported = list(supported)
    if not supported or "all" in supported:
        return True
    return any(a in supported for a in compatible_arches(arch_name, variant))
