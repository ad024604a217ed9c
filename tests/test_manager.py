"""Tests for rbuild.manager."""

from __future__ import annotations

import subprocess
from typing import List

import pytest

from rbuild import manager as manager_mod
from rbuild.errors import ManagerError
from rbuild.manager import APK, APT, DNF, Pacman, Zypper


class RecordingRun:
    """Stands in for subprocess.run; records argv and returns a fixed code."""

    def __init__(self, returncode: int = 0) -> None:
        self.returncode = returncode
        self.calls: List[List[str]] = []

    def __call__(self, cmd, *args, **kwargs):
        self.calls.append(list(cmd))
        return subprocess.CompletedProcess(cmd, self.returncode)


@pytest.fixture
def run(monkeypatch: pytest.MonkeyPatch) -> RecordingRun:
    rec = RecordingRun()
    monkeypatch.setattr(manager_mod.subprocess, "run", rec)
    monkeypatch.setattr(manager_mod.os, "geteuid", lambda: 1000)
    return rec


def fake_capture(monkeypatch: pytest.MonkeyPatch, stdout: str, rc: int = 0) -> List[List[str]]:
    seen: List[List[str]] = []

    def _run(cmd, env=None, timeout=None):
        seen.append(cmd)
        return rc, stdout, "boom" if rc else ""

    monkeypatch.setattr(manager_mod, "_safe_run", _run)
    return seen


def test_pacman_commands_use_root_cmd(run: RecordingRun) -> None:
    mgr = Pacman(root_cmd="doas")

    mgr.install(["a", "b"])
    mgr.install_local(["x.pkg.tar.zst"])
    mgr.remove(["a"])
    mgr.install([])

    assert run.calls[0] == ["doas", "pacman", "--noconfirm", "-S", "--needed", "a", "b"]
    assert run.calls[1][:4] == ["doas", "pacman", "--noconfirm", "-U"]
    assert run.calls[1][4].endswith("/x.pkg.tar.zst")
    assert run.calls[2] == ["doas", "pacman", "--noconfirm", "-R", "a"]
    assert len(run.calls) == 3


def test_apt_adds_yes_only_when_noconfirm(run: RecordingRun) -> None:
    APT(noconfirm=False).install(["a"])
    APT(noconfirm=True).upgrade(["a"])

    assert run.calls[0] == ["sudo", "apt", "install", "a"]
    assert run.calls[1] == ["sudo", "apt", "install", "--only-upgrade", "-y", "a"]


def test_no_root_cmd_when_already_root(run: RecordingRun, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(manager_mod.os, "geteuid", lambda: 0)

    DNF().sync()

    assert run.calls == [["dnf", "makecache"]]


def test_failed_command_raises(run: RecordingRun) -> None:
    run.returncode = 100

    with pytest.raises(ManagerError) as exc:
        Zypper().remove(["a"])
    assert exc.value.rc == 100


def test_pacman_list_installed(monkeypatch: pytest.MonkeyPatch) -> None:
    fake_capture(monkeypatch, "bash 5.2.026-2\nglibc 2.39-1\n")

    assert Pacman().list_installed() == {"bash": "5.2.026-2", "glibc": "2.39-1"}


def test_apt_and_rpm_list_installed(monkeypatch: pytest.MonkeyPatch) -> None:
    sep = manager_mod._SEP
    seen = fake_capture(monkeypatch, f"bash{sep}5.2-1\nlibc6{sep}2.36-9\n")

    assert APT().list_installed() == {"bash": "5.2-1", "libc6": "2.36-9"}
    assert DNF().list_installed() == {"bash": "5.2-1", "libc6": "2.36-9"}
    assert seen[0][0] == "dpkg-query"
    assert seen[1][0] == "rpm"


def test_apk_list_installed(monkeypatch: pytest.MonkeyPatch) -> None:
    fake_capture(monkeypatch, "musl-1.2.4-r2 x86_64 {musl} (MIT) [installed]\n"
                              "py3-foo-bar-0.1_rc1-r0 noarch {py3-foo-bar} (MIT) [installed]\n")

    assert APK().list_installed() == {"musl": "1.2.4-r2", "py3-foo-bar": "0.1_rc1-r0"}


def test_list_installed_failure_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    fake_capture(monkeypatch, "", rc=1)

    with pytest.raises(ManagerError):
        Pacman().list_installed()


def test_get_detect_and_names(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(manager_mod.shutil, "which", lambda name: "/usr/bin/apk" if name == "apk" else None)

    assert isinstance(manager_mod.get("zypper"), Zypper)
    assert manager_mod.get("nope") is None
    assert isinstance(manager_mod.detect(), APK)
    assert "pacman" in manager_mod.names()


def test_safe_run_reports_missing_binary() -> None:
    rc, out, err = manager_mod._safe_run(["/nonexistent/definitely-not-here"])

    assert rc == 127
    assert out == ""
