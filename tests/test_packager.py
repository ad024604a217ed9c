"""Tests for rbuild.packager: file names, nfpm configs, contents and the tar backend."""

from __future__ import annotations

import io
import os
import tarfile
from pathlib import Path

import pytest

from rbuild.errors import PackagerError
from rbuild.packager import (Content, NfpmPackager, PackageInfo, TarPackager, build_contents, get_packager,
                             pkg_format)


def info(**kw) -> PackageInfo:
    base = dict(name="hello", version="1.2", release=3, arch="amd64", description="greets")
    base.update(kw)
    return PackageInfo(**base)


def test_conventional_file_names() -> None:
    assert NfpmPackager("deb").conventional_file_name(info()) == "hello_1.2-3_amd64.deb"
    assert NfpmPackager("deb").conventional_file_name(info(epoch=2, arch="arm7")) == "hello_2:1.2-3_armhf.deb"
    assert NfpmPackager("rpm").conventional_file_name(info(version="1.2-rc1")) == "hello-1.2_rc1-3.x86_64.rpm"
    assert NfpmPackager("apk").conventional_file_name(info(arch="arm64")) == "hello_1.2-r3_aarch64.apk"
    assert NfpmPackager("archlinux").conventional_file_name(info(arch="all")) == "hello-1.2-3-any.pkg.tar.zst"
    assert TarPackager().conventional_file_name(info(epoch=1)) == "hello-1:1.2-3-amd64.tar.gz"


def test_unknown_format_is_rejected() -> None:
    with pytest.raises(PackagerError):
        NfpmPackager("msi")
    with pytest.raises(PackagerError):
        get_packager("msi")


def test_nfpm_config_routes_scripts_by_hook() -> None:
    cfg = NfpmPackager("rpm").config(info(
        epoch=1,
        depends=["libc"],
        scripts={"postinstall": "/tmp/post.sh", "postupgrade": "/tmp/up.sh", "pretrans": "/tmp/pt.sh",
                 "preremove": ""},
    ))

    assert cfg["name"] == "hello"
    assert cfg["release"] == "3"
    assert cfg["epoch"] == "1"
    assert cfg["depends"] == ["libc"]
    assert cfg["scripts"] == {"postinstall": "/tmp/post.sh"}
    assert cfg["apk"] == {"scripts": {"postupgrade": "/tmp/up.sh"}}
    assert cfg["archlinux"] == {"scripts": {"postupgrade": "/tmp/up.sh"}}
    assert cfg["rpm"] == {"scripts": {"pretrans": "/tmp/pt.sh"}}


def test_build_contents(tmp_path: Path) -> None:
    pkgdir = tmp_path / "pkg"
    (pkgdir / "etc").mkdir(parents=True)
    (pkgdir / "etc" / "hello.conf").write_text("x=1\n", encoding="utf-8")
    (pkgdir / "usr" / "bin").mkdir(parents=True)
    (pkgdir / "usr" / "bin" / "hello").write_text("#!/bin/sh\n", encoding="utf-8")
    os.chmod(pkgdir / "usr" / "bin" / "hello", 0o755)
    os.symlink("hello", pkgdir / "usr" / "bin" / "hi")
    (pkgdir / "var" / "empty").mkdir(parents=True)

    contents = {c.destination: c for c in build_contents(str(pkgdir), backup=["/etc/hello.conf"])}

    assert set(contents) == {"/etc/hello.conf", "/usr/bin/hello", "/usr/bin/hi", "/var/empty"}
    assert contents["/etc/hello.conf"].type == "config|noreplace"
    assert contents["/usr/bin/hello"].type == "file"
    assert contents["/usr/bin/hello"].mode == 0o755
    assert contents["/usr/bin/hi"].type == "symlink"
    assert contents["/usr/bin/hi"].source == "hello"
    assert contents["/var/empty"].type == "dir"


def test_nfpm_config_contents() -> None:
    cfg = NfpmPackager("deb").config(info(contents=[
        Content("/build/pkg/usr/bin/hello", "/usr/bin/hello", "file", 0o755),
        Content("", "/var/empty", "dir", 0o755),
    ]))

    file_entry, dir_entry = cfg["contents"]
    assert file_entry["src"] == "/build/pkg/usr/bin/hello"
    assert "type" not in file_entry
    assert file_entry["file_info"]["mode"] == 0o755
    assert "src" not in dir_entry
    assert dir_entry["type"] == "dir"


def test_nfpm_missing_binary(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("rbuild.packager.shutil.which", lambda name: None)

    with pytest.raises(PackagerError):
        NfpmPackager("deb", nfpm_bin="definitely-not-nfpm").package(info(), io.BytesIO())


def test_tar_packager_writes_pkginfo_and_files(tmp_path: Path) -> None:
    pkgdir = tmp_path / "pkg"
    (pkgdir / "usr" / "share").mkdir(parents=True)
    (pkgdir / "usr" / "share" / "hello.txt").write_text("hi\n", encoding="utf-8")
    pinfo = info(depends=["libc"], provides=["greeter"], contents=build_contents(str(pkgdir)))
    buf = io.BytesIO()

    TarPackager().package(pinfo, buf)

    buf.seek(0)
    with tarfile.open(fileobj=buf, mode="r:gz") as tar:
        assert sorted(tar.getnames()) == [".PKGINFO", "usr/share/hello.txt"]
        meta = tar.extractfile(".PKGINFO").read().decode("utf-8")
        assert tar.extractfile("usr/share/hello.txt").read() == b"hi\n"
    assert "pkgname = hello\n" in meta
    assert "pkgver = 1.2-3\n" in meta
    assert "depend = libc\n" in meta
    assert "provides = greeter\n" in meta


def test_pkg_format_env_override(monkeypatch: pytest.MonkeyPatch) -> None:
    assert pkg_format("rpm") == "rpm"
    monkeypatch.setenv("RBUILD_PKG_FORMAT", "tar")
    assert pkg_format("rpm") == "tar"
    assert isinstance(get_packager(pkg_format("rpm")), TarPackager)
    assert get_packager("apk").format == "apk"
