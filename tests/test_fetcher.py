"""Tests for rbuild.fetcher (local sources only; no network)."""

from __future__ import annotations

import hashlib
import io
import tarfile
import threading
import zipfile
from pathlib import Path

import pytest

from rbuild.errors import Cancelled, ChecksumMismatchError, FetchError
from rbuild.fetcher import (FetchOptions, Fetcher, GitDownloader, extract, normalize_url,
                            parse_checksum, split_hints)


def sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


@pytest.fixture
def fetcher(tmp_path: Path) -> Fetcher:
    return Fetcher(str(tmp_path / "cache"), chunk_size=4)


def test_parse_checksum() -> None:
    assert parse_checksum(None) is None
    assert parse_checksum("SKIP") is None
    assert parse_checksum("  ") is None
    assert parse_checksum("ABCD") == ("sha256", "abcd")
    assert parse_checksum("SHA512:ff") == ("sha512", "ff")
    with pytest.raises(FetchError):
        parse_checksum("nothash:00")


def test_normalize_url() -> None:
    assert normalize_url("HTTPS://Example.ORG:443//a//b/?z=1&a=2#frag") == "https://example.org/a/b?a=2&z=1"
    assert normalize_url("http://example.org:8080/x/") == "http://example.org:8080/x"
    assert normalize_url("/srv/src/file.txt") == "/srv/src/file.txt"


def test_split_hints() -> None:
    url, hints = split_hints("https://x.org/f?~name=foo.tgz&v=1&~archive=false", "name", "archive")

    assert url == "https://x.org/f?v=1"
    assert hints == {"name": "foo.tgz", "archive": "false"}


def test_fetch_relative_local_file(tmp_path: Path, fetcher: Fetcher) -> None:
    script_dir = tmp_path / "recipe"
    script_dir.mkdir()
    (script_dir / "fix.patch").write_bytes(b"--- a\n+++ b\n")
    dest = tmp_path / "src"

    path = fetcher.fetch(FetchOptions(url="fix.patch", destination=str(dest), script_dir=str(script_dir),
                                      checksum=sha256(b"--- a\n+++ b\n")))

    assert path == str(dest / "fix.patch")
    assert (dest / "fix.patch").read_bytes() == b"--- a\n+++ b\n"
    assert not (tmp_path / "cache").exists()


def test_checksum_mismatch_removes_file(tmp_path: Path, fetcher: Fetcher) -> None:
    src = tmp_path / "data.bin"
    src.write_bytes(b"payload")
    dest = tmp_path / "src"

    with pytest.raises(ChecksumMismatchError):
        fetcher.fetch(FetchOptions(url=str(src), destination=str(dest), checksum="sha256:" + "0" * 64))

    assert not (dest / "data.bin").exists()


def test_skip_checksum_and_name_hint(tmp_path: Path, fetcher: Fetcher) -> None:
    src = tmp_path / "data.bin"
    src.write_bytes(b"payload")
    dest = tmp_path / "src"

    fetcher.fetch(FetchOptions(url=f"file://{src}?~name=renamed.bin", destination=str(dest), checksum="SKIP"))

    assert (dest / "renamed.bin").read_bytes() == b"payload"


def _make_tarball(path: Path) -> None:
    with tarfile.open(path, "w:gz") as tar:
        data = b"hello\n"
        info = tarfile.TarInfo("proj-1.0/README")
        info.size = len(data)
        tar.addfile(info, io.BytesIO(data))


def test_tarball_is_extracted(tmp_path: Path, fetcher: Fetcher) -> None:
    archive = tmp_path / "proj-1.0.tar.gz"
    _make_tarball(archive)
    dest = tmp_path / "src"

    path = fetcher.fetch(FetchOptions(url=str(archive), destination=str(dest)))

    assert path == str(dest)
    assert (dest / "proj-1.0" / "README").read_text(encoding="utf-8") == "hello\n"
    assert not (dest / "proj-1.0.tar.gz").exists()


def test_archive_false_keeps_archive_packed(tmp_path: Path, fetcher: Fetcher) -> None:
    archive = tmp_path / "proj-1.0.tar.gz"
    _make_tarball(archive)
    dest = tmp_path / "src"

    fetcher.fetch(FetchOptions(url=f"{archive}?~archive=false", destination=str(dest)))

    assert (dest / "proj-1.0.tar.gz").exists()
    assert not (dest / "proj-1.0").exists()


def test_zip_escaping_destination_is_rejected(tmp_path: Path) -> None:
    archive = tmp_path / "evil.zip"
    with zipfile.ZipFile(archive, "w") as zf:
        zf.writestr("../escape.txt", "x")
    dest = tmp_path / "out"
    dest.mkdir()

    with pytest.raises(FetchError):
        extract(str(archive), str(dest))
    assert not (tmp_path / "escape.txt").exists()


def test_extract_plain_file_returns_false(tmp_path: Path) -> None:
    plain = tmp_path / "notes.txt"
    plain.write_text("just text\n", encoding="utf-8")

    assert extract(str(plain), str(tmp_path)) is False


def test_cancelled_fetch_raises(tmp_path: Path, fetcher: Fetcher) -> None:
    src = tmp_path / "data.bin"
    src.write_bytes(b"payload")
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(Cancelled):
        fetcher.fetch(FetchOptions(url=str(src), destination=str(tmp_path / "src"), cancel=cancel))


def test_remote_download_is_cached_by_url(tmp_path: Path, fetcher: Fetcher, monkeypatch: pytest.MonkeyPatch) -> None:
    downloads = []

    def fake_download(self, url, dest, opts):
        downloads.append(url)
        Path(dest, "tool.bin").write_bytes(b"bits")
        return "file", "tool.bin"

    monkeypatch.setattr("rbuild.fetcher.FileDownloader.download", fake_download)
    url = "https://example.org/tool.bin"

    first = fetcher.fetch(FetchOptions(url=url, destination=str(tmp_path / "a"), checksum="SKIP"))
    second = fetcher.fetch(FetchOptions(url=url + "/", destination=str(tmp_path / "b"), checksum="SKIP"))
    fetcher.fetch(FetchOptions(url=url, destination=str(tmp_path / "c"), checksum=sha256(b"bits")))

    assert downloads == [url, url]
    assert Path(first).read_bytes() == b"bits"
    assert Path(second).read_bytes() == b"bits"
    assert len(list((tmp_path / "cache").iterdir())) == 1


def test_git_hints_are_validated() -> None:
    with pytest.raises(FetchError):
        GitDownloader()._clean("git+https://example.org/r.git?~depth=deep")

    url, hints = GitDownloader()._clean("git+https://example.org/r.git?~rev=v1.0&~depth=1")
    assert url == "https://example.org/r.git"
    assert hints == {"rev": "v1.0", "depth": "1"}
