# rbuild/fetcher.py
"""
fetcher.py - source download/cache/verify layer for rbuild

Features:
- File downloader: http(s)/ftp via urllib, file:// and paths relative to the script dir
- Git downloader: `git+https://...` with `~rev`, `~depth`, `~recursive` hints; cached clones are pulled
- Query hints `~name` (output name) and `~archive=false` (keep archives packed) are stripped before use
- Content-addressed cache: <cache_dir>/<sha1(normalized url)> with a JSON manifest
- Archive extraction via tarfile/zipfile, single-file decompression via gzip/bz2/lzma
- Checksums as "algo:hex" or bare sha256 hex; "SKIP" disables verification
- Cooperative cancellation checked between chunks and between git steps
"""

from __future__ import annotations

import bz2
import gzip
import hashlib
import json
import lzma
import os
import re
import shutil
import subprocess
import tarfile
import tempfile
import threading
import urllib.parse
import urllib.request
import zipfile
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from . import __version__
from .errors import Cancelled, ChecksumMismatchError, FetchError
from .logging import get_logger

logger = get_logger("fetcher")

MANIFEST_NAME = ".rbuild_cache_manifest"

TYPE_FILE = "file"
TYPE_DIR = "dir"

_CD_FILENAME = re.compile(r'filename="?([^";]+)"?')

_DEFAULT_PORTS = {"http": ":80", "https": ":443", "ftp": ":21"}

_DECOMPRESSORS = {
    ".gz": gzip.open,
    ".bz2": bz2.open,
    ".xz": lzma.open,
    ".lzma": lzma.open,
}


@dataclass
class FetchOptions:
    url: str
    destination: str
    label: str = ""
    checksum: Optional[str] = None
    script_dir: str = ""
    cache_disabled: bool = False
    cancel: Optional[threading.Event] = None


# -----------------------------------------------------------------------
# Utility helpers
# -----------------------------------------------------------------------
def parse_checksum(value: Optional[str]) -> Optional[Tuple[str, str]]:
    """
    "sha512:ab12.." -> ("sha512", "ab12..") ; bare hex -> sha256 ;
    "SKIP" or empty -> None (no verification).
    """
    if value is None:
        return None
    s = value.strip()
    if not s or s.upper() == "SKIP":
        return None
    if ":" in s:
        algo, hexval = s.split(":", 1)
        algo = algo.lower()
    else:
        algo, hexval = "sha256", s
    if algo not in hashlib.algorithms_available:
        raise FetchError(f"unsupported checksum algorithm: {algo}")
    return algo, hexval.lower()


def normalize_url(url: str) -> str:
    """Lowercase scheme and host, drop fragment, default ports, duplicate and trailing slashes; sort query."""
    parts = urllib.parse.urlsplit(url)
    scheme = parts.scheme.lower()
    netloc = parts.netloc.lower()
    port = _DEFAULT_PORTS.get(scheme.removeprefix("git+"))
    if port and netloc.endswith(port):
        netloc = netloc[: -len(port)]
    netloc = netloc.rstrip(":")
    path = re.sub(r"/{2,}", "/", parts.path)
    if len(path) > 1:
        path = path.rstrip("/")
    query = urllib.parse.urlencode(sorted(urllib.parse.parse_qsl(parts.query, keep_blank_values=True)))
    return urllib.parse.urlunsplit((scheme, netloc, path, query, ""))


def split_hints(url: str, *hints: str) -> Tuple[str, Dict[str, str]]:
    """Remove `~hint` query parameters from url and return them separately."""
    parts = urllib.parse.urlsplit(url)
    kept: List[Tuple[str, str]] = []
    found: Dict[str, str] = {}
    for k, v in urllib.parse.parse_qsl(parts.query, keep_blank_values=True):
        if k.startswith("~") and k[1:] in hints:
            found[k[1:]] = v
        else:
            kept.append((k, v))
    clean = urllib.parse.urlunsplit(parts._replace(query=urllib.parse.urlencode(kept)))
    return clean, found


def _check_cancel(cancel: Optional[threading.Event], what: str):
    if cancel is not None and cancel.is_set():
        raise Cancelled(f"{what}: cancelled")


def _link_or_copy(src: str, dst: str):
    os.makedirs(os.path.dirname(dst), exist_ok=True)
    if os.path.lexists(dst):
        os.remove(dst)
    try:
        os.link(src, dst)
    except OSError:
        shutil.copy2(src, dst)


def _link_tree(src: str, dest: str):
    for root, dirs, files in os.walk(src):
        rel = os.path.relpath(root, src)
        target = dest if rel == "." else os.path.join(dest, rel)
        os.makedirs(target, exist_ok=True)
        for fname in files:
            if rel == "." and fname == MANIFEST_NAME:
                continue
            s = os.path.join(root, fname)
            if os.path.islink(s):
                d = os.path.join(target, fname)
                if os.path.lexists(d):
                    os.remove(d)
                os.symlink(os.readlink(s), d)
            else:
                _link_or_copy(s, os.path.join(target, fname))


def _safe_extract_tar(tar: tarfile.TarFile, dest: str):
    tar.extractall(dest, filter="data")


def _safe_extract_zip(zf: zipfile.ZipFile, dest: str):
    root = os.path.realpath(dest)
    for member in zf.namelist():
        target = os.path.realpath(os.path.join(dest, member))
        if target != root and not target.startswith(root + os.sep):
            raise FetchError(f"archive member escapes destination: {member}")
    zf.extractall(dest)


def extract(path: str, dest: str) -> bool:
    """
    Extract archive `path` into `dest`. Returns False when the file is not
    an archive this module understands.
    """
    if tarfile.is_tarfile(path):
        with tarfile.open(path) as tar:
            _safe_extract_tar(tar, dest)
        return True
    if zipfile.is_zipfile(path):
        with zipfile.ZipFile(path) as zf:
            _safe_extract_zip(zf, dest)
        return True
    base, ext = os.path.splitext(path)
    opener = _DECOMPRESSORS.get(ext.lower())
    if opener is None:
        return False
    out = os.path.join(dest, os.path.basename(base))
    try:
        with opener(path, "rb") as src, open(out, "wb") as dst:
            shutil.copyfileobj(src, dst)
    except (OSError, EOFError, lzma.LZMAError) as e:
        if os.path.exists(out):
            os.remove(out)
        logger.debug("not a %s stream: %s (%s)", ext, path, e)
        return False
    return True


def _git(args: List[str], cwd: Optional[str] = None, timeout: int = 3600) -> Tuple[int, str, str]:
    logger.debug("RUN: git %s (cwd=%s)", " ".join(args), cwd)
    try:
        p = subprocess.run(["git"] + args, cwd=cwd, stdout=subprocess.PIPE,
                           stderr=subprocess.PIPE, text=True, timeout=timeout)
    except subprocess.TimeoutExpired:
        return 124, "", "git: timed out"
    except OSError as e:
        return 127, "", str(e)
    return p.returncode, p.stdout.strip(), p.stderr.strip()


# -----------------------------------------------------------------------
# Downloaders
# -----------------------------------------------------------------------
class FileDownloader:
    name = "file"

    def __init__(self, timeout: int = 30, chunk_size: int = 65536):
        self.timeout = timeout
        self.chunk_size = chunk_size

    def match(self, url: str) -> bool:
        return True

    def _open(self, url: str, script_dir: str) -> Tuple[Any, str]:
        parts = urllib.parse.urlsplit(url)
        if parts.scheme in ("http", "https", "ftp"):
            req = urllib.request.Request(url, headers={"User-Agent": f"rbuild/{__version__}"})
            try:
                resp = urllib.request.urlopen(req, timeout=self.timeout)
            except OSError as e:
                raise FetchError(f"{url}: {e}") from e
            name = ""
            m = _CD_FILENAME.search(resp.headers.get("Content-Disposition", "") or "")
            if m:
                name = os.path.basename(m.group(1))
            return resp, name or os.path.basename(urllib.parse.unquote(parts.path))
        if parts.scheme == "file":
            path = urllib.parse.unquote(parts.path)
        elif parts.scheme == "":
            path = urllib.parse.unquote(parts.path)
            if not os.path.isabs(path):
                path = os.path.join(script_dir, path)
        else:
            raise FetchError(f"unsupported url scheme: {parts.scheme}")
        try:
            return open(path, "rb"), os.path.basename(path)
        except OSError as e:
            raise FetchError(f"{url}: {e}") from e

    def download(self, url: str, dest: str, opts: FetchOptions) -> Tuple[str, str]:
        """Download into dest. Returns (type, name) where name is relative to dest."""
        url, hints = split_hints(url, "name", "archive")
        checksum = parse_checksum(opts.checksum)
        h = hashlib.new(checksum[0]) if checksum else None

        src, name = self._open(url, opts.script_dir)
        name = hints.get("name") or name
        if not name:
            raise FetchError(f"{url}: cannot determine a file name; use ~name")
        path = os.path.join(dest, name)
        with src, open(path, "wb") as out:
            while True:
                _check_cancel(opts.cancel, url)
                chunk = src.read(self.chunk_size)
                if not chunk:
                    break
                out.write(chunk)
                if h is not None:
                    h.update(chunk)

        if h is not None and h.hexdigest() != checksum[1]:
            os.remove(path)
            raise ChecksumMismatchError(name, checksum[0], checksum[1], h.hexdigest())

        if hints.get("archive") != "false" and extract(path, dest):
            os.remove(path)
            return TYPE_DIR, ""
        return TYPE_FILE, name


class GitDownloader:
    name = "git"

    def match(self, url: str) -> bool:
        return url.startswith("git+")

    def _clean(self, url: str) -> Tuple[str, Dict[str, str]]:
        clean, hints = split_hints(url[len("git+"):], "rev", "name", "depth", "recursive")
        if "depth" in hints:
            try:
                int(hints["depth"])
            except ValueError:
                raise FetchError(f"{url}: invalid ~depth '{hints['depth']}'") from None
        return clean, hints

    def download(self, url: str, dest: str, opts: FetchOptions) -> Tuple[str, str]:
        clean, hints = self._clean(url)
        if parse_checksum(opts.checksum) is not None:
            logger.warning("checksums are not verified for git sources: %s", clean)

        name = hints.get("name") or os.path.basename(
            urllib.parse.urlsplit(clean).path.rstrip("/")).removesuffix(".git")
        target = os.path.join(dest, name)

        cmd = ["clone"]
        if hints.get("depth") and int(hints["depth"]) > 0:
            cmd += ["--depth", hints["depth"]]
        if hints.get("recursive") == "true":
            cmd.append("--recurse-submodules")
        _check_cancel(opts.cancel, clean)
        rc, _, err = _git(cmd + [clean, target])
        if rc != 0:
            raise FetchError(f"git clone {clean}: {err}")

        _check_cancel(opts.cancel, clean)
        rev = hints.get("rev")
        if rev:
            rc, _, err = _git(["fetch", "--tags", "origin"], cwd=target)
            if rc != 0:
                raise FetchError(f"git fetch {clean}: {err}")
            rc, _, err = _git(["checkout", "--quiet", rev], cwd=target)
            if rc != 0:
                raise FetchError(f"git checkout {rev}: {err}")
        return TYPE_DIR, name

    def update(self, url: str, cache_dir: str, name: str, opts: FetchOptions) -> bool:
        """Pull a cached clone. Returns True when HEAD moved."""
        clean, hints = self._clean(url)
        repo = os.path.join(cache_dir, name)
        if hints.get("rev"):
            # pinned revisions are not pulled
            return False
        _, before, _ = _git(["rev-parse", "HEAD"], cwd=repo)
        _check_cancel(opts.cancel, clean)
        cmd = ["pull", "--quiet"]
        if hints.get("recursive") == "true":
            cmd.append("--recurse-submodules")
        rc, _, err = _git(cmd, cwd=repo)
        if rc != 0:
            raise FetchError(f"git pull {clean}: {err}")
        _, after, _ = _git(["rev-parse", "HEAD"], cwd=repo)
        return before != after


# -----------------------------------------------------------------------
# Fetcher
# -----------------------------------------------------------------------
class Fetcher:
    """
    Downloads sources through a per-URL cache and links the result into the
    destination directory.

        f = Fetcher("~/.cache/rbuild/dl")
        f.fetch(FetchOptions(url="https://x.org/x-1.0.tar.gz", destination=srcdir,
                             checksum="sha256:..."))
    """

    def __init__(self, cache_dir: str, timeout: int = 30, chunk_size: int = 65536):
        self.cache_dir = os.path.expanduser(cache_dir)
        self.downloaders = [GitDownloader(), FileDownloader(timeout=timeout, chunk_size=chunk_size)]

    def _downloader(self, url: str):
        for d in self.downloaders:
            if d.match(url):
                return d
        raise FetchError(f"no downloader for {url}")

    def cache_path(self, normalized_url: str) -> str:
        key = hashlib.sha1(normalized_url.encode("utf-8")).hexdigest()
        return os.path.join(self.cache_dir, key)

    def _read_manifest(self, path: str) -> Optional[Dict[str, Any]]:
        try:
            with open(os.path.join(path, MANIFEST_NAME), encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError):
            return None
        if not isinstance(data, dict) or data.get("type") not in (TYPE_FILE, TYPE_DIR):
            return None
        return data

    def _write_manifest(self, path: str, manifest: Dict[str, Any]):
        tmp = os.path.join(path, MANIFEST_NAME + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(manifest, f)
        os.replace(tmp, os.path.join(path, MANIFEST_NAME))

    def _link_into(self, cache: str, manifest: Dict[str, Any], destination: str) -> str:
        name = manifest.get("name") or ""
        dest = os.path.join(destination, name) if name else destination
        if manifest["type"] == TYPE_DIR:
            _link_tree(os.path.join(cache, name) if name else cache, dest)
        else:
            _link_or_copy(os.path.join(cache, name), dest)
        return dest

    def fetch(self, opts: FetchOptions) -> str:
        """Fetch one source into opts.destination and return the path it landed at."""
        _check_cancel(opts.cancel, opts.url)
        raw = opts.url
        scheme = urllib.parse.urlsplit(raw).scheme
        local = scheme in ("", "file")
        if scheme == "" and not os.path.isabs(raw) and opts.script_dir:
            raw = os.path.join(opts.script_dir, raw)
        url = normalize_url(raw)
        d = self._downloader(url)
        os.makedirs(opts.destination, exist_ok=True)

        # local files change in place; they are never cached
        if opts.cache_disabled or local:
            logger.info("Downloading source %s (%s, uncached)", opts.label or url, d.name)
            kind, name = d.download(url, opts.destination, opts)
            return os.path.join(opts.destination, name) if name else opts.destination

        cache = self.cache_path(url)
        manifest = self._read_manifest(cache) if os.path.isdir(cache) else None
        if manifest is not None and manifest.get("checksum") == (opts.checksum or None):
            if isinstance(d, GitDownloader):
                logger.info("Source can be updated, updating if required: %s", opts.label or url)
                d.update(url, cache, manifest.get("name") or "", opts)
            logger.info("Source found in cache, linked to destination: %s (%s)", opts.label or url, manifest["type"])
            return self._link_into(cache, manifest, opts.destination)
        if os.path.isdir(cache):
            shutil.rmtree(cache)

        logger.info("Downloading source %s (%s)", opts.label or url, d.name)
        os.makedirs(self.cache_dir, exist_ok=True)
        work = tempfile.mkdtemp(prefix=".dl-", dir=self.cache_dir)
        try:
            kind, name = d.download(url, work, opts)
            manifest = {"type": kind, "name": name, "url": url, "checksum": opts.checksum or None}
            self._write_manifest(work, manifest)
            os.replace(work, cache)
        except BaseException:
            shutil.rmtree(work, ignore_errors=True)
            raise
        return self._link_into(cache, manifest, opts.destination)

    def clear_cache(self) -> None:
        if os.path.isdir(self.cache_dir):
            shutil.rmtree(self.cache_dir)


_FETCHER: Optional[Fetcher] = None
_FETCHER_LOCK = threading.Lock()


def get_fetcher() -> Fetcher:
    global _FETCHER
    with _FETCHER_LOCK:
        if _FETCHER is None:
            from .config import get_config
            cfg = get_config()
            _FETCHER = Fetcher(
                cfg.get("fetcher.cache_dir"),
                timeout=int(cfg.get("fetcher.http_timeout", 30)),
                chunk_size=int(cfg.get("fetcher.chunk_size", 65536)),
            )
        return _FETCHER
