# rbuild/db.py
"""
Local package index.

- Thread-safe sqlite3 wrapper (check_same_thread=False) with sqlite3.Row rows
- Table `pkgs` keyed by (name, repository); override maps and lists stored as JSON
- Schema version table; a mismatching index is dropped and recreated
- Transaction context manager (commit on success, rollback on exception)
- find_pkgs(): name match first, then `provides`; every non-empty
  requested name ends up in exactly one of found / not_found
- get_default_db() for a shared instance at config `paths.db_path`
"""

from __future__ import annotations

import contextlib
import json
import sqlite3
import threading
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Generator, Iterable, List, Optional, Sequence

from .errors import RbuildError
from .logging import get_logger

_logger = get_logger("db")

CURRENT_VERSION = 1


class DBError(RbuildError):
    """Generic index error."""


@dataclass
class Package:
    """An index record. Override-capable fields map override suffix -> value ("" is the base)."""
    name: str
    repository: str
    version: str
    release: int = 0
    epoch: int = 0
    description: Dict[str, str] = field(default_factory=dict)
    homepage: Dict[str, str] = field(default_factory=dict)
    maintainer: Dict[str, str] = field(default_factory=dict)
    architectures: List[str] = field(default_factory=list)
    licenses: List[str] = field(default_factory=list)
    provides: List[str] = field(default_factory=list)
    conflicts: List[str] = field(default_factory=list)
    replaces: List[str] = field(default_factory=list)
    depends: Dict[str, List[str]] = field(default_factory=dict)
    build_depends: Dict[str, List[str]] = field(default_factory=dict)
    opt_depends: Dict[str, List[str]] = field(default_factory=dict)

    JSON_FIELDS = ("description", "homepage", "maintainer", "architectures", "licenses",
                   "provides", "conflicts", "replaces", "depends", "build_depends", "opt_depends")

    @property
    def full_version(self) -> str:
        v = f"{self.version}-{self.release}"
        return f"{self.epoch}:{v}" if self.epoch else v


@dataclass
class ResolvedPackage:
    """A Package with every override map collapsed for one host."""
    name: str
    repository: str
    version: str
    release: int = 0
    epoch: int = 0
    description: str = ""
    homepage: str = ""
    maintainer: str = ""
    architectures: List[str] = field(default_factory=list)
    licenses: List[str] = field(default_factory=list)
    provides: List[str] = field(default_factory=list)
    conflicts: List[str] = field(default_factory=list)
    replaces: List[str] = field(default_factory=list)
    depends: List[str] = field(default_factory=list)
    build_depends: List[str] = field(default_factory=list)
    opt_depends: List[str] = field(default_factory=list)

    LIST_FIELDS = ("depends", "build_depends", "opt_depends")


@dataclass
class DependencyResolution:
    found: Dict[str, List[Package]] = field(default_factory=dict)
    not_found: List[str] = field(default_factory=list)


_SCHEMA = """
CREATE TABLE IF NOT EXISTS pkgs (
    name          TEXT NOT NULL,
    repository    TEXT NOT NULL,
    version       TEXT NOT NULL,
    release       INT  NOT NULL,
    epoch         INT,
    description   TEXT,
    homepage      TEXT,
    maintainer    TEXT,
    architectures TEXT,
    licenses      TEXT,
    provides      TEXT,
    conflicts     TEXT,
    replaces      TEXT,
    depends       TEXT,
    build_depends TEXT,
    opt_depends   TEXT,
    UNIQUE(name, repository)
);
CREATE TABLE IF NOT EXISTS rbuild_db_version (
    version INT NOT NULL
);
"""

_COLUMNS = [f.name for f in fields(Package)]


def _json_array_contains(value: Optional[str], item: Optional[str]) -> int:
    if value is None or item is None:
        return 0
    try:
        arr = json.loads(value)
    except ValueError:
        return 0
    return int(isinstance(arr, list) and item in arr)


def _row_to_package(row: sqlite3.Row) -> Package:
    data: Dict[str, Any] = {}
    for col in _COLUMNS:
        val = row[col]
        if col in Package.JSON_FIELDS:
            val = json.loads(val) if val else None
            if val is None:
                val = [] if col in ("architectures", "licenses", "provides", "conflicts", "replaces") else {}
        data[col] = val
    data["epoch"] = data["epoch"] or 0
    return Package(**data)


class DB:
    """
    sqlite3 wrapper holding the package index.

        with DB("/tmp/index.db") as db:
            db.insert(pkg)
            res = db.find_pkgs(["foo", "bar"])
    """

    def __init__(self, path: str | Path, timeout: float = 5.0) -> None:
        self._path = str(path) if str(path) == ":memory:" else str(Path(path).expanduser().resolve())
        self._timeout = timeout
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

    # ------------------------
    # Connection
    # ------------------------
    def connect(self) -> sqlite3.Connection:
        with self._lock:
            if self._conn is not None:
                return self._conn
            if self._path != ":memory:":
                Path(self._path).parent.mkdir(parents=True, exist_ok=True)
            try:
                conn = sqlite3.connect(self._path, timeout=self._timeout, check_same_thread=False)
            except sqlite3.Error as e:
                raise DBError(f"cannot open index {self._path}: {e}") from e
            conn.row_factory = sqlite3.Row
            conn.create_function("json_array_contains", 2, _json_array_contains)
            self._conn = conn
            self._init_schema()
            _logger.debug("index opened: %s", self._path)
            return conn

    def _init_schema(self) -> None:
        conn = self._conn
        conn.executescript(_SCHEMA)
        row = conn.execute("SELECT version FROM rbuild_db_version LIMIT 1").fetchone()
        if row is None:
            conn.execute("INSERT INTO rbuild_db_version(version) VALUES (?)", (CURRENT_VERSION,))
            conn.commit()
        elif int(row["version"]) != CURRENT_VERSION:
            _logger.warning("index version mismatch (%s != %s); resetting", row["version"], CURRENT_VERSION)
            conn.executescript("DROP TABLE IF EXISTS pkgs; DROP TABLE IF EXISTS rbuild_db_version;")
            self._init_schema()

    def close(self) -> None:
        with self._lock:
            if self._conn is None:
                return
            self._conn.close()
            self._conn = None

    def __enter__(self) -> "DB":
        self.connect()
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ------------------------
    # Execution helpers
    # ------------------------
    def execute(self, sql: str, params: Sequence[Any] = (), commit: bool = False) -> sqlite3.Cursor:
        conn = self.connect()
        with self._lock:
            try:
                cur = conn.execute(sql, params)
                if commit:
                    conn.commit()
                return cur
            except sqlite3.Error as e:
                conn.rollback()
                raise DBError(f"SQL error: {e} | {sql}") from e

    def fetchall(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        cur = self.execute(sql, params)
        try:
            return cur.fetchall()
        finally:
            cur.close()

    @contextlib.contextmanager
    def transaction(self) -> Generator[sqlite3.Cursor, None, None]:
        conn = self.connect()
        with self._lock:
            cur = conn.cursor()
            try:
                yield cur
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                cur.close()

    # ------------------------
    # Package API
    # ------------------------
    def insert(self, pkg: Package) -> None:
        """Insert or replace a record (unique on name + repository)."""
        values = []
        for col in _COLUMNS:
            val = getattr(pkg, col)
            values.append(json.dumps(val) if col in Package.JSON_FIELDS else val)
        placeholders = ", ".join("?" for _ in _COLUMNS)
        self.execute(f"INSERT OR REPLACE INTO pkgs ({', '.join(_COLUMNS)}) VALUES ({placeholders})",
                     values, commit=True)

    def insert_many(self, pkgs: Iterable[Package]) -> int:
        n = 0
        for pkg in pkgs:
            self.insert(pkg)
            n += 1
        return n

    def get_pkgs(self, where: str = "1", params: Sequence[Any] = ()) -> List[Package]:
        return [_row_to_package(r) for r in self.fetchall(f"SELECT * FROM pkgs WHERE {where}", params)]

    def get_pkg(self, where: str, params: Sequence[Any] = ()) -> Optional[Package]:
        rows = self.fetchall(f"SELECT * FROM pkgs WHERE {where} LIMIT 1", params)
        return _row_to_package(rows[0]) if rows else None

    def delete_pkgs(self, where: str, params: Sequence[Any] = ()) -> None:
        self.execute(f"DELETE FROM pkgs WHERE {where}", params, commit=True)

    def is_empty(self) -> bool:
        rows = self.fetchall("SELECT count(1) AS n FROM pkgs")
        return not rows or rows[0]["n"] == 0

    def find_pkgs(self, names: Iterable[str]) -> DependencyResolution:
        """
        Packages whose name matches each requested name, falling back to
        packages that provide it. Empty names are skipped and appear in
        neither `found` nor `not_found`.
        """
        res = DependencyResolution()
        for name in names:
            if not name or name in res.found or name in res.not_found:
                continue
            pkgs = self.get_pkgs("name LIKE ?", (name,))
            if not pkgs:
                pkgs = self.get_pkgs("json_array_contains(provides, ?)", (name,))
            if pkgs:
                res.found[name] = pkgs
            else:
                res.not_found.append(name)
        return res


_DEFAULT_DB: Optional[DB] = None
_DEFAULT_LOCK = threading.Lock()


def get_default_db() -> DB:
    global _DEFAULT_DB
    with _DEFAULT_LOCK:
        if _DEFAULT_DB is None:
            from .config import get_paths
            _DEFAULT_DB = DB(get_paths().db_path)
        return _DEFAULT_DB
