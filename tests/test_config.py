"""Tests for rbuild.config."""

from __future__ import annotations

from pathlib import Path

import pytest

from rbuild import config as config_mod
from rbuild.errors import ConfigError


def test_load_returns_defaults_when_no_file() -> None:
    cfg = config_mod.load()

    assert cfg.path is None
    assert cfg.get("build.recipe_name") == "rbuild.sh"
    assert cfg.get("build.root_cmd") == "sudo"
    assert cfg.get("missing.key", "fallback") == "fallback"


def test_load_merges_yaml_from_cwd(tmp_path: Path) -> None:
    (tmp_path / "rbuild.yaml").write_text(
        """
build:
  root_cmd: doas
  ignore_pkg_updates: "foo-*, bar"
overrides:
  languages: en fr
paths:
  pkgs_dir: ~/pkgs
""",
        encoding="utf-8",
    )

    cfg = config_mod.load()

    assert cfg.path.resolve() == (tmp_path / "rbuild.yaml").resolve()
    assert cfg.get("build.root_cmd") == "doas"
    assert cfg.get("build.pager_style") == "native"
    assert cfg.get("build.ignore_pkg_updates") == ["foo-*", "bar"]
    assert cfg.get("overrides.languages") == ["en", "fr"]
    assert cfg.get("paths.pkgs_dir") == str(Path.home() / "pkgs")


def test_explicit_json_config(tmp_path: Path) -> None:
    path = tmp_path / "custom.json"
    path.write_text('{"sandbox": {"kill_timeout": "5"}}', encoding="utf-8")

    cfg = config_mod.load(str(path), fatal=True)

    assert cfg.get("sandbox.kill_timeout") == 5.0


def test_missing_explicit_config_raises(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        config_mod.load(str(tmp_path / "nope.yaml"))


def test_validation_issues_are_fatal_only_when_asked(tmp_path: Path) -> None:
    path = tmp_path / "bad.yaml"
    path.write_text("bogus: 1\nbuild:\n  root_cmd: ''\n", encoding="utf-8")

    with pytest.raises(ConfigError):
        config_mod.load(str(path), fatal=True)
    cfg = config_mod.load(str(path))
    assert cfg.get("bogus") == 1


def test_get_config_caches_and_get_paths(tmp_path: Path) -> None:
    first = config_mod.get_config()

    assert config_mod.get_config() is first
    paths = config_mod.get_paths(first)
    assert paths.pkgs_dir == str(Path.home() / ".cache/rbuild/pkgs")
    assert paths.db_path.endswith("db.sqlite3")
