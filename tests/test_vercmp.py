"""Tests for rbuild.vercmp."""

from __future__ import annotations

import pytest

from rbuild.vercmp import sep_label, vercmp

PAIRS = [
    ("1.0010", "1.9", 1),
    ("1.05", "1.5", 0),
    ("1.0", "1", 1),
    ("FC5", "fc4", -1),
    ("2a", "2.0", -1),
    ("1.0", "1.0", 0),
    ("2.0.1", "2.0", 1),
    ("1.0a", "1.0b", -1),
    ("1.0~rc1", "1.0", 1),
]


@pytest.mark.parametrize("a,b,expected", PAIRS)
def test_vercmp_pairs(a: str, b: str, expected: int) -> None:
    assert vercmp(a, b) == expected


@pytest.mark.parametrize("a,b,_", PAIRS)
def test_vercmp_is_antisymmetric(a: str, b: str, _: int) -> None:
    assert vercmp(a, b) == -vercmp(b, a)
    assert vercmp(a, a) == 0


def test_sep_label_splits_digit_and_letter_runs() -> None:
    assert sep_label("1.0rc2-x") == [1, 0, "rc", 2, "x"]
    assert sep_label("007") == [7]
    assert sep_label("...") == []
