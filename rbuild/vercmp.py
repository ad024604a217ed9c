# rbuild/vercmp.py
"""
Version comparison in the style of rpmvercmp.

A version label is split into maximal runs of ASCII digits and ASCII
letters; every other character only separates runs. Runs are compared
pairwise: numbers as integers, letters by byte order, and a number
always outranks letters at the same position. When one label runs out
first, the longer one is newer.
"""

from __future__ import annotations
from typing import List, Union

Segment = Union[int, str]


def _is_digit(c: str) -> bool:
    return "0" <= c <= "9"


def _is_alpha(c: str) -> bool:
    return ("a" <= c <= "z") or ("A" <= c <= "Z")


def sep_label(label: str) -> List[Segment]:
    """Split a version label into digit and letter runs."""
    out: List[Segment] = []
    cur = ""
    cur_digit = False

    def flush():
        nonlocal cur
        if cur:
            out.append(int(cur) if cur_digit else cur)
            cur = ""

    for c in label:
        if _is_digit(c):
            if cur and not cur_digit:
                flush()
            cur_digit = True
            cur += c
        elif _is_alpha(c):
            if cur and cur_digit:
                flush()
            cur_digit = False
            cur += c
        else:
            flush()
    flush()
    return out


def _cmp(a, b) -> int:
    return (a > b) - (a < b)


def vercmp(v1: str, v2: str) -> int:
    """
    Return 1 if v1 is newer than v2, -1 if older and 0 if equal.
    """
    if v1 == v2:
        return 0

    s1 = sep_label(v1)
    s2 = sep_label(v2)

    for a, b in zip(s1, s2):
        a_num = isinstance(a, int)
        b_num = isinstance(b, int)
        if a_num and b_num:
            r = _cmp(a, b)
        elif a_num:
            r = 1
        elif b_num:
            r = -1
        else:
            r = _cmp(a, b)
        if r != 0:
            return r

    return _cmp(len(s1), len(s2))
