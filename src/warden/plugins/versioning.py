"""Version comparison and dependency range matching.

Versions are compared segment-wise: split on ``.``, compare the numeric value
of each segment left to right, and treat missing trailing segments as 0. A
segment contributes its leading digits (``"0-beta"`` -> 0, ``"x"`` -> 0).
"""

from __future__ import annotations

import re

_LEADING_DIGITS = re.compile(r"^\s*(\d+)")
_COMPARATOR = re.compile(r"^(\^|~|>=|<=|>|<|=)?\s*v?(.+)$")


def _segment_value(segment: str) -> int:
    match = _LEADING_DIGITS.match(segment)
    return int(match.group(1)) if match else 0


def parse_version(version: str) -> list[int]:
    """Split a version string into numeric segments."""
    return [_segment_value(part) for part in version.strip().split(".")]


def compare_versions(a: str, b: str) -> int:
    """Return -1, 0 or 1 as ``a`` is older than, equal to or newer than ``b``."""
    left, right = parse_version(a), parse_version(b)
    for i in range(max(len(left), len(right))):
        x = left[i] if i < len(left) else 0
        y = right[i] if i < len(right) else 0
        if x > y:
            return 1
        if x < y:
            return -1
    return 0


def is_newer_version(new_version: str, current_version: str) -> bool:
    """Return True if ``new_version`` is strictly newer than ``current_version``."""
    return compare_versions(new_version, current_version) > 0


def _upper_bound(operator: str, version: str) -> str:
    parts = parse_version(version) + [0, 0]
    major, minor = parts[0], parts[1]
    if operator == "^":
        if major > 0:
            return f"{major + 1}.0.0"
        return f"0.{minor + 1}.0"
    return f"{major}.{minor + 1}.0"


def _matches_comparator(version: str, comparator: str) -> bool:
    match = _COMPARATOR.match(comparator)
    if match is None:
        raise ValueError(f"Invalid version comparator: {comparator!r}")
    operator, target = match.group(1) or "=", match.group(2)

    if target in ("*", "x", "X"):
        return True

    cmp = compare_versions(version, target)
    if operator in ("^", "~"):
        return cmp >= 0 and compare_versions(version, _upper_bound(operator, target)) < 0
    if operator == ">=":
        return cmp >= 0
    if operator == "<=":
        return cmp <= 0
    if operator == ">":
        return cmp > 0
    if operator == "<":
        return cmp < 0
    return cmp == 0


def satisfies(version: str, version_range: str) -> bool:
    """Check a version against a range.

    Supports ``*``, exact versions, the ``=``, ``>``, ``>=``, ``<``, ``<=``,
    ``^`` and ``~`` operators, space-separated conjunctions and ``||``
    alternatives.

    Raises:
        ValueError: If the range can't be parsed
    """
    version_range = version_range.strip()
    if version_range in ("", "*", "latest"):
        return True

    for alternative in version_range.split("||"):
        comparators = alternative.split()
        if comparators and all(_matches_comparator(version, c) for c in comparators):
            return True
    return False
