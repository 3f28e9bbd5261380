"""Dotted version comparison helpers."""

import re
from typing import Optional

CLEAN_SEMVER_PATTERN = re.compile(r"^\d+\.\d+\.\d+$")


def _segments(version: str) -> list[int]:
    parts = []
    for segment in version.strip().split("."):
        # Non-numeric trailing junk ("3-ubuntu") counts by its leading digits
        match = re.match(r"\d+", segment)
        parts.append(int(match.group()) if match else 0)
    return parts


def compare_versions(a: str, b: str) -> int:
    """
    Compare two dotted version strings numerically.

    Missing segments count as 0, so "1.2" == "1.2.0".

    Returns:
        A negative number if a < b, zero if equal, positive if a > b
    """
    pa = _segments(a)
    pb = _segments(b)
    for i in range(max(len(pa), len(pb))):
        na = pa[i] if i < len(pa) else 0
        nb = pb[i] if i < len(pb) else 0
        if na != nb:
            return na - nb
    return 0


def is_clean_semver(tag: str) -> bool:
    """True for exact major.minor.patch tags such as "12.3.3"."""
    return bool(CLEAN_SEMVER_PATTERN.match(tag))


def is_update_available(current: Optional[str], latest: Optional[str]) -> bool:
    """An update is only known to exist when both versions are known."""
    if not current or not latest:
        return False
    return compare_versions(latest, current) > 0
