"""Version-aware ordering of version strings (``sort -V`` semantics)."""

import re
from typing import Iterable, Optional

_CHUNK = re.compile(r"(\d+)")


def version_key(version: str) -> tuple:
    """Sort key comparing digit runs numerically.

    "450.10" sorts after "70.1", and "535.183.01" after "535.54.03".
    """
    key = []
    for chunk in _CHUNK.split(version):
        if not chunk:
            continue
        if chunk.isdigit():
            key.append((1, int(chunk), ""))
        else:
            key.append((0, 0, chunk))
    return tuple(key)


def max_version(versions: Iterable[str]) -> Optional[str]:
    """Greatest version in an iterable, or None if it is empty."""
    versions = [v for v in versions if v]
    if not versions:
        return None
    return max(versions, key=version_key)
