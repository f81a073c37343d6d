"""Depot (hash-nested store) path helpers."""

import os


def get_depot_path(hash_hex: str, depth: int, extension: str = '.gz') -> str:
    """
    Relative path of a hash inside a depot tree.

    Each of the first ``depth`` byte pairs of the hash becomes a directory,
    followed by ``<hash><extension>``. ``get_depot_path('abcdef...', 1)``
    gives ``ab/abcdef....gz``; depth 0 gives the bare file name.
    """
    hash_hex = (hash_hex or '').lower()
    depth = max(0, min(int(depth), len(hash_hex) // 2))
    parts = [hash_hex[i * 2:i * 2 + 2] for i in range(depth)]
    parts.append(f"{hash_hex}{extension}")
    return os.path.join(*parts)
