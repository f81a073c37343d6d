"""
Utility functions for the ROM rebuilder
"""

import os
import re

_WINDOWS_UNSAFE_RE = re.compile(r'[<>:"/\\|?*]')
# Windows reserved device names (case-insensitive) cannot be used as bare filenames
_WINDOWS_RESERVED_NAMES = {
    'CON', 'PRN', 'AUX', 'NUL',
    *(f'COM{i}' for i in range(1, 10)),
    *(f'LPT{i}' for i in range(1, 10)),
}


def safe_filename(name: str) -> str:
    """
    Make a single path component safe for all operating systems.

    - Replaces Windows-unsafe characters with '_'
    - Trims trailing dots/spaces (Windows restriction)
    - Guards against reserved device names (CON, PRN, ...)
    """
    part = (name or '').strip()
    if part in {'.', '..'}:
        part = '_' + part.replace('.', '')
    part = _WINDOWS_UNSAFE_RE.sub('_', part)
    part = part.rstrip(' .')
    if not part:
        part = '_'
    base = os.path.splitext(part)[0].upper()
    if base in _WINDOWS_RESERVED_NAMES:
        part = f'_{part}'
    return part


def sanitize_rel_path(rel_path: str) -> str:
    """Sanitize a relative path (dirs + filename), dropping any '..' escape"""
    raw = (rel_path or '').strip().lstrip('/\\')
    parts = [p for p in re.split(r"[\\/]+", raw) if p and p not in ('.', '..')]
    if not parts:
        return '_'
    return os.path.join(*(safe_filename(p) for p in parts))


def remove_empty_dirs(path: str, stop_at: str = '') -> None:
    """
    Remove empty directories upwards from path, stopping below stop_at.

    Without stop_at only path itself is removed (if empty).
    """
    stop = os.path.abspath(stop_at) if stop_at else ''
    path = os.path.abspath(path)
    if stop and os.path.commonpath([path, stop]) != stop:
        return
    while path and path != stop and os.path.isdir(path) and not os.listdir(path):
        os.rmdir(path)
        if not stop:
            break
        parent = os.path.dirname(path)
        if parent == path:
            break
        path = parent
