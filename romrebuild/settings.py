"""Persistent settings for romrebuild."""
from __future__ import annotations

import json
import os
from copy import deepcopy
from typing import Any, Dict

from .models import OutputFormat, TreatAsFile
from .rebuilder import RebuildOptions

DEFAULT_SETTINGS_PATH = os.path.expanduser("~/.romrebuild/settings.json")

DEFAULT_SETTINGS: Dict[str, Any] = {
    "rebuild": {
        "output_format": "folder",
        "quick_scan": False,
        "add_date": False,
        "delete": False,
        "inverse": False,
        "chds_as_files": False,
        "aaruformats_as_files": False,
        "workers": 4,
    },
    "depot": {
        "input_depth": 4,
        "output_depth": 4,
    },
    "headers": {
        "skipper": "",
        "detector_dir": "",
    },
    "logging": {
        "file": os.path.expanduser("~/.romrebuild/events.log"),
        "echo": False,
    },
    "network": {
        "timeout": 30,
        "user_agent": "romrebuild/1.0 (catalog fetch)",
        "cache_dir": os.path.expanduser("~/.romrebuild/cache"),
    },
}


def _deep_merge(base: Dict[str, Any], updates: Dict[str, Any]) -> Dict[str, Any]:
    out = deepcopy(base)
    for k, v in (updates or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = deepcopy(v)
    return out


def load_settings(path: str = DEFAULT_SETTINGS_PATH) -> Dict[str, Any]:
    if not os.path.exists(path):
        return deepcopy(DEFAULT_SETTINGS)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError):
        return deepcopy(DEFAULT_SETTINGS)
    if not isinstance(data, dict):
        return deepcopy(DEFAULT_SETTINGS)
    return _deep_merge(DEFAULT_SETTINGS, data)


def save_settings(settings: Dict[str, Any], path: str = DEFAULT_SETTINGS_PATH) -> None:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(settings, f, ensure_ascii=False, indent=2)


def build_rebuild_options(settings: Dict[str, Any]) -> RebuildOptions:
    """Turn the "rebuild" and "headers" sections into engine options."""
    rebuild = settings.get("rebuild", {})
    headers = settings.get("headers", {})

    as_files = TreatAsFile.NONE
    if rebuild.get("chds_as_files"):
        as_files |= TreatAsFile.CHD
    if rebuild.get("aaruformats_as_files"):
        as_files |= TreatAsFile.AARUFORMAT

    return RebuildOptions(
        output_format=OutputFormat.from_string(rebuild.get("output_format", "folder")),
        quick_scan=bool(rebuild.get("quick_scan", False)),
        add_date=bool(rebuild.get("add_date", False)),
        delete=bool(rebuild.get("delete", False)),
        inverse=bool(rebuild.get("inverse", False)),
        as_files=as_files,
        header_skipper=str(headers.get("skipper", "") or ""),
        detector_dir=str(headers.get("detector_dir", "") or ""),
        workers=int(rebuild.get("workers", 4) or 4),
    )
