"""
Small file-system helpers used by the record stores and the cache.
"""

import json
import logging
import os
import shutil
import tempfile
from typing import Any

logger = logging.getLogger(__name__)


def ensure_directory(path: str) -> str:
    os.makedirs(path, exist_ok=True)
    return path


def read_json(path: str, default: Any = None) -> Any:
    """Read a JSON document, returning `default` if it is missing or unreadable."""
    if not os.path.exists(path):
        return default
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        logger.warning(f"Could not read {path}: {e}")
        return default


def write_json(path: str, data: Any):
    """Write a JSON document atomically (temp file + replace)."""
    directory = os.path.dirname(path) or "."
    ensure_directory(directory)
    fd, tmp_path = tempfile.mkstemp(dir=directory, suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f)
        os.replace(tmp_path, path)
    except Exception:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise


def remove_path(path: str):
    if os.path.isdir(path):
        shutil.rmtree(path, ignore_errors=True)
    elif os.path.exists(path):
        os.remove(path)


def purge_directory(path: str):
    """Delete everything inside `path`, keeping the directory itself."""
    ensure_directory(path)
    for name in os.listdir(path):
        remove_path(os.path.join(path, name))
