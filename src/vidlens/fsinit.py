from __future__ import annotations

import os
from pathlib import Path
from typing import Iterable

from .config import PathsConfig


def set_umask_from_env() -> None:
    umask_value = os.environ.get("VL_UMASK", "002")
    try:
        os.umask(int(umask_value, 8))
    except (ValueError, TypeError):
        os.umask(0o002)


def ensure_runtime_dirs(paths: Iterable[str]) -> None:
    for path in paths:
        if not path:
            continue
        _ensure_dir(Path(path))


def build_default_paths(paths: PathsConfig) -> list[str]:
    db_dir = os.path.dirname(os.path.abspath(paths.state_db))
    return [paths.data_dir, paths.tmp_dir, paths.md_dir, db_dir]


def _ensure_dir(path: Path) -> None:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except PermissionError:
        return
    try:
        path.chmod(0o775)
    except PermissionError:
        return
