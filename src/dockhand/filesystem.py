"""Atomic filesystem helpers used when materialising service directories."""
from __future__ import annotations

import os
import stat
import tempfile
from pathlib import Path

DIRECTORY_MODE = 0o755


def ensure_directory(path: Path, mode: int = DIRECTORY_MODE) -> bool:
    """Create *path* (and parents) with *mode*; return ``True`` when changed.

    Raises ``NotADirectoryError`` when something other than a directory
    already occupies *path*.
    """
    changed = False
    if path.exists() or path.is_symlink():
        if not path.is_dir():
            raise NotADirectoryError(f"{path} exists and is not a directory.")
    else:
        path.mkdir(parents=True, exist_ok=True)
        changed = True
    current = stat.S_IMODE(path.stat().st_mode)
    if current != mode:
        path.chmod(mode)
        changed = True
    return changed


def write_text_atomic(path: Path, content: str, *, mode: int = 0o644) -> bool:
    """Write *content* to *path* atomically; return ``False`` when unchanged.

    The text is written to a temporary file in the same directory, flushed to
    disk and moved into place with ``os.replace`` so readers never observe a
    partially written file.
    """
    data = content.encode("utf-8")
    try:
        existing = path.read_bytes()
    except FileNotFoundError:
        existing = None
    if existing == data and stat.S_IMODE(path.stat().st_mode) == mode:
        return False

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    temp = Path(temp_name)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        temp.chmod(mode)
        os.replace(temp, path)
    except BaseException:
        temp.unlink(missing_ok=True)
        raise
    return True


__all__ = ["DIRECTORY_MODE", "ensure_directory", "write_text_atomic"]
