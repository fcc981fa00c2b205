from __future__ import annotations

import os
import shutil
import stat
from contextlib import suppress
from pathlib import Path

from jobtemplate.util.path_guard import has_symlink_ancestor, is_symlink_path

SESSION_DIR_PREFIX = "jt-session-"


def session_dir(root: Path, session_id: str) -> Path:
    """Return the working directory path for a session."""
    return root / f"{SESSION_DIR_PREFIX}{session_id}"


def _ensure_directory(path: Path, *, parents: bool = False, mode: int = 0o700) -> None:
    if is_symlink_path(path):
        raise OSError(f"path must not be symlink: {path}")
    try:
        path.mkdir(mode=mode, parents=parents, exist_ok=True)
    except (OSError, RuntimeError) as exc:
        raise OSError(f"failed to create directory path: {path}") from exc
    try:
        meta = path.lstat()
    except (OSError, RuntimeError) as exc:
        raise OSError(f"path must be directory: {path}") from exc
    if is_symlink_path(path) or not stat.S_ISDIR(meta.st_mode):
        raise OSError(f"path must be directory: {path}")


def create_session_dir(root: Path, session_id: str) -> Path:
    """Create a fresh, private session working directory under ``root``."""
    _ensure_directory(root, parents=True)
    path = session_dir(root, session_id)
    if path.exists() or is_symlink_path(path):
        raise OSError(f"session directory already exists: {path}")
    _ensure_directory(path)
    return path


def write_private_file(path: Path, data: str, *, root: Path, executable: bool = False) -> None:
    """Write ``data`` to a new regular file below the session directory ``root``."""
    if has_symlink_ancestor(path, stop_at=root):
        raise OSError(f"path must not include symlink: {path}")
    _ensure_directory(path.parent, parents=True)
    flags = os.O_WRONLY | os.O_CREAT | os.O_EXCL
    if hasattr(os, "O_NOFOLLOW"):
        flags |= os.O_NOFOLLOW
    mode = 0o700 if executable else 0o600
    fd: int | None = None
    try:
        fd = os.open(str(path), flags, mode)
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            fd = None
            f.write(data)
    finally:
        if fd is not None:
            with suppress(OSError):
                os.close(fd)
    # umask may have masked the executable bit at creation time.
    os.chmod(path, mode)


def remove_tree(path: Path) -> None:
    """Delete a session directory, refusing to follow a symlinked root."""
    if is_symlink_path(path):
        path.unlink(missing_ok=True)
        return
    shutil.rmtree(path, ignore_errors=False)
