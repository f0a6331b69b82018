"""
Filesystem helpers for session directories: contained path resolution,
file writes, artifact listing and guarded deletion.

Every helper refuses to touch paths that resolve outside the root it is
given.
"""

from __future__ import annotations

import contextlib
import os
import shutil
import tempfile
from pathlib import Path, PurePosixPath

PathLike = str | os.PathLike[str]

__all__ = [
    "atomic_write",
    "is_within",
    "list_files",
    "resolve_within",
    "safe_delete",
]


def resolve_within(root: PathLike, relative: str) -> Path:
    """
    Resolve ``relative`` against ``root`` and return the absolute path.

    Raises ``ValueError`` when ``relative`` is empty, absolute, contains a
    ``..`` segment, or resolves (through symlinks) outside ``root``.
    """

    if not isinstance(relative, str):
        raise ValueError(f"path must be a string, got {type(relative).__name__}")
    if not relative.strip():
        raise ValueError("path must not be empty")
    # Surrounding spaces are part of the name; "a.txt" and " a.txt" are different files.
    cleaned = relative.replace("\\", "/")
    pure = PurePosixPath(cleaned)
    if pure.is_absolute():
        raise ValueError(f"path must be relative: {relative!r}")
    if ".." in pure.parts:
        raise ValueError(f"path must not traverse upwards: {relative!r}")
    if "\x00" in cleaned:
        raise ValueError(f"path contains a NUL byte: {relative!r}")

    resolved_root = Path(root).resolve(strict=True)
    candidate = (resolved_root / Path(*pure.parts)).resolve(strict=False)
    if candidate == resolved_root or not _is_relative_to(candidate, resolved_root):
        raise ValueError(f"path escapes {resolved_root!s}: {relative!r}")
    return candidate


def atomic_write(
    path: PathLike,
    data: bytes | str,
    *,
    encoding: str = "utf-8",
    make_parents: bool = False,
    durable: bool = True,
) -> None:
    """
    Atomically write ``data`` to ``path``.

    The data goes to a temp file in the destination directory which then
    replaces the target via ``os.replace``. With ``durable`` the file and its
    directory are fsynced first.
    """

    target = Path(path)
    if make_parents:
        target.parent.mkdir(parents=True, exist_ok=True)
    target_parent = target.parent.resolve(strict=True)
    if not target_parent.is_dir():
        raise NotADirectoryError(f"{target_parent!s} is not a directory")

    fd, temp_name = tempfile.mkstemp(
        prefix=f".{target.name}.",
        suffix=".tmp",
        dir=str(target_parent),
    )
    temp_path = Path(temp_name)

    try:
        payload = data if isinstance(data, bytes) else data.encode(encoding)
        with os.fdopen(fd, "wb") as file_handle:
            file_handle.write(payload)
            file_handle.flush()
            if durable:
                os.fsync(file_handle.fileno())

        os.replace(temp_path, target)
        if durable:
            _fsync_directory(target_parent)
    except Exception:
        with contextlib.suppress(OSError):
            temp_path.unlink(missing_ok=True)
        raise


def is_within(child: PathLike, parent: PathLike) -> bool:
    """Return ``True`` if resolved ``child`` is within resolved ``parent``."""

    try:
        resolved_parent = Path(parent).resolve(strict=True)
    except FileNotFoundError:
        return False
    if not resolved_parent.is_dir():
        return False

    try:
        resolved_child = Path(child).resolve(strict=True)
    except FileNotFoundError:
        return False

    return _is_relative_to(resolved_child, resolved_parent)


def list_files(root: PathLike) -> tuple[str, ...]:
    """
    Return every regular file under ``root`` as a sorted, relative POSIX path.

    Symlinks are listed but never followed. Raises ``FileNotFoundError`` when
    ``root`` does not exist.
    """

    base = Path(root)
    if not base.is_dir():
        raise FileNotFoundError(f"{base!s} is not a directory")

    found: list[str] = []
    for dirpath, _dirnames, filenames in os.walk(base, followlinks=False):
        current = Path(dirpath)
        for name in filenames:
            found.append((current / name).relative_to(base).as_posix())
    found.sort()
    return tuple(found)


def safe_delete(path: PathLike, root: PathLike) -> None:
    """
    Delete ``path`` only if it is contained within ``root``.

    Symlinks are unlinked without traversing into their targets. A missing
    ``path`` is not an error.
    """

    workspace = Path(root).resolve(strict=True)
    if not workspace.is_dir():
        raise NotADirectoryError(f"{workspace!s} is not a directory")

    target = Path(path)
    if not target.exists() and not target.is_symlink():
        return

    parent_resolved = target.parent.resolve(strict=True)
    candidate = parent_resolved / target.name
    if candidate == workspace or not _is_relative_to(candidate, workspace):
        raise ValueError(f"refusing to delete path outside {workspace!s}: {target!s}")

    if target.is_symlink():
        target.unlink()
        return

    resolved_target = target.resolve(strict=True)
    if not _is_relative_to(resolved_target, workspace):
        raise ValueError(f"refusing to delete path outside {workspace!s}: {target!s}")

    if target.is_dir():
        shutil.rmtree(target)
        return

    target.unlink()


def _is_relative_to(child: Path, parent: Path) -> bool:
    try:
        child.relative_to(parent)
    except ValueError:
        return False
    return True


def _fsync_directory(path: Path) -> None:
    """Best-effort directory fsync; some filesystems do not support it."""

    if os.name == "nt":
        return

    flags = os.O_RDONLY
    if hasattr(os, "O_DIRECTORY"):
        flags |= os.O_DIRECTORY

    try:
        dir_fd = os.open(path, flags)
    except OSError:
        return

    try:
        os.fsync(dir_fd)
    except OSError:
        return
    finally:
        os.close(dir_fd)
