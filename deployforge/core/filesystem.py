"""Filesystem helpers shared by the Backup Manager and the local backend."""

from __future__ import annotations

import shutil
import tarfile
from collections.abc import Iterable
from pathlib import Path, PurePosixPath

# Relative path meaning "the whole target directory".
WHOLE_TREE = "."


def normalize_relative(path: str) -> str:
    """Return ``path`` as a clean relative POSIX path.

    Raises ``ValueError`` for absolute paths or paths escaping the root.
    """
    pure = PurePosixPath(path.strip() or WHOLE_TREE)
    if pure.is_absolute() or ".." in pure.parts:
        raise ValueError(f"path {path!r} must be relative and stay inside the target")
    return pure.as_posix()


def collapse_nested(paths: Iterable[str]) -> list[str]:
    """Drop duplicates and any path lying under another listed path.

    Order of first appearance is kept. ``"."`` covers everything, so its
    presence collapses the list to ``["."]``.
    """
    unique = list(dict.fromkeys(paths))
    if WHOLE_TREE in unique:
        return [WHOLE_TREE]
    parts = {p: PurePosixPath(p).parts for p in unique}
    return [
        p for p in unique
        if not any(o != p and parts[p][: len(parts[o])] == parts[o] for o in unique)
    ]


def remove_path(path: Path) -> None:
    """Delete a file, symlink or directory tree if it exists."""
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.is_dir():
        shutil.rmtree(path)


def clear_directory(directory: Path, keep: Iterable[str] = ()) -> None:
    """Remove every entry of ``directory`` except the top-level names in ``keep``."""
    keep_set = set(keep)
    if not directory.is_dir():
        return
    for child in directory.iterdir():
        if child.name not in keep_set:
            remove_path(child)


def move_children(src_dir: Path, dest_dir: Path, skip: Iterable[str] = ()) -> None:
    """Move every top-level entry of ``src_dir`` into ``dest_dir``.

    Entries named in ``skip`` are left behind; existing destination entries
    with the same name are replaced.
    """
    skip_set = set(skip)
    dest_dir.mkdir(parents=True, exist_ok=True)
    for child in sorted(src_dir.iterdir()):
        if child.name in skip_set:
            continue
        dest = dest_dir / child.name
        remove_path(dest)
        shutil.move(str(child), str(dest))


def extract_archive(archive: Path, dest: Path) -> None:
    """Extract a .tar.gz into ``dest``, refusing members that escape it."""
    dest.mkdir(parents=True, exist_ok=True)
    with tarfile.open(archive, "r:gz") as tar:
        tar.extractall(dest, filter="data")


def has_content(path: Path) -> bool:
    """Whether ``path`` is a file, or a directory with at least one entry."""
    if path.is_dir():
        return any(path.iterdir())
    return path.exists() or path.is_symlink()
