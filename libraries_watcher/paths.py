"""Path helpers shared by the listeners, libraries and the reconciler."""

from __future__ import annotations

import os
from collections.abc import Callable, Iterable

# Directories holding package/module caches that are never mirrored
MODULE_CACHE_DIRS = frozenset({"node_modules", "__pycache__"})

# Transient sidecar files written next to embedded databases
JOURNAL_SUFFIXES = (".sqlite-journal", ".db-journal")

IgnoreFunction = Callable[..., bool]


def path_exists(path: str) -> bool:
    """Return True when *path* is currently accessible."""
    try:
        os.stat(path)
    except (OSError, ValueError):
        return False
    return True


def ignore_file(path: str) -> bool:
    """Return True for database journal sidecar files."""
    return path.endswith(JOURNAL_SUFFIXES)


def should_ignore(file_name: str, local_path: str = "", full_path: str = "") -> bool:
    """Default ignore predicate.

    Skips dotfiles, module cache directories and database journals.
    ``file_name`` is the entry name relative to the listening directory,
    ``local_path`` its path inside the library and ``full_path`` its
    absolute source path.
    """
    name = os.path.basename(file_name)
    if name.startswith(".") or name in MODULE_CACHE_DIRS:
        return True
    return ignore_file(full_path or file_name)


def join_local(local_path: str, name: str) -> str:
    """Join *name* onto a library-relative path (``""`` is the library root)."""
    return os.path.join(local_path, name) if local_path else name


def target_path(destination: str, local_path: str) -> str:
    """Return where *local_path* lives inside *destination*."""
    return os.path.join(destination, local_path) if local_path else destination


def is_within(local_path: str, parent: str) -> bool:
    """Return True when *local_path* is *parent* or lies below it."""
    if not parent:
        return True
    return local_path == parent or local_path.startswith(parent + os.sep)


def excluded_local_paths(source: str, destinations: Iterable[str]) -> frozenset[str]:
    """Return the local paths of destinations that live inside *source*.

    Those directories are output of the mirror itself and must never be
    picked up as source content.
    """
    excluded = set()
    for destination in destinations:
        relative = os.path.relpath(destination, source)
        if relative == os.curdir or relative == os.pardir:
            continue
        if relative.startswith(os.pardir + os.sep):
            continue
        excluded.add(relative)
    return frozenset(excluded)
