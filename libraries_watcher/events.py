"""Canonical event vocabulary and classification of native notifications.

watchdog reports what the kernel backend tells it, which is not always
what happened: attribute changes on a directory arrive as modifications
of the directory, moves arrive as one event carrying two paths, and by
the time a notification is handled the path it names may already be gone.
``classify`` turns one watchdog event into zero or more ``Change`` records
using a fresh ``lstat`` as ground truth.
"""

from __future__ import annotations

import enum
import logging
import os
import stat
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, NamedTuple

from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
)

if TYPE_CHECKING:
    from libraries_watcher.library import WatchedLibrary

logger = logging.getLogger(__name__)


class EventKind(str, enum.Enum):
    ADD = "add"
    ADD_DIR = "addDir"
    CHANGE = "change"
    CHANGE_DIR = "changeDir"
    UNLINK = "unlink"
    UNLINK_DIR = "unlinkDir"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class CanonicalEvent:
    """A normalised filesystem change inside one watched library."""

    kind: EventKind
    is_directory: bool
    local_path: str
    source_path: str
    stats: os.stat_result | None
    library: WatchedLibrary

    def __str__(self) -> str:
        return f"{self.kind} {self.local_path or '/'}"


class Change(NamedTuple):
    """One classified change, before it is bound to a library."""

    kind: EventKind
    is_directory: bool
    path: str
    stats: os.stat_result | None


def _fs_path(value: Any) -> str:
    return os.path.normpath(os.fsdecode(value))


def _is_child(path: str, watched_path: str) -> bool:
    return os.path.dirname(path) == watched_path


def _is_real_directory(stats: os.stat_result) -> bool:
    # lstat never reports a symlink as a directory
    return stat.S_ISDIR(stats.st_mode)


def _probe(
    path: str, event_type: str, lstat: Callable[[str], os.stat_result]
) -> os.stat_result | None:
    try:
        return lstat(path)
    except FileNotFoundError:
        logger.error("Can't handle event %s for %s - it no longer exists", event_type, path)
        return None


def _created(path: str, event_type: str, lstat) -> list[Change]:
    stats = _probe(path, event_type, lstat)
    if stats is None:
        return []
    if _is_real_directory(stats):
        return [Change(EventKind.ADD_DIR, True, path, stats)]
    return [Change(EventKind.ADD, False, path, stats)]


def _removed(path: str, is_directory: bool) -> Change:
    kind = EventKind.UNLINK_DIR if is_directory else EventKind.UNLINK
    return Change(kind, is_directory, path, None)


def classify(
    event: FileSystemEvent,
    watched_path: str,
    lstat: Callable[[str], os.stat_result] = os.lstat,
) -> list[Change]:
    """Classify a watchdog event seen by the watch on *watched_path*.

    Only the watched directory itself and its direct children are
    considered; anything else is dropped.
    """
    watched_path = os.path.normpath(watched_path)
    event_type = event.event_type
    src_path = _fs_path(event.src_path)
    is_self = src_path == watched_path

    if event_type == EVENT_TYPE_MOVED:
        changes = []
        if is_self:
            changes.append(_removed(src_path, True))
        elif _is_child(src_path, watched_path):
            changes.append(_removed(src_path, event.is_directory))
        dest_path = _fs_path(event.dest_path) if event.dest_path else ""
        if dest_path and _is_child(dest_path, watched_path):
            changes.extend(_created(dest_path, event_type, lstat))
        return changes

    if not is_self and not _is_child(src_path, watched_path):
        return []

    if event_type == EVENT_TYPE_CREATED:
        if is_self:
            return []
        return _created(src_path, event_type, lstat)

    if event_type == EVENT_TYPE_DELETED:
        return [_removed(src_path, is_self or event.is_directory)]

    if event_type == EVENT_TYPE_MODIFIED:
        stats = _probe(src_path, event_type, lstat)
        if stats is None:
            return []
        if is_self:
            # Backends report chmod/chown on the watched directory this way
            if _is_real_directory(stats):
                return [Change(EventKind.CHANGE_DIR, True, src_path, stats)]
            return []
        return [Change(EventKind.CHANGE, _is_real_directory(stats), src_path, stats)]

    # opened / closed notifications carry nothing to mirror
    return []
