"""
Reconciler for Libraries Watcher.

Applies canonical events to every destination of the owning library.
Every operation re-checks the filesystem instead of trusting the event,
because source and destination may have changed between the moment the
notification fired and the moment it is applied.  Applying the same
``add`` or ``addDir`` twice leaves the destination in the same state as
applying it once.

Files are copied whole (cloned where the filesystem supports it) into a
temporary sibling and renamed into place.  Directories stay writable
while they are being filled and get their final mode last.  Recursive
removal is retried with a doubling delay.
"""

from __future__ import annotations

import contextlib
import errno
import functools
import logging
import os
import shutil
import stat
import tempfile
import threading
import time
from collections import deque
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from libraries_watcher.events import CanonicalEvent, EventKind
from libraries_watcher.paths import join_local, path_exists, target_path
from libraries_watcher.platform_utils import IS_LINUX, SUPPORTS_CHOWN

if TYPE_CHECKING:
    from libraries_watcher.library import WatchedLibrary

logger = logging.getLogger(__name__)

_COPY_CHUNK = 1024 * 1024  # 1 MiB chunks when cloning is unavailable
_FICLONE = 0x40049409  # linux/fs.h
_CLONE_UNSUPPORTED = frozenset(
    {errno.EOPNOTSUPP, errno.ENOTTY, errno.EXDEV, errno.EINVAL, errno.ENOSYS, errno.EPERM}
)


def _clone(src_fd: int, dst_fd: int) -> bool:
    """Try a copy-on-write clone of *src_fd* into *dst_fd*."""
    if not IS_LINUX:
        return False
    import fcntl

    try:
        fcntl.ioctl(dst_fd, _FICLONE, src_fd)
    except OSError as exc:
        if exc.errno in _CLONE_UNSUPPORTED:
            return False
        raise
    return True


def _lstat_or_none(path: str) -> os.stat_result | None:
    try:
        return os.lstat(path)
    except FileNotFoundError:
        return None


@contextlib.contextmanager
def _writable_dir(path: str) -> Iterator[None]:
    """Lend the owner write and search permission on *path* for the duration."""
    try:
        mode = stat.S_IMODE(os.stat(path).st_mode)
    except FileNotFoundError:
        mode = None
    if mode is None or os.access(path, os.W_OK | os.X_OK):
        yield
        return

    os.chmod(path, mode | stat.S_IRWXU)
    try:
        yield
    finally:
        try:
            os.chmod(path, mode)
        except FileNotFoundError as exc:
            logger.error("Couldn't restore mode of %s - it has been deleted: %s", path, exc)


@dataclass
class MirrorStats:
    """Aggregated reconciliation statistics."""

    total_applied: int = 0
    total_races: int = 0
    total_failed: int = 0
    last_event: str = ""
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def record(self, event: CanonicalEvent, race: bool = False, failed: bool = False) -> None:
        with self._lock:
            self.last_event = str(event)
            if failed:
                self.total_failed += 1
            elif race:
                self.total_races += 1
            else:
                self.total_applied += 1


class Reconciler:
    """
    Mirrors canonical events into destination trees.

    Parameters
    ----------
    verbose : bool
        Log every applied mutation at INFO instead of DEBUG.
    removal_retries : int
        Retries for a failed recursive removal (0 = try once).
    removal_retry_delay : float
        Seconds before the first retry; doubled for every further one.
    """

    def __init__(
        self,
        verbose: bool = False,
        removal_retries: int = 3,
        removal_retry_delay: float = 0.1,
    ):
        self.verbose = verbose
        self._removal_retries = max(0, removal_retries)
        self._removal_retry_delay = removal_retry_delay
        self.stats = MirrorStats()
        self._handlers = {
            EventKind.ADD: self._apply_add,
            EventKind.ADD_DIR: self._apply_add_dir,
            EventKind.CHANGE: self._apply_change,
            EventKind.CHANGE_DIR: self._apply_change_dir,
            EventKind.UNLINK: self._apply_unlink,
            EventKind.UNLINK_DIR: self._apply_unlink_dir,
        }

    def _progress(self, msg: str, *args: Any) -> None:
        logger.log(logging.INFO if self.verbose else logging.DEBUG, msg, *args)

    # ---- entry points ----

    def apply(self, event: CanonicalEvent, destinations: Iterable[str] | None = None) -> None:
        """Apply *event* to *destinations* (default: all of the library's)."""
        handler = self._handlers.get(event.kind)
        if handler is None:
            logger.error("%s %s unknown!", event.local_path or "/", event.kind)
            return
        self._apply_to(event, destinations, handler)

    def _apply_to(
        self,
        event: CanonicalEvent,
        destinations: Iterable[str] | None,
        handler: Callable[[CanonicalEvent, str, str], Any],
    ) -> None:
        if destinations is None:
            destinations = event.library.library.destinations

        for destination in destinations:
            target = target_path(destination, event.local_path)
            try:
                handler(event, destination, target)
            except FileNotFoundError as exc:
                logger.error(
                    "Couldn't apply %s to %s - path has been deleted: %s", event, target, exc
                )
                self.stats.record(event, race=True)
            except FileExistsError as exc:
                logger.error(
                    "Couldn't apply %s to %s - path already exists: %s", event, target, exc
                )
                self.stats.record(event, race=True)
            except Exception:
                self.stats.record(event, failed=True)
                raise
            else:
                self.stats.record(event)

    def resync(
        self,
        library: WatchedLibrary,
        source_dir: str,
        local_path: str,
        destinations: Iterable[str] | None = None,
    ) -> None:
        """Re-apply ``add``/``addDir`` for everything currently in *source_dir*."""
        modes: list[tuple[str, int]] = []
        try:
            self._resync(library, source_dir, local_path, destinations, modes)
        finally:
            self._restore_modes(modes)

    def _resync(
        self,
        library: WatchedLibrary,
        source_dir: str,
        local_path: str,
        destinations: Iterable[str] | None,
        modes: list[tuple[str, int]],
    ) -> None:
        """Walk *source_dir* breadth first, creating directories before their contents.

        Every directory created or visited is left writable and recorded in
        *modes*; the caller restores the final modes once the walk is done.
        """
        destinations = list(destinations) if destinations is not None else None
        create_dir = functools.partial(self._create_dir, modes=modes)
        pending = deque([(source_dir, local_path)])

        while pending:
            directory, directory_local = pending.popleft()
            try:
                with os.scandir(directory) as it:
                    entries = sorted(it, key=lambda entry: entry.name)
            except (FileNotFoundError, NotADirectoryError):
                logger.error("Couldn't resync %s - it no longer exists", directory)
                continue

            for entry in entries:
                child_local = join_local(directory_local, entry.name)
                if library.is_ignored(entry.name, child_local, entry.path):
                    logger.debug("Ignoring %s during resync", entry.path)
                    continue
                try:
                    stats = entry.stat(follow_symlinks=False)
                except FileNotFoundError:
                    continue
                is_directory = stat.S_ISDIR(stats.st_mode)
                event = CanonicalEvent(
                    kind=EventKind.ADD_DIR if is_directory else EventKind.ADD,
                    is_directory=is_directory,
                    local_path=child_local,
                    source_path=entry.path,
                    stats=stats,
                    library=library,
                )
                if is_directory:
                    self._apply_to(event, destinations, create_dir)
                    pending.append((entry.path, child_local))
                else:
                    self._apply_to(event, destinations, self._apply_add)

    def _restore_modes(self, modes: list[tuple[str, int]]) -> None:
        # Deepest first, so a read-only parent is locked only after its children
        for target, mode in reversed(modes):
            try:
                os.chmod(target, mode)
            except FileNotFoundError as exc:
                logger.error("Couldn't restore mode of %s - it has been deleted: %s", target, exc)

    # ---- event kinds ----

    def _apply_add(self, event: CanonicalEvent, destination: str, target: str) -> None:
        self._ensure_parent(target)
        stats = os.lstat(event.source_path)

        if stat.S_ISDIR(stats.st_mode):
            # Replaced by a directory since the event fired
            self._apply_add_dir(event, destination, target)
            return

        with _writable_dir(os.path.dirname(target)):
            if stat.S_ISLNK(stats.st_mode):
                self._mirror_symlink(event.source_path, target)
            else:
                self._progress("Copy %s to %s", event.source_path, target)
                self._copy_file(event.source_path, target)

    def _apply_add_dir(self, event: CanonicalEvent, destination: str, target: str) -> None:
        modes: list[tuple[str, int]] = []
        try:
            if self._create_dir(event, destination, target, modes):
                self._resync(
                    event.library, event.source_path, event.local_path, [destination], modes
                )
        finally:
            self._restore_modes(modes)

    def _create_dir(
        self,
        event: CanonicalEvent,
        destination: str,
        target: str,
        modes: list[tuple[str, int]],
    ) -> bool:
        """Make *target* a writable directory and record its final mode in *modes*.

        Returns False when the source is no longer a directory, in which
        case it has been mirrored as a file or symlink instead.
        """
        self._ensure_parent(target)
        stats = os.lstat(event.source_path)
        if not stat.S_ISDIR(stats.st_mode):
            self._apply_add(event, destination, target)
            return False

        existing = _lstat_or_none(target)
        if existing is not None and stat.S_ISDIR(existing.st_mode):
            # An existing directory keeps its mode; it is only opened up while filled
            if not os.access(target, os.W_OK | os.X_OK):
                current = stat.S_IMODE(existing.st_mode)
                os.chmod(target, current | stat.S_IRWXU)
                modes.append((target, current))
            return True

        mode = stat.S_IMODE(stats.st_mode)
        with _writable_dir(os.path.dirname(target)):
            if existing is not None:
                self._progress("Replacing %s with a directory", target)
                self._remove_entry(target, existing)

            self._progress("Create dir %s", target)
            try:
                os.mkdir(target, mode | stat.S_IRWXU)
            except FileExistsError as exc:
                logger.error("Couldn't create directory %s - it already exists: %s", target, exc)
            self._reproduce_owner(target, stats)
            # The final mode is applied once the contents are in place
            os.chmod(target, mode | stat.S_IRWXU)
        modes.append((target, mode))
        return True

    def _apply_change(self, event: CanonicalEvent, destination: str, target: str) -> None:
        if event.is_directory:
            # A directory change carries no information about what changed
            logger.debug("No action for change of directory %s", event.local_path)
            return
        self._apply_add(event, destination, target)

    def _apply_change_dir(self, event: CanonicalEvent, destination: str, target: str) -> None:
        stats = event.stats or os.lstat(event.source_path)
        mode = stat.S_IMODE(stats.st_mode)
        self._progress("Change mode of %s to %o", target, mode)
        try:
            os.chmod(target, mode)
        except FileNotFoundError as exc:
            logger.error("Couldn't change file mode - file has been deleted: %s", exc)

    def _apply_unlink(self, event: CanonicalEvent, destination: str, target: str) -> None:
        if os.path.lexists(event.source_path):
            self._progress("%s exists again - keeping %s", event.source_path, target)
            return

        existing = _lstat_or_none(target)
        if existing is None:
            return
        if stat.S_ISREG(existing.st_mode) or stat.S_ISLNK(existing.st_mode):
            self._progress("Delete %s", target)
            with _writable_dir(os.path.dirname(target)), contextlib.suppress(FileNotFoundError):
                os.unlink(target)

    def _apply_unlink_dir(self, event: CanonicalEvent, destination: str, target: str) -> None:
        source = _lstat_or_none(event.source_path)
        if source is not None and stat.S_ISDIR(source.st_mode):
            self._progress("%s exists again - keeping %s", event.source_path, target)
            return

        if os.path.lexists(target):
            self._progress("Delete directory %s", target)
            with _writable_dir(os.path.dirname(target)):
                self._remove_tree(target)

    # ---- filesystem helpers ----

    def _ensure_parent(self, target: str) -> None:
        parent = os.path.dirname(target)
        if not path_exists(parent):
            self._progress("Path doesn't exist - create it: %s", parent)
            os.makedirs(parent, exist_ok=True)

    def _mirror_symlink(self, source: str, target: str) -> None:
        link = os.readlink(source)
        existing = _lstat_or_none(target)
        if existing is not None:
            if stat.S_ISLNK(existing.st_mode) and os.readlink(target) == link:
                logger.debug("%s already links to %s", target, link)
                return
            self._remove_entry(target, existing)

        self._progress("Making symlink here %s with link: %s", target, link)
        os.symlink(link, target)

    def _copy_file(self, source: str, target: str) -> None:
        """Copy *source* over *target* via a temporary sibling."""
        with open(source, "rb") as fsrc:
            existing = _lstat_or_none(target)
            if existing is not None and stat.S_ISDIR(existing.st_mode):
                self._remove_tree(target)

            fd, tmp_path = tempfile.mkstemp(
                prefix=f".{os.path.basename(target)}.", suffix=".tmp", dir=os.path.dirname(target)
            )
            try:
                with os.fdopen(fd, "wb") as fdst:
                    if not _clone(fsrc.fileno(), fdst.fileno()):
                        shutil.copyfileobj(fsrc, fdst, _COPY_CHUNK)
                shutil.copymode(source, tmp_path)
                os.replace(tmp_path, target)
            except BaseException:
                with contextlib.suppress(FileNotFoundError):
                    os.unlink(tmp_path)
                raise

    def _reproduce_owner(self, target: str, stats: os.stat_result) -> None:
        if not SUPPORTS_CHOWN:
            return
        try:
            os.chown(target, stats.st_uid, stats.st_gid, follow_symlinks=False)
        except PermissionError as exc:
            logger.error("Couldn't reproduce owner of %s: %s", target, exc)

    def _remove_entry(self, target: str, existing: os.stat_result) -> None:
        if stat.S_ISDIR(existing.st_mode):
            self._remove_tree(target)
        else:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(target)

    def _remove_tree(self, target: str) -> None:
        """Remove *target* recursively, retrying transient failures."""
        max_attempts = 1 + self._removal_retries
        delay = self._removal_retry_delay
        for attempt in range(1, max_attempts + 1):
            try:
                if os.path.islink(target) or not os.path.isdir(target):
                    os.unlink(target)
                else:
                    shutil.rmtree(target)
                return
            except OSError as exc:
                if not os.path.lexists(target):
                    return
                if attempt >= max_attempts:
                    logger.error("Giving up removing %s after %d attempts", target, attempt)
                    raise
                logger.warning(
                    "Removing %s failed (%s), retrying in %.2fs (attempt %d/%d)",
                    target,
                    exc,
                    delay,
                    attempt,
                    max_attempts,
                )
                time.sleep(delay)
                delay *= 2
