"""Watched library: the tree of directory listeners for one library.

The library keeps one ``DirectoryListener`` per watched directory in a
map keyed by absolute source path.  Subdirectories are discovered by
listing them once at startup; afterwards every ``addDir`` event starts a
new discovery pass rooted at the created directory and every
``unlinkDir`` event releases the listeners of the removed subtree.
"""

from __future__ import annotations

import logging
import os
import threading
from typing import TYPE_CHECKING, Any

from watchdog.observers import Observer

from libraries_watcher.config import Library
from libraries_watcher.events import CanonicalEvent, EventKind
from libraries_watcher.listener import DEFAULT_POLL_INTERVAL, DirectoryListener
from libraries_watcher.paths import (
    IgnoreFunction,
    excluded_local_paths,
    is_within,
    join_local,
    should_ignore,
)

if TYPE_CHECKING:
    from libraries_watcher.watcher import LibrariesWatcher

logger = logging.getLogger(__name__)


class WatchedLibrary:
    """Watches every directory of one library and forwards its events."""

    def __init__(
        self,
        library: Library,
        libraries_watcher: LibrariesWatcher,
        verbose: bool = False,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        ignore: IgnoreFunction = should_ignore,
        initial_sync: bool = True,
    ):
        self.library = library
        self.libraries_watcher = libraries_watcher
        self.verbose = verbose
        self.poll_interval = poll_interval
        self.initial_sync = initial_sync
        self._ignore = ignore
        self._observer = Observer()
        self._observer.daemon = True
        self._listeners: dict[str, DirectoryListener] = {}
        self._lock = threading.RLock()
        self.excluded = excluded_local_paths(library.source, library.destinations)

    def __repr__(self) -> str:
        return f"<WatchedLibrary {self.library.name}>"

    @property
    def name(self) -> str:
        return self.library.name

    @property
    def root_listener(self) -> DirectoryListener | None:
        return self._listeners.get(self.library.source)

    @property
    def watched_paths(self) -> list[str]:
        with self._lock:
            return sorted(self._listeners)

    def _progress(self, msg: str, *args: Any) -> None:
        logger.log(logging.INFO if self.verbose else logging.DEBUG, msg, *args)

    # ---- lifecycle ----

    def watch(self) -> None:
        """Watch the library root and every non-ignored subdirectory."""
        self.library.validate()
        if not self._observer.is_alive():
            self._observer.start()
        self.watch_tree(self.library.source, "")
        logger.info(
            "Watching library '%s' (%s, %d directories)",
            self.name,
            self.library.source,
            len(self._listeners),
        )
        if self.initial_sync and self.root_listener is not None:
            self.root_listener.emit_initial_state()

    def stop_watch(self) -> None:
        """Release every listener, whatever its depth, and stop the observer."""
        with self._lock:
            listeners = list(self._listeners.values())
            self._listeners.clear()
        for listener in listeners:
            listener.stop_listener(permanent=True)
        if self._observer.is_alive():
            self._observer.stop()
            self._observer.join(timeout=5)
        logger.info("Stopped watching library '%s'", self.name)

    def watch_tree(self, source_path: str, local_path: str) -> None:
        """Watch *source_path* and, depth first, all directories below it."""
        if self.is_excluded(local_path):
            self._progress("Not watching destination inside source: %s", source_path)
            return

        self._ensure_listener(source_path, local_path)

        with os.scandir(source_path) as it:
            entries = sorted(it, key=lambda entry: entry.name)

        for entry in entries:
            if not entry.is_dir(follow_symlinks=False):
                continue
            child_local = join_local(local_path, entry.name)
            if self.is_ignored(entry.name, child_local, entry.path):
                self._progress("Ignoring directory %s", entry.path)
                continue
            self._progress("Found directory %s", child_local)
            self.watch_tree(entry.path, child_local)

    def _ensure_listener(self, source_path: str, local_path: str) -> DirectoryListener:
        source_path = os.path.normpath(source_path)
        with self._lock:
            listener = self._listeners.get(source_path)
            if listener is not None:
                # The root restarts itself after removal; others get replaced when stale
                if not local_path or listener.is_current():
                    return listener
                logger.debug("Replacing stale listener for %s", source_path)
                listener.stop_listener(permanent=True)

            listener = DirectoryListener(
                source_path=source_path,
                local_path=local_path,
                library=self,
                observer=self._observer,
                verbose=self.verbose,
                poll_interval=self.poll_interval,
            )
            self._listeners[source_path] = listener
            try:
                listener.watch()
            except OSError:
                del self._listeners[source_path]
                raise
            return listener

    def release_tree(self, local_path: str) -> None:
        """Stop the listeners of a removed directory and everything below it."""
        released = []
        with self._lock:
            for source_path, listener in list(self._listeners.items()):
                if not listener.local_path:
                    continue
                if not is_within(listener.local_path, local_path):
                    continue
                if listener.is_current():
                    continue
                released.append(listener)
                del self._listeners[source_path]

        for listener in released:
            self._progress("Releasing listener for %s", listener.source_path)
            listener.stop_listener(permanent=True)

    # ---- filtering ----

    def is_excluded(self, local_path: str) -> bool:
        """Return True for paths inside a destination that lives in the source tree."""
        return any(is_within(local_path, excluded) for excluded in self.excluded)

    def is_ignored(self, file_name: str, local_path: str, full_path: str) -> bool:
        if self.is_excluded(local_path):
            return True
        return bool(self._ignore(file_name=file_name, local_path=local_path, full_path=full_path))

    # ---- events ----

    def forward(self, event: CanonicalEvent) -> None:
        """Pass an event from one of the listeners on to the libraries watcher."""
        if event.local_path and self.is_excluded(event.local_path):
            logger.debug("Dropping %s inside a destination", event)
            return
        self.libraries_watcher.callback(event)

    def handle_event(self, event: CanonicalEvent) -> None:
        """Keep the listener tree in step with an event before it is applied."""
        if event.kind is EventKind.ADD_DIR:
            try:
                self.watch_tree(event.source_path, event.local_path)
            except FileNotFoundError as exc:
                logger.error("Couldn't watch %s - it no longer exists: %s", event.source_path, exc)
            except NotADirectoryError as exc:
                logger.error("Couldn't watch %s - it is no longer a directory: %s", event.source_path, exc)
        elif event.kind is EventKind.UNLINK_DIR:
            self.release_tree(event.local_path)
