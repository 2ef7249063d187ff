"""Directory listener: one native watch handle bound to one directory.

Each listener schedules a non-recursive watchdog watch on its library's
observer, classifies the notifications it receives and forwards them to
the owning library as ``CanonicalEvent`` objects.  When the watched
directory itself disappears the listener releases its handle and polls
for the directory to come back, then watches it again and announces
everything found in it as new.
"""

from __future__ import annotations

import enum
import errno
import logging
import os
import threading
from typing import TYPE_CHECKING, Any

from watchdog.events import FileSystemEvent, FileSystemEventHandler

from libraries_watcher.events import CanonicalEvent, EventKind, classify
from libraries_watcher.paths import join_local, path_exists

if TYPE_CHECKING:
    from libraries_watcher.library import WatchedLibrary

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 0.2


class ListenerState(enum.Enum):
    INITIALIZING = "initializing"
    ACTIVE = "active"
    WAITING = "waiting"  # watched directory removed, polling for it
    STOPPED = "stopped"


class _ListenerEventHandler(FileSystemEventHandler):
    """Routes watchdog callbacks into the owning listener."""

    def __init__(self, listener: DirectoryListener):
        super().__init__()
        self._listener = listener

    def on_any_event(self, event: FileSystemEvent) -> None:
        # Runs on the observer thread; an escaping exception would kill it
        try:
            self._listener.on_native_event(event)
        except Exception:
            logger.exception(
                "Error handling %s for %s", event.event_type, self._listener.source_path
            )


class DirectoryListener:
    """Owns the watch handle of a single directory inside a library."""

    def __init__(
        self,
        source_path: str,
        local_path: str,
        library: WatchedLibrary,
        observer: Any,
        verbose: bool = False,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ):
        self.source_path = os.path.normpath(source_path)
        self.local_path = local_path
        self.library = library
        self.verbose = verbose
        self.poll_interval = poll_interval
        self.state = ListenerState.STOPPED
        self._observer = observer
        self._handler = _ListenerEventHandler(self)
        self._watch = None
        self._identity: tuple[int, int] | None = None
        self._lock = threading.RLock()
        self._halted = threading.Event()
        self._restarting = threading.Lock()

    def __repr__(self) -> str:
        return f"<DirectoryListener {self.source_path} {self.state.value}>"

    @property
    def active(self) -> bool:
        return self.state is ListenerState.ACTIVE

    @property
    def initial(self) -> bool:
        return self.state is ListenerState.INITIALIZING

    def _progress(self, msg: str, *args: Any) -> None:
        logger.log(logging.INFO if self.verbose else logging.DEBUG, msg, *args)

    # ---- lifecycle ----

    def watch(self, process_initial_events: bool = False) -> None:
        """Establish the watch handle.

        Raises ``FileNotFoundError`` when the directory is gone.  With
        *process_initial_events* the directory is announced as newly
        added once the handle exists, so its whole content gets mirrored.
        """
        with self._lock:
            if self._watch is not None:
                logger.warning("%s already has a live watch handle", self.source_path)
                return

            self.state = ListenerState.INITIALIZING
            self._halted.clear()
            try:
                if not path_exists(self.source_path):
                    raise FileNotFoundError(
                        errno.ENOENT, "Directory to watch does not exist", self.source_path
                    )
                stats = os.lstat(self.source_path)
                self._watch = self._observer.schedule(
                    self._handler, self.source_path, recursive=False
                )
            except OSError:
                self.state = ListenerState.STOPPED
                raise

            self._identity = (stats.st_dev, stats.st_ino)
            self.state = ListenerState.ACTIVE

        self._progress("Watching %s", self.source_path)

        if process_initial_events:
            self.emit_initial_state()

    def stop_listener(self, permanent: bool = False) -> None:
        """Release the watch handle.

        Calling it on an inactive listener is a no-op.  *permanent* also
        halts a pending reappearance poll and prevents future restarts.
        """
        with self._lock:
            if permanent:
                self._halted.set()

            if self._watch is None:
                logger.debug("Listener wasn't active for %s", self.source_path)
                if permanent:
                    self.state = ListenerState.STOPPED
                return

            self._progress("Stop listener for %s", self.source_path)
            watch, self._watch = self._watch, None
            self.state = ListenerState.STOPPED
            try:
                self._observer.unschedule(watch)
            except KeyError:
                # The observer already dropped the emitter
                logger.debug("Watch handle for %s was already released", self.source_path)

    def is_current(self) -> bool:
        """Return True while the handle is live and bound to the directory now at the path."""
        if not self.active or self._identity is None:
            return False
        try:
            stats = os.lstat(self.source_path)
        except FileNotFoundError:
            return False
        return (stats.st_dev, stats.st_ino) == self._identity

    def emit_initial_state(self) -> None:
        """Announce the watched directory as newly added."""
        try:
            stats = os.lstat(self.source_path)
        except FileNotFoundError:
            logger.error("Can't announce %s - it no longer exists", self.source_path)
            return
        self.library.forward(
            CanonicalEvent(
                kind=EventKind.ADD_DIR,
                is_directory=True,
                local_path=self.local_path,
                source_path=self.source_path,
                stats=stats,
                library=self.library,
            )
        )

    # ---- event handling ----

    def ignored(self, full_path: str) -> bool:
        """Return whether *full_path* (inside the watched directory) is excluded."""
        file_name = full_path[len(self.source_path) + 1 :]
        if file_name == "":
            return False
        local_path = join_local(self.local_path, file_name)
        return self.library.is_ignored(file_name, local_path, full_path)

    def on_native_event(self, event: FileSystemEvent) -> None:
        if not self.active:
            # Only a live, established handle forwards anything
            logger.debug(
                "Dropping %s for %s while %s", event.event_type, event.src_path, self.state.value
            )
            return

        logger.debug("Raw %s for %s seen by %s", event.event_type, event.src_path, self.source_path)

        removed = False
        for change in classify(event, self.source_path):
            if change.path == self.source_path:
                local_path = self.local_path
            else:
                if self.ignored(change.path):
                    logger.debug("Ignoring %s on %s", change.kind, change.path)
                    continue
                local_path = join_local(self.local_path, os.path.basename(change.path))

            self._progress("%s %s", local_path or "/", change.kind)
            self.library.forward(
                CanonicalEvent(
                    kind=change.kind,
                    is_directory=change.is_directory,
                    local_path=local_path,
                    source_path=change.path,
                    stats=change.stats,
                    library=self.library,
                )
            )

            if change.kind is EventKind.UNLINK_DIR and change.path == self.source_path:
                removed = True

        if removed:
            self._on_directory_removed()

    # ---- reappearance ----

    def _on_directory_removed(self) -> None:
        if self._halted.is_set():
            return
        if not self._restarting.acquire(blocking=False):
            logger.debug("Restart of %s already in progress", self.source_path)
            return
        thread = threading.Thread(
            target=self._restart,
            daemon=True,
            name=f"ListenerRestart-{self.local_path or '/'}",
        )
        thread.start()

    def _restart(self) -> None:
        """Wait for the watched directory to come back, then watch it again."""
        try:
            self.stop_listener()
            with self._lock:
                if self._halted.is_set():
                    return
                self.state = ListenerState.WAITING
            logger.info("%s was removed - waiting for it to reappear", self.source_path)

            while not self._halted.is_set():
                if os.path.isdir(self.source_path):
                    with self._lock:
                        if self._halted.is_set():
                            return
                        try:
                            self.watch(process_initial_events=True)
                        except FileNotFoundError:
                            logger.error("%s vanished again while re-watching", self.source_path)
                            self.state = ListenerState.WAITING
                        else:
                            logger.info("%s reappeared - watching it again", self.source_path)
                            return
                self._halted.wait(self.poll_interval)
        finally:
            self._restarting.release()
