"""Libraries watcher: event queue and reconciliation loop.

Every watched library forwards its events to ``LibrariesWatcher.callback``.
Events are queued in two sequences, a priority one for the kinds listed
in ``immediate_kinds`` (directory creation by default) and a standard
FIFO one, and a single consumer thread drains them, priority first.
Only that thread touches the destination trees.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Iterable
from typing import Any

from libraries_watcher.config import ConfigError, Library
from libraries_watcher.events import CanonicalEvent, EventKind
from libraries_watcher.library import WatchedLibrary
from libraries_watcher.listener import DEFAULT_POLL_INTERVAL
from libraries_watcher.mirror import MirrorStats, Reconciler

logger = logging.getLogger(__name__)

DEFAULT_IMMEDIATE_KINDS = frozenset({EventKind.ADD_DIR})


class LibrariesWatcher:
    """
    Watches all configured libraries and mirrors their events.

    Usage:
        watcher = LibrariesWatcher(libraries=[library], verbose=True)
        watcher.watch()
        ...
        watcher.stop_watch()
    """

    def __init__(
        self,
        libraries: Iterable[Library | dict],
        verbose: bool = False,
        immediate_kinds: Iterable[EventKind] = DEFAULT_IMMEDIATE_KINDS,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        removal_retries: int = 3,
        removal_retry_delay: float = 0.1,
        initial_sync: bool = True,
    ):
        if libraries is None or not isinstance(libraries, (list, tuple)):
            raise ConfigError("libraries must be a list")

        self.libraries = [
            library if isinstance(library, Library) else Library.from_dict(library)
            for library in libraries
        ]
        self.verbose = verbose
        self.immediate_kinds = frozenset(EventKind(kind) for kind in immediate_kinds)
        self.poll_interval = poll_interval
        self.initial_sync = initial_sync
        self.reconciler = Reconciler(
            verbose=verbose,
            removal_retries=removal_retries,
            removal_retry_delay=removal_retry_delay,
        )
        self.watched_libraries: list[WatchedLibrary] = []

        self._priority: deque[CanonicalEvent] = deque()
        self._standard: deque[CanonicalEvent] = deque()
        self._cond = threading.Condition()
        self._busy = False
        self._stopping = False
        self._consumer: threading.Thread | None = None

    def _progress(self, msg: str, *args: Any) -> None:
        logger.log(logging.INFO if self.verbose else logging.DEBUG, msg, *args)

    @property
    def stats(self) -> MirrorStats:
        return self.reconciler.stats

    @property
    def pending_count(self) -> int:
        with self._cond:
            return len(self._priority) + len(self._standard)

    # ---- lifecycle ----

    def watch(self) -> None:
        """Start every library in turn; the first failure aborts startup."""
        if self.watched_libraries:
            logger.warning("Libraries are already being watched")
            return
        self._start_consumer()
        for library in self.libraries:
            watched_library = WatchedLibrary(
                library,
                self,
                verbose=self.verbose,
                poll_interval=self.poll_interval,
                initial_sync=self.initial_sync,
            )
            self.watched_libraries.append(watched_library)
            watched_library.watch()

    def stop_watch(self, timeout: float | None = 10) -> None:
        """Stop every library, then let the consumer drain and exit."""
        for watched_library in self.watched_libraries:
            watched_library.stop_watch()
        self.watched_libraries = []

        with self._cond:
            self._stopping = True
            self._cond.notify_all()
        if self._consumer is not None:
            self._consumer.join(timeout=timeout)
            self._consumer = None
        stats = self.stats
        logger.info(
            "Libraries watcher stopped. Applied: %d, races: %d, failed: %d",
            stats.total_applied,
            stats.total_races,
            stats.total_failed,
        )

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until both sequences are empty and nothing is being applied."""
        with self._cond:
            return self._cond.wait_for(
                lambda: not self._busy and not self._priority and not self._standard,
                timeout=timeout,
            )

    # ---- queue ----

    def callback(self, event: CanonicalEvent) -> None:
        """Queue *event*; safe to call from any thread."""
        with self._cond:
            if event.kind in self.immediate_kinds:
                self._priority.append(event)
            else:
                self._standard.append(event)
            self._cond.notify_all()
        self._progress("Queued %s (%s)", event, event.library.name)

    def _start_consumer(self) -> None:
        with self._cond:
            if self._consumer is not None and self._consumer.is_alive():
                return
            self._stopping = False
            self._consumer = threading.Thread(
                target=self._consume, daemon=True, name="LibrariesWatcherQueue"
            )
            self._consumer.start()

    def _next_event(self) -> CanonicalEvent | None:
        with self._cond:
            while not self._priority and not self._standard:
                if self._stopping:
                    return None
                self._cond.wait()
            self._busy = True
            if self._priority:
                return self._priority.popleft()
            return self._standard.popleft()

    def _consume(self) -> None:
        while True:
            event = self._next_event()
            if event is None:
                return
            try:
                self._process(event)
            except Exception:
                logger.exception("Error applying %s for library '%s'", event, event.library.name)
            finally:
                with self._cond:
                    self._busy = False
                    self._cond.notify_all()

    def _process(self, event: CanonicalEvent) -> None:
        event.library.handle_event(event)
        self._progress("Applying %s", event)
        self.reconciler.apply(event)
