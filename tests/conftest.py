import time
from unittest.mock import MagicMock

import pytest

from libraries_watcher.config import Library
from libraries_watcher.library import WatchedLibrary
from libraries_watcher.watcher import LibrariesWatcher


def _wait_for(predicate, timeout=10.0, interval=0.05):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def wait_for():
    return _wait_for


@pytest.fixture
def dirs(tmp_path):
    """Create an empty source and target directory."""
    root = tmp_path.resolve()
    source = root / "source"
    target = root / "target"
    source.mkdir()
    target.mkdir()
    return source, target


@pytest.fixture
def library(dirs):
    source, target = dirs
    return Library(name="test", source=str(source), destinations=(str(target),))


@pytest.fixture
def watched_library(library):
    """A library that is not watching, for driving the reconciler directly."""
    return WatchedLibrary(library, MagicMock())


@pytest.fixture
def make_watcher(library):
    """Build a running LibrariesWatcher and stop it after the test."""
    started = []

    def _make(libraries=None, **kwargs):
        kwargs.setdefault("poll_interval", 0.05)
        kwargs.setdefault("removal_retry_delay", 0.01)
        watcher = LibrariesWatcher(libraries=libraries or [library], **kwargs)
        started.append(watcher)
        watcher.watch()
        return watcher

    yield _make

    for watcher in started:
        watcher.stop_watch()
