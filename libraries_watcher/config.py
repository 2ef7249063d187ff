"""Configuration for Libraries Watcher.

Reads the JSON file describing the libraries to mirror and the optional
tuning settings.  The file is either a plain list of library records or
an object holding a ``libraries`` list next to the settings below.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from libraries_watcher.platform_utils import (
    get_config_dir as _platform_config_dir,
)
from libraries_watcher.platform_utils import (
    get_log_path as _platform_log_path,
)

logger = logging.getLogger(__name__)

LIBRARY_KEYS = frozenset({"name", "source", "destinations"})

DEFAULT_CONFIG: dict[str, Any] = {
    "libraries": [],
    "verbose": False,
    "log_level": "",  # blank = INFO when verbose, ERROR otherwise
    # ---- directory reappearance polling ----
    "poll_interval": 0.2,  # seconds between checks for a removed watched directory
    # ---- recursive removal retry ----
    "removal_retries": 3,  # retries after the first failed attempt
    "removal_retry_delay": 0.1,  # initial delay in seconds, doubled per retry
    # ---- log rotation ----
    "max_log_size_mb": 10,
    "log_backup_count": 3,
}


class ConfigError(ValueError):
    """Raised when the configuration cannot be used to start watching."""


@dataclass(frozen=True)
class Library:
    """One source tree mirrored into one or more destination trees."""

    name: str
    source: str
    destinations: tuple[str, ...]

    @classmethod
    def from_dict(cls, data: Any) -> Library:
        """Validate a raw library record and build a ``Library`` from it."""
        if not isinstance(data, dict):
            raise ConfigError(f"Library entries must be objects, got: {data!r}")

        unknown = set(data) - LIBRARY_KEYS
        if unknown:
            raise ConfigError(f"Unknown library keys: {', '.join(sorted(unknown))}")

        name = data.get("name")
        source = data.get("source")
        destinations = data.get("destinations")

        if not isinstance(name, str) or not name:
            raise ConfigError(f"Library is missing a name: {data!r}")
        if not isinstance(source, str) or not os.path.isabs(source):
            raise ConfigError(f"Library '{name}' needs an absolute source path")
        if not isinstance(destinations, list) or not destinations:
            raise ConfigError(f"Library '{name}' needs a non-empty list of destinations")
        for destination in destinations:
            if not isinstance(destination, str) or not os.path.isabs(destination):
                raise ConfigError(
                    f"Library '{name}' has a non-absolute destination: {destination!r}"
                )

        source = os.path.normpath(source)
        normalised = tuple(os.path.normpath(d) for d in destinations)
        if source in normalised:
            raise ConfigError(f"Library '{name}' mirrors its source into itself")

        return cls(name=name, source=source, destinations=normalised)

    def validate(self) -> None:
        """Check the parts of the library that depend on the filesystem."""
        if not os.path.isdir(self.source):
            raise ConfigError(
                f"Source of library '{self.name}' is not a directory: {self.source}"
            )


def get_config_path() -> Path:
    """Return the default path of the libraries file."""
    return _platform_config_dir() / "libraries.json"


def get_log_path() -> Path:
    """Return the path to the log file."""
    return _platform_log_path()


def parse_libraries(raw: Any) -> list[Library]:
    """Turn the raw ``libraries`` value into validated ``Library`` records."""
    if raw is None or not isinstance(raw, list):
        raise ConfigError("libraries must be a list")
    libraries = [Library.from_dict(item) for item in raw]
    names = [library.name for library in libraries]
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        raise ConfigError(f"Duplicate library names: {', '.join(duplicates)}")
    return libraries


class Config:
    """Read-only configuration backed by a JSON file."""

    def __init__(self, path: Path | None = None):
        """Load config from *path*, falling back to the platform default."""
        self._path = Path(path) if path else get_config_path()
        self._data: dict[str, Any] = dict(DEFAULT_CONFIG)
        self.libraries: list[Library] = []
        self.load()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> None:
        """Load and validate the configuration file."""
        try:
            with open(self._path, encoding="utf-8") as fh:
                stored = json.load(fh)
        except FileNotFoundError as exc:
            raise ConfigError(f"Config file not found: {self._path}") from exc
        except json.JSONDecodeError as exc:
            raise ConfigError(f"Config file is not valid JSON: {self._path}: {exc}") from exc

        if isinstance(stored, list):
            stored = {"libraries": stored}
        elif not isinstance(stored, dict):
            raise ConfigError("Config must be a list of libraries or an object")

        unknown = set(stored) - set(DEFAULT_CONFIG)
        if unknown:
            raise ConfigError(f"Unknown config keys: {', '.join(sorted(unknown))}")
        if "libraries" not in stored:
            raise ConfigError("libraries must be a list")

        # Merge stored values over defaults so optional keys get defaults
        self._data = {**DEFAULT_CONFIG, **stored}
        self.libraries = parse_libraries(self._data["libraries"])
        logger.info(
            "Configuration loaded from %s (%d libraries)", self._path, len(self.libraries)
        )

    # ---- accessors ----

    @property
    def verbose(self) -> bool:
        """Return whether progress lines are logged."""
        return bool(self._data["verbose"])

    @property
    def log_level(self) -> str:
        """Return the logging level name, derived from ``verbose`` when unset."""
        level = self._data.get("log_level") or ""
        if level:
            return str(level).upper()
        return "INFO" if self.verbose else "ERROR"

    @property
    def poll_interval(self) -> float:
        """Return seconds between reappearance checks (minimum 0.01 s)."""
        return max(0.01, float(self._data["poll_interval"]))

    @property
    def removal_retries(self) -> int:
        """Return the number of retries for recursive removal."""
        return max(0, int(self._data["removal_retries"]))

    @property
    def removal_retry_delay(self) -> float:
        """Return the initial delay between removal retries."""
        return max(0.0, float(self._data["removal_retry_delay"]))

    @property
    def max_log_size_mb(self) -> int:
        """Return the maximum log file size in MB before rotation."""
        return max(1, int(self._data["max_log_size_mb"]))

    @property
    def log_backup_count(self) -> int:
        """Return the number of rotated log backups to keep."""
        return max(0, int(self._data["log_backup_count"]))
