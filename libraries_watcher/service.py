"""
Headless runner for Libraries Watcher.

Loads the configuration, sets up logging, starts watching every library
and keeps mirroring until SIGINT/SIGTERM.
"""

from __future__ import annotations

import logging
import logging.handlers
import signal
import sys
import time
from pathlib import Path

from libraries_watcher import __app_name__, __version__
from libraries_watcher.config import Config, get_log_path
from libraries_watcher.watcher import LibrariesWatcher

logger = logging.getLogger(__name__)

_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(level_name: str, log_path: Path | None, max_bytes: int, backup_count: int) -> None:
    """Configure rotating file log and stderr handler."""
    level = getattr(logging, level_name.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    fmt = logging.Formatter(_FORMAT)

    if log_path is not None:
        fh = logging.handlers.RotatingFileHandler(
            str(log_path),
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        fh.setLevel(level)
        fh.setFormatter(fmt)
        root_logger.addHandler(fh)

    sh = logging.StreamHandler(sys.stderr)
    sh.setLevel(level)
    sh.setFormatter(fmt)
    root_logger.addHandler(sh)


def build_watcher(cfg: Config, verbose: bool = False) -> LibrariesWatcher:
    """Create the libraries watcher described by *cfg*."""
    return LibrariesWatcher(
        libraries=cfg.libraries,
        verbose=verbose or cfg.verbose,
        poll_interval=cfg.poll_interval,
        removal_retries=cfg.removal_retries,
        removal_retry_delay=cfg.removal_retry_delay,
    )


def run_foreground(config_path: Path | None = None, verbose: bool = False, log_file: bool = True) -> None:
    """Run the mirror in the foreground until SIGINT/SIGTERM."""
    cfg = Config(config_path)
    level = cfg.log_level
    if verbose and level != "DEBUG":
        level = "INFO"
    setup_logging(
        level,
        get_log_path() if log_file else None,
        cfg.max_log_size_mb * 1024 * 1024,
        cfg.log_backup_count,
    )
    logger.info("%s %s starting.", __app_name__, __version__)

    watcher = build_watcher(cfg, verbose)
    stop = False

    def _handler(sig, frame):
        nonlocal stop
        stop = True

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)

    try:
        watcher.watch()
        logger.info("Watching %d libraries (press Ctrl-C to stop)", len(cfg.libraries))
        while not stop:
            time.sleep(1)
    finally:
        watcher.stop_watch()
