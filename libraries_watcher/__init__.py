"""Libraries Watcher: continuous one-way directory mirroring.

Watches source directory trees ("libraries") for filesystem changes and
replicates them, live, into one or more destination trees.
"""

__version__ = "1.0.0"
__app_name__ = "Libraries Watcher"
