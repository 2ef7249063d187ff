"""Entry point for Libraries Watcher.

Usage:
    python -m libraries_watcher [options]

Options:
    --config, -c PATH   Path to the libraries config file
    --verbose, -v       Log every discovered path, queued event and mutation
    --help, -h          Show this help message
"""

import sys
from pathlib import Path

from libraries_watcher.config import ConfigError


def _show_help() -> None:
    print("Usage: libraries-watcher [options]")
    print("Options:")
    print("  --config, -c PATH  Path to the config file")
    print("  --verbose, -v      Log progress for every path and event")
    print("  --help, -h         Show this help message")


def parse_args(argv: list[str]) -> dict:
    """Parse command line arguments into a dict of options."""
    args = {"config": None, "verbose": False, "help": False}
    i = 0
    while i < len(argv):
        arg = argv[i]
        if arg in ("--help", "-h"):
            args["help"] = True
        elif arg in ("--config", "-c"):
            i += 1
            if i >= len(argv):
                raise ConfigError(f"{arg} needs a path")
            args["config"] = Path(argv[i])
        elif arg in ("--verbose", "-v"):
            args["verbose"] = True
        else:
            raise ConfigError(f"Unknown argument {arg}")
        i += 1
    return args


def main(argv: list[str] | None = None) -> int:
    """Run the watcher until interrupted."""
    try:
        args = parse_args(sys.argv[1:] if argv is None else argv)
    except ConfigError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        _show_help()
        return 2

    if args["help"]:
        _show_help()
        return 0

    from libraries_watcher.service import run_foreground

    try:
        run_foreground(args["config"], verbose=args["verbose"])
    except ConfigError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
