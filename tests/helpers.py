import os


def read(path):
    with open(path, encoding="utf-8") as fh:
        return fh.read()


def content_is(path, expected):
    def _check():
        try:
            return read(path) == expected
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError):
            return False

    return _check


def mode_of(path):
    return os.lstat(path).st_mode & 0o7777
