"""Quoting and validation for values embedded in remote shell commands.

Remote automation is plain string interpolation, so every externally
influenced value goes through ``escape_shell_arg`` and every user-supplied
path through ``validate_path`` before it reaches a command string.
"""

import posixpath

from .errors import InvalidPathError

FORBIDDEN_PATH_CHARS = ("\x00", ";", "|", "&", "$", "`", "\n", "\r", "(", ")", "<", ">")


def escape_shell_arg(value: str) -> str:
    """Quote ``value`` as a single POSIX shell word.

    Single quotes preserve every byte literally; an embedded single quote is
    closed, emitted as ``\\'`` and reopened.
    """
    if value == "":
        return "''"
    return "'" + value.replace("'", "'\\''") + "'"


def validate_path(path: str) -> None:
    """Raise ``InvalidPathError`` if ``path`` is unsafe for shell use."""
    if not path:
        raise InvalidPathError(path)

    if _has_parent_segment(path) or _has_parent_segment(posixpath.normpath(path)):
        raise InvalidPathError(path)

    if any(char in path for char in FORBIDDEN_PATH_CHARS):
        raise InvalidPathError(path)


def _has_parent_segment(path: str) -> bool:
    return ".." in path.split("/")


def partition_path(device: str, number: int = 1) -> str:
    """Return the path of partition ``number`` on ``device``.

    Devices whose name ends in a digit (nvme0n1, mmcblk0) take a ``p``
    separator: /dev/nvme0n1 -> /dev/nvme0n1p1, /dev/sda -> /dev/sda1.
    """
    if device and device[-1].isdigit():
        return f"{device}p{number}"
    return f"{device}{number}"
