"""
Virtual path handling.

A virtual path is absolute and its first segment names a mount:
``/photos/2024/a.png`` lives on the ``/photos`` mount at ``/2024/a.png``.
Everything here is pure string manipulation, no I/O.
"""
from __future__ import annotations

import posixpath
from typing import NamedTuple

from mountvfs.file_access.errors import InvalidPathError


class ResolvedPath(NamedTuple):
    """A virtual path split into its mount prefix and backend-relative path."""

    mount_path: str
    relative_path: str


def normalize_path(path: str) -> str:
    """Clean a path into absolute POSIX form.

    Backslashes become slashes, a leading slash is enforced, and ``.``,
    ``..`` and repeated slashes are collapsed. ``..`` never climbs above
    the root, so ``/../etc`` cleans to ``/etc``.
    """
    if not path:
        return "/"
    path = path.replace("\\", "/")
    if not path.startswith("/"):
        path = "/" + path
    cleaned = posixpath.normpath(path)
    # normpath keeps a leading "//" (POSIX allows it); the namespace does not
    if cleaned.startswith("//"):
        cleaned = "/" + cleaned.lstrip("/")
    return cleaned


def resolve(virtual_path: str) -> ResolvedPath:
    """Split a virtual path into ``(mount_path, relative_path)``.

    Raises:
        InvalidPathError: if the path is empty or names only the root.
    """
    if not virtual_path or virtual_path == "/":
        raise InvalidPathError("Path must include a mount point")

    cleaned = normalize_path(virtual_path)
    if cleaned == "/":
        raise InvalidPathError(f"Path must include a mount point: {virtual_path!r}")

    first, _, rest = cleaned.lstrip("/").partition("/")
    return ResolvedPath("/" + first, "/" + rest if rest else "/")


def join_path(parent: str, name: str) -> str:
    """Join a directory path and an entry name, tolerating a trailing slash."""
    parent = parent.rstrip("/")
    return f"{parent}/{name.lstrip('/')}"


def split_path(path: str) -> tuple[str, str]:
    """Split a normalized path into ``(parent, name)``; the root has no name."""
    path = normalize_path(path)
    if path == "/":
        return "/", ""
    parent, _, name = path.rpartition("/")
    return parent or "/", name


def validate_name(name: str) -> str:
    """Return ``name`` if it is a single usable path segment."""
    if not name or name in (".", "..") or "/" in name or "\\" in name:
        raise InvalidPathError(f"Invalid file name: {name!r}")
    return name


def to_virtual(mount_path: str, relative_path: str) -> str:
    """Re-attach a mount prefix to a backend-relative path."""
    if not relative_path or relative_path == "/":
        return mount_path
    return mount_path.rstrip("/") + "/" + relative_path.lstrip("/")
