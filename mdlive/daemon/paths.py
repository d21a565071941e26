"""Containment checks for paths supplied relative to a project root."""

import os
from pathlib import Path
from typing import Union

from .errors import PathOutsideProjectError


PathLike = Union[str, "os.PathLike[str]"]


def is_within(root: PathLike, relative_path: PathLike) -> bool:
    """
    Return True if ``root/relative_path`` stays inside ``root``.

    The joined path is normalized lexically (no filesystem access, symlinks
    are not followed) and made relative to ``root`` again. The path escapes
    when that result starts with a ``..`` segment or is absolute; an absolute
    ``relative_path`` replaces the root on join and is rejected that way.
    """
    try:
        root_str = os.path.normpath(os.fspath(root))
        full_path = os.path.normpath(os.path.join(root_str, os.fspath(relative_path)))
        relative = os.path.relpath(full_path, root_str)
    except (TypeError, ValueError):
        return False

    if os.path.isabs(relative):
        return False
    return relative != os.pardir and not relative.startswith(os.pardir + os.sep)


def resolve_within(root: PathLike, relative_path: PathLike) -> Path:
    """Join ``relative_path`` onto ``root``, raising if it escapes the root."""
    if not is_within(root, relative_path):
        raise PathOutsideProjectError(os.fspath(root), os.fspath(relative_path))
    return Path(os.path.normpath(os.path.join(os.fspath(root), os.fspath(relative_path))))
