"""Directory traversal over a project's Markdown tree."""

import os
from dataclasses import dataclass
from typing import Iterator

from loguru import logger


MARKDOWN_EXTENSION = ".md"
EXCLUDED_DIRS = frozenset({"node_modules"})


@dataclass(frozen=True)
class MarkdownFile:
    """A Markdown file found under a project root."""
    full_path: str
    relative_path: str
    name: str


def is_markdown(name: str) -> bool:
    return name.endswith(MARKDOWN_EXTENSION)


def _is_skipped(name: str) -> bool:
    return name.startswith(".") or name in EXCLUDED_DIRS


def _join(prefix: str, name: str) -> str:
    return f"{prefix.rstrip('/')}/{name}" if prefix else name


def _entries(directory: str):
    """List a directory, yielding nothing if it vanished or is unreadable."""
    try:
        with os.scandir(directory) as it:
            entries = list(it)
    except FileNotFoundError:
        return []
    except OSError as e:
        logger.debug(f"Skipping unreadable directory {directory}: {e}")
        return []
    return entries


def _is_dir(entry: os.DirEntry) -> bool:
    try:
        return entry.is_dir(follow_symlinks=False)
    except OSError:
        return False


def iter_markdown_files(directory: str, prefix: str = "") -> Iterator[MarkdownFile]:
    """
    Depth-first walk yielding every Markdown file under ``directory``.

    Hidden entries and ``node_modules`` are skipped at every depth.
    """
    for entry in _entries(directory):
        if _is_skipped(entry.name):
            continue
        relative_path = _join(prefix, entry.name)
        if _is_dir(entry):
            yield from iter_markdown_files(entry.path, relative_path)
        elif is_markdown(entry.name):
            yield MarkdownFile(entry.path, relative_path, entry.name)


def scan_markdown(directory: str, prefix: str = "", recursive: bool = True) -> Iterator[str]:
    """
    Yield Markdown paths under ``directory`` relative to the project root.

    ``prefix`` is the path of ``directory`` inside the project. With
    ``recursive`` False, subdirectories are yielded once with a trailing
    ``/`` instead of being descended into. Order follows the directory
    listing; callers sort when they need a stable order.
    """
    for entry in _entries(directory):
        if _is_skipped(entry.name):
            continue
        relative_path = _join(prefix, entry.name)
        if _is_dir(entry):
            if recursive:
                yield from scan_markdown(entry.path, relative_path, True)
            else:
                yield relative_path + "/"
        elif is_markdown(entry.name):
            yield relative_path
