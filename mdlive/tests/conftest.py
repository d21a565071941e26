"""Shared fixtures for mdlive tests."""

import threading
import time
from pathlib import Path
from typing import Dict, List

import pytest

from mdlive.daemon.projects import Project, ProjectStore


class FakeWatch:
    """Stands in for watchdog's ObservedWatch."""

    def __init__(self, path: str, recursive: bool):
        self.path = path
        self.is_recursive = recursive


class FakeEmitter:

    def __init__(self, watch: FakeWatch, alive: bool):
        self.watch = watch
        self._alive = alive

    def is_alive(self) -> bool:
        return self._alive


class FakeObserver:
    """
    In-memory observer recording schedule/unschedule calls. ``delay``
    slows both down and ``call_threads`` records the threads they ran on.

    Scheduling a path that is already watched returns the existing watch,
    as watchdog does for equal watches.
    """

    def __init__(self):
        self.handlers: Dict[FakeWatch, List[object]] = {}
        self.dead = set()
        self.started = False
        self.stopped = False
        self.fail_with = None
        self.delay = 0.0
        self.call_threads: List[int] = []

    @property
    def emitters(self):
        return [FakeEmitter(w, w not in self.dead) for w in self.handlers]

    def kill(self, path: str):
        """Stop the emitter for ``path`` as if its root had vanished."""
        for watch in self.handlers:
            if watch.path == path:
                self.dead.add(watch)

    def start(self):
        self.started = True

    def stop(self):
        self.stopped = True

    def join(self, timeout=None):
        pass

    def _enter(self):
        self.call_threads.append(threading.get_ident())
        time.sleep(self.delay)

    def schedule(self, handler, path, recursive=False):
        self._enter()
        if self.fail_with is not None:
            raise self.fail_with
        for watch, handlers in self.handlers.items():
            if watch.path == path and watch.is_recursive == recursive:
                handlers.append(handler)
                return watch
        watch = FakeWatch(path, recursive)
        self.handlers[watch] = [handler]
        return watch

    def unschedule(self, watch):
        self._enter()
        del self.handlers[watch]
        self.dead.discard(watch)

    def unschedule_all(self):
        self.handlers.clear()
        self.dead.clear()

    def remove_handler_for_watch(self, handler, watch):
        self.handlers[watch].remove(handler)

    def handlers_for(self, path: str) -> List[object]:
        return [h for w, hs in self.handlers.items() if w.path == path for h in hs]

    @property
    def watched_paths(self):
        return sorted(w.path for w in self.handlers)


@pytest.fixture
def fake_observer():
    return FakeObserver()


def write_files(root: Path, files: Dict[str, str]) -> Path:
    """Create ``files`` (relative path -> content) under ``root``."""
    for relative_path, content in files.items():
        path = root / relative_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    return root


@pytest.fixture
def docs_root(tmp_path):
    """A small documentation tree."""
    root = tmp_path / "docs"
    root.mkdir()
    return write_files(root, {
        "README.md": "# Docs\nWelcome to the docs.",
        "guide/install.md": "# Setup\nRun the installer.",
        "guide/usage.md": "# Usage\nHow to use it.",
        "guide/notes.txt": "not markdown",
        ".hidden/secret.md": "# Secret",
        "node_modules/pkg/README.md": "# Package",
    })


@pytest.fixture
def project_store(tmp_path, docs_root):
    store = ProjectStore(tmp_path / "projects.json")
    store.add_project("Docs", str(docs_root))
    return store


@pytest.fixture
def docs_project(project_store) -> Project:
    return project_store.get_projects()[0]
