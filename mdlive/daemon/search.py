"""
Full-text search over a project's Markdown files.

Ranking is three strict passes: filename, then level-1 title, then body.
A file matched by an earlier pass is never reported again, and a body match
always ranks below a filename or title match regardless of how often the
words occur.
"""

import asyncio
import re
import time
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set

from loguru import logger

from .bus import Event, EventBus
from .errors import ProjectNotFoundError
from .metrics import LatencyTimer, MetricsCollector
from .projects import ProjectStore
from .scanner import MarkdownFile, iter_markdown_files


DEFAULT_LIMIT = 15
SNIPPET_BEFORE = 50
SNIPPET_AFTER = 80
ELLIPSIS = "..."

_H1_PATTERN = re.compile(r"^#\s+(.+)$", re.MULTILINE)
_WHITESPACE = re.compile(r"\s+")


class MatchType(Enum):
    """Which pass produced a result."""
    FILENAME = "filename"
    TITLE = "title"
    CONTENT = "content"


@dataclass
class SearchResult:
    """Individual search result."""
    type: MatchType
    path: str
    name: str
    snippet: Optional[str] = None
    line: Optional[int] = None
    project_id: Optional[str] = None
    project_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        data["projectId"] = data.pop("project_id")
        data["projectName"] = data.pop("project_name")
        return data


def query_words(query: Optional[str]) -> List[str]:
    """Lowercased whitespace-separated words of a query."""
    if not query:
        return []
    return query.lower().split()


def matches_all_words(text: str, words: Iterable[str]) -> bool:
    lower_text = text.lower()
    return all(word in lower_text for word in words)


def find_first_match_index(text: str, words: Iterable[str]) -> int:
    """Earliest offset of any word in ``text``, or -1."""
    lower_text = text.lower()
    first_index = -1
    for word in words:
        idx = lower_text.find(word)
        if idx != -1 and (first_index == -1 or idx < first_index):
            first_index = idx
    return first_index


def line_number_at(content: str, offset: int) -> int:
    """1-based line number of ``offset``."""
    return content.count("\n", 0, offset) + 1


def make_snippet(content: str, offset: int) -> str:
    """Whitespace-collapsed window around ``offset`` with ellipses on cut sides."""
    start = max(0, offset - SNIPPET_BEFORE)
    end = min(len(content), offset + SNIPPET_AFTER)
    snippet = _WHITESPACE.sub(" ", content[start:end]).strip()
    if start > 0:
        snippet = ELLIPSIS + snippet
    if end < len(content):
        snippet = snippet + ELLIPSIS
    return snippet


def _read_text(file: MarkdownFile) -> Optional[str]:
    try:
        with open(file.full_path, "r", encoding="utf-8") as f:
            return f.read()
    except (OSError, UnicodeDecodeError) as e:
        logger.debug(f"Skipping unreadable file {file.relative_path}: {e}")
        return None


def search_files(project_root: str, query: str, limit: int = DEFAULT_LIMIT) -> List[SearchResult]:
    """
    Search the Markdown files under ``project_root``.

    Returns at most ``limit`` results ordered filename matches first, then
    title matches, then content matches. A blank query returns no results
    without touching the filesystem. Files that cannot be read are skipped.
    """
    words = query_words(query)
    if not words or limit <= 0:
        return []

    files = list(iter_markdown_files(project_root))
    results: List[SearchResult] = []
    seen: Set[str] = set()

    # Filename pass
    for file in files:
        if len(results) >= limit:
            return results
        if matches_all_words(file.name, words):
            results.append(SearchResult(
                type=MatchType.FILENAME,
                path=file.relative_path,
                name=file.name,
                snippet=file.relative_path
            ))
            seen.add(file.relative_path)

    # Title pass
    for file in files:
        if len(results) >= limit:
            return results
        if file.relative_path in seen:
            continue
        content = _read_text(file)
        if content is None:
            continue
        match = _H1_PATTERN.search(content)
        if match is None:
            continue
        title = match.group(1).strip()
        if matches_all_words(title, words):
            results.append(SearchResult(
                type=MatchType.TITLE,
                path=file.relative_path,
                name=file.name,
                snippet=title,
                line=line_number_at(content, match.start())
            ))
            seen.add(file.relative_path)

    # Content pass
    for file in files:
        if len(results) >= limit:
            return results
        if file.relative_path in seen:
            continue
        content = _read_text(file)
        if content is None or not matches_all_words(content, words):
            continue
        offset = find_first_match_index(content, words)
        if offset == -1:
            continue
        results.append(SearchResult(
            type=MatchType.CONTENT,
            path=file.relative_path,
            name=file.name,
            snippet=make_snippet(content, offset),
            line=line_number_at(content, offset)
        ))
        seen.add(file.relative_path)

    return results


class SearchEngine:
    """Runs searches against one configured project or all of them."""

    def __init__(
        self,
        projects: ProjectStore,
        metrics: Optional[MetricsCollector] = None,
        event_bus: Optional[EventBus] = None,
        default_limit: int = DEFAULT_LIMIT
    ):
        self.projects = projects
        self.metrics = metrics
        self.event_bus = event_bus
        self.default_limit = default_limit

    def search(
        self,
        query: str,
        project_id: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[SearchResult]:
        """
        Search one project, or every project in configuration order when
        ``project_id`` is None. The combined result list is capped at ``limit``.
        """
        limit = self.default_limit if limit is None else limit

        if project_id is not None:
            project = self.projects.find_project(project_id)
            if project is None:
                raise ProjectNotFoundError(project_id)
            targets = [project]
        else:
            targets = self.projects.get_projects()

        results: List[SearchResult] = []
        for project in targets:
            remaining = limit - len(results)
            if remaining <= 0:
                break
            for result in search_files(project.path, query, remaining):
                result.project_id = project.id
                result.project_name = project.name
                results.append(result)
        return results

    async def search_async(
        self,
        query: str,
        project_id: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[SearchResult]:
        """Run :meth:`search` off the event loop and record the outcome."""
        start_time = time.perf_counter()

        with LatencyTimer(self.metrics, "search"):
            results = await asyncio.to_thread(self.search, query, project_id, limit)

        latency_ms = (time.perf_counter() - start_time) * 1000
        logger.debug(f"Search {query!r}: {len(results)} results in {latency_ms:.1f}ms")

        if self.metrics:
            self.metrics.increment_counter("search.requests")
        if self.event_bus:
            self.event_bus.emit_nowait(Event(
                type="search.completed",
                data={
                    "query": query,
                    "project_id": project_id,
                    "result_count": len(results),
                    "latency_ms": latency_ms
                },
                source="search_engine"
            ))

        return results
