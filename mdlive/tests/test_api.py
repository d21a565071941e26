"""Tests for the HTTP API, including the live-reload event stream."""

import asyncio
import json

import pytest
from aiohttp import test_utils

from mdlive.daemon.config import Config, SyncConfig
from mdlive.daemon.main import MdLiveDaemon


@pytest.fixture
async def daemon(project_store, tmp_path):
    config = Config(
        sync=SyncConfig(debounce_ms=50, heartbeat_s=0.1),
        projects_file=tmp_path / "projects.json"
    )
    daemon = MdLiveDaemon(config, project_store)
    await daemon.start(serve_http=False)
    yield daemon
    await daemon.stop()


@pytest.fixture
async def client(daemon):
    client = test_utils.TestClient(test_utils.TestServer(daemon.api_app))
    await client.start_server()
    yield client
    # Open streams end before the test server shuts down
    await daemon.livesync.close()
    await client.close()


async def read_event(response, timeout: float = 5.0) -> str:
    """Next ``data:`` payload of an event stream, skipping heartbeats."""
    while True:
        line = await asyncio.wait_for(response.content.readline(), timeout)
        if not line:
            raise AssertionError("event stream closed")
        text = line.decode().strip()
        if text.startswith("data: "):
            return text[len("data: "):]


async def wait_until(predicate, timeout: float = 3.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.02)


class TestReloadStream:
    """The ``/__reload`` Server-Sent Events endpoint."""

    @pytest.mark.asyncio
    async def test_unknown_project_gets_empty_response(self, client, daemon):
        resp = await client.get("/__reload", params={"projectId": "nope"})

        assert resp.status == 204
        assert await resp.read() == b""
        assert daemon.livesync.registry.count() == 0

    @pytest.mark.asyncio
    async def test_missing_project_id(self, client):
        resp = await client.get("/__reload")
        assert resp.status == 204

    @pytest.mark.asyncio
    async def test_connected_then_reload(self, client, daemon, docs_project):
        resp = await client.get("/__reload", params={"projectId": docs_project.id})

        assert resp.status == 200
        assert resp.headers["Content-Type"].startswith("text/event-stream")
        assert resp.headers["Cache-Control"] == "no-cache"
        assert await read_event(resp) == "connected"

        daemon.livesync.supervisor.handle_change(docs_project.id, "README.md")

        assert await read_event(resp) == "reload"
        resp.close()

    @pytest.mark.asyncio
    async def test_two_clients_each_reloaded_once(self, client, daemon, docs_project):
        params = {"projectId": docs_project.id}
        first = await client.get("/__reload", params=params)
        second = await client.get("/__reload", params=params)
        assert await read_event(first) == "connected"
        assert await read_event(second) == "connected"
        assert daemon.livesync.registry.count(docs_project.id) == 2

        for _ in range(3):
            daemon.livesync.supervisor.handle_change(docs_project.id, "README.md")

        assert await read_event(first) == "reload"
        assert await read_event(second) == "reload"
        assert daemon.metrics.counters["sync.reload"] == 1
        first.close()
        second.close()

    @pytest.mark.asyncio
    async def test_heartbeat(self, client, docs_project):
        resp = await client.get("/__reload", params={"projectId": docs_project.id})
        assert await read_event(resp) == "connected"

        lines = []
        while b": ping\n" not in lines:
            lines.append(await asyncio.wait_for(resp.content.readline(), 2))
        resp.close()

    @pytest.mark.asyncio
    async def test_disconnect_stops_watch(self, client, daemon, docs_project):
        resp = await client.get("/__reload", params={"projectId": docs_project.id})
        assert await read_event(resp) == "connected"
        assert daemon.livesync.supervisor.is_watching(docs_project.id)

        resp.close()

        await wait_until(lambda: not daemon.livesync.supervisor.is_watching(docs_project.id))
        assert daemon.livesync.registry.count() == 0

    @pytest.mark.asyncio
    async def test_file_write_reaches_stream(self, client, daemon, docs_project, docs_root):
        resp = await client.get("/__reload", params={"projectId": docs_project.id})
        assert await read_event(resp) == "connected"
        await asyncio.sleep(0.2)

        (docs_root / "README.md").write_text("# Docs\nEdited.")

        assert await read_event(resp) == "reload"
        resp.close()


class TestSearchEndpoint:

    @pytest.mark.asyncio
    async def test_search_project(self, client, docs_project):
        resp = await client.get("/api/search", params={"q": "setup", "projectId": docs_project.id})

        assert resp.status == 200
        data = await resp.json()
        assert data["query"] == "setup"
        assert data["results"] == [{
            "type": "title",
            "path": "guide/install.md",
            "name": "install.md",
            "snippet": "Setup",
            "line": 1,
            "projectId": docs_project.id,
            "projectName": "Docs",
        }]

    @pytest.mark.asyncio
    async def test_search_all_projects(self, client):
        resp = await client.get("/api/search", params={"q": "usage"})

        data = await resp.json()
        assert [r["path"] for r in data["results"]] == ["guide/usage.md"]

    @pytest.mark.asyncio
    async def test_blank_query(self, client):
        resp = await client.get("/api/search", params={"q": "  "})

        assert (await resp.json())["results"] == []

    @pytest.mark.asyncio
    async def test_unknown_project(self, client):
        resp = await client.get("/api/search", params={"q": "x", "projectId": "nope"})
        assert resp.status == 404

    @pytest.mark.asyncio
    @pytest.mark.parametrize("limit", ["abc", "0", "-3"])
    async def test_invalid_limit(self, client, limit):
        resp = await client.get("/api/search", params={"q": "x", "limit": limit})
        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_search_counted(self, client, daemon):
        await client.get("/api/search", params={"q": "docs"})
        await asyncio.sleep(0.1)

        assert daemon.metrics.counters["search.requests"] == 1
        assert daemon.stats["search_count"] == 1


class TestProjectsEndpoints:

    @pytest.mark.asyncio
    async def test_list_projects(self, client, docs_project):
        resp = await client.get("/api/projects")

        data = await resp.json()
        assert data["projects"] == [
            {"id": docs_project.id, "name": "Docs", "path": docs_project.path}
        ]

    @pytest.mark.asyncio
    async def test_list_top_level(self, client, docs_project):
        resp = await client.get(f"/api/projects/{docs_project.id}/files")

        data = await resp.json()
        assert data["entries"] == [
            {"path": "README.md", "name": "README.md", "isDirectory": False},
            {"path": "guide/", "name": "guide", "isDirectory": True},
        ]

    @pytest.mark.asyncio
    async def test_list_subfolder(self, client, docs_project):
        resp = await client.get(
            f"/api/projects/{docs_project.id}/files", params={"path": "guide/"}
        )

        data = await resp.json()
        assert [e["path"] for e in data["entries"]] == ["guide/install.md", "guide/usage.md"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("path", ["guide/../guide", "./guide/", "guide//.", "/guide"])
    async def test_list_subfolder_normalizes_path(self, client, docs_project, path):
        resp = await client.get(
            f"/api/projects/{docs_project.id}/files", params={"path": path}
        )

        data = await resp.json()
        assert data["path"] == "guide"
        assert [e["path"] for e in data["entries"]] == ["guide/install.md", "guide/usage.md"]

    @pytest.mark.asyncio
    async def test_list_dot_is_top_level(self, client, docs_project):
        resp = await client.get(
            f"/api/projects/{docs_project.id}/files", params={"path": "guide/.."}
        )

        data = await resp.json()
        assert data["path"] == ""
        assert [e["path"] for e in data["entries"]] == ["README.md", "guide/"]

    @pytest.mark.asyncio
    async def test_list_recursive(self, client, docs_project):
        resp = await client.get(
            f"/api/projects/{docs_project.id}/files", params={"recursive": "true"}
        )

        data = await resp.json()
        assert [e["path"] for e in data["entries"]] == [
            "README.md", "guide/install.md", "guide/usage.md"
        ]

    @pytest.mark.asyncio
    async def test_list_escape_denied(self, client, docs_project):
        resp = await client.get(
            f"/api/projects/{docs_project.id}/files", params={"path": "../"}
        )
        assert resp.status == 403

    @pytest.mark.asyncio
    async def test_list_unknown_project(self, client):
        resp = await client.get("/api/projects/nope/files")
        assert resp.status == 404


class TestFileEndpoints:
    """Reading and writing Markdown files inside a project."""

    @pytest.mark.asyncio
    async def test_read(self, client, docs_project):
        resp = await client.get(
            "/api/file", params={"projectId": docs_project.id, "path": "guide/install.md"}
        )

        assert resp.status == 200
        data = await resp.json()
        assert data == {"content": "# Setup\nRun the installer.", "path": "guide/install.md"}

    @pytest.mark.asyncio
    async def test_write(self, client, docs_project, docs_root):
        resp = await client.put(
            "/api/file",
            params={"projectId": docs_project.id, "path": "guide/new.md"},
            json={"content": "# New page"}
        )

        assert resp.status == 200
        assert (await resp.json())["success"] is True
        assert (docs_root / "guide" / "new.md").read_text() == "# New page"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("path,status", [
        ("../outside.md", 403),
        ("guide/../../outside.md", 403),
        ("guide/notes.txt", 400),
        ("missing.md", 404),
    ])
    async def test_read_rejected(self, client, docs_project, path, status):
        resp = await client.get("/api/file", params={"projectId": docs_project.id, "path": path})
        assert resp.status == status

    @pytest.mark.asyncio
    async def test_write_outside_root_denied(self, client, docs_project, tmp_path):
        resp = await client.put(
            "/api/file",
            params={"projectId": docs_project.id, "path": "../escape.md"},
            json={"content": "nope"}
        )

        assert resp.status == 403
        assert not (tmp_path / "escape.md").exists()

    @pytest.mark.asyncio
    async def test_missing_path(self, client, docs_project):
        resp = await client.get("/api/file", params={"projectId": docs_project.id})
        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_unknown_project(self, client):
        resp = await client.get("/api/file", params={"projectId": "nope", "path": "README.md"})
        assert resp.status == 404

    @pytest.mark.asyncio
    async def test_write_requires_string_content(self, client, docs_project):
        resp = await client.put(
            "/api/file",
            params={"projectId": docs_project.id, "path": "README.md"},
            json={"content": 42}
        )
        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_write_invalid_json(self, client, docs_project):
        resp = await client.put(
            "/api/file",
            params={"projectId": docs_project.id, "path": "README.md"},
            data="not json",
            headers={"Content-Type": "application/json"}
        )
        assert resp.status == 400


class TestServiceEndpoints:

    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/health")
        assert (await resp.json()) == {"status": "ok"}

    @pytest.mark.asyncio
    async def test_status(self, client, docs_project):
        stream = await client.get("/__reload", params={"projectId": docs_project.id})
        assert await read_event(stream) == "connected"

        resp = await client.get("/status")

        data = await resp.json()
        assert data["status"] == "running"
        assert data["livesync"]["subscribers"] == {docs_project.id: 1}
        assert docs_project.id in data["livesync"]["watching"]
        assert data["stats"]["projects"] == 1
        stream.close()

    @pytest.mark.asyncio
    async def test_metrics_json(self, client):
        await client.get("/api/search", params={"q": "docs"})

        resp = await client.get("/metrics")

        data = json.loads(await resp.text())
        assert data["counters"]["search.requests"] == 1
        assert data["latencies"]["search"]["count"] == 1

    @pytest.mark.asyncio
    async def test_metrics_prometheus(self, client):
        await client.get("/api/search", params={"q": "docs"})

        resp = await client.get("/metrics", params={"format": "prometheus"})

        assert resp.content_type == "text/plain"
        text = await resp.text()
        assert "mdlive_search_latency_ms_count 1" in text
        assert "mdlive_search_requests_total 1" in text

    @pytest.mark.asyncio
    async def test_cors_headers(self, client):
        resp = await client.get("/health")
        assert resp.headers["Access-Control-Allow-Origin"] == "*"
