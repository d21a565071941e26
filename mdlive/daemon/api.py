"""HTTP API for the mdlive daemon."""

import asyncio
import posixpath

import aiofiles
from aiohttp import web
from loguru import logger

from .errors import ErrorEvent, PathOutsideProjectError, ProjectNotFoundError
from .metrics import LatencyTimer
from .paths import is_within, resolve_within
from .scanner import is_markdown, scan_markdown
from .subscribers import SyncMessage


SSE_HEADERS = {
    'Content-Type': 'text/event-stream',
    'Cache-Control': 'no-cache',
    'Connection': 'keep-alive',
    'Access-Control-Allow-Origin': '*',
}

TRUTHY = ('1', 'true', 'yes')


def create_api_app(daemon) -> web.Application:
    """Create the aiohttp application with routes."""
    app = web.Application(middlewares=[cors_middleware])
    app['daemon'] = daemon

    app.router.add_get('/__reload', handle_reload)
    app.router.add_get('/api/search', handle_search)
    app.router.add_get('/api/projects', handle_projects)
    app.router.add_get('/api/projects/{project_id}/files', handle_project_files)
    app.router.add_get('/api/file', handle_file_read)
    app.router.add_put('/api/file', handle_file_write)
    app.router.add_get('/status', handle_status)
    app.router.add_get('/health', handle_health)
    app.router.add_get('/metrics', handle_metrics)

    return app


@web.middleware
async def cors_middleware(request: web.Request, handler):
    response = await handler(request)
    # Headers of a prepared stream are already on the wire
    if not response.prepared:
        response.headers['Access-Control-Allow-Origin'] = '*'
        response.headers['Access-Control-Allow-Methods'] = 'GET, PUT, OPTIONS'
        response.headers['Access-Control-Allow-Headers'] = 'Content-Type'
    return response


def error_response(message: str, status: int) -> web.Response:
    return web.json_response({'error': message}, status=status)


async def handle_reload(request: web.Request) -> web.StreamResponse:
    """
    Server-Sent Events stream of reload signals for one project.

    Sends ``data: connected`` on open, a ``: ping`` comment every heartbeat
    interval and ``data: reload`` after each debounced change. An unknown
    project gets an empty 204 and no events.
    """
    daemon = request.app['daemon']
    project_id = request.query.get('projectId')

    try:
        subscriber = await daemon.livesync.connect(project_id)
    except ProjectNotFoundError:
        logger.debug(f"Reload stream refused for unknown project {project_id!r}")
        return web.Response(status=204)

    heartbeat = daemon.config.sync.heartbeat_s
    response = web.StreamResponse(status=200, headers=SSE_HEADERS)

    try:
        await response.prepare(request)
        await response.write(SyncMessage.CONNECTED.encode())

        while True:
            message = await subscriber.next_message(heartbeat)
            if message is SyncMessage.CLOSE:
                break
            transport = request.transport
            if transport is None or transport.is_closing():
                break
            await response.write(message.encode())

    except ConnectionError as e:
        logger.debug(f"Subscriber {subscriber.id} went away: {e}")
    finally:
        await daemon.livesync.disconnect(subscriber)

    return response


def _parse_limit(raw, default: int, maximum: int) -> int:
    if raw is None or raw == '':
        return default
    limit = int(raw)
    if limit <= 0:
        raise ValueError("limit must be positive")
    return min(limit, maximum)


async def handle_search(request: web.Request) -> web.Response:
    """Search one project (``projectId``) or all projects."""
    daemon = request.app['daemon']
    query = request.query.get('q', '')
    project_id = request.query.get('projectId') or None

    try:
        limit = _parse_limit(
            request.query.get('limit'),
            daemon.config.search.limit,
            daemon.config.search.max_limit
        )
    except ValueError:
        return error_response('limit must be a positive integer', 400)

    try:
        results = await daemon.search_engine.search_async(query, project_id, limit)
    except ProjectNotFoundError:
        return error_response('Project not found', 404)

    return web.json_response({
        'query': query,
        'results': [r.to_dict() for r in results]
    })


async def handle_projects(request: web.Request) -> web.Response:
    daemon = request.app['daemon']
    return web.json_response({
        'projects': [
            {'id': p.id, 'name': p.name, 'path': p.path}
            for p in daemon.projects.get_projects()
        ]
    })


async def handle_project_files(request: web.Request) -> web.Response:
    """List Markdown files and folders under a project directory."""
    daemon = request.app['daemon']
    project = daemon.projects.find_project(request.match_info['project_id'])
    if project is None:
        return error_response('Project not found', 404)

    sub_path = posixpath.normpath(request.query.get('path', '').strip('/') or '.')
    if sub_path == '.':
        sub_path = ''
    recursive = request.query.get('recursive', '').lower() in TRUTHY

    try:
        directory = resolve_within(project.path, sub_path)
    except PathOutsideProjectError:
        return error_response('Access denied', 403)

    paths = await asyncio.to_thread(
        lambda: sorted(scan_markdown(str(directory), sub_path, recursive))
    )

    return web.json_response({
        'path': sub_path,
        'entries': [
            {
                'path': p,
                'name': posixpath.basename(p.rstrip('/')),
                'isDirectory': p.endswith('/')
            }
            for p in paths
        ]
    })


def _resolve_file(daemon, request: web.Request):
    """Shared checks for the file API. Returns (path, relative_path) or an error response."""
    project = daemon.projects.find_project(request.query.get('projectId'))
    if project is None:
        return None, error_response('Project not found', 404)

    relative_path = request.query.get('path')
    if not relative_path:
        return None, error_response('path is required', 400)

    if not is_within(project.path, relative_path):
        return None, error_response('Access denied', 403)

    if not is_markdown(relative_path):
        return None, error_response('Only markdown files can be edited', 400)

    return resolve_within(project.path, relative_path), None


async def handle_file_read(request: web.Request) -> web.Response:
    daemon = request.app['daemon']
    full_path, error = _resolve_file(daemon, request)
    if error is not None:
        return error

    relative_path = request.query['path']
    try:
        with LatencyTimer(daemon.metrics, "file.read"):
            async with aiofiles.open(full_path, 'r', encoding='utf-8') as f:
                content = await f.read()
    except OSError:
        return error_response('File not found', 404)
    except UnicodeDecodeError:
        return error_response('File is not valid UTF-8', 400)

    return web.json_response({'content': content, 'path': relative_path})


async def handle_file_write(request: web.Request) -> web.Response:
    daemon = request.app['daemon']
    full_path, error = _resolve_file(daemon, request)
    if error is not None:
        return error

    relative_path = request.query['path']
    try:
        data = await request.json()
    except ValueError:
        return error_response('Invalid JSON body', 400)

    content = data.get('content') if isinstance(data, dict) else None
    if not isinstance(content, str):
        return error_response('Content is required', 400)

    try:
        with LatencyTimer(daemon.metrics, "file.write"):
            async with aiofiles.open(full_path, 'w', encoding='utf-8') as f:
                await f.write(content)
    except OSError as e:
        logger.error(f"Failed to write {full_path}: {e}")
        daemon.errors.record_error(ErrorEvent.from_exception("file_api", e, path=relative_path))
        return error_response(str(e), 500)

    return web.json_response({'success': True, 'path': relative_path})


async def handle_status(request: web.Request) -> web.Response:
    daemon = request.app['daemon']
    return web.json_response(daemon.get_status())


async def handle_health(request: web.Request) -> web.Response:
    return web.json_response({'status': 'ok'})


async def handle_metrics(request: web.Request) -> web.Response:
    daemon = request.app['daemon']
    fmt = request.query.get('format', 'json')
    if fmt == 'prometheus':
        return web.Response(
            text=daemon.metrics.export_metrics('prometheus'),
            content_type='text/plain'
        )
    return web.Response(
        text=daemon.metrics.export_metrics('json'),
        content_type='application/json'
    )
