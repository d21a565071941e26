"""Main daemon process for mdlive."""

import asyncio
import signal
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

import psutil
from aiohttp import web
from loguru import logger

from .. import __version__
from .api import create_api_app
from .bus import Event, EventBus
from .config import Config
from .errors import ErrorAggregator
from .livesync import LiveSyncService
from .metrics import MetricsCollector
from .projects import ProjectStore
from .search import SearchEngine


LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)


class MdLiveDaemon:
    """Main daemon coordinating all services."""

    def __init__(self, config: Config, projects: Optional[ProjectStore] = None):
        self.config = config
        self.start_time = datetime.utcnow()

        self.projects = projects or ProjectStore.load(config.projects_file)
        self.event_bus = EventBus()
        self.metrics = MetricsCollector()
        self.errors = ErrorAggregator()

        self.livesync = LiveSyncService(
            self.projects,
            debounce_s=config.sync.debounce_s,
            event_bus=self.event_bus,
            metrics=self.metrics,
            errors=self.errors
        )
        self.search_engine = SearchEngine(
            self.projects,
            metrics=self.metrics,
            event_bus=self.event_bus,
            default_limit=config.search.limit
        )

        self.stats = {
            "reload_count": 0,
            "search_count": 0,
            "watch_failures": 0
        }

        self.api_app: Optional[web.Application] = None
        self.api_runner: Optional[web.AppRunner] = None
        self.api_site: Optional[web.TCPSite] = None
        self._stopped = asyncio.Event()

    async def start(self, serve_http: bool = True) -> None:
        """Start all daemon services."""
        logger.info("Starting mdlive daemon...")

        await self.event_bus.start()
        await self.livesync.start()

        self.event_bus.subscribe("sync.reload", self._on_reload)
        self.event_bus.subscribe("sync.watch_failed", self._on_watch_failed)
        self.event_bus.subscribe("search.completed", self._on_search)

        self.api_app = create_api_app(self)
        if serve_http:
            await self._start_api()

        logger.info("mdlive daemon started")

    async def stop(self) -> None:
        """Stop all daemon services."""
        if self._stopped.is_set():
            return
        logger.info("Stopping mdlive daemon...")

        # End the SSE streams first so the runner does not wait on them
        await self.livesync.close()

        if self.api_site:
            await self.api_site.stop()
        if self.api_runner:
            await self.api_runner.cleanup()

        await self.event_bus.stop()
        self._stopped.set()
        logger.info("mdlive daemon stopped")

    async def wait_stopped(self) -> None:
        await self._stopped.wait()

    async def _start_api(self) -> None:
        """Start the HTTP API server."""
        self.api_runner = web.AppRunner(self.api_app)
        await self.api_runner.setup()

        host = self.config.server.host
        port = self.config.server.port
        self.api_site = web.TCPSite(self.api_runner, host, port)
        await self.api_site.start()

        logger.info(f"mdlive running at http://{host}:{port}")
        logger.info(f"Projects: {self.projects.config_path}")

    async def _on_reload(self, event: Event) -> None:
        self.stats["reload_count"] += 1

    async def _on_watch_failed(self, event: Event) -> None:
        self.stats["watch_failures"] += 1

    async def _on_search(self, event: Event) -> None:
        self.stats["search_count"] += 1

    def get_status(self) -> dict:
        """Get daemon status and statistics."""
        process = psutil.Process()
        uptime = (datetime.utcnow() - self.start_time).total_seconds()

        return {
            "status": "running",
            "version": __version__,
            "uptime": f"{uptime:.0f}s",
            "stats": {
                **self.stats,
                "memory_mb": process.memory_info().rss / 1024 / 1024,
                "projects": len(self.projects.get_projects())
            },
            "livesync": self.livesync.get_status(),
            "errors": self.errors.get_error_summary(),
            "config": {
                "projects_file": str(self.projects.config_path),
                "debounce_ms": self.config.sync.debounce_ms,
                "heartbeat_s": self.config.sync.heartbeat_s
            }
        }


def setup_logging(level: str = "INFO", log_dir: Optional[Path] = None) -> None:
    """Coloured stderr sink plus a rotating debug log file."""
    logger.remove()
    logger.add(sys.stderr, format=LOG_FORMAT, level=level)

    log_dir = log_dir or Path.home() / ".local" / "share" / "mdlive" / "logs"
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.warning(f"File logging disabled, cannot create {log_dir}: {e}")
        return
    logger.add(
        log_dir / "daemon.log",
        rotation="1 day",
        retention="7 days",
        level="DEBUG"
    )


async def main(
    config_path: Optional[str] = None,
    project_path: Optional[str] = None,
    port: Optional[int] = None
) -> None:
    """Main entry point for the daemon."""
    try:
        config = Config.load(Path(config_path) if config_path else None)
    except FileNotFoundError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    if port is not None:
        config.server.port = port

    setup_logging(config.log_level, config.log_dir)

    projects = ProjectStore.load(config.projects_file)
    projects.add_project_from_cli(project_path)

    daemon = MdLiveDaemon(config, projects)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, lambda s=sig: _request_stop(daemon, s))
        except NotImplementedError:
            # Not available on Windows event loops
            pass

    try:
        await daemon.start()
        await daemon.wait_stopped()
    except Exception as e:
        logger.exception(f"Daemon error: {e}")
    finally:
        await daemon.stop()


def _request_stop(daemon: MdLiveDaemon, sig: int) -> None:
    logger.info(f"Received signal {sig}, shutting down...")
    asyncio.ensure_future(daemon.stop())


if __name__ == "__main__":
    asyncio.run(main())
