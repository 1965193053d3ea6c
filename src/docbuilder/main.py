"""Worker process entrypoint.

Responsibilities (and nothing more):
- Configure structlog
- Create AppState inside the lifespan context manager
- Run the queue worker until the process is terminated
"""

from __future__ import annotations

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from functools import partial
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from docbuilder import __version__
from docbuilder.builder import DocBuilder
from docbuilder.config import Settings
from docbuilder.fetcher import CrateFetcher, build_http_client
from docbuilder.queue import BuildQueue
from docbuilder.sandbox import LxcSandbox
from docbuilder.state import AppState, SkipCaches
from docbuilder.storage import connect_db, open_storage
from docbuilder.worker import QueueWorker

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    import aiosqlite
    import httpx

log = structlog.get_logger()


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------


def _setup_logging(settings: Settings) -> None:
    """Configure structlog. Called once at startup before any log statements."""
    log_level = logging.getLevelNamesMapping()[settings.logging.level]

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if settings.logging.format == "json":
        processors = [
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [*shared_processors, structlog.dev.ConsoleRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        # Build output can be large; keep stdout free for it when run by hand
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


def build_app_state(
    settings: Settings,
    http_client: httpx.AsyncClient,
    queue_db: aiosqlite.Connection,
) -> AppState:
    """Wire the builder and queue from settings and already-open resources."""
    builder_settings = settings.builder
    sandbox = LxcSandbox(
        builder_settings.container_name,
        builder_settings.chroot_user,
        timeout_seconds=builder_settings.command_timeout_seconds,
    )
    fetcher = CrateFetcher(
        http_client,
        Path(builder_settings.sources_path).expanduser(),
        download_url=settings.fetcher.download_url,
        tempdir_prefix=settings.worker.tempdir_prefix,
    )
    builder = DocBuilder(
        builder_settings,
        sandbox=sandbox,
        fetcher=fetcher,
        connect=partial(open_storage, settings.storage.db_path),
        caches=SkipCaches(),
    )
    queue = BuildQueue(queue_db, max_attempts=settings.worker.max_attempts)
    return AppState(
        settings=settings,
        http_client=http_client,
        queue_db=queue_db,
        queue=queue,
        builder=builder,
    )


@asynccontextmanager
async def lifespan(settings: Settings) -> AsyncGenerator[AppState, None]:
    """Create and tear down all shared resources for the process lifetime."""
    log.info("worker_starting", version=__version__, db_path=settings.storage.db_path)

    http_client = build_http_client(settings.fetcher.timeout_seconds)
    queue_db = await connect_db(settings.storage.db_path)
    try:
        yield build_app_state(settings, http_client, queue_db)
    finally:
        await http_client.aclose()
        await queue_db.close()
        log.info("worker_stopping")


async def run(settings: Settings) -> None:
    async with lifespan(settings) as state:
        worker = QueueWorker(
            state.queue,
            state.builder,
            idle_sleep_seconds=settings.worker.idle_sleep_seconds,
            tempdir_prefix=settings.worker.tempdir_prefix,
        )
        await worker.run_forever()


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


def main() -> None:
    settings = Settings()
    _setup_logging(settings)
    try:
        asyncio.run(run(settings))
    except KeyboardInterrupt:
        log.info("worker_interrupted")


if __name__ == "__main__":
    main()
