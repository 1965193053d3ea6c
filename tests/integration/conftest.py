"""Integration test fixtures.

Provides a queue, builder and worker wired to one SQLite file on tmp_path.
The sandbox and fetcher doubles come from tests/conftest.py.
"""

from __future__ import annotations

from functools import partial
from typing import TYPE_CHECKING

import pytest

from docbuilder.builder import DocBuilder
from docbuilder.queue import BuildQueue
from docbuilder.storage import connect_db, open_storage
from docbuilder.worker import QueueWorker

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

    import aiosqlite

    from docbuilder.config import BuilderSettings


@pytest.fixture()
def db_path(tmp_path: Path) -> str:
    return str(tmp_path / "data" / "docbuilder.db")


@pytest.fixture()
async def queue_db(db_path: str) -> AsyncIterator[aiosqlite.Connection]:
    db = await connect_db(db_path)
    yield db
    await db.close()


@pytest.fixture()
def queue(queue_db: aiosqlite.Connection) -> BuildQueue:
    return BuildQueue(queue_db, max_attempts=2)


@pytest.fixture()
def make_builder(builder_settings: BuilderSettings, sandbox, fetcher, db_path: str):
    """Factory for builders sharing the doubles; each one has its own skip caches."""

    def _make() -> DocBuilder:
        return DocBuilder(
            builder_settings,
            sandbox=sandbox,
            fetcher=fetcher,
            connect=partial(open_storage, db_path),
            host_target="x86_64-unknown-linux-gnu",
        )

    return _make


@pytest.fixture()
def builder(make_builder) -> DocBuilder:
    return make_builder()


@pytest.fixture()
def worker(queue: BuildQueue, builder: DocBuilder, tmp_path: Path) -> QueueWorker:
    temp_root = tmp_path / "tmp"
    temp_root.mkdir()
    return QueueWorker(queue, builder, temp_root=temp_root)
