"""Runtime state containers.

SkipCaches is owned by one DocBuilder for the lifetime of the worker
process. AppState is created once in ``main`` and holds every long-lived
resource so it can be torn down in one place.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import aiosqlite
    import httpx

    from docbuilder.builder import DocBuilder
    from docbuilder.config import Settings
    from docbuilder.models.package import PackageIdentity
    from docbuilder.protocols import DurableSkipCache, StorageProtocol
    from docbuilder.queue import BuildQueue


class StoredReleases:
    """Durable skip cache answered by the storage layer at decision time."""

    async def contains(self, storage: StorageProtocol, identity: PackageIdentity) -> bool:
        return await storage.release_exists(identity)


@dataclass
class SkipCaches:
    """Both skip caches consulted before building a package."""

    # canonical names attempted by this process; never persisted
    local: set[str] = field(default_factory=set)
    durable: DurableSkipCache = field(default_factory=StoredReleases)


@dataclass
class AppState:
    """Holds all shared runtime state of a worker process."""

    settings: Settings
    http_client: httpx.AsyncClient
    queue_db: aiosqlite.Connection
    queue: BuildQueue
    builder: DocBuilder
