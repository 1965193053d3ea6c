"""Protocol interfaces for the collaborators of the build core.

DocBuilder and QueueWorker reference these protocols, not the concrete
implementations. This allows:
- Tests to use lightweight in-memory implementations
- Other sandboxes or storage backends to be swapped without changing the core
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from pathlib import Path

    from docbuilder.fetcher import FetchedPackage
    from docbuilder.models.package import (
        BuildAttemptResult,
        BuildOutcome,
        PackageIdentity,
    )
    from docbuilder.sandbox import CommandResult


class SandboxProtocol(Protocol):
    """Runs a shell command line as the unprivileged user inside the sandbox."""

    async def run(self, command: str) -> CommandResult: ...


class FetcherProtocol(Protocol):
    """Materialises the source tree of an exactly pinned package version."""

    async def fetch(self, name: str, version_requirement: str) -> FetchedPackage: ...


class StorageProtocol(Protocol):
    """Persistence of release records, build records, and file trees."""

    async def add_package(
        self, identity: PackageIdentity, result: BuildAttemptResult
    ) -> int: ...

    async def add_build(self, release_id: int, result: BuildAttemptResult) -> None: ...

    async def add_path_tree(self, prefix: str, local_directory: Path) -> int: ...

    async def release_exists(self, identity: PackageIdentity) -> bool: ...


class DurableSkipCache(Protocol):
    """Skip cache whose contents live in the persistence layer."""

    async def contains(self, storage: StorageProtocol, identity: PackageIdentity) -> bool: ...


class BuilderProtocol(Protocol):
    async def build_package(self, name: str, version: str) -> BuildOutcome: ...


class QueueProtocol(Protocol):
    """Durable backlog and cooperative lock shared by all worker processes."""

    async def is_locked(self) -> bool: ...

    async def lock(self) -> None: ...

    async def pending_count(self) -> int: ...

    async def build_next_queued_item(self, builder: BuilderProtocol) -> BuildOutcome | None: ...
