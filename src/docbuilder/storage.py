"""SQLite persistence for releases, builds, and documentation/source files.

Unlike a cache, storage must never drop data silently: every
``aiosqlite.Error`` and ``OSError`` is converted to a DocBuilderError
(STORAGE_FAILED) and propagated to the builder, which aborts the current
package.
"""

from __future__ import annotations

import mimetypes
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

import aiosqlite
import structlog

from docbuilder.errors import DocBuilderError, ErrorCode

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from docbuilder.models.package import BuildAttemptResult, PackageIdentity

log = structlog.get_logger()

_CREATE_RELEASES_TABLE = """
CREATE TABLE IF NOT EXISTS releases (
    id                   INTEGER PRIMARY KEY AUTOINCREMENT,
    name                 TEXT NOT NULL,
    version              TEXT NOT NULL,
    build_status         INTEGER NOT NULL,
    has_documentation    INTEGER NOT NULL,
    has_examples         INTEGER NOT NULL,
    toolchain_version    TEXT NOT NULL,
    orchestrator_version TEXT NOT NULL,
    release_time         TEXT NOT NULL,
    UNIQUE (name, version)
)
"""

_CREATE_BUILDS_TABLE = """
CREATE TABLE IF NOT EXISTS builds (
    id                   INTEGER PRIMARY KEY AUTOINCREMENT,
    release_id           INTEGER NOT NULL REFERENCES releases(id),
    toolchain_version    TEXT NOT NULL,
    orchestrator_version TEXT NOT NULL,
    build_status         INTEGER NOT NULL,
    failed_targets       TEXT NOT NULL DEFAULT '',
    output               TEXT NOT NULL,
    build_time           TEXT NOT NULL
)
"""

_CREATE_FILES_TABLE = """
CREATE TABLE IF NOT EXISTS files (
    path         TEXT PRIMARY KEY,
    mime         TEXT NOT NULL,
    content      BLOB NOT NULL,
    date_updated TEXT NOT NULL
)
"""

_CREATE_BUILDS_INDEX = "CREATE INDEX IF NOT EXISTS idx_builds_release ON builds(release_id)"

# Shared with BuildQueue: holds the cooperative lock flag.
_CREATE_METADATA_TABLE = """
CREATE TABLE IF NOT EXISTS metadata (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
)
"""

_CREATE_QUEUE_TABLE = """
CREATE TABLE IF NOT EXISTS queue (
    id         INTEGER PRIMARY KEY AUTOINCREMENT,
    name       TEXT NOT NULL,
    version    TEXT NOT NULL,
    priority   INTEGER NOT NULL DEFAULT 0,
    attempt    INTEGER NOT NULL DEFAULT 0,
    date_added TEXT NOT NULL,
    UNIQUE (name, version)
)
"""

_SCHEMA = (
    _CREATE_RELEASES_TABLE,
    _CREATE_BUILDS_TABLE,
    _CREATE_FILES_TABLE,
    _CREATE_BUILDS_INDEX,
    _CREATE_METADATA_TABLE,
    _CREATE_QUEUE_TABLE,
)


async def init_db(db: aiosqlite.Connection) -> None:
    """Create tables and set WAL mode. Safe to call from every process."""
    await db.execute("PRAGMA journal_mode = WAL")
    await db.execute("PRAGMA foreign_keys = ON")
    for statement in _SCHEMA:
        await db.execute(statement)
    await db.commit()


def _storage_error(action: str, exc: Exception) -> DocBuilderError:
    return DocBuilderError(
        code=ErrorCode.STORAGE_FAILED,
        message=f"Failed to {action}: {exc}",
        recoverable=True,
    )


class Storage:
    """SQLite-backed storage implementing StorageProtocol."""

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db

    # ------------------------------------------------------------------
    # Release and build records
    # ------------------------------------------------------------------

    async def add_package(self, identity: PackageIdentity, result: BuildAttemptResult) -> int:
        """Insert or update the release row for a package. Returns its id."""
        try:
            await self._db.execute(
                "INSERT INTO releases "
                "(name, version, build_status, has_documentation, has_examples, "
                "toolchain_version, orchestrator_version, release_time) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT (name, version) DO UPDATE SET "
                "build_status = excluded.build_status, "
                "has_documentation = excluded.has_documentation, "
                "has_examples = excluded.has_examples, "
                "toolchain_version = excluded.toolchain_version, "
                "orchestrator_version = excluded.orchestrator_version",
                (
                    identity.name,
                    identity.version,
                    int(result.build_success),
                    int(result.has_documentation),
                    int(result.has_examples),
                    result.toolchain_version,
                    result.orchestrator_version,
                    datetime.now(UTC).isoformat(),
                ),
            )
            cursor = await self._db.execute(
                "SELECT id FROM releases WHERE name = ? AND version = ?",
                (identity.name, identity.version),
            )
            row = await cursor.fetchone()
            await self._db.commit()
        except aiosqlite.Error as exc:
            raise _storage_error(f"add release {identity}", exc) from exc

        if row is None:
            raise DocBuilderError(
                code=ErrorCode.STORAGE_FAILED,
                message=f"Release row for {identity} missing after insert",
                recoverable=True,
            )
        log.debug("release_recorded", package=str(identity), release_id=row[0])
        return int(row[0])

    async def add_build(self, release_id: int, result: BuildAttemptResult) -> None:
        """Append a build row for a release."""
        try:
            await self._db.execute(
                "INSERT INTO builds "
                "(release_id, toolchain_version, orchestrator_version, build_status, "
                "failed_targets, output, build_time) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    release_id,
                    result.toolchain_version,
                    result.orchestrator_version,
                    int(result.build_success),
                    " ".join(result.failed_targets),
                    result.output,
                    datetime.now(UTC).isoformat(),
                ),
            )
            await self._db.commit()
        except aiosqlite.Error as exc:
            raise _storage_error(f"add build for release {release_id}", exc) from exc

    async def release_exists(self, identity: PackageIdentity) -> bool:
        try:
            cursor = await self._db.execute(
                "SELECT 1 FROM releases WHERE name = ? AND version = ?",
                (identity.name, identity.version),
            )
            return await cursor.fetchone() is not None
        except aiosqlite.Error as exc:
            raise _storage_error(f"look up release {identity}", exc) from exc

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    async def add_path_tree(self, prefix: str, local_directory: Path) -> int:
        """Store every file below ``local_directory`` under ``prefix``.

        ``sources/serde/1.0.0`` + ``src/lib.rs`` → ``sources/serde/1.0.0/src/lib.rs``.
        Returns the number of files stored. Symlinks, and anything that
        resolves outside ``local_directory``, are skipped: the tree may have
        been written by untrusted build code.
        """
        if local_directory.is_symlink() or not local_directory.is_dir():
            raise DocBuilderError(
                code=ErrorCode.STORAGE_FAILED,
                message=f"Cannot store {local_directory}: not a directory",
                recoverable=False,
            )

        prefix = prefix.rstrip("/")
        now = datetime.now(UTC).isoformat()
        count = 0
        try:
            root = local_directory.resolve()
            for path in sorted(local_directory.rglob("*")):
                if path.is_symlink() or not path.resolve().is_relative_to(root):
                    log.warning("path_tree_link_skipped", prefix=prefix, path=str(path))
                    continue
                if not path.is_file():
                    continue
                relative = path.relative_to(local_directory).as_posix()
                mime = mimetypes.guess_type(path.name)[0] or "text/plain"
                await self._db.execute(
                    "INSERT OR REPLACE INTO files (path, mime, content, date_updated) "
                    "VALUES (?, ?, ?, ?)",
                    (f"{prefix}/{relative}", mime, path.read_bytes(), now),
                )
                count += 1
            await self._db.commit()
        except (aiosqlite.Error, OSError) as exc:
            raise _storage_error(f"store {local_directory} under {prefix}", exc) from exc

        log.info("path_tree_stored", prefix=prefix, file_count=count)
        return count

    async def get_file(self, path: str) -> tuple[str, bytes] | None:
        """Return ``(mime, content)`` of a stored file, or None."""
        try:
            cursor = await self._db.execute(
                "SELECT mime, content FROM files WHERE path = ?", (path,)
            )
            row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise _storage_error(f"read file {path}", exc) from exc
        return None if row is None else (row[0], bytes(row[1]))


@asynccontextmanager
async def open_storage(db_path: str) -> AsyncIterator[Storage]:
    """Open a storage connection for one build attempt.

    Raises DocBuilderError(STORAGE_FAILED) if the database cannot be opened.
    """
    try:
        db = await connect_db(db_path)
    except (aiosqlite.Error, OSError) as exc:
        raise _storage_error(f"open database {db_path}", exc) from exc

    try:
        yield Storage(db)
    finally:
        await db.close()


async def connect_db(db_path: str) -> aiosqlite.Connection:
    """Connect to the database file, creating parent dirs and schema as needed."""
    if db_path != ":memory:":
        path = Path(db_path).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        db_path = str(path)

    db = await aiosqlite.connect(db_path)
    try:
        await init_db(db)
    except aiosqlite.Error:
        await db.close()
        raise
    return db
