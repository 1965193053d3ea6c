"""Durable build queue and cooperative lock.

The queue lives in the same SQLite database as storage so that several
worker processes can share it. Every method maps ``aiosqlite.Error`` to
DocBuilderError(QUEUE_FAILED); the worker reports those and retries on its
next iteration.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

import aiosqlite
import structlog

from docbuilder.errors import DocBuilderError, ErrorCode
from docbuilder.models.package import QueuedCrate

if TYPE_CHECKING:
    from docbuilder.models.package import BuildOutcome
    from docbuilder.protocols import BuilderProtocol

log = structlog.get_logger()

LOCK_KEY = "queue_locked"


def _queue_error(action: str, exc: Exception) -> DocBuilderError:
    return DocBuilderError(
        code=ErrorCode.QUEUE_FAILED,
        message=f"Failed to {action}: {exc}",
        recoverable=True,
    )


class BuildQueue:
    """SQLite-backed build queue implementing QueueProtocol."""

    def __init__(self, db: aiosqlite.Connection, *, max_attempts: int = 5) -> None:
        self._db = db
        self._max_attempts = max_attempts

    # ------------------------------------------------------------------
    # Lock
    # ------------------------------------------------------------------

    async def is_locked(self) -> bool:
        try:
            cursor = await self._db.execute(
                "SELECT value FROM metadata WHERE key = ?", (LOCK_KEY,)
            )
            row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise _queue_error("read queue lock", exc) from exc
        return row is not None and row[0] == "1"

    async def lock(self) -> None:
        await self._set_lock(True)
        log.warning("queue_locked")

    async def unlock(self) -> None:
        await self._set_lock(False)
        log.info("queue_unlocked")

    async def _set_lock(self, locked: bool) -> None:
        try:
            await self._db.execute(
                "INSERT OR REPLACE INTO metadata (key, value) VALUES (?, ?)",
                (LOCK_KEY, "1" if locked else "0"),
            )
            await self._db.commit()
        except aiosqlite.Error as exc:
            raise _queue_error("write queue lock", exc) from exc

    # ------------------------------------------------------------------
    # Backlog
    # ------------------------------------------------------------------

    async def add_crate(self, name: str, version: str, priority: int = 0) -> None:
        """Queue a package. Re-queuing an existing package only updates its priority."""
        try:
            await self._db.execute(
                "INSERT INTO queue (name, version, priority, date_added) VALUES (?, ?, ?, ?) "
                "ON CONFLICT (name, version) DO UPDATE SET priority = excluded.priority",
                (name, version, priority, datetime.now(UTC).isoformat()),
            )
            await self._db.commit()
        except aiosqlite.Error as exc:
            raise _queue_error(f"queue {name}-{version}", exc) from exc
        log.info("crate_queued", name=name, version=version, priority=priority)

    async def pending_count(self) -> int:
        try:
            cursor = await self._db.execute("SELECT COUNT(*) FROM queue")
            row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise _queue_error("count queued crates", exc) from exc
        return int(row[0]) if row is not None else 0

    async def queued_crates(self) -> list[QueuedCrate]:
        """All queued crates in build order."""
        try:
            cursor = await self._db.execute(
                "SELECT id, name, version, priority, attempt FROM queue "
                "ORDER BY priority ASC, id ASC"
            )
            rows = await cursor.fetchall()
        except aiosqlite.Error as exc:
            raise _queue_error("list queued crates", exc) from exc
        return [
            QueuedCrate(id=row[0], name=row[1], version=row[2], priority=row[3], attempt=row[4])
            for row in rows
        ]

    async def _next_item(self) -> QueuedCrate | None:
        crates = await self.queued_crates()
        return crates[0] if crates else None

    async def _remove(self, item: QueuedCrate) -> None:
        try:
            cursor = await self._db.execute("DELETE FROM queue WHERE id = ?", (item.id,))
            await self._db.commit()
        except aiosqlite.Error as exc:
            raise _queue_error(f"remove {item.name}-{item.version} from queue", exc) from exc
        if cursor.rowcount == 0:
            log.debug("queue_item_already_removed", name=item.name, version=item.version)

    async def _record_failed_attempt(self, item: QueuedCrate) -> None:
        attempt = item.attempt + 1
        if attempt >= self._max_attempts:
            log.warning(
                "queue_item_dropped",
                name=item.name,
                version=item.version,
                attempts=attempt,
            )
            await self._remove(item)
            return

        try:
            await self._db.execute(
                "UPDATE queue SET attempt = ? WHERE id = ?", (attempt, item.id)
            )
            await self._db.commit()
        except aiosqlite.Error as exc:
            raise _queue_error(f"record attempt for {item.name}-{item.version}", exc) from exc

    async def build_next_queued_item(self, builder: BuilderProtocol) -> BuildOutcome | None:
        """Build the first queued crate.

        Returns None if the queue was drained by another worker in the
        meantime. A DocBuilderError from the build counts as a failed attempt
        and is re-raised; any other exception propagates untouched.
        """
        item = await self._next_item()
        if item is None:
            log.debug("queue_empty_on_take")
            return None

        try:
            outcome = await builder.build_package(item.name, item.version)
        except DocBuilderError:
            await self._record_failed_attempt(item)
            raise

        await self._remove(item)
        return outcome
