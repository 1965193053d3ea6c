"""Unit tests for docbuilder.queue."""

from __future__ import annotations

from typing import TYPE_CHECKING
from unittest.mock import AsyncMock

import aiosqlite
import pytest

from docbuilder.errors import DocBuilderError, ErrorCode
from docbuilder.models.package import BuildOutcome

if TYPE_CHECKING:
    from docbuilder.queue import BuildQueue


def builder_returning(outcome: BuildOutcome | None = None, **kwargs: object) -> AsyncMock:
    builder = AsyncMock()
    builder.build_package = AsyncMock(return_value=outcome, **kwargs)
    return builder


class TestLock:
    async def test_unlocked_by_default(self, build_queue: BuildQueue) -> None:
        assert await build_queue.is_locked() is False

    async def test_lock_and_unlock(self, build_queue: BuildQueue) -> None:
        await build_queue.lock()
        assert await build_queue.is_locked() is True
        await build_queue.unlock()
        assert await build_queue.is_locked() is False

    async def test_read_failure_raises_queue_error(self, build_queue: BuildQueue) -> None:
        async def failing_execute(*args, **kwargs):
            raise aiosqlite.OperationalError("database is locked")

        build_queue._db.execute = failing_execute  # type: ignore[assignment]
        with pytest.raises(DocBuilderError) as exc_info:
            await build_queue.is_locked()
        assert exc_info.value.code == ErrorCode.QUEUE_FAILED


class TestBacklog:
    async def test_pending_count(self, build_queue: BuildQueue) -> None:
        assert await build_queue.pending_count() == 0
        await build_queue.add_crate("serde", "1.0.0")
        await build_queue.add_crate("rand", "0.3.14")
        assert await build_queue.pending_count() == 2

    async def test_requeue_updates_priority_only(self, build_queue: BuildQueue) -> None:
        await build_queue.add_crate("serde", "1.0.0", priority=5)
        await build_queue.add_crate("serde", "1.0.0", priority=-1)
        crates = await build_queue.queued_crates()
        assert len(crates) == 1
        assert crates[0].priority == -1

    async def test_order_by_priority_then_insertion(self, build_queue: BuildQueue) -> None:
        await build_queue.add_crate("first", "1.0.0")
        await build_queue.add_crate("low", "1.0.0", priority=10)
        await build_queue.add_crate("second", "1.0.0")
        await build_queue.add_crate("urgent", "1.0.0", priority=-5)
        names = [crate.name for crate in await build_queue.queued_crates()]
        assert names == ["urgent", "first", "second", "low"]


class TestBuildNextQueuedItem:
    async def test_builds_and_removes_item(self, build_queue: BuildQueue) -> None:
        await build_queue.add_crate("serde", "1.0.0")
        builder = builder_returning(BuildOutcome.SUCCEEDED)

        outcome = await build_queue.build_next_queued_item(builder)

        assert outcome is BuildOutcome.SUCCEEDED
        builder.build_package.assert_awaited_once_with("serde", "1.0.0")
        assert await build_queue.pending_count() == 0

    async def test_failed_build_is_still_removed(self, build_queue: BuildQueue) -> None:
        await build_queue.add_crate("broken", "1.0.0")
        outcome = await build_queue.build_next_queued_item(builder_returning(BuildOutcome.FAILED))
        assert outcome is BuildOutcome.FAILED
        assert await build_queue.pending_count() == 0

    async def test_empty_queue_returns_none(self, build_queue: BuildQueue) -> None:
        builder = builder_returning(BuildOutcome.SUCCEEDED)
        assert await build_queue.build_next_queued_item(builder) is None
        builder.build_package.assert_not_awaited()

    async def test_error_counts_attempt_and_reraises(self, build_queue: BuildQueue) -> None:
        await build_queue.add_crate("flaky", "1.0.0")
        error = DocBuilderError(ErrorCode.FETCH_FAILED, "HTTP 500", recoverable=True)
        builder = builder_returning(side_effect=error)

        with pytest.raises(DocBuilderError):
            await build_queue.build_next_queued_item(builder)

        crates = await build_queue.queued_crates()
        assert crates[0].attempt == 1

    async def test_item_dropped_after_max_attempts(self, build_queue: BuildQueue) -> None:
        await build_queue.add_crate("flaky", "1.0.0")
        error = DocBuilderError(ErrorCode.FETCH_FAILED, "HTTP 500", recoverable=True)
        builder = builder_returning(side_effect=error)

        for _ in range(3):
            with pytest.raises(DocBuilderError):
                await build_queue.build_next_queued_item(builder)

        assert await build_queue.pending_count() == 0

    async def test_fault_propagates_without_counting(self, build_queue: BuildQueue) -> None:
        await build_queue.add_crate("panics", "1.0.0")
        builder = builder_returning(side_effect=RuntimeError("boom"))

        with pytest.raises(RuntimeError):
            await build_queue.build_next_queued_item(builder)

        crates = await build_queue.queued_crates()
        assert crates[0].attempt == 0

    async def test_item_consumed_by_other_worker(self, build_queue: BuildQueue) -> None:
        await build_queue.add_crate("raced", "1.0.0")

        async def build_package(name: str, version: str) -> BuildOutcome:
            # Another worker finishes the same item while this build runs
            await build_queue._db.execute("DELETE FROM queue")
            await build_queue._db.commit()
            return BuildOutcome.SUCCEEDED

        builder = AsyncMock()
        builder.build_package = build_package

        assert await build_queue.build_next_queued_item(builder) is BuildOutcome.SUCCEEDED
        assert await build_queue.pending_count() == 0
