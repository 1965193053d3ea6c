"""Queue worker: the supervisory loop that turns the backlog into builds.

Each iteration reclaims stale temp dirs, sleeps unless the previous
iteration built something, checks the cooperative lock and the backlog,
then builds the next queued package inside ``run_isolated``. A runtime
fault (anything that is not a DocBuilderError) locks the queue until an
operator unlocks it; the loop itself never exits.
"""

from __future__ import annotations

import asyncio
import shutil
import tempfile
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Literal, NoReturn

import structlog

from docbuilder.errors import DocBuilderError, report_error

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from docbuilder.protocols import BuilderProtocol, QueueProtocol

log = structlog.get_logger()

IDLE_SLEEP_SECONDS = 60
TEMPDIR_PREFIX = "docbuilder-docs"


class BuilderState(StrEnum):
    FRESH = "fresh"  # started, nothing observed yet
    EMPTY_QUEUE = "empty_queue"  # last saw an empty queue
    LOCKED = "locked"  # last saw the cooperative lock
    IN_PROGRESS = "in_progress"  # started (or just finished) a build


class QueueObservation(StrEnum):
    LOCKED = "locked"
    QUERY_FAILED = "query_failed"
    EMPTY = "empty"
    PENDING = "pending"


def _transitions() -> dict[tuple[BuilderState, QueueObservation], BuilderState]:
    table: dict[tuple[BuilderState, QueueObservation], BuilderState] = {}
    for state in BuilderState:
        table[state, QueueObservation.LOCKED] = BuilderState.LOCKED
        # A failed query leaves the state untouched
        table[state, QueueObservation.QUERY_FAILED] = state
        table[state, QueueObservation.EMPTY] = BuilderState.EMPTY_QUEUE
        table[state, QueueObservation.PENDING] = BuilderState.IN_PROGRESS
    return table


TRANSITIONS: dict[tuple[BuilderState, QueueObservation], BuilderState] = _transitions()


def next_state(state: BuilderState, observation: QueueObservation) -> BuilderState:
    return TRANSITIONS[state, observation]


def should_sleep(state: BuilderState) -> bool:
    """Drain the backlog without pausing; idle for every other observation."""
    return state is not BuilderState.IN_PROGRESS


# ---------------------------------------------------------------------------
# Crash isolation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StepResult:
    kind: Literal["ok", "error", "fault"]
    exception: BaseException | None = None


async def run_isolated(step: Callable[[], Awaitable[object]]) -> StepResult:
    """Run one unit of work, converting every exception into a tagged result.

    DocBuilderError is an ordinary ``error``; any other exception is a
    ``fault``. Cancellation is not intercepted.
    """
    try:
        await step()
    except DocBuilderError as exc:
        return StepResult(kind="error", exception=exc)
    except Exception as exc:
        return StepResult(kind="fault", exception=exc)
    return StepResult(kind="ok")


# ---------------------------------------------------------------------------
# Temp dir reclamation
# ---------------------------------------------------------------------------


def remove_tempdirs(root: Path | None = None, prefix: str = TEMPDIR_PREFIX) -> int:
    """Remove directories under the temp root whose names start with ``prefix``.

    Hard crashes can leave extraction dirs behind; this keeps the disk from
    filling up. Plain files are left alone. Raises OSError on failure.
    """
    temp_root = root if root is not None else Path(tempfile.gettempdir())
    removed = 0
    for entry in temp_root.iterdir():
        if not entry.name.startswith(prefix):
            continue
        if entry.is_symlink() or not entry.is_dir():
            continue
        shutil.rmtree(entry)
        removed += 1
        log.info("tempdir_removed", path=str(entry))
    return removed


# ---------------------------------------------------------------------------
# Worker
# ---------------------------------------------------------------------------


class QueueWorker:
    """Supervises builds from a QueueProtocol using a BuilderProtocol."""

    def __init__(
        self,
        queue: QueueProtocol,
        builder: BuilderProtocol,
        *,
        idle_sleep_seconds: float = IDLE_SLEEP_SECONDS,
        tempdir_prefix: str = TEMPDIR_PREFIX,
        temp_root: Path | None = None,
    ) -> None:
        self._queue = queue
        self._builder = builder
        self._idle_sleep_seconds = idle_sleep_seconds
        self._tempdir_prefix = tempdir_prefix
        self._temp_root = temp_root
        self.state = BuilderState.FRESH

    async def run_forever(self) -> NoReturn:
        log.info("worker_started", idle_sleep_seconds=self._idle_sleep_seconds)
        while True:
            await self.run_once()

    async def run_once(self) -> BuilderState:
        """Run a single loop iteration and return the resulting state."""
        try:
            remove_tempdirs(self._temp_root, self._tempdir_prefix)
        except OSError as exc:
            report_error(exc, "tempdir_cleanup_failed")

        if should_sleep(self.state):
            await asyncio.sleep(self._idle_sleep_seconds)

        observation, queue_count = await self._observe()
        self.state = next_state(self.state, observation)

        if observation is QueueObservation.LOCKED:
            log.warning("queue_locked_skip")
            return self.state
        if observation is QueueObservation.EMPTY:
            log.debug("queue_empty")
            return self.state
        if observation is QueueObservation.QUERY_FAILED:
            return self.state

        log.info("queue_build_start", queue_count=queue_count)
        result = await run_isolated(lambda: self._queue.build_next_queued_item(self._builder))

        if result.kind == "error" and result.exception is not None:
            report_error(result.exception, "queue_build_failed")
        elif result.kind == "fault":
            await self._escalate(result.exception)

        return self.state

    async def _observe(self) -> tuple[QueueObservation, int]:
        try:
            if await self._queue.is_locked():
                return QueueObservation.LOCKED, 0
        except DocBuilderError as exc:
            report_error(exc, "queue_lock_check_failed")
            return QueueObservation.QUERY_FAILED, 0

        try:
            count = await self._queue.pending_count()
        except DocBuilderError as exc:
            report_error(exc, "queue_count_failed")
            return QueueObservation.QUERY_FAILED, 0

        if count == 0:
            return QueueObservation.EMPTY, 0
        return QueueObservation.PENDING, count

    async def _escalate(self, fault: BaseException | None) -> None:
        """Lock the queue so no worker starts another build until an operator looks."""
        log.critical("queue_build_fault", error=repr(fault), exc_info=fault)
        try:
            await self._queue.lock()
        except Exception as exc:
            report_error(exc, "queue_lock_after_fault_failed")
