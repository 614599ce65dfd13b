from __future__ import annotations

import asyncio
import itertools
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Coroutine

from .logging_config import get_logger

logger = get_logger(__name__)


# notify(title, description, level) where level is "info" | "error".
Notifier = Callable[[str, str, str], None]


def log_notifier(title: str, description: str, level: str = "info") -> None:
    if level == "error":
        logger.error(f"{title}: {description}")
    else:
        logger.info(f"{title}: {description}")


@dataclass
class TaskRecord:
    task_id: int
    kind: str
    subject: str | None
    status: str = "pending"  # pending | running | done | failed
    error: str | None = None
    result: Any = None
    started_at: float | None = None
    finished_at: float | None = None


class TaskTracker:
    """Run side operations as asyncio tasks and record how each one ended.

    A failing task never raises into the caller; its error is stored on the
    record and passed to the notifier.
    """

    def __init__(self, notify: Notifier | None = None, max_records: int = 200):
        self.notify = notify or log_notifier
        # Oldest records are dropped once max_records is reached.
        self.records: deque[TaskRecord] = deque(maxlen=max_records)
        self._tasks: set[asyncio.Task] = set()
        self._ids = itertools.count(1)

    def spawn(
        self,
        kind: str,
        coro: Coroutine[Any, Any, Any],
        *,
        subject: str | None = None,
        on_done: Callable[[TaskRecord], None] | None = None,
    ) -> asyncio.Task:
        record = TaskRecord(task_id=next(self._ids), kind=kind, subject=subject)
        self.records.append(record)
        task = asyncio.create_task(self._run(record, coro, on_done))
        # Keep a strong reference until the task finishes.
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(
        self,
        record: TaskRecord,
        coro: Awaitable[Any],
        on_done: Callable[[TaskRecord], None] | None,
    ) -> TaskRecord:
        record.status = "running"
        record.started_at = time.time()
        try:
            record.result = await coro
            record.status = "done"
        except asyncio.CancelledError:
            record.status = "failed"
            record.error = "cancelled"
            raise
        except Exception as e:
            record.status = "failed"
            record.error = str(e)
            logger.warning(f"Task {record.kind}#{record.task_id} failed: {e}")
            self.notify(f"{record.kind} failed", str(e), "error")
        finally:
            record.finished_at = time.time()
            if on_done is not None:
                on_done(record)
        return record

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def by_kind(self, kind: str) -> list[TaskRecord]:
        return [r for r in self.records if r.kind == kind]
