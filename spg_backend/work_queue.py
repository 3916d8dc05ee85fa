"""Two-state deferred task queue used by the pose graph scheduler.

DIRECT: tasks submitted run immediately on the caller's thread.
QUEUING: an optimization is being finalized; tasks are appended and later
replayed in FIFO order by the drain loop, each exactly once.
"""
from __future__ import annotations

import enum
from collections import deque
from typing import Callable, Deque, Optional

from .errors import check

Task = Callable[[], None]


class QueueMode(enum.Enum):
    DIRECT = "direct"
    QUEUING = "queuing"


class WorkQueue:
    """Not thread-safe on its own; the pose graph calls it under its lock."""

    def __init__(self):
        self._tasks: Optional[Deque[Task]] = None

    @property
    def mode(self) -> QueueMode:
        return QueueMode.DIRECT if self._tasks is None else QueueMode.QUEUING

    def __len__(self) -> int:
        return 0 if self._tasks is None else len(self._tasks)

    def submit(self, task: Task) -> None:
        if self._tasks is None:
            task()
        else:
            self._tasks.append(task)

    def start_queuing(self) -> None:
        check(self._tasks is None, "Work queue is already queuing")
        self._tasks = deque()

    def pop(self) -> Optional[Task]:
        """Return the oldest queued task, or None once the backlog is empty."""
        check(self._tasks is not None, "Work queue is not queuing")
        return self._tasks.popleft() if self._tasks else None

    def stop_queuing(self) -> None:
        check(self._tasks is not None and not self._tasks,
              "Only an empty queue may return to direct mode")
        self._tasks = None
