"""
Weighted progress tracking across named crawl tasks.

Totals of most tasks are only known once a list has been fetched, so tasks
grow while the crawl runs. A placeholder task can seed the percentage until
the real totals are registered.
"""

import logging
from typing import Callable
from typing import Dict
from typing import Optional

from pydantic import BaseModel
from pydantic import Field

logger = logging.getLogger(__name__)

ProgressHook = Callable[["ProgressInfo", str], None]


class ProgressTask(BaseModel):
    """A named counter. ``completed`` never exceeds ``total``."""

    total: int = Field(default=0, ge=0)
    completed: int = Field(default=0, ge=0)
    weight: int = Field(default=1, ge=0)

    @property
    def is_finished(self) -> bool:
        return self.completed >= self.total


class ProgressInfo(BaseModel):
    """Weighted aggregate over all registered tasks."""

    completed: int = 0
    total: int = 0

    @property
    def ratio(self) -> float:
        if self.total == 0:
            return 0.0
        return self.completed / self.total

    @property
    def percent(self) -> int:
        return round(self.ratio * 100)


class ProgressTracker:
    """Keeps task counters and notifies ``progress_hook`` on every change."""

    def __init__(self, progress_hook: Optional[ProgressHook] = None) -> None:
        self.tasks: Dict[str, ProgressTask] = {}
        self.progress_hook = progress_hook

    def add_task(self, name: str, total: int, weight: int = 1) -> ProgressTask:
        """
        Register ``name`` with ``total`` steps.

        Registering an existing task sets its total to ``total``, replacing
        steps announced earlier through increase_total_steps_by, and keeps its
        completed count (capped at the new total).
        """
        previous = self.tasks.get(name)
        completed = min(previous.completed, total) if previous else 0
        task = ProgressTask(total=total, completed=completed, weight=weight)
        self.tasks[name] = task
        return task

    def increase_total_steps_by(self, name: str, delta: int) -> None:
        if delta < 0:
            raise ValueError(f"total of task {name} can only grow, got delta {delta}")
        task = self.tasks.get(name)
        if task is None:
            task = self.add_task(name, 0)
        task.total += delta

    def increase_completed_steps(self, name: str) -> None:
        task = self.tasks.get(name)
        if task is None:
            task = self.add_task(name, 0)
        if task.completed >= task.total:
            # completing unannounced work grows the total
            task.total = task.completed + 1
        task.completed += 1
        self._notify(f"{name} {task.completed}/{task.total}")

    def finish_task(self, name: str) -> None:
        task = self.tasks.get(name)
        if task is None:
            task = self.add_task(name, 1)
        task.completed = task.total
        self._notify(f"{name} finished")

    def remove_task(self, name: str) -> None:
        if self.tasks.pop(name, None) is not None:
            self._notify(f"{name} removed")

    @property
    def progress(self) -> ProgressInfo:
        completed = sum(task.completed * task.weight for task in self.tasks.values())
        total = sum(task.total * task.weight for task in self.tasks.values())
        return ProgressInfo(completed=completed, total=total)

    def _notify(self, change: str) -> None:
        if self.progress_hook is not None:
            self.progress_hook(self.progress, change)
