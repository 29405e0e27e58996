from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Callable
from typing import Any

from agentcrew.clock import Clock
from agentcrew.config import SchedulerConfig
from agentcrew.errors import ValidationError
from agentcrew.tasks import TaskGraph
from agentcrew.work import TaskExecutor, WorkItem, WorkStore

logger = logging.getLogger(__name__)

SchedulerEventHook = Callable[[dict[str, Any]], None]

__all__ = ["SchedulerEventHook", "WorkItem", "WorkScheduler"]


class WorkScheduler:
    """Single FIFO queue drained by one worker loop.

    At most one WorkItem executes at a time. A failed item is recorded as a
    blocker on its AgentWork and the loop moves on.
    """

    def __init__(
        self,
        executor: TaskExecutor,
        graph: TaskGraph,
        store: WorkStore,
        clock: Clock,
        config: SchedulerConfig | None = None,
        *,
        event_hook: SchedulerEventHook | None = None,
    ) -> None:
        self.executor = executor
        self.graph = graph
        self.store = store
        self.clock = clock
        self.config = config or SchedulerConfig()
        self.event_hook = event_hook
        self.is_processing = False
        self.executed: list[WorkItem] = []
        self.failures: list[tuple[WorkItem, str]] = []
        self._queue: deque[WorkItem] = deque()
        self._held: dict[str, list[str]] = {}
        self._worker: asyncio.Task[Any] | None = None

    def _emit(self, event: str, item: WorkItem | None = None, **extra: Any) -> None:
        if self.event_hook is None:
            return
        payload: dict[str, Any] = {"event": event}
        if item is not None:
            payload.update(item.to_dict())
        payload.update(extra)
        self.event_hook(payload)

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def queued(self) -> list[WorkItem]:
        return list(self._queue)

    def enqueue(self, agent_id: str, task_id: str, project_id: str) -> WorkItem:
        task = self.graph.get_task(project_id, task_id)
        if task.assigned_to_human:
            raise ValidationError(f"Task {task_id} is assigned to a person and cannot be queued.")
        if task.status == "done":
            raise ValidationError(f"Task {task_id} is already done.")
        waiting = self.graph.unfinished_dependencies(project_id, task_id)
        if waiting:
            names = ", ".join(dep.id for dep in waiting)
            raise ValidationError(f"Task {task_id} is waiting on unfinished dependencies: {names}")
        item = WorkItem(agent_id=agent_id, task_id=task_id, project_id=project_id)
        self._queue.append(item)
        logger.info("Queued %s for %s (queue length %d)", task_id, agent_id, len(self._queue))
        self._emit("enqueued", item, queue_length=len(self._queue))
        self.start()
        return item

    def start(self) -> asyncio.Task[Any] | None:
        """Start the worker loop unless one is already running."""
        if self.is_processing:
            return None
        self.is_processing = True
        self._worker = self.clock.spawn(self._drain(), name="work-scheduler")
        return self._worker

    async def wait(self) -> None:
        while self._worker is not None and not self._worker.done():
            await self._worker

    async def _drain(self) -> None:
        logger.info("Work queue started with %d item(s)", len(self._queue))
        try:
            while self._queue:
                item = self._queue.popleft()
                await self._execute(item)
                delay = self.clock.uniform(
                    self.config.min_delay_seconds, self.config.max_delay_seconds
                )
                logger.debug("Pausing %.1fs before the next work item", delay)
                await self.clock.sleep(delay)
        finally:
            self.is_processing = False
            logger.info("Work queue drained")
            self._emit("drained")

    async def _execute(self, item: WorkItem) -> None:
        self.executed.append(item)
        self._emit("execution_started", item)
        try:
            await self.executor.execute(item)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Work item %s/%s failed", item.agent_id, item.task_id)
            work = self.store.find(item.agent_id, item.task_id)
            if work is not None:
                self.store.block(work, str(exc))
            self.failures.append((item, str(exc)))
            self._emit("execution_finished", item, ok=False, error=str(exc))
            return
        self._emit("execution_finished", item, ok=True)
        self.release_ready(item.project_id)

    def schedule_project(self, project_id: str) -> list[WorkItem]:
        """Queue every ready agent task of a project and hold the rest."""
        plan = self.graph.get_project(project_id)
        held = self._held.setdefault(project_id, [])
        queued: list[WorkItem] = []
        for task in plan.tasks:
            if task.status == "done" or task.assigned_to_human:
                continue
            if self.graph.unfinished_dependencies(project_id, task.id):
                if task.id not in held:
                    held.append(task.id)
                continue
            queued.append(self.enqueue(task.assigned_to, task.id, project_id))
        logger.info(
            "Project %s scheduled: %d queued, %d held", project_id, len(queued), len(held)
        )
        return queued

    def release_ready(self, project_id: str) -> list[WorkItem]:
        held = self._held.get(project_id, [])
        released: list[WorkItem] = []
        for task_id in list(held):
            if self.graph.unfinished_dependencies(project_id, task_id):
                continue
            held.remove(task_id)
            task = self.graph.get_task(project_id, task_id)
            released.append(self.enqueue(task.assigned_to, task_id, project_id))
        return released

    def complete_task(self, project_id: str, task_id: str) -> list[WorkItem]:
        """Mark a person's task done and queue whatever it was holding back."""
        task = self.graph.get_task(project_id, task_id)
        if not task.assigned_to_human:
            raise ValidationError(f"Task {task_id} is handled by an agent, not a person.")
        if self.graph.unfinished_dependencies(project_id, task_id):
            raise ValidationError(f"Task {task_id} still has unfinished dependencies.")
        self.graph.set_status(project_id, task_id, "done")
        logger.info("Task %s completed by %s", task_id, task.assigned_to)
        return self.release_ready(project_id)

    def held(self, project_id: str | None = None) -> dict[str, list[str]]:
        if project_id is not None:
            return {project_id: list(self._held.get(project_id, []))}
        return {key: list(value) for key, value in self._held.items() if value}

    def status(self) -> dict[str, Any]:
        return {
            "queue_length": len(self._queue),
            "is_processing": self.is_processing,
            "queued": [item.to_dict() for item in self._queue],
            "held": self.held(),
            "executed": len(self.executed),
            "failures": [
                {**item.to_dict(), "error": error} for item, error in self.failures
            ],
        }
