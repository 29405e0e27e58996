from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Literal

from agentcrew.agents.base import HUMAN_PREFIX
from agentcrew.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

TaskType = Literal["feature", "bug", "design", "test", "documentation"]
Priority = Literal["low", "medium", "high"]
TaskStatus = Literal["todo", "in-progress", "review", "done"]

TASK_TYPES = {"feature", "bug", "design", "test", "documentation"}
PRIORITIES = {"low", "medium", "high"}
TASK_STATUSES = {"todo", "in-progress", "review", "done"}


def _pick(payload: dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in payload and payload[key] is not None:
            return payload[key]
    return default


@dataclass(slots=True)
class Task:
    id: str
    title: str
    description: str = ""
    type: TaskType = "feature"
    priority: Priority = "medium"
    assigned_to: str = "developer"
    estimated_hours: float = 1.0
    dependencies: list[str] = field(default_factory=list)
    status: TaskStatus = "todo"

    @property
    def assigned_to_human(self) -> bool:
        return self.assigned_to.startswith(HUMAN_PREFIX)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Task:
        task_id = str(_pick(payload, "id", default="")).strip()
        title = str(_pick(payload, "title", default="")).strip()
        if not task_id or not title:
            raise ValidationError(f"Task requires id and title: {payload!r}")
        task_type = str(_pick(payload, "type", default="feature"))
        priority = str(_pick(payload, "priority", default="medium"))
        status = str(_pick(payload, "status", default="todo"))
        if task_type not in TASK_TYPES:
            raise ValidationError(f"Task {task_id} has unsupported type '{task_type}'.")
        if priority not in PRIORITIES:
            raise ValidationError(f"Task {task_id} has unsupported priority '{priority}'.")
        if status not in TASK_STATUSES:
            raise ValidationError(f"Task {task_id} has unsupported status '{status}'.")
        dependencies = _pick(payload, "dependencies", "depends_on", default=[])
        if not isinstance(dependencies, list):
            raise ValidationError(f"Task {task_id} dependencies must be a list.")
        try:
            estimated_hours = float(_pick(payload, "estimated_hours", "estimatedHours", default=1))
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Task {task_id} has invalid estimated hours.") from exc
        return cls(
            id=task_id,
            title=title,
            description=str(_pick(payload, "description", default="")),
            type=task_type,  # type: ignore[arg-type]
            priority=priority,  # type: ignore[arg-type]
            assigned_to=str(_pick(payload, "assigned_to", "assignedTo", default="developer")),
            estimated_hours=estimated_hours,
            dependencies=[str(item) for item in dependencies],
            status=status,  # type: ignore[arg-type]
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "type": self.type,
            "priority": self.priority,
            "assigned_to": self.assigned_to,
            "estimated_hours": self.estimated_hours,
            "dependencies": list(self.dependencies),
            "status": self.status,
        }


@dataclass(slots=True)
class ProjectPlan:
    id: str
    name: str
    repository: str
    description: str = ""
    tech_stack: list[str] = field(default_factory=list)
    features: list[str] = field(default_factory=list)
    tasks: list[Task] = field(default_factory=list)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ProjectPlan:
        project_id = str(_pick(payload, "id", default="")).strip()
        repository = str(_pick(payload, "repository", default="")).strip()
        if not project_id or not repository:
            raise ValidationError("Project plan requires id and repository.")
        raw_tasks = payload.get("tasks", [])
        if not isinstance(raw_tasks, list):
            raise ValidationError("Project plan tasks must be a list.")
        return cls(
            id=project_id,
            name=str(_pick(payload, "name", default=project_id)),
            repository=repository,
            description=str(_pick(payload, "description", default="")),
            tech_stack=[
                str(item) for item in _pick(payload, "tech_stack", "techStack", default=[])
            ],
            features=[str(item) for item in payload.get("features", [])],
            tasks=[Task.from_dict(item) for item in raw_tasks],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "repository": self.repository,
            "description": self.description,
            "tech_stack": list(self.tech_stack),
            "features": list(self.features),
            "tasks": [task.to_dict() for task in self.tasks],
        }

    def task(self, task_id: str) -> Task:
        for task in self.tasks:
            if task.id == task_id:
                return task
        raise NotFoundError("task", task_id)

    def tasks_by_agent(self) -> dict[str, list[Task]]:
        grouped: dict[str, list[Task]] = {}
        for task in self.tasks:
            if task.assigned_to_human:
                continue
            grouped.setdefault(task.assigned_to, []).append(task)
        return grouped


def sort_tasks_by_dependencies(tasks: list[Task]) -> list[Task]:
    """Depth-first topological order; rejects unknown dependencies and cycles."""
    by_id: dict[str, Task] = {}
    for task in tasks:
        if task.id in by_id:
            raise ValidationError(f"Duplicate task id: {task.id}")
        by_id[task.id] = task

    ordered: list[Task] = []
    visited: set[str] = set()
    visiting: list[str] = []

    def _visit(task_id: str) -> None:
        if task_id in visited:
            return
        if task_id in visiting:
            cycle = " -> ".join([*visiting[visiting.index(task_id):], task_id])
            raise ValidationError(f"Dependency cycle detected: {cycle}")
        task = by_id[task_id]
        visiting.append(task_id)
        for dep_id in task.dependencies:
            if dep_id not in by_id:
                raise ValidationError(f"Task {task_id} depends on unknown task {dep_id}")
            _visit(dep_id)
        visiting.pop()
        visited.add(task_id)
        ordered.append(task)

    for task in tasks:
        _visit(task.id)
    return ordered


class TaskGraph:
    """Dependency-sorted project plans; only task status changes after loading."""

    def __init__(self) -> None:
        self._projects: dict[str, ProjectPlan] = {}

    def add_project(self, plan: ProjectPlan) -> ProjectPlan:
        if plan.id in self._projects:
            raise ValidationError(f"Project already loaded: {plan.id}")
        plan.tasks = sort_tasks_by_dependencies(plan.tasks)
        self._projects[plan.id] = plan
        logger.info("Loaded project %s with %d tasks", plan.id, len(plan.tasks))
        return plan

    def get_project(self, project_id: str) -> ProjectPlan:
        plan = self._projects.get(project_id)
        if plan is None:
            raise NotFoundError("project", project_id)
        return plan

    def get_task(self, project_id: str, task_id: str) -> Task:
        return self.get_project(project_id).task(task_id)

    def project_ids(self) -> list[str]:
        return list(self._projects)

    def unfinished_dependencies(self, project_id: str, task_id: str) -> list[Task]:
        plan = self.get_project(project_id)
        task = plan.task(task_id)
        dependencies = [plan.task(dep_id) for dep_id in task.dependencies]
        return [dep for dep in dependencies if dep.status != "done"]

    def is_ready(self, project_id: str, task_id: str) -> bool:
        task = self.get_task(project_id, task_id)
        return task.status == "todo" and not self.unfinished_dependencies(project_id, task_id)

    def set_status(self, project_id: str, task_id: str, status: TaskStatus) -> Task:
        if status not in TASK_STATUSES:
            raise ValidationError(f"Unsupported task status: {status}")
        task = self.get_task(project_id, task_id)
        task.status = status
        return task

    def ready_tasks(self, project_id: str) -> list[Task]:
        plan = self.get_project(project_id)
        return [task for task in plan.tasks if self.is_ready(project_id, task.id)]
