"""
Lightweight step engine for install, migration and cleanup plans.

Steps run in topological order (insertion order among independent steps).
Each step receives the run context merged with the results of the steps it
depends on and returns its own result; nothing is shared through mutable
instance state. The first failure aborts the run and every later step stays
pending, so a re-run starts from a known place.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from idmp_registry.errors import MigrationStepFailed

logger = logging.getLogger(__name__)


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class RunStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ABORTED = "aborted"


@dataclass
class Step:
    """A single named unit of work inside a plan."""

    name: str
    execute_fn: Callable[[dict[str, Any]], dict[str, Any] | None]
    depends_on: list[str] = field(default_factory=list)
    status: StepStatus = StepStatus.PENDING
    result: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    duration_ms: float = 0.0


class DAG:
    """
    A directed acyclic graph of Steps.

    Usage:
        dag = DAG("idmp-install")
        dag.add_task("install-base-types", install_base)
        dag.add_task("install-support-types", install_support, depends_on=["install-base-types"])
        summary = dag.run(initial_context={"db": session})
    """

    def __init__(self, name: str):
        self.name = name
        self.tasks: dict[str, Step] = {}
        self.status = RunStatus.NOT_STARTED

    def add_task(
        self,
        name: str,
        execute_fn: Callable[[dict[str, Any]], dict[str, Any] | None],
        depends_on: list[str] | None = None,
    ) -> DAG:
        if name in self.tasks:
            raise ValueError(f"Duplicate task name: {name}")
        self.tasks[name] = Step(name=name, execute_fn=execute_fn, depends_on=depends_on or [])
        return self  # allow chaining

    def _topological_sort(self) -> list[str]:
        """Kahn's algorithm – returns steps in dependency order."""
        in_degree: dict[str, int] = {name: 0 for name in self.tasks}
        for task in self.tasks.values():
            for dep in task.depends_on:
                if dep not in self.tasks:
                    raise ValueError(f"Task '{task.name}' depends on unknown task '{dep}'")
                in_degree[task.name] += 1

        queue = [name for name, deg in in_degree.items() if deg == 0]
        order: list[str] = []

        while queue:
            current = queue.pop(0)
            order.append(current)
            for name, task in self.tasks.items():
                if current in task.depends_on:
                    in_degree[name] -= 1
                    if in_degree[name] == 0:
                        queue.append(name)

        if len(order) != len(self.tasks):
            raise ValueError("Cycle detected in DAG")
        return order

    def run(self, initial_context: dict[str, Any] | None = None) -> dict[str, Any]:
        """
        Execute steps in topological order, halting on the first failure.

        Returns a summary with the run status, per-step status/result and,
        when aborted, the failed step and its error.
        """
        execution_order = self._topological_sort()
        base_context = dict(initial_context or {})
        summary: dict[str, Any] = {"pipeline": self.name, "tasks": {}, "failed_step": None, "error": None}

        self.status = RunStatus.IN_PROGRESS
        logger.info("Starting pipeline '%s' with %d steps", self.name, len(self.tasks))

        for task_name in execution_order:
            task = self.tasks[task_name]

            context = dict(base_context)
            for dep in task.depends_on:
                context.update(self.tasks[dep].result)

            task.status = StepStatus.RUNNING
            logger.info("Running step '%s'", task_name)
            start = time.perf_counter()
            try:
                task.result = task.execute_fn(context) or {}
                task.status = StepStatus.SUCCEEDED
            except Exception as exc:
                task.status = StepStatus.FAILED
                task.error = str(exc)
                logger.error("Step '%s' failed: %s", task_name, exc)
            finally:
                task.duration_ms = (time.perf_counter() - start) * 1000

            summary["tasks"][task_name] = {
                "status": task.status.value,
                "duration_ms": round(task.duration_ms, 2),
                "error": task.error,
                "result": task.result,
            }
            if task.status == StepStatus.FAILED:
                summary["failed_step"] = task_name
                summary["error"] = task.error
                break

        for task_name in execution_order:
            if task_name not in summary["tasks"]:
                summary["tasks"][task_name] = {"status": StepStatus.PENDING.value}

        self.status = RunStatus.ABORTED if summary["failed_step"] else RunStatus.COMPLETED
        summary["status"] = self.status.value
        logger.info("Pipeline '%s' finished – %s", self.name, summary["status"])
        return summary

    def raise_for_status(self) -> None:
        for task in self.tasks.values():
            if task.status == StepStatus.FAILED:
                raise MigrationStepFailed(task.name, task.error or "unknown error")

    def to_dict(self) -> dict[str, Any]:
        """Serialize the DAG definition (stored in pipeline_runs.dag_definition)."""
        return {
            "name": self.name,
            "tasks": {name: {"depends_on": task.depends_on} for name, task in self.tasks.items()},
        }
