"""
Dependency-aware retry loop over .codemachine/plan/tasks.json.

    {"tasks": [{"id": "T1", "name": "...", "done": false, "dependsOn": ["T0"]}, ...]}

Each round picks the tasks that are not done and whose dependencies are all
done, and hands them to an orchestration callback. The callback (usually an
agent) is responsible for flipping `done` in the file.
"""

import json
import logging
import os
import tempfile
from typing import Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

__all__ = [
    'Task',
    'TasksFile',
    'load_tasks',
    'save_tasks',
    'next_ready_tasks',
    'detect_dependency_cycle',
    'retry',
    'retry_until_done',
]

Orchestrate = Callable[[List['Task']], Awaitable[None]]


class Task(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra='allow')

    id: str
    name: str = ''
    done: bool = False
    depends_on: List[str] = Field(default_factory=list, alias='dependsOn')


class TasksFile(BaseModel):
    model_config = ConfigDict(extra='allow')

    tasks: List[Task] = Field(default_factory=list)


def load_tasks(path: str) -> TasksFile:
    """
    Raises:
        FileNotFoundError: No tasks file at `path`
        ValueError: Invalid JSON or schema
    """
    with open(path, 'r', encoding='utf-8') as f:
        return TasksFile.model_validate(json.load(f))


def save_tasks(path: str, data: TasksFile) -> None:
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix='.tasks-', suffix='.tmp')
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(data.model_dump(by_alias=True), f, indent=2)
            f.write('\n')
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def detect_dependency_cycle(tasks: List[Task]) -> None:
    """
    Validate the dependency graph.

    Raises:
        ValueError: A task depends on an unknown id, or dependencies form a cycle
    """
    by_id: Dict[str, Task] = {t.id: t for t in tasks}
    for task in tasks:
        for dep in task.depends_on:
            if dep not in by_id:
                raise ValueError(f"Task {task.id} depends on unknown task {dep}")

    visiting, visited = set(), set()

    def _visit(task_id: str, path: List[str]) -> None:
        if task_id in visited:
            return
        if task_id in visiting:
            cycle = path[path.index(task_id):] + [task_id]
            raise ValueError(f"Dependency cycle detected: {' -> '.join(cycle)}")
        visiting.add(task_id)
        for dep in by_id[task_id].depends_on:
            _visit(dep, path + [task_id])
        visiting.discard(task_id)
        visited.add(task_id)

    for task in tasks:
        _visit(task.id, [])


def next_ready_tasks(tasks: List[Task]) -> List[Task]:
    done = {t.id for t in tasks if t.done}
    return [t for t in tasks if not t.done and all(dep in done for dep in t.depends_on)]


async def retry(tasks_path: str, orchestrate: Orchestrate) -> bool:
    """
    Run one round of the retry loop.

    Returns:
        False when every task is done, True after dispatching a wave of ready tasks

    Raises:
        ValueError: Broken dependency graph, or pending tasks none of which can run
    """
    data = load_tasks(tasks_path)
    pending = [t for t in data.tasks if not t.done]
    if not pending:
        logger.info('All tasks are done')
        return False

    detect_dependency_cycle(data.tasks)
    ready = next_ready_tasks(data.tasks)
    if not ready:
        raise ValueError(f"No runnable tasks among {len(pending)} pending")

    logger.info(f"Dispatching {len(ready)} ready task(s): {', '.join(t.id for t in ready)}")
    await orchestrate(ready)
    return True


async def retry_until_done(tasks_path: str, orchestrate: Orchestrate, max_rounds: Optional[int] = 20) -> int:
    """
    Call `retry` until every task is done.

    Returns:
        Number of rounds that dispatched work

    Raises:
        RuntimeError: A round finished without completing any task, or max_rounds was hit
    """
    rounds = 0
    while True:
        before = sum(1 for t in load_tasks(tasks_path).tasks if t.done)
        if not await retry(tasks_path, orchestrate):
            return rounds
        rounds += 1
        after = sum(1 for t in load_tasks(tasks_path).tasks if t.done)
        if after <= before:
            raise RuntimeError(f"Retry round {rounds} made no progress")
        if max_rounds is not None and rounds >= max_rounds:
            if any(not t.done for t in load_tasks(tasks_path).tasks):
                raise RuntimeError(f"Tasks still pending after {rounds} rounds")
            return rounds
