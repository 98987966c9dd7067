"""
Project progress aggregation.

A project's progress is the share of its live tasks that are completed, as a
whole percentage rounded half up (1 of 8 tasks -> 13, not Python's 12).
It is recomputed from the full task set of the project, whoever the caller is,
after every task mutation that touches the project.
"""

import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional

import schemas
from storage import Storage

logger = logging.getLogger(__name__)


def calculate_progress(tasks: Iterable[schemas.Task]) -> Optional[int]:
    """
    Return completion percentage for a set of tasks, or None when it is empty.

    Example:
        >>> calculate_progress([])  # no tasks: leave stored progress alone
        >>> calculate_progress(tasks_with_1_of_4_completed)
        25
    """
    tasks = list(tasks)
    total = len(tasks)
    if total == 0:
        return None

    completed = sum(1 for t in tasks if t.status == schemas.TaskStatus.completed)
    ratio = Decimal(100 * completed) / Decimal(total)
    return int(ratio.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def project_status_for(progress: int) -> schemas.ProjectStatus:
    if progress == 100:
        return schemas.ProjectStatus.completed
    return schemas.ProjectStatus.in_progress


def recalculate_project_progress(
    storage: Storage, project_id: int, sync_status: bool = False
) -> Optional[schemas.Project]:
    """
    Recompute and store a project's progress from its live tasks.

    Best effort: a missing (or deleted) project is logged and skipped, and the
    task mutation that triggered the call is never undone.

    Args:
        storage: Store to read tasks from and write the project to
        project_id: Project to recompute
        sync_status: Also set status to completed/in_progress from the result

    Returns:
        Updated project, the unchanged project when it has no tasks or its
        progress already matches,
        or None when the project is not live
    """
    with storage.atomic():
        tasks = storage.get_tasks_by_project(project_id)
        progress = calculate_progress(tasks)

        if progress is None:
            logger.debug(f"Project {project_id} has no tasks, keeping stored progress")
            return storage.get_project(project_id)

        changes = {"progress": progress}
        if sync_status:
            changes["status"] = project_status_for(progress)

        current = storage.get_project(project_id)
        if current is not None and all(getattr(current, k) == v for k, v in changes.items()):
            logger.debug(f"Project {project_id} progress unchanged at {progress}%")
            return current

        project = storage.update_project(project_id, changes)

    if project is None:
        logger.info(f"Project {project_id} not found, progress {progress}% not stored")
        return None

    logger.debug(f"Project {project_id} progress recalculated: {progress}% of {len(tasks)} tasks")
    return project
