"""
Task and project permission checking utilities.

Ownership model:
- A task belongs to its creator (task.user_id) and optionally to a project.
- A project belongs to its owner (project.user_id). Members are plain
  (project_id, user_id) pairs without roles.
- Members may read the project and change its tasks, but only the owner may
  change the project itself (update, progress, delete, restore, membership).
"""

import enum
import logging
from typing import Optional

from fastapi import HTTPException, status

import schemas
from storage import Storage

logger = logging.getLogger(__name__)


class TaskAction(str, enum.Enum):
    update = "update"
    delete = "delete"


def is_project_owner(user_id: int, project: Optional[schemas.Project]) -> bool:
    return project is not None and project.user_id == user_id


def can_view_project(storage: Storage, user_id: int, project: schemas.Project) -> bool:
    """Owner or member."""
    return project.user_id == user_id or storage.is_project_member(project.id, user_id)


def can_modify_task(storage: Storage, user_id: int, task: schemas.Task, action: TaskAction) -> bool:
    """
    Check if a user may update or delete a task.

    Permission sources (in order):
    1. Task creator
    2. Owner of the task's project
    3. Assignee of a project task (update only)
    4. Member of the task's project
    5. Assignee of a personal task (update only)

    Delete never consults the assignee. This mirrors the established policy
    and is kept deliberately separate from update.

    Args:
        storage: Store used to resolve the project and membership
        user_id: Acting user
        task: Live task
        action: TaskAction.update or TaskAction.delete

    Returns:
        True if the user may perform the action, False otherwise
    """
    if task.user_id == user_id:
        logger.debug(f"User {user_id} created task {task.id}, {action.value} allowed")
        return True

    if task.project_id is not None:
        project = storage.get_project(task.project_id)
        if is_project_owner(user_id, project):
            logger.debug(f"User {user_id} owns project {task.project_id}, {action.value} allowed")
            return True
        if action == TaskAction.update and task.assignee_id == user_id:
            logger.debug(f"User {user_id} is assignee of project task {task.id}, update allowed")
            return True
        if storage.is_project_member(task.project_id, user_id):
            logger.debug(f"User {user_id} is member of project {task.project_id}, {action.value} allowed")
            return True
        return False

    if action == TaskAction.update and task.assignee_id == user_id:
        logger.debug(f"User {user_id} is assignee of personal task {task.id}, update allowed")
        return True

    return False


def can_view_task(storage: Storage, user_id: int, task: schemas.Task) -> bool:
    """Creator, assignee, or anyone who can see the task's project."""
    if task.user_id == user_id or task.assignee_id == user_id:
        return True
    if task.project_id is None:
        return False
    project = storage.get_project(task.project_id)
    return project is not None and can_view_project(storage, user_id, project)


def can_restore_task(storage: Storage, user_id: int, task: schemas.Task) -> bool:
    """Creator, or owner of the task's project."""
    if task.user_id == user_id:
        return True
    if task.project_id is None:
        return False
    return is_project_owner(user_id, storage.get_project(task.project_id))


def require_task_permission(
    storage: Storage, user: schemas.User, task: schemas.Task, action: TaskAction
) -> None:
    """
    Require a user to be allowed to update/delete a task, or raise.

    Raises:
        HTTPException: 403 if the user may not perform the action
    """
    if not can_modify_task(storage, user.id, task, action):
        logger.info(f"User {user.id} denied {action.value} on task {task.id}")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized")


def require_project_access(storage: Storage, user: schemas.User, project_id: int) -> schemas.Project:
    """
    Return a project the user can see (owner or member).

    Raises:
        HTTPException: 404 if the project does not exist or the user has no
            access (existence is not leaked to outsiders)

    Example:
        >>> project = require_project_access(storage, user, project_id)
    """
    project = storage.get_project(project_id)
    if project is None:
        logger.info(f"Project {project_id} not found")
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Project not found")

    if not can_view_project(storage, user.id, project):
        logger.info(f"User {user.id} has no access to project {project_id}, returning 404")
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Project not found")

    return project


def require_project_owner(
    storage: Storage, user: schemas.User, project_id: int, detail: str = "Not authorized"
) -> schemas.Project:
    """
    Return a project owned by the user.

    Raises:
        HTTPException: 404 if the project does not exist
        HTTPException: 403 if the user is not the owner (members included)
    """
    project = storage.get_project(project_id)
    if project is None:
        logger.info(f"Project {project_id} not found")
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Project not found")

    if not is_project_owner(user.id, project):
        logger.info(f"User {user.id} is not the owner of project {project_id}")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)

    return project
