"""
Entity store for users, tasks, projects, memberships and activities.

Handlers depend on the Storage interface only. Two implementations exist:
- MemStorage: plain dicts keyed by entity id behind a re-entrant lock
- SqlStorage: the same contract on SQLAlchemy (in-memory SQLite by default)

The application builds one store at startup (create_storage), keeps it on
app.state and hands it to handlers through the get_storage dependency.

Deleted tasks and projects become tombstones ({kind, entity, deleted_at})
that can be restored unchanged. Deleting an id again replaces its tombstone.
"""

import logging
import os
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple

from fastapi import Request
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.engine import Engine

import models
import schemas
from time_utils import utc_now, ensure_utc

logger = logging.getLogger(__name__)

STORAGE_BACKEND = os.environ.get("STORAGE_BACKEND", "memory").lower()

# Fields a client may change, and those that ignore an explicit null
TASK_UPDATABLE_FIELDS = {"title", "description", "status", "priority", "due_date", "assignee_id", "project_id"}
TASK_REQUIRED_FIELDS = {"title", "status", "priority"}
PROJECT_UPDATABLE_FIELDS = {"title", "description", "status", "progress", "due_date"}
PROJECT_REQUIRED_FIELDS = {"title", "status", "progress"}


def _clean_changes(changes: Dict[str, Any], updatable: Set[str], required: Set[str]) -> Dict[str, Any]:
    """Drop unknown keys and nulls for non-nullable fields."""
    return {
        key: value
        for key, value in changes.items()
        if key in updatable and not (key in required and value is None)
    }


class DuplicateUserError(Exception):
    """Email or username already belongs to another user."""

    def __init__(self, field: str) -> None:
        super().__init__(f"{field} already in use")
        self.field = field


class Storage(ABC):
    """Repository interface shared by every storage backend."""

    def __init__(self) -> None:
        self._lock = threading.RLock()

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """Serialize a read-modify-write sequence against other requests."""
        with self._lock:
            yield

    def close(self) -> None:
        """Release resources held by the store."""

    # Users
    @abstractmethod
    def get_user(self, user_id: int) -> Optional[schemas.User]:
        pass

    @abstractmethod
    def get_user_by_email(self, email: str) -> Optional[schemas.User]:
        pass

    @abstractmethod
    def get_user_by_username(self, username: str) -> Optional[schemas.User]:
        pass

    @abstractmethod
    def create_user(self, username: str, email: str, password_hash: str, name: str) -> schemas.User:
        """
        Insert a user. The uniqueness check and the insert happen atomically.

        Raises:
            DuplicateUserError: email (checked first) or username is taken
        """
        pass

    # Tasks
    @abstractmethod
    def get_tasks(self, user_id: int) -> List[schemas.Task]:
        """Live tasks created by or assigned to the user."""
        pass

    @abstractmethod
    def get_tasks_by_project(self, project_id: int) -> List[schemas.Task]:
        """Every live task of a project, regardless of who is asking."""
        pass

    @abstractmethod
    def get_task(self, task_id: int) -> Optional[schemas.Task]:
        pass

    @abstractmethod
    def create_task(self, task: schemas.TaskCreate, user_id: int) -> schemas.Task:
        pass

    @abstractmethod
    def update_task(self, task_id: int, changes: Dict[str, Any]) -> Optional[schemas.Task]:
        pass

    @abstractmethod
    def delete_task(self, task_id: int) -> bool:
        pass

    @abstractmethod
    def get_deleted_task(self, task_id: int) -> Optional[schemas.TaskTombstone]:
        pass

    @abstractmethod
    def restore_task(self, task_id: int) -> Optional[schemas.Task]:
        pass

    # Projects
    @abstractmethod
    def get_projects(self, user_id: int) -> List[schemas.Project]:
        """Live projects owned by the user or where the user is a member."""
        pass

    @abstractmethod
    def get_project(self, project_id: int) -> Optional[schemas.Project]:
        pass

    @abstractmethod
    def create_project(self, project: schemas.ProjectCreate, user_id: int) -> schemas.Project:
        pass

    @abstractmethod
    def update_project(self, project_id: int, changes: Dict[str, Any]) -> Optional[schemas.Project]:
        pass

    @abstractmethod
    def delete_project(self, project_id: int) -> bool:
        pass

    @abstractmethod
    def get_deleted_project(self, project_id: int) -> Optional[schemas.ProjectTombstone]:
        pass

    @abstractmethod
    def restore_project(self, project_id: int) -> Optional[schemas.Project]:
        pass

    # Project members
    @abstractmethod
    def get_project_members(self, project_id: int) -> List[int]:
        pass

    @abstractmethod
    def add_project_member(self, project_id: int, user_id: int) -> bool:
        """Return False when the user already is a member."""
        pass

    @abstractmethod
    def remove_project_member(self, project_id: int, user_id: int) -> bool:
        pass

    @abstractmethod
    def is_project_member(self, project_id: int, user_id: int) -> bool:
        pass

    # Activities
    @abstractmethod
    def get_activities(self, user_id: int, limit: int = 10) -> List[schemas.Activity]:
        """Newest first."""
        pass

    @abstractmethod
    def create_activity(
        self, user_id: int, action: str, target: str, target_id: Optional[int] = None
    ) -> schemas.Activity:
        pass


class MemStorage(Storage):
    """Dict-backed store. Every public method holds the store lock."""

    def __init__(self) -> None:
        super().__init__()
        self._users: Dict[int, schemas.User] = {}
        self._tasks: Dict[int, schemas.Task] = {}
        self._projects: Dict[int, schemas.Project] = {}
        self._activities: Dict[int, schemas.Activity] = {}
        self._members: Set[Tuple[int, int]] = set()
        self._deleted_tasks: Dict[int, schemas.TaskTombstone] = {}
        self._deleted_projects: Dict[int, schemas.ProjectTombstone] = {}

        self._user_id_counter = 1
        self._task_id_counter = 1
        self._project_id_counter = 1
        self._activity_id_counter = 1

    def close(self) -> None:
        with self._lock:
            logger.debug("Clearing in-memory store")
            for entries in (
                self._users, self._tasks, self._projects, self._activities,
                self._deleted_tasks, self._deleted_projects,
            ):
                entries.clear()
            self._members.clear()

    # Users
    def get_user(self, user_id: int) -> Optional[schemas.User]:
        with self._lock:
            return self._users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[schemas.User]:
        with self._lock:
            return next((u for u in self._users.values() if u.email == email), None)

    def get_user_by_username(self, username: str) -> Optional[schemas.User]:
        with self._lock:
            return next((u for u in self._users.values() if u.username == username), None)

    def create_user(self, username: str, email: str, password_hash: str, name: str) -> schemas.User:
        with self._lock:
            if any(u.email == email for u in self._users.values()):
                raise DuplicateUserError("email")
            if any(u.username == username for u in self._users.values()):
                raise DuplicateUserError("username")
            user = schemas.User(
                id=self._user_id_counter,
                username=username,
                email=email,
                password_hash=password_hash,
                name=name,
            )
            self._user_id_counter += 1
            self._users[user.id] = user
            return user

    # Tasks
    def get_tasks(self, user_id: int) -> List[schemas.Task]:
        with self._lock:
            tasks = [t for t in self._tasks.values() if t.user_id == user_id or t.assignee_id == user_id]
        return sorted(tasks, key=lambda t: t.id)

    def get_tasks_by_project(self, project_id: int) -> List[schemas.Task]:
        with self._lock:
            tasks = [t for t in self._tasks.values() if t.project_id == project_id]
        return sorted(tasks, key=lambda t: t.id)

    def get_task(self, task_id: int) -> Optional[schemas.Task]:
        with self._lock:
            return self._tasks.get(task_id)

    def create_task(self, task: schemas.TaskCreate, user_id: int) -> schemas.Task:
        with self._lock:
            now = utc_now()
            new_task = schemas.Task(
                **task.model_dump(),
                id=self._task_id_counter,
                user_id=user_id,
                created_at=now,
                updated_at=now,
            )
            self._task_id_counter += 1
            self._tasks[new_task.id] = new_task
            return new_task

    def update_task(self, task_id: int, changes: Dict[str, Any]) -> Optional[schemas.Task]:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                return None
            update = _clean_changes(changes, TASK_UPDATABLE_FIELDS, TASK_REQUIRED_FIELDS)
            update["updated_at"] = utc_now()
            updated = task.model_copy(update=update)
            self._tasks[task_id] = updated
            return updated

    def delete_task(self, task_id: int) -> bool:
        with self._lock:
            task = self._tasks.pop(task_id, None)
            if task is None:
                return False
            if task_id in self._deleted_tasks:
                logger.debug(f"Replacing existing tombstone for task {task_id}")
            self._deleted_tasks[task_id] = schemas.TaskTombstone(entity=task, deleted_at=utc_now())
            return True

    def get_deleted_task(self, task_id: int) -> Optional[schemas.TaskTombstone]:
        with self._lock:
            return self._deleted_tasks.get(task_id)

    def restore_task(self, task_id: int) -> Optional[schemas.Task]:
        with self._lock:
            tombstone = self._deleted_tasks.pop(task_id, None)
            if tombstone is None:
                return None
            self._tasks[task_id] = tombstone.entity
            return tombstone.entity

    # Projects
    def get_projects(self, user_id: int) -> List[schemas.Project]:
        with self._lock:
            projects = [
                p for p in self._projects.values()
                if p.user_id == user_id or (p.id, user_id) in self._members
            ]
        return sorted(projects, key=lambda p: p.id)

    def get_project(self, project_id: int) -> Optional[schemas.Project]:
        with self._lock:
            return self._projects.get(project_id)

    def create_project(self, project: schemas.ProjectCreate, user_id: int) -> schemas.Project:
        with self._lock:
            now = utc_now()
            new_project = schemas.Project(
                **project.model_dump(),
                id=self._project_id_counter,
                user_id=user_id,
                created_at=now,
                updated_at=now,
            )
            self._project_id_counter += 1
            self._projects[new_project.id] = new_project
            return new_project

    def update_project(self, project_id: int, changes: Dict[str, Any]) -> Optional[schemas.Project]:
        with self._lock:
            project = self._projects.get(project_id)
            if project is None:
                return None
            update = _clean_changes(changes, PROJECT_UPDATABLE_FIELDS, PROJECT_REQUIRED_FIELDS)
            update["updated_at"] = utc_now()
            updated = project.model_copy(update=update)
            self._projects[project_id] = updated
            return updated

    def delete_project(self, project_id: int) -> bool:
        with self._lock:
            project = self._projects.pop(project_id, None)
            if project is None:
                return False
            self._deleted_projects[project_id] = schemas.ProjectTombstone(entity=project, deleted_at=utc_now())
            return True

    def get_deleted_project(self, project_id: int) -> Optional[schemas.ProjectTombstone]:
        with self._lock:
            return self._deleted_projects.get(project_id)

    def restore_project(self, project_id: int) -> Optional[schemas.Project]:
        with self._lock:
            tombstone = self._deleted_projects.pop(project_id, None)
            if tombstone is None:
                return None
            self._projects[project_id] = tombstone.entity
            return tombstone.entity

    # Project members
    def get_project_members(self, project_id: int) -> List[int]:
        with self._lock:
            return sorted(uid for pid, uid in self._members if pid == project_id)

    def add_project_member(self, project_id: int, user_id: int) -> bool:
        with self._lock:
            key = (project_id, user_id)
            if key in self._members:
                return False
            self._members.add(key)
            return True

    def remove_project_member(self, project_id: int, user_id: int) -> bool:
        with self._lock:
            key = (project_id, user_id)
            if key not in self._members:
                return False
            self._members.discard(key)
            return True

    def is_project_member(self, project_id: int, user_id: int) -> bool:
        with self._lock:
            return (project_id, user_id) in self._members

    # Activities
    def get_activities(self, user_id: int, limit: int = 10) -> List[schemas.Activity]:
        with self._lock:
            activities = [a for a in self._activities.values() if a.user_id == user_id]
        activities.sort(key=lambda a: (a.created_at, a.id), reverse=True)
        return activities[:limit]

    def create_activity(
        self, user_id: int, action: str, target: str, target_id: Optional[int] = None
    ) -> schemas.Activity:
        with self._lock:
            activity = schemas.Activity(
                id=self._activity_id_counter,
                user_id=user_id,
                action=action,
                target=target,
                target_id=target_id,
                created_at=utc_now(),
            )
            self._activity_id_counter += 1
            self._activities[activity.id] = activity
            return activity


def _column_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _to_user(row) -> schemas.User:
    return schemas.User(
        id=row.id,
        username=row.username,
        email=row.email,
        password_hash=row.password_hash,
        name=row.name,
    )


def _to_task(row) -> schemas.Task:
    return schemas.Task(
        id=row.id,
        title=row.title,
        description=row.description,
        status=row.status,
        priority=row.priority,
        due_date=row.due_date,
        assignee_id=row.assignee_id,
        user_id=row.user_id,
        project_id=row.project_id,
        created_at=ensure_utc(row.created_at),
        updated_at=ensure_utc(row.updated_at),
    )


def _to_project(row) -> schemas.Project:
    return schemas.Project(
        id=row.id,
        title=row.title,
        description=row.description,
        status=row.status,
        progress=row.progress,
        due_date=row.due_date,
        user_id=row.user_id,
        created_at=ensure_utc(row.created_at),
        updated_at=ensure_utc(row.updated_at),
    )


def _to_activity(row) -> schemas.Activity:
    return schemas.Activity(
        id=row.id,
        user_id=row.user_id,
        action=row.action,
        target=row.target,
        target_id=row.target_id,
        created_at=ensure_utc(row.created_at),
    )


class SqlStorage(Storage):
    """
    SQLAlchemy-backed store. One session per operation, taken under the store lock.

    Soft delete keeps the row and sets deleted_at; live queries filter on
    deleted_at IS NULL.
    """

    def __init__(self, session_factory: sessionmaker, engine: Optional[Engine] = None) -> None:
        super().__init__()
        self._session_factory = session_factory
        self._engine = engine

    @contextmanager
    def _session(self) -> Iterator[Session]:
        # In-memory SQLite shares one connection, so sessions never overlap
        with self._lock, self._session_factory() as db:
            yield db

    def close(self) -> None:
        if self._engine is not None:
            logger.debug("Disposing database engine")
            self._engine.dispose()

    def _live_task(self, db, task_id: int):
        return db.query(models.Task).filter(models.Task.id == task_id, models.Task.deleted_at.is_(None)).first()

    def _live_project(self, db, project_id: int):
        return db.query(models.Project).filter(
            models.Project.id == project_id, models.Project.deleted_at.is_(None)
        ).first()

    # Users
    def get_user(self, user_id: int) -> Optional[schemas.User]:
        with self._session() as db:
            row = db.query(models.User).filter(models.User.id == user_id).first()
            return _to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[schemas.User]:
        with self._session() as db:
            row = db.query(models.User).filter(models.User.email == email).first()
            return _to_user(row) if row else None

    def get_user_by_username(self, username: str) -> Optional[schemas.User]:
        with self._session() as db:
            row = db.query(models.User).filter(models.User.username == username).first()
            return _to_user(row) if row else None

    def create_user(self, username: str, email: str, password_hash: str, name: str) -> schemas.User:
        with self._session() as db:
            if db.query(models.User).filter(models.User.email == email).first():
                raise DuplicateUserError("email")
            if db.query(models.User).filter(models.User.username == username).first():
                raise DuplicateUserError("username")

            row = models.User(username=username, email=email, password_hash=password_hash, name=name)
            db.add(row)
            try:
                db.commit()
            except IntegrityError:
                # Another process sharing the database won the race
                db.rollback()
                field = "email" if db.query(models.User).filter(models.User.email == email).first() else "username"
                raise DuplicateUserError(field)
            db.refresh(row)
            return _to_user(row)

    # Tasks
    def get_tasks(self, user_id: int) -> List[schemas.Task]:
        with self._session() as db:
            rows = (
                db.query(models.Task)
                .filter(
                    models.Task.deleted_at.is_(None),
                    or_(models.Task.user_id == user_id, models.Task.assignee_id == user_id),
                )
                .order_by(models.Task.id)
                .all()
            )
            return [_to_task(r) for r in rows]

    def get_tasks_by_project(self, project_id: int) -> List[schemas.Task]:
        with self._session() as db:
            rows = (
                db.query(models.Task)
                .filter(models.Task.project_id == project_id, models.Task.deleted_at.is_(None))
                .order_by(models.Task.id)
                .all()
            )
            return [_to_task(r) for r in rows]

    def get_task(self, task_id: int) -> Optional[schemas.Task]:
        with self._session() as db:
            row = self._live_task(db, task_id)
            return _to_task(row) if row else None

    def create_task(self, task: schemas.TaskCreate, user_id: int) -> schemas.Task:
        with self._session() as db:
            now = utc_now()
            data = {key: _column_value(value) for key, value in task.model_dump().items()}
            row = models.Task(**data, user_id=user_id, created_at=now, updated_at=now)
            db.add(row)
            db.commit()
            db.refresh(row)
            return _to_task(row)

    def update_task(self, task_id: int, changes: Dict[str, Any]) -> Optional[schemas.Task]:
        with self._session() as db:
            row = self._live_task(db, task_id)
            if row is None:
                return None
            for key, value in _clean_changes(changes, TASK_UPDATABLE_FIELDS, TASK_REQUIRED_FIELDS).items():
                setattr(row, key, _column_value(value))
            row.updated_at = utc_now()
            db.commit()
            db.refresh(row)
            return _to_task(row)

    def delete_task(self, task_id: int) -> bool:
        with self._session() as db:
            row = self._live_task(db, task_id)
            if row is None:
                return False
            row.deleted_at = utc_now()
            db.commit()
            return True

    def get_deleted_task(self, task_id: int) -> Optional[schemas.TaskTombstone]:
        with self._session() as db:
            row = db.query(models.Task).filter(
                models.Task.id == task_id, models.Task.deleted_at.isnot(None)
            ).first()
            if row is None:
                return None
            return schemas.TaskTombstone(entity=_to_task(row), deleted_at=ensure_utc(row.deleted_at))

    def restore_task(self, task_id: int) -> Optional[schemas.Task]:
        with self._session() as db:
            row = db.query(models.Task).filter(
                models.Task.id == task_id, models.Task.deleted_at.isnot(None)
            ).first()
            if row is None:
                return None
            row.deleted_at = None
            db.commit()
            db.refresh(row)
            return _to_task(row)

    # Projects
    def get_projects(self, user_id: int) -> List[schemas.Project]:
        with self._session() as db:
            member_of = select(models.ProjectMember.project_id).where(models.ProjectMember.user_id == user_id)
            rows = (
                db.query(models.Project)
                .filter(
                    models.Project.deleted_at.is_(None),
                    or_(models.Project.user_id == user_id, models.Project.id.in_(member_of)),
                )
                .order_by(models.Project.id)
                .all()
            )
            return [_to_project(r) for r in rows]

    def get_project(self, project_id: int) -> Optional[schemas.Project]:
        with self._session() as db:
            row = self._live_project(db, project_id)
            return _to_project(row) if row else None

    def create_project(self, project: schemas.ProjectCreate, user_id: int) -> schemas.Project:
        with self._session() as db:
            now = utc_now()
            data = {key: _column_value(value) for key, value in project.model_dump().items()}
            row = models.Project(**data, user_id=user_id, created_at=now, updated_at=now)
            db.add(row)
            db.commit()
            db.refresh(row)
            return _to_project(row)

    def update_project(self, project_id: int, changes: Dict[str, Any]) -> Optional[schemas.Project]:
        with self._session() as db:
            row = self._live_project(db, project_id)
            if row is None:
                return None
            for key, value in _clean_changes(changes, PROJECT_UPDATABLE_FIELDS, PROJECT_REQUIRED_FIELDS).items():
                setattr(row, key, _column_value(value))
            row.updated_at = utc_now()
            db.commit()
            db.refresh(row)
            return _to_project(row)

    def delete_project(self, project_id: int) -> bool:
        with self._session() as db:
            row = self._live_project(db, project_id)
            if row is None:
                return False
            row.deleted_at = utc_now()
            db.commit()
            return True

    def get_deleted_project(self, project_id: int) -> Optional[schemas.ProjectTombstone]:
        with self._session() as db:
            row = db.query(models.Project).filter(
                models.Project.id == project_id, models.Project.deleted_at.isnot(None)
            ).first()
            if row is None:
                return None
            return schemas.ProjectTombstone(entity=_to_project(row), deleted_at=ensure_utc(row.deleted_at))

    def restore_project(self, project_id: int) -> Optional[schemas.Project]:
        with self._session() as db:
            row = db.query(models.Project).filter(
                models.Project.id == project_id, models.Project.deleted_at.isnot(None)
            ).first()
            if row is None:
                return None
            row.deleted_at = None
            db.commit()
            db.refresh(row)
            return _to_project(row)

    # Project members
    def get_project_members(self, project_id: int) -> List[int]:
        with self._session() as db:
            rows = (
                db.query(models.ProjectMember.user_id)
                .filter(models.ProjectMember.project_id == project_id)
                .order_by(models.ProjectMember.user_id)
                .all()
            )
            return [r.user_id for r in rows]

    def add_project_member(self, project_id: int, user_id: int) -> bool:
        with self._session() as db:
            existing = db.query(models.ProjectMember).filter(
                models.ProjectMember.project_id == project_id,
                models.ProjectMember.user_id == user_id,
            ).first()
            if existing:
                return False
            db.add(models.ProjectMember(project_id=project_id, user_id=user_id))
            db.commit()
            return True

    def remove_project_member(self, project_id: int, user_id: int) -> bool:
        with self._session() as db:
            membership = db.query(models.ProjectMember).filter(
                models.ProjectMember.project_id == project_id,
                models.ProjectMember.user_id == user_id,
            ).first()
            if membership is None:
                return False
            db.delete(membership)
            db.commit()
            return True

    def is_project_member(self, project_id: int, user_id: int) -> bool:
        with self._session() as db:
            return db.query(models.ProjectMember).filter(
                models.ProjectMember.project_id == project_id,
                models.ProjectMember.user_id == user_id,
            ).first() is not None

    # Activities
    def get_activities(self, user_id: int, limit: int = 10) -> List[schemas.Activity]:
        with self._session() as db:
            rows = (
                db.query(models.Activity)
                .filter(models.Activity.user_id == user_id)
                .order_by(models.Activity.created_at.desc(), models.Activity.id.desc())
                .limit(limit)
                .all()
            )
            return [_to_activity(r) for r in rows]

    def create_activity(
        self, user_id: int, action: str, target: str, target_id: Optional[int] = None
    ) -> schemas.Activity:
        with self._session() as db:
            row = models.Activity(
                user_id=user_id,
                action=action,
                target=target,
                target_id=target_id,
                created_at=utc_now(),
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            return _to_activity(row)


def create_storage(backend: Optional[str] = None, database_url: Optional[str] = None) -> Storage:
    """
    Build the store selected by STORAGE_BACKEND ("memory" or "sql").

    Raises:
        ValueError: Unknown backend name
    """
    backend = (backend or STORAGE_BACKEND).lower()

    if backend == "memory":
        logger.info("Using in-memory storage")
        return MemStorage()

    if backend == "sql":
        from database import create_db_engine, create_session_factory

        engine = create_db_engine(database_url)
        logger.info(f"Using SQL storage ({engine.url.get_backend_name()})")
        return SqlStorage(create_session_factory(engine), engine)

    raise ValueError(f"Unknown STORAGE_BACKEND '{backend}'. Use 'memory' or 'sql'.")


def get_storage(request: Request) -> Storage:
    """FastAPI dependency returning the application's store."""
    return request.app.state.storage
