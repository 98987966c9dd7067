from fastapi import FastAPI, HTTPException, Depends, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from typing import List, Optional
import logging
import os

import schemas
from storage import Storage, create_storage, get_storage
from progress import recalculate_project_progress
from auth.routes import router as auth_router
from auth.dependencies import get_current_user
from auth.security import hash_password, is_production_like
from auth.permissions import (
    TaskAction,
    can_restore_task,
    can_view_project,
    can_view_task,
    require_project_access,
    require_project_owner,
    require_task_permission,
)

# Configure logging
logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger(__name__)

DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:5000",
    "http://127.0.0.1:5000",
]
CORS_ORIGINS = [
    origin.strip()
    for origin in os.environ.get("CORS_ORIGINS", ",".join(DEFAULT_CORS_ORIGINS)).split(",")
    if origin.strip()
]

app = FastAPI(
    title="TaskMaster API",
    description="Team task and project management with collaborators, progress tracking and undo",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register authentication router
app.include_router(auth_router)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Report malformed bodies and parameters as 400 instead of FastAPI's 422."""
    logger.info(f"Invalid request to {request.url.path}: {len(exc.errors())} validation error(s)")
    body = schemas.ValidationErrorResponse(detail="Invalid request", errors=jsonable_encoder(exc.errors()))
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=body.model_dump())


# ============== Startup: Store Lifecycle ==============

def seed_demo_enabled() -> bool:
    default = "false" if is_production_like() else "true"
    return os.environ.get("SEED_DEMO_USER", default).lower() in ("1", "true", "yes")


def seed_demo_user(storage: Storage) -> Optional[schemas.User]:
    """
    Create the demo account (johndoe / john@example.com) if it does not exist.

    Uses DEMO_USER_PASSWORD if set, otherwise 'password123'.
    """
    if storage.get_user_by_email("john@example.com"):
        logger.info("Demo user already exists (email: john@example.com)")
        return None

    password = os.environ.get("DEMO_USER_PASSWORD", "password123")
    user = storage.create_user(
        username="johndoe",
        email="john@example.com",
        password_hash=hash_password(password),
        name="John Doe",
    )

    if password == "password123":
        logger.warning(
            "⚠️  Demo user created with DEFAULT password (john@example.com / password123). "
            "Set SEED_DEMO_USER=false outside local development."
        )
    else:
        logger.info("Demo user created with password from DEMO_USER_PASSWORD")
    return user


@app.on_event("startup")
def open_storage():
    """Build the store for this process and attach it to the app."""
    app.state.storage = create_storage()
    if seed_demo_enabled():
        seed_demo_user(app.state.storage)


@app.on_event("shutdown")
def close_storage():
    storage = getattr(app.state, "storage", None)
    if storage is not None:
        storage.close()
        logger.info("Storage closed")


# ============== Helper Functions ==============

def record_activity(
    storage: Storage,
    user_id: int,
    action: str,
    target: str,
    target_id: Optional[int] = None,
) -> schemas.Activity:
    """
    Append an activity to the user's feed.

    Called after the mutation it describes has been stored; the two are not
    transactional.
    """
    logger.debug(f"Recording activity: user={user_id} {action} {target} {target_id}")
    return storage.create_activity(user_id=user_id, action=action, target=target, target_id=target_id)


def refresh_progress(storage: Storage, *project_ids: Optional[int], sync_status: bool = False) -> None:
    """Recompute progress for each distinct non-null project id."""
    for project_id in dict.fromkeys(pid for pid in project_ids if pid is not None):
        recalculate_project_progress(storage, project_id, sync_status=sync_status)


# Health check
@app.get("/health")
def health_check():
    return {"status": "healthy"}


# ============== Users ==============

@app.get("/api/user", response_model=schemas.UserPublic)
def get_me(current_user: schemas.User = Depends(get_current_user)):
    """Get the authenticated user's profile."""
    logger.debug(f"Fetching user info for: {current_user.email}")
    return current_user


@app.get("/api/users/{user_id}", response_model=schemas.UserPublic)
def get_user(
    user_id: int,
    current_user: schemas.User = Depends(get_current_user),
    storage: Storage = Depends(get_storage)
):
    """Get any user's public profile."""
    logger.debug(f"User {current_user.id} requesting user {user_id}")

    user = storage.get_user(user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


# ============== Tasks ==============

@app.get("/api/tasks", response_model=List[schemas.Task])
def list_tasks(
    current_user: schemas.User = Depends(get_current_user),
    storage: Storage = Depends(get_storage)
):
    """List tasks created by or assigned to the current user."""
    tasks = storage.get_tasks(current_user.id)
    logger.debug(f"User {current_user.id} retrieved {len(tasks)} tasks")
    return tasks


@app.post("/api/tasks", response_model=schemas.Task, status_code=status.HTTP_201_CREATED)
def create_task(
    task: schemas.TaskCreate,
    current_user: schemas.User = Depends(get_current_user),
    storage: Storage = Depends(get_storage)
):
    """Create a personal task. Project tasks go through /api/projects/{id}/tasks."""
    logger.info(f"User {current_user.id} creating personal task: {task.title}")

    if task.project_id is not None:
        raise HTTPException(
            status_code=400,
            detail="Project tasks should be created using the project-specific endpoint"
        )

    if task.assignee_id is not None and task.assignee_id != current_user.id:
        logger.info(f"User {current_user.id} tried to assign personal task to user {task.assignee_id}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You can only assign personal tasks to yourself"
        )

    # Personal tasks are always assigned to their creator
    task = task.model_copy(update={"assignee_id": current_user.id})
    db_task = storage.create_task(task, current_user.id)

    record_activity(storage, current_user.id, "created", "task", db_task.id)

    logger.info(f"Task created successfully: id={db_task.id}")
    return db_task


@app.get("/api/tasks/{task_id}", response_model=schemas.Task)
def get_task(
    task_id: int,
    current_user: schemas.User = Depends(get_current_user),
    storage: Storage = Depends(get_storage)
):
    """Get one task (creator, assignee, or project owner/member)."""
    task = storage.get_task(task_id)
    if not task or not can_view_task(storage, current_user.id, task):
        raise HTTPException(status_code=404, detail="Task not found")
    return task


@app.put("/api/tasks/{task_id}", response_model=schemas.Task)
def update_task(
    task_id: int,
    task_update: schemas.TaskUpdate,
    current_user: schemas.User = Depends(get_current_user),
    storage: Storage = Depends(get_storage)
):
    """Update a task (creator, project owner, project member, or assignee)."""
    logger.info(f"User {current_user.id} updating task {task_id}")

    task = storage.get_task(task_id)
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")

    require_task_permission(storage, current_user, task, TaskAction.update)

    update_data = task_update.model_dump(exclude_unset=True)

    # Moving into another project needs access to that project
    new_project_id = update_data.get("project_id")
    if new_project_id is not None and new_project_id != task.project_id:
        require_project_access(storage, current_user, new_project_id)

    updated_task = storage.update_task(task_id, update_data)
    if updated_task is None:
        raise HTTPException(status_code=404, detail="Task not found")

    record_activity(storage, current_user.id, "updated", "task", task_id)
    refresh_progress(storage, task.project_id, updated_task.project_id)

    logger.info(f"Task {task_id} updated successfully")
    return updated_task


@app.delete("/api/tasks/{task_id}", response_model=schemas.MessageResponse)
def delete_task(
    task_id: int,
    current_user: schemas.User = Depends(get_current_user),
    storage: Storage = Depends(get_storage)
):
    """Soft-delete a task (creator, project owner, or project member)."""
    logger.debug(f"User {current_user.id} deleting task {task_id}")

    task = storage.get_task(task_id)
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")

    require_task_permission(storage, current_user, task, TaskAction.delete)

    if not storage.delete_task(task_id):
        raise HTTPException(status_code=404, detail="Task not found")

    record_activity(storage, current_user.id, "deleted", "task", task_id)
    refresh_progress(storage, task.project_id)

    logger.info(f"Task {task_id} deleted by user {current_user.id}")
    return {"message": "Task deleted successfully"}


@app.post("/api/tasks/{task_id}/restore", response_model=schemas.TaskRestoreResponse)
def restore_task(
    task_id: int,
    current_user: schemas.User = Depends(get_current_user),
    storage: Storage = Depends(get_storage)
):
    """Undo a task deletion (creator or project owner)."""
    logger.debug(f"User {current_user.id} restoring task {task_id}")

    tombstone = storage.get_deleted_task(task_id)
    if tombstone is None:
        raise HTTPException(status_code=404, detail="Task not found in deleted items")

    # Checked against the tombstone so a refused restore leaves it in place
    if not can_restore_task(storage, current_user.id, tombstone.entity):
        logger.info(f"User {current_user.id} denied restore of task {task_id}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not authorized to restore this task"
        )

    restored = storage.restore_task(task_id)
    if restored is None:
        raise HTTPException(status_code=404, detail="Task not found in deleted items")

    record_activity(storage, current_user.id, "restored", "task", task_id)
    refresh_progress(storage, restored.project_id)

    logger.info(f"Task {task_id} restored by user {current_user.id}")
    return {"message": "Task restored successfully", "task": restored}


# ============== Projects ==============

@app.get("/api/projects", response_model=List[schemas.Project])
def list_projects(
    current_user: schemas.User = Depends(get_current_user),
    storage: Storage = Depends(get_storage)
):
    """List projects owned by the current user or shared with them."""
    projects = storage.get_projects(current_user.id)
    logger.info(f"User {current_user.id} retrieved {len(projects)} projects")
    return projects


@app.post("/api/projects", response_model=schemas.Project, status_code=status.HTTP_201_CREATED)
def create_project(
    project: schemas.ProjectCreate,
    current_user: schemas.User = Depends(get_current_user),
    storage: Storage = Depends(get_storage)
):
    """Create a project owned by the current user."""
    logger.debug(f"User {current_user.id} creating project: {project.title}")

    # Status follows the initial progress, whatever the client sent
    project_status = (
        schemas.ProjectStatus.completed if project.progress == 100 else schemas.ProjectStatus.in_progress
    )
    project = project.model_copy(update={"status": project_status})
    db_project = storage.create_project(project, current_user.id)

    record_activity(storage, current_user.id, "created", "project", db_project.id)

    logger.info(f"Project created: {db_project.title} (ID: {db_project.id}) by user {current_user.id}")
    return db_project


@app.get("/api/projects/{project_id}", response_model=schemas.Project)
def get_project(
    project_id: int,
    current_user: schemas.User = Depends(get_current_user),
    storage: Storage = Depends(get_storage)
):
    """Get a project (owner or member)."""
    logger.debug(f"User {current_user.id} requesting project {project_id}")
    return require_project_access(storage, current_user, project_id)


@app.put("/api/projects/{project_id}", response_model=schemas.Project)
def update_project(
    project_id: int,
    project_update: schemas.ProjectUpdate,
    current_user: schemas.User = Depends(get_current_user),
    storage: Storage = Depends(get_storage)
):
    """Update a project (owner only)."""
    logger.debug(f"User {current_user.id} updating project {project_id}")

    require_project_owner(storage, current_user, project_id)

    project = storage.update_project(project_id, project_update.model_dump(exclude_unset=True))
    if project is None:
        raise HTTPException(status_code=404, detail="Project not found")

    record_activity(storage, current_user.id, "updated", "project", project_id)

    logger.info(f"Project updated: {project.title} (ID: {project_id})")
    return project


@app.patch("/api/projects/{project_id}", response_model=schemas.ProgressResponse)
def update_project_progress(
    project_id: int,
    progress_update: schemas.ProjectProgressUpdate,
    current_user: schemas.User = Depends(get_current_user),
    storage: Storage = Depends(get_storage)
):
    """Set a project's progress directly (owner only). Other fields are rejected."""
    logger.debug(f"User {current_user.id} patching progress of project {project_id}")

    require_project_owner(storage, current_user, project_id)

    if progress_update.progress is None:
        raise HTTPException(status_code=400, detail="Invalid update fields")

    project = storage.update_project(project_id, {"progress": progress_update.progress})
    if project is None:
        raise HTTPException(status_code=404, detail="Project not found")

    record_activity(storage, current_user.id, "updated progress on", "project", project_id)

    logger.info(f"Project {project_id} progress set to {project.progress}")
    return {"success": True, "progress": project.progress}


@app.delete("/api/projects/{project_id}", response_model=schemas.ProjectDeleteResponse)
def delete_project(
    project_id: int,
    current_user: schemas.User = Depends(get_current_user),
    storage: Storage = Depends(get_storage)
):
    """Soft-delete a project (owner only). Its tasks are left untouched."""
    logger.debug(f"User {current_user.id} deleting project {project_id}")

    project = require_project_owner(
        storage, current_user, project_id, detail="Only the project owner can delete a project"
    )

    if not storage.delete_project(project_id):
        raise HTTPException(status_code=404, detail="Project not found")

    record_activity(storage, current_user.id, "deleted", "project", project_id)

    logger.info(f"Project deleted: {project.title} (ID: {project_id})")
    return {"message": "Project deleted successfully", "project_id": project_id}


@app.post("/api/projects/{project_id}/restore", response_model=schemas.ProjectRestoreResponse)
def restore_project(
    project_id: int,
    current_user: schemas.User = Depends(get_current_user),
    storage: Storage = Depends(get_storage)
):
    """Undo a project deletion (owner only)."""
    logger.debug(f"User {current_user.id} restoring project {project_id}")

    tombstone = storage.get_deleted_project(project_id)
    if tombstone is None:
        raise HTTPException(status_code=404, detail="Project not found in deleted items")

    if tombstone.entity.user_id != current_user.id:
        logger.info(f"User {current_user.id} denied restore of project {project_id}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only the project owner can restore a project"
        )

    restored = storage.restore_project(project_id)
    if restored is None:
        raise HTTPException(status_code=404, detail="Project not found in deleted items")

    record_activity(storage, current_user.id, "restored", "project", project_id)
    # Its tasks stayed editable while the project was deleted
    restored = recalculate_project_progress(storage, project_id) or restored

    logger.info(f"Project {project_id} restored by user {current_user.id}")
    return {"message": "Project restored successfully", "project": restored}


# ============== Project Members ==============

@app.get("/api/projects/{project_id}/members", response_model=List[schemas.UserPublic])
def list_project_members(
    project_id: int,
    current_user: schemas.User = Depends(get_current_user),
    storage: Storage = Depends(get_storage)
):
    """List the profiles of a project's members (owner or member)."""
    require_project_access(storage, current_user, project_id)

    members = [storage.get_user(user_id) for user_id in storage.get_project_members(project_id)]
    members = [m for m in members if m is not None]

    logger.debug(f"Project {project_id} has {len(members)} members")
    return members


@app.post(
    "/api/projects/{project_id}/members",
    response_model=schemas.MessageResponse,
    status_code=status.HTTP_201_CREATED,
)
def add_project_member(
    project_id: int,
    invite: schemas.MemberInvite,
    current_user: schemas.User = Depends(get_current_user),
    storage: Storage = Depends(get_storage)
):
    """Invite a user to a project by email (owner only)."""
    logger.debug(f"User {current_user.id} inviting {invite.invitee_email} to project {project_id}")

    project = require_project_owner(storage, current_user, project_id)

    invitee = storage.get_user_by_email(invite.invitee_email)
    if not invitee:
        raise HTTPException(status_code=404, detail="User not found")

    if invitee.id == project.user_id:
        raise HTTPException(status_code=400, detail="The project owner cannot be invited to their own project")

    if not storage.add_project_member(project_id, invitee.id):
        raise HTTPException(status_code=400, detail="User is already a member of this project")

    record_activity(storage, current_user.id, "invited", "user", invitee.id)
    # The invitee's own feed tells them about the project
    record_activity(storage, invitee.id, "added to", "project", project_id)

    logger.info(f"User {invitee.id} added to project {project_id}")
    return {"message": "Member added successfully"}


@app.delete("/api/projects/{project_id}/members/{member_id}", response_model=schemas.MessageResponse)
def remove_project_member(
    project_id: int,
    member_id: int,
    current_user: schemas.User = Depends(get_current_user),
    storage: Storage = Depends(get_storage)
):
    """Remove a member from a project (owner only)."""
    logger.debug(f"User {current_user.id} removing member {member_id} from project {project_id}")

    require_project_owner(storage, current_user, project_id)

    if not storage.remove_project_member(project_id, member_id):
        raise HTTPException(status_code=404, detail="Membership not found")

    record_activity(storage, current_user.id, "removed", "user", member_id)

    logger.info(f"User {member_id} removed from project {project_id}")
    return {"message": "Member removed successfully"}


# ============== Project Tasks ==============

@app.get("/api/projects/{project_id}/tasks", response_model=List[schemas.Task])
def list_project_tasks(
    project_id: int,
    current_user: schemas.User = Depends(get_current_user),
    storage: Storage = Depends(get_storage)
):
    """List every task of a project (owner or member)."""
    require_project_access(storage, current_user, project_id)
    return storage.get_tasks_by_project(project_id)


@app.post(
    "/api/projects/{project_id}/tasks",
    response_model=schemas.Task,
    status_code=status.HTTP_201_CREATED,
)
def create_project_task(
    project_id: int,
    task: schemas.TaskCreate,
    current_user: schemas.User = Depends(get_current_user),
    storage: Storage = Depends(get_storage)
):
    """Create a task inside a project (owner or member)."""
    logger.info(f"User {current_user.id} creating task in project {project_id}: {task.title}")

    project = storage.get_project(project_id)
    if not project or not can_view_project(storage, current_user.id, project):
        raise HTTPException(status_code=404, detail="Project not found or you don't have access")

    # The assignee may be any user; membership is not checked
    task = task.model_copy(update={"project_id": project_id})
    db_task = storage.create_task(task, current_user.id)

    record_activity(storage, current_user.id, "created", "task", db_task.id)
    refresh_progress(storage, project_id, sync_status=True)

    logger.info(f"Task created successfully: id={db_task.id} in project {project_id}")
    return db_task


# ============== Activities ==============

@app.get("/api/activities", response_model=List[schemas.Activity])
def list_activities(
    limit: int = Query(10, ge=1, le=100),
    current_user: schemas.User = Depends(get_current_user),
    storage: Storage = Depends(get_storage)
):
    """
    The current user's own activity feed, newest first.

    limit must be between 1 and 100; anything else is a 400.
    """
    return storage.get_activities(current_user.id, limit)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("PORT", "8000")))
