from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel
from datetime import datetime
from typing import Optional, List, Literal
from enum import Enum


class TaskStatus(str, Enum):
    todo = "todo"
    in_progress = "in_progress"
    completed = "completed"


class TaskPriority(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"


class ProjectStatus(str, Enum):
    """
    Project lifecycle states.

    The server only ever sets in_progress and completed. The remaining values
    are accepted from clients on create/update so boards can flag projects.
    """
    in_progress = "in_progress"
    completed = "completed"
    on_track = "on_track"
    at_risk = "at_risk"
    delayed = "delayed"


class CamelModel(BaseModel):
    """Base schema: camelCase on the wire, snake_case in Python."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# User schemas
class UserPublic(CamelModel):
    id: int
    name: str
    email: str
    username: str


class User(UserPublic):
    # Never returned by the API, handlers respond with UserPublic
    password_hash: str


class SignupRequest(CamelModel):
    username: str = Field(..., min_length=1, max_length=50)
    email: EmailStr
    password: str = Field(..., min_length=6, max_length=100)
    name: str = Field(..., min_length=1, max_length=255)


class LoginRequest(CamelModel):
    email: EmailStr
    password: str = Field(..., min_length=6)


class AuthResponse(BaseModel):
    message: str
    token: str
    user: UserPublic


# Task schemas
class TaskBase(CamelModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    status: TaskStatus = TaskStatus.todo
    priority: TaskPriority = TaskPriority.medium
    due_date: Optional[str] = None
    assignee_id: Optional[int] = None


class TaskCreate(TaskBase):
    project_id: Optional[int] = None


class TaskUpdate(CamelModel):
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    due_date: Optional[str] = None
    assignee_id: Optional[int] = None
    project_id: Optional[int] = None


class Task(TaskBase):
    id: int
    user_id: int
    project_id: Optional[int] = None
    created_at: datetime
    updated_at: datetime


# Project schemas
class ProjectBase(CamelModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    status: ProjectStatus = ProjectStatus.in_progress
    progress: int = Field(0, ge=0, le=100)
    due_date: Optional[str] = None


class ProjectCreate(ProjectBase):
    pass


class ProjectUpdate(CamelModel):
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    status: Optional[ProjectStatus] = None
    progress: Optional[int] = Field(None, ge=0, le=100)
    due_date: Optional[str] = None


class ProjectProgressUpdate(CamelModel):
    progress: Optional[int] = Field(None, ge=0, le=100)


class Project(ProjectBase):
    id: int
    user_id: int
    created_at: datetime
    updated_at: datetime


# Soft-delete tombstones
class TaskTombstone(CamelModel):
    kind: Literal["task"] = "task"
    entity: Task
    deleted_at: datetime


class ProjectTombstone(CamelModel):
    kind: Literal["project"] = "project"
    entity: Project
    deleted_at: datetime


# Project member schemas
class MemberInvite(CamelModel):
    invitee_email: EmailStr


# Activity schemas
class Activity(CamelModel):
    id: int
    user_id: int
    action: str
    target: str
    target_id: Optional[int] = None
    created_at: datetime


# Response envelopes
class MessageResponse(BaseModel):
    message: str


class TaskRestoreResponse(BaseModel):
    message: str
    task: Task


class ProjectRestoreResponse(BaseModel):
    message: str
    project: Project


class ProjectDeleteResponse(CamelModel):
    message: str
    project_id: int


class ProgressResponse(BaseModel):
    success: bool
    progress: int


class ValidationErrorResponse(BaseModel):
    detail: str
    errors: List[dict] = []
