"""
Test configuration and fixtures for TaskMaster tests.

Provides:
- A fresh store per test, run once against MemStorage and once against
  SqlStorage (SQLite in-memory)
- FastAPI test client with storage dependency override
- Authentication helpers (JWT token generation)
- Common fixtures for users, projects and tasks
"""

import os
import sys
import logging
from datetime import timedelta
from typing import Dict, Generator

# Must be set before the app modules read their configuration
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-not-for-production")
os.environ["SEED_DEMO_USER"] = "false"

import pytest
from fastapi.testclient import TestClient

# Add backend directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import schemas
from main import app
from storage import Storage, create_storage, get_storage
from auth.security import hash_password, create_access_token

# Configure logging for tests
logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)

# SQLite in-memory database for fast testing
SQLALCHEMY_TEST_DATABASE_URL = "sqlite:///:memory:"

DEFAULT_PASSWORD = "password123"


@pytest.fixture(scope="function", params=["memory", "sql"])
def storage(request) -> Generator[Storage, None, None]:
    """
    Create a fresh store for each test.

    Every test using it runs once per backend so both honour the same contract.
    """
    logger.debug(f"Creating {request.param} test storage")
    store = create_storage(request.param, SQLALCHEMY_TEST_DATABASE_URL)
    try:
        yield store
    finally:
        store.close()
        logger.debug("Test storage cleaned up")


@pytest.fixture(scope="function")
def client(storage: Storage) -> Generator[TestClient, None, None]:
    """
    Create FastAPI test client with storage dependency override.
    """
    app.dependency_overrides[get_storage] = lambda: storage

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def make_user(storage: Storage, username: str, name: str, password: str = DEFAULT_PASSWORD) -> schemas.User:
    user = storage.create_user(
        username=username,
        email=f"{username}@test.com",
        password_hash=hash_password(password),
        name=name,
    )
    logger.info(f"Created user {username} with ID: {user.id}")
    return user


@pytest.fixture(scope="function")
def owner_user(storage: Storage) -> schemas.User:
    """Owner of the fixture project."""
    return make_user(storage, "owner", "Olivia Owner")


@pytest.fixture(scope="function")
def member_user(storage: Storage) -> schemas.User:
    """Plain user, not yet a member of anything."""
    return make_user(storage, "member", "Max Member")


@pytest.fixture(scope="function")
def outsider_user(storage: Storage) -> schemas.User:
    """User with no relation to any fixture entity."""
    return make_user(storage, "outsider", "Oscar Outsider")


def create_auth_token(user: schemas.User, expires_delta: timedelta = None) -> str:
    """
    Helper to create JWT access token for a user.

    Args:
        user: User to create token for
        expires_delta: Optional expiration time override

    Returns:
        JWT access token string
    """
    logger.debug(f"Creating auth token for user {user.id}")
    token_data = {
        "sub": str(user.id),
        "email": user.email,
        "name": user.name,
    }
    return create_access_token(token_data, expires_delta)


def auth_header(user: schemas.User) -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_auth_token(user)}"}


@pytest.fixture(scope="function")
def owner_headers(owner_user: schemas.User) -> Dict[str, str]:
    return auth_header(owner_user)


@pytest.fixture(scope="function")
def member_headers(member_user: schemas.User) -> Dict[str, str]:
    return auth_header(member_user)


@pytest.fixture(scope="function")
def outsider_headers(outsider_user: schemas.User) -> Dict[str, str]:
    return auth_header(outsider_user)


@pytest.fixture(scope="function")
def project(storage: Storage, owner_user: schemas.User) -> schemas.Project:
    """
    Create a project owned by owner_user with no tasks.
    """
    logger.debug("Creating test project")
    project = storage.create_project(
        schemas.ProjectCreate(title="Website Redesign", description="Refresh the marketing site"),
        owner_user.id,
    )
    logger.info(f"Created test project with ID: {project.id}")
    return project


@pytest.fixture(scope="function")
def shared_project(
    storage: Storage, project: schemas.Project, member_user: schemas.User
) -> schemas.Project:
    """
    The fixture project with member_user added as a member.
    """
    storage.add_project_member(project.id, member_user.id)
    logger.info(f"Added user {member_user.id} to project {project.id}")
    return project


@pytest.fixture(scope="function")
def personal_task(storage: Storage, owner_user: schemas.User) -> schemas.Task:
    """
    Create a personal task owned by and assigned to owner_user.
    """
    task = storage.create_task(
        schemas.TaskCreate(title="Write release notes", assignee_id=owner_user.id),
        owner_user.id,
    )
    logger.info(f"Created personal task with ID: {task.id}")
    return task
