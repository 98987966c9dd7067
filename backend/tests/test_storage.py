"""
Contract tests for the Storage implementations.

Every test runs against MemStorage and SqlStorage through the parametrized
storage fixture.
"""

import logging
import threading

import pytest

import schemas
from storage import DuplicateUserError, MemStorage, Storage, create_storage

logger = logging.getLogger(__name__)


def test_create_user_rejects_duplicates(storage: Storage, owner_user: schemas.User):
    with pytest.raises(DuplicateUserError) as email_clash:
        storage.create_user("someone", owner_user.email, "hash", "Someone")
    with pytest.raises(DuplicateUserError) as username_clash:
        storage.create_user(owner_user.username, "someone@test.com", "hash", "Someone")

    assert email_clash.value.field == "email"
    assert username_clash.value.field == "username"
    assert storage.get_user_by_email("someone@test.com") is None
    assert storage.get_user_by_username("someone") is None


def test_ids_are_sequential(storage: Storage, owner_user: schemas.User):
    first = storage.create_task(schemas.TaskCreate(title="A"), owner_user.id)
    second = storage.create_task(schemas.TaskCreate(title="B"), owner_user.id)

    assert second.id == first.id + 1


def test_timestamps_are_utc(storage: Storage, owner_user: schemas.User):
    task = storage.create_task(schemas.TaskCreate(title="Clock"), owner_user.id)
    fetched = storage.get_task(task.id)

    assert fetched.created_at.utcoffset().total_seconds() == 0
    assert fetched.created_at == task.created_at


def test_update_ignores_unknown_and_protected_fields(storage: Storage, personal_task: schemas.Task):
    updated = storage.update_task(
        personal_task.id,
        {"title": "Renamed", "user_id": 999, "id": 42, "status": None},
    )

    assert updated.id == personal_task.id
    assert updated.user_id == personal_task.user_id
    assert updated.title == "Renamed"
    assert updated.status == personal_task.status
    assert updated.updated_at >= personal_task.updated_at


def test_update_missing_entities(storage: Storage):
    assert storage.update_task(999, {"title": "x"}) is None
    assert storage.update_project(999, {"title": "x"}) is None


def test_deleted_task_is_hidden_everywhere(
    storage: Storage, project: schemas.Project, owner_user: schemas.User
):
    task = storage.create_task(schemas.TaskCreate(title="Hide", project_id=project.id), owner_user.id)

    assert storage.delete_task(task.id)

    assert storage.get_task(task.id) is None
    assert storage.get_tasks(owner_user.id) == []
    assert storage.get_tasks_by_project(project.id) == []
    assert storage.update_task(task.id, {"title": "Ghost"}) is None
    assert not storage.delete_task(task.id)

    tombstone = storage.get_deleted_task(task.id)
    assert tombstone.kind == "task"
    assert tombstone.entity == task
    logger.info("✓ Deleted task only visible as tombstone")


def test_deleted_project_is_hidden(
    storage: Storage, shared_project: schemas.Project, member_user: schemas.User
):
    assert storage.delete_project(shared_project.id)

    assert storage.get_project(shared_project.id) is None
    assert storage.get_projects(member_user.id) == []
    assert storage.get_deleted_project(shared_project.id).kind == "project"

    restored = storage.restore_project(shared_project.id)
    assert restored == shared_project
    assert storage.get_deleted_project(shared_project.id) is None


def test_restore_unknown(storage: Storage):
    assert storage.restore_task(404) is None
    assert storage.restore_project(404) is None


def test_membership(storage: Storage, project: schemas.Project, member_user: schemas.User,
                    outsider_user: schemas.User):
    assert storage.add_project_member(project.id, outsider_user.id)
    assert storage.add_project_member(project.id, member_user.id)
    assert not storage.add_project_member(project.id, member_user.id)

    assert storage.get_project_members(project.id) == sorted([member_user.id, outsider_user.id])
    assert storage.is_project_member(project.id, member_user.id)

    assert storage.remove_project_member(project.id, member_user.id)
    assert not storage.remove_project_member(project.id, member_user.id)
    assert storage.get_project_members(project.id) == [outsider_user.id]


def test_user_lookup(storage: Storage, owner_user: schemas.User):
    assert storage.get_user(owner_user.id) == owner_user
    assert storage.get_user_by_email("owner@test.com") == owner_user
    assert storage.get_user_by_username("owner") == owner_user
    assert storage.get_user_by_email("missing@test.com") is None
    assert storage.get_user(999) is None


def test_activities_newest_first(storage: Storage, owner_user: schemas.User):
    for target_id in (1, 2, 3):
        storage.create_activity(owner_user.id, "created", "task", target_id)
    storage.create_activity(owner_user.id + 100, "created", "task", 99)

    feed = storage.get_activities(owner_user.id, limit=2)

    assert [a.target_id for a in feed] == [3, 2]


def test_concurrent_task_creation_gives_unique_ids(owner_user: schemas.User, storage: Storage):
    """Parallel creates never hand out the same id."""
    ids = []
    ids_lock = threading.Lock()

    def worker():
        for i in range(20):
            task = storage.create_task(schemas.TaskCreate(title=f"Parallel {i}"), owner_user.id)
            with ids_lock:
                ids.append(task.id)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(ids) == 80
    assert len(set(ids)) == 80


def test_create_storage_defaults_to_memory():
    assert isinstance(create_storage("memory"), MemStorage)


def test_create_storage_unknown_backend():
    with pytest.raises(ValueError):
        create_storage("redis")
