"""Tests for the in-memory store: users, refresh tokens, tasks and persistence."""

import threading
from datetime import timedelta

import pytest

from taskboard.storage.errors import ConstraintViolation
from taskboard.storage.memory import MemoryStore
from taskboard.storage.models import TaskPriority, TaskStatus, utcnow


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def user(store):
    return store.create_user("Ada", "Ada@Example.com")


class TestUsers:
    def test_email_is_lowercased(self, store, user):
        assert user.email == "ada@example.com"
        assert store.get_user_by_email("ADA@example.COM").id == user.id

    def test_duplicate_email_is_case_insensitive(self, store, user):
        with pytest.raises(ConstraintViolation):
            store.create_user("Other", "ada@EXAMPLE.com")

    def test_password_for_unknown_user_rejected(self, store):
        with pytest.raises(ConstraintViolation):
            store.save_password("missing", "hash", "argon2id")


class TestRefreshTokens:
    """Tests for the refresh-token lifecycle."""

    def test_saved_token_is_active(self, store, user):
        store.save_refresh_token("tok-1", user.id, utcnow() + timedelta(days=1))
        record = store.find_active_refresh_token("tok-1", user.id)
        assert record is not None
        assert record.user_id == user.id

    def test_token_must_match_owner(self, store, user):
        other = store.create_user("Bob", "bob@example.com")
        store.save_refresh_token("tok-1", user.id, utcnow() + timedelta(days=1))
        assert store.find_active_refresh_token("tok-1", other.id) is None

    def test_expired_token_is_inactive(self, store, user):
        store.save_refresh_token("tok-1", user.id, utcnow() - timedelta(seconds=1))
        assert store.find_active_refresh_token("tok-1", user.id) is None

    def test_revoke_is_idempotent(self, store, user):
        record = store.save_refresh_token("tok-1", user.id, utcnow() + timedelta(days=1))
        store.revoke_refresh_token(record)
        store.revoke_refresh_token(record)
        assert store.find_active_refresh_token("tok-1", user.id) is None
        # Revoked records stay as an audit trail
        assert store.list_refresh_tokens(user.id)[0].revoked

    def test_revoke_user_token_reports_outcome(self, store, user):
        store.save_refresh_token("tok-1", user.id, utcnow() + timedelta(days=1))
        assert store.revoke_user_refresh_token("tok-1", "someone-else") is False
        assert store.revoke_user_refresh_token("tok-1", user.id) is True
        assert store.revoke_user_refresh_token("tok-1", user.id) is False

    def test_rotate_swaps_tokens(self, store, user):
        store.save_refresh_token("old", user.id, utcnow() + timedelta(days=1))
        new = store.rotate_refresh_token("old", user.id, "new", utcnow() + timedelta(days=1))
        assert new is not None and new.token == "new"
        assert store.find_active_refresh_token("old", user.id) is None
        assert store.find_active_refresh_token("new", user.id) is not None

    def test_rotate_has_exactly_one_winner(self, store, user):
        store.save_refresh_token("old", user.id, utcnow() + timedelta(days=1))
        results = []
        barrier = threading.Barrier(8)

        def worker(n):
            barrier.wait()
            results.append(
                store.rotate_refresh_token("old", user.id, f"new-{n}", utcnow() + timedelta(days=1))
            )

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        winners = [r for r in results if r is not None]
        assert len(winners) == 1
        active = [r for r in store.list_refresh_tokens(user.id) if r.is_active()]
        assert [r.token for r in active] == [winners[0].token]


class TestTasks:
    """Tests for the task collection."""

    def test_first_task_position_is_zero(self, store, user):
        task = store.create_task(user.id, "First")
        assert task.position == 0
        assert task.status == TaskStatus.TODO
        assert task.priority == TaskPriority.MEDIUM

    def test_position_is_max_plus_one(self, store, user):
        store.create_task(user.id, "First")
        second = store.create_task(user.id, "Second")
        store.update_task(second.id, user.id, {"position": 7})
        third = store.create_task(user.id, "Third")
        assert third.position == 8

    def test_positions_are_per_user(self, store, user):
        other = store.create_user("Bob", "bob@example.com")
        store.create_task(user.id, "Mine")
        assert store.create_task(other.id, "Theirs").position == 0

    def test_owner_scoping(self, store, user):
        other = store.create_user("Bob", "bob@example.com")
        task = store.create_task(user.id, "Private")
        assert store.get_task(task.id, other.id) is None
        assert store.update_task(task.id, other.id, {"title": "Hacked"}) is None
        assert store.delete_task(task.id, other.id) is False
        assert store.get_task(task.id, user.id).title == "Private"

    def test_list_newest_first_with_filters(self, store, user):
        a = store.create_task(user.id, "Buy milk", description="from the corner shop")
        b = store.create_task(user.id, "Write report", priority=TaskPriority.HIGH)
        c = store.create_task(user.id, "Call shop", status=TaskStatus.COMPLETED)
        b.created_at = a.created_at + timedelta(seconds=1)
        c.created_at = a.created_at + timedelta(seconds=2)

        tasks, total = store.list_tasks(user.id)
        assert [t.id for t in tasks] == [c.id, b.id, a.id]
        assert total == 3

        tasks, total = store.list_tasks(user.id, search="SHOP")
        assert {t.id for t in tasks} == {a.id, c.id}

        tasks, _ = store.list_tasks(user.id, priority="high")
        assert [t.id for t in tasks] == [b.id]

        tasks, total = store.list_tasks(user.id, status="completed")
        assert [t.id for t in tasks] == [c.id] and total == 1

    def test_list_pagination(self, store, user):
        for n in range(5):
            store.create_task(user.id, f"Task {n}")
        page, total = store.list_tasks(user.id, offset=4, limit=2)
        assert total == 5
        assert len(page) == 1

    def test_unknown_update_field_rejected(self, store, user):
        task = store.create_task(user.id, "Task")
        with pytest.raises(ConstraintViolation):
            store.update_task(task.id, user.id, {"user_id": "someone-else"})

    def test_task_counts(self, store, user):
        store.create_task(user.id, "a", status=TaskStatus.COMPLETED, priority=TaskPriority.HIGH)
        store.create_task(user.id, "b", status=TaskStatus.IN_PROGRESS)
        store.create_task(user.id, "c")
        assert store.task_counts(user.id) == {
            "total": 3,
            "completed": 1,
            "in_progress": 1,
            "todo": 1,
            "high_priority": 1,
        }


class TestPersistence:
    def test_state_survives_reload(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        user = store.create_user("Ada", "ada@example.com")
        store.save_password(user.id, "hash", "argon2id")
        store.save_refresh_token("tok", user.id, utcnow() + timedelta(days=1))
        task = store.create_task(
            user.id, "Persist me", tags=["a"], priority=TaskPriority.HIGH, estimated_time=30
        )

        reloaded = MemoryStore(fs_root=str(tmp_path))
        assert reloaded.get_user_by_email("ada@example.com").id == user.id
        assert reloaded.get_password_record(user.id) == ("hash", "argon2id")
        assert reloaded.find_active_refresh_token("tok", user.id) is not None
        restored = reloaded.get_task(task.id, user.id)
        assert restored.title == "Persist me"
        assert restored.tags == ["a"]
        assert restored.priority == TaskPriority.HIGH
        assert restored.estimated_time == 30
        assert restored.created_at == task.created_at
