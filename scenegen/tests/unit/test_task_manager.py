"""Tests for the SQLite-backed TaskManager and the cancel registry."""
import asyncio

import pytest

from scenegen.services.shared.task_manager import (
    TaskManager,
    TaskStatus,
    get_task_manager,
    register_cancel,
    release_cancel,
    request_cancel,
    reset_task_manager,
)


@pytest.fixture
def task_db(tmp_dir):
    return TaskManager(db_path=str(tmp_dir / "tasks.db"))


class TestTaskCreation:
    def test_create_returns_task_id(self, task_db):
        task_id = task_db.create_task("generate_scene", {"seed": 42})
        assert isinstance(task_id, str) and task_id

    def test_create_task_default_status_pending(self, task_db):
        task_id = task_db.create_task("generate_scene", {})
        assert task_db.get_status(task_id).status == TaskStatus.PENDING

    def test_create_stores_params(self, task_db):
        task_id = task_db.create_task("generate_scene", {"characters": ["Elena", "Sophie"]})
        assert task_db.get_status(task_id).params["characters"] == ["Elena", "Sophie"]

    def test_unknown_task_is_none(self, task_db):
        assert task_db.get_status("missing") is None


class TestTaskProgress:
    def test_update_progress_changes_status_to_running(self, task_db):
        task_id = task_db.create_task("generate_scene", {})
        task_db.update_progress(task_id, "masks", 30.0, "Rendering 2 mask(s)")
        state = task_db.get_status(task_id)
        assert state.status == TaskStatus.RUNNING
        assert state.stage == "masks"
        assert state.percent == 30.0

    def test_mark_complete(self, task_db):
        task_id = task_db.create_task("generate_scene", {})
        task_db.complete_task(task_id, {"job_id": "abc", "seed": 7})
        state = task_db.get_status(task_id)
        assert state.status == TaskStatus.COMPLETE
        assert state.result["seed"] == 7
        assert state.percent == 100.0
        assert state.is_terminal

    def test_mark_failed_records_stage(self, task_db):
        task_id = task_db.create_task("generate_scene", {})
        task_db.fail_task(task_id, "Upload returned 500", stage="upload")
        state = task_db.get_status(task_id)
        assert state.status == TaskStatus.FAILED
        assert state.stage == "upload"
        assert "500" in state.error

    def test_time_out(self, task_db):
        task_id = task_db.create_task("generate_scene", {})
        task_db.time_out_task(task_id, "no outputs after 120s")
        assert task_db.get_status(task_id).status == TaskStatus.TIMED_OUT


class TestTerminalStates:
    def test_cancelled_task_not_overwritten_by_completion(self, task_db):
        task_id = task_db.create_task("generate_scene", {})
        task_db.cancel_task(task_id)
        task_db.complete_task(task_id, {"job_id": "late"})
        state = task_db.get_status(task_id)
        assert state.status == TaskStatus.CANCELLED
        assert state.result == {}

    def test_progress_ignored_after_terminal(self, task_db):
        task_id = task_db.create_task("generate_scene", {})
        task_db.fail_task(task_id, "boom")
        task_db.update_progress(task_id, "await", 55.0, "late")
        assert task_db.get_status(task_id).status == TaskStatus.FAILED

    def test_list_active_excludes_terminal(self, task_db):
        running = task_db.create_task("generate_scene", {})
        done = task_db.create_task("generate_scene", {})
        task_db.complete_task(done, {})
        ids = [t.task_id for t in task_db.list_active()]
        assert ids == [running]


class TestTaskPersistence:
    def test_task_survives_new_instance(self, tmp_dir):
        db_path = str(tmp_dir / "tasks.db")
        task_id = TaskManager(db_path=db_path).create_task("generate_scene", {"key": "value"})
        assert TaskManager(db_path=db_path).get_status(task_id).params == {"key": "value"}


class TestCancelRegistry:
    @pytest.fixture(autouse=True)
    def clean(self):
        reset_task_manager()
        yield
        reset_task_manager()

    def test_request_cancel_sets_event(self):
        async def scenario():
            event = register_cancel("t1")
            assert request_cancel("t1") is True
            return event.is_set()

        assert asyncio.run(scenario()) is True

    def test_request_cancel_unknown_task(self):
        assert request_cancel("nobody") is False

    def test_release_forgets_event(self):
        async def scenario():
            register_cancel("t2")
            release_cancel("t2")
            return request_cancel("t2")

        assert asyncio.run(scenario()) is False

    def test_get_task_manager_singleton(self, tmp_dir):
        tm = get_task_manager(str(tmp_dir / "tasks.db"))
        assert get_task_manager() is tm
