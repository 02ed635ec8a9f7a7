"""Tests for the message log."""

import tempfile
from pathlib import Path

import pytest

from taskpilot.core import messages as messages_mod
from taskpilot.core import milestones as milestones_mod
from taskpilot.core import projects as projects_mod
from taskpilot.core import tasks as tasks_mod
from taskpilot.db.engine import init_db
from taskpilot.errors import NotFoundError, ValidationError


@pytest.fixture
def db():
    """Create a temporary SQLite database for testing."""
    with tempfile.TemporaryDirectory() as tmp:
        db_path = Path(tmp) / "test.db"
        conn = init_db(db_path)
        project = projects_mod.create_project(conn, "Chatty")
        milestone = milestones_mod.create_milestone(conn, project.id, "Talk")
        tasks_mod.create_task(conn, milestone.id, "Reply")
        yield conn
        conn.close()


class TestLogging:
    def test_save_message(self, db):
        message = messages_mod.save_message(
            db, "Hello\n  there", role="user", type="UserQuery", metadata={"n": 1}
        )
        assert message.id is not None
        assert message.content == "Hello\n  there"
        assert message.tokenized_content == "Hello there"
        assert message.type == "UserQuery"
        assert message.metadata == {"n": 1}
        assert message.created_at is not None

    def test_empty_content(self, db):
        with pytest.raises(ValidationError):
            messages_mod.save_message(db, "")

    def test_bad_role(self, db):
        with pytest.raises(ValidationError):
            messages_mod.save_message(db, "hi", role="robot")

    def test_single_scope(self, db):
        with pytest.raises(ValidationError):
            messages_mod.save_message(db, "hi", project_id=1, task_id=1)

    def test_tokenize(self):
        assert messages_mod.tokenize_content("  a\n\tb   c ") == "a b c"


class TestQueries:
    def test_thread_is_oldest_first(self, db):
        messages_mod.save_message(db, "first", role="user", task_id=1)
        messages_mod.save_message(db, "second", role="assistant", task_id=1)
        contents = [m.content for m in messages_mod.get_message_thread(db, task_id=1)]
        assert contents[-2:] == ["first", "second"]

    def test_general_messages(self, db):
        messages_mod.save_message(db, "loose", role="user")
        messages_mod.save_message(db, "scoped", role="user", project_id=1)
        assert [m.content for m in messages_mod.get_general_messages(db)] == ["loose"]

    def test_by_role(self, db):
        messages_mod.save_message(db, "question", role="user")
        assert [m.content for m in messages_mod.get_messages_by_role(db, "user")] == ["question"]

    def test_delete(self, db):
        message = messages_mod.save_message(db, "temp", role="user")
        messages_mod.delete_message(db, message.id)
        assert messages_mod.get_message(db, message.id) is None
        with pytest.raises(NotFoundError):
            messages_mod.delete_message(db, message.id)


class TestMessageDict:
    @pytest.mark.parametrize(
        "scope, context, level",
        [
            ({}, "General", "General"),
            ({"project_id": 1}, "Project: Chatty", "Project"),
            ({"milestone_id": 1}, "Milestone: Talk", "Milestone"),
            ({"task_id": 1}, "Task: Reply", "Task"),
        ],
    )
    def test_context_and_level(self, db, scope, context, level):
        message = messages_mod.save_message(db, "hi", role="user", **scope)
        data = messages_mod.message_to_dict(db, message)
        assert data["context"] == context
        assert data["thread_level"] == level

    def test_metadata_is_stringified(self, db):
        message = messages_mod.save_message(
            db, "hi", metadata={"count": 3, "tags": ["a"], "missing": None}
        )
        data = messages_mod.message_to_dict(db, message)
        assert data["metadata"] == {"count": "3", "tags": '["a"]', "missing": "null"}
