"""Tests for gatekeeper.data.db — SQLite stores."""

import sqlite3
from datetime import timedelta

import pytest

from conftest import NOW, make_goal
from gatekeeper.core.errors import PersistenceFailure
from gatekeeper.data.db import GoalDB, Stores
from gatekeeper.data.models import (
    CalendarEvent,
    ChatMessage,
    Project,
    Sender,
    TaskStatus,
    UserContext,
)


class TestGoalDB:
    def test_add_and_get(self, stores):
        stores.goals.add_goal(make_goal())
        fetched = stores.goals.get_goal("g1")
        assert fetched == make_goal()

    def test_get_missing(self, stores):
        assert stores.goals.get_goal("nope") is None

    def test_list_in_creation_order(self, stores):
        for goal_id in ("b", "a", "c"):
            stores.goals.add_goal(make_goal(id=goal_id))
        assert [g.id for g in stores.goals.list_goals()] == ["b", "a", "c"]

    def test_list_excludes_completed(self, stores):
        stores.goals.add_goal(make_goal(id="open"))
        stores.goals.add_goal(make_goal(id="done", is_completed=True))
        assert [g.id for g in stores.goals.list_goals(include_completed=False)] == ["open"]

    def test_update_fields(self, stores, goal):
        updated = stores.goals.update_goal(goal.id, current_state="Beta", is_completed=True)
        assert updated.current_state == "Beta"
        assert updated.is_completed is True
        assert stores.goals.get_goal(goal.id).is_completed is True

    def test_update_unknown_field(self, stores, goal):
        with pytest.raises(ValueError):
            stores.goals.update_goal(goal.id, colour="red")

    def test_update_missing_goal(self, stores):
        with pytest.raises(ValueError):
            stores.goals.update_goal("nope", title="x")

    def test_last_checked_never_moves_backwards(self, stores, goal):
        later = NOW.isoformat()
        earlier = (NOW - timedelta(days=3)).isoformat()
        stores.goals.touch_last_checked(goal.id, later)
        result = stores.goals.touch_last_checked(goal.id, earlier)
        assert result.last_checked == later
        assert stores.goals.get_goal(goal.id).last_checked == later

    def test_delete(self, stores, goal):
        assert stores.goals.delete_goal(goal.id) is True
        assert stores.goals.delete_goal(goal.id) is False
        assert stores.goals.get_goal(goal.id) is None

    def test_migrates_missing_voice_column(self, tmp_db_path):
        with sqlite3.connect(tmp_db_path) as conn:
            conn.execute(
                "CREATE TABLE goals (id TEXT PRIMARY KEY, title TEXT NOT NULL, "
                "desired_goal TEXT NOT NULL DEFAULT '', start_state TEXT NOT NULL DEFAULT '', "
                "current_state TEXT NOT NULL DEFAULT '', end_state TEXT NOT NULL DEFAULT '', "
                "frequency TEXT NOT NULL DEFAULT 'daily', start_date TEXT NOT NULL DEFAULT '', "
                "end_date TEXT NOT NULL DEFAULT '', is_completed INTEGER NOT NULL DEFAULT 0, "
                "last_checked TEXT, project_id TEXT)"
            )
            conn.execute("INSERT INTO goals (id, title) VALUES ('old', 'Legacy goal')")
        db = GoalDB(tmp_db_path)
        assert db.get_goal("old").voice is None
        db.update_goal("old", voice="direct")
        assert db.get_goal("old").voice == "direct"

    def test_unwritable_path_raises_persistence_failure(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("x")
        with pytest.raises((PersistenceFailure, OSError)):
            GoalDB(str(blocker / "db.sqlite"))


class TestTaskDB:
    def test_add_defaults(self, stores):
        task = stores.tasks.add_task("Write tests", "work")
        assert task.status is TaskStatus.BACKLOG
        assert task.completed is False
        assert task.created_at

    def test_list_filters(self, stores):
        a = stores.tasks.add_task("A", "work")
        b = stores.tasks.add_task("B", "work", status=TaskStatus.DOING)
        stores.tasks.add_task("C", "work", status=TaskStatus.DONE)
        stores.tasks.add_task("D", "personal")
        open_work = stores.tasks.list_tasks(
            project_id="work", statuses=(TaskStatus.BACKLOG, TaskStatus.DOING),
        )
        assert [t.id for t in open_work] == [a.id, b.id]
        assert len(stores.tasks.list_tasks()) == 4

    def test_set_status_reports_change(self, stores):
        task = stores.tasks.add_task("A", "work")
        assert stores.tasks.set_status(task.id, TaskStatus.DONE) is True
        assert stores.tasks.set_status(task.id, TaskStatus.DONE) is False
        assert stores.tasks.get_task(task.id).completed is True

    def test_set_status_missing(self, stores):
        with pytest.raises(ValueError):
            stores.tasks.set_status("nope", TaskStatus.DONE)


class TestCalendarDB:
    def _event(self, **overrides):
        fields = dict(id="e1", title="Demo", date="2025-03-12T00:00:00")
        fields.update(overrides)
        return CalendarEvent(**fields)

    def test_add_get_list(self, stores):
        stores.calendar.add_event(self._event(id="late", date="2025-04-01T00:00:00"))
        stores.calendar.add_event(self._event(id="early", date="2025-03-01T00:00:00"))
        assert stores.calendar.get_event("late").title == "Demo"
        assert [e.id for e in stores.calendar.list_events()] == ["early", "late"]

    def test_update_patches_named_fields(self, stores):
        stores.calendar.add_event(self._event(time="10:00"))
        updated = stores.calendar.update_event("e1", title="Demo day")
        assert updated.title == "Demo day"
        assert updated.time == "10:00"

    def test_update_missing(self, stores):
        with pytest.raises(ValueError):
            stores.calendar.update_event("nope", title="x")

    def test_delete(self, stores):
        stores.calendar.add_event(self._event())
        assert stores.calendar.delete_event("e1") is True
        assert stores.calendar.delete_event("e1") is False


class TestChatHistoryDB:
    def test_append_and_list_per_goal(self, stores):
        stores.chat_history.append(ChatMessage(Sender.GATEKEEPER, "Hi", NOW.isoformat(), "g1"))
        stores.chat_history.append(ChatMessage(Sender.USER, "Hello", NOW.isoformat(), "g1"))
        stores.chat_history.append(ChatMessage(Sender.USER, "Other", NOW.isoformat(), "g2"))
        messages = stores.chat_history.list_messages("g1")
        assert [m.text for m in messages] == ["Hi", "Hello"]
        assert messages[0].sender is Sender.GATEKEEPER
        assert messages[0].id is not None

    def test_delete_for_goal(self, stores):
        stores.chat_history.append(ChatMessage(Sender.USER, "x", NOW.isoformat(), "g1"))
        assert stores.chat_history.delete_for_goal("g1") == 1
        assert stores.chat_history.list_messages("g1") == []


class TestProjectsAndUserContext:
    def test_default_projects_seeded(self, stores):
        assert [(p.id, p.name) for p in stores.projects.list_projects()] == [
            ("default", "General"), ("work", "Work"), ("personal", "Personal"),
        ]

    def test_save_project_upserts(self, stores):
        stores.projects.save_project(Project("work", "Day job"))
        assert stores.projects.get_project("work").name == "Day job"

    def test_user_context_round_trip(self, stores):
        assert stores.user_context.get() == UserContext()
        stores.user_context.save(UserContext(name="Dana", voice="direct"))
        ctx = stores.user_context.get()
        assert ctx.name == "Dana"
        assert ctx.voice == "direct"


class TestMigrationLog:
    def test_mark_applied(self, stores):
        assert stores.migrations.is_applied("x") is False
        stores.migrations.mark_applied("x")
        stores.migrations.mark_applied("x")
        assert stores.migrations.is_applied("x") is True

    def test_stores_share_one_file(self, tmp_db_path):
        first = Stores.open(tmp_db_path)
        first.goals.add_goal(make_goal())
        assert Stores.open(tmp_db_path).goals.get_goal("g1") is not None
