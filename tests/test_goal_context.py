"""Tests for gatekeeper.core.goal_context."""

from unittest.mock import patch

from conftest import make_goal
from gatekeeper.core.errors import PersistenceFailure
from gatekeeper.core.goal_context import is_related_event, load_goal_context
from gatekeeper.data.models import CalendarEvent, TaskStatus, UserContext


class TestIsRelatedEvent:
    def test_title_match_is_case_insensitive(self):
        event = CalendarEvent(id="e1", title="ship V1 demo", date="2025-03-12")
        assert is_related_event(event, make_goal(project_id=None))

    def test_same_project(self):
        event = CalendarEvent(id="e1", title="Standup", date="2025-03-12", project_id="work")
        assert is_related_event(event, make_goal())

    def test_unrelated(self):
        event = CalendarEvent(id="e1", title="Dentist", date="2025-03-12", project_id="personal")
        assert not is_related_event(event, make_goal())


class TestLoadGoalContext:
    def test_collects_open_tasks_events_and_project(self, stores, goal):
        stores.tasks.add_task("Fix login", "work", status=TaskStatus.DOING)
        stores.tasks.add_task("Old task", "work", status=TaskStatus.DONE)
        stores.tasks.add_task("Groceries", "personal")
        stores.calendar.add_event(CalendarEvent(id="e1", title="Ship v1 demo", date="2025-03-12"))
        stores.calendar.add_event(CalendarEvent(id="e2", title="Dentist", date="2025-03-13"))
        stores.user_context.save(UserContext(name="Dana", voice="friendly"))

        context = load_goal_context(goal, stores)

        assert [t.title for t in context.related_tasks] == ["Fix login"]
        assert [e.id for e in context.related_events] == ["e1"]
        assert context.project_name == "Work"
        assert context.voice == "friendly"

    def test_goal_voice_wins(self, stores):
        goal = stores.goals.add_goal(make_goal(voice="stern"))
        stores.user_context.save(UserContext(voice="friendly"))
        assert load_goal_context(goal, stores).voice == "stern"

    def test_no_project_no_tasks(self, stores):
        goal = stores.goals.add_goal(make_goal(project_id=None))
        stores.tasks.add_task("Fix login", "work")
        context = load_goal_context(goal, stores)
        assert context.related_tasks == []
        assert context.project_name is None

    def test_store_failure_degrades_to_empty(self, stores, goal):
        with patch.object(stores.calendar, "list_events", side_effect=PersistenceFailure("locked")):
            context = load_goal_context(goal, stores)
        assert context.related_events == []
