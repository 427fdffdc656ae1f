"""
Goal Gatekeeper — SQLite stores.

One table per persisted collection: goals, tasks, calendar events, the
per-goal chat log, projects and the global user context. Every
read-modify-write runs inside a single BEGIN IMMEDIATE transaction so the
background scheduler and user edits touching the same collection in the
same tick never lose an update.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path

from gatekeeper.core.errors import PersistenceFailure
from gatekeeper.data.models import (
    EVENT_COLOR,
    CalendarEvent,
    ChatMessage,
    Goal,
    Project,
    Sender,
    Task,
    TaskStatus,
    UserContext,
)

logger = logging.getLogger(__name__)

DEFAULT_PROJECTS = (
    Project(id="default", name="General"),
    Project(id="work", name="Work"),
    Project(id="personal", name="Personal"),
)


def new_id() -> str:
    """Creation-time unique token for goals, tasks and events."""
    return uuid.uuid4().hex


class _SQLiteStore:
    """Connection handling shared by every collection store."""

    def __init__(self, db_path: str | None = None) -> None:
        if db_path is None:
            from gatekeeper.config import settings
            db_path = settings.DATABASE_PATH

        self._db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self._init_db()
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"Cannot initialize {db_path}: {exc}") from exc

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        raise NotImplementedError

    @contextmanager
    def _transaction(self, write: bool = True) -> Iterator[sqlite3.Connection]:
        """Yield a connection inside one transaction; sqlite errors become PersistenceFailure."""
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"Cannot open {self._db_path}: {exc}") from exc
        try:
            if write:
                conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise PersistenceFailure(str(exc)) from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @staticmethod
    def _add_missing_columns(
        conn: sqlite3.Connection, table: str, columns: dict[str, str],
    ) -> None:
        """Migrate existing DBs: add new columns if missing."""
        existing_cols = {
            row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()
        }
        for name, ddl in columns.items():
            if name not in existing_cols:
                conn.execute(f"ALTER TABLE {table} ADD COLUMN {name} {ddl}")


# ---------------------------------------------------------------------------
# Goals
# ---------------------------------------------------------------------------


_GOAL_COLUMNS = (
    "id", "title", "desired_goal", "start_state", "current_state", "end_state",
    "frequency", "start_date", "end_date", "is_completed", "last_checked",
    "project_id", "voice",
)


class GoalDB(_SQLiteStore):
    """SQLite-backed storage for goals."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS goals (
                    id            TEXT PRIMARY KEY,
                    title         TEXT    NOT NULL,
                    desired_goal  TEXT    NOT NULL DEFAULT '',
                    start_state   TEXT    NOT NULL DEFAULT '',
                    current_state TEXT    NOT NULL DEFAULT '',
                    end_state     TEXT    NOT NULL DEFAULT '',
                    frequency     TEXT    NOT NULL DEFAULT 'daily',
                    start_date    TEXT    NOT NULL DEFAULT '',
                    end_date      TEXT    NOT NULL DEFAULT '',
                    is_completed  INTEGER NOT NULL DEFAULT 0,
                    last_checked  TEXT,
                    project_id    TEXT
                )
            """)
            self._add_missing_columns(conn, "goals", {"voice": "TEXT"})
        logger.debug("Goals table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_goal(row: sqlite3.Row) -> Goal:
        return Goal(
            id=row["id"],
            title=row["title"],
            desired_goal=row["desired_goal"],
            start_state=row["start_state"],
            current_state=row["current_state"],
            end_state=row["end_state"],
            frequency=row["frequency"],
            start_date=row["start_date"],
            end_date=row["end_date"],
            is_completed=bool(row["is_completed"]),
            last_checked=row["last_checked"],
            project_id=row["project_id"],
            voice=row["voice"],
        )

    @staticmethod
    def _goal_params(goal: Goal) -> tuple:
        data = asdict(goal)
        data["is_completed"] = int(goal.is_completed)
        return tuple(data[col] for col in _GOAL_COLUMNS)

    def add_goal(self, goal: Goal) -> Goal:
        """Insert a new goal."""
        placeholders = ", ".join("?" for _ in _GOAL_COLUMNS)
        with self._transaction() as conn:
            conn.execute(
                f"INSERT INTO goals ({', '.join(_GOAL_COLUMNS)}) VALUES ({placeholders})",
                self._goal_params(goal),
            )
        logger.info("Goal added: %s '%s' (%s)", goal.id, goal.title, goal.frequency)
        return goal

    def get_goal(self, goal_id: str) -> Goal | None:
        with self._transaction(write=False) as conn:
            row = conn.execute("SELECT * FROM goals WHERE id = ?", (goal_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_goal(row)

    def list_goals(self, include_completed: bool = True) -> list[Goal]:
        """All goals in creation order."""
        query = "SELECT * FROM goals"
        if not include_completed:
            query += " WHERE is_completed = 0"
        query += " ORDER BY rowid"
        with self._transaction(write=False) as conn:
            rows = conn.execute(query).fetchall()
        return [self._row_to_goal(r) for r in rows]

    def update_goal(self, goal_id: str, **updates: object) -> Goal:
        """Apply field updates to a goal and return the stored result.

        `last_checked` never moves backwards: an older timestamp is ignored.
        """
        unknown = set(updates) - set(_GOAL_COLUMNS[1:])
        if unknown:
            raise ValueError(f"Cannot update goal fields: {sorted(unknown)}")

        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM goals WHERE id = ?", (goal_id,)).fetchone()
            if row is None:
                raise ValueError(f"Goal {goal_id} not found")

            goal = self._row_to_goal(row)
            new_checked = updates.pop("last_checked", None)
            for name, value in updates.items():
                setattr(goal, name, value)
            if new_checked is not None:
                goal.last_checked = _later_timestamp(goal.last_checked, str(new_checked))

            assignments = ", ".join(f"{col} = ?" for col in _GOAL_COLUMNS[1:])
            conn.execute(
                f"UPDATE goals SET {assignments} WHERE id = ?",
                self._goal_params(goal)[1:] + (goal_id,),
            )
        logger.debug("Goal %s updated: %s", goal_id, sorted(updates))
        return goal

    def touch_last_checked(self, goal_id: str, when: str) -> Goal:
        """Stamp a review time, keeping last_checked monotonic."""
        return self.update_goal(goal_id, last_checked=when)

    def delete_goal(self, goal_id: str) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM goals WHERE id = ?", (goal_id,))
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Goal %s deleted", goal_id)
        return deleted


def _later_timestamp(current: str | None, candidate: str) -> str:
    if not current:
        return candidate
    try:
        if datetime.fromisoformat(candidate) < datetime.fromisoformat(current):
            return current
    except (TypeError, ValueError):
        logger.warning("Unparseable last_checked %r / %r, keeping newest write", current, candidate)
    return candidate


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


class TaskDB(_SQLiteStore):
    """SQLite-backed storage for the task board."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS tasks (
                    id         TEXT PRIMARY KEY,
                    title      TEXT NOT NULL,
                    project_id TEXT NOT NULL,
                    status     TEXT NOT NULL DEFAULT 'backlog',
                    completed  INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                )
            """)
        logger.debug("Tasks table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> Task:
        return Task(
            id=row["id"],
            title=row["title"],
            project_id=row["project_id"],
            status=TaskStatus(row["status"]),
            created_at=row["created_at"],
        )

    def add_task(
        self,
        title: str,
        project_id: str,
        status: TaskStatus = TaskStatus.BACKLOG,
        task_id: str | None = None,
        created_at: str | None = None,
    ) -> Task:
        task = Task(
            id=task_id or new_id(),
            title=title,
            project_id=project_id,
            status=status,
            created_at=created_at or datetime.now().isoformat(),
        )
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO tasks (id, title, project_id, status, completed, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (task.id, task.title, task.project_id, task.status.value,
                 int(task.completed), task.created_at),
            )
        logger.info("Task added: %s '%s' in project %s", task.id, title, project_id)
        return task

    def get_task(self, task_id: str) -> Task | None:
        with self._transaction(write=False) as conn:
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    def list_tasks(
        self,
        project_id: str | None = None,
        statuses: Iterable[TaskStatus] | None = None,
    ) -> list[Task]:
        conditions: list[str] = []
        params: list = []
        if project_id is not None:
            conditions.append("project_id = ?")
            params.append(project_id)
        if statuses is not None:
            wanted = [TaskStatus(s).value for s in statuses]
            conditions.append(f"status IN ({', '.join('?' for _ in wanted)})")
            params.extend(wanted)

        query = "SELECT * FROM tasks"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY rowid"

        with self._transaction(write=False) as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_task(r) for r in rows]

    def set_status(self, task_id: str, status: TaskStatus) -> bool:
        """Transition a task's status. Returns True if anything changed."""
        status = TaskStatus(status)
        with self._transaction() as conn:
            row = conn.execute("SELECT status FROM tasks WHERE id = ?", (task_id,)).fetchone()
            if row is None:
                raise ValueError(f"Task {task_id} not found")
            if row["status"] == status.value:
                return False
            conn.execute(
                "UPDATE tasks SET status = ?, completed = ? WHERE id = ?",
                (status.value, int(status is TaskStatus.DONE), task_id),
            )
        logger.info("Task %s moved to %s", task_id, status.value)
        return True


# ---------------------------------------------------------------------------
# Calendar
# ---------------------------------------------------------------------------


_EVENT_COLUMNS = (
    "id", "title", "date", "type", "color", "time", "project_id",
    "is_recurring", "recurrence_type", "recurrence_end_date",
)


class CalendarDB(_SQLiteStore):
    """SQLite-backed storage for calendar events and milestones."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS calendar_events (
                    id                  TEXT PRIMARY KEY,
                    title               TEXT    NOT NULL,
                    date                TEXT    NOT NULL,
                    type                TEXT    NOT NULL DEFAULT 'event',
                    color               TEXT    NOT NULL DEFAULT '#3B82F6',
                    time                TEXT,
                    project_id          TEXT,
                    is_recurring        INTEGER NOT NULL DEFAULT 0,
                    recurrence_type     TEXT,
                    recurrence_end_date TEXT
                )
            """)
        logger.debug("Calendar table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> CalendarEvent:
        return CalendarEvent(
            id=row["id"],
            title=row["title"],
            date=row["date"],
            type=row["type"],
            color=row["color"] or EVENT_COLOR,
            time=row["time"],
            project_id=row["project_id"],
            is_recurring=bool(row["is_recurring"]),
            recurrence_type=row["recurrence_type"],
            recurrence_end_date=row["recurrence_end_date"],
        )

    @staticmethod
    def _event_params(event: CalendarEvent) -> tuple:
        data = asdict(event)
        data["is_recurring"] = int(event.is_recurring)
        return tuple(data[col] for col in _EVENT_COLUMNS)

    def add_event(self, event: CalendarEvent) -> CalendarEvent:
        placeholders = ", ".join("?" for _ in _EVENT_COLUMNS)
        with self._transaction() as conn:
            conn.execute(
                f"INSERT INTO calendar_events ({', '.join(_EVENT_COLUMNS)}) VALUES ({placeholders})",
                self._event_params(event),
            )
        logger.info("Calendar event added: %s '%s' on %s", event.id, event.title, event.date)
        return event

    def get_event(self, event_id: str) -> CalendarEvent | None:
        with self._transaction(write=False) as conn:
            row = conn.execute(
                "SELECT * FROM calendar_events WHERE id = ?", (event_id,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_event(row)

    def list_events(self) -> list[CalendarEvent]:
        with self._transaction(write=False) as conn:
            rows = conn.execute("SELECT * FROM calendar_events ORDER BY date, rowid").fetchall()
        return [self._row_to_event(r) for r in rows]

    def update_event(self, event_id: str, **updates: object) -> CalendarEvent:
        """Patch named fields of an event and return the stored result."""
        unknown = set(updates) - set(_EVENT_COLUMNS[1:])
        if unknown:
            raise ValueError(f"Cannot update event fields: {sorted(unknown)}")

        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM calendar_events WHERE id = ?", (event_id,)
            ).fetchone()
            if row is None:
                raise ValueError(f"Event {event_id} not found")

            event = self._row_to_event(row)
            for name, value in updates.items():
                setattr(event, name, value)

            assignments = ", ".join(f"{col} = ?" for col in _EVENT_COLUMNS[1:])
            conn.execute(
                f"UPDATE calendar_events SET {assignments} WHERE id = ?",
                self._event_params(event)[1:] + (event_id,),
            )
        logger.info("Calendar event %s updated: %s", event_id, sorted(updates))
        return event

    def delete_event(self, event_id: str) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM calendar_events WHERE id = ?", (event_id,))
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Calendar event %s deleted", event_id)
        return deleted


# ---------------------------------------------------------------------------
# Chat history
# ---------------------------------------------------------------------------


class ChatHistoryDB(_SQLiteStore):
    """Append-only conversation log, keyed by goal id."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS chat_messages (
                    id        INTEGER PRIMARY KEY AUTOINCREMENT,
                    goal_id   TEXT NOT NULL,
                    sender    TEXT NOT NULL,
                    text      TEXT NOT NULL,
                    timestamp TEXT NOT NULL
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_chat_messages_goal ON chat_messages (goal_id)"
            )
        logger.debug("Chat history table initialized at %s", self._db_path)

    def append(self, message: ChatMessage) -> ChatMessage:
        with self._transaction() as conn:
            cursor = conn.execute(
                "INSERT INTO chat_messages (goal_id, sender, text, timestamp) VALUES (?, ?, ?, ?)",
                (message.goal_id, Sender(message.sender).value, message.text, message.timestamp),
            )
        message.id = cursor.lastrowid
        return message

    def list_messages(self, goal_id: str) -> list[ChatMessage]:
        with self._transaction(write=False) as conn:
            rows = conn.execute(
                "SELECT * FROM chat_messages WHERE goal_id = ? ORDER BY id", (goal_id,)
            ).fetchall()
        return [
            ChatMessage(
                sender=Sender(r["sender"]),
                text=r["text"],
                timestamp=r["timestamp"],
                goal_id=r["goal_id"],
                id=r["id"],
            )
            for r in rows
        ]

    def delete_for_goal(self, goal_id: str) -> int:
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM chat_messages WHERE goal_id = ?", (goal_id,))
        return cursor.rowcount


# ---------------------------------------------------------------------------
# Projects and user context (read-only lookups for the check-in flow)
# ---------------------------------------------------------------------------


class ProjectDB(_SQLiteStore):
    """Project lookup for display and task scoping."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS projects (
                    id   TEXT PRIMARY KEY,
                    name TEXT NOT NULL
                )
            """)
            count = conn.execute("SELECT COUNT(*) FROM projects").fetchone()[0]
            if count == 0:
                conn.executemany(
                    "INSERT INTO projects (id, name) VALUES (?, ?)",
                    [(p.id, p.name) for p in DEFAULT_PROJECTS],
                )
        logger.debug("Projects table initialized at %s", self._db_path)

    def list_projects(self) -> list[Project]:
        with self._transaction(write=False) as conn:
            rows = conn.execute("SELECT * FROM projects ORDER BY rowid").fetchall()
        return [Project(id=r["id"], name=r["name"]) for r in rows]

    def get_project(self, project_id: str) -> Project | None:
        with self._transaction(write=False) as conn:
            row = conn.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
        if row is None:
            return None
        return Project(id=row["id"], name=row["name"])

    def save_project(self, project: Project) -> Project:
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO projects (id, name) VALUES (?, ?) "
                "ON CONFLICT(id) DO UPDATE SET name = excluded.name",
                (project.id, project.name),
            )
        return project


_USER_CONTEXT_FIELDS = (
    "name", "company", "voice", "back_story", "website_links", "additional_info",
)


class UserContextDB(_SQLiteStore):
    """The single global tone/identity record."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS user_context (
                    key   TEXT PRIMARY KEY,
                    value TEXT NOT NULL DEFAULT ''
                )
            """)

    def get(self) -> UserContext:
        with self._transaction(write=False) as conn:
            rows = conn.execute("SELECT key, value FROM user_context").fetchall()
        values = {r["key"]: r["value"] for r in rows if r["key"] in _USER_CONTEXT_FIELDS}
        return UserContext(**values)

    def save(self, context: UserContext) -> UserContext:
        data = asdict(context)
        with self._transaction() as conn:
            conn.executemany(
                "INSERT INTO user_context (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                [(k, data[k] or "") for k in _USER_CONTEXT_FIELDS],
            )
        logger.info("User context saved")
        return context


class MigrationLog(_SQLiteStore):
    """Records one-time data migrations so they never run twice."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS migrations (
                    name       TEXT PRIMARY KEY,
                    applied_at TEXT NOT NULL
                )
            """)

    def is_applied(self, name: str) -> bool:
        with self._transaction(write=False) as conn:
            row = conn.execute("SELECT 1 FROM migrations WHERE name = ?", (name,)).fetchone()
        return row is not None

    def mark_applied(self, name: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO migrations (name, applied_at) VALUES (?, ?)",
                (name, datetime.now().isoformat()),
            )


# ---------------------------------------------------------------------------
# Bundle
# ---------------------------------------------------------------------------


@dataclass
class Stores:
    """Every collection the check-in flow reads or writes."""

    goals: GoalDB
    tasks: TaskDB
    calendar: CalendarDB
    chat_history: ChatHistoryDB
    projects: ProjectDB
    user_context: UserContextDB
    migrations: MigrationLog

    @classmethod
    def open(cls, db_path: str | None = None) -> Stores:
        return cls(
            goals=GoalDB(db_path),
            tasks=TaskDB(db_path),
            calendar=CalendarDB(db_path),
            chat_history=ChatHistoryDB(db_path),
            projects=ProjectDB(db_path),
            user_context=UserContextDB(db_path),
            migrations=MigrationLog(db_path),
        )
